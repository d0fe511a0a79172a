import atexit
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    g,
    jsonify,
    request,
    send_file,
    send_from_directory,
)
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException

from .blobs import TEMP_SUFFIX, BlobStore
from .config import STATIC_MOUNT, Settings
from .errors import NotFound, PiiCloudError, ValidationError
from .logging_utils import configure_logging, get_logger, sanitize_log_value
from .maintenance import start_maintenance
from .metadata import MetadataStore
from .service import Attachment, FileService

DEFAULT_ADMIN_LIST_LIMIT = 50
EXTENSION_KEY = "piicloud"

lifecycle_logger = get_logger("piicloud.lifecycle")
api = Blueprint("api", __name__)


def get_service() -> FileService:
    return current_app.extensions[EXTENSION_KEY]


def get_settings() -> Settings:
    return current_app.config["PIICLOUD_SETTINGS"]


def resolve_base_url() -> str:
    """Public base address for access URLs; the serving host when unset."""

    return get_settings().base_url or request.host_url.rstrip("/")


def _optional_identity() -> Optional[str]:
    value = request.args.get("userId")
    if value is None:
        return None
    if not value.strip():
        raise ValidationError("User ID is required")
    return value


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={sanitize_log_value(getattr(file_storage, 'filename', 'unknown'))}",
        )


@api.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@api.after_app_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@api.after_app_request
def add_security_headers(response: Response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@api.app_errorhandler(PiiCloudError)
def handle_piicloud_error(error: PiiCloudError):
    if error.status_code >= 500:
        lifecycle_logger.error(
            "request_failed path=%s error_type=%s",
            sanitize_log_value(request.path),
            type(error).__name__,
        )
    else:
        lifecycle_logger.warning(
            "request_rejected path=%s status=%d reason=%s",
            sanitize_log_value(request.path),
            error.status_code,
            sanitize_log_value(str(error)),
        )
    return jsonify(error.to_payload()), error.status_code


@api.app_errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    if error.code == 413:
        return jsonify({"error": "File too large"}), 413
    return jsonify({"error": error.name}), error.code


@api.app_errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    lifecycle_logger.exception(
        "unhandled_error path=%s", sanitize_log_value(request.path)
    )
    return jsonify({"error": "Internal server error"}), 500


@api.route("/")
def index():
    return "PiiCloud file server is running", 200, {"Content-Type": "text/plain; charset=utf-8"}


@api.route("/health")
def health_check():
    service = get_service()
    if not service.available:
        return jsonify({"status": "unavailable"}), 503
    return jsonify(
        {
            "status": "healthy",
            "files": service.records.count(),
            "max_upload_bytes": service.max_upload_bytes,
        }
    )


@api.route("/upload", methods=["POST"])
def upload_file():
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        current_app.logger.warning("upload_failed reason=no_file_part")
        raise ValidationError("No file uploaded")

    identity = request.form.get("userId") or request.form.get("email")
    with upload_stream_handler(upload) as file_storage:
        record = get_service().ingest(
            Attachment(
                filename=file_storage.filename,
                stream=file_storage.stream,
                mime_type=file_storage.mimetype or None,
                field_name=file_storage.name or "file",
            ),
            identity,
            resolve_base_url(),
        )

    return (
        jsonify(
            {
                "message": "File uploaded successfully",
                "file": record.to_descriptor(),
            }
        ),
        201,
    )


@api.route("/files", methods=["GET"])
@api.route("/files/<user_id>", methods=["GET"])
def list_files(user_id: Optional[str] = None):
    service = get_service()
    owner_key = request.args.get("ownerKey")
    if user_id is None and owner_key is not None:
        records = service.list_files_by_key(owner_key)
    else:
        identity = user_id if user_id is not None else request.args.get("userId")
        records = service.list_files(identity)
    return jsonify({"files": [record.to_descriptor() for record in records]})


@api.route("/files/<user_id>/<file_id>", methods=["GET"])
def get_file(user_id: str, file_id: str):
    record = get_service().get_file(file_id, user_id)
    return jsonify({"file": record.to_descriptor()})


@api.route("/download/<file_id>")
def download(file_id: str):
    record, file_path = get_service().open_download(file_id, _optional_identity())
    lifecycle_logger.info("file_downloaded file_id=%s", file_id)
    try:
        return send_file(
            file_path,
            mimetype=record.mime_type,
            as_attachment=True,
            download_name=record.original_name,
        )
    except FileNotFoundError as error:
        lifecycle_logger.warning(
            "file_download_missing_race file_id=%s stored_name=%s",
            file_id,
            record.stored_name,
        )
        raise NotFound(f"Blob for file {file_id} is missing") from error


@api.route("/files/<file_id>", methods=["DELETE"])
def delete_file(file_id: str):
    record = get_service().delete_file(file_id, _optional_identity())
    return jsonify({"message": "File deleted successfully", "id": record.id})


@api.route("/admin/files", methods=["GET"])
def list_recent_files():
    raw_limit = request.args.get("limit", str(DEFAULT_ADMIN_LIST_LIMIT))
    try:
        limit = int(raw_limit)
    except ValueError as error:
        raise ValidationError("limit must be a positive integer") from error
    records = get_service().list_recent(limit)
    return jsonify(
        {
            "files": [
                dict(record.to_descriptor(), ownerKey=record.owner_key)
                for record in records
            ]
        }
    )


@api.route(f"/{STATIC_MOUNT}/<path:stored_name>")
def serve_blob(stored_name: str):
    if stored_name.endswith(TEMP_SUFFIX):
        raise NotFound(f"No blob named {stored_name}")
    return send_from_directory(get_settings().uploads_dir, stored_name)


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[FileService] = None,
    *,
    testing: bool = False,
) -> Flask:
    """Build the Flask application and open its storage backends."""

    settings = settings or Settings.from_env()
    configure_logging(settings, file_logging=not testing)
    settings.ensure_directories()

    if service is None:
        service = FileService(
            BlobStore(settings.uploads_dir),
            MetadataStore(settings.database_path, settings.metadata_root),
            settings.max_upload_bytes,
        )
    service.open()
    atexit.register(service.close)

    app = Flask(__name__, static_folder=None)
    app.config["TESTING"] = testing
    app.config["MAX_CONTENT_LENGTH"] = settings.max_content_length
    app.config["PIICLOUD_SETTINGS"] = settings
    app.extensions[EXTENSION_KEY] = service
    app.register_blueprint(api)

    if settings.maintenance_enabled and not testing:
        app.extensions["piicloud_scheduler"] = start_maintenance(
            service,
            settings.maintenance_interval_minutes,
            settings.orphan_grace_seconds,
        )

    lifecycle_logger.info(
        "server_configured upload_dir=%s database=%s max_upload_bytes=%d",
        settings.uploads_dir,
        settings.database_path,
        settings.max_upload_bytes,
    )
    return app


if __name__ == "__main__":
    server_settings = Settings.from_env()
    create_app(server_settings).run(
        host="0.0.0.0", port=server_settings.port, threaded=True, debug=False
    )
