from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Tuple

from .blobs import BlobStore
from .errors import MetadataWriteFailure, NotFound, StoreUnavailable, ValidationError
from .logging_utils import get_logger, sanitize_log_value
from .metadata import MetadataStore
from .naming import (
    DEFAULT_NAME_PREFIX,
    derive_owner_key,
    generate_stored_name,
    normalize_identity,
    parse_owner_key,
)
from .records import FileRecord, UploadMeta, build_record, validate_original_name

lifecycle_logger = get_logger("piicloud.lifecycle")


@dataclass
class Attachment:
    """The single binary part of an upload request."""

    filename: Optional[str]
    stream: BinaryIO
    mime_type: Optional[str] = None
    field_name: str = DEFAULT_NAME_PREFIX


class FileService:
    """Upload ingest plus the list, get, download and delete operations."""

    def __init__(self, blobs: BlobStore, records: MetadataStore, max_upload_bytes: int) -> None:
        self.blobs = blobs
        self.records = records
        self.max_upload_bytes = max_upload_bytes

    def open(self) -> None:
        self.blobs.ensure_root()
        self.records.open()

    def close(self) -> None:
        self.records.close()

    @property
    def available(self) -> bool:
        return self.records.available

    def ingest(
        self,
        attachment: Optional[Attachment],
        owner_identity: Optional[str],
        base_url: str,
    ) -> FileRecord:
        """Store one uploaded file and register its metadata.

        Validation happens before anything is written. The blob is written
        before the record; if the record write then fails the blob stays on
        disk without a record until the orphan sweep reclaims it.
        """

        if attachment is None or not attachment.filename:
            raise ValidationError("No file uploaded")
        identity = normalize_identity(owner_identity)
        original_name = validate_original_name(attachment.filename)
        owner_key = derive_owner_key(identity)
        if not self.records.available:
            raise StoreUnavailable()

        stored_name = generate_stored_name(
            original_name, attachment.field_name or DEFAULT_NAME_PREFIX
        )
        storage_path, size = self.blobs.put(
            stored_name, attachment.stream, self.max_upload_bytes
        )

        try:
            record = build_record(
                UploadMeta(
                    original_name=original_name,
                    stored_name=stored_name,
                    storage_path=storage_path,
                    size=size,
                    mime_type=attachment.mime_type,
                ),
                identity,
                base_url,
                created_at=self.records.now(),
            )
        except ValidationError:
            self.blobs.remove(storage_path)
            raise

        try:
            self.records.put(owner_key, record)
        except MetadataWriteFailure:
            lifecycle_logger.error(
                "orphaned_blob_left file_id=%s stored_name=%s",
                record.id,
                stored_name,
            )
            raise

        lifecycle_logger.info(
            "file_uploaded file_id=%s owner_key=%s filename=%s size=%d",
            record.id,
            owner_key,
            sanitize_log_value(original_name),
            size,
        )
        return record

    def list_files(self, owner_identity: Optional[str]) -> Iterator[FileRecord]:
        return self.records.list_by_owner(derive_owner_key(owner_identity))

    def list_files_by_key(self, owner_key: Optional[str]) -> Iterator[FileRecord]:
        return self.records.list_by_owner(parse_owner_key(owner_key))

    def list_recent(self, limit: int) -> Iterator[FileRecord]:
        return self.records.list_all(limit)

    def get_file(self, file_id: str, owner_identity: Optional[str] = None) -> FileRecord:
        if owner_identity is not None:
            record = self.records.get(derive_owner_key(owner_identity), file_id)
        else:
            record = self.records.locate(file_id)
        if record is None:
            raise NotFound(f"No file with id {file_id}")
        return record

    def open_download(
        self, file_id: str, owner_identity: Optional[str] = None
    ) -> Tuple[FileRecord, Path]:
        record = self.get_file(file_id, owner_identity)
        if not self.blobs.exists(record.storage_path):
            lifecycle_logger.warning(
                "file_download_missing_path file_id=%s stored_name=%s",
                file_id,
                record.stored_name,
            )
            raise NotFound(f"Blob for file {file_id} is missing")
        return record, Path(record.storage_path)

    def delete_file(self, file_id: str, owner_identity: Optional[str] = None) -> FileRecord:
        """Remove the blob, then the record.

        A blob that is already gone, or that cannot be removed, does not stop
        the record from being deleted.
        """

        record = self.get_file(file_id, owner_identity)
        try:
            self.blobs.remove(record.storage_path)
        except (OSError, ValidationError) as error:
            lifecycle_logger.warning(
                "file_delete_disk_failed file_id=%s stored_name=%s error=%s",
                file_id,
                record.stored_name,
                error,
            )
        if not self.records.delete(record.owner_key, record.id):
            raise NotFound(f"No file with id {file_id}")
        lifecycle_logger.info(
            "file_deleted file_id=%s owner_key=%s original_name=%s",
            file_id,
            record.owner_key,
            sanitize_log_value(record.original_name),
        )
        return record
