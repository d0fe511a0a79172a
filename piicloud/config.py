import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BYTES_PER_MB = 1024 * 1024
DEFAULT_MAX_UPLOAD_BYTES = 100 * BYTES_PER_MB
# Room for multipart boundaries and form fields on top of the file itself.
MULTIPART_OVERHEAD_BYTES = 64 * 1024
DEFAULT_METADATA_ROOT = "files"
STATIC_MOUNT = "uploads"
DEFAULT_PORT = 5000

logger = logging.getLogger("piicloud.config")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d", key, raw_value, default
        )
        return default


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _get_base_url() -> Optional[str]:
    for key in ("PIICLOUD_BASE_URL", "BASE_URL"):
        value = (os.environ.get(key) or "").strip()
        if value:
            return value.rstrip("/")
    return None


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for a single server process."""

    storage_root: Path
    uploads_dir: Path
    data_dir: Path
    logs_dir: Path
    database_path: Path
    base_url: Optional[str] = None
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    metadata_root: str = DEFAULT_METADATA_ROOT
    maintenance_enabled: bool = True
    maintenance_interval_minutes: int = 60
    orphan_grace_seconds: int = 3600
    log_level: str = "INFO"
    port: int = DEFAULT_PORT

    @classmethod
    def from_env(cls) -> "Settings":
        storage_root = _resolve_env_path("PIICLOUD_STORAGE_ROOT", Path.cwd())
        data_dir = _resolve_env_path("PIICLOUD_DATA_DIR", storage_root / "data")
        maintenance_enabled = _get_optional_bool_env("PIICLOUD_MAINTENANCE_ENABLED")
        metadata_root = (os.environ.get("PIICLOUD_METADATA_ROOT") or "").strip("/ ")
        return cls(
            storage_root=storage_root,
            uploads_dir=_resolve_env_path(
                "PIICLOUD_UPLOADS_DIR", storage_root / STATIC_MOUNT
            ),
            data_dir=data_dir,
            logs_dir=_resolve_env_path("PIICLOUD_LOGS_DIR", storage_root / "logs"),
            database_path=_resolve_env_path(
                "PIICLOUD_DATABASE_PATH", data_dir / "files.db"
            ),
            base_url=_get_base_url(),
            max_upload_bytes=_safe_int_env(
                "PIICLOUD_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES
            ),
            metadata_root=metadata_root or DEFAULT_METADATA_ROOT,
            maintenance_enabled=True if maintenance_enabled is None else maintenance_enabled,
            maintenance_interval_minutes=_safe_int_env(
                "PIICLOUD_MAINTENANCE_INTERVAL_MINUTES", 60
            ),
            orphan_grace_seconds=_safe_int_env(
                "PIICLOUD_ORPHAN_GRACE_SECONDS", 3600, min_value=0
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            port=_safe_int_env("PORT", DEFAULT_PORT),
        )

    @property
    def max_content_length(self) -> int:
        return self.max_upload_bytes + MULTIPART_OVERHEAD_BYTES

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
