import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote

from .config import STATIC_MOUNT
from .errors import ValidationError
from .naming import checked_extension, derive_owner_key, normalize_identity

MAX_FILENAME_LENGTH = 255
DEFAULT_MIME_TYPE = "application/octet-stream"


def isoformat_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_isoformat_utc(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


def datetime_from_micros(micros: int) -> datetime:
    seconds, remainder = divmod(int(micros), 1_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=remainder)


def datetime_to_micros(value: datetime) -> int:
    delta = value.astimezone(timezone.utc) - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


class StoreClock:
    """Wall clock that never hands out the same microsecond twice."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            now = time.time_ns() // 1000
            self._last = max(now, self._last + 1)
            return datetime_from_micros(self._last)


@dataclass(frozen=True)
class UploadMeta:
    """What the blob store learned about one written attachment."""

    original_name: str
    stored_name: str
    storage_path: str
    size: Any
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class FileRecord:
    id: str
    stored_name: str
    original_name: str
    owner_key: str
    owner_id: str
    size_bytes: int
    mime_type: str
    storage_path: str
    access_url: str
    created_at: datetime

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "storedName": self.stored_name,
            "originalName": self.original_name,
            "ownerKey": self.owner_key,
            "ownerId": self.owner_id,
            "sizeBytes": self.size_bytes,
            "mimeType": self.mime_type,
            "storagePath": self.storage_path,
            "accessUrl": self.access_url,
            "createdAt": isoformat_utc(self.created_at),
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "FileRecord":
        return cls(
            id=document["id"],
            stored_name=document["storedName"],
            original_name=document["originalName"],
            owner_key=document["ownerKey"],
            owner_id=document.get("ownerId", ""),
            size_bytes=int(document["sizeBytes"]),
            mime_type=document.get("mimeType") or DEFAULT_MIME_TYPE,
            storage_path=document["storagePath"],
            access_url=document["accessUrl"],
            created_at=parse_isoformat_utc(document["createdAt"]),
        )

    def to_descriptor(self) -> Dict[str, Any]:
        """Client-facing view; the storage path never leaves the server."""

        return {
            "id": self.id,
            "name": self.original_name,
            "size": self.size_bytes,
            "mimeType": self.mime_type,
            "accessUrl": self.access_url,
            "createdAt": isoformat_utc(self.created_at),
        }


def validate_original_name(filename: Optional[str]) -> str:
    """Validate an uploaded filename for presence, length, NUL bytes and extension."""

    if not filename:
        raise ValidationError("No file uploaded")
    if len(filename) > MAX_FILENAME_LENGTH:
        raise ValidationError(
            f"Filename exceeds maximum length of {MAX_FILENAME_LENGTH} characters"
        )
    if "\x00" in filename:
        raise ValidationError("Filename contains invalid characters")
    checked_extension(filename)
    return filename


def build_access_url(base_url: str, stored_name: str) -> str:
    return f"{base_url.rstrip('/')}/{STATIC_MOUNT}/{quote(stored_name)}"


def build_record(
    upload: Optional[UploadMeta],
    owner_identity: Optional[str],
    base_url: str,
    *,
    created_at: datetime,
    record_id: Optional[str] = None,
) -> FileRecord:
    """Assemble the metadata record for a written upload.

    Raises:
        ValidationError: If the attachment is missing, the owner identity is
            empty, or the size is not a non-negative integer
    """

    if upload is None:
        raise ValidationError("No file uploaded")
    identity = normalize_identity(owner_identity)
    size = upload.size
    if isinstance(size, bool) or not isinstance(size, int) or size < 0:
        raise ValidationError("File size must be a non-negative integer")
    if not base_url:
        raise ValidationError("A base URL is required to build the access URL")

    return FileRecord(
        id=record_id or str(uuid.uuid4()),
        stored_name=upload.stored_name,
        original_name=validate_original_name(upload.original_name),
        owner_key=derive_owner_key(identity),
        owner_id=identity,
        size_bytes=size,
        mime_type=upload.mime_type or DEFAULT_MIME_TYPE,
        storage_path=upload.storage_path,
        access_url=build_access_url(base_url, upload.stored_name),
        created_at=created_at,
    )
