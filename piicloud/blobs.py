import logging
import time
from pathlib import Path
from typing import BinaryIO, Iterator, Tuple

from .errors import PayloadTooLarge, StorageWriteFailure, ValidationError

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
TEMP_SUFFIX = ".tmp"

logger = logging.getLogger("piicloud.storage")


class BlobStore:
    """Raw upload bytes kept as flat files under a single directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()
        self.ensure_root()

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, stored_name: str) -> Path:
        """Return the location of *stored_name*, refusing anything outside the root."""

        if not stored_name or stored_name in {".", ".."} or "/" in stored_name or "\\" in stored_name:
            raise ValidationError("Invalid stored name")
        candidate = (self.root / stored_name).resolve()
        if candidate.parent != self.root:
            raise ValidationError("Invalid stored name")
        return candidate

    def _owned_path(self, storage_path: str) -> Path:
        path = Path(storage_path)
        if path.parent.resolve() != self.root:
            raise ValidationError("Storage path is outside the blob area")
        return path

    def put(self, stored_name: str, stream: BinaryIO, max_bytes: int) -> Tuple[str, int]:
        """Stream *stream* into the blob area.

        The bytes land in a temporary file that is renamed into place only
        once the whole stream fits within *max_bytes*; a partial file is never
        left behind.

        Returns:
            Tuple of (storage_path, size_bytes)

        Raises:
            PayloadTooLarge: If the stream holds more than *max_bytes*
            StorageWriteFailure: If the disk write fails
        """

        self.ensure_root()
        final_path = self.path_for(stored_name)
        temp_path = final_path.with_name(final_path.name + TEMP_SUFFIX)

        if hasattr(stream, "seek"):
            try:
                stream.seek(0)
            except (OSError, ValueError):
                pass

        written = 0
        try:
            with temp_path.open("wb") as destination:
                try:
                    temp_path.chmod(0o600)
                except OSError:
                    pass
                while True:
                    chunk = stream.read(CHUNK_SIZE_BYTES)
                    if not chunk:
                        break
                    if written + len(chunk) > max_bytes:
                        raise PayloadTooLarge(max_bytes)
                    destination.write(chunk)
                    written += len(chunk)
            temp_path.replace(final_path)
        except PayloadTooLarge:
            temp_path.unlink(missing_ok=True)
            logger.warning(
                "blob_rejected_too_large stored_name=%s limit=%d", stored_name, max_bytes
            )
            raise
        except OSError as error:
            try:
                temp_path.unlink(missing_ok=True)
            except OSError:
                logger.warning("blob_temp_cleanup_failed path=%s", temp_path)
            logger.error(
                "blob_write_failed stored_name=%s error=%s", stored_name, error
            )
            raise StorageWriteFailure(str(error)) from error

        logger.info("blob_written stored_name=%s size=%d", stored_name, written)
        return str(final_path), written

    def exists(self, storage_path: str) -> bool:
        try:
            return self._owned_path(storage_path).is_file()
        except ValidationError:
            return False

    def remove(self, storage_path: str) -> bool:
        """Delete a blob. ``False`` means it was already gone."""

        path = self._owned_path(storage_path)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.info("blob_remove_missing path=%s", path)
            return False
        logger.info("blob_removed path=%s", path)
        return True

    def iter_blobs(self) -> Iterator[Path]:
        """Yield every completed blob currently in the blob area."""

        self.ensure_root()
        for entry in self.root.iterdir():
            if entry.is_file() and not entry.name.endswith(TEMP_SUFFIX):
                yield entry

    def remove_stale_temp_files(self, max_age_seconds: float) -> int:
        """Remove lingering partial uploads older than *max_age_seconds*."""

        self.ensure_root()
        removed = 0
        cutoff = time.time() - max_age_seconds
        for temp_file in self.root.glob(f"*{TEMP_SUFFIX}"):
            try:
                if temp_file.stat().st_mtime < cutoff:
                    temp_file.unlink()
                    removed += 1
                    logger.info("temp_file_removed path=%s", temp_file)
            except OSError as error:
                logger.warning(
                    "temp_cleanup_failed path=%s error=%s", temp_file, error
                )
        return removed
