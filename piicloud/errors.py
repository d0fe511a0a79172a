from typing import Optional


class PiiCloudError(Exception):
    """Base class for failures surfaced to HTTP clients."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)

    def to_payload(self) -> dict:
        # Server-side failures never echo their details back to the client.
        if self.status_code >= 500:
            return {"error": self.public_message}
        return {"error": str(self)}


class ValidationError(PiiCloudError, ValueError):
    """Raised when an upload or lookup is rejected before any write."""

    status_code = 400
    public_message = "Invalid request"


class PayloadTooLarge(PiiCloudError):
    """Raised when an upload exceeds the configured maximum size."""

    status_code = 413
    public_message = "File too large"

    def __init__(self, limit_bytes: int) -> None:
        super().__init__(
            f"File exceeds maximum allowed size ({limit_bytes} bytes)"
        )
        self.limit_bytes = limit_bytes

    def to_payload(self) -> dict:
        return {"error": self.public_message, "max_bytes": self.limit_bytes}


class StorageWriteFailure(PiiCloudError):
    """Raised when a blob cannot be written to the blob area."""


class MetadataWriteFailure(PiiCloudError):
    """Raised when a metadata record cannot be persisted."""


class NotFound(PiiCloudError, LookupError):
    """Raised when a record or its blob does not exist."""

    status_code = 404
    public_message = "File not found"

    def to_payload(self) -> dict:
        return {"error": self.public_message}


class StoreUnavailable(PiiCloudError):
    """Raised when the metadata store has not been opened or was closed."""

    status_code = 503
    public_message = "Storage backend unavailable"
