"""Storage, upload and download token exceptions."""

from typing import Any

from app.shared.byte_utils import format_bytes

from .base import BaseAppException, NotFoundError


class QuotaExceededError(BaseAppException):
    """Raised when a write would push a tenant past its storage limit."""

    def __init__(self, used_bytes: int, limit_bytes: int, requested_bytes: int):
        self.used_bytes = used_bytes
        self.limit_bytes = limit_bytes
        self.requested_bytes = requested_bytes
        super().__init__(
            message=(
                f"Storage quota exceeded: {format_bytes(used_bytes)} used of "
                f"{format_bytes(limit_bytes)}, {format_bytes(requested_bytes)} requested"
            ),
            status_code=413,
            error_code="QUOTA_EXCEEDED",
            details={
                "used_bytes": used_bytes,
                "limit_bytes": limit_bytes,
                "requested_bytes": requested_bytes,
            },
        )


class StoredFileNotFoundError(NotFoundError):
    """Raised when a file is missing, tombstoned or outside the caller's tenant."""

    def __init__(self, message: str = "File not found", details: dict[str, Any] | None = None):
        super().__init__(message=message, details=details, error_code="FILE_NOT_FOUND")


class UploadSessionNotFoundError(NotFoundError):
    def __init__(self, message: str = "Upload session not found", details: dict[str, Any] | None = None):
        super().__init__(message=message, details=details, error_code="UPLOAD_SESSION_NOT_FOUND")


class TenantNotFoundError(NotFoundError):
    def __init__(self, message: str = "Tenant not found", details: dict[str, Any] | None = None):
        super().__init__(message=message, details=details, error_code="TENANT_NOT_FOUND")


class SessionNotActiveError(BaseAppException):
    """Raised when work is reported against a session that is no longer ACTIVE."""

    def __init__(self, session_id: Any, status: str):
        super().__init__(
            message=f"Upload session is {status}",
            status_code=409,
            error_code="SESSION_NOT_ACTIVE",
            details={"session_id": str(session_id), "status": status},
        )


class InvalidUploadStateError(BaseAppException):
    """Raised on a progress transition the state machine does not allow."""

    def __init__(self, current: str, target: str):
        super().__init__(
            message=f"Cannot move upload from {current} to {target}",
            status_code=409,
            error_code="INVALID_UPLOAD_STATE",
            details={"current": current, "target": target},
        )


class InvalidChunkError(BaseAppException):
    """Raised when a chunk is out of sequence or overflows the declared size."""

    def __init__(self, message: str = "Invalid chunk", details: dict[str, Any] | None = None):
        super().__init__(message=message, status_code=400, error_code="INVALID_CHUNK", details=details)


class TokenNotFoundError(NotFoundError):
    def __init__(self, message: str = "Download token not found"):
        super().__init__(message=message, error_code="TOKEN_NOT_FOUND")


class TokenExpiredError(BaseAppException):
    def __init__(self, message: str = "Download token has expired"):
        super().__init__(message=message, status_code=410, error_code="TOKEN_EXPIRED")


class TokenExhaustedError(BaseAppException):
    def __init__(self, message: str = "Download token has no remaining uses"):
        super().__init__(message=message, status_code=410, error_code="TOKEN_EXHAUSTED")


class BlobStoreError(BaseAppException):
    """Raised when the blob store fails after retries or times out."""

    def __init__(self, message: str = "Blob store operation failed", details: dict[str, Any] | None = None):
        super().__init__(message=message, status_code=502, error_code="BLOB_STORE_ERROR", details=details)
