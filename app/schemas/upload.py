"""Upload session schemas for request/response serialization."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import Field

from app.shared.byte_utils import format_bytes

from .base import BaseModelSchema, BaseSchema
from .file import AssociationContext


class UploadFileSpec(BaseSchema):
    """One file declared when a session is created."""

    file_name: str = Field(..., min_length=1, max_length=255)
    total_size_bytes: int = Field(..., ge=0)
    chunk_size_bytes: int | None = Field(None, gt=0, description="Defaults to the configured chunk size")
    mime_type: str = Field(default="application/octet-stream", max_length=100)
    checksum: str | None = Field(None, pattern="^[0-9a-f]{64}$", description="SHA-256 of the full content")


class InitiateUploadRequest(UploadFileSpec):
    """Schema for starting a single-file upload."""

    session_name: str | None = Field(None, max_length=255)
    context: AssociationContext | None = None


class CreateSessionRequest(BaseSchema):
    session_name: str | None = Field(None, max_length=255)
    files: list[UploadFileSpec] = Field(..., min_length=1)
    context: AssociationContext | None = None


class UploadProgressResponse(BaseModelSchema):
    """Schema for one file's progress."""

    session_id: UUID
    file_id: UUID | None = None
    file_name: str
    mime_type: str
    status: str
    bytes_uploaded: int
    total_bytes: int
    chunk_size_bytes: int
    chunk_index: int | None = None
    total_chunks: int
    upload_speed_bps: int
    eta_seconds: int | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_updated_at: datetime

    @property
    def percent_complete(self) -> float:
        if self.total_bytes <= 0:
            return 100.0 if self.status == "COMPLETED" else 0.0
        return round(min(self.bytes_uploaded, self.total_bytes) * 100 / self.total_bytes, 2)

    @property
    def remaining_bytes(self) -> int:
        return max(0, self.total_bytes - self.bytes_uploaded)

    @property
    def upload_speed_formatted(self) -> str:
        return f"{format_bytes(self.upload_speed_bps)}/s"


class UploadSessionResponse(BaseModelSchema):
    """Schema for a session and its progress rows."""

    tenant_id: UUID
    owner_id: UUID
    session_name: str | None = None
    chatroom_id: UUID | None = None
    thread_id: UUID | None = None
    access_type: str = "PRIVATE"
    total_files: int
    completed_files: int
    failed_files: int
    total_size_bytes: int
    uploaded_size_bytes: int
    status: str
    completed_at: datetime | None = None
    progress: list[UploadProgressResponse] = []
