"""File and association schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import Field, model_validator

from models.file_association import AccessType

from .base import BaseModelSchema, BaseSchema


class AssociationContext(BaseSchema):
    """Where a file is being shared."""

    chatroom_id: UUID | None = None
    thread_id: UUID | None = None
    access_type: AccessType = AccessType.PRIVATE
    expires_at: datetime | None = None
    is_pinned: bool = False

    @model_validator(mode="after")
    def validate_scope(self):
        if self.chatroom_id and self.thread_id:
            raise ValueError("A file is shared into a chatroom or a thread, not both")
        return self


class FileResponse(BaseModelSchema):
    tenant_id: UUID
    uploader_id: UUID
    content_hash: str = Field(..., min_length=64, max_length=64)
    size_bytes: int
    mime_type: str
    original_name: str
    tombstoned_at: datetime | None = None


class FileAssociationResponse(BaseModelSchema):
    file_id: UUID
    chatroom_id: UUID | None = None
    thread_id: UUID | None = None
    shared_by: UUID
    access_type: str
    expires_at: datetime | None = None
    is_pinned: bool | None = False
