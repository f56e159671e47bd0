"""Download token schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import Field

from .base import BaseSchema


class DownloadTokenRequest(BaseSchema):
    file_id: UUID
    max_uses: int = Field(default=1, ge=1, le=100)
    expires_in: str = Field(default="1h", pattern=r"^\d+[hmd]$")


class DownloadTokenResponse(BaseSchema):
    """What a caller gets back when a token is issued."""

    token: str
    file_id: UUID
    expires_at: datetime
    max_uses: int


class TokenInfo(BaseSchema):
    file_id: UUID
    expires_at: datetime
    max_uses: int
    use_count: int
    remaining_uses: int
    is_expired: bool
    is_exhausted: bool
    is_usable: bool
    last_used_at: datetime | None = None
