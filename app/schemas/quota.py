"""Quota schemas for request/response serialization."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import Field

from app.shared.byte_utils import available_bytes, format_bytes, used_percent

from .base import BaseSchema


class QuotaLevel(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AdmissionResult(BaseSchema):
    """Outcome of an advisory admission check."""

    admitted: bool
    used_bytes: int
    limit_bytes: int
    requested_bytes: int

    @property
    def projected_bytes(self) -> int:
        return self.used_bytes + self.requested_bytes


class QuotaSnapshot(BaseSchema):
    """Read-only view of a tenant's quota ledger."""

    tenant_id: str
    limit_bytes: int
    used_bytes: int
    available_bytes: int
    used_percent: float
    file_count: int
    last_reconciled_at: datetime | None = None
    limit_formatted: str
    used_formatted: str
    available_formatted: str

    @classmethod
    def from_counters(
        cls,
        tenant_id,
        limit_bytes: int,
        used_bytes: int,
        file_count: int,
        last_reconciled_at: datetime | None = None,
    ) -> QuotaSnapshot:
        remaining = available_bytes(used_bytes, limit_bytes)
        return cls(
            tenant_id=str(tenant_id),
            limit_bytes=limit_bytes,
            used_bytes=used_bytes,
            available_bytes=remaining,
            used_percent=used_percent(used_bytes, limit_bytes),
            file_count=file_count,
            last_reconciled_at=last_reconciled_at,
            limit_formatted=format_bytes(limit_bytes),
            used_formatted=format_bytes(used_bytes),
            available_formatted=format_bytes(remaining),
        )


class QuotaStatusResponse(BaseSchema):
    status: QuotaLevel
    used_percent: float
    message: str


class FileUsageItem(BaseSchema):
    id: str
    original_name: str
    size_bytes: int
    size_formatted: str
    mime_type: str
    created_at: datetime | None = None


class MimeUsageItem(BaseSchema):
    mime_type: str
    count: int
    total_bytes: int
    size_formatted: str


class UsageReport(BaseSchema):
    quota: QuotaSnapshot
    largest_files: list[FileUsageItem] = Field(default_factory=list)
    usage_by_type: list[MimeUsageItem] = Field(default_factory=list)
