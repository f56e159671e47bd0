"""
StorageQuota model: the per-tenant quota ledger row.
"""

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer

from .base import UUID, BaseModel, utcnow


class StorageQuota(BaseModel):
    """
    Incrementally maintained storage counters for one tenant.

    ``used_bytes`` and ``file_count`` are adjusted on every File commit and
    tombstone and periodically overwritten by a full recount. They may lag
    the true sum of live File sizes transiently.
    """

    __tablename__ = "storage_quotas"

    tenant_id = Column(UUID(), ForeignKey("tenants.id"), nullable=False, unique=True)
    limit_bytes = Column(BigInteger, nullable=False)
    used_bytes = Column(BigInteger, nullable=False, default=0)
    file_count = Column(Integer, nullable=False, default=0)
    last_reconciled_at = Column(DateTime, default=utcnow)
