"""
File model for deduplicated, tenant-owned content.
"""

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, String, text

from .base import UUID, BaseModel


class File(BaseModel):
    """
    Represents one stored blob of content within a tenant.

    A File is immutable once committed except for ``tombstoned_at``. At most
    one live (non-tombstoned) File exists per ``(tenant_id, content_hash)``;
    sharing the same content again only adds a :class:`FileAssociation`.
    """

    __tablename__ = "files"
    __table_args__ = (
        Index(
            "uq_files_tenant_hash_live",
            "tenant_id",
            "content_hash",
            unique=True,
            postgresql_where=text("tombstoned_at IS NULL"),
            sqlite_where=text("tombstoned_at IS NULL"),
        ),
    )

    tenant_id = Column(UUID(), ForeignKey("tenants.id"), nullable=False, index=True)
    uploader_id = Column(UUID(), ForeignKey("users.id"), nullable=False, index=True)
    content_hash = Column(String(64), nullable=False, index=True)
    size_bytes = Column(BigInteger, nullable=False)
    storage_key = Column(String(500), nullable=False)
    storage_bucket = Column(String(100), nullable=False)
    mime_type = Column(String(100), nullable=False, default="application/octet-stream")
    original_name = Column(String(255), nullable=False)
    tombstoned_at = Column(DateTime, nullable=True, index=True)
