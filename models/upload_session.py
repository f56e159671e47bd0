"""
UploadSession model: a batch of files declared for upload together.
"""

from enum import Enum

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String

from .base import UUID, BaseModel


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class UploadSession(BaseModel):
    """
    Aggregate row for a set of :class:`UploadProgress` records.

    ``completed_files``, ``failed_files`` and ``uploaded_size_bytes`` are
    derived from the child progress rows and recomputed whenever one of them
    changes. ``total_size_bytes`` is the size declared at creation.
    ``chatroom_id``, ``thread_id`` and ``access_type`` are the share context
    given to every association the session creates.
    """

    __tablename__ = "upload_sessions"

    tenant_id = Column(UUID(), ForeignKey("tenants.id"), nullable=False, index=True)
    owner_id = Column(UUID(), ForeignKey("users.id"), nullable=False, index=True)
    session_name = Column(String(255))
    chatroom_id = Column(UUID(), index=True)
    thread_id = Column(UUID(), index=True)
    access_type = Column(String(20), nullable=False, default="PRIVATE")
    total_files = Column(Integer, nullable=False, default=0)
    completed_files = Column(Integer, nullable=False, default=0)
    failed_files = Column(Integer, nullable=False, default=0)
    total_size_bytes = Column(BigInteger, nullable=False, default=0)
    uploaded_size_bytes = Column(BigInteger, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=SessionStatus.ACTIVE.value, index=True)
    completed_at = Column(DateTime)
