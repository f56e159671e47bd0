"""
FileAssociation model: links a File to the context it was shared in.
"""

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String

from .base import UUID, BaseModel


class AccessType(str, Enum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"
    RESTRICTED = "RESTRICTED"


class FileAssociation(BaseModel):
    """
    Records that a user shared a File into a chatroom or thread.

    Many associations may point to one File; this is how duplicate uploads
    are surfaced without storing the bytes twice.
    """

    __tablename__ = "file_associations"

    file_id = Column(UUID(), ForeignKey("files.id"), nullable=False, index=True)
    chatroom_id = Column(UUID(), index=True)
    thread_id = Column(UUID(), index=True)
    shared_by = Column(UUID(), ForeignKey("users.id"), nullable=False, index=True)
    access_type = Column(String(20), nullable=False, default=AccessType.PRIVATE.value)
    expires_at = Column(DateTime)
    is_pinned = Column(Boolean, default=False)
