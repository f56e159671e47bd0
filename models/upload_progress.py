"""
UploadProgress model: per-file progress inside an upload session.
"""

from enum import Enum

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, Text

from .base import UUID, BaseModel, utcnow


class UploadStatus(str, Enum):
    PENDING = "PENDING"
    UPLOADING = "UPLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class UploadProgress(BaseModel):
    """
    Tracks one file of a session through the upload state machine.

    ``file_id`` stays null until the underlying File is committed, either by
    storing new bytes or by resolving to an existing duplicate.
    ``chunk_index`` is the index of the last accepted chunk and is null until
    the first chunk arrives. ``eta_seconds`` is null while the speed is
    unknown. ``staged_bytes`` counts chunk bytes held in blob staging; it
    stays 0 when the client reports progress without sending the data.
    """

    __tablename__ = "upload_progress"

    session_id = Column(UUID(), ForeignKey("upload_sessions.id"), nullable=False, index=True)
    file_id = Column(UUID(), ForeignKey("files.id"), index=True)
    file_name = Column(String(255), nullable=False)
    mime_type = Column(String(100), nullable=False, default="application/octet-stream")
    checksum = Column(String(64))
    status = Column(String(20), nullable=False, default=UploadStatus.PENDING.value, index=True)
    bytes_uploaded = Column(BigInteger, nullable=False, default=0)
    staged_bytes = Column(BigInteger, nullable=False, default=0)
    total_bytes = Column(BigInteger, nullable=False)
    chunk_size_bytes = Column(BigInteger, nullable=False)
    chunk_index = Column(Integer)
    total_chunks = Column(Integer, nullable=False, default=0)
    upload_speed_bps = Column(BigInteger, nullable=False, default=0)
    eta_seconds = Column(Integer)
    error_message = Column(Text)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    last_updated_at = Column(DateTime, nullable=False, default=utcnow, index=True)
