"""
DownloadToken model: a time- and count-limited grant to download one File.
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from .base import UUID, BaseModel


class DownloadToken(BaseModel):
    """
    A redeemable secret bound to exactly one File.

    ``use_count`` only ever grows through a conditional update that checks it
    against ``max_uses`` in the same statement.
    """

    __tablename__ = "download_tokens"

    file_id = Column(UUID(), ForeignKey("files.id"), nullable=False, index=True)
    issued_to = Column(UUID(), ForeignKey("users.id"), nullable=False, index=True)
    secret = Column(String(255), nullable=False, unique=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    max_uses = Column(Integer, nullable=False, default=1)
    use_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime)
    ip_address = Column(String(45))
    user_agent = Column(Text)
