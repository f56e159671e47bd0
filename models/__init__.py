"""
Models package initialization.
"""

from .base import Base, BaseModel, utcnow
from .download_token import DownloadToken
from .file import File
from .file_association import AccessType, FileAssociation
from .storage_quota import StorageQuota
from .tenant import Tenant, TenantPlan
from .upload_progress import UploadProgress, UploadStatus
from .upload_session import SessionStatus, UploadSession
from .user import User

__all__ = [
    "Base",
    "BaseModel",
    "utcnow",
    "Tenant",
    "TenantPlan",
    "User",
    "File",
    "FileAssociation",
    "AccessType",
    "StorageQuota",
    "UploadSession",
    "SessionStatus",
    "UploadProgress",
    "UploadStatus",
    "DownloadToken",
]
