"""Content fingerprinting and duplicate lookup within a tenant."""

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.file import File


def compute_content_hash(content: bytes | Iterable[bytes]) -> str:
    """SHA-256 hex digest of the full byte stream."""
    if isinstance(content, (bytes, bytearray, memoryview)):
        return hashlib.sha256(content).hexdigest()
    return hash_chunks(content)


def hash_chunks(chunks: Iterable[bytes]) -> str:
    digest = hashlib.sha256()
    for chunk in chunks:
        digest.update(chunk)
    return digest.hexdigest()


@dataclass
class DedupResolution:
    """Either an existing live File, or the fingerprint of genuinely new content."""

    content_hash: str
    existing: File | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.existing is not None


class HashDeduplicator:
    """Looks up live files by content hash. Never writes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve(self, tenant_id: UUID, content: bytes | Iterable[bytes]) -> DedupResolution:
        return await self.resolve_hash(tenant_id, compute_content_hash(content))

    async def resolve_hash(self, tenant_id: UUID, content_hash: str) -> DedupResolution:
        stmt = select(File).where(
            File.tenant_id == tenant_id,
            File.content_hash == content_hash,
            File.tombstoned_at.is_(None),
        )
        result = await self.db.execute(stmt)
        return DedupResolution(content_hash=content_hash, existing=result.scalar_one_or_none())

    async def find_live_file(self, tenant_id: UUID, file_id: UUID) -> File | None:
        stmt = select(File).where(
            File.id == file_id,
            File.tenant_id == tenant_id,
            File.tombstoned_at.is_(None),
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
