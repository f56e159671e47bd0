"""File service: the commit pipeline from raw bytes to a deduplicated File."""

import logging
import re
import time
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.domains.files.dedup import DedupResolution, HashDeduplicator
from app.domains.quota.service import QuotaService
from app.exceptions.base import ForbiddenError
from app.exceptions.storage import BlobStoreError, StoredFileNotFoundError
from app.schemas.file import AssociationContext
from app.services.blob_store import BlobStore, get_blob_store
from app.services.tenant_directory import TenantDirectory
from app.shared.byte_utils import format_bytes
from models.base import utcnow
from models.file import File
from models.file_association import FileAssociation

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def build_storage_key(tenant_id: UUID, user_id: UUID, original_name: str, timestamp_ms: int | None = None) -> str:
    """``tenants/{tenant}/users/{user}/{ts}_{sanitized}.{ext}``"""
    timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    stem, dot, extension = original_name.rpartition(".")
    if not dot or not stem:
        stem, extension = original_name, "bin"
    sanitized = _UNSAFE_NAME_CHARS.sub("_", stem)[:100] or "file"
    extension = _UNSAFE_NAME_CHARS.sub("_", extension).lower() or "bin"
    return f"tenants/{tenant_id}/users/{user_id}/{timestamp_ms}_{sanitized}.{extension}"


@dataclass
class StoreResult:
    file: File
    association: FileAssociation
    duplicate: bool


class FileService:
    """Service class for stored files and their associations."""

    def __init__(self, db: AsyncSession, blob_store: BlobStore | None = None):
        self.db = db
        self.blob_store = blob_store or get_blob_store()
        self.dedup = HashDeduplicator(db)
        self.quota = QuotaService(db)
        self.directory = TenantDirectory(db)

    async def store_content(
        self,
        tenant_id: UUID,
        uploader_id: UUID,
        content: bytes,
        file_name: str,
        mime_type: str = "application/octet-stream",
        context: AssociationContext | None = None,
    ) -> StoreResult:
        """Store ``content`` for a tenant, reusing a live duplicate when one exists.

        Admission runs before any blob write, and the ledger only moves once the
        File row has been inserted in the same transaction.
        """
        resolution = await self.dedup.resolve(tenant_id, content)
        if resolution.is_duplicate:
            return await self._store_duplicate(resolution.existing, uploader_id, context)

        size_bytes = len(content)
        await self.quota.enforce_admission(tenant_id, size_bytes)

        storage_key = build_storage_key(tenant_id, uploader_id, file_name)
        await self.blob_store.put(storage_key, content, mime_type)

        file = File(
            tenant_id=tenant_id,
            uploader_id=uploader_id,
            content_hash=resolution.content_hash,
            size_bytes=size_bytes,
            storage_key=storage_key,
            storage_bucket=self.blob_store.bucket_name,
            mime_type=mime_type,
            original_name=file_name,
        )
        self.db.add(file)
        try:
            await self.db.flush()
        except IntegrityError:
            # Another writer committed the same content first.
            await self.db.rollback()
            await self._discard_blob(storage_key)
            return await self._resolve_race(tenant_id, resolution.content_hash, uploader_id, context)

        try:
            await self.quota.commit(tenant_id, size_bytes, 1)
            association = self._build_association(file.id, uploader_id, context)
            self.db.add(association)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            await self._discard_blob(storage_key)
            raise

        logger.info(
            f"Stored file {file.id} for tenant {tenant_id}: {file_name} ({format_bytes(size_bytes)})"
        )
        return StoreResult(file=file, association=association, duplicate=False)

    async def add_association(
        self, file_id: UUID, shared_by: UUID, context: AssociationContext | None = None
    ) -> FileAssociation:
        tenant_id = await self.directory.resolve_tenant_id(shared_by)
        file = await self.get_file(file_id, tenant_id)

        association = self._build_association(file.id, shared_by, context)
        try:
            self.db.add(association)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        return association

    async def tombstone_file(self, file_id: UUID, actor_id: UUID) -> bool:
        """Soft-delete a file. Returns True only for the call that tombstoned it."""
        tenant_id = await self.directory.resolve_tenant_id(actor_id)
        result = await self.db.execute(select(File).where(File.id == file_id))
        file = result.scalar_one_or_none()
        if not file:
            raise StoredFileNotFoundError(details={"file_id": str(file_id)})
        if file.tenant_id != tenant_id:
            raise ForbiddenError("File belongs to another tenant")
        if file.uploader_id != actor_id:
            raise ForbiddenError("Only the uploader may delete this file")

        stmt = (
            update(File)
            .where(File.id == file_id, File.tombstoned_at.is_(None))
            .values(tombstoned_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            outcome = await self.db.execute(stmt)
            tombstoned = bool(outcome.rowcount)
            if tombstoned:
                await self.quota.commit(file.tenant_id, -file.size_bytes, -1)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        if tombstoned:
            logger.info(f"Tombstoned file {file_id} ({format_bytes(file.size_bytes)}) for tenant {tenant_id}")
        return tombstoned

    async def get_file(self, file_id: UUID, tenant_id: UUID) -> File:
        file = await self.dedup.find_live_file(tenant_id, file_id)
        if not file:
            raise StoredFileNotFoundError(details={"file_id": str(file_id)})
        return file

    async def list_associations(self, file_id: UUID) -> list[FileAssociation]:
        stmt = (
            select(FileAssociation)
            .where(FileAssociation.file_id == file_id)
            .order_by(FileAssociation.created_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _store_duplicate(
        self, existing: File, uploader_id: UUID, context: AssociationContext | None
    ) -> StoreResult:
        association = self._build_association(existing.id, uploader_id, context)
        try:
            self.db.add(association)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        logger.info(f"File {existing.id} already exists, association created for user {uploader_id}")
        return StoreResult(file=existing, association=association, duplicate=True)

    async def _resolve_race(
        self,
        tenant_id: UUID,
        content_hash: str,
        uploader_id: UUID,
        context: AssociationContext | None,
    ) -> StoreResult:
        resolution: DedupResolution = await self.dedup.resolve_hash(tenant_id, content_hash)
        if not resolution.is_duplicate:
            raise StoredFileNotFoundError(
                "Concurrent upload of identical content could not be resolved",
                details={"content_hash": content_hash},
            )
        return await self._store_duplicate(resolution.existing, uploader_id, context)

    async def _discard_blob(self, storage_key: str) -> None:
        try:
            await self.blob_store.delete(storage_key)
        except BlobStoreError as e:
            logger.warning(f"Could not delete orphan blob {storage_key}: {e.message}")

    @staticmethod
    def _build_association(
        file_id: UUID, shared_by: UUID, context: AssociationContext | None
    ) -> FileAssociation:
        context = context or AssociationContext()
        return FileAssociation(
            file_id=file_id,
            chatroom_id=context.chatroom_id,
            thread_id=context.thread_id,
            shared_by=shared_by,
            access_type=context.access_type.value,
            expires_at=context.expires_at,
            is_pinned=context.is_pinned,
        )
