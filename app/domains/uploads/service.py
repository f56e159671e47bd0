"""Upload session service layer.

A session groups the files a user declared together. Each file gets an
:class:`UploadProgress` row that moves through the state machine in
:mod:`app.domains.uploads.state`; the session row carries counters derived
from its progress rows and is recomputed, under a row lock, every time one of
them changes.

Chunk bytes may be sent along with :meth:`UploadSessionService.report_chunk`.
They are staged in the blob store under ``staging/{progress_id}/`` and, once
the last chunk arrives, assembled and handed to :class:`FileService`. Callers
that upload bytes elsewhere report progress only and finish with
:meth:`UploadSessionService.complete_file`.
"""

import logging
from datetime import timedelta
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.config import settings
from app.domains.files.dedup import compute_content_hash
from app.domains.files.service import FileService
from app.domains.uploads.state import aggregate_session, ensure_transition, is_terminal, smoothed_speed
from app.exceptions.base import ForbiddenError, NotFoundError, ValidationError
from app.exceptions.storage import (
    BlobStoreError,
    InvalidChunkError,
    QuotaExceededError,
    SessionNotActiveError,
    StoredFileNotFoundError,
    UploadSessionNotFoundError,
)
from app.schemas.file import AssociationContext
from app.schemas.upload import InitiateUploadRequest, UploadFileSpec, UploadProgressResponse, UploadSessionResponse
from app.services.blob_store import BlobStore, get_blob_store
from app.services.tenant_directory import TenantDirectory
from app.shared.byte_utils import chunk_count, estimate_eta_seconds, format_bytes
from models.base import utcnow
from models.file_association import AccessType
from models.upload_progress import UploadProgress, UploadStatus
from models.upload_session import SessionStatus, UploadSession

logger = logging.getLogger(__name__)

STALE_ERROR_MESSAGE = "Upload timed out"


def staging_key(progress_id: UUID, chunk_index: int) -> str:
    return f"staging/{progress_id}/{chunk_index:06d}"


def share_context(session: UploadSession) -> AssociationContext:
    return AssociationContext(
        chatroom_id=session.chatroom_id,
        thread_id=session.thread_id,
        access_type=AccessType(session.access_type),
    )


class UploadSessionService:
    """Service class for upload sessions and per-file progress."""

    def __init__(self, db: AsyncSession, blob_store: BlobStore | None = None):
        self.db = db
        self.blob_store = blob_store or get_blob_store()
        self.directory = TenantDirectory(db)
        self.files = FileService(db, self.blob_store)

    # ---- session creation ----

    async def create_session(
        self,
        owner_id: UUID,
        files: list[UploadFileSpec],
        session_name: str | None = None,
        context: AssociationContext | None = None,
    ) -> UploadSession:
        """Declare a batch of files. Every file starts PENDING.

        ``context`` is where the finished files are shared; it is kept on the
        session and applied to each association the session creates.
        """
        if not files:
            raise ValidationError("An upload session needs at least one file")
        if len(files) > settings.max_files_per_session:
            raise ValidationError(
                f"Too many files. Maximum {settings.max_files_per_session} files allowed per session",
                details={"files": len(files), "max_files": settings.max_files_per_session},
            )
        for spec in files:
            if spec.total_size_bytes > settings.max_file_size_bytes:
                raise ValidationError(
                    f"File size exceeds maximum allowed size of {format_bytes(settings.max_file_size_bytes)}",
                    details={"file_name": spec.file_name, "size_bytes": spec.total_size_bytes},
                )

        tenant_id = await self.directory.resolve_tenant_id(owner_id)
        total_size = sum(spec.total_size_bytes for spec in files)
        await self.files.quota.enforce_admission(tenant_id, total_size)

        context = context or AssociationContext()
        session = UploadSession(
            tenant_id=tenant_id,
            owner_id=owner_id,
            session_name=session_name,
            chatroom_id=context.chatroom_id,
            thread_id=context.thread_id,
            access_type=context.access_type.value,
            total_files=len(files),
            completed_files=0,
            failed_files=0,
            total_size_bytes=total_size,
            uploaded_size_bytes=0,
            status=SessionStatus.ACTIVE.value,
        )

        try:
            self.db.add(session)
            await self.db.flush()

            now = utcnow()
            for spec in files:
                chunk_size = spec.chunk_size_bytes or settings.default_chunk_size_bytes
                self.db.add(
                    UploadProgress(
                        session_id=session.id,
                        file_name=spec.file_name,
                        mime_type=spec.mime_type,
                        checksum=spec.checksum,
                        status=UploadStatus.PENDING.value,
                        bytes_uploaded=0,
                        staged_bytes=0,
                        total_bytes=spec.total_size_bytes,
                        chunk_size_bytes=chunk_size,
                        total_chunks=chunk_count(spec.total_size_bytes, chunk_size),
                        upload_speed_bps=0,
                        last_updated_at=now,
                    )
                )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(
            f"Created upload session {session.id} for user {owner_id}: "
            f"{len(files)} files, {format_bytes(total_size)}"
        )
        return session

    async def initiate_upload(self, owner_id: UUID, request: InitiateUploadRequest) -> UploadSession:
        spec = UploadFileSpec(
            file_name=request.file_name,
            total_size_bytes=request.total_size_bytes,
            chunk_size_bytes=request.chunk_size_bytes,
            mime_type=request.mime_type,
            checksum=request.checksum,
        )
        return await self.create_session(
            owner_id, [spec], session_name=request.session_name, context=request.context
        )

    # ---- progress reporting ----

    async def report_chunk(
        self,
        session_id: UUID,
        chunk_index: int,
        bytes_in_chunk: int,
        *,
        data: bytes | None = None,
        progress_id: UUID | None = None,
        user_id: UUID | None = None,
    ) -> UploadProgress:
        """Record one chunk. Chunks must arrive in order and never overflow the declared size."""
        session = await self._get_active_session(session_id, user_id)
        progress = await self._get_progress(session.id, progress_id)
        ensure_transition(progress.status, UploadStatus.UPLOADING)

        self._validate_chunk(progress, chunk_index, bytes_in_chunk, data)

        # Captured before any rollback can expire the instances.
        session_id, tenant_id, owner_id = session.id, session.tenant_id, session.owner_id
        context = share_context(session)
        progress_id = progress.id

        if data is not None:
            try:
                await self.blob_store.put(staging_key(progress_id, chunk_index), data, "application/octet-stream")
            except BlobStoreError as e:
                await self._mark_failed(session_id, progress_id, f"Chunk {chunk_index} could not be stored: {e.message}")
                raise
            progress.staged_bytes += bytes_in_chunk

        now = utcnow()
        if progress.status == UploadStatus.PENDING.value:
            progress.status = UploadStatus.UPLOADING.value
            progress.started_at = now
        else:
            elapsed = (now - progress.last_updated_at).total_seconds()
            if elapsed > 0:
                speed = smoothed_speed(
                    progress.upload_speed_bps, bytes_in_chunk / elapsed, settings.upload_speed_smoothing
                )
                progress.upload_speed_bps = int(round(speed))

        progress.bytes_uploaded += bytes_in_chunk
        progress.chunk_index = chunk_index
        progress.eta_seconds = estimate_eta_seconds(
            progress.total_bytes - progress.bytes_uploaded, progress.upload_speed_bps
        )
        progress.last_updated_at = now

        try:
            await self._refresh_session(session_id)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        if progress.bytes_uploaded < progress.total_bytes:
            return progress

        if data is not None:
            return await self._finalize_staged(session_id, tenant_id, owner_id, progress_id, context)

        logger.debug(f"Progress {progress_id} received all bytes; waiting for completion")
        return progress

    async def complete_file(
        self,
        session_id: UUID,
        *,
        progress_id: UUID | None = None,
        file_id: UUID | None = None,
        content_hash: str | None = None,
        content: bytes | None = None,
        user_id: UUID | None = None,
    ) -> UploadProgress:
        """Complete a progress from raw bytes, or by pointing at an existing live file."""
        given = [value for value in (file_id, content_hash, content) if value is not None]
        if len(given) != 1:
            raise ValidationError("Provide exactly one of file_id, content_hash or content")

        session = await self._get_active_session(session_id, user_id)
        progress = await self._get_progress(session.id, progress_id)
        ensure_transition(progress.status, UploadStatus.COMPLETED)

        session_id, tenant_id, owner_id = session.id, session.tenant_id, session.owner_id
        progress_id = progress.id
        context = share_context(session)

        if content is not None:
            if len(content) != progress.total_bytes:
                raise ValidationError(
                    "Content size does not match the declared size",
                    details={"expected": progress.total_bytes, "received": len(content)},
                )
            stored_file_id = await self._store(
                session_id, tenant_id, owner_id, progress_id,
                content, progress.file_name, progress.mime_type, progress.checksum, context,
            )
            completed = await self._complete(session_id, progress_id, stored_file_id)
            await self._discard_staging(completed)
            return completed

        if file_id is not None:
            existing = await self.files.dedup.find_live_file(tenant_id, file_id)
        else:
            existing = (await self.files.dedup.resolve_hash(tenant_id, content_hash)).existing
        if not existing:
            raise StoredFileNotFoundError(
                details={"file_id": str(file_id) if file_id else None, "content_hash": content_hash}
            )

        await self.files.add_association(existing.id, owner_id, context)
        logger.info(f"Progress {progress_id} resolved to existing file {existing.id}")
        completed = await self._complete(session_id, progress_id, existing.id)
        await self._discard_staging(completed)
        return completed

    async def fail_progress(
        self, session_id: UUID, progress_id: UUID, error_message: str, user_id: UUID | None = None
    ) -> UploadProgress:
        session = await self._get_session_row(session_id)
        self._check_owner(session, user_id)
        progress = await self._get_progress(session.id, progress_id)
        ensure_transition(progress.status, UploadStatus.FAILED)
        progress = await self._mark_failed(session.id, progress.id, error_message)
        await self._discard_staging(progress)
        return progress

    async def cancel_progress(
        self, session_id: UUID, progress_id: UUID, user_id: UUID | None = None
    ) -> UploadProgress:
        session = await self._get_session_row(session_id)
        self._check_owner(session, user_id)
        progress = await self._get_progress(session.id, progress_id)
        ensure_transition(progress.status, UploadStatus.CANCELLED)

        now = utcnow()
        progress.status = UploadStatus.CANCELLED.value
        progress.eta_seconds = None
        progress.last_updated_at = now

        try:
            await self._refresh_session(session.id)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        await self._discard_staging(progress)
        logger.info(f"Cancelled upload progress {progress.id}")
        return progress

    async def cancel_session(self, session_id: UUID, user_id: UUID) -> UploadSession:
        """Cancel a session and every file in it that has not finished. Owner only."""
        session = await self._get_session_row(session_id, lock=True)
        if session.owner_id != user_id:
            raise ForbiddenError("Only the session owner may cancel it")
        if session.status != SessionStatus.ACTIVE.value:
            raise SessionNotActiveError(session.id, session.status)

        progress_rows = await self._list_progress(session.id)
        now = utcnow()
        cancelled = []
        for progress in progress_rows:
            if is_terminal(progress.status):
                continue
            progress.status = UploadStatus.CANCELLED.value
            progress.eta_seconds = None
            progress.last_updated_at = now
            cancelled.append(progress)

        session.status = SessionStatus.CANCELLED.value
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        for progress in cancelled:
            await self._discard_staging(progress)
        logger.info(f"Cancelled upload session {session.id} ({len(cancelled)} files)")
        return session

    async def sweep_stale_progress(self, stale_after: timedelta | None = None) -> int:
        """Fail UPLOADING rows that stopped reporting. Safe to run from several workers."""
        stale_after = stale_after or timedelta(hours=settings.upload_stale_after_hours)
        now = utcnow()
        cutoff = now - stale_after

        result = await self.db.execute(
            select(UploadProgress.id, UploadProgress.session_id).where(
                UploadProgress.status == UploadStatus.UPLOADING.value,
                UploadProgress.last_updated_at < cutoff,
            )
        )
        rows = result.all()
        if not rows:
            return 0

        stmt = (
            update(UploadProgress)
            .where(
                UploadProgress.id.in_([row[0] for row in rows]),
                UploadProgress.status == UploadStatus.UPLOADING.value,
            )
            .values(
                status=UploadStatus.FAILED.value,
                error_message=STALE_ERROR_MESSAGE,
                eta_seconds=None,
                last_updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            swept = (await self.db.execute(stmt)).rowcount
            for session_id in {row[1] for row in rows}:
                await self._refresh_session(session_id)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(f"Cleaned up {swept} stale upload progress records")
        return swept

    # ---- views ----

    async def get_session(self, session_id: UUID, user_id: UUID | None = None) -> UploadSession:
        session = await self._get_session_row(session_id)
        self._check_owner(session, user_id)
        return session

    async def get_session_progress(
        self, session_id: UUID, user_id: UUID | None = None
    ) -> list[UploadProgress]:
        session = await self.get_session(session_id, user_id)
        return await self._list_progress(session.id)

    async def describe_session(self, session_id: UUID, user_id: UUID | None = None) -> UploadSessionResponse:
        session = await self.get_session(session_id, user_id)
        progress = await self._list_progress(session.id)
        response = UploadSessionResponse.model_validate(session)
        response.progress = [UploadProgressResponse.model_validate(p) for p in progress]
        return response

    async def get_active_uploads(self, user_id: UUID) -> list[UploadProgress]:
        stmt = (
            select(UploadProgress)
            .join(UploadSession, UploadSession.id == UploadProgress.session_id)
            .where(
                UploadSession.owner_id == user_id,
                UploadProgress.status == UploadStatus.UPLOADING.value,
            )
            .order_by(UploadProgress.last_updated_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # ---- internals ----

    async def _get_session_row(self, session_id: UUID, lock: bool = False) -> UploadSession:
        stmt = (
            select(UploadSession)
            .where(UploadSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        session = (await self.db.execute(stmt)).scalar_one_or_none()
        if not session:
            raise UploadSessionNotFoundError(details={"session_id": str(session_id)})
        return session

    async def _get_active_session(self, session_id: UUID, user_id: UUID | None) -> UploadSession:
        session = await self._get_session_row(session_id)
        self._check_owner(session, user_id)
        if session.status != SessionStatus.ACTIVE.value:
            raise SessionNotActiveError(session.id, session.status)
        return session

    @staticmethod
    def _check_owner(session: UploadSession, user_id: UUID | None) -> None:
        if user_id is not None and session.owner_id != user_id:
            raise ForbiddenError("Upload session belongs to another user")

    async def _get_progress(self, session_id: UUID, progress_id: UUID | None) -> UploadProgress:
        if progress_id is None:
            rows = await self._list_progress(session_id)
            if len(rows) != 1:
                raise ValidationError("progress_id is required for multi-file sessions")
            return rows[0]

        stmt = (
            select(UploadProgress)
            .where(UploadProgress.id == progress_id, UploadProgress.session_id == session_id)
            .execution_options(populate_existing=True)
        )
        progress = (await self.db.execute(stmt)).scalar_one_or_none()
        if not progress:
            raise NotFoundError("Upload progress not found", details={"progress_id": str(progress_id)})
        return progress

    async def _list_progress(self, session_id: UUID) -> list[UploadProgress]:
        stmt = (
            select(UploadProgress)
            .where(UploadProgress.session_id == session_id)
            .order_by(UploadProgress.created_at, UploadProgress.file_name)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def _validate_chunk(progress: UploadProgress, chunk_index: int, bytes_in_chunk: int, data: bytes | None) -> None:
        expected = 0 if progress.chunk_index is None else progress.chunk_index + 1
        if chunk_index != expected:
            raise InvalidChunkError(
                "Chunk out of sequence",
                details={"expected": expected, "received": chunk_index},
            )
        if bytes_in_chunk < 0 or (bytes_in_chunk == 0 and progress.total_bytes > 0):
            raise InvalidChunkError("Chunk must carry bytes", details={"bytes_in_chunk": bytes_in_chunk})
        if progress.bytes_uploaded + bytes_in_chunk > progress.total_bytes:
            raise InvalidChunkError(
                "Chunk exceeds the declared file size",
                details={
                    "total_bytes": progress.total_bytes,
                    "bytes_uploaded": progress.bytes_uploaded,
                    "bytes_in_chunk": bytes_in_chunk,
                },
            )
        if data is not None and len(data) != bytes_in_chunk:
            raise InvalidChunkError(
                "Chunk data does not match the reported size",
                details={"bytes_in_chunk": bytes_in_chunk, "received": len(data)},
            )
        # Staging is all-or-nothing per file.
        if data is None and progress.staged_bytes > 0:
            raise InvalidChunkError("Chunk data missing for a staged upload")
        if data is not None and progress.staged_bytes != progress.bytes_uploaded:
            raise InvalidChunkError("Earlier chunks were reported without data")

    async def _finalize_staged(
        self,
        session_id: UUID,
        tenant_id: UUID,
        owner_id: UUID,
        progress_id: UUID,
        context: AssociationContext,
    ) -> UploadProgress:
        progress = await self._get_progress(session_id, progress_id)
        keys = [staging_key(progress_id, i) for i in range((progress.chunk_index or 0) + 1)]
        file_name, mime_type, checksum = progress.file_name, progress.mime_type, progress.checksum

        try:
            parts = [await self.blob_store.get(key) for key in keys]
        except BlobStoreError as e:
            await self._mark_failed(session_id, progress_id, f"Could not assemble upload: {e.message}")
            await self._delete_keys(keys)
            raise

        try:
            stored_file_id = await self._store(
                session_id, tenant_id, owner_id, progress_id,
                b"".join(parts), file_name, mime_type, checksum, context,
            )
        finally:
            await self._delete_keys(keys)

        return await self._complete(session_id, progress_id, stored_file_id)

    async def _store(
        self,
        session_id: UUID,
        tenant_id: UUID,
        owner_id: UUID,
        progress_id: UUID,
        content: bytes,
        file_name: str,
        mime_type: str,
        checksum: str | None,
        context: AssociationContext,
    ) -> UUID:
        if checksum and compute_content_hash(content) != checksum:
            await self._mark_failed(session_id, progress_id, "Checksum mismatch")
            raise ValidationError("Checksum mismatch", details={"progress_id": str(progress_id)})

        try:
            result = await self.files.store_content(
                tenant_id, owner_id, content, file_name, mime_type, context=context
            )
        except (QuotaExceededError, BlobStoreError) as e:
            await self._mark_failed(session_id, progress_id, e.message)
            raise
        return result.file.id

    async def _complete(self, session_id: UUID, progress_id: UUID, file_id: UUID) -> UploadProgress:
        progress = await self._get_progress(session_id, progress_id)
        ensure_transition(progress.status, UploadStatus.COMPLETED)

        now = utcnow()
        progress.status = UploadStatus.COMPLETED.value
        progress.file_id = file_id
        progress.bytes_uploaded = progress.total_bytes
        progress.eta_seconds = 0
        progress.completed_at = now
        progress.last_updated_at = now
        if progress.started_at is None:
            progress.started_at = now

        try:
            await self._refresh_session(session_id)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(f"Upload progress {progress_id} completed with file {file_id}")
        return progress

    async def _mark_failed(self, session_id: UUID, progress_id: UUID, error_message: str) -> UploadProgress:
        progress = await self._get_progress(session_id, progress_id)
        ensure_transition(progress.status, UploadStatus.FAILED)

        progress.status = UploadStatus.FAILED.value
        progress.error_message = error_message
        progress.eta_seconds = None
        progress.last_updated_at = utcnow()

        try:
            await self._refresh_session(session_id)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.warning(f"Upload progress {progress_id} failed: {error_message}")
        return progress

    async def _refresh_session(self, session_id: UUID) -> None:
        """Recompute session counters from its progress rows.

        Counters always follow the children; the status only moves while the
        session is ACTIVE.
        """
        session = await self._get_session_row(session_id, lock=True)
        result = await self.db.execute(
            select(UploadProgress.status, UploadProgress.bytes_uploaded).where(
                UploadProgress.session_id == session_id
            )
        )
        rows = result.all()
        totals = aggregate_session(
            session.total_files,
            [row[0] for row in rows],
            [row[1] for row in rows],
        )

        session.completed_files = totals.completed_files
        session.failed_files = totals.failed_files
        session.uploaded_size_bytes = totals.uploaded_size_bytes
        if session.status == SessionStatus.ACTIVE.value and totals.status != SessionStatus.ACTIVE:
            session.status = totals.status.value
            if totals.status == SessionStatus.COMPLETED:
                session.completed_at = utcnow()
            logger.info(f"Upload session {session_id} is now {totals.status.value}")

    async def _discard_staging(self, progress: UploadProgress) -> None:
        if not progress.staged_bytes or progress.chunk_index is None:
            return
        await self._delete_keys([staging_key(progress.id, i) for i in range(progress.chunk_index + 1)])

    async def _delete_keys(self, keys: list[str]) -> None:
        for key in keys:
            try:
                await self.blob_store.delete(key)
            except BlobStoreError as e:
                logger.warning(f"Could not delete staged chunk {key}: {e.message}")
