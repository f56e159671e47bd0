"""Download token service layer."""

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.config import settings
from app.domains.downloads import rules
from app.exceptions.base import ForbiddenError, ValidationError
from app.exceptions.storage import StoredFileNotFoundError, TokenNotFoundError
from app.schemas.download import DownloadTokenResponse, TokenInfo
from app.services.blob_store import BlobStore, get_blob_store
from app.services.tenant_directory import TenantDirectory
from app.shared.byte_utils import parse_ttl
from models.base import utcnow
from models.download_token import DownloadToken
from models.file import File

logger = logging.getLogger(__name__)

DEFAULT_STREAM_CHUNK = 64 * 1024


@dataclass
class DownloadHandle:
    file: File
    stream: AsyncIterator[bytes]

    async def read(self) -> bytes:
        return b"".join([chunk async for chunk in self.stream])


class DownloadTokenService:
    """Issues and redeems time- and count-limited download tokens."""

    def __init__(self, db: AsyncSession, blob_store: BlobStore | None = None):
        self.db = db
        self.blob_store = blob_store or get_blob_store()
        self.directory = TenantDirectory(db)

    async def issue(
        self,
        file_id: UUID,
        issued_to: UUID,
        max_uses: int = 1,
        ttl: str | timedelta | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> DownloadToken:
        """Mint a token for a live file in the caller's tenant."""
        if not 1 <= max_uses <= settings.download_token_max_uses_limit:
            raise ValidationError(
                f"max_uses must be between 1 and {settings.download_token_max_uses_limit}",
                details={"max_uses": max_uses},
            )
        lifetime = parse_ttl(ttl or settings.download_token_default_ttl)

        tenant_id = await self.directory.resolve_tenant_id(issued_to)
        stmt = select(File).where(File.id == file_id).execution_options(populate_existing=True)
        file = (await self.db.execute(stmt)).scalar_one_or_none()
        if not file or file.tombstoned_at is not None:
            raise StoredFileNotFoundError(details={"file_id": str(file_id)})
        if file.tenant_id != tenant_id:
            raise ForbiddenError("File belongs to another tenant")

        token = DownloadToken(
            file_id=file.id,
            issued_to=issued_to,
            secret=rules.generate_secret(settings.download_token_length),
            expires_at=utcnow() + lifetime,
            max_uses=max_uses,
            use_count=0,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            self.db.add(token)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(f"Issued download token for file {file.id} to user {issued_to} (max_uses={max_uses})")
        return token

    async def issue_download_token(
        self, file_id: UUID, issued_to: UUID, max_uses: int = 1, ttl: str | timedelta | None = None
    ) -> DownloadTokenResponse:
        token = await self.issue(file_id, issued_to, max_uses=max_uses, ttl=ttl)
        return DownloadTokenResponse(
            token=token.secret,
            file_id=token.file_id,
            expires_at=token.expires_at,
            max_uses=token.max_uses,
        )

    async def redeem(self, secret: str) -> File:
        """Consume one use of a token and return its file.

        The use is taken by a single conditional UPDATE, so concurrent
        redemptions can never exceed ``max_uses``.
        """
        now = utcnow()
        stmt = (
            update(DownloadToken)
            .where(
                DownloadToken.secret == secret,
                DownloadToken.use_count < DownloadToken.max_uses,
                DownloadToken.expires_at >= now,
            )
            .values(use_count=DownloadToken.use_count + 1, last_used_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        if not result.rowcount:
            await self.db.rollback()
            raise await self._rejection(secret, now)

        file_stmt = (
            select(File)
            .join(DownloadToken, DownloadToken.file_id == File.id)
            .where(DownloadToken.secret == secret)
            .execution_options(populate_existing=True)
        )
        file = (await self.db.execute(file_stmt)).scalar_one_or_none()
        if not file or file.tombstoned_at is not None:
            await self.db.rollback()
            raise StoredFileNotFoundError("File is no longer available")

        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(f"Download token redeemed for file {file.id}")
        return file

    async def open_download(self, secret: str, chunk_size: int = DEFAULT_STREAM_CHUNK) -> DownloadHandle:
        """Redeem a token and stream the file from blob storage in chunks."""
        file = await self.redeem(secret)
        return DownloadHandle(file=file, stream=self.blob_store.stream(file.storage_key, chunk_size))

    async def redeem_download_token(self, secret: str) -> AsyncIterator[bytes]:
        handle = await self.open_download(secret)
        return handle.stream

    async def redeem_to_url(self, secret: str, ttl_seconds: int = 300) -> tuple[File, str]:
        file = await self.redeem(secret)
        url = await self.blob_store.sign(file.storage_key, ttl_seconds)
        return file, url

    async def get_token_info(self, secret: str) -> TokenInfo:
        token = await self._get_token(secret)
        now = utcnow()
        return TokenInfo(
            file_id=token.file_id,
            expires_at=token.expires_at,
            max_uses=token.max_uses,
            use_count=token.use_count,
            remaining_uses=rules.remaining_uses(token.use_count, token.max_uses),
            is_expired=rules.is_expired(token.expires_at, now),
            is_exhausted=rules.is_exhausted(token.use_count, token.max_uses),
            is_usable=rules.is_usable(token.expires_at, token.use_count, token.max_uses, now),
            last_used_at=token.last_used_at,
        )

    async def _get_token(self, secret: str) -> DownloadToken:
        stmt = (
            select(DownloadToken)
            .where(DownloadToken.secret == secret)
            .execution_options(populate_existing=True)
        )
        token = (await self.db.execute(stmt)).scalar_one_or_none()
        if not token:
            raise TokenNotFoundError()
        return token

    async def _rejection(self, secret: str, now: datetime) -> Exception:
        token = await self._get_token(secret)
        logger.info(f"Rejected download token for file {token.file_id}")
        return rules.rejection_for(token.expires_at, token.use_count, token.max_uses, now)
