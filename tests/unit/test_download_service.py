"""
Unit tests for DownloadTokenService.

Redemption failures roll the session back, which expires loaded instances,
so tests read ids into locals before redeeming.
"""

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio

from app.domains.downloads.rules import MIN_SECRET_LENGTH
from app.domains.downloads.service import DownloadTokenService
from app.domains.files.service import FileService
from app.exceptions.base import ForbiddenError, ValidationError
from app.exceptions.storage import (
    StoredFileNotFoundError,
    TokenExhaustedError,
    TokenExpiredError,
    TokenNotFoundError,
)
from models import utcnow
from tests.factories import DownloadTokenFactory, persist

CONTENT = b"downloadable content"


@pytest.fixture
def token_service(test_db, blob_store):
    return DownloadTokenService(test_db, blob_store)


@pytest_asyncio.fixture
async def stored_file(test_db, blob_store, test_tenant, test_user, test_quota):
    result = await FileService(test_db, blob_store).store_content(
        test_tenant.id, test_user.id, CONTENT, "report.pdf", "application/pdf"
    )
    return result.file


class TestIssue:
    @pytest.mark.asyncio
    async def test_issue_token(self, token_service, stored_file, test_user):
        token = await token_service.issue(stored_file.id, test_user.id, max_uses=3, ttl="30m")

        assert len(token.secret) >= MIN_SECRET_LENGTH
        assert token.max_uses == 3
        assert token.use_count == 0
        lifetime = token.expires_at - utcnow()
        assert timedelta(minutes=29) < lifetime <= timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_issue_download_token_response(self, token_service, stored_file, test_user):
        response = await token_service.issue_download_token(stored_file.id, test_user.id)

        assert response.file_id == stored_file.id
        assert response.max_uses == 1
        assert len(response.token) >= MIN_SECRET_LENGTH

    @pytest.mark.asyncio
    async def test_secrets_are_unique(self, token_service, stored_file, test_user):
        first = await token_service.issue(stored_file.id, test_user.id)
        second = await token_service.issue(stored_file.id, test_user.id)

        assert first.secret != second.secret

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_uses", [0, 101])
    async def test_max_uses_bounds(self, token_service, stored_file, test_user, max_uses):
        with pytest.raises(ValidationError):
            await token_service.issue(stored_file.id, test_user.id, max_uses=max_uses)

    @pytest.mark.asyncio
    async def test_invalid_ttl(self, token_service, stored_file, test_user):
        with pytest.raises(ValidationError):
            await token_service.issue(stored_file.id, test_user.id, ttl="forever")

    @pytest.mark.asyncio
    async def test_other_tenant_forbidden(self, token_service, stored_file, other_user):
        with pytest.raises(ForbiddenError):
            await token_service.issue(stored_file.id, other_user.id)

    @pytest.mark.asyncio
    async def test_unknown_file(self, token_service, test_user):
        with pytest.raises(StoredFileNotFoundError):
            await token_service.issue(uuid.uuid4(), test_user.id)

    @pytest.mark.asyncio
    async def test_tombstoned_file(self, test_db, blob_store, token_service, stored_file, test_user):
        await FileService(test_db, blob_store).tombstone_file(stored_file.id, test_user.id)

        with pytest.raises(StoredFileNotFoundError):
            await token_service.issue(stored_file.id, test_user.id)


class TestRedeem:
    @pytest.mark.asyncio
    async def test_redeem_returns_file(self, token_service, stored_file, test_user):
        token = await token_service.issue(stored_file.id, test_user.id)

        file = await token_service.redeem(token.secret)

        assert file.id == stored_file.id
        info = await token_service.get_token_info(token.secret)
        assert info.use_count == 1
        assert info.last_used_at is not None

    @pytest.mark.asyncio
    async def test_exhausted_after_max_uses(self, token_service, stored_file, test_user):
        token = await token_service.issue(stored_file.id, test_user.id, max_uses=2)
        secret = token.secret

        await token_service.redeem(secret)
        await token_service.redeem(secret)
        with pytest.raises(TokenExhaustedError):
            await token_service.redeem(secret)

        info = await token_service.get_token_info(secret)
        assert info.use_count == 2
        assert info.remaining_uses == 0
        assert info.is_exhausted is True
        assert info.is_usable is False

    @pytest.mark.asyncio
    async def test_expired_token(self, test_db, token_service, stored_file, test_user):
        token = DownloadTokenFactory.build(
            file_id=stored_file.id,
            issued_to=test_user.id,
            expires_at=utcnow() - timedelta(seconds=1),
        )
        await persist(test_db, token)
        secret = token.secret

        with pytest.raises(TokenExpiredError):
            await token_service.redeem(secret)

        info = await token_service.get_token_info(secret)
        assert info.use_count == 0
        assert info.is_expired is True

    @pytest.mark.asyncio
    async def test_expiry_reported_before_exhaustion(self, test_db, token_service, stored_file, test_user):
        token = DownloadTokenFactory.build(
            file_id=stored_file.id,
            issued_to=test_user.id,
            expires_at=utcnow() - timedelta(minutes=5),
            max_uses=1,
            use_count=1,
        )
        await persist(test_db, token)

        with pytest.raises(TokenExpiredError):
            await token_service.redeem(token.secret)

    @pytest.mark.asyncio
    async def test_unknown_secret(self, token_service):
        with pytest.raises(TokenNotFoundError):
            await token_service.redeem("x" * 32)

    @pytest.mark.asyncio
    async def test_tombstoned_file_does_not_consume_use(
        self, test_db, blob_store, token_service, stored_file, test_user
    ):
        file_id, user_id = stored_file.id, test_user.id
        token = await token_service.issue(file_id, user_id)
        secret = token.secret
        await FileService(test_db, blob_store).tombstone_file(file_id, user_id)

        with pytest.raises(StoredFileNotFoundError):
            await token_service.redeem(secret)

        info = await token_service.get_token_info(secret)
        assert info.use_count == 0

    @pytest.mark.asyncio
    async def test_token_issued_before_tombstone_is_dead(
        self, test_db, blob_store, token_service, stored_file, test_user
    ):
        file_id, user_id = stored_file.id, test_user.id
        token = await token_service.issue(file_id, user_id, max_uses=2)
        secret = token.secret
        # The file stays loaded in this session while the tombstone is written.
        await FileService(test_db, blob_store).tombstone_file(file_id, user_id)

        for _ in range(2):
            with pytest.raises(StoredFileNotFoundError):
                await token_service.redeem(secret)
        with pytest.raises(StoredFileNotFoundError):
            await token_service.issue(file_id, user_id)

        info = await token_service.get_token_info(secret)
        assert info.use_count == 0
        assert info.remaining_uses == 2


class TestDelivery:
    @pytest.mark.asyncio
    async def test_open_download_streams_content(self, token_service, stored_file, test_user):
        token = await token_service.issue(stored_file.id, test_user.id)

        handle = await token_service.open_download(token.secret, chunk_size=7)
        chunks = [chunk async for chunk in handle.stream]

        assert handle.file.id == stored_file.id
        assert [len(chunk) for chunk in chunks] == [7, 7, 6]
        assert b"".join(chunks) == CONTENT

    @pytest.mark.asyncio
    async def test_handle_read(self, token_service, stored_file, test_user):
        token = await token_service.issue(stored_file.id, test_user.id)

        handle = await token_service.open_download(token.secret)

        assert await handle.read() == CONTENT

    @pytest.mark.asyncio
    async def test_redeem_download_token_returns_chunks(self, token_service, stored_file, test_user):
        token = await token_service.issue(stored_file.id, test_user.id)

        chunks = await token_service.redeem_download_token(token.secret)

        assert b"".join([chunk async for chunk in chunks]) == CONTENT

    @pytest.mark.asyncio
    async def test_redeem_to_url(self, token_service, stored_file, test_user):
        token = await token_service.issue(stored_file.id, test_user.id)

        file, url = await token_service.redeem_to_url(token.secret, ttl_seconds=60)

        assert file.id == stored_file.id
        assert file.storage_key in url
        assert url.endswith("expires=60")

    @pytest.mark.asyncio
    async def test_token_info_unknown(self, token_service):
        with pytest.raises(TokenNotFoundError):
            await token_service.get_token_info("missing")
