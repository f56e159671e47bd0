"""
Integration tests for end-to-end storage flows.

These run several services against one database and, where concurrency
matters, give each actor its own session.
"""

import asyncio
import random
from datetime import timedelta

import pytest
from sqlalchemy import func, update
from sqlalchemy.future import select

from app.domains.downloads.service import DownloadTokenService
from app.domains.files.dedup import compute_content_hash
from app.domains.files.service import FileService
from app.domains.quota.service import QuotaService
from app.domains.uploads.service import UploadSessionService
from app.exceptions.storage import QuotaExceededError, TokenExhaustedError, TokenExpiredError
from app.schemas.upload import UploadFileSpec
from models import File, FileAssociation, StorageQuota, UploadProgress, utcnow
from tests.factories import DownloadTokenFactory, persist

GIB = 1024 * 1024 * 1024


async def _live_totals(db, tenant_id):
    stmt = select(func.coalesce(func.sum(File.size_bytes), 0), func.count(File.id)).where(
        File.tenant_id == tenant_id, File.tombstoned_at.is_(None)
    )
    total, count = (await db.execute(stmt)).one()
    return int(total), int(count)


async def _ledger_totals(db, tenant_id):
    quota = await QuotaService(db).get_quota(tenant_id)
    return quota.used_bytes, quota.file_count


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_same_content_stored_once(
        self, test_db, blob_store, test_tenant, test_user, test_user_2, test_quota
    ):
        service = FileService(test_db, blob_store)
        content = b"quarterly numbers" * 100

        results = [
            await service.store_content(test_tenant.id, uploader, content, f"copy-{i}.txt")
            for i, uploader in enumerate([test_user.id, test_user_2.id, test_user.id])
        ]

        assert [r.duplicate for r in results] == [False, True, True]
        assert len({r.file.id for r in results}) == 1
        assert (await test_db.execute(select(func.count(File.id)))).scalar_one() == 1
        assert (await test_db.execute(select(func.count(FileAssociation.id)))).scalar_one() == 3
        assert len(blob_store.keys("tenants/")) == 1
        assert await _ledger_totals(test_db, test_tenant.id) == (len(content), 1)

    @pytest.mark.asyncio
    async def test_same_content_in_two_tenants(
        self, test_db, blob_store, test_tenant, test_user, other_tenant, other_user, test_quota
    ):
        service = FileService(test_db, blob_store)

        mine = await service.store_content(test_tenant.id, test_user.id, b"common", "a.txt")
        theirs = await service.store_content(other_tenant.id, other_user.id, b"common", "a.txt")

        assert mine.file.id != theirs.file.id
        assert theirs.duplicate is False


class TestQuotaConvergence:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [7, 42, 1234])
    async def test_ledger_tracks_live_files(self, test_db, blob_store, test_tenant, test_user, test_quota, seed):
        rng = random.Random(seed)
        tenant_id, user_id = test_tenant.id, test_user.id
        service = FileService(test_db, blob_store)
        contents: list[bytes] = []
        live: dict[str, object] = {}

        for _ in range(30):
            action = rng.random()
            if action < 0.5 or not contents:
                content = bytes(rng.getrandbits(8) for _ in range(rng.randint(1, 256)))
                contents.append(content)
            elif action < 0.7:
                content = rng.choice(contents)
            else:
                if live:
                    victim = rng.choice(sorted(live))
                    assert await service.tombstone_file(live.pop(victim), user_id) is True
                continue

            result = await service.store_content(tenant_id, user_id, content, "blob.bin")
            live[compute_content_hash(content)] = result.file.id

            assert await _ledger_totals(test_db, tenant_id) == await _live_totals(test_db, tenant_id)

        expected = await _live_totals(test_db, tenant_id)
        ledger = await QuotaService(test_db).reconcile(tenant_id)
        assert (ledger.used_bytes, ledger.file_count) == expected

    @pytest.mark.asyncio
    async def test_reconcile_repairs_manual_drift(self, test_db, blob_store, test_tenant, test_user, test_quota):
        tenant_id = test_tenant.id
        service = FileService(test_db, blob_store)
        await service.store_content(tenant_id, test_user.id, b"a" * 100, "a.bin")
        await service.store_content(tenant_id, test_user.id, b"b" * 50, "b.bin")

        await test_db.execute(
            update(StorageQuota)
            .where(StorageQuota.tenant_id == tenant_id)
            .values(used_bytes=999_999, file_count=42)
        )
        await test_db.commit()

        snapshot = await QuotaService(test_db).recalculate_quota(tenant_id)

        assert (snapshot.used_bytes, snapshot.file_count) == (150, 2)
        assert snapshot.last_reconciled_at is not None


class TestAdmissionBoundary:
    @pytest.mark.asyncio
    async def test_limit_is_inclusive(self, test_db, blob_store, test_tenant, test_user, test_quota):
        tenant_id = test_tenant.id
        quota = QuotaService(test_db)

        assert (await quota.check_admission(tenant_id, 5 * GIB)).admitted is True
        assert (await quota.check_admission(tenant_id, 5 * GIB + 1)).admitted is False

    @pytest.mark.asyncio
    async def test_store_fills_quota_exactly(self, test_db, blob_store, test_tenant, test_user, test_quota):
        tenant_id, user_id = test_tenant.id, test_user.id
        await QuotaService(test_db).update_limit(tenant_id, 100)
        service = FileService(test_db, blob_store)

        await service.store_content(tenant_id, user_id, b"x" * 60, "first.bin")
        await service.store_content(tenant_id, user_id, b"y" * 40, "second.bin")
        with pytest.raises(QuotaExceededError) as exc_info:
            await service.store_content(tenant_id, user_id, b"z", "third.bin")

        assert exc_info.value.used_bytes == 100
        assert await _ledger_totals(test_db, tenant_id) == (100, 2)

        # Duplicates cost nothing, even at the limit.
        again = await service.store_content(tenant_id, user_id, b"x" * 60, "again.bin")
        assert again.duplicate is True


class TestDownloadTokens:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_uses,attempts", [(1, 5), (3, 8)])
    async def test_concurrent_redemption_never_exceeds_max_uses(
        self, session_factory, test_db, blob_store, test_tenant, test_user, test_quota, max_uses, attempts
    ):
        stored = await FileService(test_db, blob_store).store_content(
            test_tenant.id, test_user.id, b"hot file", "hot.txt"
        )
        token = await DownloadTokenService(test_db, blob_store).issue(
            stored.file.id, test_user.id, max_uses=max_uses
        )
        secret = token.secret

        async def redeem():
            async with session_factory() as session:
                return await DownloadTokenService(session, blob_store).redeem(secret)

        results = await asyncio.gather(*[redeem() for _ in range(attempts)], return_exceptions=True)

        successes = [r for r in results if isinstance(r, File)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == max_uses
        assert len(failures) == attempts - max_uses
        assert all(isinstance(f, TokenExhaustedError) for f in failures)

        info = await DownloadTokenService(test_db, blob_store).get_token_info(secret)
        assert info.use_count == max_uses

    @pytest.mark.asyncio
    async def test_expiry_boundary(self, test_db, blob_store, test_tenant, test_user, test_quota):
        stored = await FileService(test_db, blob_store).store_content(
            test_tenant.id, test_user.id, b"timed", "timed.txt"
        )
        expired = DownloadTokenFactory.build(
            file_id=stored.file.id, issued_to=test_user.id, expires_at=utcnow() - timedelta(seconds=1)
        )
        fresh = DownloadTokenFactory.build(
            file_id=stored.file.id, issued_to=test_user.id, expires_at=utcnow() + timedelta(minutes=1)
        )
        await persist(test_db, expired, fresh)
        expired_secret, fresh_secret = expired.secret, fresh.secret
        service = DownloadTokenService(test_db, blob_store)

        with pytest.raises(TokenExpiredError):
            await service.redeem(expired_secret)
        assert (await service.redeem(fresh_secret)).content_hash == compute_content_hash(b"timed")


class TestUploadLifecycle:
    @pytest.mark.asyncio
    async def test_mixed_outcomes_keep_session_active(
        self, test_db, blob_store, test_tenant, test_user, test_quota
    ):
        service = UploadSessionService(test_db, blob_store)
        contents = {"a.bin": b"alpha" * 10, "b.bin": b"bravo" * 10, "c.bin": b"charlie" * 10}
        specs = [
            UploadFileSpec(
                file_name=name,
                total_size_bytes=len(data),
                chunk_size_bytes=16,
                checksum=compute_content_hash(data),
            )
            for name, data in contents.items()
        ]
        session = await service.create_session(test_user.id, specs)
        session_id, user_id = session.id, test_user.id
        ids = {p.file_name: p.id for p in await service.get_session_progress(session_id)}

        for name in ["a.bin", "b.bin"]:
            data = contents[name]
            for index, start in enumerate(range(0, len(data), 16)):
                part = data[start:start + 16]
                await service.report_chunk(
                    session_id, index, len(part), data=part, progress_id=ids[name], user_id=user_id
                )
        await service.report_chunk(session_id, 0, 16, data=contents["c.bin"][:16], progress_id=ids["c.bin"])
        await service.fail_progress(session_id, ids["c.bin"], "connection reset", user_id=user_id)

        described = await service.describe_session(session_id, user_id=user_id)
        assert described.status == "ACTIVE"
        assert described.completed_files == 2
        assert described.failed_files == 1
        assert described.uploaded_size_bytes == 50 + 50 + 16
        assert blob_store.keys("staging/") == []
        assert await _ledger_totals(test_db, test_tenant.id) == (100, 2)

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_fail_each_row_once(
        self, session_factory, test_db, blob_store, test_user, test_quota
    ):
        service = UploadSessionService(test_db, blob_store)
        specs = [UploadFileSpec(file_name=f"{i}.bin", total_size_bytes=10, chunk_size_bytes=5) for i in range(3)]
        session = await service.create_session(test_user.id, specs)
        for progress in await service.get_session_progress(session.id):
            await service.report_chunk(session.id, 0, 5, progress_id=progress.id)
        await test_db.execute(
            update(UploadProgress).values(last_updated_at=utcnow() - timedelta(hours=48))
        )
        await test_db.commit()

        async def sweep():
            async with session_factory() as db:
                return await UploadSessionService(db, blob_store).sweep_stale_progress()

        first, second = await asyncio.gather(sweep(), sweep())

        assert first + second == 3
        assert await sweep() == 0
