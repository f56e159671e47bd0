"""Quota ledger service.

Every tenant has one :class:`StorageQuota` row holding ``used_bytes``,
``file_count`` and ``limit_bytes``. The row is adjusted incrementally on each
File commit or tombstone (:meth:`QuotaService.commit`) and periodically
overwritten by a full recount (:meth:`QuotaService.reconcile`).

Admission is advisory: :meth:`QuotaService.check_admission` reads the ledger
without locking it, so two writers that pass admission at the same time may
together overshoot the limit. The next reconciliation reports the true usage.
"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import case, desc, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.config import settings
from app.exceptions.base import ValidationError
from app.exceptions.storage import QuotaExceededError
from app.schemas.quota import (
    AdmissionResult,
    FileUsageItem,
    MimeUsageItem,
    QuotaLevel,
    QuotaSnapshot,
    QuotaStatusResponse,
    UsageReport,
)
from app.services.tenant_directory import TenantDirectory
from app.shared.byte_utils import format_bytes, used_percent
from models.base import utcnow
from models.file import File
from models.storage_quota import StorageQuota
from models.tenant import Tenant, TenantPlan

logger = logging.getLogger(__name__)

PLAN_LIMIT_MULTIPLIERS = {
    TenantPlan.FREE: 1,
    TenantPlan.PRO: 100,
    TenantPlan.ENTERPRISE: 1024,
}

WARNING_PERCENT = 85.0
CRITICAL_PERCENT = 95.0
REPORT_TOP_FILES = 10


def plan_limit_bytes(plan: TenantPlan | str, base_unit: int | None = None) -> int:
    """Storage limit for a plan tier; unknown tiers get the free limit."""
    base_unit = base_unit or settings.plan_base_unit_bytes
    try:
        multiplier = PLAN_LIMIT_MULTIPLIERS[TenantPlan(plan)]
    except ValueError:
        multiplier = PLAN_LIMIT_MULTIPLIERS[TenantPlan.FREE]
    return multiplier * base_unit


class QuotaService:
    """Service class for the per-tenant storage ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.directory = TenantDirectory(db)

    # ---- admission ----

    async def check_admission(self, tenant_id: UUID, additional_bytes: int) -> AdmissionResult:
        """Would ``additional_bytes`` more fit under the limit? Never writes."""
        if additional_bytes < 0:
            raise ValidationError(
                "Requested bytes must not be negative",
                details={"requested_bytes": additional_bytes},
            )

        limit_bytes, used_bytes, _, _ = await self._read_counters(tenant_id)
        projected = used_bytes + additional_bytes
        admitted = projected <= limit_bytes

        if admitted and used_percent(projected, limit_bytes) >= settings.quota_warning_percent:
            logger.warning(
                f"Tenant {tenant_id} is approaching storage limit: "
                f"{used_percent(projected, limit_bytes):.2f}% ({format_bytes(projected)} of {format_bytes(limit_bytes)})"
            )

        return AdmissionResult(
            admitted=admitted,
            used_bytes=used_bytes,
            limit_bytes=limit_bytes,
            requested_bytes=additional_bytes,
        )

    async def enforce_admission(self, tenant_id: UUID, additional_bytes: int) -> AdmissionResult:
        result = await self.check_admission(tenant_id, additional_bytes)
        if not result.admitted:
            logger.info(
                f"Rejected {format_bytes(additional_bytes)} for tenant {tenant_id}: "
                f"{format_bytes(result.used_bytes)} used of {format_bytes(result.limit_bytes)}"
            )
            raise QuotaExceededError(
                used_bytes=result.used_bytes,
                limit_bytes=result.limit_bytes,
                requested_bytes=additional_bytes,
            )
        return result

    # ---- ledger mutation ----

    async def commit(self, tenant_id: UUID, delta_bytes: int, delta_file_count: int) -> None:
        """Apply a delta to the ledger inside the caller's transaction.

        The caller owns the transaction and must commit it.
        """
        await self._get_or_create_ledger(tenant_id)

        new_used = StorageQuota.used_bytes + delta_bytes
        new_count = StorageQuota.file_count + delta_file_count
        stmt = (
            update(StorageQuota)
            .where(
                StorageQuota.tenant_id == tenant_id,
                new_used >= 0,
                new_count >= 0,
            )
            .values(used_bytes=new_used, file_count=new_count, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount:
            return

        logger.warning(
            f"Quota ledger for tenant {tenant_id} would go negative "
            f"(delta {delta_bytes} bytes, {delta_file_count} files); clamping at zero"
        )
        clamp = (
            update(StorageQuota)
            .where(StorageQuota.tenant_id == tenant_id)
            .values(
                used_bytes=case((new_used < 0, 0), else_=new_used),
                file_count=case((new_count < 0, 0), else_=new_count),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(clamp)

    async def reconcile(self, tenant_id: UUID) -> StorageQuota:
        """Overwrite the ledger with a recount of live files and commit."""
        stmt = select(
            func.coalesce(func.sum(File.size_bytes), 0),
            func.count(File.id),
        ).where(File.tenant_id == tenant_id, File.tombstoned_at.is_(None))
        total_bytes, file_count = (await self.db.execute(stmt)).one()
        total_bytes = int(total_bytes)
        file_count = int(file_count)

        ledger = await self._get_or_create_ledger(tenant_id)
        if ledger.used_bytes != total_bytes or ledger.file_count != file_count:
            logger.warning(
                f"Quota drift for tenant {tenant_id}: ledger {ledger.used_bytes} bytes / "
                f"{ledger.file_count} files, actual {total_bytes} bytes / {file_count} files"
            )

        ledger.used_bytes = total_bytes
        ledger.file_count = file_count
        ledger.last_reconciled_at = utcnow()

        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(
            f"Storage quota recalculated for tenant {tenant_id}: "
            f"{format_bytes(total_bytes)} used, {file_count} files"
        )
        return ledger

    async def recalculate_quota(self, tenant_id: UUID) -> QuotaSnapshot:
        """Reconcile, falling back to the last-known ledger values on failure."""
        try:
            ledger = await self.reconcile(tenant_id)
            return self._snapshot(ledger)
        except SQLAlchemyError as e:
            logger.error(f"Failed to recalculate storage quota for tenant {tenant_id}: {str(e)}")
            await self.db.rollback()
            return await self.get_quota(tenant_id)

    async def reconcile_all(self) -> dict:
        result = await self.db.execute(select(Tenant.id))
        tenant_ids = list(result.scalars().all())

        stats = {"tenants": len(tenant_ids), "reconciled": 0, "failed": 0}
        for tenant_id in tenant_ids:
            try:
                await self.reconcile(tenant_id)
                stats["reconciled"] += 1
            except SQLAlchemyError as e:
                stats["failed"] += 1
                logger.error(f"Reconciliation failed for tenant {tenant_id}: {str(e)}")
        return stats

    # ---- limits ----

    async def change_plan(self, tenant_id: UUID, plan: TenantPlan) -> QuotaSnapshot:
        """Move a tenant to another plan; usage is left alone."""
        plan = TenantPlan(plan)
        tenant = await self.directory.get_tenant(tenant_id)
        ledger = await self._get_or_create_ledger(tenant_id)

        tenant.plan = plan.value
        ledger.limit_bytes = plan_limit_bytes(plan)

        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        if ledger.used_bytes > ledger.limit_bytes:
            logger.warning(
                f"Tenant {tenant_id} moved to {plan.value} while over the new limit: "
                f"{format_bytes(ledger.used_bytes)} used of {format_bytes(ledger.limit_bytes)}"
            )
        logger.info(f"Tenant {tenant_id} plan changed to {plan.value}")
        return self._snapshot(ledger)

    async def update_limit(self, tenant_id: UUID, limit_bytes: int) -> QuotaSnapshot:
        if limit_bytes <= 0:
            raise ValidationError("Storage limit must be positive", details={"limit_bytes": limit_bytes})

        ledger = await self._get_or_create_ledger(tenant_id)
        ledger.limit_bytes = limit_bytes

        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(f"Updated storage limit for tenant {tenant_id} to {format_bytes(limit_bytes)}")
        return self._snapshot(ledger)

    # ---- views ----

    async def get_quota(self, tenant_id: UUID) -> QuotaSnapshot:
        limit_bytes, used_bytes, file_count, reconciled_at = await self._read_counters(tenant_id)
        return QuotaSnapshot.from_counters(tenant_id, limit_bytes, used_bytes, file_count, reconciled_at)

    async def get_quota_status(self, tenant_id: UUID) -> QuotaStatusResponse:
        snapshot = await self.get_quota(tenant_id)
        percent = snapshot.used_percent

        if percent >= CRITICAL_PERCENT:
            level = QuotaLevel.CRITICAL
            message = f"Storage is almost full ({percent:.1f}% used)"
        elif percent >= WARNING_PERCENT:
            level = QuotaLevel.WARNING
            message = f"Storage is filling up ({percent:.1f}% used)"
        else:
            level = QuotaLevel.OK
            message = f"{snapshot.available_formatted} available"

        return QuotaStatusResponse(status=level, used_percent=percent, message=message)

    async def get_usage_report(self, tenant_id: UUID) -> UsageReport:
        quota = await self.get_quota(tenant_id)
        live = (File.tenant_id == tenant_id, File.tombstoned_at.is_(None))

        top = await self.db.execute(
            select(File).where(*live).order_by(desc(File.size_bytes)).limit(REPORT_TOP_FILES)
        )
        largest = [
            FileUsageItem(
                id=str(f.id),
                original_name=f.original_name,
                size_bytes=f.size_bytes,
                size_formatted=format_bytes(f.size_bytes),
                mime_type=f.mime_type,
                created_at=f.created_at,
            )
            for f in top.scalars().all()
        ]

        total_size = func.sum(File.size_bytes).label("total_size")
        by_type = await self.db.execute(
            select(File.mime_type, func.count(File.id), total_size)
            .where(*live)
            .group_by(File.mime_type)
            .order_by(desc("total_size"))
        )
        usage_by_type = [
            MimeUsageItem(
                mime_type=mime_type,
                count=int(count),
                total_bytes=int(size or 0),
                size_formatted=format_bytes(int(size or 0)),
            )
            for mime_type, count, size in by_type.all()
        ]

        return UsageReport(quota=quota, largest_files=largest, usage_by_type=usage_by_type)

    # ---- helpers ----

    async def _get_ledger(self, tenant_id: UUID) -> StorageQuota | None:
        stmt = (
            select(StorageQuota)
            .where(StorageQuota.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_or_create_ledger(self, tenant_id: UUID) -> StorageQuota:
        ledger = await self._get_ledger(tenant_id)
        if ledger:
            return ledger

        plan = await self.directory.get_plan(tenant_id)
        ledger = StorageQuota(
            tenant_id=tenant_id,
            limit_bytes=plan_limit_bytes(plan),
            used_bytes=0,
            file_count=0,
            last_reconciled_at=utcnow(),
        )
        self.db.add(ledger)
        await self.db.flush()
        logger.info(
            f"Storage quota created for tenant {tenant_id}: {format_bytes(ledger.limit_bytes)}"
        )
        return ledger

    async def _read_counters(self, tenant_id: UUID) -> tuple[int, int, int, datetime | None]:
        ledger = await self._get_ledger(tenant_id)
        if ledger:
            return ledger.limit_bytes, ledger.used_bytes, ledger.file_count, ledger.last_reconciled_at
        plan = await self.directory.get_plan(tenant_id)
        return plan_limit_bytes(plan), 0, 0, None

    @staticmethod
    def _snapshot(ledger: StorageQuota) -> QuotaSnapshot:
        return QuotaSnapshot.from_counters(
            ledger.tenant_id,
            ledger.limit_bytes,
            ledger.used_bytes,
            ledger.file_count,
            ledger.last_reconciled_at,
        )
