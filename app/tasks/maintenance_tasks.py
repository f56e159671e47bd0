"""Celery tasks for storage maintenance."""

import asyncio
import logging
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker

# Import all models to ensure they're registered before creating session
import models  # noqa: F401
from app.celery_app import celery_app
from app.core.config import settings
from app.database import create_engine_for
from app.domains.quota.service import QuotaService
from app.domains.uploads.service import UploadSessionService

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.maintenance_tasks.sweep_stale_uploads_task", bind=True)
def sweep_stale_uploads_task(self) -> dict[str, Any]:
    """Fail uploads that stopped reporting progress."""
    logger.info(f"Starting stale upload sweep (Task ID: {self.request.id})")

    try:
        result = asyncio.run(_sweep_stale_uploads_async())
        logger.info(f"Stale upload sweep completed: {result}")
        return result
    except Exception as e:
        logger.error(f"Stale upload sweep failed: {str(e)}")
        raise self.retry(exc=e, countdown=60 * 5, max_retries=3)


@celery_app.task(name="app.tasks.maintenance_tasks.reconcile_quotas_task", bind=True)
def reconcile_quotas_task(self) -> dict[str, Any]:
    """Recount every tenant's storage usage from live files."""
    logger.info(f"Starting quota reconciliation (Task ID: {self.request.id})")

    try:
        result = asyncio.run(_reconcile_quotas_async())
        logger.info(f"Quota reconciliation completed: {result}")
        return result
    except Exception as e:
        logger.error(f"Quota reconciliation failed: {str(e)}")
        raise self.retry(exc=e, countdown=60 * 15, max_retries=3)


async def _sweep_stale_uploads_async() -> dict[str, Any]:
    engine = create_engine_for(settings.database_url)
    session_maker = async_sessionmaker(bind=engine, expire_on_commit=False)
    try:
        async with session_maker() as session:
            swept = await UploadSessionService(session).sweep_stale_progress()
            return {"swept": swept}
    finally:
        await engine.dispose()


async def _reconcile_quotas_async() -> dict[str, Any]:
    engine = create_engine_for(settings.database_url)
    session_maker = async_sessionmaker(bind=engine, expire_on_commit=False)
    try:
        async with session_maker() as session:
            return await QuotaService(session).reconcile_all()
    finally:
        await engine.dispose()
