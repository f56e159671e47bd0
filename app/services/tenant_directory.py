"""Tenant directory: which tenant a user acts for, and on which plan."""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.exceptions.base import NotFoundError
from app.exceptions.storage import TenantNotFoundError
from models.tenant import Tenant, TenantPlan
from models.user import User


class TenantDirectory:
    """Read-only lookups over the tenant and user tables."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, user_id: UUID) -> User:
        result = await self.db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if not user:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})
        return user

    async def resolve_tenant_id(self, user_id: UUID) -> UUID:
        result = await self.db.execute(select(User.tenant_id).where(User.id == user_id))
        tenant_id = result.scalar_one_or_none()
        if tenant_id is None:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})
        return tenant_id

    async def get_tenant(self, tenant_id: UUID) -> Tenant:
        result = await self.db.execute(select(Tenant).where(Tenant.id == tenant_id))
        tenant = result.scalar_one_or_none()
        if not tenant:
            raise TenantNotFoundError(details={"tenant_id": str(tenant_id)})
        return tenant

    async def get_plan(self, tenant_id: UUID) -> TenantPlan:
        tenant = await self.get_tenant(tenant_id)
        return TenantPlan(tenant.plan)
