"""
Tenant model.

A tenant is the organisation scope that owns files and a storage quota. The
plan tier drives the storage limit of the tenant's quota ledger.
"""

from enum import Enum

from sqlalchemy import Column, String

from .base import BaseModel


class TenantPlan(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class Tenant(BaseModel):
    """
    Represents a tenant (company) in the application.

    :ivar name: Display name of the tenant.
    :type name: str
    :ivar plan: Subscription plan tier, one of :class:`TenantPlan`.
    :type plan: str
    """

    __tablename__ = "tenants"

    name = Column(String(255), nullable=False)
    plan = Column(String(20), nullable=False, default=TenantPlan.FREE.value)
