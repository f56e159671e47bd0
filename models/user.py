"""
Provides the User model for the application's database schema.

Users belong to exactly one tenant. The model is only used to resolve which
tenant a principal acts for; authentication lives outside this service.

Attributes
----------
tenant_id : sqlalchemy.Column
    Identifier of the tenant the user belongs to.
email : sqlalchemy.Column
    The email address of the user, which must also be unique.
username : sqlalchemy.Column
    The optional username chosen by the user.
is_active : sqlalchemy.Column
    A boolean indicating if the user is active. Defaults to `True`.
"""

from sqlalchemy import Boolean, Column, ForeignKey, String

from .base import UUID, BaseModel


class User(BaseModel):
    """
    Represents a user entity in the application.

    :ivar tenant_id: Tenant the user belongs to.
    :type tenant_id: UUID
    :ivar email: Email address of the user. It must be unique.
    :type email: str
    :ivar username: Username of the user. This is optional.
    :type username: str
    :ivar is_active: Indicates whether the user account is active.
    :type is_active: bool
    """

    __tablename__ = "users"

    tenant_id = Column(UUID(), ForeignKey("tenants.id"), nullable=False, index=True)
    email = Column(String(255), nullable=False, unique=True)
    username = Column(String(100))
    is_active = Column(Boolean, default=True)
