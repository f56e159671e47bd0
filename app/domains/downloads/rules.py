"""Pure rules for download tokens."""

import secrets
import string
from datetime import datetime

from app.exceptions.base import BaseAppException
from app.exceptions.storage import TokenExhaustedError, TokenExpiredError
from models.base import utcnow

SECRET_ALPHABET = string.ascii_letters + string.digits
MIN_SECRET_LENGTH = 32


def generate_secret(length: int = MIN_SECRET_LENGTH) -> str:
    """Random secret drawn from ``[A-Za-z0-9]`` with the OS CSPRNG."""
    length = max(length, MIN_SECRET_LENGTH)
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


def is_expired(expires_at: datetime, now: datetime | None = None) -> bool:
    return (now or utcnow()) > expires_at


def is_exhausted(use_count: int, max_uses: int) -> bool:
    return use_count >= max_uses


def remaining_uses(use_count: int, max_uses: int) -> int:
    return max(0, max_uses - use_count)


def is_usable(expires_at: datetime, use_count: int, max_uses: int, now: datetime | None = None) -> bool:
    return not is_expired(expires_at, now) and not is_exhausted(use_count, max_uses)


def rejection_for(
    expires_at: datetime, use_count: int, max_uses: int, now: datetime | None = None
) -> BaseAppException:
    """The error to raise for a token that could not be redeemed. Expiry wins."""
    if is_expired(expires_at, now):
        return TokenExpiredError()
    return TokenExhaustedError()
