"""Byte accounting helpers shared by the quota, upload and download code."""

import math
import re
from datetime import timedelta

from app.exceptions.base import ValidationError

_UNITS = ["B", "KB", "MB", "GB", "TB"]
_TTL_PATTERN = re.compile(r"^(\d+)([hmd])$")
_TTL_UNITS = {"m": "minutes", "h": "hours", "d": "days"}


def format_bytes(num_bytes: int) -> str:
    """Render a byte count with two decimals, e.g. ``format_bytes(1536) == "1.50 KB"``."""
    size = float(num_bytes)
    unit_index = 0
    while abs(size) >= 1024 and unit_index < len(_UNITS) - 1:
        size /= 1024
        unit_index += 1
    return f"{size:.2f} {_UNITS[unit_index]}"


def used_percent(used_bytes: int, limit_bytes: int) -> float:
    if limit_bytes <= 0:
        return 100.0 if used_bytes > 0 else 0.0
    return round(used_bytes * 100 / limit_bytes, 2)


def available_bytes(used_bytes: int, limit_bytes: int) -> int:
    return max(0, limit_bytes - used_bytes)


def ceil_div(numerator: int, denominator: int) -> int:
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    return -(-numerator // denominator)


def chunk_count(total_bytes: int, chunk_size_bytes: int) -> int:
    """Number of chunks needed to carry ``total_bytes``; an empty file still takes one."""
    return max(1, ceil_div(total_bytes, chunk_size_bytes))


def estimate_eta_seconds(remaining_bytes: int, speed_bps: float) -> int | None:
    """Seconds left at the current speed, or None while the speed is unknown."""
    if speed_bps <= 0:
        return None
    return math.ceil(remaining_bytes / speed_bps)


def parse_ttl(value: str | timedelta) -> timedelta:
    """Parse a lifetime such as ``"30m"``, ``"1h"`` or ``"7d"``."""
    if isinstance(value, timedelta):
        if value.total_seconds() <= 0:
            raise ValidationError("Token lifetime must be positive")
        return value

    match = _TTL_PATTERN.match(value or "")
    if not match:
        raise ValidationError(
            'Invalid expires in format. Use format like "1h", "30m", "1d"',
            details={"value": value},
        )
    amount = int(match.group(1))
    if amount <= 0:
        raise ValidationError("Token lifetime must be positive", details={"value": value})
    return timedelta(**{_TTL_UNITS[match.group(2)]: amount})
