from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def start_of_day(value: datetime) -> datetime:
    """UTC midnight of the day ``value`` falls on."""

    return ensure_utc(value).replace(hour=0, minute=0, second=0, microsecond=0)


def add_days(value: datetime, days: float) -> datetime:
    return ensure_utc(value) + timedelta(days=days)


def days_until(target: datetime, now: datetime) -> int:
    """Whole days from ``now`` to ``target``, rounded up (negative once passed)."""

    delta = ensure_utc(target) - ensure_utc(now)
    return math.ceil(delta.total_seconds() / 86400.0)
