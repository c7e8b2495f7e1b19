from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    # Use UTC for every persisted timestamp and period boundary.
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on read; stored values are always UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def month_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def same_month(left: datetime, right: datetime) -> bool:
    return (left.year, left.month) == (right.year, right.month)
