"""Time utilities. Everything is UTC; SQLite columns come back naive."""
from __future__ import annotations
from datetime import date, datetime, time, timezone

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def utc_today() -> date:
    return utc_now().date()

def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)

__all__ = ["utc_now", "utc_today", "ensure_utc", "start_of_day"]
