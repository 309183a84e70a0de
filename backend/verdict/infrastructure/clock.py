"""
UTC time helpers.

SQLite hands back naive datetimes for timezone-aware columns, so everything
read from storage goes through as_utc() before being compared.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def end_of_day(day: date) -> datetime:
    """Last representable instant of the UTC day (23:59:59.999999)."""
    return start_of_day(day) + timedelta(days=1) - timedelta(microseconds=1)


def to_epoch_ms(value: datetime) -> int:
    return int(as_utc(value).timestamp() * 1000)


def from_epoch_ms(value: float) -> datetime:
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
