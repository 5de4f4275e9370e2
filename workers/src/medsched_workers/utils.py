"""Shared time helpers."""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import NotFoundError

DEFAULT_TIMEZONE = "UTC"


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def normalize_timezone_name(value: Any) -> str | None:
    """Normalize a timezone name and verify it's a valid IANA name."""
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.upper() == "UTC":
        return "UTC"
    try:
        ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError):
        return None
    return raw


def zone(timezone_name: str | None) -> ZoneInfo:
    return ZoneInfo(normalize_timezone_name(timezone_name) or DEFAULT_TIMEZONE)


def local_date_for_timezone(ts: datetime, timezone_name: str) -> date:
    """Project a timestamp into the local calendar date of a timezone."""
    return as_utc(ts).astimezone(zone(timezone_name)).date()


def local_datetime(day: date, time_of_day: time, timezone_name: str) -> datetime:
    """Combine a local date + wall-clock time into an aware UTC datetime."""
    return datetime.combine(day, time_of_day, tzinfo=zone(timezone_name)).astimezone(UTC)


def local_day_bounds(day: date, timezone_name: str) -> tuple[datetime, datetime]:
    """Return the [start, end) UTC instants of a local calendar day."""
    tz = zone(timezone_name)
    start = datetime.combine(day, time(0, 0), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=tz)
    return start.astimezone(UTC), end.astimezone(UTC)


def minutes_between(earlier: datetime, later: datetime) -> int:
    """Signed whole minutes from ``earlier`` to ``later`` (rounded half away from zero)."""
    seconds = (as_utc(later) - as_utc(earlier)).total_seconds()
    minutes = abs(seconds) / 60.0
    rounded = int(minutes + 0.5)
    return rounded if seconds >= 0 else -rounded


def date_range(start: date, end: date) -> list[date]:
    """Inclusive list of days from start to end."""
    if end < start:
        return []
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


def require_uuid(value: Any, entity: str) -> str:
    """Canonical string form of ``value``; a malformed id cannot exist, so NotFoundError."""
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError):
        raise NotFoundError(entity, str(value)) from None
