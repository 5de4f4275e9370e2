"""Time-of-day buckets.

Stored buckets (morning/noon/evening/bedtime) are assigned at materialization
from the local wall-clock time. View buckets (overdue/now/due_soon/completed)
are transient and derived at read time from the current instant.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import StrEnum

from .models import ACTIONABLE_STATUSES, TERMINAL_STATUSES, OccurrenceStatus, TimeBucket
from .utils import as_utc

NOW_WINDOW = timedelta(minutes=15)
DUE_SOON_WINDOW = timedelta(minutes=60)


class ViewBucket(StrEnum):
    OVERDUE = "overdue"
    NOW = "now"
    DUE_SOON = "due_soon"
    MORNING = "morning"
    NOON = "noon"
    EVENING = "evening"
    BEDTIME = "bedtime"
    COMPLETED = "completed"


@dataclass(frozen=True)
class BucketBoundaries:
    """Start times of each bucket; bedtime wraps past midnight to morning_start."""

    morning_start: time = time(4, 0)
    noon_start: time = time(11, 0)
    evening_start: time = time(16, 0)
    bedtime_start: time = time(21, 0)

    def __post_init__(self) -> None:
        if not (self.morning_start < self.noon_start < self.evening_start < self.bedtime_start):
            raise ValueError("bucket boundaries must be strictly increasing within the day")

    def classify(self, time_of_day: time) -> TimeBucket:
        t = time_of_day.replace(second=0, microsecond=0, tzinfo=None)
        if self.morning_start <= t < self.noon_start:
            return TimeBucket.MORNING
        if self.noon_start <= t < self.evening_start:
            return TimeBucket.NOON
        if self.evening_start <= t < self.bedtime_start:
            return TimeBucket.EVENING
        return TimeBucket.BEDTIME


DEFAULT_BOUNDARIES = BucketBoundaries()


def parse_boundaries(raw: dict[str, str] | None) -> BucketBoundaries:
    """Build boundaries from ``{"morning": "HH:MM", ...}``; missing keys keep defaults."""
    if not raw:
        return DEFAULT_BOUNDARIES
    values = {
        "morning_start": DEFAULT_BOUNDARIES.morning_start,
        "noon_start": DEFAULT_BOUNDARIES.noon_start,
        "evening_start": DEFAULT_BOUNDARIES.evening_start,
        "bedtime_start": DEFAULT_BOUNDARIES.bedtime_start,
    }
    for bucket in TimeBucket:
        value = raw.get(bucket.value)
        if value:
            values[f"{bucket.value}_start"] = time.fromisoformat(value)
    return BucketBoundaries(**values)


def classify_time_bucket(
    time_of_day: time, boundaries: BucketBoundaries = DEFAULT_BOUNDARIES
) -> TimeBucket:
    return boundaries.classify(time_of_day)


def classify_for_view(
    status: OccurrenceStatus,
    bucket: TimeBucket,
    scheduled_at: datetime,
    grace_deadline: datetime,
    now: datetime,
) -> ViewBucket | None:
    """Place an occurrence in today's view. Cancelled occurrences are hidden."""
    if status in TERMINAL_STATUSES:
        return ViewBucket.COMPLETED
    if status not in ACTIONABLE_STATUSES:
        return None

    now_utc = as_utc(now)
    scheduled_utc = as_utc(scheduled_at)
    if now_utc > as_utc(grace_deadline):
        return ViewBucket.OVERDUE
    if now_utc >= scheduled_utc - NOW_WINDOW:
        return ViewBucket.NOW
    if now_utc >= scheduled_utc - DUE_SOON_WINDOW:
        return ViewBucket.DUE_SOON
    return ViewBucket(bucket.value)
