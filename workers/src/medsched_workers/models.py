"""Command, occurrence and enum models.

Commands are validated with pydantic (input drafts are user-supplied);
occurrences are plain dataclasses hydrated from database rows.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .utils import normalize_timezone_name

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

MAX_GRACE_OVERRIDE_MINUTES = 480


class Frequency(StrEnum):
    DAILY = "daily"
    TWICE_DAILY = "twice_daily"
    THREE_TIMES_DAILY = "three_times_daily"
    FOUR_TIMES_DAILY = "four_times_daily"
    WEEKLY = "weekly"
    AS_NEEDED = "as_needed"


class MedicationClass(StrEnum):
    CRITICAL = "critical"
    STANDARD = "standard"
    VITAMIN = "vitamin"
    AS_NEEDED = "as_needed"


class CommandStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    DISCONTINUED = "discontinued"


class TimeBucket(StrEnum):
    MORNING = "morning"
    NOON = "noon"
    EVENING = "evening"
    BEDTIME = "bedtime"


class OccurrenceStatus(StrEnum):
    SCHEDULED = "scheduled"
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"
    SNOOZED = "snoozed"
    CANCELLED = "cancelled"


class DoseKind(StrEnum):
    FULL = "full"
    PARTIAL = "partial"
    ADJUSTED = "adjusted"


# Statuses a user action (take/skip/snooze) or the missed sweep may act on.
ACTIONABLE_STATUSES: tuple[OccurrenceStatus, ...] = (
    OccurrenceStatus.SCHEDULED,
    OccurrenceStatus.SNOOZED,
)
TERMINAL_STATUSES: tuple[OccurrenceStatus, ...] = (
    OccurrenceStatus.TAKEN,
    OccurrenceStatus.MISSED,
    OccurrenceStatus.SKIPPED,
)


def normalize_time_of_day(value: str) -> str:
    """Validate ``H:MM``/``HH:MM`` within 00:00–23:59 and zero-pad it."""
    match = _TIME_RE.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise ValueError(f"invalid time {value!r}: expected HH:MM between 00:00 and 23:59")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


class ScheduleSpec(BaseModel):
    frequency: Frequency = Frequency.DAILY
    times: list[str]
    days_of_week: list[int] | None = None
    start_date: date
    end_date: date | None = None
    is_indefinite: bool = True
    timezone: str = "UTC"

    @field_validator("times")
    @classmethod
    def times_valid(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("times must not be empty")
        return sorted({normalize_time_of_day(t) for t in v})

    @field_validator("days_of_week")
    @classmethod
    def days_valid(cls, v: list[int] | None) -> list[int] | None:
        if v is None:
            return None
        for day in v:
            if day < 0 or day > 6:
                raise ValueError(f"invalid day of week {day}: expected 0 (Monday) to 6 (Sunday)")
        return sorted(set(v))

    @field_validator("timezone")
    @classmethod
    def timezone_valid(cls, v: str) -> str:
        normalized = normalize_timezone_name(v)
        if normalized is None:
            raise ValueError(f"unknown timezone {v!r}")
        return normalized

    @model_validator(mode="after")
    def dates_and_days_consistent(self) -> "ScheduleSpec":
        if self.end_date is not None:
            if self.end_date < self.start_date:
                raise ValueError("end_date must not be before start_date")
            self.is_indefinite = False
        if self.frequency == Frequency.WEEKLY and not self.days_of_week:
            raise ValueError("weekly schedules require days_of_week")
        return self


class GracePeriodConfig(BaseModel):
    medication_class: MedicationClass = MedicationClass.STANDARD
    bucket_overrides: dict[TimeBucket, int] = Field(default_factory=dict)
    weekend_multiplier: float = Field(default=1.5, ge=0.1, le=5.0)
    holiday_multiplier: float = Field(default=2.0, ge=0.1, le=5.0)

    @field_validator("bucket_overrides")
    @classmethod
    def overrides_in_range(cls, v: dict[TimeBucket, int]) -> dict[TimeBucket, int]:
        for bucket, minutes in v.items():
            if minutes < 0 or minutes > MAX_GRACE_OVERRIDE_MINUTES:
                raise ValueError(
                    f"override for {bucket} must be between 0 and {MAX_GRACE_OVERRIDE_MINUTES} minutes"
                )
        return v


class ReminderConfig(BaseModel):
    enabled: bool = True
    minutes_before: list[int] = Field(default_factory=lambda: [15, 5])
    methods: list[Literal["email", "sms", "push", "browser"]] = Field(
        default_factory=lambda: ["browser", "push"]
    )
    # Supply tracking: decremented per take, a refill intent fires at the threshold.
    doses_remaining: int | None = Field(default=None, ge=0)
    refill_threshold_doses: int = Field(default=7, ge=1)

    @field_validator("minutes_before")
    @classmethod
    def minutes_non_negative(cls, v: list[int]) -> list[int]:
        if any(m < 0 for m in v):
            raise ValueError("minutes_before values must be non-negative")
        return sorted(set(v), reverse=True)


class CommandDraft(BaseModel):
    """User-supplied regimen content for create/update."""

    patient_id: str
    medication_name: str
    dosage: str
    instructions: str | None = None
    schedule: ScheduleSpec
    reminders: ReminderConfig = Field(default_factory=ReminderConfig)
    grace_period: GracePeriodConfig = Field(default_factory=GracePeriodConfig)

    @field_validator("patient_id", "medication_name", "dosage")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v


class MedicationCommand(CommandDraft):
    id: str
    status: CommandStatus = CommandStatus.ACTIVE
    version: int = 1
    checksum: str
    last_taken_at: datetime | None = None
    last_event_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == CommandStatus.ACTIVE

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MedicationCommand":
        return cls.model_validate(
            {
                "id": str(row["id"]),
                "patient_id": str(row["patient_id"]),
                "medication_name": row["medication_name"],
                "dosage": row["dosage"],
                "instructions": row.get("instructions"),
                "schedule": row["schedule"],
                "reminders": row.get("reminders") or {},
                "grace_period": row.get("grace_period") or {},
                "status": row["status"],
                "version": row["version"],
                "checksum": row["checksum"],
                "last_taken_at": row.get("last_taken_at"),
                "last_event_id": (
                    str(row["last_event_id"]) if row.get("last_event_id") else None
                ),
                "created_at": row.get("created_at"),
                "updated_at": row.get("updated_at"),
            }
        )


@dataclass(frozen=True)
class Occurrence:
    id: str
    command_id: str
    patient_id: str
    scheduled_at: datetime
    bucket: TimeBucket
    grace_minutes: int
    grace_deadline: datetime
    status: OccurrenceStatus
    linked_event_id: str | None = None
    snoozed_from: str | None = None
    superseded_by: str | None = None
    cancel_reason: str | None = None
    rule_trace: tuple[str, ...] = field(default_factory=tuple)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Occurrence":
        def _opt(key: str) -> str | None:
            value = row.get(key)
            return str(value) if value is not None else None

        return cls(
            id=str(row["id"]),
            command_id=str(row["command_id"]),
            patient_id=str(row["patient_id"]),
            scheduled_at=row["scheduled_at"],
            bucket=TimeBucket(row["bucket"]),
            grace_minutes=int(row["grace_minutes"]),
            grace_deadline=row["grace_deadline"],
            status=OccurrenceStatus(row["status"]),
            linked_event_id=_opt("linked_event_id"),
            snoozed_from=_opt("snoozed_from"),
            superseded_by=_opt("superseded_by"),
            cancel_reason=row.get("cancel_reason"),
            rule_trace=tuple(row.get("rule_trace") or ()),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "command_id": self.command_id,
            "patient_id": self.patient_id,
            "scheduled_at": self.scheduled_at.isoformat(),
            "bucket": self.bucket.value,
            "grace_minutes": self.grace_minutes,
            "grace_deadline": self.grace_deadline.isoformat(),
            "status": self.status.value,
            "linked_event_id": self.linked_event_id,
            "snoozed_from": self.snoozed_from,
            "superseded_by": self.superseded_by,
            "cancel_reason": self.cancel_reason,
        }
