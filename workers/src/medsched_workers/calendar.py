"""Calendar materializer: expands a command's schedule into dated occurrences.

Planning is pure (``plan_occurrences``). Persistence relies on the partial
unique index ``uq_medication_occurrences_live_slot`` plus
``ON CONFLICT DO NOTHING``, so repeated or concurrent runs never duplicate a
slot and need no explicit locking. A slot whose original was moved away by a
snooze (``superseded_by`` set) is not regenerated.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .events import EventKind, append_event
from .grace_period import GracePeriodResult, calculate_grace_period
from .holidays import HolidayLookup, is_us_holiday
from .models import CommandDraft, Frequency, MedicationCommand, Occurrence
from .notifications import (
    NotificationService,
    OutboxNotificationService,
    cancel_pending_reminders,
    reminder_intents,
)
from .time_buckets import DEFAULT_BOUNDARIES, BucketBoundaries
from .utils import as_utc, date_range, local_date_for_timezone, local_datetime

logger = logging.getLogger(__name__)

DEFAULT_HORIZON_DAYS = 7


@dataclass(frozen=True)
class PlannedOccurrence:
    scheduled_at: datetime
    local_date: date
    grace: GracePeriodResult

    @property
    def grace_deadline(self) -> datetime:
        return self.grace.deadline(self.scheduled_at)


def plan_occurrences(
    command: CommandDraft,
    start_date: date,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
    *,
    boundaries: BucketBoundaries = DEFAULT_BOUNDARIES,
    holiday_lookup: HolidayLookup = is_us_holiday,
    multiplier_policy: str = "holiday_wins",
) -> list[PlannedOccurrence]:
    """Candidate slots for local days ``start_date`` .. ``start_date + horizon_days - 1``."""
    schedule = command.schedule
    if schedule.frequency == Frequency.AS_NEEDED or horizon_days <= 0:
        return []

    first = max(start_date, schedule.start_date)
    last = start_date + timedelta(days=horizon_days - 1)
    if schedule.end_date is not None:
        last = min(last, schedule.end_date)

    weekly_days = set(schedule.days_of_week or ())
    times = [time.fromisoformat(t) for t in schedule.times]

    planned: list[PlannedOccurrence] = []
    seen: set[datetime] = set()
    for day in date_range(first, last):
        if schedule.frequency == Frequency.WEEKLY and day.weekday() not in weekly_days:
            continue
        for time_of_day in times:
            scheduled_at = local_datetime(day, time_of_day, schedule.timezone)
            # Nonexistent wall times (DST gap) can collapse onto another slot.
            if scheduled_at in seen:
                continue
            seen.add(scheduled_at)
            grace = calculate_grace_period(
                command,
                scheduled_at,
                boundaries=boundaries,
                holiday_lookup=holiday_lookup,
                multiplier_policy=multiplier_policy,
            )
            planned.append(PlannedOccurrence(scheduled_at, day, grace))
    planned.sort(key=lambda p: p.scheduled_at)
    return planned


async def insert_occurrence(
    conn: psycopg.AsyncConnection[Any],
    command: MedicationCommand,
    planned: PlannedOccurrence,
    *,
    now: datetime,
    notifications: NotificationService | None = None,
) -> Occurrence | None:
    """Insert one slot unless it already exists. Returns the new row or None.

    A new slot gets its ``scheduled`` event and its dose reminder intents.
    """
    notifications = notifications or OutboxNotificationService()
    occurrence_id = str(uuid.uuid4())
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO medication_occurrences (
                id, command_id, patient_id, scheduled_at, bucket,
                grace_minutes, grace_deadline, rule_trace, status,
                created_at, updated_at
            )
            SELECT %s::uuid, %s::uuid, %s::text, %s::timestamptz, %s::text,
                   %s::integer, %s::timestamptz, %s::jsonb, 'scheduled',
                   %s::timestamptz, %s::timestamptz
            WHERE NOT EXISTS (
                SELECT 1 FROM medication_occurrences
                WHERE command_id = %s::uuid
                  AND scheduled_at = %s::timestamptz
                  AND superseded_by IS NOT NULL
            )
            ON CONFLICT DO NOTHING
            RETURNING *
            """,
            (
                occurrence_id,
                command.id,
                command.patient_id,
                planned.scheduled_at,
                planned.grace.bucket.value,
                planned.grace.minutes,
                planned.grace_deadline,
                Json(list(planned.grace.rule_trace)),
                now,
                now,
                command.id,
                planned.scheduled_at,
            ),
        )
        row = await cur.fetchone()
    if row is None:
        return None
    occurrence = Occurrence.from_row(row)
    await append_event(
        conn,
        command_id=command.id,
        patient_id=command.patient_id,
        occurrence_id=occurrence.id,
        kind=EventKind.SCHEDULED,
        created_at=now,
        scheduled_for=occurrence.scheduled_at,
        payload={
            "bucket": occurrence.bucket.value,
            "grace_minutes": occurrence.grace_minutes,
            "grace_deadline": occurrence.grace_deadline,
            "rule_trace": list(occurrence.rule_trace),
        },
    )
    for intent in reminder_intents(command, occurrence, now=now):
        await notifications.emit(conn, intent)
    return occurrence


async def generate_occurrences(
    conn: psycopg.AsyncConnection[Any],
    command: MedicationCommand,
    *,
    now: datetime,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
    start_date: date | None = None,
    boundaries: BucketBoundaries = DEFAULT_BOUNDARIES,
    holiday_lookup: HolidayLookup = is_us_holiday,
    multiplier_policy: str = "holiday_wins",
    notifications: NotificationService | None = None,
) -> list[Occurrence]:
    """Materialize the horizon for an active command; returns newly inserted rows.

    Slots whose grace deadline already passed are not created.
    """
    if not command.is_active:
        logger.debug("Skipping materialization for %s command %s", command.status, command.id)
        return []

    start = start_date or local_date_for_timezone(now, command.schedule.timezone)
    planned = plan_occurrences(
        command,
        start,
        horizon_days,
        boundaries=boundaries,
        holiday_lookup=holiday_lookup,
        multiplier_policy=multiplier_policy,
    )
    now_utc = as_utc(now)

    created: list[Occurrence] = []
    async with conn.transaction():
        for slot in planned:
            if slot.grace_deadline < now_utc:
                continue
            occurrence = await insert_occurrence(
                conn, command, slot, now=now, notifications=notifications
            )
            if occurrence is not None:
                created.append(occurrence)

    if created:
        logger.info(
            "Materialized %d occurrences for command %s",
            len(created),
            command.id,
            extra={"medsched_command_id": command.id, "medsched_patient_id": command.patient_id},
        )
    return created


async def maintain_rolling_window(
    conn: psycopg.AsyncConnection[Any],
    command: MedicationCommand,
    *,
    now: datetime,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
    boundaries: BucketBoundaries = DEFAULT_BOUNDARIES,
    holiday_lookup: HolidayLookup = is_us_holiday,
    multiplier_policy: str = "holiday_wins",
) -> list[Occurrence]:
    """Extend materialization to cover ``horizon_days`` from today; no-op when covered."""
    if not command.is_active:
        return []

    today = local_date_for_timezone(now, command.schedule.timezone)
    planned = plan_occurrences(
        command,
        today,
        horizon_days,
        boundaries=boundaries,
        holiday_lookup=holiday_lookup,
        multiplier_policy=multiplier_policy,
    )
    if not planned:
        return []

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT MAX(scheduled_at) AS last_scheduled_at
            FROM medication_occurrences
            WHERE command_id = %s AND status <> 'cancelled'
            """,
            (command.id,),
        )
        row = await cur.fetchone()
    last_scheduled_at = row["last_scheduled_at"] if row else None
    if last_scheduled_at is not None and as_utc(last_scheduled_at) >= planned[-1].scheduled_at:
        return []

    return await generate_occurrences(
        conn,
        command,
        now=now,
        horizon_days=horizon_days,
        start_date=today,
        boundaries=boundaries,
        holiday_lookup=holiday_lookup,
        multiplier_policy=multiplier_policy,
    )


async def cancel_future_occurrences(
    conn: psycopg.AsyncConnection[Any],
    command_id: str,
    *,
    now: datetime,
    reason: str,
) -> int:
    """Cancel untouched future occurrences (``scheduled`` or ``snoozed`` after ``now``).

    Their pending dose reminders are withdrawn in the same transaction.
    """
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            UPDATE medication_occurrences
            SET status = 'cancelled', cancel_reason = %s, updated_at = %s
            WHERE command_id = %s
              AND status IN ('scheduled', 'snoozed')
              AND scheduled_at > %s
            RETURNING id
            """,
            (reason, now, command_id, now),
        )
        rows = await cur.fetchall()
    cancelled_ids = [str(r["id"]) for r in rows]
    await cancel_pending_reminders(conn, cancelled_ids)
    return len(cancelled_ids)
