"""Transaction coordinator: every user action is one all-or-nothing transaction.

Each action locks the occurrence row, re-checks its precondition, appends the
event, transitions the occurrence with a conditional ``UPDATE ... WHERE status
= ANY(...)`` and refreshes the command's denormalized counters. Contention
errors are retried with exponential backoff; a violated precondition is a
``ConflictError`` and is never retried.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import dict_row
from psycopg.types.json import Json

from . import commands
from .errors import ConflictError, NotFoundError, TransactionAbortedError, ValidationError
from .events import (
    EventKind,
    append_event,
    correction_kind_for_status,
    get_event,
    taken_kind_for_dose,
)
from .grace_period import calculate_grace_period
from .holidays import HolidayLookup, is_us_holiday
from .models import ACTIONABLE_STATUSES, DoseKind, MedicationCommand, Occurrence, OccurrenceStatus
from .notifications import (
    NotificationService,
    OutboxNotificationService,
    cancel_pending_reminders,
    refill_intent,
    reminder_intents,
)
from .time_buckets import DEFAULT_BOUNDARIES, BucketBoundaries
from .undo import UNDO_WINDOW_SECONDS, ensure_undoable, revert_status
from .utils import as_utc, minutes_between, require_uuid, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    pg_errors.SerializationFailure,
    pg_errors.DeadlockDetected,
    pg_errors.LockNotAvailable,
)
DEFAULT_ATTEMPTS = 3
BASE_BACKOFF_SECONDS = 0.05
MIN_SNOOZE_MINUTES = 1
MAX_SNOOZE_MINUTES = 240
CORRECTION_WINDOW_HOURS = 24


@dataclass(frozen=True)
class ActionResult:
    occurrence: Occurrence
    event_id: str
    related_event_ids: tuple[str, ...] = ()
    superseded: Occurrence | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "occurrence": self.occurrence.to_dict(),
            "event_id": self.event_id,
        }
        if self.related_event_ids:
            out["related_event_ids"] = list(self.related_event_ids)
        if self.superseded is not None:
            out["superseded"] = self.superseded.to_dict()
        return out


async def run_in_transaction(
    conn: psycopg.AsyncConnection[Any],
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    label: str = "transaction",
    base_backoff_seconds: float = BASE_BACKOFF_SECONDS,
) -> T:
    """Run ``operation`` inside ``conn.transaction()``, retrying on contention."""
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            async with conn.transaction():
                await conn.execute("SET LOCAL lock_timeout = '5s'")
                return await operation()
        except RETRYABLE_ERRORS as exc:
            if attempt >= attempts:
                logger.error("%s aborted after %d attempts: %s", label, attempt, exc)
                raise TransactionAbortedError(
                    f"{label} aborted after {attempt} attempts",
                    details={"attempts": attempt, "cause": type(exc).__name__},
                ) from exc
            delay = base_backoff_seconds * 2 ** (attempt - 1)
            logger.warning(
                "%s hit %s, retrying in %.2fs (attempt=%d)",
                label,
                type(exc).__name__,
                delay,
                attempt,
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")


async def lock_occurrence(
    conn: psycopg.AsyncConnection[Any], occurrence_id: str
) -> Occurrence:
    occurrence_id = require_uuid(occurrence_id, "occurrence")
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT * FROM medication_occurrences WHERE id = %s FOR UPDATE",
            (occurrence_id,),
        )
        row = await cur.fetchone()
    if row is None:
        raise NotFoundError("occurrence", occurrence_id)
    return Occurrence.from_row(row)


async def get_occurrence(
    conn: psycopg.AsyncConnection[Any], occurrence_id: str
) -> Occurrence:
    occurrence_id = require_uuid(occurrence_id, "occurrence")
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT * FROM medication_occurrences WHERE id = %s", (occurrence_id,)
        )
        row = await cur.fetchone()
    if row is None:
        raise NotFoundError("occurrence", occurrence_id)
    return Occurrence.from_row(row)


async def _transition(
    conn: psycopg.AsyncConnection[Any],
    occurrence_id: str,
    *,
    from_statuses: tuple[OccurrenceStatus, ...],
    to_status: OccurrenceStatus,
    linked_event_id: str | None,
    now: datetime,
    superseded_by: str | None = None,
    cancel_reason: str | None = None,
    require_deadline_passed: bool = False,
) -> Occurrence:
    deadline_clause = "AND grace_deadline < %s" if require_deadline_passed else ""
    params: list[Any] = [
        to_status.value,
        linked_event_id,
        superseded_by,
        cancel_reason,
        now,
        occurrence_id,
        [s.value for s in from_statuses],
    ]
    if require_deadline_passed:
        params.append(now)
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            f"""
            UPDATE medication_occurrences
            SET status = %s,
                linked_event_id = %s,
                superseded_by = COALESCE(%s::uuid, superseded_by),
                cancel_reason = COALESCE(%s, cancel_reason),
                updated_at = %s
            WHERE id = %s
              AND status = ANY(%s::text[])
              {deadline_clause}
            RETURNING *
            """,
            params,
        )
        row = await cur.fetchone()
    if row is None:
        raise ConflictError(
            f"occurrence {occurrence_id} is no longer in state {[s.value for s in from_statuses]}",
            details={"occurrence_id": occurrence_id, "target": to_status.value},
        )
    return Occurrence.from_row(row)


def _require_actionable(occurrence: Occurrence, action: str) -> None:
    if occurrence.status not in ACTIONABLE_STATUSES:
        raise ConflictError(
            f"cannot {action} occurrence {occurrence.id} in status {occurrence.status}",
            details={"occurrence_id": occurrence.id, "status": occurrence.status.value},
        )


async def _count_take(
    conn: psycopg.AsyncConnection[Any],
    command: MedicationCommand,
    *,
    taken_at: datetime,
    event_id: str,
    notifications: NotificationService,
) -> None:
    remaining = await commands.record_take(
        conn, command.id, taken_at=taken_at, event_id=event_id
    )
    if remaining is not None and remaining == command.reminders.refill_threshold_doses:
        await notifications.emit(conn, refill_intent(command, remaining))


async def take_occurrence(
    conn: psycopg.AsyncConnection[Any],
    occurrence_id: str,
    *,
    now: datetime | None = None,
    taken_at: datetime | None = None,
    dose_kind: DoseKind = DoseKind.FULL,
    dosage_taken: str | None = None,
    notes: str | None = None,
    attempts: int = DEFAULT_ATTEMPTS,
    notifications: NotificationService | None = None,
) -> ActionResult:
    now = now or utc_now()
    actual = taken_at or now
    dose_kind = DoseKind(dose_kind)
    notifications = notifications or OutboxNotificationService()

    async def operation() -> ActionResult:
        occurrence = await lock_occurrence(conn, occurrence_id)
        _require_actionable(occurrence, "take")
        command = await commands.get_command(conn, occurrence.command_id)
        lateness = minutes_between(occurrence.scheduled_at, actual)
        event = await append_event(
            conn,
            command_id=occurrence.command_id,
            patient_id=occurrence.patient_id,
            occurrence_id=occurrence.id,
            kind=taken_kind_for_dose(dose_kind),
            created_at=now,
            scheduled_for=occurrence.scheduled_at,
            payload={
                "actual_time": actual,
                "dosage": dosage_taken or command.dosage,
                "dose_kind": dose_kind.value,
                "lateness_minutes": lateness,
                "within_grace": as_utc(actual) <= as_utc(occurrence.grace_deadline),
                "notes": notes,
            },
        )
        updated = await _transition(
            conn,
            occurrence.id,
            from_statuses=ACTIONABLE_STATUSES,
            to_status=OccurrenceStatus.TAKEN,
            linked_event_id=event.id,
            now=now,
        )
        await _count_take(
            conn, command, taken_at=actual, event_id=event.id, notifications=notifications
        )
        return ActionResult(updated, event.id)

    result = await run_in_transaction(conn, operation, attempts=attempts, label="take")
    logger.info(
        "Occurrence %s taken (%s)",
        occurrence_id,
        dose_kind.value,
        extra={"medsched_occurrence_id": occurrence_id, "medsched_action": "take"},
    )
    return result


async def skip_occurrence(
    conn: psycopg.AsyncConnection[Any],
    occurrence_id: str,
    *,
    now: datetime | None = None,
    reason: str | None = None,
    attempts: int = DEFAULT_ATTEMPTS,
) -> ActionResult:
    now = now or utc_now()

    async def operation() -> ActionResult:
        occurrence = await lock_occurrence(conn, occurrence_id)
        _require_actionable(occurrence, "skip")
        event = await append_event(
            conn,
            command_id=occurrence.command_id,
            patient_id=occurrence.patient_id,
            occurrence_id=occurrence.id,
            kind=EventKind.SKIPPED,
            created_at=now,
            scheduled_for=occurrence.scheduled_at,
            payload={"reason": reason},
        )
        updated = await _transition(
            conn,
            occurrence.id,
            from_statuses=ACTIONABLE_STATUSES,
            to_status=OccurrenceStatus.SKIPPED,
            linked_event_id=event.id,
            now=now,
        )
        return ActionResult(updated, event.id)

    result = await run_in_transaction(conn, operation, attempts=attempts, label="skip")
    logger.info(
        "Occurrence %s skipped",
        occurrence_id,
        extra={"medsched_occurrence_id": occurrence_id, "medsched_action": "skip"},
    )
    return result


async def snooze_occurrence(
    conn: psycopg.AsyncConnection[Any],
    occurrence_id: str,
    *,
    minutes: int,
    now: datetime | None = None,
    boundaries: BucketBoundaries = DEFAULT_BOUNDARIES,
    holiday_lookup: HolidayLookup = is_us_holiday,
    multiplier_policy: str = "holiday_wins",
    attempts: int = DEFAULT_ATTEMPTS,
    notifications: NotificationService | None = None,
) -> ActionResult:
    """Move a dose later: the original is cancelled and superseded by a new occurrence.

    Reminders follow the dose: the original's pending ones are withdrawn and
    the replacement gets its own.
    """
    if not isinstance(minutes, int) or isinstance(minutes, bool) or not (
        MIN_SNOOZE_MINUTES <= minutes <= MAX_SNOOZE_MINUTES
    ):
        raise ValidationError(
            f"snooze minutes must be between {MIN_SNOOZE_MINUTES} and {MAX_SNOOZE_MINUTES}"
        )
    now = now or utc_now()
    notifications = notifications or OutboxNotificationService()

    async def operation() -> ActionResult:
        occurrence = await lock_occurrence(conn, occurrence_id)
        _require_actionable(occurrence, "snooze")
        command = await commands.get_command(conn, occurrence.command_id)

        new_at = as_utc(occurrence.scheduled_at) + timedelta(minutes=minutes)
        grace = calculate_grace_period(
            command,
            new_at,
            boundaries=boundaries,
            holiday_lookup=holiday_lookup,
            multiplier_policy=multiplier_policy,
        )
        new_id = str(uuid.uuid4())
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                INSERT INTO medication_occurrences (
                    id, command_id, patient_id, scheduled_at, bucket,
                    grace_minutes, grace_deadline, rule_trace, status,
                    snoozed_from, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 'snoozed', %s, %s, %s)
                ON CONFLICT DO NOTHING
                RETURNING *
                """,
                (
                    new_id,
                    occurrence.command_id,
                    occurrence.patient_id,
                    new_at,
                    grace.bucket.value,
                    grace.minutes,
                    grace.deadline(new_at),
                    Json(list(grace.rule_trace)),
                    occurrence.id,
                    now,
                    now,
                ),
            )
            row = await cur.fetchone()
        if row is None:
            raise ConflictError(
                f"an occurrence already exists at {new_at.isoformat()}",
                details={"occurrence_id": occurrence.id, "snoozed_until": new_at.isoformat()},
            )
        replacement = Occurrence.from_row(row)

        event = await append_event(
            conn,
            command_id=occurrence.command_id,
            patient_id=occurrence.patient_id,
            occurrence_id=occurrence.id,
            kind=EventKind.SNOOZED,
            created_at=now,
            scheduled_for=occurrence.scheduled_at,
            payload={
                "minutes": minutes,
                "snoozed_until": new_at,
                "new_occurrence_id": replacement.id,
            },
        )
        original = await _transition(
            conn,
            occurrence.id,
            from_statuses=ACTIONABLE_STATUSES,
            to_status=OccurrenceStatus.CANCELLED,
            linked_event_id=event.id,
            now=now,
            superseded_by=replacement.id,
            cancel_reason="snoozed",
        )
        await cancel_pending_reminders(conn, [occurrence.id])
        for intent in reminder_intents(command, replacement, now=now):
            await notifications.emit(conn, intent)
        return ActionResult(replacement, event.id, superseded=original)

    result = await run_in_transaction(conn, operation, attempts=attempts, label="snooze")
    logger.info(
        "Occurrence %s snoozed %d minutes -> %s",
        occurrence_id,
        minutes,
        result.occurrence.id,
        extra={"medsched_occurrence_id": occurrence_id, "medsched_action": "snooze"},
    )
    return result


async def undo_take(
    conn: psycopg.AsyncConnection[Any],
    occurrence_id: str,
    *,
    now: datetime | None = None,
    window_seconds: float = UNDO_WINDOW_SECONDS,
    attempts: int = DEFAULT_ATTEMPTS,
) -> ActionResult:
    """Reverse a recent take by appending ``undone`` (and ``missed`` past the deadline)."""
    now = now or utc_now()

    async def operation() -> ActionResult:
        occurrence = await lock_occurrence(conn, occurrence_id)
        taken_event = None
        if occurrence.status == OccurrenceStatus.TAKEN and occurrence.linked_event_id:
            taken_event = await get_event(conn, occurrence.linked_event_id)
        decision = ensure_undoable(occurrence, taken_event, now, window_seconds)
        if taken_event is None:
            raise ConflictError(
                f"occurrence {occurrence.id} has no take to undo",
                details={"occurrence_id": occurrence.id, "status": occurrence.status.value},
            )

        undone = await append_event(
            conn,
            command_id=occurrence.command_id,
            patient_id=occurrence.patient_id,
            occurrence_id=occurrence.id,
            kind=EventKind.UNDONE,
            created_at=now,
            scheduled_for=occurrence.scheduled_at,
            payload={
                "reverses_event_id": taken_event.id,
                "reversed_kind": taken_event.kind.value,
                "elapsed_seconds": round(decision.elapsed_seconds, 3),
            },
        )

        target = revert_status(occurrence, now)
        related: tuple[str, ...] = ()
        linked_event_id: str | None = None
        if target == OccurrenceStatus.MISSED:
            missed = await append_event(
                conn,
                command_id=occurrence.command_id,
                patient_id=occurrence.patient_id,
                occurrence_id=occurrence.id,
                kind=EventKind.MISSED,
                created_at=now,
                scheduled_for=occurrence.scheduled_at,
                payload={
                    "reason": "undone_after_deadline",
                    "grace_deadline": occurrence.grace_deadline,
                    "undone_event_id": undone.id,
                },
            )
            linked_event_id = missed.id
            related = (missed.id,)

        updated = await _transition(
            conn,
            occurrence.id,
            from_statuses=(OccurrenceStatus.TAKEN,),
            to_status=target,
            linked_event_id=linked_event_id,
            now=now,
        )
        await commands.release_take(conn, occurrence.command_id)
        return ActionResult(updated, undone.id, related_event_ids=related)

    result = await run_in_transaction(conn, operation, attempts=attempts, label="undo")
    logger.info(
        "Occurrence %s take undone -> %s",
        occurrence_id,
        result.occurrence.status.value,
        extra={"medsched_occurrence_id": occurrence_id, "medsched_action": "undo"},
    )
    return result


async def mark_missed(
    conn: psycopg.AsyncConnection[Any],
    occurrence_id: str,
    *,
    now: datetime | None = None,
    attempts: int = DEFAULT_ATTEMPTS,
) -> ActionResult:
    """Conditionally mark an overdue occurrence missed. A lost race is a ConflictError."""
    now = now or utc_now()

    async def operation() -> ActionResult:
        occurrence = await lock_occurrence(conn, occurrence_id)
        _require_actionable(occurrence, "mark missed")
        if as_utc(occurrence.grace_deadline) >= as_utc(now):
            raise ConflictError(
                f"occurrence {occurrence.id} is still within its grace period",
                details={"grace_deadline": occurrence.grace_deadline.isoformat()},
            )
        event = await append_event(
            conn,
            command_id=occurrence.command_id,
            patient_id=occurrence.patient_id,
            occurrence_id=occurrence.id,
            kind=EventKind.MISSED,
            created_at=now,
            scheduled_for=occurrence.scheduled_at,
            payload={
                "reason": "grace_period_elapsed",
                "grace_deadline": occurrence.grace_deadline,
                "grace_minutes": occurrence.grace_minutes,
            },
        )
        updated = await _transition(
            conn,
            occurrence.id,
            from_statuses=ACTIONABLE_STATUSES,
            to_status=OccurrenceStatus.MISSED,
            linked_event_id=event.id,
            now=now,
            require_deadline_passed=True,
        )
        return ActionResult(updated, event.id)

    return await run_in_transaction(conn, operation, attempts=attempts, label="mark_missed")


async def correct_occurrence(
    conn: psycopg.AsyncConnection[Any],
    occurrence_id: str,
    *,
    now: datetime | None = None,
    taken_at: datetime | None = None,
    dose_kind: DoseKind = DoseKind.FULL,
    notes: str | None = None,
    window_hours: int = CORRECTION_WINDOW_HOURS,
    attempts: int = DEFAULT_ATTEMPTS,
    notifications: NotificationService | None = None,
) -> ActionResult:
    """Record that a missed or skipped dose was actually taken."""
    now = now or utc_now()
    dose_kind = DoseKind(dose_kind)
    notifications = notifications or OutboxNotificationService()

    async def operation() -> ActionResult:
        occurrence = await lock_occurrence(conn, occurrence_id)
        kind = correction_kind_for_status(occurrence.status)
        if kind is None or occurrence.linked_event_id is None:
            raise ConflictError(
                f"only missed or skipped occurrences can be corrected (status={occurrence.status})",
                details={"occurrence_id": occurrence.id, "status": occurrence.status.value},
            )
        original = await get_event(conn, occurrence.linked_event_id)
        if as_utc(now) - as_utc(original.created_at) > timedelta(hours=window_hours):
            raise ConflictError(
                f"correction window of {window_hours}h has elapsed for occurrence {occurrence.id}",
                details={"occurrence_id": occurrence.id, "window_hours": window_hours},
            )
        actual = taken_at or now
        event = await append_event(
            conn,
            command_id=occurrence.command_id,
            patient_id=occurrence.patient_id,
            occurrence_id=occurrence.id,
            kind=kind,
            created_at=now,
            scheduled_for=occurrence.scheduled_at,
            payload={
                "reverses_event_id": original.id,
                "previous_status": occurrence.status.value,
                "actual_time": actual,
                "dose_kind": dose_kind.value,
                "lateness_minutes": minutes_between(occurrence.scheduled_at, actual),
                "notes": notes,
            },
        )
        updated = await _transition(
            conn,
            occurrence.id,
            from_statuses=(occurrence.status,),
            to_status=OccurrenceStatus.TAKEN,
            linked_event_id=event.id,
            now=now,
        )
        command = await commands.get_command(conn, occurrence.command_id)
        await _count_take(
            conn, command, taken_at=actual, event_id=event.id, notifications=notifications
        )
        return ActionResult(updated, event.id)

    result = await run_in_transaction(conn, operation, attempts=attempts, label="correct")
    logger.info(
        "Occurrence %s corrected to taken",
        occurrence_id,
        extra={"medsched_occurrence_id": occurrence_id, "medsched_action": "correct"},
    )
    return result
