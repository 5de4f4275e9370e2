"""Event log: append-only record of everything that happened to an occurrence.

Event kinds form a closed set. Every consumer maps kinds with an exhaustive
``match`` ending in ``assert_never`` so adding a kind fails type-checking at
each site that forgot to handle it.

Rows are never updated except for the archival flag (enforced by the
``medication_events_append_only`` trigger); corrections and reversals are new
events that reference the original via ``payload.reverses_event_id``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, assert_never

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .errors import NotFoundError
from .models import DoseKind, OccurrenceStatus
from .utils import require_uuid

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    SCHEDULED = "scheduled"
    TAKEN_FULL = "taken_full"
    TAKEN_PARTIAL = "taken_partial"
    TAKEN_ADJUSTED = "taken_adjusted"
    MISSED = "missed"
    SKIPPED = "skipped"
    SNOOZED = "snoozed"
    UNDONE = "undone"
    CORRECTED_MISSED = "corrected_missed"
    CORRECTED_SKIPPED = "corrected_skipped"


def terminal_status_for_kind(kind: EventKind) -> OccurrenceStatus | None:
    """The terminal occurrence status an event of this kind may be linked to."""
    match kind:
        case (
            EventKind.TAKEN_FULL
            | EventKind.TAKEN_PARTIAL
            | EventKind.TAKEN_ADJUSTED
            | EventKind.CORRECTED_MISSED
            | EventKind.CORRECTED_SKIPPED
        ):
            return OccurrenceStatus.TAKEN
        case EventKind.MISSED:
            return OccurrenceStatus.MISSED
        case EventKind.SKIPPED:
            return OccurrenceStatus.SKIPPED
        case EventKind.SCHEDULED | EventKind.SNOOZED | EventKind.UNDONE:
            return None
        case _:
            assert_never(kind)


def is_undoable(kind: EventKind) -> bool:
    """Only direct take actions can be undone; corrections go through their own window."""
    match kind:
        case EventKind.TAKEN_FULL | EventKind.TAKEN_PARTIAL | EventKind.TAKEN_ADJUSTED:
            return True
        case (
            EventKind.SCHEDULED
            | EventKind.MISSED
            | EventKind.SKIPPED
            | EventKind.SNOOZED
            | EventKind.UNDONE
            | EventKind.CORRECTED_MISSED
            | EventKind.CORRECTED_SKIPPED
        ):
            return False
        case _:
            assert_never(kind)


def taken_kind_for_dose(dose_kind: DoseKind) -> EventKind:
    match dose_kind:
        case DoseKind.FULL:
            return EventKind.TAKEN_FULL
        case DoseKind.PARTIAL:
            return EventKind.TAKEN_PARTIAL
        case DoseKind.ADJUSTED:
            return EventKind.TAKEN_ADJUSTED
        case _:
            assert_never(dose_kind)


def correction_kind_for_status(status: OccurrenceStatus) -> EventKind | None:
    if status == OccurrenceStatus.MISSED:
        return EventKind.CORRECTED_MISSED
    if status == OccurrenceStatus.SKIPPED:
        return EventKind.CORRECTED_SKIPPED
    return None


@dataclass(frozen=True)
class MedicationEvent:
    id: str
    command_id: str
    patient_id: str
    occurrence_id: str | None
    kind: EventKind
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    scheduled_for: datetime | None = None
    seq: int | None = None
    archived: bool = False
    archived_at: datetime | None = None

    @property
    def reverses_event_id(self) -> str | None:
        value = self.payload.get("reverses_event_id")
        return str(value) if value else None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MedicationEvent":
        occurrence_id = row.get("occurrence_id")
        return cls(
            id=str(row["id"]),
            command_id=str(row["command_id"]),
            patient_id=str(row["patient_id"]),
            occurrence_id=str(occurrence_id) if occurrence_id is not None else None,
            kind=EventKind(row["kind"]),
            created_at=row["created_at"],
            payload=dict(row.get("payload") or {}),
            scheduled_for=row.get("scheduled_for"),
            seq=row.get("seq"),
            archived=bool(row.get("archived", False)),
            archived_at=row.get("archived_at"),
        )


def _jsonable(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, (tuple, list)):
            out[key] = list(value)
        else:
            out[key] = value
    return out


async def append_event(
    conn: psycopg.AsyncConnection[Any],
    *,
    command_id: str,
    patient_id: str,
    occurrence_id: str | None,
    kind: EventKind,
    created_at: datetime,
    scheduled_for: datetime | None = None,
    payload: dict[str, Any] | None = None,
) -> MedicationEvent:
    """Append one immutable event. Must run inside the caller's transaction."""
    event_id = str(uuid.uuid4())
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO medication_events (
                id, command_id, patient_id, occurrence_id, kind,
                payload, scheduled_for, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                event_id,
                command_id,
                patient_id,
                occurrence_id,
                kind.value,
                Json(_jsonable(payload or {})),
                scheduled_for,
                created_at,
            ),
        )
        row = await cur.fetchone()
    if row is None:
        raise RuntimeError(f"event insert returned no row (kind={kind})")
    logger.debug(
        "Appended %s event %s (occurrence=%s)",
        kind.value,
        event_id,
        occurrence_id,
        extra={"medsched_event_kind": kind.value, "medsched_occurrence_id": occurrence_id},
    )
    return MedicationEvent.from_row(row)


async def get_event(conn: psycopg.AsyncConnection[Any], event_id: str) -> MedicationEvent:
    event_id = require_uuid(event_id, "event")
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute("SELECT * FROM medication_events WHERE id = %s", (event_id,))
        row = await cur.fetchone()
    if row is None:
        raise NotFoundError("event", event_id)
    return MedicationEvent.from_row(row)


async def list_occurrence_events(
    conn: psycopg.AsyncConnection[Any], occurrence_id: str
) -> list[MedicationEvent]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT * FROM medication_events
            WHERE occurrence_id = %s
            ORDER BY seq ASC
            """,
            (occurrence_id,),
        )
        rows = await cur.fetchall()
    return [MedicationEvent.from_row(r) for r in rows]


async def list_patient_events(
    conn: psycopg.AsyncConnection[Any],
    patient_id: str,
    start_at: datetime,
    end_at: datetime,
) -> list[MedicationEvent]:
    """Events whose dose was scheduled in [start_at, end_at), archived ones included."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT * FROM medication_events
            WHERE patient_id = %s
              AND scheduled_for >= %s
              AND scheduled_for < %s
            ORDER BY seq ASC
            """,
            (patient_id, start_at, end_at),
        )
        rows = await cur.fetchall()
    return [MedicationEvent.from_row(r) for r in rows]


async def mark_events_archived(
    conn: psycopg.AsyncConnection[Any],
    patient_id: str,
    start_at: datetime,
    end_at: datetime,
    archived_at: datetime,
) -> int:
    """Flip the archival flag; the only mutation the event log allows."""
    async with conn.cursor() as cur:
        await cur.execute(
            """
            UPDATE medication_events
            SET archived = TRUE, archived_at = %s
            WHERE patient_id = %s
              AND scheduled_for >= %s
              AND scheduled_for < %s
              AND archived = FALSE
            """,
            (archived_at, patient_id, start_at, end_at),
        )
        return cur.rowcount
