"""Notification intents.

The engine never delivers notifications. It records intents in the
``notification_intents`` outbox inside the same transaction as the state
change that produced them; a delivery service drains the outbox. Dose
reminders carry ``deliver_after`` and are withdrawn when their occurrence is
cancelled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .models import MedicationCommand, Occurrence
from .utils import as_utc

logger = logging.getLogger(__name__)


class IntentKind(StrEnum):
    MISSED_DOSE = "missed_dose"
    DOSE_REMINDER = "dose_reminder"
    REFILL_DUE = "refill_due"


@dataclass(frozen=True)
class NotificationIntent:
    kind: IntentKind
    patient_id: str
    command_id: str | None = None
    occurrence_id: str | None = None
    deliver_after: datetime | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationService(Protocol):
    async def emit(
        self, conn: psycopg.AsyncConnection[Any], intent: NotificationIntent
    ) -> None: ...


class OutboxNotificationService:
    """Default service: one ``notification_intents`` row per intent."""

    async def emit(
        self, conn: psycopg.AsyncConnection[Any], intent: NotificationIntent
    ) -> None:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                INSERT INTO notification_intents (
                    patient_id, command_id, occurrence_id, kind, payload,
                    deliver_after
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    intent.patient_id,
                    intent.command_id,
                    intent.occurrence_id,
                    intent.kind.value,
                    Json(intent.payload),
                    intent.deliver_after,
                ),
            )
            row = await cur.fetchone()
        logger.debug(
            "Queued %s intent %s for patient %s",
            intent.kind.value,
            row["id"] if row else None,
            intent.patient_id,
        )


def reminder_intents(
    command: MedicationCommand, occurrence: Occurrence, *, now: datetime
) -> list[NotificationIntent]:
    """One ``dose_reminder`` per configured lead time that is still in the future."""
    reminders = command.reminders
    if not reminders.enabled:
        return []
    intents = []
    for minutes in reminders.minutes_before:
        deliver_after = as_utc(occurrence.scheduled_at) - timedelta(minutes=minutes)
        if deliver_after < as_utc(now):
            continue
        intents.append(
            NotificationIntent(
                kind=IntentKind.DOSE_REMINDER,
                patient_id=occurrence.patient_id,
                command_id=occurrence.command_id,
                occurrence_id=occurrence.id,
                deliver_after=deliver_after,
                payload={
                    "medication_name": command.medication_name,
                    "dosage": command.dosage,
                    "scheduled_at": as_utc(occurrence.scheduled_at).isoformat(),
                    "minutes_before": minutes,
                    "methods": list(reminders.methods),
                },
            )
        )
    return intents


def refill_intent(command: MedicationCommand, doses_remaining: int) -> NotificationIntent:
    return NotificationIntent(
        kind=IntentKind.REFILL_DUE,
        patient_id=command.patient_id,
        command_id=command.id,
        payload={
            "medication_name": command.medication_name,
            "doses_remaining": doses_remaining,
            "refill_threshold_doses": command.reminders.refill_threshold_doses,
        },
    )


async def cancel_pending_reminders(
    conn: psycopg.AsyncConnection[Any], occurrence_ids: list[str]
) -> int:
    """Withdraw undelivered reminders for occurrences that will not happen."""
    if not occurrence_ids:
        return 0
    async with conn.cursor() as cur:
        await cur.execute(
            """
            UPDATE notification_intents
            SET status = 'cancelled'
            WHERE occurrence_id = ANY(%s::uuid[])
              AND kind = 'dose_reminder'
              AND status = 'pending'
            """,
            (occurrence_ids,),
        )
        return cur.rowcount
