"""CommandStore: persistence and lifecycle of medication regimens.

Commands are never deleted. Every mutation bumps ``version`` through a single
conditional ``UPDATE ... WHERE version = %s`` so concurrent editors cannot
silently overwrite each other. Lifecycle changes drive the calendar
materializer: pause/discontinue cancel untouched future occurrences, resume
and rescheduling updates re-materialize.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json
from pydantic import ValidationError as PydanticValidationError

from . import calendar
from .config import EngineSettings
from .errors import ConflictError, NotFoundError, ValidationError
from .holidays import HolidayLookup, is_us_holiday
from .models import CommandDraft, CommandStatus, MedicationCommand
from .notifications import NotificationService
from .time_buckets import BucketBoundaries
from .utils import require_uuid, utc_now

logger = logging.getLogger(__name__)

# Allowed lifecycle transitions: from-status -> reachable statuses.
_TRANSITIONS: dict[CommandStatus, tuple[CommandStatus, ...]] = {
    CommandStatus.ACTIVE: (CommandStatus.PAUSED, CommandStatus.DISCONTINUED),
    CommandStatus.PAUSED: (CommandStatus.ACTIVE, CommandStatus.DISCONTINUED),
    CommandStatus.DISCONTINUED: (),
}

_UPDATABLE_FIELDS = (
    "medication_name",
    "dosage",
    "instructions",
    "schedule",
    "reminders",
    "grace_period",
)


def parse_command_draft(data: CommandDraft | dict[str, Any]) -> CommandDraft:
    """Validate user input, translating pydantic errors into ``ValidationError``."""
    if isinstance(data, CommandDraft):
        data = data.model_dump(mode="json")
    try:
        return CommandDraft.model_validate(data)
    except PydanticValidationError as exc:
        messages = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()))
            messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        raise ValidationError("invalid medication command", errors=messages) from exc


def compute_checksum(draft: CommandDraft) -> str:
    """sha256 over the normalized regimen content (case-insensitive name)."""
    content = {
        "patient_id": draft.patient_id,
        "medication_name": draft.medication_name.strip().lower(),
        "dosage": draft.dosage.strip().lower(),
        "schedule": draft.schedule.model_dump(mode="json"),
        "grace_period": draft.grace_period.model_dump(mode="json"),
    }
    encoded = json.dumps(content, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


async def get_command(
    conn: psycopg.AsyncConnection[Any],
    command_id: str,
    *,
    for_update: bool = False,
) -> MedicationCommand:
    command_id = require_uuid(command_id, "command")
    query = "SELECT * FROM medication_commands WHERE id = %s"
    if for_update:
        query += " FOR UPDATE"
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(query, (command_id,))
        row = await cur.fetchone()
    if row is None:
        raise NotFoundError("command", command_id)
    return MedicationCommand.from_row(row)


async def list_active_commands(
    conn: psycopg.AsyncConnection[Any], patient_id: str | None = None
) -> list[MedicationCommand]:
    async with conn.cursor(row_factory=dict_row) as cur:
        if patient_id is None:
            await cur.execute(
                """
                SELECT * FROM medication_commands
                WHERE status = 'active'
                ORDER BY patient_id, created_at, id
                """
            )
        else:
            await cur.execute(
                """
                SELECT * FROM medication_commands
                WHERE status = 'active' AND patient_id = %s
                ORDER BY created_at, id
                """,
                (patient_id,),
            )
        rows = await cur.fetchall()
    return [MedicationCommand.from_row(r) for r in rows]


async def _ensure_not_duplicate(
    conn: psycopg.AsyncConnection[Any],
    patient_id: str,
    checksum: str,
    exclude_id: str | None = None,
) -> None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT id FROM medication_commands
            WHERE patient_id = %s
              AND checksum = %s
              AND status IN ('active', 'paused')
              AND (%s::uuid IS NULL OR id <> %s::uuid)
            LIMIT 1
            """,
            (patient_id, checksum, exclude_id, exclude_id),
        )
        row = await cur.fetchone()
    if row is not None:
        raise ConflictError(
            "an identical medication command already exists for this patient",
            details={"duplicate_of": str(row["id"])},
        )


def _require_version(command: MedicationCommand, expected_version: int) -> None:
    if command.version != expected_version:
        raise ConflictError(
            f"command {command.id} is at version {command.version}, expected {expected_version}",
            details={"current_version": command.version, "expected_version": expected_version},
        )


async def create_command(
    conn: psycopg.AsyncConnection[Any],
    data: CommandDraft | dict[str, Any],
    *,
    now: datetime | None = None,
    settings: EngineSettings | None = None,
    boundaries: BucketBoundaries | None = None,
    holiday_lookup: HolidayLookup = is_us_holiday,
    notifications: NotificationService | None = None,
) -> MedicationCommand:
    """Validate, persist and materialize a new command at version 1."""
    settings = settings or EngineSettings()
    now = now or utc_now()
    draft = parse_command_draft(data)
    checksum = compute_checksum(draft)

    async with conn.transaction():
        await _ensure_not_duplicate(conn, draft.patient_id, checksum)
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                INSERT INTO medication_commands (
                    id, patient_id, medication_name, dosage, instructions,
                    schedule, reminders, grace_period, status, version,
                    checksum, created_at, updated_at
                )
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, 'active', 1, %s, %s, %s)
                RETURNING *
                """,
                (
                    draft.patient_id,
                    draft.medication_name,
                    draft.dosage,
                    draft.instructions,
                    Json(draft.schedule.model_dump(mode="json")),
                    Json(draft.reminders.model_dump(mode="json")),
                    Json(draft.grace_period.model_dump(mode="json")),
                    checksum,
                    now,
                    now,
                ),
            )
            row = await cur.fetchone()
        if row is None:
            raise RuntimeError("command insert returned no row")
        command = MedicationCommand.from_row(row)
        created = await calendar.generate_occurrences(
            conn,
            command,
            now=now,
            horizon_days=settings.horizon_days,
            boundaries=boundaries or settings.boundaries,
            holiday_lookup=holiday_lookup,
            multiplier_policy=settings.multiplier_policy,
            notifications=notifications,
        )

    logger.info(
        "Created command %s for patient %s (%d occurrences)",
        command.id,
        command.patient_id,
        len(created),
        extra={"medsched_command_id": command.id, "medsched_patient_id": command.patient_id},
    )
    return command


async def update_command(
    conn: psycopg.AsyncConnection[Any],
    command_id: str,
    changes: dict[str, Any],
    *,
    expected_version: int,
    now: datetime | None = None,
    settings: EngineSettings | None = None,
    boundaries: BucketBoundaries | None = None,
    holiday_lookup: HolidayLookup = is_us_holiday,
    notifications: NotificationService | None = None,
) -> MedicationCommand:
    """Apply field changes. Schedule and grace changes rebuild future occurrences."""
    settings = settings or EngineSettings()
    now = now or utc_now()
    unknown = sorted(set(changes) - set(_UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(
            "unsupported command fields", errors=[f"{name}: cannot be updated" for name in unknown]
        )

    async with conn.transaction():
        current = await get_command(conn, command_id, for_update=True)
        _require_version(current, expected_version)
        if current.status == CommandStatus.DISCONTINUED:
            raise ConflictError(f"command {command_id} is discontinued")

        merged = current.model_dump(mode="json", include={"patient_id", *_UPDATABLE_FIELDS})
        for name, value in changes.items():
            if isinstance(value, dict) and isinstance(merged.get(name), dict):
                merged[name] = {**merged[name], **value}
            else:
                merged[name] = value
        draft = parse_command_draft(merged)
        checksum = compute_checksum(draft)
        await _ensure_not_duplicate(conn, draft.patient_id, checksum, exclude_id=command_id)

        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                UPDATE medication_commands
                SET medication_name = %s,
                    dosage = %s,
                    instructions = %s,
                    schedule = %s,
                    reminders = %s,
                    grace_period = %s,
                    checksum = %s,
                    version = version + 1,
                    updated_at = %s
                WHERE id = %s AND version = %s
                RETURNING *
                """,
                (
                    draft.medication_name,
                    draft.dosage,
                    draft.instructions,
                    Json(draft.schedule.model_dump(mode="json")),
                    Json(draft.reminders.model_dump(mode="json")),
                    Json(draft.grace_period.model_dump(mode="json")),
                    checksum,
                    now,
                    command_id,
                    expected_version,
                ),
            )
            row = await cur.fetchone()
        if row is None:
            raise ConflictError(f"command {command_id} was modified concurrently")
        updated = MedicationCommand.from_row(row)

        rescheduled = (
            draft.schedule != current.schedule or draft.grace_period != current.grace_period
        )
        if rescheduled and updated.is_active:
            cancelled = await calendar.cancel_future_occurrences(
                conn, command_id, now=now, reason="rescheduled"
            )
            created = await calendar.generate_occurrences(
                conn,
                updated,
                now=now,
                horizon_days=settings.horizon_days,
                boundaries=boundaries or settings.boundaries,
                holiday_lookup=holiday_lookup,
                multiplier_policy=settings.multiplier_policy,
                notifications=notifications,
            )
            logger.info(
                "Rescheduled command %s (cancelled=%d, created=%d)",
                command_id,
                cancelled,
                len(created),
            )

    logger.info("Updated command %s to version %d", command_id, updated.version)
    return updated


async def _transition(
    conn: psycopg.AsyncConnection[Any],
    command_id: str,
    target: CommandStatus,
    *,
    expected_version: int,
    now: datetime,
) -> tuple[MedicationCommand, MedicationCommand]:
    current = await get_command(conn, command_id, for_update=True)
    _require_version(current, expected_version)
    if target not in _TRANSITIONS[current.status]:
        raise ConflictError(
            f"cannot move command {command_id} from {current.status} to {target}",
            details={"status": current.status.value, "target": target.value},
        )
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            UPDATE medication_commands
            SET status = %s, version = version + 1, updated_at = %s
            WHERE id = %s AND version = %s
            RETURNING *
            """,
            (target.value, now, command_id, expected_version),
        )
        row = await cur.fetchone()
    if row is None:
        raise ConflictError(f"command {command_id} was modified concurrently")
    return current, MedicationCommand.from_row(row)


async def pause_command(
    conn: psycopg.AsyncConnection[Any],
    command_id: str,
    *,
    expected_version: int,
    now: datetime | None = None,
) -> MedicationCommand:
    now = now or utc_now()
    async with conn.transaction():
        _, updated = await _transition(
            conn, command_id, CommandStatus.PAUSED, expected_version=expected_version, now=now
        )
        cancelled = await calendar.cancel_future_occurrences(
            conn, command_id, now=now, reason="paused"
        )
    logger.info("Paused command %s (cancelled=%d)", command_id, cancelled)
    return updated


async def resume_command(
    conn: psycopg.AsyncConnection[Any],
    command_id: str,
    *,
    expected_version: int,
    now: datetime | None = None,
    settings: EngineSettings | None = None,
    boundaries: BucketBoundaries | None = None,
    holiday_lookup: HolidayLookup = is_us_holiday,
    notifications: NotificationService | None = None,
) -> MedicationCommand:
    settings = settings or EngineSettings()
    now = now or utc_now()
    async with conn.transaction():
        _, updated = await _transition(
            conn, command_id, CommandStatus.ACTIVE, expected_version=expected_version, now=now
        )
        created = await calendar.generate_occurrences(
            conn,
            updated,
            now=now,
            horizon_days=settings.horizon_days,
            boundaries=boundaries or settings.boundaries,
            holiday_lookup=holiday_lookup,
            multiplier_policy=settings.multiplier_policy,
            notifications=notifications,
        )
    logger.info("Resumed command %s (created=%d)", command_id, len(created))
    return updated


async def discontinue_command(
    conn: psycopg.AsyncConnection[Any],
    command_id: str,
    *,
    expected_version: int,
    now: datetime | None = None,
) -> MedicationCommand:
    now = now or utc_now()
    async with conn.transaction():
        _, updated = await _transition(
            conn,
            command_id,
            CommandStatus.DISCONTINUED,
            expected_version=expected_version,
            now=now,
        )
        cancelled = await calendar.cancel_future_occurrences(
            conn, command_id, now=now, reason="discontinued"
        )
    logger.info("Discontinued command %s (cancelled=%d)", command_id, cancelled)
    return updated


async def record_take(
    conn: psycopg.AsyncConnection[Any],
    command_id: str,
    *,
    taken_at: datetime,
    event_id: str,
) -> int | None:
    """Refresh the denormalized counters and count down tracked supply.

    Does not bump ``version``. Returns the remaining dose count, or None when
    the command does not track supply.
    """
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            UPDATE medication_commands
            SET last_taken_at = GREATEST(COALESCE(last_taken_at, %s), %s),
                last_event_id = %s,
                reminders = CASE
                    WHEN jsonb_typeof(reminders -> 'doses_remaining') = 'number'
                    THEN jsonb_set(
                        reminders,
                        '{doses_remaining}',
                        to_jsonb(GREATEST((reminders ->> 'doses_remaining')::int - 1, 0))
                    )
                    ELSE reminders
                END
            WHERE id = %s
            RETURNING (reminders ->> 'doses_remaining')::int AS doses_remaining
            """,
            (taken_at, taken_at, event_id, command_id),
        )
        row = await cur.fetchone()
    return row["doses_remaining"] if row else None


async def release_take(conn: psycopg.AsyncConnection[Any], command_id: str) -> None:
    """Give back the dose counted by an undone take."""
    async with conn.cursor() as cur:
        await cur.execute(
            """
            UPDATE medication_commands
            SET reminders = jsonb_set(
                reminders,
                '{doses_remaining}',
                to_jsonb((reminders ->> 'doses_remaining')::int + 1)
            )
            WHERE id = %s
              AND jsonb_typeof(reminders -> 'doses_remaining') = 'number'
            """,
            (command_id,),
        )
