"""Engine entry points for callers acting on behalf of a principal.

Every call is authorized through the FamilyAccessService before touching
data. Results are domain objects; ``to_dict`` helpers give JSON-ready views.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from . import commands, transactions
from .access import Action, FamilyAccessService, FamilyAccessTable
from .analytics import AdherenceReport, build_adherence_report, patient_timezone
from .config import EngineSettings
from .drug_metadata import CommandDrugMetadata, DrugMetadataService
from .holidays import HolidayLookup, is_us_holiday
from .models import CommandDraft, DoseKind, MedicationCommand, Occurrence
from .notifications import NotificationService, OutboxNotificationService
from .time_buckets import BucketBoundaries, ViewBucket, classify_for_view
from .transactions import ActionResult
from .utils import local_date_for_timezone, local_day_bounds, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TodaysView:
    patient_id: str
    day: date
    timezone: str
    groups: dict[ViewBucket, list[dict[str, Any]]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "date": self.day.isoformat(),
            "timezone": self.timezone,
            "groups": {bucket.value: items for bucket, items in self.groups.items()},
        }


class MedicationEngine:
    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        access: FamilyAccessService | None = None,
        drug_metadata: DrugMetadataService | None = None,
        boundaries: BucketBoundaries | None = None,
        holiday_lookup: HolidayLookup = is_us_holiday,
        notifications: NotificationService | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.access = access or FamilyAccessTable()
        self.drug_metadata = drug_metadata or CommandDrugMetadata()
        self.boundaries = boundaries or self.settings.boundaries
        self.holiday_lookup = holiday_lookup
        self.notifications = notifications or OutboxNotificationService()

    # -- commands -----------------------------------------------------------

    async def create_command(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        data: CommandDraft | dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> MedicationCommand:
        draft = commands.parse_command_draft(data)
        await self.access.authorize(conn, principal_id, draft.patient_id, Action.EDIT)
        return await commands.create_command(
            conn,
            draft,
            now=now,
            settings=self.settings,
            boundaries=self.boundaries,
            holiday_lookup=self.holiday_lookup,
            notifications=self.notifications,
        )

    async def _authorize_command(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        command_id: str,
    ) -> MedicationCommand:
        command = await commands.get_command(conn, command_id)
        await self.access.authorize(conn, principal_id, command.patient_id, Action.EDIT)
        return command

    async def update_command(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        command_id: str,
        changes: dict[str, Any],
        *,
        expected_version: int,
        now: datetime | None = None,
    ) -> MedicationCommand:
        await self._authorize_command(conn, principal_id, command_id)
        return await commands.update_command(
            conn,
            command_id,
            changes,
            expected_version=expected_version,
            now=now,
            settings=self.settings,
            boundaries=self.boundaries,
            holiday_lookup=self.holiday_lookup,
            notifications=self.notifications,
        )

    async def pause_command(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        command_id: str,
        *,
        expected_version: int,
        now: datetime | None = None,
    ) -> MedicationCommand:
        await self._authorize_command(conn, principal_id, command_id)
        return await commands.pause_command(
            conn, command_id, expected_version=expected_version, now=now
        )

    async def resume_command(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        command_id: str,
        *,
        expected_version: int,
        now: datetime | None = None,
    ) -> MedicationCommand:
        await self._authorize_command(conn, principal_id, command_id)
        return await commands.resume_command(
            conn,
            command_id,
            expected_version=expected_version,
            now=now,
            settings=self.settings,
            boundaries=self.boundaries,
            holiday_lookup=self.holiday_lookup,
            notifications=self.notifications,
        )

    async def discontinue_command(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        command_id: str,
        *,
        expected_version: int,
        now: datetime | None = None,
    ) -> MedicationCommand:
        await self._authorize_command(conn, principal_id, command_id)
        return await commands.discontinue_command(
            conn, command_id, expected_version=expected_version, now=now
        )

    # -- actions ------------------------------------------------------------

    async def _authorize_occurrence(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        occurrence_id: str,
    ) -> Occurrence:
        occurrence = await transactions.get_occurrence(conn, occurrence_id)
        await self.access.authorize(conn, principal_id, occurrence.patient_id, Action.MARK_TAKEN)
        return occurrence

    async def take(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        occurrence_id: str,
        *,
        now: datetime | None = None,
        taken_at: datetime | None = None,
        dose_kind: DoseKind = DoseKind.FULL,
        dosage_taken: str | None = None,
        notes: str | None = None,
    ) -> ActionResult:
        await self._authorize_occurrence(conn, principal_id, occurrence_id)
        return await transactions.take_occurrence(
            conn,
            occurrence_id,
            now=now,
            taken_at=taken_at,
            dose_kind=dose_kind,
            dosage_taken=dosage_taken,
            notes=notes,
            attempts=self.settings.transaction_attempts,
            notifications=self.notifications,
        )

    async def skip(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        occurrence_id: str,
        *,
        now: datetime | None = None,
        reason: str | None = None,
    ) -> ActionResult:
        await self._authorize_occurrence(conn, principal_id, occurrence_id)
        return await transactions.skip_occurrence(
            conn, occurrence_id, now=now, reason=reason, attempts=self.settings.transaction_attempts
        )

    async def snooze(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        occurrence_id: str,
        *,
        minutes: int,
        now: datetime | None = None,
    ) -> ActionResult:
        await self._authorize_occurrence(conn, principal_id, occurrence_id)
        return await transactions.snooze_occurrence(
            conn,
            occurrence_id,
            minutes=minutes,
            now=now,
            boundaries=self.boundaries,
            holiday_lookup=self.holiday_lookup,
            notifications=self.notifications,
            multiplier_policy=self.settings.multiplier_policy,
            attempts=self.settings.transaction_attempts,
        )

    async def undo(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        occurrence_id: str,
        *,
        now: datetime | None = None,
    ) -> ActionResult:
        await self._authorize_occurrence(conn, principal_id, occurrence_id)
        return await transactions.undo_take(
            conn,
            occurrence_id,
            now=now,
            window_seconds=self.settings.undo_window_seconds,
            attempts=self.settings.transaction_attempts,
        )

    async def correct(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        occurrence_id: str,
        *,
        now: datetime | None = None,
        taken_at: datetime | None = None,
        dose_kind: DoseKind = DoseKind.FULL,
        notes: str | None = None,
    ) -> ActionResult:
        await self._authorize_occurrence(conn, principal_id, occurrence_id)
        return await transactions.correct_occurrence(
            conn,
            occurrence_id,
            now=now,
            taken_at=taken_at,
            dose_kind=dose_kind,
            notes=notes,
            window_hours=self.settings.correction_window_hours,
            attempts=self.settings.transaction_attempts,
            notifications=self.notifications,
        )

    # -- queries ------------------------------------------------------------

    async def todays_view(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        patient_id: str,
        *,
        now: datetime | None = None,
    ) -> TodaysView:
        """Today's occurrences grouped by view bucket, classified at query time."""
        now = now or utc_now()
        await self.access.authorize(conn, principal_id, patient_id, Action.VIEW)
        tz = await patient_timezone(conn, patient_id, self.settings.default_timezone)
        today = local_date_for_timezone(now, tz)
        start_at, end_at = local_day_bounds(today, tz)

        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT * FROM medication_occurrences
                WHERE patient_id = %s
                  AND scheduled_at >= %s
                  AND scheduled_at < %s
                  AND status <> 'cancelled'
                ORDER BY scheduled_at, id
                """,
                (patient_id, start_at, end_at),
            )
            occurrence_rows = await cur.fetchall()
            command_ids = sorted({str(r["command_id"]) for r in occurrence_rows})
            command_rows: list[dict[str, Any]] = []
            if command_ids:
                await cur.execute(
                    "SELECT * FROM medication_commands WHERE id = ANY(%s::uuid[])",
                    (command_ids,),
                )
                command_rows = await cur.fetchall()

        by_id = {str(r["id"]): MedicationCommand.from_row(r) for r in command_rows}
        groups: dict[ViewBucket, list[dict[str, Any]]] = {bucket: [] for bucket in ViewBucket}
        for row in occurrence_rows:
            occurrence = Occurrence.from_row(row)
            bucket = classify_for_view(
                occurrence.status,
                occurrence.bucket,
                occurrence.scheduled_at,
                occurrence.grace_deadline,
                now,
            )
            if bucket is None:
                continue
            entry = occurrence.to_dict()
            entry["view_bucket"] = bucket.value
            command = by_id.get(occurrence.command_id)
            if command is not None:
                entry["medication"] = self.drug_metadata.describe(command)
            groups[bucket].append(entry)

        return TodaysView(patient_id=patient_id, day=today, timezone=tz, groups=groups)

    async def adherence_report(
        self,
        conn: psycopg.AsyncConnection[Any],
        principal_id: str,
        patient_id: str,
        start_date: date,
        end_date: date,
        *,
        now: datetime | None = None,
    ) -> AdherenceReport:
        await self.access.authorize(conn, principal_id, patient_id, Action.VIEW)
        tz = await patient_timezone(conn, patient_id, self.settings.default_timezone)
        return await build_adherence_report(
            conn,
            patient_id,
            start_date,
            end_date,
            now=now or utc_now(),
            timezone_name=tz,
            timing_threshold_minutes=self.settings.timing_threshold_minutes,
        )
