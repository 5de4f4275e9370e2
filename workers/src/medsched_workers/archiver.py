"""Daily archiver: per-patient day summaries, event archival and occurrence pruning.

Events are retained forever; only their archival flag is set. Occurrences are
deleted once older than the retention window and only when their local day
already has a summary row. Every step is idempotent, and each run starts from
the day after a patient's newest summary, so days skipped by a failure or an
exhausted budget are summarized by the next run.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .analytics import (
    AdherenceStats,
    DoseOutcome,
    compute_adherence,
    patient_timezone,
    reduce_events,
)
from .events import list_patient_events, mark_events_archived
from .logging import log_context
from .utils import as_utc, date_range, local_date_for_timezone, local_day_bounds, utc_now

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
DEFAULT_BUDGET_SECONDS = 120.0
DEFAULT_CATCH_UP_DAYS = 7


@dataclass(frozen=True)
class DailySummary:
    patient_id: str
    summary_date: date
    timezone: str
    statistics: dict[str, Any]
    command_breakdown: list[dict[str, Any]]


def _summary_statistics(stats: AdherenceStats) -> dict[str, Any]:
    return {
        "total_scheduled": stats.total_scheduled,
        "taken": stats.taken,
        "taken_full": stats.taken_full,
        "taken_partial": stats.taken_partial,
        "taken_adjusted": stats.taken_adjusted,
        "missed": stats.missed,
        "skipped": stats.skipped,
        "pending": stats.pending,
        "adherence_percentage": round(stats.adherence_rate * 100, 1),
        "on_time_percentage": round(stats.timing_accuracy * 100, 1),
        "average_delay_minutes": stats.average_delay_minutes,
    }


def summarize_day(
    patient_id: str,
    day: date,
    outcomes: list[DoseOutcome],
    *,
    timezone_name: str,
) -> DailySummary:
    stats = compute_adherence(outcomes, days=[day], timezone_name=timezone_name)

    per_command: dict[str, list[DoseOutcome]] = defaultdict(list)
    for outcome in outcomes:
        per_command[outcome.command_id].append(outcome)
    breakdown = []
    for command_id in sorted(per_command):
        command_stats = compute_adherence(
            per_command[command_id], days=[day], timezone_name=timezone_name
        )
        if command_stats.total_scheduled or command_stats.pending:
            breakdown.append({"command_id": command_id, **_summary_statistics(command_stats)})

    return DailySummary(
        patient_id=patient_id,
        summary_date=day,
        timezone=timezone_name,
        statistics=_summary_statistics(stats),
        command_breakdown=breakdown,
    )


@dataclass(frozen=True)
class ArchiveResult:
    patient_id: str
    summary_date: date
    summary_created: bool
    events_archived: int
    occurrences_pruned: int


async def prune_occurrences(
    conn: psycopg.AsyncConnection[Any],
    patient_id: str,
    *,
    now: datetime,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> int:
    """Delete settled occurrences past retention whose local day has a summary."""
    cutoff = as_utc(now) - timedelta(days=retention_days)
    async with conn.cursor() as cur:
        await cur.execute(
            """
            DELETE FROM medication_occurrences o
            WHERE o.patient_id = %s
              AND o.scheduled_at < %s
              AND o.status NOT IN ('scheduled', 'snoozed')
              AND EXISTS (
                  SELECT 1 FROM medication_daily_summaries s
                  WHERE s.patient_id = o.patient_id
                    AND s.summary_date = (o.scheduled_at AT TIME ZONE s.timezone)::date
              )
            """,
            (patient_id, cutoff),
        )
        return cur.rowcount


async def archive_patient_day(
    conn: psycopg.AsyncConnection[Any],
    patient_id: str,
    day: date,
    *,
    now: datetime | None = None,
    timezone_name: str | None = None,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> ArchiveResult:
    now = now or utc_now()
    async with conn.transaction():
        tz = timezone_name or await patient_timezone(conn, patient_id)
        start_at, end_at = local_day_bounds(day, tz)
        events = await list_patient_events(conn, patient_id, start_at, end_at)
        summary = summarize_day(
            patient_id, day, list(reduce_events(events).values()), timezone_name=tz
        )

        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                INSERT INTO medication_daily_summaries (
                    patient_id, summary_date, timezone, statistics,
                    command_breakdown, archived_event_count, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (patient_id, summary_date) DO NOTHING
                RETURNING summary_date
                """,
                (
                    patient_id,
                    day,
                    tz,
                    Json(summary.statistics),
                    Json(summary.command_breakdown),
                    len(events),
                    now,
                ),
            )
            created = await cur.fetchone() is not None

        archived = await mark_events_archived(conn, patient_id, start_at, end_at, now)
        pruned = await prune_occurrences(
            conn, patient_id, now=now, retention_days=retention_days
        )

    logger.info(
        "Archived %s for patient %s (summary_created=%s, events=%d, pruned=%d)",
        day.isoformat(),
        patient_id,
        created,
        archived,
        pruned,
        extra={"medsched_patient_id": patient_id},
    )
    return ArchiveResult(patient_id, day, created, archived, pruned)


@dataclass
class ArchiveRunReport:
    patients_processed: int = 0
    patients_failed: int = 0
    days_archived: int = 0
    summaries_created: int = 0
    events_archived: int = 0
    occurrences_pruned: int = 0
    budget_exhausted: bool = False
    failed_patients: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def list_patients(conn: psycopg.AsyncConnection[Any]) -> list[str]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT DISTINCT patient_id FROM medication_commands ORDER BY patient_id"
        )
        rows = await cur.fetchall()
    return [str(r["patient_id"]) for r in rows]


async def pending_summary_dates(
    conn: psycopg.AsyncConnection[Any],
    patient_id: str,
    *,
    through: date,
    timezone_name: str,
    catch_up_days: int = DEFAULT_CATCH_UP_DAYS,
) -> list[date]:
    """Local days up to ``through`` without a summary, oldest first.

    Starts the day after the newest summary, or at the patient's first command
    when nothing was summarized yet, and looks back at most ``catch_up_days``.
    """
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT
                (SELECT MAX(summary_date) FROM medication_daily_summaries
                 WHERE patient_id = %s) AS last_summary_date,
                (SELECT MIN(created_at) FROM medication_commands
                 WHERE patient_id = %s) AS first_command_at
            """,
            (patient_id, patient_id),
        )
        row = await cur.fetchone()

    start = through
    if row and row["last_summary_date"] is not None:
        start = row["last_summary_date"] + timedelta(days=1)
    elif row and row["first_command_at"] is not None:
        start = local_date_for_timezone(row["first_command_at"], timezone_name)
    earliest = through - timedelta(days=max(1, catch_up_days) - 1)
    return date_range(max(start, earliest), through)


async def run_daily_archive(
    conn: psycopg.AsyncConnection[Any],
    *,
    now: datetime | None = None,
    day: date | None = None,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    catch_up_days: int = DEFAULT_CATCH_UP_DAYS,
    budget_seconds: float = DEFAULT_BUDGET_SECONDS,
    clock: Callable[[], float] = time.monotonic,
) -> ArchiveRunReport:
    """Archive every unsummarized local day up to yesterday (or just ``day``).

    Each patient-day commits on its own. Days left behind by an exhausted
    budget or a failure are picked up by the next run.
    """
    now = now or utc_now()
    report = ArchiveRunReport()
    started = clock()

    async with conn.transaction():
        patients = await list_patients(conn)

    for patient_id in patients:
        if clock() - started >= budget_seconds:
            report.budget_exhausted = True
            break
        with log_context(patient_id=patient_id):
            try:
                async with conn.transaction():
                    tz = await patient_timezone(conn, patient_id)
                    if day is not None:
                        targets = [day]
                    else:
                        targets = await pending_summary_dates(
                            conn,
                            patient_id,
                            through=local_date_for_timezone(now, tz) - timedelta(days=1),
                            timezone_name=tz,
                            catch_up_days=catch_up_days,
                        )
                for target in targets:
                    if clock() - started >= budget_seconds:
                        report.budget_exhausted = True
                        break
                    result = await archive_patient_day(
                        conn,
                        patient_id,
                        target,
                        now=now,
                        timezone_name=tz,
                        retention_days=retention_days,
                    )
                    report.days_archived += 1
                    report.summaries_created += int(result.summary_created)
                    report.events_archived += result.events_archived
                    report.occurrences_pruned += result.occurrences_pruned
            except psycopg.OperationalError:
                raise
            except Exception:
                # Later days wait, so the failed day stays the oldest pending one
                report.patients_failed += 1
                report.failed_patients.append(patient_id)
                logger.exception(
                    "Daily archive failed for patient %s",
                    patient_id,
                )
                continue
        if report.budget_exhausted:
            break
        report.patients_processed += 1

    if report.budget_exhausted:
        logger.warning(
            "Daily archive budget exhausted after %d patients (%d days)",
            report.patients_processed,
            report.days_archived,
        )
    return report
