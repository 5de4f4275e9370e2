"""Durable recurring scheduler for the engine's background jobs.

Each recurring job type keeps at most one pending/processing row in
``background_jobs``. A new run is enqueued once the last completed run is
older than the job's interval; runs missed while the worker was down are
collapsed into one and reported in the payload.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import os
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

logger = logging.getLogger(__name__)

MISSED_SWEEP_JOB_TYPE = "medication.missed_sweep"
ROLLING_WINDOW_JOB_TYPE = "medication.rolling_window"
DAILY_ARCHIVE_JOB_TYPE = "medication.daily_archive"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class RecurringJob:
    job_type: str
    interval_env: str
    default_interval_minutes: int
    priority: int = 0
    max_retries: int = 3

    def interval_minutes(self) -> int:
        raw = os.environ.get(self.interval_env, str(self.default_interval_minutes))
        try:
            return max(1, int(raw))
        except ValueError:
            return self.default_interval_minutes


RECURRING_JOBS: tuple[RecurringJob, ...] = (
    RecurringJob(MISSED_SWEEP_JOB_TYPE, "MEDSCHED_MISSED_SWEEP_INTERVAL_MINUTES", 15, priority=100),
    RecurringJob(ROLLING_WINDOW_JOB_TYPE, "MEDSCHED_ROLLING_WINDOW_INTERVAL_MINUTES", 24 * 60, priority=50),
    RecurringJob(
        DAILY_ARCHIVE_JOB_TYPE,
        "MEDSCHED_DAILY_ARCHIVE_INTERVAL_MINUTES",
        24 * 60,
        priority=10,
        max_retries=5,
    ),
)


def due_run_count(now: datetime, next_run_at: datetime, interval_minutes: int) -> int:
    """Return how many runs are due, including missed catch-up slots."""
    if interval_minutes <= 0:
        raise ValueError("interval_minutes must be positive")

    now_utc = _as_utc(now)
    next_run_utc = _as_utc(next_run_at)
    if now_utc < next_run_utc:
        return 0

    elapsed_seconds = (now_utc - next_run_utc).total_seconds()
    slot_seconds = interval_minutes * 60
    return int(elapsed_seconds // slot_seconds) + 1


async def ensure_recurring_job(
    conn: psycopg.AsyncConnection[Any],
    job: RecurringJob,
    now: datetime | None = None,
) -> int | None:
    """Enqueue ``job`` if it is due and not already in flight. Returns the new job id."""
    interval_m = job.interval_minutes()
    now = _as_utc(now or datetime.now(timezone.utc))

    async with conn.cursor(row_factory=dict_row) as cur:
        # Serializes concurrent workers ticking the same job type until commit.
        await cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (job.job_type,))
        await cur.execute(
            """
            SELECT id
            FROM background_jobs
            WHERE job_type = %s
              AND status IN ('pending', 'processing')
            ORDER BY scheduled_for ASC, id ASC
            LIMIT 1
            """,
            (job.job_type,),
        )
        in_flight = await cur.fetchone()
        if in_flight is not None:
            return None

        await cur.execute(
            """
            SELECT completed_at
            FROM background_jobs
            WHERE job_type = %s
              AND status = 'completed'
              AND completed_at IS NOT NULL
            ORDER BY completed_at DESC
            LIMIT 1
            """,
            (job.job_type,),
        )
        last_completed = await cur.fetchone()
        run_count = 1
        if last_completed is not None:
            next_run_at = _as_utc(last_completed["completed_at"]) + timedelta(minutes=interval_m)
            run_count = due_run_count(now, next_run_at, interval_m)
            if run_count == 0:
                return None

        payload = {
            "interval_minutes": interval_m,
            "scheduler_key": job.job_type,
            "scheduled_at": now.isoformat(),
            "due_runs": run_count,
            "missed_runs": max(0, run_count - 1),
        }
        await cur.execute(
            """
            INSERT INTO background_jobs (
                patient_id, job_type, payload, scheduled_for, priority, max_retries
            )
            VALUES (NULL, %s, %s, NOW(), %s, %s)
            RETURNING id
            """,
            (job.job_type, Json(payload), job.priority, job.max_retries),
        )
        row = await cur.fetchone()
        if row is None:
            return None
        job_id = int(row["id"])

    logger.info(
        "Scheduled %s (job_id=%d, interval_m=%d, missed_runs=%d)",
        job.job_type,
        job_id,
        interval_m,
        payload["missed_runs"],
        extra={"medsched_job_type": job.job_type},
    )
    return job_id


async def ensure_recurring_jobs(
    conn: psycopg.AsyncConnection[Any], now: datetime | None = None
) -> list[int]:
    scheduled = []
    for job in RECURRING_JOBS:
        job_id = await ensure_recurring_job(conn, job, now)
        if job_id is not None:
            scheduled.append(job_id)
    return scheduled
