"""Missed-dose sweep.

Finds actionable occurrences whose grace deadline has passed and marks them
missed through the coordinator's conditional transition. A dose taken between
selection and update wins: the conditional update affects no row and the item
is counted as a lost race. On an idle connection every item commits on its own,
so row locks are held only while that item is marked. Per-item failures never
abort the sweep; a runtime budget bounds each run and the next run picks up the
remainder.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .errors import ConflictError
from .logging import log_context
from .metrics import record_sweep
from .notifications import IntentKind, NotificationIntent, NotificationService, OutboxNotificationService
from .transactions import mark_missed
from .utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_BUDGET_SECONDS = 60.0


@dataclass
class SweepReport:
    examined: int = 0
    marked_missed: int = 0
    lost_races: int = 0
    failed: int = 0
    batches: int = 0
    budget_exhausted: bool = False
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def fetch_overdue_ids(
    conn: psycopg.AsyncConnection[Any],
    *,
    now: datetime,
    limit: int,
    exclude_ids: list[str],
) -> list[str]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT id
            FROM medication_occurrences
            WHERE status IN ('scheduled', 'snoozed')
              AND grace_deadline < %s
              AND NOT (id = ANY(%s::uuid[]))
            ORDER BY grace_deadline ASC, id ASC
            LIMIT %s
            """,
            (now, exclude_ids, limit),
        )
        rows = await cur.fetchall()
    return [str(r["id"]) for r in rows]


async def run_missed_sweep(
    conn: psycopg.AsyncConnection[Any],
    *,
    now: datetime | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    budget_seconds: float = DEFAULT_BUDGET_SECONDS,
    notifications: NotificationService | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> SweepReport:
    now = now or utc_now()
    notifications = notifications or OutboxNotificationService()
    report = SweepReport()
    skipped: list[str] = []
    started = clock()

    def out_of_budget() -> bool:
        if clock() - started >= budget_seconds:
            report.budget_exhausted = True
            return True
        return False

    while not out_of_budget():
        # Selection commits on its own so each item below is a separate commit
        async with conn.transaction():
            batch = await fetch_overdue_ids(
                conn, now=now, limit=max(1, batch_size), exclude_ids=skipped
            )
        if not batch:
            break
        report.batches += 1

        for occurrence_id in batch:
            if out_of_budget():
                break
            report.examined += 1
            with log_context(occurrence_id=occurrence_id):
                try:
                    async with conn.transaction():
                        result = await mark_missed(conn, occurrence_id, now=now)
                        occurrence = result.occurrence
                        await notifications.emit(
                            conn,
                            NotificationIntent(
                                kind=IntentKind.MISSED_DOSE,
                                patient_id=occurrence.patient_id,
                                command_id=occurrence.command_id,
                                occurrence_id=occurrence.id,
                                payload={
                                    "scheduled_at": occurrence.scheduled_at.isoformat(),
                                    "grace_deadline": occurrence.grace_deadline.isoformat(),
                                    "event_id": result.event_id,
                                },
                            ),
                        )
                    report.marked_missed += 1
                except ConflictError as exc:
                    report.lost_races += 1
                    skipped.append(occurrence_id)
                    logger.info("Missed sweep skipped %s: %s", occurrence_id, exc.message)
                except psycopg.OperationalError:
                    raise
                except Exception:
                    report.failed += 1
                    skipped.append(occurrence_id)
                    logger.exception(
                        "Missed sweep failed for occurrence %s",
                        occurrence_id,
                    )
        if report.budget_exhausted:
            break

    report.duration_ms = round((clock() - started) * 1000, 1)
    record_sweep(report.marked_missed, report.lost_races, report.failed)
    logger.info(
        "Missed sweep done (marked=%d, lost_races=%d, failed=%d, budget_exhausted=%s)",
        report.marked_missed,
        report.lost_races,
        report.failed,
        report.budget_exhausted,
        extra={"medsched_duration_ms": report.duration_ms},
    )
    return report
