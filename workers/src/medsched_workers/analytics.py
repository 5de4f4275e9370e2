"""Adherence analytics over the event log.

The event stream is folded per occurrence (in ``seq`` order) into a final
dose outcome, so undo and correction events naturally replace what they
reverse. Aggregation over outcomes is pure; only milestone recording writes,
and it does so idempotently.

Definitions:
- total scheduled: occurrences with a resolved outcome (taken/missed/skipped).
  An original moved away by a snooze is not counted; its replacement is.
- adherence rate: (taken_full + taken_partial) / total scheduled, 0.0 when
  nothing was scheduled.
- timing accuracy: share of taken doses with |lateness| within the threshold.
- streak: consecutive local days on which every resolved dose was taken.
  Days without doses, and days with only pending doses, neither extend nor
  break a streak.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from enum import StrEnum
from typing import Any, assert_never

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .errors import ValidationError
from .events import EventKind, MedicationEvent, list_patient_events
from .models import TERMINAL_STATUSES, DoseKind, OccurrenceStatus
from .utils import as_utc, date_range, local_date_for_timezone, local_day_bounds

logger = logging.getLogger(__name__)

DEFAULT_TIMING_THRESHOLD_MINUTES = 30
RISK_WINDOW_DAYS = 7


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Milestone(StrEnum):
    FIRST_DOSE = "first_dose"
    STREAK_7 = "streak_7"
    STREAK_30 = "streak_30"


_STREAK_MILESTONES = ((Milestone.STREAK_7, 7), (Milestone.STREAK_30, 30))


@dataclass
class DoseOutcome:
    occurrence_id: str
    command_id: str
    scheduled_for: datetime | None
    status: OccurrenceStatus | None = None
    dose_kind: DoseKind | None = None
    lateness_minutes: int | None = None
    taken_at: datetime | None = None
    superseded: bool = False

    @property
    def resolved(self) -> bool:
        return not self.superseded and self.status in TERMINAL_STATUSES

    @property
    def pending(self) -> bool:
        return not self.superseded and self.status is None


def _dose_kind(value: Any) -> DoseKind:
    try:
        return DoseKind(value)
    except ValueError:
        return DoseKind.FULL


def _record_taken(outcome: DoseOutcome, event: MedicationEvent, dose_kind: DoseKind) -> None:
    outcome.status = OccurrenceStatus.TAKEN
    outcome.dose_kind = dose_kind
    lateness = event.payload.get("lateness_minutes")
    outcome.lateness_minutes = int(lateness) if lateness is not None else 0
    outcome.taken_at = event.created_at


def _clear(outcome: DoseOutcome) -> None:
    outcome.status = None
    outcome.dose_kind = None
    outcome.lateness_minutes = None
    outcome.taken_at = None


def reduce_events(events: Iterable[MedicationEvent]) -> dict[str, DoseOutcome]:
    """Fold events into one outcome per occurrence. Events must be in seq order."""
    outcomes: dict[str, DoseOutcome] = {}
    for event in events:
        if event.occurrence_id is None:
            continue
        outcome = outcomes.get(event.occurrence_id)
        if outcome is None:
            outcome = DoseOutcome(event.occurrence_id, event.command_id, event.scheduled_for)
            outcomes[event.occurrence_id] = outcome

        match event.kind:
            case EventKind.SCHEDULED:
                pass
            case EventKind.TAKEN_FULL:
                _record_taken(outcome, event, DoseKind.FULL)
            case EventKind.TAKEN_PARTIAL:
                _record_taken(outcome, event, DoseKind.PARTIAL)
            case EventKind.TAKEN_ADJUSTED:
                _record_taken(outcome, event, DoseKind.ADJUSTED)
            case EventKind.CORRECTED_MISSED | EventKind.CORRECTED_SKIPPED:
                _record_taken(outcome, event, _dose_kind(event.payload.get("dose_kind", "full")))
            case EventKind.MISSED:
                _clear(outcome)
                outcome.status = OccurrenceStatus.MISSED
            case EventKind.SKIPPED:
                _clear(outcome)
                outcome.status = OccurrenceStatus.SKIPPED
            case EventKind.SNOOZED:
                _clear(outcome)
                outcome.superseded = True
            case EventKind.UNDONE:
                _clear(outcome)
            case _:
                assert_never(event.kind)
    return outcomes


@dataclass(frozen=True)
class AdherenceStats:
    total_scheduled: int = 0
    taken_full: int = 0
    taken_partial: int = 0
    taken_adjusted: int = 0
    missed: int = 0
    skipped: int = 0
    pending: int = 0
    adherence_rate: float = 0.0
    full_dose_rate: float = 0.0
    timing_accuracy: float = 0.0
    average_delay_minutes: float = 0.0
    current_streak: int = 0
    longest_streak: int = 0

    @property
    def taken(self) -> int:
        return self.taken_full + self.taken_partial + self.taken_adjusted

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def group_by_local_day(
    outcomes: Iterable[DoseOutcome], timezone_name: str
) -> dict[date, list[DoseOutcome]]:
    grouped: dict[date, list[DoseOutcome]] = defaultdict(list)
    for outcome in outcomes:
        if outcome.scheduled_for is None:
            continue
        grouped[local_date_for_timezone(outcome.scheduled_for, timezone_name)].append(outcome)
    return grouped


def compute_streaks(
    by_day: dict[date, list[DoseOutcome]], days: list[date]
) -> tuple[int, int]:
    """Return (current, longest) runs of fully adherent days over ``days``."""
    current = 0
    longest = 0
    for day in days:
        resolved = [o for o in by_day.get(day, ()) if o.resolved]
        if not resolved:
            continue
        if all(o.status == OccurrenceStatus.TAKEN for o in resolved):
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    return current, longest


def compute_adherence(
    outcomes: Iterable[DoseOutcome],
    *,
    days: list[date],
    timezone_name: str,
    timing_threshold_minutes: int = DEFAULT_TIMING_THRESHOLD_MINUTES,
) -> AdherenceStats:
    """Aggregate outcomes whose local scheduled day falls within ``days``."""
    wanted = set(days)
    by_day = {
        day: items
        for day, items in group_by_local_day(outcomes, timezone_name).items()
        if day in wanted
    }
    selected = [o for items in by_day.values() for o in items]

    counts: dict[str, int] = defaultdict(int)
    on_time = 0
    delays: list[int] = []
    for outcome in selected:
        if outcome.pending:
            counts["pending"] += 1
            continue
        if not outcome.resolved:
            continue
        counts["total"] += 1
        if outcome.status == OccurrenceStatus.TAKEN:
            counts[f"taken_{(outcome.dose_kind or DoseKind.FULL).value}"] += 1
            lateness = outcome.lateness_minutes or 0
            if abs(lateness) <= timing_threshold_minutes:
                on_time += 1
            if lateness > 0:
                delays.append(lateness)
        elif outcome.status == OccurrenceStatus.MISSED:
            counts["missed"] += 1
        elif outcome.status == OccurrenceStatus.SKIPPED:
            counts["skipped"] += 1

    total = counts["total"]
    taken = counts["taken_full"] + counts["taken_partial"] + counts["taken_adjusted"]
    current, longest = compute_streaks(by_day, sorted(wanted))
    return AdherenceStats(
        total_scheduled=total,
        taken_full=counts["taken_full"],
        taken_partial=counts["taken_partial"],
        taken_adjusted=counts["taken_adjusted"],
        missed=counts["missed"],
        skipped=counts["skipped"],
        pending=counts["pending"],
        adherence_rate=(counts["taken_full"] + counts["taken_partial"]) / total if total else 0.0,
        full_dose_rate=counts["taken_full"] / total if total else 0.0,
        timing_accuracy=on_time / taken if taken else 0.0,
        average_delay_minutes=round(sum(delays) / len(delays), 1) if delays else 0.0,
        current_streak=current,
        longest_streak=longest,
    )


def classify_risk(rate: float, total_scheduled: int) -> RiskLevel:
    """Thresholds on a 0..1 rate: >=0.9 low, >=0.7 medium, >=0.5 high, else critical."""
    if total_scheduled == 0:
        return RiskLevel.LOW
    if rate >= 0.9:
        return RiskLevel.LOW
    if rate >= 0.7:
        return RiskLevel.MEDIUM
    if rate >= 0.5:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def detect_milestones(
    stats: AdherenceStats, first_taken_at: datetime | None
) -> list[tuple[Milestone, dict[str, Any]]]:
    found: list[tuple[Milestone, dict[str, Any]]] = []
    if first_taken_at is not None:
        found.append((Milestone.FIRST_DOSE, {"taken_at": as_utc(first_taken_at).isoformat()}))
    for milestone, length in _STREAK_MILESTONES:
        if stats.longest_streak >= length:
            found.append((milestone, {"streak_days": stats.longest_streak}))
    return found


async def record_milestones(
    conn: psycopg.AsyncConnection[Any],
    patient_id: str,
    candidates: list[tuple[Milestone, dict[str, Any]]],
    *,
    now: datetime,
) -> list[Milestone]:
    """Insert milestones once; returns only the ones recorded by this call."""
    recorded: list[Milestone] = []
    async with conn.cursor(row_factory=dict_row) as cur:
        for milestone, details in candidates:
            await cur.execute(
                """
                INSERT INTO adherence_milestones (patient_id, milestone, achieved_at, details)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (patient_id, milestone) DO NOTHING
                RETURNING milestone
                """,
                (patient_id, milestone.value, now, Json(details)),
            )
            if await cur.fetchone() is not None:
                recorded.append(milestone)
    for milestone in recorded:
        logger.info(
            "Milestone %s reached for patient %s",
            milestone.value,
            patient_id,
            extra={"medsched_patient_id": patient_id},
        )
    return recorded


async def list_milestones(
    conn: psycopg.AsyncConnection[Any], patient_id: str
) -> list[dict[str, Any]]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT milestone, achieved_at, details
            FROM adherence_milestones
            WHERE patient_id = %s
            ORDER BY achieved_at, milestone
            """,
            (patient_id,),
        )
        rows = await cur.fetchall()
    return [
        {
            "milestone": r["milestone"],
            "achieved_at": r["achieved_at"].isoformat(),
            "details": r["details"] or {},
        }
        for r in rows
    ]


async def patient_timezone(
    conn: psycopg.AsyncConnection[Any], patient_id: str, default: str = "UTC"
) -> str:
    """Timezone of the patient's oldest non-discontinued command."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT schedule->>'timezone' AS timezone
            FROM medication_commands
            WHERE patient_id = %s
            ORDER BY (status = 'discontinued'), created_at
            LIMIT 1
            """,
            (patient_id,),
        )
        row = await cur.fetchone()
    return (row["timezone"] if row and row["timezone"] else None) or default


@dataclass(frozen=True)
class AdherenceReport:
    patient_id: str
    start_date: date
    end_date: date
    timezone: str
    stats: AdherenceStats
    risk_level: RiskLevel
    trailing_rate: float
    new_milestones: list[Milestone] = field(default_factory=list)
    milestones: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "timezone": self.timezone,
            "statistics": self.stats.to_dict(),
            "risk_level": self.risk_level.value,
            "trailing_7_day_rate": self.trailing_rate,
            "new_milestones": [m.value for m in self.new_milestones],
            "milestones": self.milestones,
        }


async def build_adherence_report(
    conn: psycopg.AsyncConnection[Any],
    patient_id: str,
    start_date: date,
    end_date: date,
    *,
    now: datetime,
    timezone_name: str | None = None,
    timing_threshold_minutes: int = DEFAULT_TIMING_THRESHOLD_MINUTES,
) -> AdherenceReport:
    """Range metrics, trailing 7-day risk and idempotent milestone detection."""
    if end_date < start_date:
        raise ValidationError(
            "end_date must not be before start_date",
            errors=[
                f"end_date: {end_date.isoformat()} is before "
                f"start_date {start_date.isoformat()}"
            ],
        )
    tz = timezone_name or await patient_timezone(conn, patient_id)
    today = local_date_for_timezone(now, tz)
    risk_end = min(end_date, today)
    risk_days = date_range(risk_end - timedelta(days=RISK_WINDOW_DAYS - 1), risk_end)

    fetch_start = min(start_date, risk_days[0])
    window_start, _ = local_day_bounds(fetch_start, tz)
    _, window_end = local_day_bounds(max(end_date, risk_end), tz)
    events = await list_patient_events(conn, patient_id, window_start, window_end)
    outcomes = list(reduce_events(events).values())

    stats = compute_adherence(
        outcomes,
        days=date_range(start_date, end_date),
        timezone_name=tz,
        timing_threshold_minutes=timing_threshold_minutes,
    )
    trailing = compute_adherence(
        outcomes,
        days=risk_days,
        timezone_name=tz,
        timing_threshold_minutes=timing_threshold_minutes,
    )
    risk = classify_risk(trailing.adherence_rate, trailing.total_scheduled)

    taken_times = [
        o.taken_at for o in outcomes if o.resolved and o.status == OccurrenceStatus.TAKEN and o.taken_at
    ]
    first_taken_at = min(taken_times) if taken_times else None
    new_milestones = await record_milestones(
        conn, patient_id, detect_milestones(stats, first_taken_at), now=now
    )
    milestones = await list_milestones(conn, patient_id)

    return AdherenceReport(
        patient_id=patient_id,
        start_date=start_date,
        end_date=end_date,
        timezone=tz,
        stats=stats,
        risk_level=risk,
        trailing_rate=trailing.adherence_rate,
        new_milestones=new_milestones,
        milestones=milestones,
    )
