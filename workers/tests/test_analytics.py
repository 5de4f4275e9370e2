"""Tests for adherence analytics: event folding, stats, streaks, risk and milestones."""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from medsched_workers.analytics import (
    AdherenceStats,
    Milestone,
    RiskLevel,
    build_adherence_report,
    classify_risk,
    compute_adherence,
    detect_milestones,
    record_milestones,
    reduce_events,
)
from medsched_workers.errors import ValidationError
from medsched_workers.events import EventKind, MedicationEvent
from medsched_workers.models import DoseKind, OccurrenceStatus
from medsched_workers.utils import date_range

DAY = date(2026, 3, 4)


def _at(day=DAY, hour=8, minute=0):
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


class _Log:
    """Builds an in-order event stream."""

    def __init__(self):
        self.events: list[MedicationEvent] = []

    def add(self, occurrence_id, kind, scheduled_for, command_id="c1", **payload):
        self.events.append(
            MedicationEvent(
                id=f"e{len(self.events) + 1}",
                command_id=command_id,
                patient_id="p1",
                occurrence_id=occurrence_id,
                kind=kind,
                created_at=scheduled_for + timedelta(minutes=payload.get("lateness_minutes", 0)),
                payload=payload,
                scheduled_for=scheduled_for,
                seq=len(self.events) + 1,
            )
        )
        return self

    def outcomes(self):
        return list(reduce_events(self.events).values())


def _stats(log, days=(DAY,), **kwargs):
    return compute_adherence(log.outcomes(), days=list(days), timezone_name="UTC", **kwargs)


class TestReduceEvents:
    def test_undo_returns_occurrence_to_pending(self):
        log = (
            _Log()
            .add("o1", EventKind.SCHEDULED, _at())
            .add("o1", EventKind.TAKEN_FULL, _at(), lateness_minutes=2)
            .add("o1", EventKind.UNDONE, _at(), reverses_event_id="e2")
        )
        (outcome,) = log.outcomes()
        assert outcome.status is None
        assert outcome.pending

    def test_undo_past_deadline_ends_missed(self):
        log = (
            _Log()
            .add("o1", EventKind.TAKEN_FULL, _at())
            .add("o1", EventKind.UNDONE, _at())
            .add("o1", EventKind.MISSED, _at())
        )
        (outcome,) = log.outcomes()
        assert outcome.status == OccurrenceStatus.MISSED

    def test_correction_replaces_missed(self):
        log = (
            _Log()
            .add("o1", EventKind.MISSED, _at())
            .add("o1", EventKind.CORRECTED_MISSED, _at(), dose_kind="partial", lateness_minutes=90)
        )
        (outcome,) = log.outcomes()
        assert outcome.status == OccurrenceStatus.TAKEN
        assert outcome.dose_kind == DoseKind.PARTIAL
        assert outcome.lateness_minutes == 90

    def test_snoozed_original_is_superseded(self):
        log = (
            _Log()
            .add("o1", EventKind.SCHEDULED, _at())
            .add("o1", EventKind.SNOOZED, _at(), minutes=30)
            .add("o2", EventKind.TAKEN_FULL, _at(minute=30))
        )
        outcomes = {o.occurrence_id: o for o in log.outcomes()}
        assert outcomes["o1"].superseded
        assert not outcomes["o1"].resolved
        assert outcomes["o2"].resolved

    def test_events_without_occurrence_are_ignored(self):
        event = MedicationEvent(
            id="e1",
            command_id="c1",
            patient_id="p1",
            occurrence_id=None,
            kind=EventKind.TAKEN_FULL,
            created_at=_at(),
        )
        assert reduce_events([event]) == {}


class TestComputeAdherence:
    def test_nothing_scheduled_is_zero_not_an_error(self):
        stats = _stats(_Log())
        assert stats.total_scheduled == 0
        assert stats.adherence_rate == 0.0
        assert stats.timing_accuracy == 0.0

    def test_partial_counts_adjusted_does_not(self):
        log = (
            _Log()
            .add("o1", EventKind.TAKEN_FULL, _at(hour=8))
            .add("o2", EventKind.TAKEN_PARTIAL, _at(hour=12))
            .add("o3", EventKind.TAKEN_ADJUSTED, _at(hour=18))
            .add("o4", EventKind.MISSED, _at(hour=22))
        )
        stats = _stats(log)
        assert stats.total_scheduled == 4
        assert stats.adherence_rate == 0.5
        assert stats.full_dose_rate == 0.25
        assert stats.taken == 3

    def test_timing_accuracy_and_average_delay(self):
        log = (
            _Log()
            .add("o1", EventKind.TAKEN_FULL, _at(hour=8), lateness_minutes=-10)
            .add("o2", EventKind.TAKEN_FULL, _at(hour=12), lateness_minutes=30)
            .add("o3", EventKind.TAKEN_FULL, _at(hour=18), lateness_minutes=50)
        )
        stats = _stats(log)
        assert stats.timing_accuracy == pytest.approx(2 / 3)
        assert stats.average_delay_minutes == 40.0

    def test_pending_is_not_in_denominator(self):
        log = _Log().add("o1", EventKind.SCHEDULED, _at()).add("o2", EventKind.TAKEN_FULL, _at(hour=12))
        stats = _stats(log)
        assert stats.pending == 1
        assert stats.total_scheduled == 1
        assert stats.adherence_rate == 1.0

    def test_days_outside_range_are_excluded(self):
        log = _Log().add("o1", EventKind.MISSED, _at(day=DAY - timedelta(days=1)))
        assert _stats(log).total_scheduled == 0

    def test_local_day_grouping_uses_timezone(self):
        # 03:00 UTC on the 5th is still the 4th in New York.
        log = _Log().add("o1", EventKind.TAKEN_FULL, _at(day=date(2026, 3, 5), hour=3))
        stats = compute_adherence(
            log.outcomes(), days=[DAY], timezone_name="America/New_York"
        )
        assert stats.total_scheduled == 1


class TestStreaks:
    def test_streak_counts_consecutive_full_days(self):
        log = _Log()
        days = date_range(date(2026, 3, 1), date(2026, 3, 10))
        for index, day in enumerate(days):
            kind = EventKind.MISSED if day == date(2026, 3, 3) else EventKind.TAKEN_FULL
            log.add(f"o{index}", kind, _at(day=day))
        stats = _stats(log, days=days)
        assert stats.current_streak == 7
        assert stats.longest_streak == 7

    def test_empty_days_do_not_break_streak(self):
        log = (
            _Log()
            .add("o1", EventKind.TAKEN_FULL, _at(day=date(2026, 3, 1)))
            .add("o2", EventKind.TAKEN_FULL, _at(day=date(2026, 3, 3)))
        )
        stats = _stats(log, days=date_range(date(2026, 3, 1), date(2026, 3, 4)))
        assert stats.current_streak == 2

    def test_skip_breaks_streak(self):
        log = (
            _Log()
            .add("o1", EventKind.TAKEN_FULL, _at(day=date(2026, 3, 1)))
            .add("o2", EventKind.SKIPPED, _at(day=date(2026, 3, 2)))
        )
        stats = _stats(log, days=date_range(date(2026, 3, 1), date(2026, 3, 2)))
        assert stats.current_streak == 0
        assert stats.longest_streak == 1


@pytest.mark.parametrize(
    "rate, total, expected",
    [
        (0.95, 20, RiskLevel.LOW),
        (0.9, 10, RiskLevel.LOW),
        (0.89, 10, RiskLevel.MEDIUM),
        (0.7, 10, RiskLevel.MEDIUM),
        (0.69, 10, RiskLevel.HIGH),
        (0.5, 10, RiskLevel.HIGH),
        (0.49, 10, RiskLevel.CRITICAL),
        (0.0, 0, RiskLevel.LOW),
    ],
)
def test_classify_risk(rate, total, expected):
    assert classify_risk(rate, total) == expected


def test_detect_milestones():
    stats = AdherenceStats(longest_streak=8)
    found = dict(detect_milestones(stats, _at()))
    assert set(found) == {Milestone.FIRST_DOSE, Milestone.STREAK_7}
    assert found[Milestone.STREAK_7] == {"streak_days": 8}
    assert detect_milestones(AdherenceStats(), None) == []


class _FakeCursor:
    def __init__(self, rows):
        self.execute = AsyncMock()
        self.fetchone = AsyncMock(side_effect=list(rows))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


@pytest.mark.asyncio
async def test_record_milestones_returns_only_new_ones():
    conn = AsyncMock()
    cursor = _FakeCursor([None, {"milestone": "streak_7"}])
    conn.cursor = MagicMock(return_value=cursor)

    recorded = await record_milestones(
        conn,
        "p1",
        [(Milestone.FIRST_DOSE, {}), (Milestone.STREAK_7, {"streak_days": 7})],
        now=_at(),
    )

    assert recorded == [Milestone.STREAK_7]
    assert "ON CONFLICT (patient_id, milestone) DO NOTHING" in cursor.execute.call_args.args[0]


@pytest.mark.asyncio
async def test_report_rejects_inverted_range_before_querying():
    conn = AsyncMock()
    with pytest.raises(ValidationError) as excinfo:
        await build_adherence_report(
            conn, "p1", date(2026, 3, 10), date(2026, 3, 1), now=_at(), timezone_name="UTC"
        )
    assert excinfo.value.code == "validation_error"
    assert "end_date" in excinfo.value.errors[0]
    conn.cursor.assert_not_called()
