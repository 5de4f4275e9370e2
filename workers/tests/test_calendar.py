"""Tests for calendar materialization (pure planning + mocked persistence)."""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from medsched_workers.calendar import (
    cancel_future_occurrences,
    generate_occurrences,
    insert_occurrence,
    maintain_rolling_window,
    plan_occurrences,
)
from medsched_workers.events import EventKind
from medsched_workers.holidays import no_holidays
from medsched_workers.models import CommandDraft, MedicationCommand, TimeBucket
from medsched_workers.notifications import IntentKind

COMMAND_ID = "11111111-1111-1111-1111-111111111111"


def _draft(**schedule):
    base = {
        "frequency": "daily",
        "times": ["08:00"],
        "start_date": "2026-03-01",
        "timezone": "UTC",
    }
    base.update(schedule)
    return CommandDraft.model_validate(
        {
            "patient_id": "patient-1",
            "medication_name": "Metformin",
            "dosage": "500mg",
            "schedule": base,
        }
    )


def _command(status="active", **schedule):
    draft = _draft(**schedule)
    return MedicationCommand.model_validate(
        {**draft.model_dump(), "id": COMMAND_ID, "checksum": "c", "status": status}
    )


class _FakeTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class _FakeCursor:
    def __init__(self, rows=(), rowcount=0, fetched=()):
        self.execute = AsyncMock()
        self.fetchone = AsyncMock(side_effect=list(rows))
        self.fetchall = AsyncMock(return_value=list(fetched))
        self.rowcount = rowcount

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def _make_mock_conn(rows=(), rowcount=0, fetched=()):
    conn = AsyncMock()
    conn.transaction = MagicMock(return_value=_FakeTransaction())
    cursor = _FakeCursor(rows, rowcount, fetched)
    conn.cursor = MagicMock(return_value=cursor)
    return conn, cursor


class TestPlanOccurrences:
    def test_daily_twice(self):
        planned = plan_occurrences(
            _draft(frequency="twice_daily", times=["08:00", "20:00"]),
            date(2026, 3, 4),
            horizon_days=3,
            holiday_lookup=no_holidays,
        )
        assert len(planned) == 6
        assert planned[0].scheduled_at == datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc)
        assert planned[-1].scheduled_at == datetime(2026, 3, 6, 20, 0, tzinfo=timezone.utc)
        assert planned[0].grace.bucket == TimeBucket.MORNING
        assert planned[0].grace_deadline == datetime(2026, 3, 4, 8, 30, tzinfo=timezone.utc)

    def test_weekly_respects_days_of_week(self):
        # 2026-03-02 is a Monday; 0=Monday, 3=Thursday.
        planned = plan_occurrences(
            _draft(frequency="weekly", days_of_week=[0, 3]),
            date(2026, 3, 2),
            horizon_days=14,
        )
        assert [p.local_date.weekday() for p in planned] == [0, 3, 0, 3]

    def test_start_date_and_end_date_clip_the_window(self):
        planned = plan_occurrences(
            _draft(start_date="2026-03-05", end_date="2026-03-06"),
            date(2026, 3, 1),
            horizon_days=30,
        )
        assert [p.local_date for p in planned] == [date(2026, 3, 5), date(2026, 3, 6)]

    def test_as_needed_has_no_slots(self):
        assert plan_occurrences(_draft(frequency="as_needed"), date(2026, 3, 4)) == []

    def test_zero_horizon(self):
        assert plan_occurrences(_draft(), date(2026, 3, 4), horizon_days=0) == []

    def test_local_wall_time_converts_to_utc(self):
        planned = plan_occurrences(
            _draft(timezone="America/New_York"), date(2026, 1, 15), horizon_days=1
        )
        assert planned[0].scheduled_at == datetime(2026, 1, 15, 13, 0, tzinfo=timezone.utc)

    def test_dst_gap_collapses_duplicate_instants(self):
        # 02:30 does not exist on 2026-03-08 in New York and resolves to 03:30 EDT.
        planned = plan_occurrences(
            _draft(timezone="America/New_York", times=["02:30", "03:30"]),
            date(2026, 3, 8),
            horizon_days=1,
        )
        assert len(planned) == 1


_TIMES = st.lists(
    st.tuples(st.integers(0, 23), st.integers(0, 59)).map(lambda hm: f"{hm[0]:02d}:{hm[1]:02d}"),
    min_size=1,
    max_size=4,
)


@settings(max_examples=50, deadline=None)
@given(
    times=_TIMES,
    tz=st.sampled_from(["UTC", "America/New_York", "Europe/Berlin", "Asia/Kolkata"]),
    start=st.dates(min_value=date(2026, 1, 1), max_value=date(2027, 12, 31)),
    horizon=st.integers(1, 10),
)
def test_plan_is_sorted_unique_and_deadlines_follow_slots(times, tz, start, horizon):
    planned = plan_occurrences(
        _draft(times=times, timezone=tz, start_date="2026-01-01"), start, horizon_days=horizon
    )
    instants = [p.scheduled_at for p in planned]
    assert instants == sorted(instants)
    assert len(instants) == len(set(instants))
    for slot in planned:
        assert slot.grace.minutes >= 0
        assert slot.grace_deadline >= slot.scheduled_at
        assert start <= slot.local_date < start + timedelta(days=horizon)


def _occurrence_row(scheduled_at):
    return {
        "id": "22222222-2222-2222-2222-222222222222",
        "command_id": COMMAND_ID,
        "patient_id": "patient-1",
        "scheduled_at": scheduled_at,
        "bucket": "morning",
        "grace_minutes": 30,
        "grace_deadline": scheduled_at + timedelta(minutes=30),
        "status": "scheduled",
        "rule_trace": ["class_baseline:standard:morning=30", "rounded=30"],
    }


@pytest.mark.asyncio
async def test_insert_occurrence_appends_scheduled_event():
    slot = plan_occurrences(_draft(), date(2026, 3, 4), horizon_days=1)[0]
    conn, cursor = _make_mock_conn(rows=[_occurrence_row(slot.scheduled_at)])
    now = datetime(2026, 3, 3, tzinfo=timezone.utc)

    with patch("medsched_workers.calendar.append_event", new_callable=AsyncMock) as append:
        occurrence = await insert_occurrence(
            conn, _command(), slot, now=now, notifications=AsyncMock()
        )

    assert occurrence is not None
    sql = cursor.execute.call_args.args[0]
    assert "ON CONFLICT DO NOTHING" in sql
    assert "superseded_by IS NOT NULL" in sql
    append.assert_awaited_once()
    assert append.await_args.kwargs["kind"] == EventKind.SCHEDULED
    assert append.await_args.kwargs["scheduled_for"] == slot.scheduled_at


@pytest.mark.asyncio
async def test_insert_occurrence_existing_slot_is_a_noop():
    slot = plan_occurrences(_draft(), date(2026, 3, 4), horizon_days=1)[0]
    conn, _ = _make_mock_conn(rows=[None])

    with patch("medsched_workers.calendar.append_event", new_callable=AsyncMock) as append:
        occurrence = await insert_occurrence(
            conn, _command(), slot, now=datetime(2026, 3, 3, tzinfo=timezone.utc)
        )

    assert occurrence is None
    append.assert_not_awaited()


@pytest.mark.asyncio
async def test_generate_skips_slots_past_their_deadline():
    conn, _ = _make_mock_conn()
    now = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
    command = _command(frequency="twice_daily", times=["08:00", "20:00"])

    with patch(
        "medsched_workers.calendar.insert_occurrence", new_callable=AsyncMock
    ) as insert:
        insert.side_effect = lambda conn, command, slot, now, **kw: slot
        created = await generate_occurrences(conn, command, now=now, horizon_days=2)

    scheduled = [slot.scheduled_at for slot in created]
    assert datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc) not in scheduled
    assert scheduled[0] == datetime(2026, 3, 4, 20, 0, tzinfo=timezone.utc)
    assert len(scheduled) == 3


@pytest.mark.asyncio
async def test_generate_ignores_paused_commands():
    conn, _ = _make_mock_conn()
    with patch(
        "medsched_workers.calendar.insert_occurrence", new_callable=AsyncMock
    ) as insert:
        created = await generate_occurrences(
            conn, _command(status="paused"), now=datetime(2026, 3, 4, tzinfo=timezone.utc)
        )
    assert created == []
    insert.assert_not_awaited()


@pytest.mark.asyncio
async def test_rolling_window_noop_when_horizon_covered():
    now = datetime(2026, 3, 4, 6, 0, tzinfo=timezone.utc)
    conn, _ = _make_mock_conn(
        rows=[{"last_scheduled_at": datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)}]
    )
    with patch(
        "medsched_workers.calendar.generate_occurrences", new_callable=AsyncMock
    ) as generate:
        created = await maintain_rolling_window(conn, _command(), now=now, horizon_days=7)
    assert created == []
    generate.assert_not_awaited()


@pytest.mark.asyncio
async def test_rolling_window_extends_when_short():
    now = datetime(2026, 3, 4, 6, 0, tzinfo=timezone.utc)
    conn, _ = _make_mock_conn(
        rows=[{"last_scheduled_at": datetime(2026, 3, 6, 8, 0, tzinfo=timezone.utc)}]
    )
    with patch(
        "medsched_workers.calendar.generate_occurrences",
        new_callable=AsyncMock,
        return_value=["a", "b"],
    ) as generate:
        created = await maintain_rolling_window(conn, _command(), now=now, horizon_days=7)
    assert created == ["a", "b"]
    assert generate.await_args.kwargs["start_date"] == date(2026, 3, 4)


@pytest.mark.asyncio
async def test_insert_occurrence_queues_dose_reminders():
    slot = plan_occurrences(_draft(), date(2026, 3, 4), horizon_days=1)[0]
    conn, _ = _make_mock_conn(rows=[_occurrence_row(slot.scheduled_at)])
    notifications = AsyncMock()

    with patch("medsched_workers.calendar.append_event", new_callable=AsyncMock):
        await insert_occurrence(
            conn,
            _command(),
            slot,
            now=datetime(2026, 3, 3, tzinfo=timezone.utc),
            notifications=notifications,
        )

    intents = [c.args[1] for c in notifications.emit.await_args_list]
    assert [i.kind for i in intents] == [IntentKind.DOSE_REMINDER] * 2
    assert [i.deliver_after for i in intents] == [
        slot.scheduled_at - timedelta(minutes=15),
        slot.scheduled_at - timedelta(minutes=5),
    ]
    assert intents[0].payload["medication_name"] == "Metformin"


@pytest.mark.asyncio
async def test_insert_occurrence_skips_reminders_already_due():
    slot = plan_occurrences(_draft(), date(2026, 3, 4), horizon_days=1)[0]
    conn, _ = _make_mock_conn(rows=[_occurrence_row(slot.scheduled_at)])
    notifications = AsyncMock()

    with patch("medsched_workers.calendar.append_event", new_callable=AsyncMock):
        await insert_occurrence(
            conn,
            _command(),
            slot,
            now=slot.scheduled_at - timedelta(minutes=10),
            notifications=notifications,
        )

    intents = [c.args[1] for c in notifications.emit.await_args_list]
    assert [i.payload["minutes_before"] for i in intents] == [5]


@pytest.mark.asyncio
async def test_cancel_future_covers_snoozed_and_withdraws_reminders():
    ids = ["22222222-2222-2222-2222-222222222222", "33333333-3333-3333-3333-333333333333"]
    conn, cursor = _make_mock_conn(fetched=[{"id": i} for i in ids])

    with patch(
        "medsched_workers.calendar.cancel_pending_reminders", new_callable=AsyncMock
    ) as withdraw:
        count = await cancel_future_occurrences(
            conn, COMMAND_ID, now=datetime(2026, 3, 4, tzinfo=timezone.utc), reason="paused"
        )

    assert count == 2
    sql, params = cursor.execute.call_args.args
    assert "status IN ('scheduled', 'snoozed')" in sql
    assert "RETURNING id" in sql
    assert params[0] == "paused"
    withdraw.assert_awaited_once_with(conn, ids)
