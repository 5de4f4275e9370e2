"""Tests for the grace-period engine."""

from datetime import date, datetime, timezone

import pytest

from medsched_workers.grace_period import (
    BASELINE_MINUTES,
    calculate_grace_period,
    round_half_up,
)
from medsched_workers.holidays import no_holidays
from medsched_workers.models import CommandDraft, MedicationClass, TimeBucket


def _command(
    medication_class: str = "standard",
    *,
    timezone_name: str = "UTC",
    overrides: dict | None = None,
    weekend: float = 1.5,
    holiday: float = 2.0,
) -> CommandDraft:
    return CommandDraft.model_validate(
        {
            "patient_id": "patient-1",
            "medication_name": "Metformin",
            "dosage": "500mg",
            "schedule": {
                "frequency": "daily",
                "times": ["08:00"],
                "start_date": "2026-03-01",
                "timezone": timezone_name,
            },
            "grace_period": {
                "medication_class": medication_class,
                "bucket_overrides": overrides or {},
                "weekend_multiplier": weekend,
                "holiday_multiplier": holiday,
            },
        }
    )


# 2026-03-04 is a Wednesday, 2026-03-07 a Saturday, 2026-07-04 a Saturday holiday.
WEDNESDAY_0800 = datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc)
SATURDAY_0800 = datetime(2026, 3, 7, 8, 0, tzinfo=timezone.utc)
JULY_4TH_0800 = datetime(2026, 7, 4, 8, 0, tzinfo=timezone.utc)


def test_standard_morning_weekday_is_thirty_minutes():
    result = calculate_grace_period(_command(), WEDNESDAY_0800)
    assert result.minutes == 30
    assert result.bucket == TimeBucket.MORNING
    assert result.deadline(WEDNESDAY_0800) == datetime(2026, 3, 4, 8, 30, tzinfo=timezone.utc)
    assert result.rule_trace == ("class_baseline:standard:morning=30", "rounded=30")


def test_critical_on_saturday_rounds_half_up():
    result = calculate_grace_period(_command("critical"), SATURDAY_0800)
    assert result.is_weekend is True
    assert result.minutes == 23  # 15 * 1.5 = 22.5
    assert "weekend_multiplier=1.5" in result.rule_trace


def test_bucket_override_wins_over_baseline():
    result = calculate_grace_period(
        _command("vitamin", overrides={"morning": 45}), WEDNESDAY_0800
    )
    assert result.minutes == 45
    assert "bucket_override:morning=45" in result.rule_trace


def test_override_of_zero_is_respected():
    result = calculate_grace_period(_command(overrides={"morning": 0}), SATURDAY_0800)
    assert result.minutes == 0


def test_holiday_wins_over_weekend_by_default():
    result = calculate_grace_period(_command("critical"), JULY_4TH_0800)
    assert result.is_holiday and result.is_weekend
    assert result.minutes == 30
    assert "holiday_multiplier=2" in result.rule_trace
    assert "weekend_multiplier=1.5" not in result.rule_trace
    assert "multiplier_policy=holiday_wins" in result.rule_trace


@pytest.mark.parametrize(
    ("policy", "expected"),
    [("holiday_wins", 30), ("stack", 45), ("max", 30)],
)
def test_weekend_holiday_policies(policy, expected):
    result = calculate_grace_period(
        _command("critical"), JULY_4TH_0800, multiplier_policy=policy
    )
    assert result.minutes == expected


def test_max_policy_picks_larger_multiplier():
    command = _command("critical", weekend=3.0, holiday=2.0)
    result = calculate_grace_period(command, JULY_4TH_0800, multiplier_policy="max")
    assert result.minutes == 45
    assert "weekend_multiplier=3" in result.rule_trace


def test_unknown_policy_rejected():
    with pytest.raises(ValueError):
        calculate_grace_period(_command(), WEDNESDAY_0800, multiplier_policy="sum")


def test_holiday_lookup_is_injectable():
    result = calculate_grace_period(_command("critical"), JULY_4TH_0800, holiday_lookup=no_holidays)
    assert result.is_holiday is False
    assert result.minutes == 23


def test_weekend_is_evaluated_in_local_time():
    # Saturday 01:00 UTC is still Friday evening in New York.
    at = datetime(2026, 3, 7, 1, 0, tzinfo=timezone.utc)
    result = calculate_grace_period(_command(timezone_name="America/New_York"), at)
    assert result.is_weekend is False
    assert result.bucket == TimeBucket.EVENING
    assert result.minutes == 60


def test_as_needed_class_has_no_grace():
    result = calculate_grace_period(_command("as_needed"), SATURDAY_0800)
    assert result.minutes == 0


def test_baseline_table_covers_every_class_and_bucket():
    for medication_class in MedicationClass:
        assert set(BASELINE_MINUTES[medication_class]) == set(TimeBucket)


def test_round_half_up_is_not_bankers_rounding():
    from decimal import Decimal

    assert round_half_up(Decimal("22.5")) == 23
    assert round_half_up(Decimal("44.5")) == 45
    assert round_half_up(Decimal("44.49")) == 44


def test_bedtime_vitamin_baseline():
    at = datetime(2026, 3, 4, 22, 0, tzinfo=timezone.utc)
    result = calculate_grace_period(_command("vitamin"), at)
    assert result.bucket == TimeBucket.BEDTIME
    assert result.minutes == 240
    assert result.deadline(at).date() == date(2026, 3, 5)
