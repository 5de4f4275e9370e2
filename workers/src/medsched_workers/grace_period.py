"""Grace-period engine: allowed lateness per occurrence.

Pure and deterministic. Rule order:
1. class baseline for the occurrence's bucket
2. per-bucket override from the command (wins over the baseline)
3. weekend or holiday multiplier, combined per ``multiplier_policy``
4. round half-up to whole minutes

The weekend+holiday combination is a policy choice: ``holiday_wins`` (default)
applies only the holiday multiplier, ``stack`` multiplies both, ``max`` applies
the larger one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from .config import MULTIPLIER_POLICIES
from .holidays import HolidayLookup, is_us_holiday
from .models import CommandDraft, MedicationClass, TimeBucket
from .time_buckets import DEFAULT_BOUNDARIES, BucketBoundaries
from .utils import as_utc, zone

BASELINE_MINUTES: dict[MedicationClass, dict[TimeBucket, int]] = {
    MedicationClass.CRITICAL: {
        TimeBucket.MORNING: 15,
        TimeBucket.NOON: 30,
        TimeBucket.EVENING: 30,
        TimeBucket.BEDTIME: 30,
    },
    MedicationClass.STANDARD: {
        TimeBucket.MORNING: 30,
        TimeBucket.NOON: 30,
        TimeBucket.EVENING: 60,
        TimeBucket.BEDTIME: 60,
    },
    MedicationClass.VITAMIN: {
        TimeBucket.MORNING: 120,
        TimeBucket.NOON: 120,
        TimeBucket.EVENING: 120,
        TimeBucket.BEDTIME: 240,
    },
    MedicationClass.AS_NEEDED: {
        TimeBucket.MORNING: 0,
        TimeBucket.NOON: 0,
        TimeBucket.EVENING: 0,
        TimeBucket.BEDTIME: 0,
    },
}


@dataclass(frozen=True)
class GracePeriodResult:
    minutes: int
    rule_trace: tuple[str, ...]
    bucket: TimeBucket
    is_weekend: bool
    is_holiday: bool
    multiplier: float

    def deadline(self, scheduled_at: datetime) -> datetime:
        return as_utc(scheduled_at) + timedelta(minutes=self.minutes)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _fmt(multiplier: float) -> str:
    return format(Decimal(str(multiplier)).normalize(), "f")


def calculate_grace_period(
    command: CommandDraft,
    occurrence_at: datetime,
    *,
    boundaries: BucketBoundaries = DEFAULT_BOUNDARIES,
    holiday_lookup: HolidayLookup = is_us_holiday,
    multiplier_policy: str = "holiday_wins",
) -> GracePeriodResult:
    """Compute the grace window for one occurrence of ``command``.

    Weekend/holiday status and the bucket are evaluated on the local wall
    clock of the command's schedule timezone.
    """
    if multiplier_policy not in MULTIPLIER_POLICIES:
        raise ValueError(f"unknown multiplier policy {multiplier_policy!r}")

    config = command.grace_period
    local = as_utc(occurrence_at).astimezone(zone(command.schedule.timezone))
    bucket = boundaries.classify(local.time())

    base = BASELINE_MINUTES[config.medication_class][bucket]
    trace = [f"class_baseline:{config.medication_class.value}:{bucket.value}={base}"]

    override = config.bucket_overrides.get(bucket)
    if override is not None:
        base = override
        trace.append(f"bucket_override:{bucket.value}={override}")

    is_weekend = local.weekday() >= 5
    is_holiday = holiday_lookup(local.date())

    applicable: list[tuple[str, float]] = []
    if is_holiday:
        applicable.append(("holiday_multiplier", config.holiday_multiplier))
    if is_weekend:
        applicable.append(("weekend_multiplier", config.weekend_multiplier))

    multiplier = Decimal("1")
    if applicable:
        if multiplier_policy == "stack":
            chosen = applicable
        elif multiplier_policy == "max":
            chosen = [max(applicable, key=lambda item: item[1])]
        else:
            chosen = applicable[:1]
        for name, value in chosen:
            multiplier *= Decimal(str(value))
            trace.append(f"{name}={_fmt(value)}")
        if len(applicable) > len(chosen):
            trace.append(f"multiplier_policy={multiplier_policy}")

    minutes = round_half_up(Decimal(base) * multiplier)
    trace.append(f"rounded={minutes}")

    return GracePeriodResult(
        minutes=minutes,
        rule_trace=tuple(trace),
        bucket=bucket,
        is_weekend=is_weekend,
        is_holiday=is_holiday,
        multiplier=float(multiplier),
    )
