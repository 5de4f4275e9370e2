"""Cached US federal holiday calendar used for grace-period extensions.

Holidays are the calendar dates themselves; observed-day shifts (e.g. a
Saturday holiday observed on Friday) are not applied.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, timedelta
from functools import lru_cache

HolidayLookup = Callable[[date], bool]

_MONDAY = 0
_THURSDAY = 3


def _nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def _last_weekday(year: int, month: int, weekday: int) -> date:
    if month == 12:
        last = date(year, 12, 31)
    else:
        last = date(year, month + 1, 1) - timedelta(days=1)
    return last - timedelta(days=(last.weekday() - weekday) % 7)


@lru_cache(maxsize=64)
def us_federal_holidays(year: int) -> frozenset[date]:
    return frozenset(
        {
            date(year, 1, 1),
            _nth_weekday(year, 1, _MONDAY, 3),  # Martin Luther King Jr. Day
            _nth_weekday(year, 2, _MONDAY, 3),  # Presidents Day
            _last_weekday(year, 5, _MONDAY),  # Memorial Day
            date(year, 6, 19),
            date(year, 7, 4),
            _nth_weekday(year, 9, _MONDAY, 1),  # Labor Day
            _nth_weekday(year, 10, _MONDAY, 2),  # Columbus Day
            date(year, 11, 11),
            _nth_weekday(year, 11, _THURSDAY, 4),  # Thanksgiving
            date(year, 12, 25),
        }
    )


def is_us_holiday(day: date) -> bool:
    return day in us_federal_holidays(day.year)


def no_holidays(day: date) -> bool:
    return False
