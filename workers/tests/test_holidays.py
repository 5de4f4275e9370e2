"""Tests for the US federal holiday calendar."""

from datetime import date

from medsched_workers.holidays import is_us_holiday, no_holidays, us_federal_holidays


def test_fixed_date_holidays():
    assert is_us_holiday(date(2026, 1, 1))
    assert is_us_holiday(date(2026, 6, 19))
    assert is_us_holiday(date(2026, 7, 4))
    assert is_us_holiday(date(2026, 11, 11))
    assert is_us_holiday(date(2026, 12, 25))


def test_floating_holidays_2026():
    holidays = us_federal_holidays(2026)
    assert date(2026, 1, 19) in holidays  # third Monday of January
    assert date(2026, 2, 16) in holidays  # third Monday of February
    assert date(2026, 5, 25) in holidays  # last Monday of May
    assert date(2026, 9, 7) in holidays  # first Monday of September
    assert date(2026, 10, 12) in holidays  # second Monday of October
    assert date(2026, 11, 26) in holidays  # fourth Thursday of November


def test_eleven_holidays_per_year():
    assert len(us_federal_holidays(2025)) == 11
    assert len(us_federal_holidays(2026)) == 11


def test_ordinary_days_are_not_holidays():
    assert not is_us_holiday(date(2026, 3, 4))
    assert not is_us_holiday(date(2026, 7, 3))  # observed day is not applied


def test_no_holidays_lookup():
    assert no_holidays(date(2026, 12, 25)) is False
