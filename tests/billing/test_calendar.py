"""Tests for calendar arithmetic."""

from datetime import date

import pytest

from remindi.billing.calendar import add_months, clamp_day, is_leap_year, last_day_of_month

pytestmark = pytest.mark.unit


class TestLeapYear:
    """Gregorian leap-year rule."""

    @pytest.mark.parametrize(
        "year,expected",
        [(2024, True), (2023, False), (1900, False), (2000, True), (2100, False)],
    )
    def test_is_leap_year(self, year, expected):
        assert is_leap_year(year) is expected


class TestLastDayOfMonth:
    """Month lengths."""

    def test_february(self):
        assert last_day_of_month(2024, 2) == 29
        assert last_day_of_month(2023, 2) == 28
        assert last_day_of_month(1900, 2) == 28

    def test_thirty_and_thirty_one_day_months(self):
        assert [last_day_of_month(2023, m) for m in (4, 6, 9, 11)] == [30, 30, 30, 30]
        assert [last_day_of_month(2023, m) for m in (1, 3, 5, 7, 8, 10, 12)] == [31] * 7


class TestMonthShift:
    """add_months and clamp_day."""

    def test_add_months_carries_into_year(self):
        assert add_months(2024, 11, 3) == (2025, 2)
        assert add_months(2024, 1, 24) == (2026, 1)

    def test_add_months_zero(self):
        assert add_months(2024, 5, 0) == (2024, 5)

    def test_clamp_day(self):
        assert clamp_day(2023, 2, 31) == date(2023, 2, 28)
        assert clamp_day(2024, 4, 31) == date(2024, 4, 30)
        assert clamp_day(2024, 3, 15) == date(2024, 3, 15)
