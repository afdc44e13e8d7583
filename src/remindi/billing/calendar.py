"""
Calendar arithmetic shared by every billing-date calculation.

Pure, total functions. Both the scheduled dispatcher and the interactive
preview go through these helpers so month-end clamping is encoded once.
"""

from datetime import date


def is_leap_year(year: int) -> bool:
    """Gregorian leap-year rule."""
    return year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)


def last_day_of_month(year: int, month: int) -> int:
    """Number of days in the given month (28-31)."""
    if month == 2:
        return 29 if is_leap_year(year) else 28
    if month in (4, 6, 9, 11):
        return 30
    return 31


def add_months(year: int, month: int, months: int) -> tuple[int, int]:
    """Shift a (year, month) pair by ``months``, carrying into the year."""
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def clamp_day(year: int, month: int, day: int) -> date:
    """Build a date, clamping ``day`` to the last day of the month."""
    return date(year, month, min(day, last_day_of_month(year, month)))


__all__ = ["is_leap_year", "last_day_of_month", "add_months", "clamp_day"]
