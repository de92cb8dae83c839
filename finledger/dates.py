from __future__ import annotations

import calendar
from datetime import date, timedelta


def last_day_of_month(value: date) -> int:
    return calendar.monthrange(value.year, value.month)[1]


def clamp_day(year: int, month: int, day: int) -> date:
    """Return ``day`` of the given month, pulled back to the month's last day if needed."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def month_start(value: date) -> date:
    return value.replace(day=1)


def month_end(value: date) -> date:
    return value.replace(day=last_day_of_month(value))


def month_bounds(value: date) -> tuple[date, date]:
    return month_start(value), month_end(value)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def shift_month_keep_day(value: date, months: int) -> date:
    shifted = shift_month(value, months)
    return clamp_day(shifted.year, shifted.month, value.day)


def week_of_month(value: date) -> int:
    """1 for days 1-7, 2 for days 8-14, and so on up to 5."""
    return (value.day + 6) // 7


def start_of_next_week(value: date) -> date:
    """Monday following the week that contains ``value``."""
    return value - timedelta(days=value.weekday()) + timedelta(days=7)


def start_of_next_month(value: date) -> date:
    return shift_month(value, 1)
