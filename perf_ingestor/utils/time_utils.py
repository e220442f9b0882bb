"""
Time and date utilities for weekly report periods.

Key concepts:
  - Report weeks start on **Sunday**.  Week 1 of a year is the week that
    contains January 1st, so its start may fall in the previous December.
  - Periods are inclusive ``[start, end]`` date ranges of seven days.
  - A period is "in the future" while its last day has not yet begun in UTC;
    the report service has no data for it.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta, timezone
from typing import Sequence, TypeVar

T = TypeVar("T")

MIN_WEEK = 1
MAX_WEEK = 53


def utcnow() -> datetime:
    """Return the current UTC datetime with timezone info.

    Prefer this over ``datetime.utcnow()`` (which returns naive datetimes).
    """
    return datetime.now(tz=timezone.utc)


def _sunday_weekday(d: date) -> int:
    """Day of week with Sunday=0 … Saturday=6."""
    return (d.weekday() + 1) % 7


def week_date_range(year: int, week: int) -> tuple[date, date]:
    """Return the inclusive ``(start, end)`` dates of a Sunday-start week.

    Args:
        year: Calendar year.
        week: 1-indexed week number.

    Returns:
        Tuple of ``(sunday, saturday)``.

    Raises:
        ValueError: If ``week`` is outside ``[1, 53]``.

    Example::

        week_date_range(2024, 1)   # → (date(2023, 12, 31), date(2024, 1, 6))
    """
    if not MIN_WEEK <= week <= MAX_WEEK:
        raise ValueError(f"week must be in [{MIN_WEEK}, {MAX_WEEK}], got {week}.")
    jan_first = date(year, 1, 1)
    start = jan_first + timedelta(days=(week - 1) * 7 - _sunday_weekday(jan_first))
    return start, start + timedelta(days=6)


def week_number(d: date) -> int:
    """Return the Sunday-start week number of ``d`` within its own year."""
    jan_first = date(d.year, 1, 1)
    day_of_year = (d - jan_first).days
    return math.ceil((day_of_year + 1 + _sunday_weekday(jan_first)) / 7)


def week_label(start: date) -> str:
    """Human-readable label for a week starting on ``start``.

    Example::

        week_label(date(2024, 3, 3))  # → "Week 10 | 2024-03-03 - 2024-03-09"
    """
    end = start + timedelta(days=6)
    return f"Week {week_number(start)} | {start.isoformat()} - {end.isoformat()}"


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    """Split ``items`` into consecutive lists of at most ``size`` elements.

    Order is preserved; the last chunk may be shorter.

    Raises:
        ValueError: If ``size < 1``.
    """
    if size < 1:
        raise ValueError(f"size must be >= 1, got {size}.")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]
