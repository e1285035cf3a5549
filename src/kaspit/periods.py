# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Period helpers for Kaspit.

Bookkeeping in Kaspit is organised by calendar month: budgets are set per
month, VAT is reported per month or per pair of months, and the dashboard
compares the current month with the previous one. This module defines a
Period value object and the month arithmetic shared by those features.
"""

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


@dataclass
class Period:
    """Represents a reporting period with a human-readable label."""

    start: date
    end: date
    label: str

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def _today() -> date:
    """Return today's date as a date object (isolated for easier testing)."""
    return datetime.today().date()


def days_in_month(year: int, month: int) -> int:
    return monthrange(year, month)[1]


def add_months(year: int, month: int, delta: int) -> tuple[int, int]:
    """Shift (year, month) by ``delta`` months, forwards or backwards."""
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_period(year: int, month: int) -> Period:
    """Full calendar month."""
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    return Period(
        start=date(year, month, 1),
        end=date(year, month, days_in_month(year, month)),
        label=f"{year}-{month:02d}",
    )


def months_period(year: int, month: int, count: int) -> Period:
    """``count`` consecutive calendar months starting at (year, month)."""
    if count < 1:
        raise ValueError("count must be at least 1.")
    end_year, end_month = add_months(year, month, count - 1)
    start = date(year, month, 1)
    end = date(end_year, end_month, days_in_month(end_year, end_month))
    if count == 1:
        label = f"{year}-{month:02d}"
    else:
        label = f"{year}-{month:02d} → {end_year}-{end_month:02d}"
    return Period(start=start, end=end, label=label)



def parse_month(value: str) -> tuple[int, int]:
    """
    Parse a ``YYYY-MM`` string.

    Raises
    ------
    ValueError
        If the value is not a valid month.
    """
    try:
        year_str, month_str = value.strip().split("-", 1)
        year, month = int(year_str), int(month_str)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid month {value!r}, expected YYYY-MM.") from exc
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month {value!r}, expected YYYY-MM.")
    return year, month


def determine_period_from_args(args) -> Period:
    """
    Determine the period to use based on CLI args.

    Priority (highest to lowest):

        1. args.month (YYYY-MM)
        2. args.from_date / args.to_date (custom period)
        3. current calendar month by default
    """
    month_raw: Optional[str] = getattr(args, "month", None)
    if month_raw:
        return month_period(*parse_month(month_raw))

    from_raw: Optional[str] = getattr(args, "from_date", None)
    to_raw: Optional[str] = getattr(args, "to_date", None)
    today = _today()

    if from_raw or to_raw:
        start = date.fromisoformat(from_raw) if from_raw else today.replace(day=1)
        end = date.fromisoformat(to_raw) if to_raw else today

        if end < start:
            raise ValueError("Custom period end date cannot be before start date.")

        return Period(start=start, end=end, label=f"{start} → {end}")

    return month_period(today.year, today.month)
