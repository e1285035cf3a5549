# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Small display and arithmetic helpers shared by reports, insights and the CLI.
"""

import math

HEBREW_MONTHS = (
    "ינואר",
    "פברואר",
    "מרץ",
    "אפריל",
    "מאי",
    "יוני",
    "יולי",
    "אוגוסט",
    "ספטמבר",
    "אוקטובר",
    "נובמבר",
    "דצמבר",
)

_CURRENCY_SYMBOLS = {"ILS": "₪", "USD": "$", "EUR": "€"}

_STATUS_LABELS = {
    "pending": "ממתין",
    "partial": "שולם חלקית",
    "paid": "שולם",
    "cancelled": "בוטל",
}


def month_name(month: int) -> str:
    """Hebrew month name, or an empty string for an invalid month."""
    if 1 <= month <= 12:
        return HEBREW_MONTHS[month - 1]
    return ""


def format_currency(amount: float, currency: str = "ILS", decimals: int = 0) -> str:
    """
    Format an amount with thousands separators and a currency symbol.

    >>> format_currency(-1234.4)
    '-₪1,234'
    """
    symbol = _CURRENCY_SYMBOLS.get(currency, currency + " ")
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.{decimals}f}"


def translate_status(status: str) -> str:
    return _STATUS_LABELS.get(status, status)


def calculate_percentage(value: float, total: float) -> int:
    """Rounded share of ``value`` in ``total``; 0 when the total is 0."""
    if total == 0:
        return 0
    return round_half_up(value / total * 100)


def calculate_change(current: float, previous: float) -> int:
    """
    Rounded percentage change from ``previous`` to ``current``.

    When there is no previous value the change is 100 if anything happened
    this time, 0 otherwise.
    """
    if previous == 0:
        return 100 if current > 0 else 0
    return round_half_up((current - previous) / previous * 100)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves going up (2.5 -> 3, -2.5 -> -2)."""
    return math.floor(value + 0.5)
