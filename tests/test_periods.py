from argparse import Namespace
from datetime import date

import pytest

import kaspit.periods as periods


def test_add_months_crosses_years() -> None:
    assert periods.add_months(2025, 1, -1) == (2024, 12)
    assert periods.add_months(2025, 11, 3) == (2026, 2)
    assert periods.add_months(2025, 6, 0) == (2025, 6)
    assert periods.add_months(2025, 3, -27) == (2022, 12)


def test_month_period() -> None:
    p = periods.month_period(2024, 2)
    assert p.start == date(2024, 2, 1)
    assert p.end == date(2024, 2, 29)
    assert p.label == "2024-02"
    assert p.contains(date(2024, 2, 29))
    assert not p.contains(date(2024, 3, 1))

    with pytest.raises(ValueError):
        periods.month_period(2024, 13)


def test_months_period() -> None:
    p = periods.months_period(2024, 11, 3)
    assert p.start == date(2024, 11, 1)
    assert p.end == date(2025, 1, 31)
    assert p.label == "2024-11 → 2025-01"

    assert periods.months_period(2025, 3, 1).label == "2025-03"
    with pytest.raises(ValueError):
        periods.months_period(2025, 3, 0)


@pytest.mark.parametrize("value", ["2025-13", "2025", "march", "2025-00"])
def test_parse_month_rejects_invalid_values(value) -> None:
    with pytest.raises(ValueError):
        periods.parse_month(value)


def test_parse_month() -> None:
    assert periods.parse_month(" 2025-03 ") == (2025, 3)


def test_determine_period_priority(monkeypatch) -> None:
    """--month wins over --from/--to, which win over the current month."""
    monkeypatch.setattr(periods, "_today", lambda: date(2025, 3, 18))

    by_month = periods.determine_period_from_args(
        Namespace(month="2025-01", from_date="2024-06-01", to_date=None)
    )
    assert (by_month.start, by_month.end) == (date(2025, 1, 1), date(2025, 1, 31))

    custom = periods.determine_period_from_args(
        Namespace(month=None, from_date="2025-02-10", to_date=None)
    )
    assert (custom.start, custom.end) == (date(2025, 2, 10), date(2025, 3, 18))

    current = periods.determine_period_from_args(Namespace())
    assert current.label == "2025-03"

    with pytest.raises(ValueError):
        periods.determine_period_from_args(
            Namespace(month=None, from_date="2025-03-10", to_date="2025-03-01")
        )
