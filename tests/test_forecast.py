from datetime import date

import pytest

from kaspit.config import ForecastConfig
from kaspit.forecast import cash_flow_forecast, forecast_basis, forecast_frame
from kaspit.ledger import NewEntry, add_entry
from kaspit.recurring import create_recurring_expense


def _add(cfg, company_id, kind, amount, day, **kwargs):
    add_entry(cfg, company_id, NewEntry(kind=kind, amount=amount, date=day, **kwargs))


def _history(cfg, company_id):
    # Window for a forecast made on 2025-04-10 starts on 2025-01-01.
    for month in (1, 2, 3):
        _add(cfg, company_id, "income", 10000, date(2025, month, 5))
        _add(cfg, company_id, "expense", 3000, date(2025, month, 1), is_recurring=True, recurring_day=1)
        _add(cfg, company_id, "expense", 2000, date(2025, month, 20))
    _add(cfg, company_id, "income", 90000, date(2024, 12, 31))


def test_forecast_basis_averages_three_months(cfg, companies):
    company_id = companies.alpha.id
    _history(cfg, company_id)

    basis = forecast_basis(cfg, company_id, date(2025, 4, 10))

    assert basis.start == date(2025, 1, 1)
    assert basis.average_income == 10000.0
    assert basis.average_expenses == 5000.0
    assert basis.recurring_total == 3000.0


def test_cash_flow_forecast_applies_safety_factors(cfg, companies):
    """income * 0.95 and recurring + variable * 0.9, for each coming month."""
    company_id = companies.alpha.id
    _history(cfg, company_id)

    forecast = cash_flow_forecast(cfg, company_id, today=date(2025, 4, 10))

    assert [(f.year, f.month) for f in forecast] == [(2025, 5), (2025, 6), (2025, 7)]
    assert forecast[0].label == "מאי 2025"
    assert forecast[0].income == 9500.0
    assert forecast[0].expenses == 4800.0
    assert forecast[0].projected == 4700.0

    longer = cash_flow_forecast(
        cfg, company_id, today=date(2025, 11, 3), months_ahead=3
    )
    assert [(f.year, f.month) for f in longer] == [(2025, 12), (2026, 1), (2026, 2)]


def test_forecast_includes_recurring_templates(cfg, companies):
    company_id = companies.alpha.id
    _history(cfg, company_id)
    create_recurring_expense(
        cfg, company_id, "Accountant", 1200, frequency="yearly", month_of_year=6,
        start_date=date(2025, 1, 1),
    )

    basis = forecast_basis(cfg, company_id, date(2025, 4, 10))
    assert basis.recurring_total == 3100.0

    forecast = cash_flow_forecast(
        cfg,
        company_id,
        today=date(2025, 4, 10),
        months_ahead=1,
        settings=ForecastConfig(income_factor=1.0, variable_expense_factor=1.0),
    )
    assert forecast[0].income == 10000.0
    assert forecast[0].expenses == 5000.0


def test_recurring_total_counts_each_flagged_expense_once(cfg, companies):
    """Flagged expenses weigh in fully whatever their age, once per description, amount and day."""
    company_id = companies.alpha.id
    _add(cfg, company_id, "expense", 3000, date(2025, 1, 1), is_recurring=True, recurring_day=1, description="Rent")
    _add(cfg, company_id, "expense", 600, date(2025, 5, 5), is_recurring=True, recurring_day=5, description="Leasing")
    _add(cfg, company_id, "expense", 600, date(2025, 6, 5), is_recurring=True, recurring_day=5, description="Leasing")
    _add(cfg, company_id, "expense", 999, date(2025, 6, 2))

    basis = forecast_basis(cfg, company_id, date(2025, 6, 15))

    assert basis.recurring_total == 3600.0


def test_forecast_without_history_is_flat_zero(cfg, companies):
    forecast = cash_flow_forecast(cfg, companies.beta.id, today=date(2025, 4, 10), months_ahead=2)
    assert [f.projected for f in forecast] == [0.0, 0.0]


def test_forecast_rejects_non_positive_horizon(cfg, companies):
    with pytest.raises(ValueError):
        cash_flow_forecast(cfg, companies.alpha.id, today=date(2025, 4, 10), months_ahead=0)


def test_forecast_frame_has_cumulative_balance(cfg, companies):
    company_id = companies.alpha.id
    _history(cfg, company_id)

    frame = forecast_frame(cash_flow_forecast(cfg, company_id, today=date(2025, 4, 10)))

    assert list(frame.columns) == ["month", "income", "expenses", "projected", "cumulative"]
    assert list(frame["cumulative"]) == [4700.0, 9400.0, 14100.0]
