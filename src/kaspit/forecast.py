# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Cash-flow forecast for the coming months.

The forecast is deliberately conservative. From the history starting on the
first day of the month three months back:

    avg_income   = income of the window / 3
    avg_expenses = expenses of the window / 3
    recurring    = the expenses flagged as recurring, counted once per
                   (description, amount, day of month) and regardless of date
                   + monthly equivalent of the active recurring templates

and for every future month:

    income    = avg_income * income_factor                     (0.95)
    expenses  = recurring + (avg_expenses - recurring) * variable_factor  (0.9)
    projected = income - expenses
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

import pandas as pd

from .config import ForecastConfig
from .db import DatabaseConfig
from .formatting import month_name
from .ledger import EntriesFilter, load_entries
from .periods import add_months
from .recurring import estimated_monthly_total, list_recurring_expenses

logger = logging.getLogger(__name__)

HISTORY_MONTHS = 3


@dataclass(frozen=True)
class ForecastMonth:
    year: int
    month: int
    label: str
    income: float
    expenses: float
    projected: float


@dataclass(frozen=True)
class ForecastBasis:
    """Monthly averages the forecast is built on."""

    start: date
    average_income: float
    average_expenses: float
    recurring_total: float


def forecast_basis(cfg: DatabaseConfig, company_id: int, today: date) -> ForecastBasis:
    start_year, start_month = add_months(today.year, today.month, -HISTORY_MONTHS)
    start = date(start_year, start_month, 1)

    incomes = load_entries(cfg, company_id, EntriesFilter(kind="income", start=start))
    expenses = load_entries(cfg, company_id, EntriesFilter(kind="expense", start=start))

    # Expenses generated from a template are covered by the template itself.
    flagged: dict[tuple, float] = {}
    for e in load_entries(cfg, company_id, EntriesFilter(kind="expense", recurring_only=True)):
        if e.recurring_expense_id is None:
            flagged[(e.description, e.amount, e.recurring_day)] = e.amount
    templates = list_recurring_expenses(cfg, company_id, active_only=True)

    return ForecastBasis(
        start=start,
        average_income=sum(e.amount for e in incomes) / HISTORY_MONTHS,
        average_expenses=sum(e.amount for e in expenses) / HISTORY_MONTHS,
        recurring_total=round(sum(flagged.values()) + estimated_monthly_total(templates), 2),
    )


def cash_flow_forecast(
    cfg: DatabaseConfig,
    company_id: int,
    today: date | None = None,
    months_ahead: int | None = None,
    settings: ForecastConfig = ForecastConfig(),
) -> list[ForecastMonth]:
    """
    Project income, expenses and net cash flow for the next months.

    Parameters
    ----------
    today:
        Reference date; the first forecast month is the month after it.
    months_ahead:
        Number of months to project (defaults to ``settings.months_ahead``).
    """
    today = today or date.today()
    months_ahead = settings.months_ahead if months_ahead is None else months_ahead
    if months_ahead < 1:
        raise ValueError("months_ahead must be at least 1.")

    basis = forecast_basis(cfg, company_id, today)
    income = round(basis.average_income * settings.income_factor, 2)
    expenses = round(
        basis.recurring_total
        + (basis.average_expenses - basis.recurring_total) * settings.variable_expense_factor,
        2,
    )
    logger.debug("Forecast basis for company #%s: %s", company_id, basis)

    result: list[ForecastMonth] = []
    for offset in range(1, months_ahead + 1):
        year, month = add_months(today.year, today.month, offset)
        result.append(
            ForecastMonth(
                year=year,
                month=month,
                label=f"{month_name(month)} {year}",
                income=income,
                expenses=expenses,
                projected=round(income - expenses, 2),
            )
        )
    return result


def forecast_frame(forecast: list[ForecastMonth]) -> pd.DataFrame:
    """Forecast as a DataFrame with a running cumulative balance."""
    df = pd.DataFrame(
        [
            {
                "month": f.label,
                "income": f.income,
                "expenses": f.expenses,
                "projected": f.projected,
            }
            for f in forecast
        ],
        columns=["month", "income", "expenses", "projected"],
    )
    df["cumulative"] = df["projected"].cumsum().round(2)
    return df
