# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Monthly budgets per expense category.

A budget is an amount allotted to one expense category for one calendar
month. Budget status compares it with the expenses actually booked in that
category during the month:

    percentage = round(actual / budgeted * 100)   (0 when budgeted is 0)
    status     = "over" from 100%, "near" from the near threshold (80%),
                 "under" otherwise

Suggestions are derived from the three full months preceding the target
month: the monthly average as-is for categories holding recurring expenses,
the average plus a 10% margin otherwise, rounded to the nearest hundred.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from .catalog import Category, list_categories
from .companies import ensure_owned
from .db import DatabaseConfig, connect, from_cents, init_database, now_utc_iso, to_cents
from .errors import RecordNotFoundError
from .formatting import round_half_up
from .ledger import EntriesFilter, load_entries
from .periods import add_months, month_period, months_period

logger = logging.getLogger(__name__)

SUGGESTION_MONTHS = 3
SAFETY_MARGIN = 1.1


@dataclass(frozen=True)
class Budget:
    id: int
    company_id: int
    category_id: int
    year: int
    month: int
    amount: float


@dataclass(frozen=True)
class BudgetStatus:
    """
    Budget versus actual for one category and one month.

    Attributes
    ----------
    percentage:
        Rounded share of the budget already spent.
    status:
        "under", "near" or "over".
    """

    category_id: int
    category_name: str
    budgeted: float
    actual: float
    percentage: int
    status: str


@dataclass(frozen=True)
class BudgetTotals:
    budgeted: float
    actual: float
    over_count: int
    near_count: int


@dataclass(frozen=True)
class BudgetSuggestion:
    category_id: int
    category_name: str
    suggested_amount: float
    average_amount: float
    reason: str


def _row_to_budget(row: sqlite3.Row) -> Budget:
    return Budget(
        id=int(row["id"]),
        company_id=int(row["company_id"]),
        category_id=int(row["category_id"]),
        year=int(row["year"]),
        month=int(row["month"]),
        amount=from_cents(row["amount_cents"]),
    )


def _check_month(year: int, month: int) -> None:
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    if year < 1900:
        raise ValueError(f"Invalid year: {year}")


def set_budget(
    cfg: DatabaseConfig,
    company_id: int,
    category_id: int,
    year: int,
    month: int,
    amount: float,
    created_by: int | None = None,
) -> Budget:
    """
    Create or replace the budget of a category for a month.

    Raises
    ------
    ValueError
        If the amount is negative, the month invalid, or the category is not
        an expense category.
    RecordNotFoundError, AuthorizationError
        If the category is missing or owned by another company.
    """
    _check_month(year, month)
    if amount < 0:
        raise ValueError("Budget amount cannot be negative.")

    init_database(cfg)

    conn = connect(cfg)
    try:
        ensure_owned(conn, "categories", category_id, company_id)
        (category_type,) = conn.execute(
            "SELECT type FROM categories WHERE id = ?;", (category_id,)
        ).fetchone()
        if category_type != "expense":
            raise ValueError(
                f"Category #{category_id} is an {category_type} category; "
                "budgets apply to expense categories only."
            )

        conn.execute(
            """
            INSERT INTO budgets (
                company_id, category_id, year, month, amount_cents,
                created_by, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (company_id, category_id, year, month)
            DO UPDATE SET amount_cents = excluded.amount_cents;
            """,
            (
                company_id,
                category_id,
                year,
                month,
                to_cents(amount),
                created_by,
                now_utc_iso(),
            ),
        )
        conn.commit()

        row = conn.execute(
            """
            SELECT * FROM budgets
             WHERE company_id = ? AND category_id = ? AND year = ? AND month = ?;
            """,
            (company_id, category_id, year, month),
        ).fetchone()
    finally:
        conn.close()

    if row is None:
        msg = f"Budget for category #{category_id} was just saved but could not be reloaded."
        raise RuntimeError(msg)

    logger.info(
        "Budget for category #%s in %s-%02d set to %.2f", category_id, year, month, amount
    )
    return _row_to_budget(row)


def list_budgets(cfg: DatabaseConfig, company_id: int, year: int, month: int) -> list[Budget]:
    _check_month(year, month)
    init_database(cfg)

    conn = connect(cfg)
    try:
        rows = conn.execute(
            """
            SELECT * FROM budgets
             WHERE company_id = ? AND year = ? AND month = ?
             ORDER BY category_id;
            """,
            (company_id, year, month),
        ).fetchall()
    finally:
        conn.close()

    return [_row_to_budget(r) for r in rows]


def delete_budget(cfg: DatabaseConfig, company_id: int, budget_id: int) -> None:
    init_database(cfg)

    conn = connect(cfg)
    try:
        ensure_owned(conn, "budgets", budget_id, company_id)
        cur = conn.execute(
            "DELETE FROM budgets WHERE id = ? AND company_id = ?;",
            (budget_id, company_id),
        )
        if cur.rowcount == 0:
            raise RecordNotFoundError("budgets", budget_id)
        conn.commit()
    finally:
        conn.close()


def _status_for(percentage: int, near_threshold_pct: int) -> str:
    if percentage >= 100:
        return "over"
    if percentage >= near_threshold_pct:
        return "near"
    return "under"


def budget_status(
    cfg: DatabaseConfig,
    company_id: int,
    year: int,
    month: int,
    near_threshold_pct: int = 80,
) -> list[BudgetStatus]:
    """
    Compare each budget of the month with the expenses of its category.

    Returns one BudgetStatus per budget, in category order. Expenses without a
    category are ignored.
    """
    budgets = list_budgets(cfg, company_id, year, month)
    if not budgets:
        return []

    period = month_period(year, month)
    actual_by_category: dict[int, float] = {}
    for entry in load_entries(
        cfg,
        company_id,
        EntriesFilter(kind="expense", start=period.start, end=period.end),
    ):
        if entry.category_id is not None:
            actual_by_category[entry.category_id] = (
                actual_by_category.get(entry.category_id, 0.0) + entry.amount
            )

    names = {
        c.id: c.name
        for c in list_categories(cfg, company_id, "expense", active_only=False)
    }

    result: list[BudgetStatus] = []
    for b in budgets:
        actual = round(actual_by_category.get(b.category_id, 0.0), 2)
        percentage = round_half_up(actual / b.amount * 100) if b.amount > 0 else 0
        result.append(
            BudgetStatus(
                category_id=b.category_id,
                category_name=names.get(b.category_id, "לא ידוע"),
                budgeted=b.amount,
                actual=actual,
                percentage=percentage,
                status=_status_for(percentage, near_threshold_pct),
            )
        )
    return result


def budget_totals(statuses: list[BudgetStatus]) -> BudgetTotals:
    """Overall budgeted and actual amounts, plus over / near counts."""
    return BudgetTotals(
        budgeted=round(sum(s.budgeted for s in statuses), 2),
        actual=round(sum(s.actual for s in statuses), 2),
        over_count=sum(1 for s in statuses if s.status == "over"),
        near_count=sum(1 for s in statuses if s.status == "near"),
    )


def categories_without_budget(
    cfg: DatabaseConfig, company_id: int, year: int, month: int
) -> list[Category]:
    """Active expense categories with no budget for the month."""
    budgeted = {b.category_id for b in list_budgets(cfg, company_id, year, month)}
    return [c for c in list_categories(cfg, company_id, "expense") if c.id not in budgeted]


def suggest_budget(
    cfg: DatabaseConfig, company_id: int, year: int, month: int
) -> list[BudgetSuggestion]:
    """
    Suggest a budget for each active expense category.

    The base is the monthly average over the three full months before
    (year, month). Categories without any expense in that window are left
    out.
    """
    _check_month(year, month)
    first_year, first_month = add_months(year, month, -SUGGESTION_MONTHS)
    window = months_period(first_year, first_month, SUGGESTION_MONTHS)

    totals: dict[int, float] = {}
    recurring: set[int] = set()
    for entry in load_entries(
        cfg,
        company_id,
        EntriesFilter(kind="expense", start=window.start, end=window.end),
    ):
        if entry.category_id is None:
            continue
        totals[entry.category_id] = totals.get(entry.category_id, 0.0) + entry.amount
        if entry.is_recurring or entry.recurring_expense_id is not None:
            recurring.add(entry.category_id)

    suggestions: list[BudgetSuggestion] = []
    for category in list_categories(cfg, company_id, "expense"):
        average = totals.get(category.id, 0.0) / SUGGESTION_MONTHS
        if category.id in recurring:
            suggested, reason = average, "fixed monthly expense"
        elif average > 0:
            suggested, reason = average * SAFETY_MARGIN, "3-month average + 10% margin"
        else:
            suggested, reason = average, "3-month average"

        suggested = float(round_half_up(suggested / 100) * 100)
        rounded_average = float(round_half_up(average))
        if rounded_average <= 0 and suggested <= 0:
            continue
        suggestions.append(
            BudgetSuggestion(
                category_id=category.id,
                category_name=category.name,
                suggested_amount=suggested,
                average_amount=rounded_average,
                reason=reason,
            )
        )
    return suggestions


def apply_suggestions(
    cfg: DatabaseConfig,
    company_id: int,
    year: int,
    month: int,
    suggestions: list[BudgetSuggestion],
    created_by: int | None = None,
) -> list[Budget]:
    """Store each suggestion as the category's budget for the month."""
    return [
        set_budget(
            cfg,
            company_id,
            s.category_id,
            year,
            month,
            s.suggested_amount,
            created_by=created_by,
        )
        for s in suggestions
    ]
