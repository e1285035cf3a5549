# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Dashboard insights: alerts, observations and recommendations computed from
the company's books for the current month.

Each insight has a ``type`` (alert, insight, recommendation, forecast) and a
``severity`` (info, warning, critical, success). Titles and messages are in
Hebrew, as shown to the business owner; ``action`` names the CLI command
that shows the details.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from .budget import budget_status, categories_without_budget
from .config import BudgetConfig
from .db import DatabaseConfig
from .formatting import calculate_change, format_currency, month_name
from .ledger import EntriesFilter, count_entries, load_entries
from .periods import add_months, month_period
from .recurring import list_recurring_expenses, upcoming_occurrences

logger = logging.getLogger(__name__)

INSIGHT_TYPES = ("alert", "insight", "recommendation", "forecast")
SEVERITIES = ("info", "warning", "critical", "success")

TREND_THRESHOLD_PCT = 20
UPCOMING_DAYS = 7
GETTING_STARTED_MIN_ENTRIES = 10


@dataclass(frozen=True)
class Insight:
    id: str
    type: str
    severity: str
    title: str
    message: str
    action: str | None = None


def _budget_insights(
    cfg: DatabaseConfig, company_id: int, today: date, near_threshold_pct: int
) -> list[Insight]:
    result = []
    for bs in budget_status(cfg, company_id, today.year, today.month, near_threshold_pct):
        if bs.status == "over":
            result.append(
                Insight(
                    id=f"budget-over-{bs.category_id}",
                    type="alert",
                    severity="critical",
                    title=f"חריגה מתקציב: {bs.category_name}",
                    message=(
                        f"חרגת מהתקציב ב-{format_currency(bs.actual - bs.budgeted)}. "
                        f"הוצאת {format_currency(bs.actual)} מתוך "
                        f"{format_currency(bs.budgeted)} מתוקצב."
                    ),
                    action="kaspit budget status",
                )
            )
        elif bs.status == "near":
            result.append(
                Insight(
                    id=f"budget-near-{bs.category_id}",
                    type="alert",
                    severity="warning",
                    title=f"קרוב לחריגה: {bs.category_name}",
                    message=(
                        f"ניצלת {bs.percentage}% מהתקציב ({format_currency(bs.actual)} "
                        f"מתוך {format_currency(bs.budgeted)})."
                    ),
                    action="kaspit budget status",
                )
            )
    return result


def _overdue_expenses_insight(
    cfg: DatabaseConfig, company_id: int, today: date
) -> Insight | None:
    overdue = [
        e
        for e in load_entries(
            cfg, company_id, EntriesFilter(kind="expense", payment_status="pending")
        )
        if e.due_date is not None and e.due_date < today
    ]
    if not overdue:
        return None
    total = sum(e.amount for e in overdue)
    return Insight(
        id="unpaid-expenses",
        type="alert",
        severity="warning",
        title=f"{len(overdue)} חשבוניות לא שולמו",
        message=(
            f"יש {len(overdue)} חשבוניות שעבר מועד התשלום שלהן, "
            f"בסך {format_currency(total)}."
        ),
        action="kaspit expense list --status pending",
    )


def _pending_income_insight(cfg: DatabaseConfig, company_id: int) -> Insight | None:
    pending = load_entries(
        cfg, company_id, EntriesFilter(kind="income", payment_status="pending")
    )
    if not pending:
        return None
    total = sum(e.amount for e in pending)
    return Insight(
        id="pending-income",
        type="insight",
        severity="info",
        title=f"{format_currency(total)} הכנסות ממתינות",
        message=f"יש {len(pending)} הכנסות שעדיין לא התקבלו.",
        action="kaspit collection",
    )


def _month_expenses(cfg: DatabaseConfig, company_id: int, year: int, month: int) -> float:
    period = month_period(year, month)
    return sum(
        e.amount
        for e in load_entries(
            cfg,
            company_id,
            EntriesFilter(kind="expense", start=period.start, end=period.end),
        )
    )


def _expense_trend_insight(
    cfg: DatabaseConfig, company_id: int, today: date
) -> Insight | None:
    prev_year, prev_month = add_months(today.year, today.month, -1)
    current = _month_expenses(cfg, company_id, today.year, today.month)
    previous = _month_expenses(cfg, company_id, prev_year, prev_month)
    change = calculate_change(current, previous)
    if abs(change) < TREND_THRESHOLD_PCT:
        return None

    rising = change > 0
    return Insight(
        id="expense-trend",
        type="insight",
        severity="warning" if rising else "success",
        title="עלייה בהוצאות" if rising else "ירידה בהוצאות",
        message=(
            f"ההוצאות החודש {'עלו' if rising else 'ירדו'} ב-{abs(change)}% "
            f"לעומת {month_name(prev_month)}."
        ),
        action="kaspit report trend",
    )


def _upcoming_recurring_insight(
    cfg: DatabaseConfig, company_id: int, today: date
) -> Insight | None:
    """
    Recurring expenses falling due in the next seven days.

    Two sources: expenses flagged as recurring on a day of the month (one per
    description, amount and day), and active recurring templates.
    """
    last_day = today.day + UPCOMING_DAYS
    flagged: dict[tuple, float] = {}
    for e in load_entries(
        cfg, company_id, EntriesFilter(kind="expense", recurring_only=True)
    ):
        if e.recurring_day and today.day < e.recurring_day <= last_day:
            flagged[(e.description, e.amount, e.recurring_day)] = e.amount

    templates = list_recurring_expenses(cfg, company_id, active_only=True)
    scheduled = upcoming_occurrences(templates, today, UPCOMING_DAYS)

    count = len(flagged) + len(scheduled)
    if count == 0:
        return None
    total = sum(flagged.values()) + sum(t.amount for t, _ in scheduled)
    return Insight(
        id="upcoming-recurring",
        type="forecast",
        severity="info",
        title="הוצאות קבועות בשבוע הקרוב",
        message=f"צפויות {count} הוצאות קבועות בסך {format_currency(total)}.",
        action="kaspit recurring list",
    )


def _unbudgeted_insight(
    cfg: DatabaseConfig, company_id: int, today: date
) -> Insight | None:
    missing = categories_without_budget(cfg, company_id, today.year, today.month)
    if not missing:
        return None
    return Insight(
        id="no-budget-categories",
        type="recommendation",
        severity="info",
        title="הגדר תקציב לקטגוריות נוספות",
        message=(
            f"יש {len(missing)} קטגוריות הוצאה ללא תקציב מוגדר. "
            "הגדרת תקציב תעזור לך לעקוב טוב יותר."
        ),
        action="kaspit budget suggest",
    )


def _getting_started_insight(cfg: DatabaseConfig, company_id: int) -> Insight | None:
    income_count = count_entries(cfg, company_id, EntriesFilter(kind="income"))
    expense_count = count_entries(cfg, company_id, EntriesFilter(kind="expense"))
    if income_count >= GETTING_STARTED_MIN_ENTRIES or expense_count >= GETTING_STARTED_MIN_ENTRIES:
        return None
    return Insight(
        id="getting-started",
        type="recommendation",
        severity="info",
        title="בואו נתחיל!",
        message=(
            "הוסיפו הכנסות והוצאות או ייבאו מקובץ Excel כדי שנוכל לספק "
            "תובנות והמלצות מותאמות אישית."
        ),
        action="kaspit income import",
    )


def generate_insights(
    cfg: DatabaseConfig,
    company_id: int,
    today: date | None = None,
    budget_settings: BudgetConfig = BudgetConfig(),
) -> list[Insight]:
    """
    Build the insights of the month containing ``today``, in display order:
    budget alerts, overdue expenses, pending income, expense trend, upcoming
    recurring expenses, unbudgeted categories, getting started.
    """
    today = today or date.today()

    insights = _budget_insights(cfg, company_id, today, budget_settings.near_threshold_pct)
    for candidate in (
        _overdue_expenses_insight(cfg, company_id, today),
        _pending_income_insight(cfg, company_id),
        _expense_trend_insight(cfg, company_id, today),
        _upcoming_recurring_insight(cfg, company_id, today),
        _unbudgeted_insight(cfg, company_id, today),
        _getting_started_insight(cfg, company_id),
    ):
        if candidate is not None:
            insights.append(candidate)

    logger.debug("Generated %d insights for company #%s", len(insights), company_id)
    return insights
