# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Recurring expense templates.

A template (rent, loan repayment, accountant fees...) describes an expense
that comes back every week, month or year. Generating the due expenses turns
the templates whose cycle has not been generated yet into concrete pending
expenses linked back to their template.

Cycles:

- monthly: once per calendar month, on ``day_of_month`` clipped to the
  month length (31 becomes 30 in April and 28 or 29 in February);
- weekly: once per ISO week, on ``day_of_week`` (Sunday = 0 ... Saturday = 6);
- yearly: once per calendar year, on ``month_of_year`` / ``day_of_month``.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, timedelta

from .companies import ensure_owned
from .db import (
    DatabaseConfig,
    connect,
    from_cents,
    init_database,
    now_utc_iso,
    parse_iso_date,
    to_cents,
    to_iso_date,
)
from .errors import RecordNotFoundError
from .formatting import month_name
from .ledger import LedgerEntry, NewEntry, check_links, fetch_entry, insert_entry
from .periods import days_in_month

logger = logging.getLogger(__name__)

FREQUENCIES = ("weekly", "monthly", "yearly")

EXPENSE_TYPES = {
    "loan": "הלוואה עסקית",
    "social_security": "ביטוח לאומי",
    "tax": "מקדמות מס הכנסה",
    "vat": "מע״מ",
    "salary": "משכורות",
    "accountant": "רואה חשבון",
    "rent": "שכירות",
    "insurance": "ביטוחים",
    "subscription": "מנויים ותוכנות",
    "telecom": "תקשורת",
    "utilities": "חשבונות (חשמל/מים)",
    "bank_fees": "עמלות בנק",
    "owner_loan_repay": "החזר הלוואת בעלים",
    "other": "אחר",
}

WEEKS_PER_MONTH = 52 / 12


@dataclass(frozen=True)
class RecurringExpense:
    id: int
    company_id: int
    name: str
    amount: float
    category_id: int | None
    supplier_id: int | None
    description: str | None
    frequency: str
    day_of_month: int | None
    day_of_week: int | None
    month_of_year: int | None
    start_date: date
    end_date: date | None
    last_generated_date: date | None
    is_active: bool
    expense_type: str

    def is_in_window(self, day: date) -> bool:
        """True when ``day`` lies between the start and (optional) end date."""
        if day < self.start_date:
            return False
        return self.end_date is None or day <= self.end_date


@dataclass
class RecurringUpdate:
    """Partial update of a template; only non-None fields are applied."""

    name: str | None = None
    amount: float | None = None
    category_id: int | None = None
    supplier_id: int | None = None
    description: str | None = None
    day_of_month: int | None = None
    day_of_week: int | None = None
    month_of_year: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    expense_type: str | None = None


def _row_to_recurring(row: sqlite3.Row) -> RecurringExpense:
    return RecurringExpense(
        id=int(row["id"]),
        company_id=int(row["company_id"]),
        name=row["name"],
        amount=from_cents(row["amount_cents"]),
        category_id=row["category_id"],
        supplier_id=row["supplier_id"],
        description=row["description"],
        frequency=row["frequency"],
        day_of_month=row["day_of_month"],
        day_of_week=row["day_of_week"],
        month_of_year=row["month_of_year"],
        start_date=parse_iso_date(row["start_date"]),
        end_date=parse_iso_date(row["end_date"]),
        last_generated_date=parse_iso_date(row["last_generated_date"]),
        is_active=bool(row["is_active"]),
        expense_type=row["expense_type"],
    )


def _check_schedule(
    frequency: str,
    day_of_month: int | None,
    day_of_week: int | None,
    month_of_year: int | None,
) -> None:
    if frequency not in FREQUENCIES:
        raise ValueError(
            f"Unknown frequency {frequency!r}. Expected one of: {', '.join(FREQUENCIES)}."
        )
    if frequency == "monthly" and day_of_month is None:
        raise ValueError("Monthly recurring expenses need a day_of_month.")
    if frequency == "weekly" and day_of_week is None:
        raise ValueError("Weekly recurring expenses need a day_of_week.")
    if frequency == "yearly" and month_of_year is None:
        raise ValueError("Yearly recurring expenses need a month_of_year.")
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        raise ValueError(f"Invalid day_of_month: {day_of_month}")
    if day_of_week is not None and not 0 <= day_of_week <= 6:
        raise ValueError(f"Invalid day_of_week: {day_of_week} (Sunday = 0 ... Saturday = 6)")
    if month_of_year is not None and not 1 <= month_of_year <= 12:
        raise ValueError(f"Invalid month_of_year: {month_of_year}")


def _check_expense_type(expense_type: str) -> None:
    if expense_type not in EXPENSE_TYPES:
        raise ValueError(
            f"Unknown expense type {expense_type!r}. "
            f"Expected one of: {', '.join(EXPENSE_TYPES)}."
        )


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


def get_recurring_expense(
    cfg: DatabaseConfig, company_id: int, recurring_id: int
) -> RecurringExpense:
    init_database(cfg)

    conn = connect(cfg)
    try:
        ensure_owned(conn, "recurring_expenses", recurring_id, company_id)
        row = conn.execute(
            "SELECT * FROM recurring_expenses WHERE id = ? AND company_id = ?;",
            (recurring_id, company_id),
        ).fetchone()
    finally:
        conn.close()

    if row is None:
        raise RecordNotFoundError("recurring_expenses", recurring_id)
    return _row_to_recurring(row)


def create_recurring_expense(
    cfg: DatabaseConfig,
    company_id: int,
    name: str,
    amount: float,
    *,
    frequency: str = "monthly",
    day_of_month: int | None = None,
    day_of_week: int | None = None,
    month_of_year: int | None = None,
    category_id: int | None = None,
    supplier_id: int | None = None,
    description: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    expense_type: str = "other",
) -> RecurringExpense:
    """
    Create an active recurring expense template.

    Monthly templates default to the 1st of the month and yearly ones to
    day 1 of ``month_of_year``. ``start_date`` defaults to today.

    Raises
    ------
    ValueError
        On an empty name, a non-positive amount, an invalid schedule, an
        unknown expense type or an end date before the start date.
    """
    name = (name or "").strip()
    if not name:
        raise ValueError("Recurring expense name cannot be empty.")
    if amount <= 0:
        raise ValueError("Recurring expense amount must be positive.")
    if frequency in ("monthly", "yearly") and day_of_month is None:
        day_of_month = 1
    _check_schedule(frequency, day_of_month, day_of_week, month_of_year)
    _check_expense_type(expense_type)

    start_date = start_date or date.today()
    if end_date is not None and end_date < start_date:
        raise ValueError("End date cannot be before start date.")

    init_database(cfg)

    conn = connect(cfg)
    try:
        check_links(
            conn, company_id, "expense", category_id=category_id, contact_id=supplier_id
        )
        cur = conn.execute(
            """
            INSERT INTO recurring_expenses (
                company_id, name, amount_cents, category_id, supplier_id,
                description, frequency, day_of_month, day_of_week,
                month_of_year, start_date, end_date, is_active,
                expense_type, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?);
            """,
            (
                company_id,
                name,
                to_cents(amount),
                category_id,
                supplier_id,
                description,
                frequency,
                day_of_month if frequency != "weekly" else None,
                day_of_week if frequency == "weekly" else None,
                month_of_year if frequency == "yearly" else None,
                to_iso_date(start_date),
                to_iso_date(end_date) if end_date else None,
                expense_type,
                now_utc_iso(),
            ),
        )
        recurring_id = int(cur.lastrowid)
        conn.commit()
    finally:
        conn.close()

    logger.info("Created %s recurring expense #%s (%s)", frequency, recurring_id, name)
    return get_recurring_expense(cfg, company_id, recurring_id)


def update_recurring_expense(
    cfg: DatabaseConfig,
    company_id: int,
    recurring_id: int,
    update: RecurringUpdate,
) -> RecurringExpense:
    """
    Apply a partial update to a template.

    The frequency itself cannot change; create a new template instead.
    """
    current = get_recurring_expense(cfg, company_id, recurring_id)

    fields: list[str] = []
    params: list[object] = []
    for column in (
        "name",
        "description",
        "category_id",
        "supplier_id",
        "day_of_month",
        "day_of_week",
        "month_of_year",
        "expense_type",
    ):
        value = getattr(update, column)
        if value is not None:
            fields.append(f"{column} = ?")
            params.append(value)
    if update.amount is not None:
        if update.amount <= 0:
            raise ValueError("Recurring expense amount must be positive.")
        fields.append("amount_cents = ?")
        params.append(to_cents(update.amount))
    for column in ("start_date", "end_date"):
        value = getattr(update, column)
        if value is not None:
            fields.append(f"{column} = ?")
            params.append(to_iso_date(value))

    if not fields:
        raise ValueError("No fields to update in RecurringUpdate.")

    _check_schedule(
        current.frequency,
        update.day_of_month if update.day_of_month is not None else current.day_of_month,
        update.day_of_week if update.day_of_week is not None else current.day_of_week,
        update.month_of_year if update.month_of_year is not None else current.month_of_year,
    )
    if update.expense_type is not None:
        _check_expense_type(update.expense_type)
    start = update.start_date or current.start_date
    end = update.end_date or current.end_date
    if end is not None and end < start:
        raise ValueError("End date cannot be before start date.")

    init_database(cfg)

    conn = connect(cfg)
    try:
        check_links(
            conn,
            company_id,
            "expense",
            category_id=update.category_id,
            contact_id=update.supplier_id,
        )
        conn.execute(
            f"""
            UPDATE recurring_expenses
               SET {", ".join(fields)}
             WHERE id = ? AND company_id = ?;
            """,
            (*params, recurring_id, company_id),
        )
        conn.commit()
    finally:
        conn.close()

    return get_recurring_expense(cfg, company_id, recurring_id)


def toggle_active(cfg: DatabaseConfig, company_id: int, recurring_id: int) -> RecurringExpense:
    """Pause an active template or resume a paused one."""
    current = get_recurring_expense(cfg, company_id, recurring_id)

    conn = connect(cfg)
    try:
        conn.execute(
            "UPDATE recurring_expenses SET is_active = ? WHERE id = ? AND company_id = ?;",
            (int(not current.is_active), recurring_id, company_id),
        )
        conn.commit()
    finally:
        conn.close()

    logger.info(
        "Recurring expense #%s %s",
        recurring_id,
        "paused" if current.is_active else "resumed",
    )
    return get_recurring_expense(cfg, company_id, recurring_id)


def delete_recurring_expense(cfg: DatabaseConfig, company_id: int, recurring_id: int) -> None:
    """
    Delete a template.

    Expenses already generated from it are kept; their link to the template
    is cleared.
    """
    init_database(cfg)

    conn = connect(cfg)
    try:
        ensure_owned(conn, "recurring_expenses", recurring_id, company_id)
        conn.execute(
            """
            UPDATE ledger_entries
               SET recurring_expense_id = NULL
             WHERE recurring_expense_id = ? AND company_id = ?;
            """,
            (recurring_id, company_id),
        )
        conn.execute(
            "DELETE FROM recurring_expenses WHERE id = ? AND company_id = ?;",
            (recurring_id, company_id),
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Deleted recurring expense #%s", recurring_id)


def list_recurring_expenses(
    cfg: DatabaseConfig, company_id: int, *, active_only: bool = False
) -> list[RecurringExpense]:
    """Templates of the company, ordered by name."""
    init_database(cfg)

    query = "SELECT * FROM recurring_expenses WHERE company_id = ?"
    if active_only:
        query += " AND is_active = 1"
    query += " ORDER BY name, id;"

    conn = connect(cfg)
    try:
        rows = conn.execute(query, (company_id,)).fetchall()
    finally:
        conn.close()

    return [_row_to_recurring(r) for r in rows]


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------


def monthly_equivalent(template: RecurringExpense) -> float:
    """Average monthly cost of a template."""
    if template.frequency == "weekly":
        return round(template.amount * WEEKS_PER_MONTH, 2)
    if template.frequency == "yearly":
        return round(template.amount / 12, 2)
    return template.amount


def estimated_monthly_total(templates: list[RecurringExpense]) -> float:
    return round(sum(monthly_equivalent(t) for t in templates if t.is_active), 2)


def _sunday_based_weekday(day: date) -> int:
    # date.weekday() is Monday = 0.
    return (day.weekday() + 1) % 7


def occurrence_in_cycle(template: RecurringExpense, today: date) -> date:
    """Date of the template's occurrence in the cycle containing ``today``."""
    if template.frequency == "monthly":
        day = min(template.day_of_month or 1, days_in_month(today.year, today.month))
        return date(today.year, today.month, day)
    if template.frequency == "weekly":
        monday = today - timedelta(days=today.weekday())
        return monday + timedelta(days=(template.day_of_week - 1) % 7)
    month = template.month_of_year or 1
    day = min(template.day_of_month or 1, days_in_month(today.year, month))
    return date(today.year, month, day)


def occurs_on(template: RecurringExpense, day: date) -> bool:
    """True when an active template falls due on ``day``."""
    if not template.is_active or not template.is_in_window(day):
        return False
    return occurrence_in_cycle(template, day) == day


def _same_cycle(frequency: str, a: date, b: date) -> bool:
    if frequency == "weekly":
        return a.isocalendar()[:2] == b.isocalendar()[:2]
    if frequency == "monthly":
        return (a.year, a.month) == (b.year, b.month)
    return a.year == b.year


def is_due(template: RecurringExpense, today: date) -> bool:
    """
    True when the current cycle of an active template has not been generated.

    Both ``today`` and the occurrence it would book must lie in the
    template's window, so a cycle whose occurrence falls before
    ``start_date`` or after ``end_date`` is skipped.
    """
    if not template.is_active or not template.is_in_window(today):
        return False
    if not template.is_in_window(occurrence_in_cycle(template, today)):
        return False
    last = template.last_generated_date
    return last is None or not _same_cycle(template.frequency, last, today)


def upcoming_occurrences(
    templates: list[RecurringExpense], today: date, days: int = 7
) -> list[tuple[RecurringExpense, date]]:
    """Occurrences falling in (today, today + days], soonest first."""
    result = []
    for offset in range(1, days + 1):
        day = today + timedelta(days=offset)
        result.extend((t, day) for t in templates if occurs_on(t, day))
    return result


def generate_due_expenses(
    cfg: DatabaseConfig,
    company_id: int,
    today: date | None = None,
    created_by: int | None = None,
) -> list[LedgerEntry]:
    """
    Create the pending expense of every due template.

    Each expense is dated on the occurrence of the current cycle, described
    as "<name> - <month> <year>" and linked to its template, whose
    ``last_generated_date`` is moved to that date. Returns the created
    entries (empty when everything was already generated).
    """
    today = today or date.today()
    due = [
        t for t in list_recurring_expenses(cfg, company_id, active_only=True) if is_due(t, today)
    ]
    if not due:
        logger.info("No recurring expense due for company #%s on %s", company_id, today)
        return []

    created: list[LedgerEntry] = []
    conn = connect(cfg)
    try:
        for template in due:
            expense_date = occurrence_in_cycle(template, today)
            new_entry = NewEntry(
                kind="expense",
                amount=template.amount,
                date=expense_date,
                category_id=template.category_id,
                contact_id=template.supplier_id,
                description=f"{template.name} - {month_name(expense_date.month)} {expense_date.year}",
                payment_status="pending",
                recurring_expense_id=template.id,
            )
            entry_id = insert_entry(conn, company_id, new_entry, created_by=created_by)
            conn.execute(
                """
                UPDATE recurring_expenses
                   SET last_generated_date = ?
                 WHERE id = ? AND company_id = ?;
                """,
                (to_iso_date(expense_date), template.id, company_id),
            )
            created.append(fetch_entry(conn, company_id, entry_id))
            logger.info(
                "Generated expense #%s from recurring expense #%s (%s)",
                entry_id,
                template.id,
                template.name,
            )
        conn.commit()
    finally:
        conn.close()

    return created
