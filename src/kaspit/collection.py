# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Collection of unpaid customer invoices.

Open invoices (document type ``invoice`` or ``tax_invoice`` not yet paid)
are listed with the number of days until their due date, or the number of
days they are overdue, grouped by week and turned into reminder messages
for WhatsApp, e-mail or a phone call.

Weeks run from Sunday to Saturday.

Each invoice also carries a follow-up state (``collection_status``): sent
reminders are stored with their text, the customer may promise a payment
date, and marking the invoice paid ends the follow-up.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, timedelta

import pandas as pd

from .catalog import list_contacts
from .db import DatabaseConfig, connect, init_database, now_utc_iso, to_iso_date
from .formatting import format_currency
from .ledger import EntriesFilter, LedgerEntry, fetch_entry, get_entry, load_entries, mark_paid

logger = logging.getLogger(__name__)

COLLECTIBLE_DOCUMENT_TYPES = ("invoice", "tax_invoice")
REMINDER_CHANNELS = ("whatsapp", "email", "phone")
COLLECTION_STATUSES = ("none", "reminder_sent", "promised", "partial_received", "dispute", "legal")
UPCOMING_WEEKS = 4


@dataclass(frozen=True)
class CollectionItem:
    entry: LedgerEntry
    customer_name: str | None
    phone: str | None
    email: str | None
    days_until_due: int
    days_overdue: int

    @property
    def is_overdue(self) -> bool:
        return self.days_overdue > 0

    @property
    def amount(self) -> float:
        return self.entry.amount


@dataclass
class CollectionBucket:
    label: str
    start: date | None
    end: date | None
    items: list[CollectionItem] = field(default_factory=list)

    @property
    def total(self) -> float:
        return round(sum(i.amount for i in self.items), 2)


def _clean(value) -> str | None:
    if value is None or pd.isna(value):
        return None
    return str(value)


def collection_items(
    cfg: DatabaseConfig,
    company_id: int,
    today: date | None = None,
    collection_status: str | None = None,
) -> list[CollectionItem]:
    """
    Unpaid income invoices, by due date (invoices without one last).

    An invoice without a due date counts as due today. Cancelled documents
    and business invoices already closed by a tax document are left out.
    ``collection_status`` keeps only the invoices in that follow-up state.
    """
    if collection_status is not None:
        _check_collection_status(collection_status)
    today = today or date.today()

    contacts = list_contacts(cfg, company_id, "customer", active_only=False)
    by_id = {int(row["id"]): row for _, row in contacts.iterrows()}

    items: list[CollectionItem] = []
    for entry in load_entries(cfg, company_id, EntriesFilter(kind="income")):
        if entry.payment_status == "paid":
            continue
        if entry.document_type not in COLLECTIBLE_DOCUMENT_TYPES:
            continue
        if entry.document_status == "cancelled":
            continue
        if entry.document_type == "invoice" and entry.document_status == "closed":
            continue
        if collection_status is not None and entry.collection_status != collection_status:
            continue

        days = (entry.due_date - today).days if entry.due_date else 0
        contact = by_id.get(entry.contact_id) if entry.contact_id is not None else None
        items.append(
            CollectionItem(
                entry=entry,
                customer_name=entry.counterparty,
                phone=_clean(contact["phone"]) if contact is not None else None,
                email=_clean(contact["email"]) if contact is not None else None,
                days_until_due=max(days, 0),
                days_overdue=max(-days, 0),
            )
        )

    items.sort(key=lambda i: (i.entry.due_date is None, i.entry.due_date or today, i.entry.id))
    return items


def _sunday_based_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def weekly_buckets(items: list[CollectionItem], today: date) -> list[CollectionBucket]:
    """
    Group items into: overdue (most overdue first, only when not empty),
    this week, next week, the three weeks after it and later (only when not
    empty).
    """
    buckets: list[CollectionBucket] = []

    overdue = sorted((i for i in items if i.is_overdue), key=lambda i: -i.days_overdue)
    if overdue:
        buckets.append(CollectionBucket("באיחור", None, today - timedelta(days=1), overdue))

    pending = [i for i in items if not i.is_overdue]
    end_of_week = today + timedelta(days=6 - _sunday_based_weekday(today))
    buckets.append(
        CollectionBucket(
            "השבוע",
            today,
            end_of_week,
            [i for i in pending if today + timedelta(days=i.days_until_due) <= end_of_week],
        )
    )

    week_end = end_of_week
    for week in range(1, UPCOMING_WEEKS + 1):
        week_start = week_end + timedelta(days=1)
        week_end = week_start + timedelta(days=6)
        buckets.append(
            CollectionBucket(
                "שבוע הבא" if week == 1 else f"שבוע {week + 1}",
                week_start,
                week_end,
                [
                    i
                    for i in pending
                    if week_start <= today + timedelta(days=i.days_until_due) <= week_end
                ],
            )
        )

    later = [i for i in pending if today + timedelta(days=i.days_until_due) > week_end]
    if later:
        buckets.append(CollectionBucket("מאוחר יותר", week_end + timedelta(days=1), None, later))

    return buckets


def reminder_message(item: CollectionItem, channel: str, company_name: str) -> str:
    """Payment reminder text for a WhatsApp message, an e-mail or a phone call."""
    if channel not in REMINDER_CHANNELS:
        raise ValueError(
            f"Unknown reminder channel {channel!r}. "
            f"Expected one of: {', '.join(REMINDER_CHANNELS)}."
        )

    customer = item.customer_name or "לקוח יקר"
    amount = format_currency(item.amount)
    invoice = item.entry.invoice_number or "ללא מספר"
    due = item.entry.due_date.strftime("%d/%m/%Y") if item.entry.due_date else ""
    late = f"באיחור של {item.days_overdue} ימים" if item.is_overdue else ""

    if channel == "whatsapp":
        lines = [
            f"שלום {customer},",
            f"תזכורת לתשלום חשבונית מס׳ {invoice} על סך {amount}.",
        ]
        if due:
            lines.append(f"מועד לתשלום: {due}")
        if late:
            lines.append(late)
        lines += ["תודה רבה,", company_name]
        return "\n".join(lines)

    if channel == "email":
        text = (
            f"שלום {customer},\n\n"
            f"ברצוננו להזכירך כי חשבונית מס׳ {invoice} על סך {amount} טרם שולמה.\n"
        )
        if due:
            text += f"תאריך לתשלום: {due}\n"
        if late:
            text += f"\n{late}\n"
        return text + f"\nנודה לטיפולך בהקדם.\n\nבברכה,\n{company_name}"

    text = f"להתקשר ל{customer} - {item.phone or 'אין טלפון'}\nחשבונית {invoice}, סכום {amount}\n"
    return text + late


def whatsapp_number(phone: str) -> str:
    """International form of an Israeli phone number (0501234567 -> 972501234567)."""
    digits = "".join(ch for ch in phone if ch.isdigit())
    return "972" + digits[1:] if digits.startswith("0") else digits


# ---------------------------------------------------------------------------
# Follow-up
# ---------------------------------------------------------------------------


def _check_collection_status(status: str) -> None:
    if status not in COLLECTION_STATUSES:
        raise ValueError(
            f"Unknown collection status {status!r}. "
            f"Expected one of: {', '.join(COLLECTION_STATUSES)}."
        )


def _fetch_receivable(conn: sqlite3.Connection, company_id: int, entry_id: int) -> LedgerEntry:
    entry = fetch_entry(conn, company_id, entry_id)
    if entry.kind != "income":
        raise ValueError(f"Entry #{entry_id} is not an income document.")
    return entry


def needs_reminder(items: list[CollectionItem]) -> list[CollectionItem]:
    """Overdue invoices nobody has followed up on yet."""
    return [i for i in items if i.is_overdue and i.entry.collection_status == "none"]


def record_reminder(
    cfg: DatabaseConfig,
    company_id: int,
    entry_id: int,
    channel: str,
    message: str,
    *,
    sent_to: str | None = None,
    today: date | None = None,
    created_by: int | None = None,
) -> LedgerEntry:
    """
    Store a sent reminder and move the invoice to "reminder_sent".

    The reminder count goes up by one and ``last_reminder_date`` becomes
    ``today``.
    """
    if channel not in REMINDER_CHANNELS:
        raise ValueError(
            f"Unknown reminder channel {channel!r}. "
            f"Expected one of: {', '.join(REMINDER_CHANNELS)}."
        )
    today = today or date.today()

    init_database(cfg)

    conn = connect(cfg)
    try:
        _fetch_receivable(conn, company_id, entry_id)
        conn.execute(
            """
            INSERT INTO collection_reminders (
                company_id, entry_id, channel, sent_to, message, sent_at, created_by
            )
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            (company_id, entry_id, channel, sent_to, message, now_utc_iso(), created_by),
        )
        conn.execute(
            """
            UPDATE ledger_entries
               SET collection_status = 'reminder_sent',
                   reminder_count = reminder_count + 1,
                   last_reminder_date = ?,
                   updated_at = ?
             WHERE id = ? AND company_id = ?;
            """,
            (to_iso_date(today), now_utc_iso(), entry_id, company_id),
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Recorded %s reminder for income #%s", channel, entry_id)
    return get_entry(cfg, company_id, entry_id)


def reminder_history(cfg: DatabaseConfig, company_id: int, entry_id: int) -> pd.DataFrame:
    """Reminders sent for an invoice, most recent first."""
    columns = ["id", "channel", "sent_to", "message", "sent_at"]
    init_database(cfg)

    conn = connect(cfg)
    try:
        _fetch_receivable(conn, company_id, entry_id)
        rows = conn.execute(
            """
            SELECT id, channel, sent_to, message, sent_at
              FROM collection_reminders
             WHERE company_id = ? AND entry_id = ?
             ORDER BY sent_at DESC, id DESC;
            """,
            (company_id, entry_id),
        ).fetchall()
    finally:
        conn.close()

    return pd.DataFrame([tuple(r) for r in rows], columns=columns)


def update_follow_up(
    cfg: DatabaseConfig,
    company_id: int,
    entry_id: int,
    status: str,
    *,
    notes: str | None = None,
    promised_date: date | None = None,
) -> LedgerEntry:
    """
    Set the follow-up state of an invoice with its notes and promised date.

    Notes and promised date are replaced (None clears them). The "promised"
    state needs a promised date.
    """
    _check_collection_status(status)
    if status == "promised" and promised_date is None:
        raise ValueError("A promised payment date is required.")

    init_database(cfg)

    conn = connect(cfg)
    try:
        _fetch_receivable(conn, company_id, entry_id)
        conn.execute(
            """
            UPDATE ledger_entries
               SET collection_status = ?,
                   collection_notes = ?,
                   promised_date = ?,
                   updated_at = ?
             WHERE id = ? AND company_id = ?;
            """,
            (
                status,
                (notes or "").strip() or None,
                to_iso_date(promised_date) if promised_date else None,
                now_utc_iso(),
                entry_id,
                company_id,
            ),
        )
        conn.commit()
    finally:
        conn.close()

    return get_entry(cfg, company_id, entry_id)


def mark_collected(
    cfg: DatabaseConfig,
    company_id: int,
    entry_id: int,
    payment_date: date | None = None,
    payment_method: str | None = None,
) -> LedgerEntry:
    """Mark an unpaid invoice as paid, which ends its follow-up."""
    init_database(cfg)

    conn = connect(cfg)
    try:
        entry = _fetch_receivable(conn, company_id, entry_id)
    finally:
        conn.close()
    if entry.payment_status == "paid":
        raise ValueError(f"Income #{entry_id} is already paid.")

    return mark_paid(cfg, company_id, entry_id, payment_date, payment_method)
