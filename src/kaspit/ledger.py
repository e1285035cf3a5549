# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Income and expense records (the ledger).

Income and expenses share one table, ``ledger_entries``, distinguished by the
``kind`` column. Both carry the same VAT split:

    amount             VAT-inclusive total
    amount_before_vat  net amount
    vat_amount         VAT part of the total

Responsibilities
----------------
1) VAT helpers
   - ``compute_vat_split`` derives the split from either the net amount or
     the total, rounded to agorot.
   - ``is_vat_document`` tells which income document types carry VAT
     (tax invoice, tax invoice/receipt, credit note). A plain invoice
     ("חשבונית עסקה") or a receipt does not.

2) CRUD
   - ``add_entry`` / ``get_entry`` / ``update_entry`` / ``delete_entry`` /
     ``mark_paid``. Links to categories, contacts, recurring templates and
     bank transactions are checked with ``companies.ensure_owned``.
   - An entry reconciled with a bank transaction cannot be deleted until the
     match is undone.

3) Listing & import
   - ``search_entries`` returns a DataFrame for listings and aggregates.
   - ``load_entries`` returns dataclasses for the reconciliation engine.
   - ``import_entries`` stores rows from a mapped spreadsheet, translating
     Hebrew status / document-type labels and skipping rows identical to
     existing ones.

4) Reports
   - ``monthly_totals``, ``category_breakdown`` and ``trend``.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

import pandas as pd

from .catalog import find_category_by_name, list_categories
from .companies import ensure_owned
from .db import (
    DatabaseConfig,
    ImportStats,
    complete_import_batch,
    connect,
    create_import_batch,
    from_cents,
    init_database,
    now_utc_iso,
    parse_iso_date,
    parse_iso_datetime,
    to_cents,
    to_iso_date,
)
from .errors import RecordNotFoundError
from .formatting import calculate_change, calculate_percentage, month_name
from .io import parse_amount, parse_boolean, parse_date, parse_text

logger = logging.getLogger(__name__)

KINDS = ("income", "expense")
PAYMENT_STATUSES = ("pending", "partial", "paid")
PAYMENT_METHODS = ("bank_transfer", "credit_card", "cash", "check", "bit")

INCOME_DOCUMENT_TYPES = (
    "tax_invoice",
    "tax_invoice_receipt",
    "credit_note",
    "invoice",
    "receipt",
)
VAT_DOCUMENT_TYPES = frozenset({"tax_invoice", "tax_invoice_receipt", "credit_note"})

# A business invoice ("חשבונית עסקה") stays open until a tax document closes it.
DOCUMENT_STATUSES = ("open", "closed", "cancelled")
CLOSING_DOCUMENT_TYPES = frozenset({"tax_invoice", "tax_invoice_receipt"})

DOCUMENT_TYPE_ALIASES = {
    "חשבונית מס": "tax_invoice",
    "חשבונית מס קבלה": "tax_invoice_receipt",
    "הודעת זיכוי": "credit_note",
    "חשבונית עסקה": "invoice",
    "קבלה": "receipt",
    **{t: t for t in INCOME_DOCUMENT_TYPES},
}

STATUS_ALIASES = {
    "שולם": "paid",
    "ממתין": "pending",
    "שולם חלקית": "partial",
    **{s: s for s in PAYMENT_STATUSES},
}

UNCATEGORIZED_LABEL = "ללא קטגוריה"
UNCATEGORIZED_COLOR = "#6b7280"


@dataclass(frozen=True)
class LedgerEntry:
    """
    An income or expense record, with its category and counterparty names.

    ``counterparty`` is the customer name for income and the supplier name
    for expenses (None when no contact is linked).
    """

    id: int
    company_id: int
    kind: str
    category_id: int | None
    contact_id: int | None
    amount: float
    amount_before_vat: float | None
    vat_amount: float | None
    vat_exempt: bool
    vat_deductible: bool
    date: date
    due_date: date | None
    payment_date: date | None
    description: str | None
    invoice_number: str | None
    document_type: str | None
    payment_status: str
    payment_method: str | None
    is_recurring: bool
    recurring_day: int | None
    recurring_expense_id: int | None
    bank_transaction_id: int | None
    import_batch_id: int | None
    created_by: int | None
    created_at: datetime | None
    updated_at: datetime | None
    document_status: str | None = None
    linked_document_id: int | None = None
    collection_status: str = "none"
    reminder_count: int = 0
    last_reminder_date: date | None = None
    promised_date: date | None = None
    collection_notes: str | None = None
    category_name: str | None = None
    counterparty: str | None = None

    @property
    def counterparty_label(self) -> str:
        """Counterparty name, falling back to the description."""
        return self.counterparty or self.description or ""


@dataclass(frozen=True)
class NewEntry:
    """
    Data required to create an income or expense record.

    ``amount`` is the VAT-inclusive total. Use ``compute_vat_split`` to
    derive it together with ``amount_before_vat`` and ``vat_amount``.

    For income, ``document_status`` defaults to "open" for a business
    invoice and "closed" for any other document. A tax document given a
    ``linked_document_id`` closes that open invoice when it is stored.
    """

    kind: str
    amount: float
    date: date
    amount_before_vat: float | None = None
    vat_amount: float | None = None
    vat_exempt: bool = False
    vat_deductible: bool = True
    category_id: int | None = None
    contact_id: int | None = None
    due_date: date | None = None
    payment_date: date | None = None
    description: str | None = None
    invoice_number: str | None = None
    document_type: str | None = None
    payment_status: str = "pending"
    payment_method: str | None = None
    is_recurring: bool = False
    recurring_day: int | None = None
    recurring_expense_id: int | None = None
    bank_transaction_id: int | None = None
    document_status: str | None = None
    linked_document_id: int | None = None


@dataclass(frozen=True)
class EntryUpdate:
    """
    Fields that can be updated on an existing entry.

    Each attribute is optional. Only non-None values are applied during
    the update operation. The kind of an entry cannot be changed.
    """

    amount: float | None = None
    amount_before_vat: float | None = None
    vat_amount: float | None = None
    vat_exempt: bool | None = None
    vat_deductible: bool | None = None
    category_id: int | None = None
    contact_id: int | None = None
    date: date | None = None
    due_date: date | None = None
    payment_date: date | None = None
    description: str | None = None
    invoice_number: str | None = None
    document_type: str | None = None
    payment_status: str | None = None
    payment_method: str | None = None
    is_recurring: bool | None = None
    recurring_day: int | None = None
    document_status: str | None = None


@dataclass(frozen=True)
class EntriesFilter:
    """
    Filters used to search ledger entries.

    The filters can be combined. Date bounds are inclusive.

    Attributes
    ----------
    kind:
        "income", "expense", or None for both.
    start, end:
        Inclusive date bounds.
    category_id, contact_id:
        Restrict to one category / one customer or supplier.
    payment_status:
        "pending", "partial" or "paid".
    text:
        Case-insensitive substring searched in the description, the invoice
        number and the counterparty name.
    min_amount, max_amount:
        Bounds on the VAT-inclusive total.
    unreconciled_only:
        If True, only entries not linked to a bank transaction.
    recurring_only:
        If True, only entries flagged as recurring.
    document_status:
        "open", "closed" or "cancelled".
    """

    kind: str | None = None
    start: date | None = None
    end: date | None = None
    category_id: int | None = None
    contact_id: int | None = None
    payment_status: str | None = None
    text: str | None = None
    min_amount: float | None = None
    max_amount: float | None = None
    unreconciled_only: bool = False
    recurring_only: bool = False
    document_status: str | None = None


# ---------------------------------------------------------------------------
# VAT helpers
# ---------------------------------------------------------------------------


def round_agorot(value: float) -> float:
    """Round a monetary amount to 2 decimals, halves going up."""
    return math.floor(value * 100 + 0.5) / 100


def is_vat_document(document_type: str | None) -> bool:
    return document_type in VAT_DOCUMENT_TYPES


def compute_vat_split(
    amount: float,
    rate: float,
    mode: str = "before_vat",
    exempt: bool = False,
) -> tuple[float, float, float]:
    """
    Split an amount into (before VAT, VAT, total).

    Parameters
    ----------
    amount:
        The amount typed by the user.
    rate:
        VAT rate as a fraction (0.18).
    mode:
        "before_vat" when ``amount`` is the net amount, "total" when it
        already includes VAT.
    exempt:
        If True, no VAT applies and the three values collapse to
        ``(amount, 0, amount)``.

    Raises
    ------
    ValueError
        If ``mode`` is unknown.
    """
    if mode not in ("before_vat", "total"):
        raise ValueError(f"Unknown VAT input mode {mode!r}.")

    if exempt:
        amount = round_agorot(amount)
        return amount, 0.0, amount

    if mode == "before_vat":
        before = round_agorot(amount)
        vat = round_agorot(amount * rate)
        total = round_agorot(before + vat)
    else:
        total = round_agorot(amount)
        before = round_agorot(amount / (1 + rate))
        vat = round_agorot(total - before)
    return before, vat, total


def has_vat(kind: str, document_type: str | None, vat_exempt: bool) -> bool:
    """
    Whether an entry carries VAT.

    Income carries VAT only on VAT documents; expenses carry it unless they
    are exempt.
    """
    if vat_exempt:
        return False
    if kind == "income":
        return is_vat_document(document_type)
    return True


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

_SELECT_ENTRY = """
    SELECT e.*,
           c.name AS category_name,
           k.name AS counterparty
      FROM ledger_entries AS e
      LEFT JOIN categories AS c ON c.id = e.category_id
      LEFT JOIN contacts   AS k ON k.id = e.contact_id
"""


def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        id=int(row["id"]),
        company_id=int(row["company_id"]),
        kind=row["kind"],
        category_id=row["category_id"],
        contact_id=row["contact_id"],
        amount=from_cents(row["amount_cents"]),
        amount_before_vat=from_cents(row["amount_before_vat_cents"]),
        vat_amount=from_cents(row["vat_amount_cents"]),
        vat_exempt=bool(row["vat_exempt"]),
        vat_deductible=bool(row["vat_deductible"]),
        date=parse_iso_date(row["date"]),
        due_date=parse_iso_date(row["due_date"]),
        payment_date=parse_iso_date(row["payment_date"]),
        description=row["description"],
        invoice_number=row["invoice_number"],
        document_type=row["document_type"],
        payment_status=row["payment_status"],
        payment_method=row["payment_method"],
        is_recurring=bool(row["is_recurring"]),
        recurring_day=row["recurring_day"],
        recurring_expense_id=row["recurring_expense_id"],
        bank_transaction_id=row["bank_transaction_id"],
        import_batch_id=row["import_batch_id"],
        created_by=row["created_by"],
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
        document_status=row["document_status"],
        linked_document_id=row["linked_document_id"],
        collection_status=row["collection_status"],
        reminder_count=int(row["reminder_count"]),
        last_reminder_date=parse_iso_date(row["last_reminder_date"]),
        promised_date=parse_iso_date(row["promised_date"]),
        collection_notes=row["collection_notes"],
        category_name=row["category_name"],
        counterparty=row["counterparty"],
    )


def _check_kind(kind: str) -> None:
    if kind not in KINDS:
        raise ValueError(f"Unknown entry kind {kind!r}. Expected income or expense.")


def _check_choices(
    payment_status: str | None,
    payment_method: str | None,
    kind: str | None = None,
    document_type: str | None = None,
    document_status: str | None = None,
) -> None:
    if payment_status is not None and payment_status not in PAYMENT_STATUSES:
        raise ValueError(
            f"Unknown payment status {payment_status!r}. "
            f"Expected one of: {', '.join(PAYMENT_STATUSES)}."
        )
    if payment_method and payment_method not in PAYMENT_METHODS:
        raise ValueError(
            f"Unknown payment method {payment_method!r}. "
            f"Expected one of: {', '.join(PAYMENT_METHODS)}."
        )
    if (
        kind == "income"
        and document_type is not None
        and document_type not in INCOME_DOCUMENT_TYPES
    ):
        raise ValueError(
            f"Unknown income document type {document_type!r}. "
            f"Expected one of: {', '.join(INCOME_DOCUMENT_TYPES)}."
        )
    if document_status is not None and document_status not in DOCUMENT_STATUSES:
        raise ValueError(
            f"Unknown document status {document_status!r}. "
            f"Expected one of: {', '.join(DOCUMENT_STATUSES)}."
        )


def check_links(
    conn: sqlite3.Connection,
    company_id: int,
    kind: str,
    *,
    category_id: int | None = None,
    contact_id: int | None = None,
    recurring_expense_id: int | None = None,
    bank_transaction_id: int | None = None,
) -> None:
    """Check ownership and consistency of the rows an entry points to."""
    if category_id is not None:
        ensure_owned(conn, "categories", category_id, company_id)
        (category_type,) = conn.execute(
            "SELECT type FROM categories WHERE id = ?;", (category_id,)
        ).fetchone()
        if category_type != kind:
            raise ValueError(
                f"Category #{category_id} is an {category_type} category and "
                f"cannot be used for {kind}."
            )
    if contact_id is not None:
        ensure_owned(conn, "contacts", contact_id, company_id)
        (contact_kind,) = conn.execute(
            "SELECT kind FROM contacts WHERE id = ?;", (contact_id,)
        ).fetchone()
        expected = "customer" if kind == "income" else "supplier"
        if contact_kind != expected:
            raise ValueError(
                f"Contact #{contact_id} is a {contact_kind}; {kind} entries "
                f"need a {expected}."
            )
    if recurring_expense_id is not None:
        ensure_owned(conn, "recurring_expenses", recurring_expense_id, company_id)
    if bank_transaction_id is not None:
        ensure_owned(conn, "bank_transactions", bank_transaction_id, company_id)


def insert_entry(
    conn: sqlite3.Connection,
    company_id: int,
    new_entry: NewEntry,
    *,
    created_by: int | None = None,
    import_batch_id: int | None = None,
) -> int:
    """
    Insert a ledger entry on an open connection and return its id.

    The caller owns the transaction: nothing is committed here. This lets the
    reconciliation and recurring services create an entry and update the
    row it comes from atomically.

    Raises
    ------
    ValueError
        On invalid kind, status, method, document type or inconsistent links.
    RecordNotFoundError, AuthorizationError
        If a linked row is missing or owned by another company.
    """
    _check_kind(new_entry.kind)
    _check_choices(
        new_entry.payment_status,
        new_entry.payment_method,
        new_entry.kind,
        new_entry.document_type,
        new_entry.document_status,
    )
    if new_entry.amount < 0 and new_entry.document_type != "credit_note":
        raise ValueError("Amount must be zero or positive.")
    check_links(
        conn,
        company_id,
        new_entry.kind,
        category_id=new_entry.category_id,
        contact_id=new_entry.contact_id,
        recurring_expense_id=new_entry.recurring_expense_id,
        bank_transaction_id=new_entry.bank_transaction_id,
    )
    if new_entry.linked_document_id is not None:
        _check_closing_document(new_entry.kind, new_entry.document_type)
        _fetch_open_invoice(conn, company_id, new_entry.linked_document_id)

    document_status = new_entry.document_status
    if document_status is None and new_entry.kind == "income":
        document_status = "open" if new_entry.document_type == "invoice" else "closed"

    cur = conn.execute(
        """
        INSERT INTO ledger_entries (
            company_id, kind, category_id, contact_id,
            amount_cents, amount_before_vat_cents, vat_amount_cents,
            vat_exempt, vat_deductible,
            date, due_date, payment_date,
            description, invoice_number, document_type,
            payment_status, payment_method,
            is_recurring, recurring_day, recurring_expense_id,
            bank_transaction_id, import_batch_id, created_by, created_at,
            document_status, linked_document_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (
            company_id,
            new_entry.kind,
            new_entry.category_id,
            new_entry.contact_id,
            to_cents(new_entry.amount),
            to_cents(new_entry.amount_before_vat),
            to_cents(new_entry.vat_amount),
            int(new_entry.vat_exempt),
            int(new_entry.vat_deductible),
            to_iso_date(new_entry.date),
            to_iso_date(new_entry.due_date) if new_entry.due_date else None,
            to_iso_date(new_entry.payment_date) if new_entry.payment_date else None,
            new_entry.description,
            new_entry.invoice_number,
            new_entry.document_type,
            new_entry.payment_status,
            new_entry.payment_method or None,
            int(new_entry.is_recurring),
            new_entry.recurring_day,
            new_entry.recurring_expense_id,
            new_entry.bank_transaction_id,
            import_batch_id,
            created_by,
            now_utc_iso(),
            document_status,
            new_entry.linked_document_id,
        ),
    )
    if new_entry.linked_document_id is not None:
        _set_document_status(conn, company_id, new_entry.linked_document_id, "closed")
    return int(cur.lastrowid)


def _check_closing_document(kind: str, document_type: str | None) -> None:
    if kind != "income" or document_type not in CLOSING_DOCUMENT_TYPES:
        raise ValueError(
            "Only a tax invoice or a tax invoice/receipt can close a business invoice."
        )


def _fetch_open_invoice(conn: sqlite3.Connection, company_id: int, invoice_id: int) -> LedgerEntry:
    invoice = fetch_entry(conn, company_id, invoice_id)
    if invoice.kind != "income" or invoice.document_type != "invoice":
        raise ValueError(f"Entry #{invoice_id} is not a business invoice.")
    if invoice.document_status != "open":
        raise ValueError(f"Invoice #{invoice_id} is {invoice.document_status}, not open.")
    return invoice


def _set_document_status(
    conn: sqlite3.Connection, company_id: int, entry_id: int, status: str
) -> None:
    conn.execute(
        """
        UPDATE ledger_entries
           SET document_status = ?, updated_at = ?
         WHERE id = ? AND company_id = ?;
        """,
        (status, now_utc_iso(), entry_id, company_id),
    )


def fetch_entry(conn: sqlite3.Connection, company_id: int, entry_id: int) -> LedgerEntry:
    """Load an entry on an open connection, checking it belongs to the company."""
    ensure_owned(conn, "ledger_entries", entry_id, company_id)
    row = conn.execute(
        _SELECT_ENTRY + " WHERE e.id = ? AND e.company_id = ?;",
        (entry_id, company_id),
    ).fetchone()
    if row is None:
        raise RecordNotFoundError("ledger_entries", entry_id)
    return _row_to_entry(row)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


def get_entry(cfg: DatabaseConfig, company_id: int, entry_id: int) -> LedgerEntry:
    """
    Load a single entry by id.

    Raises
    ------
    RecordNotFoundError
        If the entry does not exist.
    AuthorizationError
        If it belongs to another company.
    """
    init_database(cfg)

    conn = connect(cfg)
    try:
        return fetch_entry(conn, company_id, entry_id)
    finally:
        conn.close()


def add_entry(
    cfg: DatabaseConfig,
    company_id: int,
    new_entry: NewEntry,
    created_by: int | None = None,
) -> LedgerEntry:
    """Create an income or expense record and return it reloaded."""
    init_database(cfg)

    conn = connect(cfg)
    try:
        entry_id = insert_entry(conn, company_id, new_entry, created_by=created_by)
        conn.commit()
    finally:
        conn.close()

    logger.info(
        "Added %s #%s: %.2f on %s", new_entry.kind, entry_id, new_entry.amount, new_entry.date
    )
    return get_entry(cfg, company_id, entry_id)


def update_entry(
    cfg: DatabaseConfig,
    company_id: int,
    entry_id: int,
    update: EntryUpdate,
) -> LedgerEntry:
    """
    Apply a partial update to an existing entry.

    Raises
    ------
    ValueError
        If no fields are provided for update or a value is invalid.
    """
    fields: list[str] = []
    params: list[object] = []

    for attr, column in (
        ("amount", "amount_cents"),
        ("amount_before_vat", "amount_before_vat_cents"),
        ("vat_amount", "vat_amount_cents"),
    ):
        value = getattr(update, attr)
        if value is not None:
            fields.append(f"{column} = ?")
            params.append(to_cents(value))

    for attr in ("vat_exempt", "vat_deductible", "is_recurring"):
        value = getattr(update, attr)
        if value is not None:
            fields.append(f"{attr} = ?")
            params.append(int(value))

    for attr in ("date", "due_date", "payment_date"):
        value = getattr(update, attr)
        if value is not None:
            fields.append(f"{attr} = ?")
            params.append(to_iso_date(value))

    for attr in (
        "category_id",
        "contact_id",
        "description",
        "invoice_number",
        "document_type",
        "payment_status",
        "payment_method",
        "recurring_day",
        "document_status",
    ):
        value = getattr(update, attr)
        if value is not None:
            fields.append(f"{attr} = ?")
            params.append(value)

    if not fields:
        raise ValueError("No fields to update in EntryUpdate.")

    fields.append("updated_at = ?")
    params.append(now_utc_iso())

    init_database(cfg)

    conn = connect(cfg)
    try:
        current = fetch_entry(conn, company_id, entry_id)
        _check_choices(
            update.payment_status,
            update.payment_method,
            current.kind,
            update.document_type,
            update.document_status,
        )
        check_links(
            conn,
            company_id,
            current.kind,
            category_id=update.category_id,
            contact_id=update.contact_id,
        )
        conn.execute(
            f"""
            UPDATE ledger_entries
               SET {", ".join(fields)}
             WHERE id = ? AND company_id = ?;
            """,
            (*params, entry_id, company_id),
        )
        conn.commit()
    finally:
        conn.close()

    return get_entry(cfg, company_id, entry_id)


def delete_entry(cfg: DatabaseConfig, company_id: int, entry_id: int) -> None:
    """
    Delete an entry.

    Its reminder history goes with it. Deleting a tax document that closed
    a business invoice reopens that invoice; documents that closed the
    deleted invoice lose their link.

    Raises
    ------
    ValueError
        If the entry is reconciled with a bank transaction.
    """
    init_database(cfg)

    conn = connect(cfg)
    try:
        entry = fetch_entry(conn, company_id, entry_id)
        linked = conn.execute(
            """
            SELECT 1 FROM bank_transactions
             WHERE company_id = ? AND matched_type = ? AND matched_id = ?;
            """,
            (company_id, entry.kind, entry_id),
        ).fetchone()
        if entry.bank_transaction_id is not None or linked is not None:
            raise ValueError(
                f"{entry.kind.capitalize()} #{entry_id} is reconciled with a bank "
                "transaction. Undo the match before deleting it."
            )
        if entry.linked_document_id is not None:
            _set_document_status(conn, company_id, entry.linked_document_id, "open")
        conn.execute(
            "UPDATE ledger_entries SET linked_document_id = NULL "
            "WHERE company_id = ? AND linked_document_id = ?;",
            (company_id, entry_id),
        )
        conn.execute(
            "DELETE FROM collection_reminders WHERE company_id = ? AND entry_id = ?;",
            (company_id, entry_id),
        )
        conn.execute(
            "DELETE FROM ledger_entries WHERE id = ? AND company_id = ?;",
            (entry_id, company_id),
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Deleted %s #%s", entry.kind, entry_id)


def mark_paid(
    cfg: DatabaseConfig,
    company_id: int,
    entry_id: int,
    payment_date: Optional[date] = None,
    payment_method: Optional[str] = None,
) -> LedgerEntry:
    """
    Mark an entry as paid on ``payment_date`` (today by default).

    The collection follow-up status goes back to "none".
    """
    _check_choices(None, payment_method)
    paid_on = payment_date or date.today()

    init_database(cfg)

    conn = connect(cfg)
    try:
        ensure_owned(conn, "ledger_entries", entry_id, company_id)
        conn.execute(
            """
            UPDATE ledger_entries
               SET payment_status = 'paid',
                   payment_date = ?,
                   payment_method = COALESCE(?, payment_method),
                   collection_status = 'none',
                   updated_at = ?
             WHERE id = ? AND company_id = ?;
            """,
            (
                paid_on.isoformat(),
                payment_method or None,
                now_utc_iso(),
                entry_id,
                company_id,
            ),
        )
        conn.commit()
    finally:
        conn.close()

    return get_entry(cfg, company_id, entry_id)


def bulk_update_payment_method(
    cfg: DatabaseConfig,
    company_id: int,
    entry_ids: list[int],
    payment_method: str,
) -> int:
    """
    Set the payment method of several entries at once.

    Every id is checked before anything is written, so one foreign or
    missing entry leaves all of them untouched. Returns the number of
    entries updated.
    """
    if not payment_method:
        raise ValueError("A payment method is required.")
    _check_choices(None, payment_method)
    ids = list(dict.fromkeys(entry_ids))
    if not ids:
        raise ValueError("No entries selected.")

    init_database(cfg)

    conn = connect(cfg)
    try:
        for entry_id in ids:
            ensure_owned(conn, "ledger_entries", entry_id, company_id)
        now = now_utc_iso()
        conn.executemany(
            """
            UPDATE ledger_entries
               SET payment_method = ?, updated_at = ?
             WHERE id = ? AND company_id = ?;
            """,
            [(payment_method, now, entry_id, company_id) for entry_id in ids],
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Set payment method %s on %d entries", payment_method, len(ids))
    return len(ids)


# ---------------------------------------------------------------------------
# Document lifecycle
# ---------------------------------------------------------------------------


def link_document(
    cfg: DatabaseConfig,
    company_id: int,
    invoice_id: int,
    document_id: int,
) -> LedgerEntry:
    """
    Link a tax document to the business invoice it settles.

    The document (tax invoice or tax invoice/receipt) records the invoice in
    ``linked_document_id`` and the invoice is closed. Returns the closed
    invoice.

    Raises
    ------
    ValueError
        If the invoice is not an open business invoice, the document cannot
        close one, or the document is already linked.
    """
    init_database(cfg)

    conn = connect(cfg)
    try:
        _fetch_open_invoice(conn, company_id, invoice_id)
        document = fetch_entry(conn, company_id, document_id)
        _check_closing_document(document.kind, document.document_type)
        if document.linked_document_id is not None:
            raise ValueError(
                f"Document #{document_id} already closes invoice "
                f"#{document.linked_document_id}."
            )
        conn.execute(
            """
            UPDATE ledger_entries
               SET linked_document_id = ?, updated_at = ?
             WHERE id = ? AND company_id = ?;
            """,
            (invoice_id, now_utc_iso(), document_id, company_id),
        )
        _set_document_status(conn, company_id, invoice_id, "closed")
        conn.commit()
    finally:
        conn.close()

    logger.info("Invoice #%s closed by document #%s", invoice_id, document_id)
    return get_entry(cfg, company_id, invoice_id)


def cancel_document(cfg: DatabaseConfig, company_id: int, entry_id: int) -> LedgerEntry:
    """
    Mark an income document as cancelled. Cancelled invoices are not collected.

    Cancelling a tax document that closed a business invoice reopens that
    invoice and drops the link.
    """
    init_database(cfg)

    conn = connect(cfg)
    try:
        entry = fetch_entry(conn, company_id, entry_id)
        if entry.kind != "income":
            raise ValueError(f"Entry #{entry_id} is not an income document.")
        if entry.document_status == "cancelled":
            raise ValueError(f"Document #{entry_id} is already cancelled.")
        if entry.linked_document_id is not None:
            _set_document_status(conn, company_id, entry.linked_document_id, "open")
            conn.execute(
                "UPDATE ledger_entries SET linked_document_id = NULL "
                "WHERE id = ? AND company_id = ?;",
                (entry_id, company_id),
            )
        _set_document_status(conn, company_id, entry_id, "cancelled")
        conn.commit()
    finally:
        conn.close()

    logger.info("Cancelled income document #%s", entry_id)
    return get_entry(cfg, company_id, entry_id)


def open_business_invoices(cfg: DatabaseConfig, company_id: int) -> list[LedgerEntry]:
    """Business invoices still waiting for a tax document."""
    return [
        e
        for e in load_entries(cfg, company_id, EntriesFilter(kind="income", document_status="open"))
        if e.document_type == "invoice"
    ]


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

ENTRY_COLUMNS = [
    "id",
    "kind",
    "date",
    "amount",
    "amount_before_vat",
    "vat_amount",
    "vat_exempt",
    "vat_deductible",
    "category_id",
    "category",
    "contact_id",
    "counterparty",
    "description",
    "invoice_number",
    "document_type",
    "document_status",
    "payment_status",
    "payment_method",
    "due_date",
    "payment_date",
    "is_recurring",
    "bank_transaction_id",
]


def _build_where(company_id: int, filters: EntriesFilter) -> tuple[str, list[object]]:
    where: list[str] = ["e.company_id = ?"]
    params: list[object] = [company_id]

    if filters.kind is not None:
        _check_kind(filters.kind)
        where.append("e.kind = ?")
        params.append(filters.kind)
    if filters.start is not None:
        where.append("e.date >= ?")
        params.append(filters.start.isoformat())
    if filters.end is not None:
        where.append("e.date <= ?")
        params.append(filters.end.isoformat())
    if filters.category_id is not None:
        where.append("e.category_id = ?")
        params.append(filters.category_id)
    if filters.contact_id is not None:
        where.append("e.contact_id = ?")
        params.append(filters.contact_id)
    if filters.payment_status is not None:
        where.append("e.payment_status = ?")
        params.append(filters.payment_status)
    if filters.text:
        where.append(
            "(LOWER(COALESCE(e.description, '')) LIKE ? "
            "OR LOWER(COALESCE(e.invoice_number, '')) LIKE ? "
            "OR LOWER(COALESCE(k.name, '')) LIKE ?)"
        )
        params.extend([f"%{filters.text.lower()}%"] * 3)
    if filters.min_amount is not None:
        where.append("e.amount_cents >= ?")
        params.append(to_cents(filters.min_amount))
    if filters.max_amount is not None:
        where.append("e.amount_cents <= ?")
        params.append(to_cents(filters.max_amount))
    if filters.unreconciled_only:
        where.append("e.bank_transaction_id IS NULL")
    if filters.recurring_only:
        where.append("e.is_recurring = 1")
    if filters.document_status is not None:
        where.append("e.document_status = ?")
        params.append(filters.document_status)

    return " AND ".join(where), params


def load_entries(
    cfg: DatabaseConfig,
    company_id: int,
    filters: EntriesFilter = EntriesFilter(),
) -> list[LedgerEntry]:
    """Load the entries matching ``filters`` as dataclasses, by date then id."""
    init_database(cfg)

    where, params = _build_where(company_id, filters)
    conn = connect(cfg)
    try:
        rows = conn.execute(
            _SELECT_ENTRY + f" WHERE {where} ORDER BY e.date, e.id;",
            params,
        ).fetchall()
    finally:
        conn.close()

    return [_row_to_entry(r) for r in rows]


def count_entries(
    cfg: DatabaseConfig,
    company_id: int,
    filters: EntriesFilter = EntriesFilter(),
) -> int:
    init_database(cfg)

    where, params = _build_where(company_id, filters)
    conn = connect(cfg)
    try:
        (count,) = conn.execute(
            f"SELECT COUNT(*) FROM ({_SELECT_ENTRY} WHERE {where});", params
        ).fetchone()
    finally:
        conn.close()

    return int(count)


def search_entries(
    cfg: DatabaseConfig,
    company_id: int,
    filters: EntriesFilter = EntriesFilter(),
    *,
    limit: int | None = None,
) -> pd.DataFrame:
    """
    Search entries and return them as a DataFrame, most recent first.

    Result columns: see ``ENTRY_COLUMNS``. ``date`` is datetime64; amounts are
    floats (NaN when the VAT split is unknown).
    """
    entries = load_entries(cfg, company_id, filters)
    if not entries:
        return pd.DataFrame(columns=ENTRY_COLUMNS)

    records = [
        (
            e.id,
            e.kind,
            e.date,
            e.amount,
            e.amount_before_vat,
            e.vat_amount,
            e.vat_exempt,
            e.vat_deductible,
            e.category_id,
            e.category_name,
            e.contact_id,
            e.counterparty,
            e.description,
            e.invoice_number,
            e.document_type,
            e.document_status,
            e.payment_status,
            e.payment_method,
            e.due_date,
            e.payment_date,
            e.is_recurring,
            e.bank_transaction_id,
        )
        for e in reversed(entries)
    ]
    df = pd.DataFrame(records, columns=ENTRY_COLUMNS)
    df["date"] = pd.to_datetime(df["date"])
    df["amount"] = df["amount"].astype(float)
    df["amount_before_vat"] = pd.to_numeric(df["amount_before_vat"])
    df["vat_amount"] = pd.to_numeric(df["vat_amount"])

    if limit is not None:
        df = df.head(limit)
    return df.reset_index(drop=True)


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def _entry_from_row(
    kind: str,
    row: pd.Series,
    vat_rate: float,
    categories,
    today: date,
) -> NewEntry:
    """Build a NewEntry from one mapped spreadsheet row."""
    vat_exempt = parse_boolean(row.get("vat_exempt"))
    status_raw = parse_text(row.get("payment_status"))
    payment_status = STATUS_ALIASES.get(status_raw, "pending") if status_raw else "pending"

    raw_date = row.get("date")
    entry_date = today if parse_text(raw_date) is None else parse_date(raw_date)

    category = find_category_by_name(categories, parse_text(row.get("category_name")))

    if kind == "income":
        doc_raw = parse_text(row.get("document_type"))
        document_type = DOCUMENT_TYPE_ALIASES.get(doc_raw, "tax_invoice") if doc_raw else "tax_invoice"
        exempt = not has_vat("income", document_type, vat_exempt)
        before, vat, total = compute_vat_split(
            parse_amount(row.get("amount_before_vat")), vat_rate, "before_vat", exempt
        )
    else:
        document_type = None
        before, vat, total = compute_vat_split(
            parse_amount(row.get("amount")), vat_rate, "total", vat_exempt
        )

    return NewEntry(
        kind=kind,
        amount=total,
        amount_before_vat=before,
        vat_amount=vat,
        vat_exempt=vat_exempt,
        date=entry_date,
        category_id=category.id if category else None,
        description=parse_text(row.get("description")),
        invoice_number=parse_text(row.get("invoice_number")),
        document_type=document_type,
        payment_status=payment_status,
    )


def import_entries(
    cfg: DatabaseConfig,
    company_id: int,
    kind: str,
    df: pd.DataFrame,
    source_label: str,
    vat_rate: float,
    created_by: int | None = None,
) -> ImportStats:
    """
    Import income or expense rows from a mapped spreadsheet.

    Parameters
    ----------
    df:
        DataFrame with canonical column names (see ``io.INCOME_FIELDS`` and
        ``io.EXPENSE_FIELDS``), as returned by ``io.apply_mapping``.
    source_label:
        Name of the imported file, stored on the import batch.
    vat_rate:
        VAT rate used to derive the VAT split.

    Notes
    -----
    - Income rows give the amount before VAT; VAT is added only for VAT
      document types (tax invoice by default).
    - Expense rows give the VAT-inclusive total.
    - A row equal on (date, total, description, invoice number) to an entry
      of the same kind that existed before the import is skipped and counted
      as a duplicate.

    Raises
    ------
    ValueError
        If a row has an unparseable date; nothing is stored in that case.
    """
    _check_kind(kind)
    init_database(cfg)

    categories = list_categories(cfg, company_id, kind)
    today = date.today()

    new_entries: list[NewEntry] = []
    for position, (_, row) in enumerate(df.iterrows(), start=1):
        try:
            new_entries.append(_entry_from_row(kind, row, vat_rate, categories, today))
        except ValueError as exc:
            raise ValueError(f"Row {position}: {exc}") from exc

    conn = connect(cfg)
    try:
        existing = {
            (r["date"], r["amount_cents"], r["description"], r["invoice_number"])
            for r in conn.execute(
                """
                SELECT date, amount_cents, description, invoice_number
                  FROM ledger_entries
                 WHERE company_id = ? AND kind = ?;
                """,
                (company_id, kind),
            ).fetchall()
        }

        batch_id = create_import_batch(conn, company_id, kind, source_label)
        inserted = 0
        duplicates = 0
        for new_entry in new_entries:
            key = (
                to_iso_date(new_entry.date),
                to_cents(new_entry.amount),
                new_entry.description,
                new_entry.invoice_number,
            )
            if key in existing:
                duplicates += 1
                continue
            insert_entry(
                conn,
                company_id,
                new_entry,
                created_by=created_by,
                import_batch_id=batch_id,
            )
            inserted += 1

        complete_import_batch(conn, batch_id, inserted, duplicates)
        conn.commit()
    finally:
        conn.close()

    if duplicates:
        logger.warning("Skipped %s duplicate %s rows from %s", duplicates, kind, source_label)
    logger.info("Imported %s %s rows from %s (batch #%s)", inserted, kind, source_label, batch_id)
    return ImportStats(
        batch_id=batch_id,
        rows_inserted=inserted,
        duplicates_detected=duplicates,
    )


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def monthly_totals(cfg: DatabaseConfig, company_id: int, year: int) -> pd.DataFrame:
    """
    Income, expenses and profit for each month of ``year``.

    Result columns: month, month_name, income, expenses, profit,
    income_count, expense_count (always 12 rows).
    """
    df = search_entries(
        cfg,
        company_id,
        EntriesFilter(start=date(year, 1, 1), end=date(year, 12, 31)),
    )

    out = pd.DataFrame({"month": range(1, 13)})
    df["month"] = pd.to_datetime(df["date"]).dt.month
    income = df.loc[df["kind"] == "income"].groupby("month")["amount"]
    expenses = df.loc[df["kind"] == "expense"].groupby("month")["amount"]

    out["income"] = out["month"].map(income.sum()).fillna(0.0).astype(float).round(2)
    out["expenses"] = out["month"].map(expenses.sum()).fillna(0.0).astype(float).round(2)
    out["income_count"] = out["month"].map(income.count()).fillna(0).astype(int)
    out["expense_count"] = out["month"].map(expenses.count()).fillna(0).astype(int)
    out["profit"] = (out["income"] - out["expenses"]).round(2)
    out.insert(1, "month_name", out["month"].map(month_name))
    return out[
        [
            "month",
            "month_name",
            "income",
            "expenses",
            "profit",
            "income_count",
            "expense_count",
        ]
    ]


def category_breakdown(
    cfg: DatabaseConfig,
    company_id: int,
    kind: str,
    start: date,
    end: date,
) -> pd.DataFrame:
    """
    Totals per category over [start, end], largest first.

    Entries without a category are grouped under "ללא קטגוריה".

    Result columns: category, color, amount, count, percentage (rounded
    share of the kind's total).
    """
    columns = ["category", "color", "amount", "count", "percentage"]
    df = search_entries(cfg, company_id, EntriesFilter(kind=kind, start=start, end=end))
    if df.empty:
        return pd.DataFrame(columns=columns)

    colors = {c.id: c.color for c in list_categories(cfg, company_id, kind, active_only=False)}
    df["category"] = df["category"].fillna(UNCATEGORIZED_LABEL)
    df["color"] = df["category_id"].map(colors).fillna(UNCATEGORIZED_COLOR)

    grouped = (
        df.groupby(["category", "color"], as_index=False)
        .agg(amount=("amount", "sum"), count=("id", "count"))
        .sort_values("amount", ascending=False)
        .reset_index(drop=True)
    )
    total = float(grouped["amount"].sum())
    grouped["amount"] = grouped["amount"].round(2)
    grouped["percentage"] = grouped["amount"].map(
        lambda v: calculate_percentage(float(v), total)
    )
    return grouped[columns]


def trend(cfg: DatabaseConfig, company_id: int, year: int) -> pd.DataFrame:
    """
    Month-over-month evolution for ``year``.

    Adds to ``monthly_totals`` the rounded percentage change of income,
    expenses and profit versus the previous month (December of the previous
    year for January).
    """
    df = monthly_totals(cfg, company_id, year)
    previous_december = monthly_totals(cfg, company_id, year - 1).iloc[-1]

    prev_income = [float(previous_december["income"]), *df["income"].iloc[:-1]]
    prev_expenses = [float(previous_december["expenses"]), *df["expenses"].iloc[:-1]]
    prev_profit = [float(previous_december["profit"]), *df["profit"].iloc[:-1]]

    df["income_change"] = [
        calculate_change(float(c), float(p)) for c, p in zip(df["income"], prev_income)
    ]
    df["expenses_change"] = [
        calculate_change(float(c), float(p))
        for c, p in zip(df["expenses"], prev_expenses)
    ]
    df["profit_change"] = [
        calculate_change(float(c), float(p)) for c, p in zip(df["profit"], prev_profit)
    ]
    return df
