# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Bank transactions: import, listing and tagging.

Bank statement lines are imported from the spreadsheets banks export (see
``io``). Amounts are signed: a positive amount is a credit (money in), a
negative amount a debit (money out).

Each line can then be:
- reconciled with an income or expense record (``reconciliation``),
- tagged with a special ``transaction_type`` (salary, VAT payment, owner
  withdrawal, ...) when it has no counterpart in the ledger,
- flagged as recurring, with a free-text label.

A transaction is "unmatched" while it is neither linked to a ledger entry nor
tagged with a special type.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

import pandas as pd

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
)
from .errors import RecordNotFoundError
from .io import parse_amount, parse_date, parse_optional_amount, parse_text
from .periods import month_period, parse_month

logger = logging.getLogger(__name__)

SPECIAL_TYPES = (
    "salary",
    "vat_payment",
    "tax_payment",
    "social_security",
    "loan_payment",
    "owner_withdrawal",
    "owner_deposit",
    "internal_transfer",
    "credit_card",
    "bank_fee",
    "other",
)
TRANSACTION_TYPES = ("regular", *SPECIAL_TYPES)


@dataclass(frozen=True)
class BankTransaction:
    """
    A bank statement line.

    Attributes
    ----------
    amount:
        Signed amount: > 0 credit, < 0 debit.
    balance:
        Account balance after the line, when the bank export provides it.
    matched_type, matched_id:
        Ledger entry ("income" or "expense", id) this line is reconciled
        with, if any.
    transaction_type:
        "regular" or one of ``SPECIAL_TYPES``.
    """

    id: int
    company_id: int
    bank_name: str | None
    account_number: str | None
    date: date
    amount: float
    description: str | None
    balance: float | None
    matched_type: str | None
    matched_id: int | None
    transaction_type: str
    is_recurring: bool
    recurring_label: str | None
    notes: str | None
    import_batch_id: int | None
    created_at: datetime | None

    @property
    def is_credit(self) -> bool:
        return self.amount > 0

    @property
    def is_matched(self) -> bool:
        return self.matched_id is not None


@dataclass(frozen=True)
class BankFilter:
    """
    Filters used to list bank transactions.

    Attributes
    ----------
    search:
        Case-insensitive substring of the description.
    month:
        "YYYY-MM" month to restrict to.
    transaction_type:
        Exact transaction type.
    matched:
        True for reconciled lines only, False for lines not reconciled, None
        for both.
    """

    search: str | None = None
    month: str | None = None
    transaction_type: str | None = None
    matched: bool | None = None


@dataclass(frozen=True)
class TransactionUpdate:
    """Tagging fields of a bank transaction. Only non-None values are applied."""

    transaction_type: str | None = None
    is_recurring: bool | None = None
    recurring_label: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class BankSummary:
    total_credits: float
    total_debits: float
    current_balance: float
    transaction_count: int
    unmatched_count: int
    special_count: int
    months: list[str] = field(default_factory=list)


def _row_to_transaction(row: sqlite3.Row) -> BankTransaction:
    return BankTransaction(
        id=int(row["id"]),
        company_id=int(row["company_id"]),
        bank_name=row["bank_name"],
        account_number=row["account_number"],
        date=parse_iso_date(row["date"]),
        amount=from_cents(row["amount_cents"]),
        description=row["description"],
        balance=from_cents(row["balance_cents"]),
        matched_type=row["matched_type"],
        matched_id=row["matched_id"],
        transaction_type=row["transaction_type"] or "regular",
        is_recurring=bool(row["is_recurring"]),
        recurring_label=row["recurring_label"],
        notes=row["notes"],
        import_batch_id=row["import_batch_id"],
        created_at=parse_iso_datetime(row["created_at"]),
    )


def _check_type(transaction_type: str) -> None:
    if transaction_type not in TRANSACTION_TYPES:
        raise ValueError(
            f"Unknown transaction type {transaction_type!r}. "
            f"Expected one of: {', '.join(TRANSACTION_TYPES)}."
        )


def fetch_transaction(
    conn: sqlite3.Connection, company_id: int, transaction_id: int
) -> BankTransaction:
    """Load a transaction on an open connection, checking it belongs to the company."""
    ensure_owned(conn, "bank_transactions", transaction_id, company_id)
    row = conn.execute(
        "SELECT * FROM bank_transactions WHERE id = ? AND company_id = ?;",
        (transaction_id, company_id),
    ).fetchone()
    if row is None:
        raise RecordNotFoundError("bank_transactions", transaction_id)
    return _row_to_transaction(row)


def get_transaction(
    cfg: DatabaseConfig, company_id: int, transaction_id: int
) -> BankTransaction:
    init_database(cfg)

    conn = connect(cfg)
    try:
        return fetch_transaction(conn, company_id, transaction_id)
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def import_bank_transactions(
    cfg: DatabaseConfig,
    company_id: int,
    df: pd.DataFrame,
    source_label: str,
) -> ImportStats:
    """
    Import bank statement lines from a mapped spreadsheet.

    Parameters
    ----------
    cfg:
        Database configuration.
    company_id:
        Company owning the account.
    df:
        DataFrame with canonical columns (see ``io.BANK_FIELDS``): date and
        amount are required; description, balance, bank_name and
        account_number are optional.
    source_label:
        Name of the imported file, stored on the import batch.

    Returns
    -------
    ImportStats
        Batch id, inserted rows and skipped duplicates.

    Notes
    -----
    A line equal on (date, amount, description, account number) to a line of
    the same company that existed before this import is a duplicate: it is
    skipped and counted. Identical lines within one file are all kept, since
    a statement can legitimately list the same purchase twice on one day.

    Raises
    ------
    ValueError
        If a row has an unparseable date; nothing is stored in that case.
    """
    init_database(cfg)

    today = date.today()
    records: list[tuple] = []
    for position, (_, row) in enumerate(df.iterrows(), start=1):
        raw_date = row.get("date")
        try:
            tx_date = today if parse_text(raw_date) is None else parse_date(raw_date)
        except ValueError as exc:
            raise ValueError(f"Row {position}: {exc}") from exc

        balance = parse_optional_amount(row.get("balance"))
        records.append(
            (
                tx_date.isoformat(),
                to_cents(parse_amount(row.get("amount"))),
                parse_text(row.get("description")),
                to_cents(balance) if balance is not None else None,
                parse_text(row.get("bank_name")),
                parse_text(row.get("account_number")),
            )
        )

    conn = connect(cfg)
    try:
        existing = {
            (r["date"], r["amount_cents"], r["description"], r["account_number"])
            for r in conn.execute(
                """
                SELECT date, amount_cents, description, account_number
                  FROM bank_transactions
                 WHERE company_id = ?;
                """,
                (company_id,),
            ).fetchall()
        }

        batch_id = create_import_batch(conn, company_id, "bank", source_label)
        created_at = now_utc_iso()
        inserted = 0
        duplicates = 0
        for tx_date, amount_cents, description, balance_cents, bank_name, account in records:
            if (tx_date, amount_cents, description, account) in existing:
                duplicates += 1
                continue
            conn.execute(
                """
                INSERT INTO bank_transactions (
                    company_id, bank_name, account_number, date, amount_cents,
                    description, balance_cents, transaction_type, is_recurring,
                    import_batch_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 'regular', 0, ?, ?);
                """,
                (
                    company_id,
                    bank_name,
                    account,
                    tx_date,
                    amount_cents,
                    description,
                    balance_cents,
                    batch_id,
                    created_at,
                ),
            )
            inserted += 1

        complete_import_batch(conn, batch_id, inserted, duplicates)
        conn.commit()
    finally:
        conn.close()

    if duplicates:
        logger.warning(
            "Skipped %s duplicate bank transactions from %s", duplicates, source_label
        )
    logger.info(
        "Imported %s bank transactions from %s (batch #%s)",
        inserted,
        source_label,
        batch_id,
    )
    return ImportStats(
        batch_id=batch_id,
        rows_inserted=inserted,
        duplicates_detected=duplicates,
    )


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

TRANSACTION_COLUMNS = [
    "id",
    "date",
    "amount",
    "description",
    "balance",
    "transaction_type",
    "matched_type",
    "matched_id",
    "is_recurring",
    "recurring_label",
    "bank_name",
    "account_number",
]


def load_transactions(
    cfg: DatabaseConfig,
    company_id: int,
    filters: BankFilter = BankFilter(),
) -> list[BankTransaction]:
    """Load the transactions matching ``filters``, most recent first."""
    where: list[str] = ["company_id = ?"]
    params: list[object] = [company_id]

    if filters.search:
        where.append("LOWER(COALESCE(description, '')) LIKE ?")
        params.append(f"%{filters.search.lower()}%")
    if filters.month:
        period = month_period(*parse_month(filters.month))
        where.append("date BETWEEN ? AND ?")
        params.extend([period.start.isoformat(), period.end.isoformat()])
    if filters.transaction_type:
        _check_type(filters.transaction_type)
        where.append("transaction_type = ?")
        params.append(filters.transaction_type)
    if filters.matched is True:
        where.append("matched_id IS NOT NULL")
    elif filters.matched is False:
        where.append("matched_id IS NULL")

    init_database(cfg)

    conn = connect(cfg)
    try:
        rows = conn.execute(
            f"""
            SELECT * FROM bank_transactions
             WHERE {" AND ".join(where)}
             ORDER BY date DESC, id DESC;
            """,
            params,
        ).fetchall()
    finally:
        conn.close()

    return [_row_to_transaction(r) for r in rows]


def list_transactions(
    cfg: DatabaseConfig,
    company_id: int,
    filters: BankFilter = BankFilter(),
) -> pd.DataFrame:
    """
    List bank transactions as a DataFrame, most recent first.

    Result columns: see ``TRANSACTION_COLUMNS``.
    """
    transactions = load_transactions(cfg, company_id, filters)
    if not transactions:
        return pd.DataFrame(columns=TRANSACTION_COLUMNS)

    df = pd.DataFrame(
        [
            (
                t.id,
                t.date,
                t.amount,
                t.description,
                t.balance,
                t.transaction_type,
                t.matched_type,
                t.matched_id,
                t.is_recurring,
                t.recurring_label,
                t.bank_name,
                t.account_number,
            )
            for t in transactions
        ],
        columns=TRANSACTION_COLUMNS,
    )
    df["date"] = pd.to_datetime(df["date"])
    return df


# ---------------------------------------------------------------------------
# Tagging
# ---------------------------------------------------------------------------


def update_transaction(
    cfg: DatabaseConfig,
    company_id: int,
    transaction_id: int,
    update: TransactionUpdate,
) -> BankTransaction:
    """
    Change the type, recurring flag/label or notes of a transaction.

    Empty strings clear ``recurring_label`` and ``notes``.

    Raises
    ------
    ValueError
        If no fields are provided or the type is unknown.
    """
    fields: list[str] = []
    params: list[object] = []

    if update.transaction_type is not None:
        _check_type(update.transaction_type)
        fields.append("transaction_type = ?")
        params.append(update.transaction_type)
    if update.is_recurring is not None:
        fields.append("is_recurring = ?")
        params.append(int(update.is_recurring))
    if update.recurring_label is not None:
        fields.append("recurring_label = ?")
        params.append(update.recurring_label or None)
    if update.notes is not None:
        fields.append("notes = ?")
        params.append(update.notes or None)

    if not fields:
        raise ValueError("No fields to update in TransactionUpdate.")

    init_database(cfg)

    conn = connect(cfg)
    try:
        ensure_owned(conn, "bank_transactions", transaction_id, company_id)
        conn.execute(
            f"""
            UPDATE bank_transactions
               SET {", ".join(fields)}
             WHERE id = ? AND company_id = ?;
            """,
            (*params, transaction_id, company_id),
        )
        conn.commit()
    finally:
        conn.close()

    return get_transaction(cfg, company_id, transaction_id)


def find_similar(
    cfg: DatabaseConfig, company_id: int, transaction_id: int
) -> list[BankTransaction]:
    """
    Other transactions with the same description and an amount within 1.

    Used to tag a whole series (e.g. the monthly rent debit) in one go.
    """
    init_database(cfg)

    conn = connect(cfg)
    try:
        reference = fetch_transaction(conn, company_id, transaction_id)
        rows = conn.execute(
            """
            SELECT * FROM bank_transactions
             WHERE company_id = ?
               AND id != ?
               AND description IS ?
               AND ABS(amount_cents - ?) < 100
             ORDER BY date DESC, id DESC;
            """,
            (company_id, transaction_id, reference.description, to_cents(reference.amount)),
        ).fetchall()
    finally:
        conn.close()

    return [_row_to_transaction(r) for r in rows]


def apply_to_similar(
    cfg: DatabaseConfig,
    company_id: int,
    transaction_id: int,
    transaction_type: str,
    recurring_label: Optional[str] = None,
) -> int:
    """
    Tag a transaction and all its similar ones as a recurring series.

    Returns
    -------
    int
        Number of transactions updated (0 when there is no similar one).
    """
    _check_type(transaction_type)
    similar = find_similar(cfg, company_id, transaction_id)
    if not similar:
        return 0

    ids = [transaction_id, *(t.id for t in similar)]
    placeholders = ", ".join("?" for _ in ids)

    conn = connect(cfg)
    try:
        conn.execute(
            f"""
            UPDATE bank_transactions
               SET transaction_type = ?,
                   is_recurring = 1,
                   recurring_label = ?
             WHERE company_id = ? AND id IN ({placeholders});
            """,
            (transaction_type, recurring_label or None, company_id, *ids),
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Tagged %s similar transactions as %s", len(ids), transaction_type)
    return len(ids)


def bank_summary(
    cfg: DatabaseConfig,
    company_id: int,
    filters: BankFilter = BankFilter(),
) -> BankSummary:
    """
    Headline figures of the bank page.

    Credits and debits are summed over the filtered transactions; the
    current balance, unmatched and special counts and the list of months
    always cover every transaction of the company. The current balance is
    the balance of the most recent line (0 when it has none).
    """
    filtered = load_transactions(cfg, company_id, filters)
    every = load_transactions(cfg, company_id)

    total_credits = sum(t.amount for t in filtered if t.amount > 0)
    total_debits = sum(-t.amount for t in filtered if t.amount < 0)
    current_balance = every[0].balance if every and every[0].balance is not None else 0.0
    unmatched = sum(
        1 for t in every if t.matched_type is None and t.transaction_type == "regular"
    )
    special = sum(1 for t in every if t.transaction_type != "regular")
    months = sorted({t.date.strftime("%Y-%m") for t in every}, reverse=True)

    return BankSummary(
        total_credits=round(total_credits, 2),
        total_debits=round(total_debits, 2),
        current_balance=current_balance,
        transaction_count=len(filtered),
        unmatched_count=unmatched,
        special_count=special,
        months=months,
    )
