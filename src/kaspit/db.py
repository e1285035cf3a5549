# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Database layer for Kaspit.

This module owns the SQLite schema and the low-level helpers shared by every
service module (companies, catalog, ledger, bank, budget, recurring). It is
responsible for:

- Initializing and migrating the database schema.
- Opening connections with foreign keys enabled.
- Converting between Python values and their stored representation
  (amounts in integer cents, ISO dates, UTC timestamps).

The database is multi-tenant: every business table carries a ``company_id``
column, and every service-level query filters on it. Row-level authorization
is enforced by the service modules through ``companies.ensure_owned``.

------------------------------------------------------------------------------
Schema Overview
------------------------------------------------------------------------------

1) companies             one row per tenant.
2) users                 members of a company, role "admin" | "finance_manager".
3) categories            income / expense categories (optionally nested).
4) contacts              suppliers and customers (column ``kind``).
5) import_batches        one row per spreadsheet import (bank, income, expense).
6) ledger_entries        income and expense records (column ``kind``).
   - amount_cents is the VAT-inclusive total; amount_before_vat_cents and
     vat_amount_cents hold the split when known.
   - bank_transaction_id points to the reconciled bank transaction, if any.
   - document_status / linked_document_id track business invoices closed
     by a later tax document; collection_status and the reminder columns
     track the follow-up of unpaid invoices.
7) bank_transactions     imported bank statement lines.
   - amount_cents is signed: > 0 is a credit, < 0 a debit.
   - matched_type / matched_id link the line to a ledger entry.
   - transaction_type is "regular" or one of the special classifications
     (salary, vat_payment, internal_transfer, ...).
8) budgets               monthly budget per expense category.
9) recurring_expenses    templates that periodically generate expenses.
10) collection_reminders history of the payment reminders sent for an entry.

------------------------------------------------------------------------------
SQLite Notes
------------------------------------------------------------------------------

- All timestamps are stored as ISO-8601 text (UTC).
- Foreign key enforcement is explicitly enabled on every connection.
- Columns introduced after the first release of a table are added in place by
  ``_migrate_schema_if_needed`` so that older database files keep working.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path

import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseConfig:
    """
    Database configuration for Kaspit.

    Attributes
    ----------
    engine:
        Database engine identifier. Only "sqlite" is supported.
    path:
        Path to the SQLite database file.
    """

    engine: str
    path: Path


@dataclass(frozen=True)
class ImportStats:
    """
    Summary of a spreadsheet import.

    Attributes
    ----------
    batch_id:
        Identifier of the batch row in ``import_batches``.
    rows_inserted:
        Number of rows written to the target table.
    duplicates_detected:
        Number of rows skipped because an identical row already existed.
    """

    batch_id: int
    rows_inserted: int
    duplicates_detected: int


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS companies (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        name        TEXT    NOT NULL,
        tax_id      TEXT,
        address     TEXT,
        phone       TEXT,
        email       TEXT,
        created_at  TEXT    NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id  INTEGER NOT NULL,
        email       TEXT    NOT NULL UNIQUE COLLATE NOCASE,
        full_name   TEXT,
        role        TEXT    NOT NULL
                    CHECK (role IN ('admin', 'finance_manager')),
        last_login  TEXT,
        created_at  TEXT    NOT NULL,

        FOREIGN KEY (company_id) REFERENCES companies(id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS categories (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id  INTEGER NOT NULL,
        name        TEXT    NOT NULL,
        type        TEXT    NOT NULL CHECK (type IN ('income', 'expense')),
        color       TEXT    NOT NULL,
        icon        TEXT,
        parent_id   INTEGER,
        is_active   INTEGER NOT NULL DEFAULT 1,
        created_at  TEXT    NOT NULL,

        FOREIGN KEY (company_id) REFERENCES companies(id),
        FOREIGN KEY (parent_id) REFERENCES categories(id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id             INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id     INTEGER NOT NULL,
        kind           TEXT    NOT NULL CHECK (kind IN ('supplier', 'customer')),
        name           TEXT    NOT NULL,
        contact_name   TEXT,
        phone          TEXT,
        email          TEXT,
        address        TEXT,
        tax_id         TEXT,
        payment_terms  INTEGER NOT NULL DEFAULT 30,
        notes          TEXT,
        is_active      INTEGER NOT NULL DEFAULT 1,
        created_at     TEXT    NOT NULL,

        FOREIGN KEY (company_id) REFERENCES companies(id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS import_batches (
        id                   INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id           INTEGER NOT NULL,
        created_at           TEXT    NOT NULL,
        source_type          TEXT    NOT NULL
                             CHECK (source_type IN ('bank', 'income', 'expense')),
        source_label         TEXT    NOT NULL,
        rows_inserted        INTEGER NOT NULL DEFAULT 0,
        duplicates_detected  INTEGER NOT NULL DEFAULT 0,
        status               TEXT    NOT NULL DEFAULT 'processing',
        -- 'processing' | 'completed' | 'failed'
        notes                TEXT,

        FOREIGN KEY (company_id) REFERENCES companies(id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS recurring_expenses (
        id                   INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id           INTEGER NOT NULL,
        name                 TEXT    NOT NULL,
        amount_cents         INTEGER NOT NULL,
        category_id          INTEGER,
        supplier_id          INTEGER,
        description          TEXT,
        frequency            TEXT    NOT NULL
                             CHECK (frequency IN ('weekly', 'monthly', 'yearly')),
        day_of_month         INTEGER,
        day_of_week          INTEGER,
        month_of_year        INTEGER,
        start_date           TEXT    NOT NULL,
        end_date             TEXT,
        last_generated_date  TEXT,
        is_active            INTEGER NOT NULL DEFAULT 1,
        expense_type         TEXT    NOT NULL DEFAULT 'other',
        created_at           TEXT    NOT NULL,

        FOREIGN KEY (company_id) REFERENCES companies(id),
        FOREIGN KEY (category_id) REFERENCES categories(id),
        FOREIGN KEY (supplier_id) REFERENCES contacts(id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS bank_transactions (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id       INTEGER NOT NULL,
        bank_name        TEXT,
        account_number   TEXT,
        date             TEXT    NOT NULL,  -- ISO date 'YYYY-MM-DD'
        amount_cents     INTEGER NOT NULL,  -- signed: > 0 credit, < 0 debit
        description      TEXT,
        balance_cents    INTEGER,
        matched_type     TEXT    CHECK (matched_type IN ('income', 'expense')),
        matched_id       INTEGER,
        transaction_type TEXT    NOT NULL DEFAULT 'regular',
        is_recurring     INTEGER NOT NULL DEFAULT 0,
        recurring_label  TEXT,
        notes            TEXT,
        import_batch_id  INTEGER,
        created_at       TEXT    NOT NULL,

        FOREIGN KEY (company_id) REFERENCES companies(id),
        FOREIGN KEY (import_batch_id) REFERENCES import_batches(id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        id                       INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id               INTEGER NOT NULL,
        kind                     TEXT    NOT NULL
                                 CHECK (kind IN ('income', 'expense')),
        category_id              INTEGER,
        contact_id               INTEGER,
        amount_cents             INTEGER NOT NULL,  -- VAT-inclusive total
        amount_before_vat_cents  INTEGER,
        vat_amount_cents         INTEGER,
        vat_exempt               INTEGER NOT NULL DEFAULT 0,
        vat_deductible           INTEGER NOT NULL DEFAULT 1,
        date                     TEXT    NOT NULL,
        due_date                 TEXT,
        payment_date             TEXT,
        description              TEXT,
        invoice_number           TEXT,
        document_type            TEXT,
        payment_status           TEXT    NOT NULL DEFAULT 'pending'
                                 CHECK (payment_status IN ('pending', 'partial', 'paid')),
        payment_method           TEXT,
        document_status          TEXT
                                 CHECK (document_status IN ('open', 'closed', 'cancelled')),
        linked_document_id       INTEGER,
        collection_status        TEXT    NOT NULL DEFAULT 'none',
        reminder_count           INTEGER NOT NULL DEFAULT 0,
        last_reminder_date       TEXT,
        promised_date            TEXT,
        collection_notes         TEXT,
        is_recurring             INTEGER NOT NULL DEFAULT 0,
        recurring_day            INTEGER,
        recurring_expense_id     INTEGER,
        bank_transaction_id      INTEGER,
        import_batch_id          INTEGER,
        created_by               INTEGER,
        created_at               TEXT    NOT NULL,
        updated_at               TEXT,

        FOREIGN KEY (company_id) REFERENCES companies(id),
        FOREIGN KEY (category_id) REFERENCES categories(id),
        FOREIGN KEY (contact_id) REFERENCES contacts(id),
        FOREIGN KEY (recurring_expense_id) REFERENCES recurring_expenses(id),
        FOREIGN KEY (linked_document_id) REFERENCES ledger_entries(id),
        FOREIGN KEY (bank_transaction_id) REFERENCES bank_transactions(id),
        FOREIGN KEY (import_batch_id) REFERENCES import_batches(id),
        FOREIGN KEY (created_by) REFERENCES users(id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS collection_reminders (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id  INTEGER NOT NULL,
        entry_id    INTEGER NOT NULL,
        channel     TEXT    NOT NULL CHECK (channel IN ('whatsapp', 'email', 'phone')),
        sent_to     TEXT,
        message     TEXT    NOT NULL,
        sent_at     TEXT    NOT NULL,
        created_by  INTEGER,

        FOREIGN KEY (company_id) REFERENCES companies(id),
        FOREIGN KEY (entry_id) REFERENCES ledger_entries(id),
        FOREIGN KEY (created_by) REFERENCES users(id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS budgets (
        id            INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id    INTEGER NOT NULL,
        category_id   INTEGER NOT NULL,
        year          INTEGER NOT NULL,
        month         INTEGER NOT NULL CHECK (month BETWEEN 1 AND 12),
        amount_cents  INTEGER NOT NULL,
        created_by    INTEGER,
        created_at    TEXT    NOT NULL,

        UNIQUE (company_id, category_id, year, month),
        FOREIGN KEY (company_id) REFERENCES companies(id),
        FOREIGN KEY (category_id) REFERENCES categories(id),
        FOREIGN KEY (created_by) REFERENCES users(id)
    );
    """,
)

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_ledger_company_date "
    "ON ledger_entries(company_id, kind, date);",
    "CREATE INDEX IF NOT EXISTS idx_bank_company_date "
    "ON bank_transactions(company_id, date);",
    "CREATE INDEX IF NOT EXISTS idx_bank_matched "
    "ON bank_transactions(company_id, matched_id);",
    "CREATE INDEX IF NOT EXISTS idx_budgets_period "
    "ON budgets(company_id, year, month);",
)

# Columns added after the first release of their table:
# table -> [(column, DDL fragment)]
_LATE_COLUMNS: dict[str, list[tuple[str, str]]] = {
    "bank_transactions": [
        ("transaction_type", "TEXT NOT NULL DEFAULT 'regular'"),
        ("is_recurring", "INTEGER NOT NULL DEFAULT 0"),
        ("recurring_label", "TEXT"),
        ("notes", "TEXT"),
    ],
    "ledger_entries": [
        ("payment_method", "TEXT"),
        ("recurring_expense_id", "INTEGER"),
        ("vat_deductible", "INTEGER NOT NULL DEFAULT 1"),
        ("document_status", "TEXT"),
        ("linked_document_id", "INTEGER"),
        ("collection_status", "TEXT NOT NULL DEFAULT 'none'"),
        ("reminder_count", "INTEGER NOT NULL DEFAULT 0"),
        ("last_reminder_date", "TEXT"),
        ("promised_date", "TEXT"),
        ("collection_notes", "TEXT"),
    ],
}


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _ensure_sqlite(cfg: DatabaseConfig) -> None:
    """Raise if the configuration does not refer to a supported engine."""
    if cfg.engine.lower() != "sqlite":
        msg = (
            f"Unsupported database engine: {cfg.engine!r}. "
            "Only 'sqlite' is supported for now."
        )
        raise ValueError(msg)


def _get_table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    """Return the set of column names for the given table (empty if missing)."""
    cur = conn.execute(f"PRAGMA table_info({table});")
    return {row[1] for row in cur.fetchall()}


def _migrate_schema_if_needed(conn: sqlite3.Connection) -> None:
    """
    Add late columns to tables created by older releases.

    This function is idempotent and safe to call multiple times. Existing data
    is preserved and new columns take their declared defaults.
    """
    for table, columns in _LATE_COLUMNS.items():
        existing = _get_table_columns(conn, table)
        if not existing:
            continue
        for column, ddl in columns:
            if column not in existing:
                logger.info("Migrating schema: adding %s.%s", table, column)
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl};")


def _create_schema_if_needed(conn: sqlite3.Connection) -> None:
    """
    Create tables and indexes if they do not exist yet and migrate the schema.

    This function is idempotent and can be called multiple times safely.
    """
    for ddl in _SCHEMA:
        conn.execute(ddl)

    _migrate_schema_if_needed(conn)

    for ddl in _INDEXES:
        conn.execute(ddl)

    conn.commit()


# ---------------------------------------------------------------------------
# Value conversions
# ---------------------------------------------------------------------------


def to_cents(amount: float | None) -> int | None:
    """Convert a monetary amount to integer cents (agorot)."""
    if amount is None:
        return None
    return int(round(float(amount) * 100))


def from_cents(cents: int | None) -> float | None:
    """Convert integer cents back to a monetary amount."""
    if cents is None:
        return None
    return float(cents) / 100.0


def to_iso_date(value) -> str:
    """Convert a date-like value to ISO 'YYYY-MM-DD' string."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, pd.Timestamp):
        return value.date().isoformat()
    return date.fromisoformat(str(value)[:10]).isoformat()


def parse_iso_date(value: str | None) -> date | None:
    """Parse a stored ISO date, passing None through."""
    if value is None:
        return None
    return date.fromisoformat(value)


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse a stored ISO timestamp, passing None through."""
    if value is None:
        return None
    return datetime.fromisoformat(value)


def now_utc_iso() -> str:
    """Return the current UTC datetime as ISO string."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def connect(cfg: DatabaseConfig) -> sqlite3.Connection:
    """
    Open a SQLite connection with foreign keys enabled.

    Rows are returned as ``sqlite3.Row`` so that callers can address columns
    by name. The caller is responsible for closing the connection.
    """
    _ensure_sqlite(cfg)
    conn = sqlite3.connect(cfg.path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def init_database(cfg: DatabaseConfig) -> None:
    """
    Initialize the database schema if needed.

    - Creates the SQLite file (and its parent directory) if it does not exist.
    - Creates tables and indexes if they are missing.
    - Adds late columns to tables created by older releases.

    Raises
    ------
    ValueError
        If cfg.engine is not supported.
    sqlite3.Error
        If schema creation fails.
    """
    _ensure_sqlite(cfg)
    cfg.path.parent.mkdir(parents=True, exist_ok=True)

    conn = connect(cfg)
    try:
        _create_schema_if_needed(conn)
    finally:
        conn.close()


def create_import_batch(
    conn: sqlite3.Connection,
    company_id: int,
    source_type: str,
    source_label: str,
) -> int:
    """Insert a new import batch in 'processing' state and return its id."""
    cur = conn.execute(
        """
        INSERT INTO import_batches (
            company_id, created_at, source_type, source_label, status
        )
        VALUES (?, ?, ?, ?, 'processing');
        """,
        (company_id, now_utc_iso(), source_type, source_label),
    )
    return int(cur.lastrowid)


def complete_import_batch(
    conn: sqlite3.Connection,
    batch_id: int,
    rows_inserted: int,
    duplicates_detected: int,
    notes: str | None = None,
) -> None:
    """Record the final counts of an import batch and mark it completed."""
    conn.execute(
        """
        UPDATE import_batches
           SET rows_inserted = ?,
               duplicates_detected = ?,
               status = 'completed',
               notes = ?
         WHERE id = ?;
        """,
        (rows_inserted, duplicates_detected, notes, batch_id),
    )


def list_import_batches(cfg: DatabaseConfig, company_id: int) -> pd.DataFrame:
    """
    Return the import history of a company, most recent first.

    Columns: id, created_at, source_type, source_label, rows_inserted,
    duplicates_detected, status.
    """
    columns = [
        "id",
        "created_at",
        "source_type",
        "source_label",
        "rows_inserted",
        "duplicates_detected",
        "status",
    ]
    conn = connect(cfg)
    try:
        rows = conn.execute(
            f"""
            SELECT {", ".join(columns)}
              FROM import_batches
             WHERE company_id = ?
             ORDER BY id DESC;
            """,
            (company_id,),
        ).fetchall()
    finally:
        conn.close()

    if not rows:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame([tuple(r) for r in rows], columns=columns)
    df["created_at"] = pd.to_datetime(df["created_at"])
    return df
