# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Companies (tenants), their users and row-level authorization.

Every business row in Kaspit belongs to exactly one company. Users belong to
a single company and act on its books only. This module provides:

- creation, lookup and update of companies and users,
- ``require_company_access``: user-level check the CLI runs before a user
  manages the members or the profile of a company,
- ``ensure_owned``: row-level check used by the service modules before they
  link or modify a row addressed by id (category, contact, ledger entry,
  bank transaction, recurring template).
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from .db import (
    DatabaseConfig,
    connect,
    init_database,
    now_utc_iso,
    parse_iso_datetime,
)
from .errors import AuthorizationError, RecordNotFoundError

logger = logging.getLogger(__name__)

ROLES = ("admin", "finance_manager")

# Tables that may be addressed through ensure_owned.
_OWNED_TABLES = {
    "categories",
    "contacts",
    "ledger_entries",
    "bank_transactions",
    "budgets",
    "recurring_expenses",
    "import_batches",
}


@dataclass(frozen=True)
class Company:
    id: int
    name: str
    tax_id: str | None
    address: str | None
    phone: str | None
    email: str | None
    created_at: datetime | None


@dataclass(frozen=True)
class User:
    """
    A member of a company.

    Attributes
    ----------
    role:
        "admin" or "finance_manager". Both roles may read and write the books
        of their company; only the role name is kept for display.
    last_login:
        UTC timestamp of the last CLI session opened with this user, if any.
    """

    id: int
    company_id: int
    email: str
    full_name: str | None
    role: str
    last_login: datetime | None
    created_at: datetime | None


def _row_to_company(row: sqlite3.Row) -> Company:
    return Company(
        id=int(row["id"]),
        name=row["name"],
        tax_id=row["tax_id"],
        address=row["address"],
        phone=row["phone"],
        email=row["email"],
        created_at=parse_iso_datetime(row["created_at"]),
    )


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=int(row["id"]),
        company_id=int(row["company_id"]),
        email=row["email"],
        full_name=row["full_name"],
        role=row["role"],
        last_login=parse_iso_datetime(row["last_login"]),
        created_at=parse_iso_datetime(row["created_at"]),
    )


# ---------------------------------------------------------------------------
# Authorization guards
# ---------------------------------------------------------------------------


def ensure_owned(
    conn: sqlite3.Connection,
    table: str,
    row_id: int,
    company_id: int,
) -> None:
    """
    Check that ``table.id == row_id`` exists and belongs to ``company_id``.

    Raises
    ------
    ValueError
        If ``table`` is not a company-owned table.
    RecordNotFoundError
        If the row does not exist.
    AuthorizationError
        If the row belongs to another company.
    """
    if table not in _OWNED_TABLES:
        raise ValueError(f"Table {table!r} is not company-owned.")

    row = conn.execute(
        f"SELECT company_id FROM {table} WHERE id = ?;",
        (row_id,),
    ).fetchone()
    if row is None:
        raise RecordNotFoundError(table, row_id)
    if int(row["company_id"]) != int(company_id):
        logger.warning(
            "Company %s tried to access %s #%s owned by company %s",
            company_id,
            table,
            row_id,
            row["company_id"],
        )
        raise AuthorizationError(
            f"{table} #{row_id} does not belong to company #{company_id}."
        )


def require_company_access(user: User, company_id: int) -> None:
    """Raise AuthorizationError when ``user`` is not a member of ``company_id``."""
    if user.company_id != company_id:
        raise AuthorizationError(
            f"User {user.email} has no access to company #{company_id}."
        )


# ---------------------------------------------------------------------------
# Companies
# ---------------------------------------------------------------------------


def get_company(cfg: DatabaseConfig, company_id: int) -> Company:
    init_database(cfg)

    conn = connect(cfg)
    try:
        row = conn.execute(
            "SELECT * FROM companies WHERE id = ?;",
            (company_id,),
        ).fetchone()
    finally:
        conn.close()

    if row is None:
        raise RecordNotFoundError("companies", company_id)
    return _row_to_company(row)


def create_company(
    cfg: DatabaseConfig,
    name: str,
    *,
    tax_id: str | None = None,
    address: str | None = None,
    phone: str | None = None,
    email: str | None = None,
) -> Company:
    """
    Create a new company (tenant).

    Raises
    ------
    ValueError
        If ``name`` is empty.
    """
    name = (name or "").strip()
    if not name:
        raise ValueError("Company name is required.")

    init_database(cfg)

    conn = connect(cfg)
    try:
        cur = conn.execute(
            """
            INSERT INTO companies (name, tax_id, address, phone, email, created_at)
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (name, tax_id, address, phone, email, now_utc_iso()),
        )
        company_id = int(cur.lastrowid)
        conn.commit()
    finally:
        conn.close()

    logger.info("Created company #%s (%s)", company_id, name)
    return get_company(cfg, company_id)


def list_companies(cfg: DatabaseConfig) -> list[Company]:
    init_database(cfg)

    conn = connect(cfg)
    try:
        rows = conn.execute("SELECT * FROM companies ORDER BY id;").fetchall()
    finally:
        conn.close()
    return [_row_to_company(r) for r in rows]


@dataclass(frozen=True)
class CompanyUpdate:
    """
    Company profile fields to update.

    Only non-None values are applied. An empty string clears an optional
    field; the name cannot be cleared.
    """

    name: str | None = None
    tax_id: str | None = None
    address: str | None = None
    phone: str | None = None
    email: str | None = None


def update_company(cfg: DatabaseConfig, company_id: int, update: CompanyUpdate) -> Company:
    """
    Apply a partial update to a company profile.

    Raises
    ------
    ValueError
        If no fields are provided or the new name is empty.
    RecordNotFoundError
        If the company does not exist.
    """
    fields: list[str] = []
    params: list[object] = []

    if update.name is not None:
        name = update.name.strip()
        if not name:
            raise ValueError("Company name is required.")
        fields.append("name = ?")
        params.append(name)
    for attr in ("tax_id", "address", "phone", "email"):
        value = getattr(update, attr)
        if value is not None:
            fields.append(f"{attr} = ?")
            params.append(value.strip() or None)

    if not fields:
        raise ValueError("No fields to update in CompanyUpdate.")

    get_company(cfg, company_id)

    conn = connect(cfg)
    try:
        conn.execute(
            f"UPDATE companies SET {', '.join(fields)} WHERE id = ?;",
            (*params, company_id),
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Updated company #%s", company_id)
    return get_company(cfg, company_id)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _get_user(cfg: DatabaseConfig, user_id: int) -> User:
    conn = connect(cfg)
    try:
        row = conn.execute("SELECT * FROM users WHERE id = ?;", (user_id,)).fetchone()
    finally:
        conn.close()

    if row is None:
        raise RecordNotFoundError("users", user_id)
    return _row_to_user(row)


def create_user(
    cfg: DatabaseConfig,
    company_id: int,
    email: str,
    role: str,
    full_name: str | None = None,
) -> User:
    """
    Add a user to a company.

    Parameters
    ----------
    cfg:
        Database configuration.
    company_id:
        Company the user belongs to. Must exist.
    email:
        Login email, unique across all companies (case-insensitive).
    role:
        "admin" or "finance_manager".
    full_name:
        Optional display name.

    Raises
    ------
    ValueError
        If the email is empty or already taken, or the role is unknown.
    RecordNotFoundError
        If the company does not exist.
    """
    email = (email or "").strip()
    if not email or "@" not in email:
        raise ValueError(f"Invalid email address: {email!r}.")
    if role not in ROLES:
        raise ValueError(
            f"Unknown role {role!r}. Expected one of: {', '.join(ROLES)}."
        )

    init_database(cfg)

    conn = connect(cfg)
    try:
        exists = conn.execute(
            "SELECT 1 FROM companies WHERE id = ?;", (company_id,)
        ).fetchone()
        if exists is None:
            raise RecordNotFoundError("companies", company_id)

        taken = conn.execute(
            "SELECT 1 FROM users WHERE email = ?;", (email,)
        ).fetchone()
        if taken is not None:
            raise ValueError(f"A user with email {email!r} already exists.")

        cur = conn.execute(
            """
            INSERT INTO users (company_id, email, full_name, role, created_at)
            VALUES (?, ?, ?, ?, ?);
            """,
            (company_id, email, full_name, role, now_utc_iso()),
        )
        user_id = int(cur.lastrowid)
        conn.commit()
    finally:
        conn.close()

    logger.info("Created user #%s (%s) in company #%s", user_id, email, company_id)
    return _get_user(cfg, user_id)


def get_user_by_email(cfg: DatabaseConfig, email: str) -> User:
    """
    Look up a user by email (case-insensitive).

    Raises
    ------
    RecordNotFoundError
        If no user has this email.
    """
    init_database(cfg)

    conn = connect(cfg)
    try:
        row = conn.execute(
            "SELECT * FROM users WHERE email = ?;",
            ((email or "").strip(),),
        ).fetchone()
    finally:
        conn.close()

    if row is None:
        raise RecordNotFoundError("users", email)
    return _row_to_user(row)


def touch_last_login(cfg: DatabaseConfig, user_id: int) -> User:
    """Set ``last_login`` to the current UTC time and return the updated user."""
    init_database(cfg)

    conn = connect(cfg)
    try:
        conn.execute(
            "UPDATE users SET last_login = ? WHERE id = ?;",
            (now_utc_iso(), user_id),
        )
        conn.commit()
    finally:
        conn.close()

    return _get_user(cfg, user_id)


def list_users(cfg: DatabaseConfig, company_id: int) -> list[User]:
    init_database(cfg)

    conn = connect(cfg)
    try:
        rows = conn.execute(
            "SELECT * FROM users WHERE company_id = ? ORDER BY id;",
            (company_id,),
        ).fetchall()
    finally:
        conn.close()
    return [_row_to_user(r) for r in rows]


def update_user_name(cfg: DatabaseConfig, user_id: int, full_name: str | None) -> User:
    """Change the display name of a user (an empty name clears it)."""
    _get_user(cfg, user_id)

    conn = connect(cfg)
    try:
        conn.execute(
            "UPDATE users SET full_name = ? WHERE id = ?;",
            ((full_name or "").strip() or None, user_id),
        )
        conn.commit()
    finally:
        conn.close()

    return _get_user(cfg, user_id)


def delete_user(cfg: DatabaseConfig, acting_user: User, user_id: int) -> None:
    """
    Remove a member of the acting user's company.

    Rows the user created stay in the books with no author.

    Raises
    ------
    ValueError
        If the acting user tries to delete themselves.
    RecordNotFoundError
        If the user does not exist.
    AuthorizationError
        If the user belongs to another company.
    """
    init_database(cfg)
    target = _get_user(cfg, user_id)
    require_company_access(acting_user, target.company_id)
    if target.id == acting_user.id:
        raise ValueError("You cannot delete your own user.")

    conn = connect(cfg)
    try:
        for table in ("ledger_entries", "budgets", "collection_reminders"):
            conn.execute(
                f"UPDATE {table} SET created_by = NULL WHERE created_by = ?;",
                (user_id,),
            )
        conn.execute("DELETE FROM users WHERE id = ?;", (user_id,))
        conn.commit()
    finally:
        conn.close()

    logger.info("Deleted user #%s (%s) from company #%s", user_id, target.email, target.company_id)
