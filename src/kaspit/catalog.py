# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Categories, suppliers and customers.

These are the reference lists every ledger entry points to:

- categories: named income or expense buckets, optionally nested through
  ``parent_id``, each with a display colour;
- contacts: suppliers (for expenses) and customers (for income), stored in a
  single table and distinguished by ``kind``.

Deactivating a category or contact hides it from pickers while keeping
historical entries intact, and reactivating it brings it back. Only rows that
nothing points to can be deleted.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

import pandas as pd

from .companies import ensure_owned
from .db import DatabaseConfig, connect, init_database, now_utc_iso
from .errors import RecordNotFoundError

logger = logging.getLogger(__name__)

CATEGORY_TYPES = ("income", "expense")
CONTACT_KINDS = ("supplier", "customer")

PALETTE = (
    "#ef4444", "#f97316", "#f59e0b", "#eab308", "#84cc16",
    "#22c55e", "#10b981", "#14b8a6", "#06b6d4", "#0ea5e9",
    "#3b82f6", "#6366f1", "#8b5cf6", "#a855f7", "#d946ef",
    "#ec4899", "#f43f5e",
)


@dataclass(frozen=True)
class Category:
    id: int
    company_id: int
    name: str
    type: str
    color: str
    icon: str | None
    parent_id: int | None
    is_active: bool


@dataclass(frozen=True)
class Contact:
    """
    A supplier or a customer.

    Attributes
    ----------
    kind:
        "supplier" or "customer".
    payment_terms:
        Payment terms in days (e.g. 30 for "net 30").
    """

    id: int
    company_id: int
    kind: str
    name: str
    contact_name: str | None
    phone: str | None
    email: str | None
    address: str | None
    tax_id: str | None
    payment_terms: int
    notes: str | None
    is_active: bool


@dataclass(frozen=True)
class ContactUpdate:
    """
    Fields that can be updated on an existing contact.

    Only non-None values are applied.
    """

    name: str | None = None
    contact_name: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    tax_id: str | None = None
    payment_terms: int | None = None
    notes: str | None = None


def _row_to_category(row: sqlite3.Row) -> Category:
    return Category(
        id=int(row["id"]),
        company_id=int(row["company_id"]),
        name=row["name"],
        type=row["type"],
        color=row["color"],
        icon=row["icon"],
        parent_id=row["parent_id"],
        is_active=bool(row["is_active"]),
    )


def _row_to_contact(row: sqlite3.Row) -> Contact:
    return Contact(
        id=int(row["id"]),
        company_id=int(row["company_id"]),
        kind=row["kind"],
        name=row["name"],
        contact_name=row["contact_name"],
        phone=row["phone"],
        email=row["email"],
        address=row["address"],
        tax_id=row["tax_id"],
        payment_terms=int(row["payment_terms"]),
        notes=row["notes"],
        is_active=bool(row["is_active"]),
    )


def _check_category_type(category_type: str) -> None:
    if category_type not in CATEGORY_TYPES:
        raise ValueError(
            f"Unknown category type {category_type!r}. "
            f"Expected one of: {', '.join(CATEGORY_TYPES)}."
        )


def _check_contact_kind(kind: str) -> None:
    if kind not in CONTACT_KINDS:
        raise ValueError(
            f"Unknown contact kind {kind!r}. "
            f"Expected one of: {', '.join(CONTACT_KINDS)}."
        )


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


def get_category(cfg: DatabaseConfig, company_id: int, category_id: int) -> Category:
    init_database(cfg)

    conn = connect(cfg)
    try:
        ensure_owned(conn, "categories", category_id, company_id)
        row = conn.execute(
            "SELECT * FROM categories WHERE id = ? AND company_id = ?;",
            (category_id, company_id),
        ).fetchone()
    finally:
        conn.close()

    if row is None:
        raise RecordNotFoundError("categories", category_id)
    return _row_to_category(row)


def create_category(
    cfg: DatabaseConfig,
    company_id: int,
    name: str,
    category_type: str,
    *,
    color: str | None = None,
    icon: str | None = None,
    parent_id: int | None = None,
) -> Category:
    """
    Create a category for a company.

    When ``color`` is not given, the next colour of ``PALETTE`` is used,
    cycling on the number of categories the company already has.

    Raises
    ------
    ValueError
        If the name is empty or the type is unknown.
    RecordNotFoundError, AuthorizationError
        If ``parent_id`` does not refer to a category of the same company.
    """
    name = (name or "").strip()
    if not name:
        raise ValueError("Category name is required.")
    _check_category_type(category_type)

    init_database(cfg)

    conn = connect(cfg)
    try:
        if parent_id is not None:
            ensure_owned(conn, "categories", parent_id, company_id)

        if color is None:
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM categories WHERE company_id = ?;",
                (company_id,),
            ).fetchone()
            color = PALETTE[int(count) % len(PALETTE)]

        cur = conn.execute(
            """
            INSERT INTO categories (
                company_id, name, type, color, icon, parent_id, is_active, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, 1, ?);
            """,
            (company_id, name, category_type, color, icon, parent_id, now_utc_iso()),
        )
        category_id = int(cur.lastrowid)
        conn.commit()
    finally:
        conn.close()

    logger.info("Created %s category #%s (%s)", category_type, category_id, name)
    return get_category(cfg, company_id, category_id)


def update_category(
    cfg: DatabaseConfig,
    company_id: int,
    category_id: int,
    *,
    name: str | None = None,
    color: str | None = None,
    icon: str | None = None,
) -> Category:
    """Rename or restyle a category. Raises ValueError when nothing changes."""
    fields: list[str] = []
    params: list[object] = []

    if name is not None:
        if not name.strip():
            raise ValueError("Category name cannot be empty.")
        fields.append("name = ?")
        params.append(name.strip())
    if color is not None:
        fields.append("color = ?")
        params.append(color)
    if icon is not None:
        fields.append("icon = ?")
        params.append(icon)

    if not fields:
        raise ValueError("No fields to update for category.")

    init_database(cfg)

    conn = connect(cfg)
    try:
        ensure_owned(conn, "categories", category_id, company_id)
        conn.execute(
            f"""
            UPDATE categories
               SET {", ".join(fields)}
             WHERE id = ? AND company_id = ?;
            """,
            (*params, category_id, company_id),
        )
        conn.commit()
    finally:
        conn.close()

    return get_category(cfg, company_id, category_id)


def _set_active(
    cfg: DatabaseConfig, table: str, company_id: int, row_id: int, active: bool
) -> None:
    init_database(cfg)

    conn = connect(cfg)
    try:
        ensure_owned(conn, table, row_id, company_id)
        conn.execute(
            f"UPDATE {table} SET is_active = ? WHERE id = ? AND company_id = ?;",
            (int(active), row_id, company_id),
        )
        conn.commit()
    finally:
        conn.close()


def _delete_unreferenced(
    cfg: DatabaseConfig,
    table: str,
    company_id: int,
    row_id: int,
    references: tuple[tuple[str, str, str], ...],
) -> None:
    """
    Delete a row that no other row points to.

    ``references`` lists (table, column, label) triples checked before the
    delete; the first one in use raises ValueError.
    """
    init_database(cfg)

    conn = connect(cfg)
    try:
        ensure_owned(conn, table, row_id, company_id)
        for ref_table, column, label in references:
            (count,) = conn.execute(
                f"SELECT COUNT(*) FROM {ref_table} WHERE {column} = ?;",
                (row_id,),
            ).fetchone()
            if count:
                raise ValueError(
                    f"{table} #{row_id} is used by {count} {label}. "
                    "Deactivate it instead."
                )
        conn.execute(
            f"DELETE FROM {table} WHERE id = ? AND company_id = ?;",
            (row_id, company_id),
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Deleted %s #%s", table, row_id)


def deactivate_category(
    cfg: DatabaseConfig, company_id: int, category_id: int
) -> Category:
    _set_active(cfg, "categories", company_id, category_id, False)
    return get_category(cfg, company_id, category_id)


def reactivate_category(
    cfg: DatabaseConfig, company_id: int, category_id: int
) -> Category:
    _set_active(cfg, "categories", company_id, category_id, True)
    return get_category(cfg, company_id, category_id)


def delete_category(cfg: DatabaseConfig, company_id: int, category_id: int) -> None:
    """
    Delete a category nothing refers to.

    Raises
    ------
    ValueError
        If entries, budgets, recurring expenses or subcategories use it.
    """
    _delete_unreferenced(
        cfg,
        "categories",
        company_id,
        category_id,
        (
            ("ledger_entries", "category_id", "entries"),
            ("budgets", "category_id", "budgets"),
            ("recurring_expenses", "category_id", "recurring expenses"),
            ("categories", "parent_id", "subcategories"),
        ),
    )


def list_categories(
    cfg: DatabaseConfig,
    company_id: int,
    category_type: Optional[str] = None,
    *,
    active_only: bool = True,
) -> list[Category]:
    """List the categories of a company, ordered by type then name."""
    if category_type is not None:
        _check_category_type(category_type)

    init_database(cfg)

    where = ["company_id = ?"]
    params: list[object] = [company_id]
    if category_type is not None:
        where.append("type = ?")
        params.append(category_type)
    if active_only:
        where.append("is_active = 1")

    conn = connect(cfg)
    try:
        rows = conn.execute(
            f"""
            SELECT * FROM categories
             WHERE {" AND ".join(where)}
             ORDER BY type, name;
            """,
            params,
        ).fetchall()
    finally:
        conn.close()

    return [_row_to_category(r) for r in rows]


def find_category_by_name(
    categories: list[Category], name: str | None
) -> Category | None:
    """
    Resolve a free-text category name against a list of categories.

    An exact match wins; otherwise the first category whose name contains the
    given text, or is contained in it, is returned.
    """
    if not name:
        return None
    name = str(name).strip()
    if not name:
        return None

    for cat in categories:
        if cat.name == name:
            return cat
    for cat in categories:
        if name in cat.name or cat.name in name:
            return cat
    return None


def get_or_create_category(
    cfg: DatabaseConfig,
    company_id: int,
    name: str,
    category_type: str,
) -> Category:
    """Return the active category matching ``name`` or create it."""
    existing = find_category_by_name(
        list_categories(cfg, company_id, category_type), name
    )
    if existing is not None:
        return existing
    return create_category(cfg, company_id, name, category_type)


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


def get_contact(cfg: DatabaseConfig, company_id: int, contact_id: int) -> Contact:
    init_database(cfg)

    conn = connect(cfg)
    try:
        ensure_owned(conn, "contacts", contact_id, company_id)
        row = conn.execute(
            "SELECT * FROM contacts WHERE id = ? AND company_id = ?;",
            (contact_id, company_id),
        ).fetchone()
    finally:
        conn.close()

    if row is None:
        raise RecordNotFoundError("contacts", contact_id)
    return _row_to_contact(row)


def create_contact(
    cfg: DatabaseConfig,
    company_id: int,
    kind: str,
    name: str,
    *,
    contact_name: str | None = None,
    phone: str | None = None,
    email: str | None = None,
    address: str | None = None,
    tax_id: str | None = None,
    payment_terms: int = 30,
    notes: str | None = None,
) -> Contact:
    """
    Create a supplier or customer.

    Raises
    ------
    ValueError
        If the name is empty, the kind is unknown or payment terms are negative.
    """
    name = (name or "").strip()
    if not name:
        raise ValueError("Contact name is required.")
    _check_contact_kind(kind)
    if payment_terms < 0:
        raise ValueError("payment_terms must be zero or a positive number of days.")

    init_database(cfg)

    conn = connect(cfg)
    try:
        cur = conn.execute(
            """
            INSERT INTO contacts (
                company_id, kind, name, contact_name, phone, email, address,
                tax_id, payment_terms, notes, is_active, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?);
            """,
            (
                company_id,
                kind,
                name,
                contact_name,
                phone,
                email,
                address,
                tax_id,
                int(payment_terms),
                notes,
                now_utc_iso(),
            ),
        )
        contact_id = int(cur.lastrowid)
        conn.commit()
    finally:
        conn.close()

    logger.info("Created %s #%s (%s)", kind, contact_id, name)
    return get_contact(cfg, company_id, contact_id)


def update_contact(
    cfg: DatabaseConfig,
    company_id: int,
    contact_id: int,
    update: ContactUpdate,
) -> Contact:
    """
    Apply a partial update to a contact.

    Raises
    ------
    ValueError
        If no fields are provided for update.
    """
    fields: list[str] = []
    params: list[object] = []

    for column in (
        "name",
        "contact_name",
        "phone",
        "email",
        "address",
        "tax_id",
        "payment_terms",
        "notes",
    ):
        value = getattr(update, column)
        if value is not None:
            fields.append(f"{column} = ?")
            params.append(value)

    if not fields:
        raise ValueError("No fields to update in ContactUpdate.")

    init_database(cfg)

    conn = connect(cfg)
    try:
        ensure_owned(conn, "contacts", contact_id, company_id)
        conn.execute(
            f"""
            UPDATE contacts
               SET {", ".join(fields)}
             WHERE id = ? AND company_id = ?;
            """,
            (*params, contact_id, company_id),
        )
        conn.commit()
    finally:
        conn.close()

    return get_contact(cfg, company_id, contact_id)


def deactivate_contact(cfg: DatabaseConfig, company_id: int, contact_id: int) -> Contact:
    _set_active(cfg, "contacts", company_id, contact_id, False)
    return get_contact(cfg, company_id, contact_id)


def reactivate_contact(cfg: DatabaseConfig, company_id: int, contact_id: int) -> Contact:
    _set_active(cfg, "contacts", company_id, contact_id, True)
    return get_contact(cfg, company_id, contact_id)


def delete_contact(cfg: DatabaseConfig, company_id: int, contact_id: int) -> None:
    """Delete a customer or supplier no entry or recurring expense refers to."""
    _delete_unreferenced(
        cfg,
        "contacts",
        company_id,
        contact_id,
        (
            ("ledger_entries", "contact_id", "entries"),
            ("recurring_expenses", "supplier_id", "recurring expenses"),
        ),
    )


def list_contacts(
    cfg: DatabaseConfig,
    company_id: int,
    kind: Optional[str] = None,
    *,
    search: Optional[str] = None,
    active_only: bool = True,
) -> pd.DataFrame:
    """
    List suppliers and/or customers as a DataFrame.

    Result columns
    --------------
    id, kind, name, contact_name, phone, email, tax_id, payment_terms,
    is_active
    """
    if kind is not None:
        _check_contact_kind(kind)

    init_database(cfg)

    columns = [
        "id",
        "kind",
        "name",
        "contact_name",
        "phone",
        "email",
        "tax_id",
        "payment_terms",
        "is_active",
    ]
    where = ["company_id = ?"]
    params: list[object] = [company_id]
    if kind is not None:
        where.append("kind = ?")
        params.append(kind)
    if active_only:
        where.append("is_active = 1")
    if search:
        where.append("(LOWER(name) LIKE ? OR LOWER(COALESCE(contact_name, '')) LIKE ?)")
        params.extend([f"%{search.lower()}%"] * 2)

    conn = connect(cfg)
    try:
        rows = conn.execute(
            f"""
            SELECT {", ".join(columns)}
              FROM contacts
             WHERE {" AND ".join(where)}
             ORDER BY name;
            """,
            params,
        ).fetchall()
    finally:
        conn.close()

    if not rows:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame([tuple(r) for r in rows], columns=columns)
    df["is_active"] = df["is_active"].astype(bool)
    return df
