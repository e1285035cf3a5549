# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Spreadsheet I/O for Kaspit.

Bank statements and income/expense lists arrive as CSV or Excel files whose
column headers vary from one bank (or accountant) to another. Importing is a
three-step process:

1) ``read_table``        read the first sheet of the file into a DataFrame;
2) ``auto_map_columns``  guess which header feeds each canonical field,
                         then let the user override the guesses;
3) ``apply_mapping``     rename the mapped headers to canonical field keys,
                         after ``validate_mapping`` checked required fields.

Canonical fields
----------------
Each import target declares its fields as ``FieldSpec(key, label, required)``.
The label is the Hebrew header most local exports use, so that files
exported from the usual tools map without any manual step.

Value parsing
-------------
``parse_amount`` and ``parse_date`` are lenient converters used row by row by
the import services: bank exports often carry thousands separators,
currency symbols and local date formats (dd/mm/yyyy, dd.mm.yyyy).
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd

SUPPORTED_EXTENSIONS = (".csv", ".xlsx", ".xls")


@dataclass(frozen=True)
class FieldSpec:
    key: str
    label: str
    required: bool = False


BANK_FIELDS = (
    FieldSpec("date", "תאריך", True),
    FieldSpec("amount", "סכום", True),
    FieldSpec("description", "תיאור"),
    FieldSpec("balance", "יתרה"),
    FieldSpec("bank_name", "שם הבנק"),
    FieldSpec("account_number", "מספר חשבון"),
)

INCOME_FIELDS = (
    FieldSpec("amount_before_vat", "סכום (לפני מע״מ)", True),
    FieldSpec("date", "תאריך", True),
    FieldSpec("category_name", "קטגוריה"),
    FieldSpec("document_type", "סוג מסמך"),
    FieldSpec("description", "תיאור"),
    FieldSpec("invoice_number", "מספר מסמך"),
    FieldSpec("vat_exempt", "פטור ממע״מ"),
    FieldSpec("payment_status", "סטטוס"),
)

EXPENSE_FIELDS = (
    FieldSpec("amount", "סכום (כולל מע״מ)", True),
    FieldSpec("date", "תאריך", True),
    FieldSpec("category_name", "קטגוריה"),
    FieldSpec("description", "תיאור"),
    FieldSpec("invoice_number", "מספר חשבונית"),
    FieldSpec("vat_exempt", "פטור ממע״מ"),
    FieldSpec("payment_status", "סטטוס"),
)

FIELD_SETS: dict[str, tuple[FieldSpec, ...]] = {
    "bank": BANK_FIELDS,
    "income": INCOME_FIELDS,
    "expense": EXPENSE_FIELDS,
}

_AMOUNT_JUNK = re.compile(r"[^\d.\-]")
_DAY_FIRST = re.compile(r"^\s*(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{2,4})\s*$")


def read_table(path: Union[str, "os.PathLike[str]"]) -> pd.DataFrame:
    """
    Read a CSV or Excel file into a DataFrame.

    Only the first sheet of an Excel workbook is read. Header names are kept
    as-is (stripped of surrounding whitespace).

    Raises
    ------
    ValueError
        If the extension is not supported or the file has no data rows.
    FileNotFoundError
        If the file does not exist.
    """
    p = Path(path)
    ext = p.suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise ValueError(
            f"Unsupported file type {ext or '(none)'!r}: expected an Excel or CSV "
            f"file ({', '.join(SUPPORTED_EXTENSIONS)})."
        )
    if not p.is_file():
        raise FileNotFoundError(f"Input file not found: {p}")

    try:
        if ext == ".csv":
            df = pd.read_csv(p, dtype=object)
        else:
            df = pd.read_excel(p, sheet_name=0, dtype=object)
    except pd.errors.EmptyDataError as exc:
        raise ValueError(f"The file is empty: {p}") from exc

    df = df.dropna(how="all")
    if df.empty:
        raise ValueError(f"The file is empty: {p}")

    df.columns = [str(c).strip() for c in df.columns]
    return df.reset_index(drop=True)


def auto_map_columns(
    headers: Iterable[str],
    fields: Iterable[FieldSpec],
) -> dict[str, str]:
    """
    Guess the header feeding each field.

    A field is mapped when a header equals its label or its key,
    case-insensitively. Unmatched fields are left out of the result.

    Returns
    -------
    dict
        field key -> header name.
    """
    headers = list(headers)
    mapping: dict[str, str] = {}
    for field in fields:
        for header in headers:
            h = str(header).strip().lower()
            if h == field.label.lower() or h == field.key.lower():
                mapping[field.key] = header
                break
    return mapping


def validate_mapping(mapping: Mapping[str, str], fields: Iterable[FieldSpec]) -> None:
    """Raise ValueError naming every required field with no mapped header."""
    missing = [f.label for f in fields if f.required and not mapping.get(f.key)]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")


def apply_mapping(df: pd.DataFrame, mapping: Mapping[str, str]) -> pd.DataFrame:
    """
    Return a DataFrame holding only the mapped columns, under their field keys.

    Raises
    ------
    ValueError
        If a mapped header is not present in ``df``.
    """
    unknown = [h for h in mapping.values() if h and h not in df.columns]
    if unknown:
        raise ValueError(f"Unknown columns in mapping: {', '.join(map(str, unknown))}")

    out = pd.DataFrame(index=df.index)
    for key, header in mapping.items():
        if header:
            out[key] = df[header]
    return out


def parse_mapping_overrides(pairs: Optional[Iterable[str]]) -> dict[str, str]:
    """
    Parse ``field=header`` pairs given on the command line.

    Raises
    ------
    ValueError
        If a pair has no ``=`` separator.
    """
    result: dict[str, str] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"Invalid mapping {pair!r}, expected FIELD=HEADER.")
        key, header = pair.split("=", 1)
        result[key.strip()] = header.strip()
    return result


# ---------------------------------------------------------------------------
# Value parsing
# ---------------------------------------------------------------------------


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and pd.isna(value):
        return True
    if value is pd.NaT:
        return True
    return isinstance(value, str) and not value.strip()


def parse_amount(value: Any) -> float:
    """
    Parse a monetary amount leniently.

    Everything but digits, "." and "-" is stripped ("₪ 1,234.50" -> 1234.5).
    Values that still cannot be parsed yield 0.0.
    """
    if is_blank(value):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _AMOUNT_JUNK.sub("", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def parse_optional_amount(value: Any) -> float | None:
    if is_blank(value):
        return None
    return parse_amount(value)


def parse_date(value: Any) -> date:
    """
    Parse a date from a spreadsheet cell.

    Accepted inputs: ``date``/``datetime``/``pandas.Timestamp`` objects,
    ISO strings (``YYYY-MM-DD``, optionally followed by a time), and
    day-first strings (``dd/mm/yyyy``, ``dd.mm.yyyy``, ``dd-mm-yyyy``,
    two-digit years are read as 20xx).

    Raises
    ------
    ValueError
        If the value cannot be interpreted as a date.
    """
    if isinstance(value, pd.Timestamp):
        if pd.isna(value):
            raise ValueError("Missing date.")
        return value.date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if is_blank(value):
        raise ValueError("Missing date.")

    text = str(value).strip()
    m = _DAY_FIRST.match(text)
    if m:
        day, month, year = (int(g) for g in m.groups())
        if year < 100:
            year += 2000
        return date(year, month, day)

    try:
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise ValueError(f"Invalid date: {text!r}") from exc


def parse_boolean(value: Any) -> bool:
    """Spreadsheet truthiness: True, "true", "yes" and "כן" are true."""
    if value is True:
        return True
    if is_blank(value) or value is False:
        return False
    return str(value).strip().lower() in {"true", "yes", "כן", "1"}


def parse_text(value: Any) -> str | None:
    if is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()
