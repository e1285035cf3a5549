from datetime import date, datetime

import pandas as pd
import pytest

from kaspit.io import (
    BANK_FIELDS,
    EXPENSE_FIELDS,
    INCOME_FIELDS,
    apply_mapping,
    auto_map_columns,
    parse_amount,
    parse_boolean,
    parse_date,
    parse_mapping_overrides,
    parse_optional_amount,
    parse_text,
    read_table,
    validate_mapping,
)


def test_parse_amount_is_lenient():
    """Currency symbols and separators are stripped; garbage gives 0."""
    assert parse_amount("₪ 1,234.50") == 1234.5
    assert parse_amount("-250") == -250.0
    assert parse_amount(99) == 99.0
    assert parse_amount("n/a") == 0.0
    assert parse_amount(None) == 0.0
    assert parse_amount(float("nan")) == 0.0
    assert parse_optional_amount("") is None
    assert parse_optional_amount("12") == 12.0


def test_parse_date_formats():
    assert parse_date("2025-03-15") == date(2025, 3, 15)
    assert parse_date("2025-03-15 10:20:00") == date(2025, 3, 15)
    assert parse_date("15/03/2025") == date(2025, 3, 15)
    assert parse_date("15.03.25") == date(2025, 3, 15)
    assert parse_date(pd.Timestamp("2025-03-15")) == date(2025, 3, 15)
    assert parse_date(datetime(2025, 3, 15, 9, 0)) == date(2025, 3, 15)

    with pytest.raises(ValueError):
        parse_date("yesterday")
    with pytest.raises(ValueError):
        parse_date(None)


def test_parse_boolean_and_text():
    assert parse_boolean("כן") is True
    assert parse_boolean("Yes") is True
    assert parse_boolean(True) is True
    assert parse_boolean("לא") is False
    assert parse_boolean(None) is False

    assert parse_text("  INV-7 ") == "INV-7"
    assert parse_text(1024.0) == "1024"
    assert parse_text("") is None


def test_auto_map_columns_by_label_or_key():
    """Headers equal to the Hebrew label or the field key are recognised."""
    mapping = auto_map_columns(["תאריך", "Amount", "פרטים", "יתרה"], BANK_FIELDS)
    assert mapping == {"date": "תאריך", "amount": "Amount", "balance": "יתרה"}


def test_validate_mapping_names_missing_required_fields():
    with pytest.raises(ValueError) as exc:
        validate_mapping({"date": "תאריך"}, EXPENSE_FIELDS)
    assert "סכום" in str(exc.value)

    validate_mapping({"date": "d", "amount_before_vat": "a"}, INCOME_FIELDS)


def test_apply_mapping_renames_and_keeps_mapped_columns():
    df = pd.DataFrame({"תאריך": ["2025-01-01"], "סכום": ["100"], "הערה": ["x"]})
    out = apply_mapping(df, {"date": "תאריך", "amount": "סכום"})

    assert list(out.columns) == ["date", "amount"]
    assert out.loc[0, "amount"] == "100"

    with pytest.raises(ValueError):
        apply_mapping(df, {"date": "Date"})


def test_parse_mapping_overrides():
    assert parse_mapping_overrides(["amount = Sum", "date=Day"]) == {
        "amount": "Sum",
        "date": "Day",
    }
    assert parse_mapping_overrides(None) == {}
    with pytest.raises(ValueError):
        parse_mapping_overrides(["amount"])


def test_read_table_csv(tmp_path):
    """CSV files are read as text with stripped headers and no blank rows."""
    path = tmp_path / "bank.csv"
    path.write_text(
        " תאריך ,סכום,תיאור\n01/02/2025,-120.5,חשמל\n,,\n03/02/2025,5000,לקוח\n",
        encoding="utf-8",
    )

    df = read_table(path)

    assert list(df.columns) == ["תאריך", "סכום", "תיאור"]
    assert len(df) == 2
    assert df.loc[1, "תיאור"] == "לקוח"


def test_read_table_xlsx(tmp_path):
    path = tmp_path / "expenses.xlsx"
    pd.DataFrame({"date": ["2025-02-01"], "amount": [118.0]}).to_excel(path, index=False)

    df = read_table(path)
    assert list(df.columns) == ["date", "amount"]
    assert parse_amount(df.loc[0, "amount"]) == 118.0


def test_read_table_errors(tmp_path):
    with pytest.raises(ValueError):
        read_table(tmp_path / "notes.txt")
    with pytest.raises(FileNotFoundError):
        read_table(tmp_path / "missing.csv")

    empty = tmp_path / "empty.csv"
    empty.write_text("", encoding="utf-8")
    with pytest.raises(ValueError):
        read_table(empty)
