# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
VAT (מע״מ) report for a monthly or bimonthly reporting period.

Output VAT is the VAT charged on income, input VAT the VAT paid on expenses.
Only input VAT on expenses that are neither exempt nor flagged as
non-deductible is offset:

    vat_to_pay = output VAT - deductible input VAT

A negative result is a refund.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path

import pandas as pd

from .db import DatabaseConfig
from .formatting import month_name
from .ledger import EntriesFilter, LedgerEntry, load_entries
from .periods import Period, months_period

logger = logging.getLogger(__name__)

REPORT_PERIODS = ("monthly", "bimonthly")


@dataclass(frozen=True)
class VatReport:
    period: Period
    income_before_vat: float
    income_vat: float
    income_total: float
    income_count: int
    expense_before_vat: float
    expense_vat: float
    expense_vat_deductible: float
    expense_total: float
    expense_count: int
    vat_to_pay: float

    @property
    def is_refund(self) -> bool:
        return self.vat_to_pay < 0


def vat_period(year: int, month: int, mode: str = "monthly") -> Period:
    """
    Reporting period containing (year, month).

    Bimonthly periods pair Jan-Feb, Mar-Apr and so on: an even month belongs
    to the pair starting the month before.
    """
    if mode not in REPORT_PERIODS:
        raise ValueError(
            f"Invalid VAT report period: {mode!r} (expected one of {', '.join(REPORT_PERIODS)})."
        )
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")

    if mode == "monthly":
        period = months_period(year, month, 1)
        return Period(period.start, period.end, f"{month_name(month)} {year}")

    start_month = month - 1 if month % 2 == 0 else month
    period = months_period(year, start_month, 2)
    label = f"{month_name(start_month)} - {month_name(start_month + 1)} {year}"
    return Period(period.start, period.end, label)


def _before_vat(entry: LedgerEntry) -> float:
    # A missing (or zero) net amount counts as the full amount.
    return entry.amount_before_vat or entry.amount


def vat_report(cfg: DatabaseConfig, company_id: int, period: Period) -> VatReport:
    """Summarise output and input VAT for every entry dated within ``period``."""
    incomes = load_entries(
        cfg, company_id, EntriesFilter(kind="income", start=period.start, end=period.end)
    )
    expenses = load_entries(
        cfg, company_id, EntriesFilter(kind="expense", start=period.start, end=period.end)
    )

    income_vat = sum(e.vat_amount or 0.0 for e in incomes)
    deductible = sum(
        e.vat_amount or 0.0 for e in expenses if e.vat_deductible and not e.vat_exempt
    )

    report = VatReport(
        period=period,
        income_before_vat=round(sum(_before_vat(e) for e in incomes), 2),
        income_vat=round(income_vat, 2),
        income_total=round(sum(e.amount for e in incomes), 2),
        income_count=len(incomes),
        expense_before_vat=round(sum(_before_vat(e) for e in expenses), 2),
        expense_vat=round(sum(e.vat_amount or 0.0 for e in expenses), 2),
        expense_vat_deductible=round(deductible, 2),
        expense_total=round(sum(e.amount for e in expenses), 2),
        expense_count=len(expenses),
        vat_to_pay=round(income_vat - deductible, 2),
    )
    logger.debug("VAT report for company #%s, %s: %s", company_id, period.label, report)
    return report


def vat_report_frame(report: VatReport) -> pd.DataFrame:
    """Two-column (item, value) view of a report, in display order."""
    values = asdict(report)
    period = values.pop("period")
    rows = [
        ("period", period["label"]),
        ("start", period["start"].isoformat()),
        ("end", period["end"].isoformat()),
    ]
    rows.extend(values.items())
    return pd.DataFrame(rows, columns=["item", "value"])


def export_vat_report(report: VatReport, path: str | Path) -> Path:
    """Write ``report`` as a two-column CSV and return the written path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    vat_report_frame(report).to_csv(path, index=False)
    logger.info("VAT report for %s written to %s", report.period.label, path)
    return path
