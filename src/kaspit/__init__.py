# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Kaspit (כספית)
--------------

Bookkeeping for small Israeli businesses, with a command-line interface on
top of a SQLite database shared by several companies.

Main capabilities:
- income and expenses with VAT split, customers, suppliers and categories,
- spreadsheet import (CSV / Excel) with column mapping and duplicate
  detection, for bank statements as well as income and expenses,
- bank reconciliation with scored match suggestions,
- monthly budgets with automatic suggestions,
- monthly or bimonthly VAT reports,
- cash-flow forecast, recurring expense templates, collection of unpaid
  invoices and dashboard insights.

Every row belongs to a company; every operation is scoped to the company
of the acting user.


Version: 0.3.0

Usage:
    kaspit --help
"""

__all__ = ["ledger", "bank", "reconciliation", "budget", "vat"]

__version__ = "0.3.0"
