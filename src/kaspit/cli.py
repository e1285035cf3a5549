# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Command-Line Interface (CLI) for Kaspit.

The CLI is intentionally thin: it parses arguments, resolves the acting
user and its company, calls the service modules and prints their results.
It does not implement bookkeeping logic itself.


Company scope
-------------

Every data command acts on the company of the user given with
``--user EMAIL`` (or the ``KASPIT_USER`` environment variable). Only
``init``, ``company create|list`` and the creation of the first user of a
company work without one; managing the users or the profile of a company
requires a member of that company.


Commands
--------

    init
    company create|list|update
    user create|list|delete|rename
    category add|list|deactivate|reactivate|delete
    contact add|list|deactivate|reactivate|delete
    income add|list|import|pay|set-method|link|cancel
    expense add|list|import|pay|set-method
    bank import|list|summary|batches|tag|classify
    reconcile suggest|approve|create|unmatch
    budget set|status|suggest
    vat report
    forecast
    recurring add|list|generate|toggle
    report monthly|categories|trend
    insights
    collection [--remind ID | --follow-up ID | --pay ID | --history ID]


Errors
------

Invalid input, missing rows and cross-company access are reported as a
single line on stderr with exit status 1. Argument errors exit with
status 2 (argparse).


Example usage
-------------

    kaspit init
    kaspit company create "Studio Noa" --tax-id 515151515
    kaspit user create noa@example.com --company-id 1 --role admin
    export KASPIT_USER=noa@example.com
    kaspit bank import data/leumi_2025_03.xlsx
    kaspit reconcile suggest
    kaspit vat report --month 2025-03 --mode bimonthly
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import Optional

import pandas as pd

from . import __version__
from .bank import (
    TRANSACTION_TYPES,
    BankFilter,
    TransactionUpdate,
    apply_to_similar,
    bank_summary,
    import_bank_transactions,
    list_transactions,
    update_transaction,
)
from .budget import (
    apply_suggestions,
    budget_status,
    budget_totals,
    set_budget,
    suggest_budget,
)
from .catalog import (
    CATEGORY_TYPES,
    CONTACT_KINDS,
    create_category,
    create_contact,
    deactivate_category,
    deactivate_contact,
    delete_category,
    delete_contact,
    list_categories,
    list_contacts,
    reactivate_category,
    reactivate_contact,
)
from .collection import (
    COLLECTION_STATUSES,
    REMINDER_CHANNELS,
    collection_items,
    mark_collected,
    needs_reminder,
    record_reminder,
    reminder_history,
    reminder_message,
    update_follow_up,
    weekly_buckets,
    whatsapp_number,
)
from .companies import (
    ROLES,
    CompanyUpdate,
    User,
    create_company,
    create_user,
    delete_user,
    get_company,
    get_user_by_email,
    list_companies,
    list_users,
    require_company_access,
    touch_last_login,
    update_company,
    update_user_name,
)
from .config import AppConfig, load_app_config
from .db import init_database, list_import_batches
from .forecast import cash_flow_forecast, forecast_frame
from .formatting import format_currency, translate_status
from .insights import generate_insights
from .io import (
    FIELD_SETS,
    apply_mapping,
    auto_map_columns,
    parse_mapping_overrides,
    read_table,
    validate_mapping,
)
from .ledger import (
    DOCUMENT_STATUSES,
    INCOME_DOCUMENT_TYPES,
    PAYMENT_METHODS,
    PAYMENT_STATUSES,
    EntriesFilter,
    NewEntry,
    add_entry,
    bulk_update_payment_method,
    cancel_document,
    category_breakdown,
    compute_vat_split,
    has_vat,
    import_entries,
    link_document,
    mark_paid,
    monthly_totals,
    search_entries,
    trend,
)
from .periods import _today, determine_period_from_args, parse_month
from .reconciliation import (
    SPECIAL_TYPE_LABELS,
    approve_match,
    build_suggestions,
    classify_transaction,
    create_entry_from_transaction,
    matched_count,
    unmatch,
)
from .recurring import (
    EXPENSE_TYPES,
    FREQUENCIES,
    create_recurring_expense,
    estimated_monthly_total,
    generate_due_expenses,
    list_recurring_expenses,
    monthly_equivalent,
    toggle_active,
)
from .vat import REPORT_PERIODS, export_vat_report, vat_period, vat_report

logger = logging.getLogger(__name__)

USER_ENV_VAR = "KASPIT_USER"

# Subcommands shared by categories and contacts: (action, help template).
_STATE_ACTIONS = (
    ("deactivate", "Hide a {} from lists and pickers."),
    ("reactivate", "Show a deactivated {} again."),
    ("delete", "Delete a {} nothing refers to."),
)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_period_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--month", help="Calendar month (YYYY-MM).")
    parser.add_argument(
        "--from-date",
        dest="from_date",
        help="Custom period start date (YYYY-MM-DD). Ignored when --month is set.",
    )
    parser.add_argument(
        "--to-date",
        dest="to_date",
        help="Custom period end date (YYYY-MM-DD). Ignored when --month is set.",
    )


def _add_import_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("path", help="CSV, XLSX or XLS file to import.")
    parser.add_argument(
        "--map",
        dest="mapping",
        action="append",
        metavar="FIELD=HEADER",
        help=(
            "Map a field to a column header, overriding the automatic "
            "mapping. May be repeated."
        ),
    )


def _add_entry_arguments(parser: argparse.ArgumentParser, kind: str) -> None:
    parser.add_argument("amount", type=float, help="Amount typed on the document.")
    parser.add_argument("--date", help="Document date (YYYY-MM-DD). Defaults to today.")
    parser.add_argument("--due-date", dest="due_date", help="Due date (YYYY-MM-DD).")
    parser.add_argument("--category-id", dest="category_id", type=int)
    parser.add_argument(
        "--contact-id",
        dest="contact_id",
        type=int,
        help="Customer (income) or supplier (expense) id.",
    )
    parser.add_argument("--description")
    parser.add_argument("--invoice", dest="invoice_number", help="Invoice number.")
    parser.add_argument(
        "--status",
        dest="payment_status",
        choices=PAYMENT_STATUSES,
        default="pending",
    )
    parser.add_argument("--method", dest="payment_method", choices=PAYMENT_METHODS)
    parser.add_argument("--vat-exempt", dest="vat_exempt", action="store_true")
    parser.add_argument(
        "--recurring-day",
        dest="recurring_day",
        type=int,
        help="Flag the entry as recurring on this day of the month.",
    )
    if kind == "income":
        parser.add_argument(
            "--document-type",
            dest="document_type",
            choices=INCOME_DOCUMENT_TYPES,
            default="tax_invoice",
        )
        parser.add_argument(
            "--total",
            dest="amount_includes_vat",
            action="store_true",
            help="The amount already includes VAT (default: amount before VAT).",
        )
        parser.add_argument(
            "--closes-invoice",
            dest="linked_document_id",
            type=int,
            help="Id of the business invoice this tax document closes.",
        )
    else:
        parser.add_argument(
            "--before-vat",
            dest="amount_before_vat_given",
            action="store_true",
            help="The amount is before VAT (default: amount including VAT).",
        )
        parser.add_argument(
            "--not-deductible",
            dest="vat_not_deductible",
            action="store_true",
            help="Input VAT of this expense cannot be deducted.",
        )


def _add_entries_group(subparsers, kind: str, help_text: str) -> None:
    group = subparsers.add_parser(kind, help=help_text)
    sub = group.add_subparsers(dest="action", metavar="action")

    add = sub.add_parser("add", help=f"Record a new {kind} entry.")
    _add_entry_arguments(add, kind)

    lst = sub.add_parser("list", help=f"List {kind} entries.")
    _add_period_arguments(lst)
    lst.add_argument("--status", dest="payment_status", choices=PAYMENT_STATUSES)
    lst.add_argument("--category-id", dest="category_id", type=int)
    lst.add_argument("--contact-id", dest="contact_id", type=int)
    lst.add_argument("--search", help="Text searched in description, invoice and name.")
    lst.add_argument("--unreconciled", action="store_true")
    lst.add_argument("--doc-status", dest="document_status", choices=DOCUMENT_STATUSES)
    lst.add_argument("--limit", type=int)

    imp = sub.add_parser("import", help=f"Import {kind} entries from a spreadsheet.")
    _add_import_arguments(imp)

    pay = sub.add_parser("pay", help="Mark an entry as paid.")
    pay.add_argument("entry_id", type=int)
    pay.add_argument("--date", help="Payment date (YYYY-MM-DD). Defaults to today.")
    pay.add_argument("--method", dest="payment_method", choices=PAYMENT_METHODS)

    set_method = sub.add_parser("set-method", help="Set the payment method of several entries.")
    set_method.add_argument("entry_ids", type=int, nargs="+")
    set_method.add_argument(
        "--method", dest="payment_method", choices=PAYMENT_METHODS, required=True
    )

    if kind == "income":
        link = sub.add_parser("link", help="Close a business invoice with a tax document.")
        link.add_argument("invoice_id", type=int)
        link.add_argument("document_id", type=int)
        cancel = sub.add_parser("cancel", help="Cancel an income document.")
        cancel.add_argument("entry_id", type=int)


def _build_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the CLI."""
    ap = argparse.ArgumentParser(
        prog="kaspit",
        description=(
            "Kaspit - bookkeeping for small businesses: income, expenses, bank "
            "reconciliation, budgets, VAT and cash-flow forecast."
        ),
    )
    ap.add_argument(
        "--version",
        action="version",
        version=f"kaspit {__version__}",
    )
    ap.add_argument(
        "--config",
        dest="config_path",
        help=(
            "Path to the TOML configuration file. "
            "If omitted, 'kaspit_config.toml' in the current directory is used."
        ),
    )
    ap.add_argument(
        "--user",
        help=f"E-mail of the acting user (defaults to ${USER_ENV_VAR}).",
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log service activity (-v for INFO, -vv for DEBUG).",
    )

    subparsers = ap.add_subparsers(dest="command", metavar="command")

    subparsers.add_parser("init", help="Create the database and its schema.")

    # company / user
    company = subparsers.add_parser("company", help="Manage companies.")
    company_sub = company.add_subparsers(dest="action", metavar="action")
    company_create = company_sub.add_parser("create", help="Create a company.")
    company_create.add_argument("name")
    company_create.add_argument("--tax-id", dest="tax_id")
    company_create.add_argument("--address")
    company_create.add_argument("--phone")
    company_create.add_argument("--email")
    company_sub.add_parser("list", help="List companies.")
    company_update = company_sub.add_parser(
        "update", help="Update the profile of the acting user's company."
    )
    company_update.add_argument("--name")
    company_update.add_argument("--tax-id", dest="tax_id")
    company_update.add_argument("--address")
    company_update.add_argument("--phone")
    company_update.add_argument("--email")

    user = subparsers.add_parser("user", help="Manage users.")
    user_sub = user.add_subparsers(dest="action", metavar="action")
    user_create = user_sub.add_parser("create", help="Create a user in a company.")
    user_create.add_argument("email")
    user_create.add_argument("--company-id", dest="company_id", type=int, required=True)
    user_create.add_argument("--role", choices=ROLES, default="admin")
    user_create.add_argument("--name", dest="full_name")
    user_list = user_sub.add_parser("list", help="List the users of a company.")
    user_list.add_argument(
        "--company-id", dest="company_id", type=int, help="Defaults to the acting user's company."
    )
    user_delete = user_sub.add_parser("delete", help="Remove a user of your company.")
    user_delete.add_argument("user_id", type=int)
    user_rename = user_sub.add_parser("rename", help="Change your display name.")
    user_rename.add_argument("--name", dest="full_name", required=True)

    # category / contact
    category = subparsers.add_parser("category", help="Manage categories.")
    category_sub = category.add_subparsers(dest="action", metavar="action")
    category_add = category_sub.add_parser("add", help="Create a category.")
    category_add.add_argument("name")
    category_add.add_argument("--type", dest="category_type", choices=CATEGORY_TYPES, required=True)
    category_add.add_argument("--color", help="Hex colour (picked from the palette if omitted).")
    category_list = category_sub.add_parser("list", help="List active categories.")
    category_list.add_argument("--type", dest="category_type", choices=CATEGORY_TYPES)
    for action, help_text in _STATE_ACTIONS:
        category_sub.add_parser(action, help=help_text.format("category")).add_argument(
            "category_id", type=int
        )

    contact = subparsers.add_parser("contact", help="Manage customers and suppliers.")
    contact_sub = contact.add_subparsers(dest="action", metavar="action")
    contact_add = contact_sub.add_parser("add", help="Create a customer or supplier.")
    contact_add.add_argument("name")
    contact_add.add_argument("--kind", choices=CONTACT_KINDS, required=True)
    contact_add.add_argument("--contact-name", dest="contact_name")
    contact_add.add_argument("--phone")
    contact_add.add_argument("--email")
    contact_add.add_argument("--tax-id", dest="tax_id")
    contact_add.add_argument("--payment-terms", dest="payment_terms", type=int, default=30)
    contact_list = contact_sub.add_parser("list", help="List active contacts.")
    contact_list.add_argument("--kind", choices=CONTACT_KINDS)
    contact_list.add_argument("--search")
    for action, help_text in _STATE_ACTIONS:
        contact_sub.add_parser(action, help=help_text.format("contact")).add_argument(
            "contact_id", type=int
        )

    # income / expense
    _add_entries_group(subparsers, "income", "Manage income entries.")
    _add_entries_group(subparsers, "expense", "Manage expense entries.")

    # bank
    bank = subparsers.add_parser("bank", help="Bank transactions.")
    bank_sub = bank.add_subparsers(dest="action", metavar="action")
    bank_import = bank_sub.add_parser("import", help="Import a bank statement.")
    _add_import_arguments(bank_import)
    bank_list = bank_sub.add_parser("list", help="List bank transactions.")
    bank_list.add_argument("--search")
    bank_list.add_argument("--month", help="Month (YYYY-MM).")
    bank_list.add_argument("--type", dest="transaction_type", choices=TRANSACTION_TYPES)
    matched_group = bank_list.add_mutually_exclusive_group()
    matched_group.add_argument("--matched", dest="matched", action="store_true", default=None)
    matched_group.add_argument(
        "--unmatched", dest="matched", action="store_false", default=None
    )
    bank_summary_parser = bank_sub.add_parser("summary", help="Totals and balance.")
    bank_summary_parser.add_argument("--month", help="Month (YYYY-MM).")
    bank_sub.add_parser("batches", help="List past imports.")
    bank_tag = bank_sub.add_parser("tag", help="Tag a transaction.")
    bank_tag.add_argument("transaction_id", type=int)
    bank_tag.add_argument("--type", dest="transaction_type", choices=TRANSACTION_TYPES)
    bank_tag.add_argument("--recurring-label", dest="recurring_label")
    bank_tag.add_argument("--notes")
    bank_tag.add_argument(
        "--apply-similar",
        dest="apply_similar",
        action="store_true",
        help="Also tag transactions with the same description and amount.",
    )
    bank_classify = bank_sub.add_parser(
        "classify", help="Classify a transaction as a special movement."
    )
    bank_classify.add_argument("transaction_id", type=int)
    bank_classify.add_argument("transaction_type", choices=sorted(SPECIAL_TYPE_LABELS))

    # reconcile
    reconcile = subparsers.add_parser("reconcile", help="Bank reconciliation.")
    reconcile_sub = reconcile.add_subparsers(dest="action", metavar="action")
    reconcile_sub.add_parser("suggest", help="Suggest matches for unmatched transactions.")
    approve = reconcile_sub.add_parser("approve", help="Link a transaction to an entry.")
    approve.add_argument("transaction_id", type=int)
    approve.add_argument("kind", choices=("income", "expense"))
    approve.add_argument("entry_id", type=int)
    create = reconcile_sub.add_parser(
        "create", help="Create an entry from a transaction and link it."
    )
    create.add_argument("transaction_id", type=int)
    create.add_argument("--category-id", dest="category_id", type=int)
    create.add_argument("--contact-id", dest="contact_id", type=int)
    create.add_argument(
        "--new-contact",
        dest="new_contact_name",
        help="Create a customer / supplier with this name.",
    )
    create.add_argument("--description")
    create.add_argument("--invoice", dest="invoice_number")
    unmatch_parser = reconcile_sub.add_parser("unmatch", help="Remove a link.")
    unmatch_parser.add_argument("transaction_id", type=int)

    # budget
    budget = subparsers.add_parser("budget", help="Monthly budgets.")
    budget_sub = budget.add_subparsers(dest="action", metavar="action")
    budget_set = budget_sub.add_parser("set", help="Set the budget of a category.")
    budget_set.add_argument("category_id", type=int)
    budget_set.add_argument("amount", type=float)
    budget_set.add_argument("--month", help="Month (YYYY-MM). Defaults to this month.")
    budget_status_parser = budget_sub.add_parser("status", help="Budget vs actual.")
    budget_status_parser.add_argument("--month", help="Month (YYYY-MM).")
    budget_suggest = budget_sub.add_parser("suggest", help="Suggest budgets from history.")
    budget_suggest.add_argument("--month", help="Month (YYYY-MM).")
    budget_suggest.add_argument("--apply", action="store_true", help="Save the suggestions.")

    # vat
    vat = subparsers.add_parser("vat", help="VAT reports.")
    vat_sub = vat.add_subparsers(dest="action", metavar="action")
    vat_report_parser = vat_sub.add_parser("report", help="VAT report for a period.")
    vat_report_parser.add_argument("--month", help="Month (YYYY-MM) within the period.")
    vat_report_parser.add_argument(
        "--mode",
        choices=REPORT_PERIODS,
        help="Reporting period (defaults to vat.report_period from config).",
    )
    vat_report_parser.add_argument("--output", help="Write the report to this CSV file.")

    # forecast
    forecast = subparsers.add_parser("forecast", help="Cash-flow forecast.")
    forecast.add_argument("--months", type=int, help="Number of months to project.")

    # recurring
    recurring = subparsers.add_parser("recurring", help="Recurring expense templates.")
    recurring_sub = recurring.add_subparsers(dest="action", metavar="action")
    recurring_add = recurring_sub.add_parser("add", help="Create a template.")
    recurring_add.add_argument("name")
    recurring_add.add_argument("amount", type=float)
    recurring_add.add_argument("--frequency", choices=FREQUENCIES, default="monthly")
    recurring_add.add_argument("--day", dest="day_of_month", type=int)
    recurring_add.add_argument(
        "--weekday", dest="day_of_week", type=int, help="Sunday = 0 ... Saturday = 6."
    )
    recurring_add.add_argument("--month-of-year", dest="month_of_year", type=int)
    recurring_add.add_argument("--category-id", dest="category_id", type=int)
    recurring_add.add_argument("--supplier-id", dest="supplier_id", type=int)
    recurring_add.add_argument("--description")
    recurring_add.add_argument("--start", dest="start_date")
    recurring_add.add_argument("--end", dest="end_date")
    recurring_add.add_argument(
        "--type", dest="expense_type", choices=sorted(EXPENSE_TYPES), default="other"
    )
    recurring_sub.add_parser("list", help="List templates.")
    recurring_sub.add_parser("generate", help="Create the expenses due this cycle.")
    recurring_toggle = recurring_sub.add_parser("toggle", help="Pause or resume a template.")
    recurring_toggle.add_argument("recurring_id", type=int)

    # report
    report = subparsers.add_parser("report", help="Income / expense reports.")
    report_sub = report.add_subparsers(dest="action", metavar="action")
    report_monthly = report_sub.add_parser("monthly", help="Totals per month of a year.")
    report_monthly.add_argument("--year", type=int)
    report_categories = report_sub.add_parser("categories", help="Breakdown by category.")
    report_categories.add_argument("--kind", choices=("income", "expense"), default="expense")
    _add_period_arguments(report_categories)
    report_trend = report_sub.add_parser("trend", help="Month-over-month changes.")
    report_trend.add_argument("--year", type=int)

    # insights / collection
    subparsers.add_parser("insights", help="Alerts and recommendations for this month.")
    collection = subparsers.add_parser("collection", help="Unpaid customer invoices.")
    collection_action = collection.add_mutually_exclusive_group()
    collection_action.add_argument(
        "--remind",
        dest="remind_entry_id",
        type=int,
        help="Print a reminder message for this income entry and record it.",
    )
    collection_action.add_argument(
        "--follow-up",
        dest="follow_up_entry_id",
        type=int,
        help="Set the follow-up status of this income entry (see --set-status).",
    )
    collection_action.add_argument(
        "--pay", dest="pay_entry_id", type=int, help="Mark this income entry as paid."
    )
    collection_action.add_argument(
        "--history", dest="history_entry_id", type=int, help="Reminders sent for this entry."
    )
    collection.add_argument("--channel", choices=REMINDER_CHANNELS, default="whatsapp")
    collection.add_argument(
        "--status",
        dest="collection_status",
        choices=COLLECTION_STATUSES,
        help="Only list invoices in this follow-up status.",
    )
    collection.add_argument("--set-status", dest="new_status", choices=COLLECTION_STATUSES)
    collection.add_argument("--promised-date", dest="promised_date", help="YYYY-MM-DD.")
    collection.add_argument("--notes")
    collection.add_argument("--date", help="Payment date (YYYY-MM-DD). Defaults to today.")
    collection.add_argument("--method", dest="payment_method", choices=PAYMENT_METHODS)

    return ap


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_optional_date(value: Optional[str]) -> Optional[date]:
    """
    Parse an optional CLI date argument (YYYY-MM-DD).

    Raises
    ------
    ValueError
        If the date format is invalid.
    """
    if value is None:
        return None

    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"Invalid date format: {value!r}. Expected YYYY-MM-DD.") from exc


def _month_or_current(value: Optional[str]) -> tuple[int, int]:
    if value:
        return parse_month(value)
    today = _today()
    return today.year, today.month


def _resolve_user(args: argparse.Namespace, config: AppConfig) -> User:
    email = args.user or os.environ.get(USER_ENV_VAR)
    if not email:
        raise ValueError(f"No user given: use --user EMAIL or set {USER_ENV_VAR}.")
    user = get_user_by_email(config.database, email)
    return touch_last_login(config.database, user.id)


def _money(config: AppConfig, amount: float) -> str:
    return format_currency(amount, config.display.currency, config.display.decimals)


def _print_frame(df: pd.DataFrame, empty_message: str) -> None:
    if df.empty:
        print(empty_message)
        return
    print(df.to_string(index=False))


def _mapped_table(path: str, kind: str, overrides) -> pd.DataFrame:
    """Read a spreadsheet and rename its columns to the fields of ``kind``."""
    df = read_table(path)
    fields = FIELD_SETS[kind]
    mapping = auto_map_columns(df.columns, fields)
    mapping.update(parse_mapping_overrides(overrides))
    validate_mapping(mapping, fields)
    logger.info("Column mapping for %s: %s", path, mapping)
    return apply_mapping(df, mapping)


# ---------------------------------------------------------------------------
# Handlers without company scope
# ---------------------------------------------------------------------------


def _handle_init(args: argparse.Namespace, config: AppConfig) -> None:
    init_database(config.database)
    print(f"Database ready at {config.database.path}")


def _handle_company(args: argparse.Namespace, config: AppConfig) -> None:
    if args.action == "create":
        company = create_company(
            config.database,
            args.name,
            tax_id=args.tax_id,
            address=args.address,
            phone=args.phone,
            email=args.email,
        )
        print(f"Created company #{company.id}: {company.name}")
    elif args.action == "list":
        companies = list_companies(config.database)
        if not companies:
            print("No companies yet.")
        for c in companies:
            print(f"#{c.id}  {c.name}  {c.tax_id or ''}".rstrip())
    elif args.action == "update":
        acting = _resolve_user(args, config)
        company = update_company(
            config.database,
            acting.company_id,
            CompanyUpdate(
                name=args.name,
                tax_id=args.tax_id,
                address=args.address,
                phone=args.phone,
                email=args.email,
            ),
        )
        print(f"Updated company #{company.id}: {company.name}")
    else:
        print("Available subcommands are: 'create', 'list', 'update'.")


def _handle_user(args: argparse.Namespace, config: AppConfig) -> None:
    cfg = config.database

    if args.action == "create":
        # The first user of a company is created without an acting user.
        if list_users(cfg, args.company_id):
            require_company_access(_resolve_user(args, config), args.company_id)
        user = create_user(
            cfg,
            args.company_id,
            args.email,
            args.role,
            full_name=args.full_name,
        )
        print(f"Created user #{user.id}: {user.email} ({user.role}) in company #{user.company_id}")
    elif args.action == "list":
        acting = _resolve_user(args, config)
        company_id = args.company_id if args.company_id is not None else acting.company_id
        require_company_access(acting, company_id)
        for u in list_users(cfg, company_id):
            print(f"#{u.id}  {u.email}  {u.role}  {u.full_name or ''}".rstrip())
    elif args.action == "delete":
        delete_user(cfg, _resolve_user(args, config), args.user_id)
        print(f"Deleted user #{args.user_id}.")
    elif args.action == "rename":
        acting = _resolve_user(args, config)
        user = update_user_name(cfg, acting.id, args.full_name)
        print(f"User #{user.id} is now {user.full_name or user.email}.")
    else:
        print("Available subcommands are: 'create', 'list', 'delete', 'rename'.")


# ---------------------------------------------------------------------------
# Company-scoped handlers
# ---------------------------------------------------------------------------


def _handle_category(args: argparse.Namespace, config: AppConfig, user: User) -> None:
    if args.action == "add":
        category = create_category(
            config.database,
            user.company_id,
            args.name,
            args.category_type,
            color=args.color,
        )
        print(f"Created {category.type} category #{category.id}: {category.name} ({category.color})")
    elif args.action == "list":
        categories = list_categories(config.database, user.company_id, args.category_type)
        if not categories:
            print("No categories found.")
        for c in categories:
            print(f"#{c.id}  {c.type:<7}  {c.color}  {c.name}")
    elif args.action == "deactivate":
        category = deactivate_category(config.database, user.company_id, args.category_id)
        print(f"Category #{category.id} ({category.name}) deactivated.")
    elif args.action == "reactivate":
        category = reactivate_category(config.database, user.company_id, args.category_id)
        print(f"Category #{category.id} ({category.name}) reactivated.")
    elif args.action == "delete":
        delete_category(config.database, user.company_id, args.category_id)
        print(f"Deleted category #{args.category_id}.")
    else:
        print("Available subcommands are: 'add', 'list', 'deactivate', 'reactivate', 'delete'.")


def _handle_contact(args: argparse.Namespace, config: AppConfig, user: User) -> None:
    if args.action == "add":
        contact = create_contact(
            config.database,
            user.company_id,
            args.kind,
            args.name,
            contact_name=args.contact_name,
            phone=args.phone,
            email=args.email,
            tax_id=args.tax_id,
            payment_terms=args.payment_terms,
        )
        print(f"Created {contact.kind} #{contact.id}: {contact.name}")
    elif args.action == "list":
        df = list_contacts(config.database, user.company_id, args.kind, search=args.search)
        _print_frame(df, "No contacts found.")
    elif args.action == "deactivate":
        contact = deactivate_contact(config.database, user.company_id, args.contact_id)
        print(f"Contact #{contact.id} ({contact.name}) deactivated.")
    elif args.action == "reactivate":
        contact = reactivate_contact(config.database, user.company_id, args.contact_id)
        print(f"Contact #{contact.id} ({contact.name}) reactivated.")
    elif args.action == "delete":
        delete_contact(config.database, user.company_id, args.contact_id)
        print(f"Deleted contact #{args.contact_id}.")
    else:
        print("Available subcommands are: 'add', 'list', 'deactivate', 'reactivate', 'delete'.")


def _new_entry_from_args(args: argparse.Namespace, kind: str, vat_rate: float) -> NewEntry:
    document_type = getattr(args, "document_type", None)
    if has_vat(kind, document_type, args.vat_exempt):
        if kind == "income":
            mode = "total" if args.amount_includes_vat else "before_vat"
        else:
            mode = "before_vat" if args.amount_before_vat_given else "total"
        before, vat, total = compute_vat_split(args.amount, vat_rate, mode)
    else:
        before, vat, total = compute_vat_split(args.amount, vat_rate, exempt=True)

    return NewEntry(
        kind=kind,
        amount=total,
        amount_before_vat=before,
        vat_amount=vat,
        vat_exempt=args.vat_exempt,
        vat_deductible=not getattr(args, "vat_not_deductible", False),
        date=_parse_optional_date(args.date) or _today(),
        due_date=_parse_optional_date(args.due_date),
        category_id=args.category_id,
        contact_id=args.contact_id,
        description=args.description,
        invoice_number=args.invoice_number,
        document_type=document_type,
        payment_status=args.payment_status,
        payment_method=args.payment_method,
        payment_date=_today() if args.payment_status == "paid" else None,
        is_recurring=args.recurring_day is not None,
        recurring_day=args.recurring_day,
        linked_document_id=getattr(args, "linked_document_id", None),
    )


def _handle_entries(args: argparse.Namespace, config: AppConfig, user: User) -> None:
    kind = args.command
    cfg = config.database

    if args.action == "add":
        entry = add_entry(
            cfg,
            user.company_id,
            _new_entry_from_args(args, kind, config.vat.rate),
            created_by=user.id,
        )
        print(
            f"Recorded {kind} #{entry.id}: {_money(config, entry.amount)} "
            f"(before VAT {_money(config, entry.amount_before_vat or entry.amount)}, "
            f"VAT {_money(config, entry.vat_amount or 0)})"
        )

    elif args.action == "list":
        has_period = args.month or args.from_date or args.to_date
        period = determine_period_from_args(args) if has_period else None
        filters = EntriesFilter(
            kind=kind,
            start=period.start if period else None,
            end=period.end if period else None,
            category_id=args.category_id,
            contact_id=args.contact_id,
            payment_status=args.payment_status,
            text=args.search,
            unreconciled_only=args.unreconciled,
            document_status=args.document_status,
        )
        df = search_entries(cfg, user.company_id, filters, limit=args.limit)
        if period is not None:
            print(f"Applied period: {period.label} ({period.start} → {period.end})")
        if df.empty:
            print(f"No {kind} entries found for the given criteria.")
            return
        columns = [
            "id",
            "date",
            "amount",
            "counterparty",
            "category",
            "description",
            "invoice_number",
            "payment_status",
        ]
        if kind == "income":
            columns.append("document_status")
        df_display = df[columns].copy()
        df_display["date"] = df_display["date"].dt.date.astype(str)
        df_display["payment_status"] = df_display["payment_status"].map(translate_status)
        print(df_display.to_string(index=False))
        print()
        print(f"Total entries: {len(df)} | Total amount: {_money(config, float(df['amount'].sum()))}")

    elif args.action == "import":
        df = _mapped_table(args.path, kind, args.mapping)
        stats = import_entries(
            cfg,
            user.company_id,
            kind,
            df,
            source_label=Path(args.path).name,
            vat_rate=config.vat.rate,
            created_by=user.id,
        )
        print(
            f"Imported batch #{stats.batch_id}: {stats.rows_inserted} {kind} entries, "
            f"{stats.duplicates_detected} duplicates skipped."
        )

    elif args.action == "pay":
        entry = mark_paid(
            cfg,
            user.company_id,
            args.entry_id,
            payment_date=_parse_optional_date(args.date) or _today(),
            payment_method=args.payment_method,
        )
        print(f"{kind.capitalize()} #{entry.id} marked as paid on {entry.payment_date}.")

    elif args.action == "set-method":
        updated = bulk_update_payment_method(
            cfg, user.company_id, args.entry_ids, args.payment_method
        )
        print(f"Payment method set to {args.payment_method} on {updated} {kind} entries.")

    elif args.action == "link":
        invoice = link_document(cfg, user.company_id, args.invoice_id, args.document_id)
        print(f"Invoice #{invoice.id} closed by document #{args.document_id}.")

    elif args.action == "cancel":
        entry = cancel_document(cfg, user.company_id, args.entry_id)
        print(f"Income #{entry.id} cancelled.")

    else:
        actions = ["add", "list", "import", "pay", "set-method"]
        if kind == "income":
            actions += ["link", "cancel"]
        print(f"Available subcommands are: {', '.join(repr(a) for a in actions)}.")


def _handle_bank(args: argparse.Namespace, config: AppConfig, user: User) -> None:
    cfg = config.database

    if args.action == "import":
        df = _mapped_table(args.path, "bank", args.mapping)
        stats = import_bank_transactions(cfg, user.company_id, df, Path(args.path).name)
        print(
            f"Imported batch #{stats.batch_id}: {stats.rows_inserted} transactions, "
            f"{stats.duplicates_detected} duplicates skipped."
        )

    elif args.action == "list":
        filters = BankFilter(
            search=args.search,
            month=args.month,
            transaction_type=args.transaction_type,
            matched=args.matched,
        )
        _print_frame(
            list_transactions(cfg, user.company_id, filters),
            "No bank transactions found for the given criteria.",
        )

    elif args.action == "summary":
        summary = bank_summary(cfg, user.company_id, BankFilter(month=args.month))
        print(f"Credits:       {_money(config, summary.total_credits)}")
        print(f"Debits:        {_money(config, summary.total_debits)}")
        print(f"Balance:       {_money(config, summary.current_balance)}")
        print(f"Transactions:  {summary.transaction_count}")
        print(f"Unmatched:     {summary.unmatched_count}")
        print(f"Special:       {summary.special_count}")
        if summary.months:
            print(f"Months:        {', '.join(summary.months)}")

    elif args.action == "batches":
        _print_frame(list_import_batches(cfg, user.company_id), "No imports yet.")

    elif args.action == "tag":
        if args.apply_similar:
            if args.transaction_type is None:
                raise ValueError("--apply-similar needs --type.")
            count = apply_to_similar(
                cfg,
                user.company_id,
                args.transaction_id,
                args.transaction_type,
                recurring_label=args.recurring_label,
            )
            print(f"Tagged {count} transactions as {args.transaction_type}.")
            return
        tx = update_transaction(
            cfg,
            user.company_id,
            args.transaction_id,
            TransactionUpdate(
                transaction_type=args.transaction_type,
                is_recurring=True if args.recurring_label else None,
                recurring_label=args.recurring_label,
                notes=args.notes,
            ),
        )
        print(f"Transaction #{tx.id}: type {tx.transaction_type}")

    elif args.action == "classify":
        result = classify_transaction(
            cfg, user.company_id, args.transaction_id, args.transaction_type, created_by=user.id
        )
        label = SPECIAL_TYPE_LABELS[args.transaction_type]
        print(f"Transaction #{result.transaction.id} classified as {label}.")
        if result.expense is not None:
            print(f"Created expense #{result.expense.id} ({_money(config, result.expense.amount)}).")

    else:
        print(
            "Available subcommands are: "
            "'import', 'list', 'summary', 'batches', 'tag', 'classify'."
        )


def _handle_reconcile(args: argparse.Namespace, config: AppConfig, user: User) -> None:
    cfg = config.database

    if args.action == "suggest":
        results = build_suggestions(cfg, user.company_id, config.reconciliation)
        print(f"Matched transactions: {matched_count(cfg, user.company_id)}")
        print(f"Unmatched transactions: {len(results)}")
        for tx, suggestions in results:
            print()
            print(
                f"#{tx.id}  {tx.date}  {_money(config, tx.amount)}  {tx.description or ''}".rstrip()
            )
            if not suggestions:
                print("    no suggestion")
            for s in suggestions:
                print(
                    f"    {s.score:>3}  {s.kind} #{s.entry.id}  {s.entry.date}  "
                    f"{_money(config, s.entry.amount)}  {s.entry.counterparty_label}  "
                    f"[{', '.join(s.reasons)}]"
                )

    elif args.action == "approve":
        tx = approve_match(cfg, user.company_id, args.transaction_id, args.kind, args.entry_id)
        print(f"Transaction #{tx.id} linked to {tx.matched_type} #{tx.matched_id}.")

    elif args.action == "create":
        entry = create_entry_from_transaction(
            cfg,
            user.company_id,
            args.transaction_id,
            category_id=args.category_id,
            contact_id=args.contact_id,
            new_contact_name=args.new_contact_name,
            description=args.description,
            invoice_number=args.invoice_number,
            created_by=user.id,
        )
        print(
            f"Created {entry.kind} #{entry.id} ({_money(config, entry.amount)}) "
            f"linked to transaction #{args.transaction_id}."
        )

    elif args.action == "unmatch":
        tx = unmatch(cfg, user.company_id, args.transaction_id)
        print(f"Transaction #{tx.id} is no longer linked.")

    else:
        print("Available subcommands are: 'suggest', 'approve', 'create', 'unmatch'.")


def _handle_budget(args: argparse.Namespace, config: AppConfig, user: User) -> None:
    cfg = config.database
    year, month = _month_or_current(args.month)

    if args.action == "set":
        budget = set_budget(
            cfg, user.company_id, args.category_id, year, month, args.amount, created_by=user.id
        )
        print(
            f"Budget of category #{budget.category_id} for {year}-{month:02d}: "
            f"{_money(config, budget.amount)}"
        )

    elif args.action == "status":
        statuses = budget_status(
            cfg, user.company_id, year, month, config.budget.near_threshold_pct
        )
        if not statuses:
            print(f"No budget set for {year}-{month:02d}.")
            return
        df = pd.DataFrame(
            [
                {
                    "category": s.category_name,
                    "budgeted": s.budgeted,
                    "actual": s.actual,
                    "percentage": s.percentage,
                    "status": s.status,
                }
                for s in statuses
            ]
        )
        print(df.to_string(index=False))
        totals = budget_totals(statuses)
        print()
        print(
            f"Budgeted: {_money(config, totals.budgeted)} | "
            f"Actual: {_money(config, totals.actual)} | "
            f"Over: {totals.over_count} | Near: {totals.near_count}"
        )

    elif args.action == "suggest":
        suggestions = suggest_budget(cfg, user.company_id, year, month)
        if not suggestions:
            print("Not enough history to suggest budgets.")
            return
        for s in suggestions:
            print(
                f"#{s.category_id}  {s.category_name}: {_money(config, s.suggested_amount)} "
                f"(average {_money(config, s.average_amount)}, {s.reason})"
            )
        if args.apply:
            saved = apply_suggestions(
                cfg, user.company_id, year, month, suggestions, created_by=user.id
            )
            print(f"Saved {len(saved)} budgets for {year}-{month:02d}.")

    else:
        print("Available subcommands are: 'set', 'status', 'suggest'.")


def _handle_vat(args: argparse.Namespace, config: AppConfig, user: User) -> None:
    if args.action != "report":
        print("Available subcommands are: 'report'.")
        return

    year, month = _month_or_current(args.month)
    period = vat_period(year, month, args.mode or config.vat.report_period)
    report = vat_report(config.database, user.company_id, period)

    print(f"VAT report: {period.label} ({period.start} → {period.end})")
    print()
    print(f"Income ({report.income_count} documents)")
    print(f"  before VAT:      {_money(config, report.income_before_vat)}")
    print(f"  output VAT:      {_money(config, report.income_vat)}")
    print(f"  total:           {_money(config, report.income_total)}")
    print(f"Expenses ({report.expense_count} documents)")
    print(f"  before VAT:      {_money(config, report.expense_before_vat)}")
    print(f"  input VAT:       {_money(config, report.expense_vat)}")
    print(f"  deductible VAT:  {_money(config, report.expense_vat_deductible)}")
    print(f"  total:           {_money(config, report.expense_total)}")
    print()
    label = "VAT refund" if report.is_refund else "VAT to pay"
    print(f"{label}: {_money(config, abs(report.vat_to_pay))}")

    if args.output:
        path = export_vat_report(report, args.output)
        print(f"Wrote {path}")


def _handle_forecast(args: argparse.Namespace, config: AppConfig, user: User) -> None:
    forecast = cash_flow_forecast(
        config.database,
        user.company_id,
        _today(),
        months_ahead=args.months,
        settings=config.forecast,
    )
    print(forecast_frame(forecast).to_string(index=False))


def _handle_recurring(args: argparse.Namespace, config: AppConfig, user: User) -> None:
    cfg = config.database

    if args.action == "add":
        template = create_recurring_expense(
            cfg,
            user.company_id,
            args.name,
            args.amount,
            frequency=args.frequency,
            day_of_month=args.day_of_month,
            day_of_week=args.day_of_week,
            month_of_year=args.month_of_year,
            category_id=args.category_id,
            supplier_id=args.supplier_id,
            description=args.description,
            start_date=_parse_optional_date(args.start_date),
            end_date=_parse_optional_date(args.end_date),
            expense_type=args.expense_type,
        )
        print(f"Created {template.frequency} recurring expense #{template.id}: {template.name}")

    elif args.action == "list":
        templates = list_recurring_expenses(cfg, user.company_id)
        if not templates:
            print("No recurring expenses.")
            return
        for t in templates:
            state = "active" if t.is_active else "paused"
            print(
                f"#{t.id}  {t.name}  {t.frequency}  {_money(config, t.amount)}  "
                f"(~{_money(config, monthly_equivalent(t))}/month)  {state}  "
                f"last: {t.last_generated_date or '-'}"
            )
        print()
        print(f"Estimated monthly total: {_money(config, estimated_monthly_total(templates))}")

    elif args.action == "generate":
        created = generate_due_expenses(cfg, user.company_id, _today(), created_by=user.id)
        if not created:
            print("All recurring expenses are already generated for this cycle.")
        for e in created:
            print(f"Created expense #{e.id}: {e.description} ({_money(config, e.amount)}) on {e.date}")

    elif args.action == "toggle":
        template = toggle_active(cfg, user.company_id, args.recurring_id)
        print(f"Recurring expense #{template.id} is now {'active' if template.is_active else 'paused'}.")

    else:
        print("Available subcommands are: 'add', 'list', 'generate', 'toggle'.")


def _handle_report(args: argparse.Namespace, config: AppConfig, user: User) -> None:
    cfg = config.database
    year = getattr(args, "year", None) or _today().year

    if args.action == "monthly":
        print(monthly_totals(cfg, user.company_id, year).to_string(index=False))
    elif args.action == "trend":
        print(trend(cfg, user.company_id, year).to_string(index=False))
    elif args.action == "categories":
        period = determine_period_from_args(args)
        print(f"Applied period: {period.label} ({period.start} → {period.end})")
        _print_frame(
            category_breakdown(cfg, user.company_id, args.kind, period.start, period.end),
            f"No {args.kind} in this period.",
        )
    else:
        print("Available subcommands are: 'monthly', 'categories', 'trend'.")


def _handle_insights(args: argparse.Namespace, config: AppConfig, user: User) -> None:
    insights = generate_insights(config.database, user.company_id, _today(), config.budget)
    if not insights:
        print("Nothing to report.")
    for i in insights:
        print(f"[{i.severity}] {i.title}")
        print(f"    {i.message}")
        if i.action:
            print(f"    -> {i.action}")


def _handle_collection(args: argparse.Namespace, config: AppConfig, user: User) -> None:
    cfg = config.database
    today = _today()

    if args.follow_up_entry_id is not None:
        if args.new_status is None:
            raise ValueError("--follow-up needs --set-status.")
        entry = update_follow_up(
            cfg,
            user.company_id,
            args.follow_up_entry_id,
            args.new_status,
            notes=args.notes,
            promised_date=_parse_optional_date(args.promised_date),
        )
        print(f"Income #{entry.id} follow-up: {entry.collection_status}.")
        return

    if args.pay_entry_id is not None:
        entry = mark_collected(
            cfg,
            user.company_id,
            args.pay_entry_id,
            payment_date=_parse_optional_date(args.date) or today,
            payment_method=args.payment_method,
        )
        print(f"Income #{entry.id} marked as paid on {entry.payment_date}.")
        return

    if args.history_entry_id is not None:
        _print_frame(
            reminder_history(cfg, user.company_id, args.history_entry_id),
            f"No reminders sent for income #{args.history_entry_id}.",
        )
        return

    items = collection_items(
        cfg, user.company_id, today, collection_status=args.collection_status
    )

    if args.remind_entry_id is not None:
        item = next((i for i in items if i.entry.id == args.remind_entry_id), None)
        if item is None:
            raise ValueError(f"Income #{args.remind_entry_id} is not an open invoice.")
        company = get_company(cfg, user.company_id)
        sent_to = None
        if args.channel == "whatsapp" and item.phone:
            sent_to = f"+{whatsapp_number(item.phone)}"
        elif args.channel == "email" and item.email:
            sent_to = item.email
        if sent_to:
            print(f"To: {sent_to}")
        message = reminder_message(item, args.channel, company.name)
        print(message)
        entry = record_reminder(
            cfg,
            user.company_id,
            item.entry.id,
            args.channel,
            message,
            sent_to=sent_to,
            today=today,
            created_by=user.id,
        )
        print()
        print(f"Reminder #{entry.reminder_count} recorded for income #{entry.id}.")
        return

    if not items:
        print("No open invoices.")
        return
    for bucket in weekly_buckets(items, today):
        print(f"{bucket.label}: {len(bucket.items)} invoices, {_money(config, bucket.total)}")
        for item in bucket.items:
            when = (
                f"{item.days_overdue} days overdue"
                if item.is_overdue
                else f"due in {item.days_until_due} days"
            )
            print(
                f"    #{item.entry.id}  {item.customer_name or '-'}  "
                f"{item.entry.invoice_number or '-'}  {_money(config, item.amount)}  {when}"
            )

    pending = needs_reminder(items)
    if pending:
        print(f"{len(pending)} overdue invoices have not been reminded yet.")


_UNSCOPED_HANDLERS = {
    "init": _handle_init,
    "company": _handle_company,
    "user": _handle_user,
}

_SCOPED_HANDLERS = {
    "category": _handle_category,
    "contact": _handle_contact,
    "income": _handle_entries,
    "expense": _handle_entries,
    "bank": _handle_bank,
    "reconcile": _handle_reconcile,
    "budget": _handle_budget,
    "vat": _handle_vat,
    "forecast": _handle_forecast,
    "recurring": _handle_recurring,
    "report": _handle_report,
    "insights": _handle_insights,
    "collection": _handle_collection,
}


def _configure_logging(verbosity: int) -> None:
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for the Kaspit CLI.

    Parses the arguments, loads the configuration, resolves the acting user
    for company-scoped commands and dispatches to the matching handler.
    Service errors end the process with status 1.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return

    try:
        config = load_app_config(args.config_path) if args.config_path else load_app_config()

        if args.command in _UNSCOPED_HANDLERS:
            _UNSCOPED_HANDLERS[args.command](args, config)
            return

        user = _resolve_user(args, config)
        _SCOPED_HANDLERS[args.command](args, config, user)
    except (ValueError, LookupError, PermissionError, FileNotFoundError) as exc:
        logger.debug("Command %r failed", args.command, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
