# Kaspit - Bookkeeping application for small businesses
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Configuration helpers for Kaspit.

This module is responsible for:
- loading the application configuration from a TOML file,
- applying defaults for every optional section,
- exposing typed dataclasses used by the rest of the application.

Expected sections (all optional)
--------------------------------
[database]        engine + SQLite path (resolved relative to the TOML file)
[vat]             VAT rate and default reporting period (monthly/bimonthly)
[reconciliation]  suggestion threshold, cap and credit-card bonus
[budget]          "near" threshold in percent
[forecast]        months ahead and conservative factors
[display]         currency code and decimals used by the CLI
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import tomllib

from .db import DatabaseConfig

DEFAULT_CONFIG_FILE = "kaspit_config.toml"


@dataclass(frozen=True)
class VatConfig:
    """VAT settings. Israel's standard rate is 18% since January 2025."""

    rate: float = 0.18
    report_period: str = "monthly"


@dataclass(frozen=True)
class ReconciliationConfig:
    """Thresholds used when suggesting bank/ledger matches."""

    min_score: int = 30
    max_suggestions: int = 5
    credit_card_bonus: int = 15


@dataclass(frozen=True)
class BudgetConfig:
    near_threshold_pct: int = 80


@dataclass(frozen=True)
class ForecastConfig:
    months_ahead: int = 3
    income_factor: float = 0.95
    variable_expense_factor: float = 0.9


@dataclass(frozen=True)
class DisplayConfig:
    currency: str = "ILS"
    decimals: int = 2


@dataclass(frozen=True)
class AppConfig:
    """
    Application-wide configuration for Kaspit.

    This aggregates:
    - the database configuration (where every company's books are stored),
    - VAT settings,
    - reconciliation, budget and forecast tuning,
    - display options for the CLI.
    """

    database: DatabaseConfig
    vat: VatConfig = field(default_factory=VatConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    forecast: ForecastConfig = field(default_factory=ForecastConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)


def _load_toml(path: Path) -> dict[str, Any]:
    """
    Load a TOML file and return its content as a dictionary.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the TOML content cannot be parsed or is not a table.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Failed to parse TOML config file: {path}") from exc

    if not isinstance(data, dict):
        raise ValueError(f"Invalid TOML root type in {path}, expected a table.")

    return data


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    """Return a sub-table, or an empty mapping when missing or malformed."""
    value = raw.get(name) or {}
    if not isinstance(value, Mapping):
        return {}
    return value


def _as_float(section: Mapping[str, Any], key: str, default: float, where: str) -> float:
    raw = section.get(key, default)
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(
            f"Invalid value for '{where}.{key}' in the configuration. "
            "Expected a number."
        ) from exc


def _as_int(section: Mapping[str, Any], key: str, default: int, where: str) -> int:
    raw = section.get(key, default)
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(
            f"Invalid value for '{where}.{key}' in the configuration. "
            "Expected an integer."
        ) from exc


def _parse_vat(raw: Mapping[str, Any]) -> VatConfig:
    section = _section(raw, "vat")
    rate = _as_float(section, "rate", VatConfig.rate, "vat")
    if not 0 <= rate < 1:
        raise ValueError("vat.rate must be a fraction between 0 and 1 (e.g. 0.18).")

    report_period = str(section.get("report_period", VatConfig.report_period))
    if report_period not in {"monthly", "bimonthly"}:
        raise ValueError(
            "vat.report_period must be either 'monthly' or 'bimonthly', "
            f"got {report_period!r}."
        )
    return VatConfig(rate=rate, report_period=report_period)


def _parse_reconciliation(raw: Mapping[str, Any]) -> ReconciliationConfig:
    section = _section(raw, "reconciliation")
    defaults = ReconciliationConfig()
    min_score = _as_int(section, "min_score", defaults.min_score, "reconciliation")
    max_suggestions = _as_int(
        section, "max_suggestions", defaults.max_suggestions, "reconciliation"
    )
    bonus = _as_int(
        section, "credit_card_bonus", defaults.credit_card_bonus, "reconciliation"
    )

    if not 0 <= min_score <= 100:
        raise ValueError("reconciliation.min_score must be between 0 and 100.")
    if max_suggestions < 1:
        raise ValueError("reconciliation.max_suggestions must be at least 1.")

    return ReconciliationConfig(
        min_score=min_score,
        max_suggestions=max_suggestions,
        credit_card_bonus=bonus,
    )


def load_app_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load the Kaspit application configuration from a TOML file.

    All file paths in the TOML are resolved relative to the directory of the
    TOML file itself. Every section is optional; defaults are documented on
    the dataclasses above.

    Parameters
    ----------
    config_path:
        Path to the TOML configuration file. If None, ``kaspit_config.toml``
        in the current working directory is used.

    Returns
    -------
    AppConfig
        Parsed and validated application configuration.
    """
    if config_path is None:
        config_file = Path(DEFAULT_CONFIG_FILE).resolve()
    else:
        config_file = Path(config_path).resolve()

    raw = _load_toml(config_file)
    base_dir = config_file.parent

    # 1) Database section
    database_section = _section(raw, "database")
    db_engine = str(database_section.get("engine") or "sqlite")
    db_path_raw = database_section.get("path") or "data/db/kaspit.sqlite"
    database = DatabaseConfig(
        engine=db_engine,
        path=(base_dir / str(db_path_raw)).resolve(),
    )

    # 2) VAT and reconciliation
    vat = _parse_vat(raw)
    reconciliation = _parse_reconciliation(raw)

    # 3) Budget
    budget_section = _section(raw, "budget")
    budget = BudgetConfig(
        near_threshold_pct=_as_int(
            budget_section, "near_threshold_pct", BudgetConfig.near_threshold_pct, "budget"
        )
    )

    # 4) Forecast
    forecast_section = _section(raw, "forecast")
    forecast = ForecastConfig(
        months_ahead=_as_int(
            forecast_section, "months_ahead", ForecastConfig.months_ahead, "forecast"
        ),
        income_factor=_as_float(
            forecast_section, "income_factor", ForecastConfig.income_factor, "forecast"
        ),
        variable_expense_factor=_as_float(
            forecast_section,
            "variable_expense_factor",
            ForecastConfig.variable_expense_factor,
            "forecast",
        ),
    )
    if forecast.months_ahead < 1:
        raise ValueError("forecast.months_ahead must be at least 1.")

    # 5) Display options
    display_section = _section(raw, "display")
    try:
        decimals = int(display_section.get("decimals", DisplayConfig.decimals))
    except (TypeError, ValueError):
        decimals = DisplayConfig.decimals
    display = DisplayConfig(
        currency=str(display_section.get("currency", DisplayConfig.currency)),
        decimals=decimals,
    )

    return AppConfig(
        database=database,
        vat=vat,
        reconciliation=reconciliation,
        budget=budget,
        forecast=forecast,
        display=display,
    )
