from pathlib import Path

import pytest

from kaspit.config import (
    BudgetConfig,
    DisplayConfig,
    ForecastConfig,
    ReconciliationConfig,
    VatConfig,
    load_app_config,
)


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "kaspit_config.toml"
    path.write_text(content, encoding="utf-8")
    return path


def test_load_full_config(tmp_path):
    path = _write(
        tmp_path,
        """
[database]
engine = "sqlite"
path = "db/books.sqlite"

[vat]
rate = 0.17
report_period = "bimonthly"

[reconciliation]
min_score = 40
max_suggestions = 3
credit_card_bonus = 10

[budget]
near_threshold_pct = 90

[forecast]
months_ahead = 6
income_factor = 1.0
variable_expense_factor = 0.8

[display]
currency = "USD"
decimals = 0
""",
    )

    cfg = load_app_config(str(path))

    assert cfg.database.engine == "sqlite"
    assert cfg.database.path == (tmp_path / "db" / "books.sqlite").resolve()
    assert cfg.vat == VatConfig(rate=0.17, report_period="bimonthly")
    assert cfg.reconciliation == ReconciliationConfig(
        min_score=40, max_suggestions=3, credit_card_bonus=10
    )
    assert cfg.budget == BudgetConfig(near_threshold_pct=90)
    assert cfg.forecast == ForecastConfig(
        months_ahead=6, income_factor=1.0, variable_expense_factor=0.8
    )
    assert cfg.display == DisplayConfig(currency="USD", decimals=0)


def test_every_section_is_optional(tmp_path):
    cfg = load_app_config(str(_write(tmp_path, "")))

    assert cfg.database.path == (tmp_path / "data" / "db" / "kaspit.sqlite").resolve()
    assert cfg.vat.rate == 0.18
    assert cfg.vat.report_period == "monthly"
    assert cfg.reconciliation.min_score == 30
    assert cfg.budget.near_threshold_pct == 80
    assert cfg.forecast.months_ahead == 3
    assert cfg.display.currency == "ILS"


def test_default_config_file_in_working_directory(tmp_path, monkeypatch):
    _write(tmp_path, '[vat]\nrate = 0.18\n')
    monkeypatch.chdir(tmp_path)

    cfg = load_app_config()
    assert cfg.database.path.parent == (tmp_path / "data" / "db").resolve()


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_app_config(str(tmp_path / "missing.toml"))


@pytest.mark.parametrize(
    "content",
    [
        "[vat]\nrate = 1.5\n",
        "[vat]\nrate = \"high\"\n",
        "[vat]\nreport_period = \"quarterly\"\n",
        "[reconciliation]\nmin_score = 120\n",
        "[reconciliation]\nmax_suggestions = 0\n",
        "[forecast]\nmonths_ahead = 0\n",
        "[vat\nrate = 0.18\n",
    ],
)
def test_invalid_values(tmp_path, content):
    with pytest.raises(ValueError):
        load_app_config(str(_write(tmp_path, content)))
