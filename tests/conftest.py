from types import SimpleNamespace

import pytest

from kaspit.companies import create_company, create_user
from kaspit.db import DatabaseConfig, init_database


def make_tmp_db_cfg(tmp_path) -> DatabaseConfig:
    """Helper to build a DatabaseConfig pointing to a temporary SQLite file."""
    db_path = tmp_path / "test_db.sqlite"
    return DatabaseConfig(engine="sqlite", path=db_path)


@pytest.fixture
def cfg(tmp_path) -> DatabaseConfig:
    cfg = make_tmp_db_cfg(tmp_path)
    init_database(cfg)
    return cfg


@pytest.fixture
def companies(cfg):
    """Two companies with one admin each, used to check tenant isolation."""
    alpha = create_company(cfg, "Alpha Ltd", tax_id="515000001")
    beta = create_company(cfg, "Beta Ltd", tax_id="515000002")
    alpha_user = create_user(cfg, alpha.id, "owner@alpha.test", "admin", "Dana")
    beta_user = create_user(cfg, beta.id, "owner@beta.test", "finance_manager")
    return SimpleNamespace(
        alpha=alpha,
        beta=beta,
        alpha_user=alpha_user,
        beta_user=beta_user,
    )
