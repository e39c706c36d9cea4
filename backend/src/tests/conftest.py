"""
Root test configuration and fixtures.

Provides:
- plans_config_path / plans_config: the shipped config/plans.json
- catalog: PlanCatalog built from it
- db_engine / session_factory: SQLite in-memory store, fresh per test
- service: EntitlementService wired to the above
- make_catalog_file: Factory for writing JSON/YAML catalogs to a temp dir
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

PLANS_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "plans.json"


@pytest.fixture(scope="session")
def plans_config_path() -> Path:
    return PLANS_CONFIG_PATH


@pytest.fixture
def plans_config(plans_config_path) -> Dict[str, Any]:
    """A private, mutable copy of the shipped catalog."""
    with open(plans_config_path) as f:
        return copy.deepcopy(json.load(f))


@pytest.fixture
def catalog(plans_config_path):
    from src.entitlements.loader import PlanCatalog

    return PlanCatalog.from_file(str(plans_config_path))


@pytest.fixture
def db_engine():
    """
    SQLite in-memory engine, one per test.

    StaticPool keeps a single connection so every session sees the same
    in-memory database.
    """
    from src.database.session import create_tables

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=db_engine,
    )


@pytest.fixture
def service(session_factory, catalog):
    from src.entitlements.service import EntitlementService

    return EntitlementService(session_factory, catalog=catalog)


@pytest.fixture
def make_catalog_file(tmp_path):
    """
    Factory fixture that writes a catalog file and returns its path.

    Usage:
        path = make_catalog_file("plans.yaml", {"plans": [...]})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = tmp_path / filename
        with open(config_path, "w") as f:
            if config_path.suffix in (".yml", ".yaml"):
                yaml.safe_dump(config, f)
            else:
                json.dump(config, f)
        return config_path
    return _make


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")
