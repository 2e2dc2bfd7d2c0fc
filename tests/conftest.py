"""Pytest configuration and fixtures for Achilles tests."""

import shutil
from pathlib import Path

import pytest

import achilles
from achilles.context import RunContext, RunSettings
from achilles.session import SqlAlchemyConnector
from achilles.sqlrender import TemplateStore
from examples.synthetic_demo import load_synthetic_cdm

PACKAGED_SQL = Path(achilles.__file__).parent / "sql"


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def db_url(tmp_path) -> str:
    """URL of an empty SQLite file database."""
    return f"sqlite:///{tmp_path / 'cdm.db'}"


@pytest.fixture
def connector(db_url) -> SqlAlchemyConnector:
    """Connector on an empty SQLite database."""
    conn = SqlAlchemyConnector(db_url)
    yield conn
    conn.dispose()


@pytest.fixture
def cdm_connector(connector) -> SqlAlchemyConnector:
    """Connector on a SQLite database holding the synthetic CDM."""
    load_synthetic_cdm(connector.engine)
    return connector


@pytest.fixture
def session(connector):
    s = connector.connect()
    yield s
    s.close()


# =============================================================================
# CONFIG FIXTURES
# =============================================================================

@pytest.fixture
def base_config() -> dict:
    """Quiet single-session SQLite run against the ``main`` schema."""
    return {
        "dialect": "sqlite",
        "cdm_database_schema": "main",
        "results_database_schema": "main",
        "source_name": "Synthetic",
        "small_cell_count": 0,
        "verbose": False,
    }


@pytest.fixture
def make_ctx():
    """Build a ``RunContext`` from keyword settings."""

    def _make(**overrides) -> RunContext:
        options = {
            "dialect": "sqlite",
            "cdm_database_schema": "main",
            "results_database_schema": "main",
            "verbose": False,
        }
        options.update(overrides)
        return RunContext(RunSettings.from_config(options))

    return _make


# =============================================================================
# TEMPLATE FIXTURES
# =============================================================================

@pytest.fixture
def template_root(tmp_path) -> Path:
    """A writable copy of the packaged SQL templates."""
    root = tmp_path / "sql"
    shutil.copytree(PACKAGED_SQL, root)
    return root


@pytest.fixture
def write_template(template_root):
    """Add or replace one template under ``template_root``."""

    def _write(name: str, sql: str) -> Path:
        path = template_root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(sql, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def templates(template_root) -> TemplateStore:
    return TemplateStore(template_root)


FIXED_ROWS_SQL = """
SELECT 9001 AS analysis_id, CAST('five' AS VARCHAR(255)) AS stratum_1,
  CAST(NULL AS VARCHAR(255)) AS stratum_2, CAST(NULL AS VARCHAR(255)) AS stratum_3,
  CAST(NULL AS VARCHAR(255)) AS stratum_4, CAST(NULL AS VARCHAR(255)) AS stratum_5,
  5 AS count_value
INTO @scratchDatabaseSchema@schemaDelim@tempAchillesPrefix_9001
UNION ALL
SELECT 9001, 'six', NULL, NULL, NULL, NULL, 6
UNION ALL
SELECT 9001, 'unknown', NULL, NULL, NULL, NULL, NULL
UNION ALL
SELECT 9001, 'one', NULL, NULL, NULL, NULL, 1;
"""

BROKEN_SQL = """
SELECT no_such_column AS analysis_id
INTO @scratchDatabaseSchema@schemaDelim@tempAchillesPrefix_9999
FROM @cdmDatabaseSchema.no_such_table;
"""
