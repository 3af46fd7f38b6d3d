"""Integration test fixtures.

Applies migrations 0001–0002 against an ephemeral PostgreSQL database
provided by pytest-postgresql. The whole directory is skipped when no
PostgreSQL server binaries are on PATH.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_extensions.sql",
    PROJECT_ROOT / "migrations" / "0002_crm_core.sql",
]

if shutil.which("pg_ctl") is None and shutil.which("pg_config") is None:
    collect_ignore_glob = ["test_*.py"]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_dsn(postgresql):
    """Return a DSN for a fresh database with the CRM schema applied."""
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    with psycopg.connect(dsn, autocommit=True) as conn:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
    return dsn


@pytest.fixture(scope="function")
def db_conn(db_dsn):
    """Autocommit psycopg connection for seeding and assertions."""
    conn = psycopg.connect(db_dsn, autocommit=True)
    try:
        yield conn
    finally:
        conn.close()
