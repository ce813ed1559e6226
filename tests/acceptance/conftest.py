"""
Acceptance test fixtures — PostgreSQL testcontainer for end-to-end tests.

Reuses the same schema and truncation as the integration tests but scoped
for acceptance. `ledger` is the PostgreSQL store, so the shared engine
fixtures wire against it.
"""

from __future__ import annotations

import psycopg
import pytest
from testcontainers.postgres import PostgresContainer

from domain_ledger.adapters.repository import PsycopgLedgerStore
from tests.integration.conftest import TRUNCATE_ALL, _psycopg_url


@pytest.fixture(scope="session")
def acceptance_pg() -> PostgresContainer:
    """Start a PostgreSQL container and apply the schema through the store."""
    with PostgresContainer("postgres:16-alpine") as pg:
        PsycopgLedgerStore(_psycopg_url(pg)).apply_schema()
        yield pg


@pytest.fixture()
def acceptance_dsn(acceptance_pg: PostgresContainer) -> str:
    """Return a psycopg-compatible DSN and truncate all tables before each test."""
    connection_url = _psycopg_url(acceptance_pg)
    with psycopg.connect(connection_url) as conn:
        conn.execute(TRUNCATE_ALL)
        conn.commit()
    return connection_url


@pytest.fixture()
def ledger(acceptance_dsn: str) -> PsycopgLedgerStore:
    return PsycopgLedgerStore(acceptance_dsn)
