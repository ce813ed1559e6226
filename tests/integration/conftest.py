"""
Integration test fixtures — PostgreSQL testcontainer and schema setup.

Provides a real PostgreSQL instance for each test session via testcontainers.
Creates every table, FK rule and the append-only audit trigger from the
packaged schema.sql. Each test gets a fresh, clean database via truncation.

The `ledger` fixture is overridden with the PostgreSQL store, so the shared
`services`, `customer` and `active_domain` fixtures run unchanged against it.
"""

from __future__ import annotations

import psycopg
import pytest
from testcontainers.postgres import PostgresContainer

from domain_ledger.adapters.repository import PsycopgLedgerStore, load_schema

TRUNCATE_ALL = """
TRUNCATE audit_log, payments, billing_items, invoices, registry_attributes,
         domain_contacts, nameservers, domains, contacts, customers CASCADE;
"""


def _psycopg_url(pg: PostgresContainer) -> str:
    return pg.get_connection_url().replace("postgresql+psycopg2", "postgresql")


@pytest.fixture(scope="session")
def postgres_container() -> PostgresContainer:
    """Start a PostgreSQL container for the entire test session."""
    with PostgresContainer("postgres:16-alpine") as pg:
        with psycopg.connect(_psycopg_url(pg)) as conn:
            conn.execute(load_schema())
            conn.commit()
        yield pg


@pytest.fixture()
def dsn(postgres_container: PostgresContainer) -> str:
    """Return a psycopg-compatible DSN and truncate all tables before each test."""
    connection_url = _psycopg_url(postgres_container)
    with psycopg.connect(connection_url) as conn:
        conn.execute(TRUNCATE_ALL)
        conn.commit()
    return connection_url


@pytest.fixture()
def ledger(dsn: str) -> PsycopgLedgerStore:
    return PsycopgLedgerStore(dsn)
