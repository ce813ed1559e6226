"""
Shared test fixtures for the domain-ledger test suite.

Unit tests run every engine over the in-memory ledger (tests/fakes.py)
with a movable clock; integration and acceptance tests swap in the real
PostgreSQL store through their own conftest files.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest
import structlog

from domain_ledger.domain.models import Customer, Domain
from domain_ledger.main import Services
from tests.fakes import FakeClock, InMemoryLedger, make_services, seed_active_domain, seed_customer


@pytest.fixture(autouse=True)
def _default_structlog() -> Iterator[None]:
    """Undo configure_structlog so module loggers are never cached between tests."""
    yield
    structlog.reset_defaults()


@pytest.fixture()
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def services(ledger: InMemoryLedger, clock: FakeClock) -> Services:
    """Every engine wired over the in-memory ledger, without a registry."""
    return make_services(ledger, clock)


@pytest.fixture()
def customer(ledger: InMemoryLedger) -> Customer:
    """A customer with a 100.00 credit limit."""
    return seed_customer(ledger)


@pytest.fixture()
def active_domain(services: Services, customer: Customer) -> Domain:
    """example.com, active, expiring 2025-01-01, all contact roles filled."""
    return seed_active_domain(services, customer)
