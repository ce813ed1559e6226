"""
Integration tests for PsycopgLedgerStore.

Tests run against a real PostgreSQL instance via testcontainers.
They verify the pieces the in-memory fake can only imitate:

  - row mapping: every entity survives a write/read round trip
  - constraint names surfacing as ConstraintViolation
  - commit / rollback of one unit of work
  - the append-only audit trigger and chain verification over JSONB snapshots
  - the engines end to end on the real store

BDD-style docstrings describe the behaviour.

Markers: @pytest.mark.integration — requires Docker + PostgreSQL.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal

import psycopg
import pytest
from railway import ErrorCode
from railway.assertions import ResultAssertions

from domain_ledger.adapters.repository import PsycopgLedgerStore
from domain_ledger.domain.errors import ConstraintViolation, EntityNotFound
from domain_ledger.domain.models import (
    Customer,
    Domain,
    DomainStatus,
    EntityKind,
    EventSource,
    EventType,
    LifecycleEvent,
)
from domain_ledger.main import Services
from domain_ledger.transactions import run_in_transaction
from tests.fakes import T0, customer_actor

pytestmark = pytest.mark.integration


# ── Row mapping ──────────────────────────────────────────────────────────────


class TestRoundTrip:
    def test_customer_round_trip(self, ledger: PsycopgLedgerStore, customer: Customer) -> None:
        with ledger.transaction() as tx:
            loaded = tx.get_customer(customer.id)
            by_name = tx.find_customer_by_username("alice")

        assert loaded == customer
        assert by_name == customer

    def test_domain_nameservers_keep_their_order(
        self, ledger: PsycopgLedgerStore, customer: Customer
    ) -> None:
        """
        GIVEN a domain delegated to three nameservers
        WHEN it is written, then updated with a shorter list
        THEN reads return the hostnames in priority order.
        """
        domain = Domain(
            customer_id=customer.id,
            name="example.com",
            tld="com",
            nameservers=("ns2.host.net", "ns1.host.net", "ns3.host.net"),
            created_at=T0,
            updated_at=T0,
        )
        with ledger.transaction() as tx:
            tx.insert_domain(domain)
        with ledger.transaction() as tx:
            first = tx.get_domain(domain.id)
            tx.update_domain(replace(first, nameservers=("ns9.host.net", "ns1.host.net")))
        with ledger.transaction() as tx:
            second = tx.get_domain(domain.id, lock=True)

        assert first.nameservers == ("ns2.host.net", "ns1.host.net", "ns3.host.net")
        assert second.nameservers == ("ns9.host.net", "ns1.host.net")

    def test_missing_domain_is_not_found(self, ledger: PsycopgLedgerStore, customer: Customer) -> None:
        with pytest.raises(EntityNotFound), ledger.transaction() as tx:
            tx.get_domain(customer.id)

    def test_auth_code_round_trips_through_bytea(
        self, services: Services, customer: Customer, active_domain: Domain
    ) -> None:
        owner = customer_actor(customer)

        services.registrar.set_auth_code(owner, active_domain.id, "Xf3r-c0de")

        assert services.registrar.reveal_auth_code(owner, active_domain.id).value() == "Xf3r-c0de"


# ── Constraints & transactions ───────────────────────────────────────────────


class TestConstraints:
    def test_duplicate_username_names_the_constraint(
        self, ledger: PsycopgLedgerStore, customer: Customer
    ) -> None:
        duplicate = Customer(username="alice", email="other@example.org")

        result = run_in_transaction(
            ledger, "insert_customer", lambda tx: tx.insert_customer(duplicate)
        )

        ResultAssertions.assert_failure(result, ErrorCode.VALIDATION_ERROR)
        ResultAssertions.assert_failure_message_contains(result, "customers_username_key")

    def test_active_domain_requires_expiry(self, ledger: PsycopgLedgerStore, customer: Customer) -> None:
        domain = Domain(customer_id=customer.id, name="bare.org", tld="org", status=DomainStatus.ACTIVE)

        with (
            pytest.raises(ConstraintViolation, match="domains_expiry_required"),
            ledger.transaction() as tx,
        ):
            tx.insert_domain(domain)

    def test_failed_unit_of_work_rolls_back(self, ledger: PsycopgLedgerStore, customer: Customer) -> None:
        """
        GIVEN a unit of work that writes a domain and then fails
        WHEN it runs through run_in_transaction
        THEN the domain row is not committed.
        """
        domain = Domain(customer_id=customer.id, name="ghost.org", tld="org")

        def work(tx) -> Domain:
            tx.insert_domain(domain)
            raise ConstraintViolation("rejected after write")

        run_in_transaction(ledger, "insert_domain", work)

        with ledger.transaction() as tx:
            assert tx.find_domain_by_name("ghost.org") is None

    def test_time_candidates_only_past_expiry(
        self, ledger: PsycopgLedgerStore, active_domain: Domain
    ) -> None:
        with ledger.transaction() as tx:
            before = tx.list_time_candidates(datetime(2024, 12, 31, tzinfo=UTC))
            after = tx.list_time_candidates(datetime(2025, 1, 2, tzinfo=UTC))

        assert before == []
        assert after == [active_domain.id]


# ── Audit log ────────────────────────────────────────────────────────────────


class TestAuditLog:
    def test_audit_rows_cannot_be_changed(self, dsn: str, active_domain: Domain) -> None:
        """
        GIVEN audit entries written by the engines
        WHEN anyone updates or deletes one directly in SQL
        THEN the trigger rejects the statement.
        """
        with psycopg.connect(dsn) as conn:
            with pytest.raises(psycopg.errors.InsufficientPrivilege):
                conn.execute("UPDATE audit_log SET actor_username = 'mallory'")
            conn.rollback()
            with pytest.raises(psycopg.errors.InsufficientPrivilege):
                conn.execute("DELETE FROM audit_log")
            conn.rollback()

    def test_chain_verifies_after_jsonb_round_trip(
        self, services: Services, active_domain: Domain
    ) -> None:
        verification = ResultAssertions.assert_success(
            services.audit.verify_chain(services.store, EntityKind.DOMAIN, active_domain.id)
        )

        assert verification.valid is True
        assert verification.entries_checked == 2

    def test_history_restores_typed_snapshots(
        self, services: Services, customer: Customer, active_domain: Domain
    ) -> None:
        history = services.registrar.audit_history(
            customer_actor(customer), EntityKind.DOMAIN, active_domain.id
        ).value()

        assert history[-1].after == active_domain
        assert history[-1].before.status == DomainStatus.PENDING


# ── Engines on the real store ────────────────────────────────────────────────


class TestEnginesOnPostgres:
    def test_renewal_bills_once_and_keeps_aggregates_consistent(
        self, services: Services, customer: Customer, active_domain: Domain
    ) -> None:
        """
        GIVEN an active domain on PostgreSQL
        WHEN the same renewal is submitted twice
        THEN it is billed once and a full verification finds nothing to correct.
        """
        event = LifecycleEvent(
            type=EventType.RENEW,
            occurred_at=T0,
            source=EventSource.CUSTOMER,
            new_expires_at=datetime(2026, 1, 1, tzinfo=UTC),
        )

        first = services.lifecycle.transition(active_domain.id, event, customer_actor(customer))
        second = services.lifecycle.transition(active_domain.id, event, customer_actor(customer))

        assert ResultAssertions.assert_success(first).applied is True
        assert ResultAssertions.assert_success(second).duplicate is True
        report = ResultAssertions.assert_success(services.aggregates.verify_all(services.store))
        assert report.corrections == []
        summary = services.registrar.customer_summary(customer_actor(customer), customer.id).value()
        assert summary.invoices[0].total_amount == Decimal("30.00")
