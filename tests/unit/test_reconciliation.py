"""
Unit tests for the Reconciliation Engine.

Test categories:
  - Attribute drift: a later registry expiry is one audited correction,
    a matching fact writes nothing
  - Status drift: corrected through lifecycle events, or reported
  - Batch behaviour: unclaimed records, rejected facts, cancellation
  - plan_status_events / sync_event: the pure planning helpers
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from uuid import uuid4

from railway import ResultAssertions

from domain_ledger.domain.models import (
    AuditOperation,
    BillingItemType,
    Customer,
    Domain,
    DomainStatus,
    EntityKind,
    EventSource,
    EventType,
    RegistryFact,
)
from domain_ledger.main import Services
from domain_ledger.reconciliation import plan_status_events, sync_event
from tests.fakes import OPERATOR, InMemoryLedger

OBSERVED = datetime(2024, 12, 2, 3, 0, tzinfo=UTC)
EXPIRY = datetime(2025, 1, 1, tzinfo=UTC)


def _fact(name: str = "example.com", **fields) -> RegistryFact:
    fields.setdefault("expires_at", EXPIRY)
    fields.setdefault("observed_at", OBSERVED)
    return RegistryFact(name=name, **fields)


# ─────────────────────── Attribute drift ───────────────────────


class TestAttributeDrift:
    def test_later_expiry_is_one_audited_correction(
        self, services: Services, ledger: InMemoryLedger, active_domain: Domain
    ) -> None:
        """
        GIVEN example.com locally expiring 2025-01-01
        WHEN the registry reports 2026-01-01
        THEN exactly one audit entry records the corrected expiry.
        """
        audit_before = len(ledger.state.audit)

        report = ResultAssertions.assert_success(
            services.reconciliation.reconcile([_fact(expires_at=datetime(2026, 1, 1, tzinfo=UTC))])
        )

        assert (report.processed, report.corrected, report.unchanged) == (1, 1, 0)
        assert len(ledger.state.audit) == audit_before + 1
        entry = ledger.state.audit[-1]
        assert entry.entity_kind == EntityKind.DOMAIN
        assert entry.operation == AuditOperation.UPDATE
        assert entry.actor.username == "system:reconciliation"
        assert ledger.state.domains[active_domain.id].expires_at == datetime(2026, 1, 1, tzinfo=UTC)

    def test_matching_fact_writes_nothing(
        self, services: Services, ledger: InMemoryLedger, active_domain: Domain
    ) -> None:
        audit_before = len(ledger.state.audit)

        report = services.reconciliation.reconcile(
            [_fact(status=DomainStatus.ACTIVE, locked=True, auto_renew=True)]
        ).value()

        assert (report.corrected, report.unchanged) == (0, 1)
        assert len(ledger.state.audit) == audit_before

    def test_same_fact_twice_corrects_once(
        self, services: Services, ledger: InMemoryLedger, active_domain: Domain
    ) -> None:
        fact = _fact(locked=False, nameservers=("ns1.host.net", "ns2.host.net"))

        services.reconciliation.reconcile([fact])
        audit_after_first = len(ledger.state.audit)
        second = services.reconciliation.reconcile([fact]).value()

        assert second.unchanged == 1
        assert len(ledger.state.audit) == audit_after_first
        stored = ledger.state.domains[active_domain.id]
        assert stored.locked is False
        assert stored.nameservers == ("ns1.host.net", "ns2.host.net")

    def test_registry_id_adopted_and_used_for_matching(
        self, services: Services, ledger: InMemoryLedger, active_domain: Domain
    ) -> None:
        services.reconciliation.reconcile([_fact(registry_id="srs-1001")])

        report = services.reconciliation.reconcile(
            [
                _fact(
                    name="renamed.example",
                    registry_id="srs-1001",
                    locked=False,
                    observed_at=datetime(2024, 12, 3, 3, 0, tzinfo=UTC),
                )
            ]
        ).value()

        assert report.unclaimed == []
        assert ledger.state.domains[active_domain.id].registry_id == "srs-1001"
        assert ledger.state.domains[active_domain.id].locked is False

    def test_name_match_ignores_case(
        self, services: Services, ledger: InMemoryLedger, active_domain: Domain
    ) -> None:
        report = services.reconciliation.reconcile([_fact(name="EXAMPLE.COM", privacy=True)]).value()

        assert report.corrected == 1
        assert ledger.state.domains[active_domain.id].privacy is True


# ─────────────────────── Status drift ───────────────────────


class TestStatusDrift:
    def test_reported_grace_walks_the_chain(
        self, services: Services, ledger: InMemoryLedger, active_domain: Domain
    ) -> None:
        services.reconciliation.reconcile([_fact(status=DomainStatus.GRACE)])

        assert ledger.state.domains[active_domain.id].status == DomainStatus.GRACE
        updates = [
            e for e in ledger.audit_for(EntityKind.DOMAIN, active_domain.id)
            if e.operation == AuditOperation.UPDATE
        ]
        assert [e.after.status for e in updates[-2:]] == [DomainStatus.EXPIRED, DomainStatus.GRACE]

    def test_registry_renewal_of_expired_domain_is_billed(
        self, services: Services, ledger: InMemoryLedger, active_domain: Domain
    ) -> None:
        services.lifecycle.tick(now=datetime(2025, 1, 1, 6, tzinfo=UTC))

        services.reconciliation.reconcile(
            [_fact(status=DomainStatus.ACTIVE, expires_at=datetime(2026, 1, 1, tzinfo=UTC))]
        )

        stored = ledger.state.domains[active_domain.id]
        assert stored.status == DomainStatus.ACTIVE
        assert stored.expires_at == datetime(2026, 1, 1, tzinfo=UTC)
        renewals = [
            i for i in ledger.items_for_domain(active_domain.id) if i.item_type == BillingItemType.RENEWAL
        ]
        assert len(renewals) == 1

    def test_transfer_away_reported(
        self, services: Services, ledger: InMemoryLedger, active_domain: Domain
    ) -> None:
        report = services.reconciliation.reconcile([_fact(status=DomainStatus.TRANSFERRED_AWAY)]).value()

        assert report.corrected == 1
        stored = ledger.state.domains[active_domain.id]
        assert stored.status == DomainStatus.TRANSFERRED_AWAY
        assert stored.transferred_at == OBSERVED

    def test_impossible_drift_is_reported_not_forced(
        self, services: Services, ledger: InMemoryLedger, active_domain: Domain
    ) -> None:
        """
        GIVEN an active domain
        WHEN the registry reports it pending
        THEN no transition is attempted and the drift is reported.
        """
        audit_before = len(ledger.state.audit)

        report = services.reconciliation.reconcile([_fact(status=DomainStatus.PENDING)]).value()

        (drift,) = report.unresolved
        assert (drift.local_status, drift.reported_status) == (DomainStatus.ACTIVE, DomainStatus.PENDING)
        assert ledger.state.domains[active_domain.id].status == DomainStatus.ACTIVE
        assert len(ledger.state.audit) == audit_before


# ─────────────────────── Batch behaviour ───────────────────────


class TestBatch:
    def test_unknown_domain_is_unclaimed_not_created(
        self, services: Services, ledger: InMemoryLedger, active_domain: Domain
    ) -> None:
        report = services.reconciliation.reconcile([_fact(name="stranger.net", registry_id="srs-9")]).value()

        (record,) = report.unclaimed
        assert (record.name, record.registry_id) == ("stranger.net", "srs-9")
        assert len(ledger.state.domains) == 1

    def test_failing_fact_rolled_back_batch_continues(
        self, services: Services, ledger: InMemoryLedger, customer: Customer, active_domain: Domain
    ) -> None:
        """
        GIVEN a pending domain with no contacts and a healthy active domain
        WHEN the registry reports the pending one active and the other relocked
        THEN the first correction is rejected and the second still applies.
        """
        pending = services.registrar.register_domain(OPERATOR, customer.id, "half.org").value()

        report = services.reconciliation.reconcile(
            [
                _fact(name="half.org", status=DomainStatus.ACTIVE),
                _fact(locked=False),
            ]
        ).value()

        (rejected,) = report.rejected
        assert rejected.name == "half.org"
        assert "missing roles" in rejected.reason
        assert ledger.state.domains[pending.id].status == DomainStatus.PENDING
        assert ledger.state.domains[active_domain.id].locked is False
        assert report.corrected == 1

    def test_cancellation_between_facts(
        self, services: Services, ledger: InMemoryLedger, active_domain: Domain
    ) -> None:
        cancel = threading.Event()

        def facts() -> Iterator[RegistryFact]:
            yield _fact(locked=False)
            cancel.set()
            yield _fact(privacy=True)

        report = services.reconciliation.reconcile(facts(), cancel).value()

        assert report.cancelled is True
        assert report.processed == 1
        stored = ledger.state.domains[active_domain.id]
        assert stored.locked is False
        assert stored.privacy is False


# ─────────────────────── Planning helpers ───────────────────────


def _domain(status: DomainStatus, expires_at: datetime | None = EXPIRY) -> Domain:
    return Domain(customer_id=uuid4(), name="example.com", tld="com", status=status, expires_at=expires_at)


class TestPlanning:
    def test_no_reported_status_no_events(self) -> None:
        assert plan_status_events(_domain(DomainStatus.ACTIVE), _fact()) == []

    def test_pending_confirmed_only_with_expiry(self) -> None:
        pending = _domain(DomainStatus.PENDING, expires_at=None)

        assert plan_status_events(pending, _fact(status=DomainStatus.ACTIVE)) == [
            EventType.CONFIRM_REGISTRATION
        ]
        assert plan_status_events(pending, _fact(status=DomainStatus.ACTIVE, expires_at=None)) is None

    def test_active_again_needs_a_later_expiry(self) -> None:
        grace = _domain(DomainStatus.GRACE)

        assert plan_status_events(grace, _fact(status=DomainStatus.ACTIVE)) is None
        later = _fact(status=DomainStatus.ACTIVE, expires_at=datetime(2026, 1, 1, tzinfo=UTC))
        assert plan_status_events(grace, later) == [EventType.RENEW]

    def test_terminal_local_status_is_unresolvable(self) -> None:
        cancelled = _domain(DomainStatus.CANCELLED)

        assert plan_status_events(cancelled, _fact(status=DomainStatus.ACTIVE)) is None

    def test_sync_event_carries_only_differences(self) -> None:
        domain = _domain(DomainStatus.ACTIVE)

        event = sync_event(domain, _fact(locked=True, privacy=True))

        assert event is not None
        assert event.type == EventType.SYNC
        assert event.source == EventSource.RECONCILIATION
        assert event.privacy is True
        assert event.locked is None
        assert event.new_expires_at is None
        assert sync_event(domain, _fact(locked=True)) is None
