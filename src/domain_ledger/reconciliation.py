"""
Reconciliation Engine — resolves drift between local state and registry facts.

Input is a batch fetched COMPLETELY before any transaction opens; the
engine never calls the registry itself. Each fact is reconciled in its own
transaction, so a cancelled or failing batch leaves only fully committed
corrections behind.

Per fact:
  1. map to a local Domain by registry id, then by name; an unmapped fact
     is reported as an UnclaimedRegistryRecord and never auto-created
  2. status drift → lifecycle events through the Domain Lifecycle Engine
     (never a direct status write), so every correction is validated and
     audited like any other transition
  3. registry-authoritative attributes (expiry, lock, privacy, auto-renew,
     nameservers, registry id) → one SYNC event when any of them differ

A fact that already matches writes nothing.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

import structlog
from railway.result import Result

from domain_ledger.domain.lifecycle import TRANSITIONS, events_toward
from domain_ledger.domain.models import (
    Actor,
    Domain,
    DomainStatus,
    EventSource,
    EventType,
    LifecycleEvent,
    ReconciliationReport,
    RegistryFact,
    RejectedFact,
    UnclaimedRegistryRecord,
    UnresolvedDrift,
)
from domain_ledger.domain.ports import LedgerStore, LedgerTransaction
from domain_ledger.lifecycle import LifecycleEngine
from domain_ledger.transactions import run_in_transaction, utc_now

log = structlog.get_logger()

S = DomainStatus


@dataclass(frozen=True, slots=True)
class FactOutcome:
    corrected: bool = False
    unclaimed: UnclaimedRegistryRecord | None = None
    unresolved: UnresolvedDrift | None = None


def plan_status_events(domain: Domain, fact: RegistryFact) -> list[EventType] | None:
    """
    Lifecycle events that carry `domain` to the status the registry reports.

    Returns [] when there is no status drift and None when no legal path
    exists (the drift is then reported as unresolved).
    """
    reported, local = fact.status, domain.status
    if reported is None or reported == local:
        return []
    if local.is_terminal:
        return None
    match reported:
        case S.ACTIVE if local == S.PENDING:
            return [EventType.CONFIRM_REGISTRATION] if fact.expires_at else None
        case S.ACTIVE if local in (S.EXPIRED, S.GRACE):
            extends = fact.expires_at is not None and (
                domain.expires_at is None or fact.expires_at > domain.expires_at
            )
            return [EventType.RENEW] if extends else None
        case S.TRANSFERRED_AWAY:
            allowed = local in TRANSITIONS[EventType.TRANSFER_AWAY].sources
            return [EventType.TRANSFER_AWAY] if allowed else None
        case S.CANCELLED if local in TRANSITIONS[EventType.CANCEL].sources:
            return [EventType.CANCEL]
        case S.PENDING | S.ACTIVE:
            return None
        case _:
            return events_toward(local, reported)


def sync_event(domain: Domain, fact: RegistryFact) -> LifecycleEvent | None:
    """A SYNC event carrying only the attributes that differ, or None."""
    changes = {
        "new_expires_at": fact.expires_at if fact.expires_at not in (None, domain.expires_at) else None,
        "registry_id": fact.registry_id if fact.registry_id not in (None, domain.registry_id) else None,
        "locked": fact.locked if fact.locked not in (None, domain.locked) else None,
        "privacy": fact.privacy if fact.privacy not in (None, domain.privacy) else None,
        "auto_renew": fact.auto_renew if fact.auto_renew not in (None, domain.auto_renew) else None,
        "nameservers": (
            fact.nameservers
            if fact.nameservers is not None and fact.nameservers != domain.nameservers
            else None
        ),
    }
    if all(value is None for value in changes.values()):
        return None
    return LifecycleEvent(
        type=EventType.SYNC,
        occurred_at=fact.observed_at,
        source=EventSource.RECONCILIATION,
        **changes,
    )


class ReconciliationEngine:
    def __init__(
        self,
        store: LedgerStore,
        lifecycle: LifecycleEngine,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._clock = clock

    def reconcile(
        self,
        facts: Iterable[RegistryFact],
        cancel: threading.Event | None = None,
        actor: Actor | None = None,
    ) -> Result[ReconciliationReport]:
        """
        Reconcile a fetched batch, one transaction per fact.

        `cancel` is checked between facts; a cancelled batch reports how far
        it got. A fact whose correction fails is rolled back and reported as
        rejected while the batch continues.
        """
        actor = actor or Actor.system("reconciliation")
        processed = corrected = unchanged = 0
        unclaimed: list[UnclaimedRegistryRecord] = []
        unresolved: list[UnresolvedDrift] = []
        rejected: list[RejectedFact] = []
        cancelled = False

        for fact in facts:
            if cancel is not None and cancel.is_set():
                cancelled = True
                log.warning("reconciliation.cancelled", processed=processed)
                break
            processed += 1
            result = run_in_transaction(
                self._store,
                "reconcile fact",
                lambda tx, f=fact: self._reconcile_fact(tx, f, actor),
            )
            if result.is_failure():
                rejected.append(RejectedFact(fact.name, result.error().message))
                log.warning(
                    "reconciliation.fact_rejected", domain=fact.name, failure=result.error().message
                )
                continue
            outcome = result.value()
            if outcome.unclaimed is not None:
                unclaimed.append(outcome.unclaimed)
                continue
            if outcome.unresolved is not None:
                unresolved.append(outcome.unresolved)
            if outcome.corrected:
                corrected += 1
            else:
                unchanged += 1

        report = ReconciliationReport(
            processed=processed,
            corrected=corrected,
            unchanged=unchanged,
            unclaimed=unclaimed,
            unresolved=unresolved,
            rejected=rejected,
            cancelled=cancelled,
        )
        log.info(
            "reconciliation.completed",
            processed=processed,
            corrected=corrected,
            unchanged=unchanged,
            unclaimed=len(unclaimed),
            unresolved=len(unresolved),
            rejected=len(rejected),
            cancelled=cancelled,
        )
        return Result.success(report)

    def _reconcile_fact(self, tx: LedgerTransaction, fact: RegistryFact, actor: Actor) -> FactOutcome:
        found = self._find(tx, fact)
        if found is None:
            record = UnclaimedRegistryRecord(fact.name, fact.observed_at, fact.registry_id)
            log.warning(
                "reconciliation.unclaimed_record",
                domain=fact.name,
                registry_id=fact.registry_id,
                observed_at=fact.observed_at.isoformat(),
            )
            return FactOutcome(unclaimed=record)

        domain = tx.get_domain(found.id, lock=True)
        corrected = False
        unresolved = None
        events = plan_status_events(domain, fact)
        if events is None:
            unresolved = UnresolvedDrift(domain.id, domain.name, domain.status, fact.status)  # type: ignore[arg-type]
            log.warning(
                "reconciliation.unresolved_drift",
                domain=domain.name,
                local_status=domain.status.value,
                reported_status=fact.status.value if fact.status else None,
            )
            events = []

        for event_type in events:
            event = LifecycleEvent(
                type=event_type,
                occurred_at=fact.observed_at,
                source=EventSource.RECONCILIATION,
                new_expires_at=fact.expires_at,
                registry_id=fact.registry_id,
            )
            outcome = self._lifecycle.transition_in(tx, domain.id, event, actor)
            corrected = corrected or outcome.applied
            domain = outcome.domain

        if not domain.status.is_terminal:
            event = sync_event(domain, fact)
            if event is not None:
                outcome = self._lifecycle.transition_in(tx, domain.id, event, actor)
                corrected = corrected or outcome.applied
        if corrected:
            log.info("reconciliation.corrected", domain=domain.name, domain_id=str(domain.id))
        return FactOutcome(corrected=corrected, unresolved=unresolved)

    @staticmethod
    def _find(tx: LedgerTransaction, fact: RegistryFact) -> Domain | None:
        if fact.registry_id:
            domain = tx.find_domain_by_registry_id(fact.registry_id)
            if domain is not None:
                return domain
        return tx.find_domain_by_name(fact.name.lower())
