"""
Pipelines — the scheduled jobs, each a short railway over injected ports.

  run_reconciliation:
    registry.fetch_facts(window)          ← every fact fetched up front
      → engine.reconcile(facts)           ← one transaction per fact

  run_lifecycle_tick:   engine.tick(now)
  run_verification:     aggregates.verify_all(store)

A registry failure short-circuits before any transaction opens, so it
never touches local state.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from railway.result import Result

from domain_ledger.aggregates import AggregateMaintainer
from domain_ledger.domain.models import ReconciliationReport, TickReport, VerificationReport
from domain_ledger.domain.ports import LedgerStore, RegistryClient
from domain_ledger.lifecycle import LifecycleEngine
from domain_ledger.reconciliation import ReconciliationEngine


@dataclass(frozen=True, slots=True)
class ReconciliationWindow:
    """Expiration-date range of the domains fetched from the registry."""

    start: datetime
    end: datetime

    @staticmethod
    def around(now: datetime, days: int) -> ReconciliationWindow:
        return ReconciliationWindow(start=now - timedelta(days=days), end=now + timedelta(days=days))


def run_reconciliation(
    registry: RegistryClient,
    engine: ReconciliationEngine,
    window: ReconciliationWindow,
    cancel: threading.Event | None = None,
) -> Result[ReconciliationReport]:
    """
    Fetch the registry's facts for `window`, then reconcile them.

    Returns the ReconciliationReport, or the registry failure
    (RegistryUnavailable) with local state untouched.
    """
    return registry.fetch_facts(window.start, window.end).flat_map(
        lambda facts: engine.reconcile(facts, cancel)
    )


def run_lifecycle_tick(engine: LifecycleEngine, now: datetime | None = None) -> Result[TickReport]:
    return engine.tick(now)


def run_verification(aggregates: AggregateMaintainer, store: LedgerStore) -> Result[VerificationReport]:
    return aggregates.verify_all(store)
