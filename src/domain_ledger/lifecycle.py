"""
Domain Lifecycle Engine — the ONE code path that mutates domain status.

Customer/operator actions, the periodic tick and registry drift
corrections all end up in `transition_in()`, which runs inside the
caller's transaction:

  1. lock the Domain row and re-read it (never a cached copy)
  2. authorize the actor against the event source
  3. idempotency: an audit entry carrying the same key means the event
     was already applied → no-op, report it as a duplicate; otherwise
     validate the transition (domain.lifecycle rules)
  4. state mutation
  5. billing item on the owner's open invoice (billable events only)
  6. aggregate recompute (invoice totals, customer balance)
  7. audit entry for the Domain, carrying the idempotency key
  8. commit (done by the caller's transaction boundary)

Any exception rolls back all of it.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from uuid import UUID

import structlog
from railway.result import Result

from domain_ledger.aggregates import AggregateMaintainer
from domain_ledger.audit import AuditRecorder
from domain_ledger.billing import BillingService
from domain_ledger.domain.access import ensure_operator, ensure_owner
from domain_ledger.domain.aggregates import line_total
from domain_ledger.domain.attributes import AttributeSchemas
from domain_ledger.domain.errors import ConstraintViolation, StaleTransition
from domain_ledger.domain.lifecycle import (
    TIME_EVENTS,
    TRANSITIONS,
    WindowTable,
    apply_event,
    idempotency_key,
    next_time_step,
)
from domain_ledger.domain.models import (
    Actor,
    BillingItem,
    BillingItemType,
    ContactRole,
    Domain,
    DomainStatus,
    EventSource,
    EventType,
    LifecycleEvent,
    RequestMeta,
    RoleAssignment,
    TickReport,
    TransitionOutcome,
)
from domain_ledger.domain.ports import LedgerStore, LedgerTransaction
from domain_ledger.transactions import run_in_transaction, utc_now

log = structlog.get_logger()


class LifecycleEngine:
    def __init__(
        self,
        store: LedgerStore,
        audit: AuditRecorder,
        aggregates: AggregateMaintainer,
        billing: BillingService,
        windows: WindowTable | None = None,
        schemas: AttributeSchemas | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._audit = audit
        self._aggregates = aggregates
        self._billing = billing
        self._windows = windows or WindowTable()
        self._schemas = schemas or AttributeSchemas()
        self._clock = clock

    def transition(
        self,
        domain_id: UUID,
        event: LifecycleEvent,
        actor: Actor,
        request_meta: RequestMeta | None = None,
    ) -> Result[TransitionOutcome]:
        """Apply one lifecycle event in its own transaction."""
        return run_in_transaction(
            self._store,
            f"transition {event.type}",
            lambda tx: self.transition_in(tx, domain_id, event, actor, request_meta),
        )

    def transition_in(
        self,
        tx: LedgerTransaction,
        domain_id: UUID,
        event: LifecycleEvent,
        actor: Actor,
        request_meta: RequestMeta | None = None,
        now: datetime | None = None,
    ) -> TransitionOutcome:
        """
        Apply one lifecycle event inside the caller's transaction.

        `now` defaults to the engine clock; the tick passes its own instant so
        the due check under the lock uses the same reference time.
        """
        domain = tx.get_domain(domain_id, lock=True)
        self._authorize(domain, event, actor)
        key = idempotency_key(domain.id, event.type, event.occurred_at)
        if tx.find_audit_by_key(key) is not None:
            log.info(
                "lifecycle.duplicate_event",
                domain_id=str(domain.id),
                event_type=event.type.value,
                idempotency_key=key,
            )
            return TransitionOutcome(domain, key, applied=False, duplicate=True)

        now = now or self._clock()
        if event.type in TIME_EVENTS and event.source == EventSource.SCHEDULER:
            self._ensure_due(domain, event, now)

        after = apply_event(domain, event, now)
        if replace(after, updated_at=domain.updated_at) == domain:
            return TransitionOutcome(domain, key, applied=False)
        if domain.status == DomainStatus.PENDING and after.status == DomainStatus.ACTIVE:
            self._ensure_complete(tx, domain)
        if event.type == EventType.CHANGE_OWNER:
            self._reassign_roles(tx, domain, after, event, actor, request_meta)

        tx.update_domain(after)
        item = None
        billable = TRANSITIONS[event.type].billable
        if billable is not None:
            item = self._bill(tx, after, billable, event, key, actor, request_meta)
        self._audit.updated(tx, domain, after, actor, request_meta, idempotency_key=key)
        log.info(
            "lifecycle.transition_applied",
            domain_id=str(domain.id),
            domain=domain.name,
            event_type=event.type.value,
            source=event.source.value,
            from_status=domain.status.value,
            to_status=after.status.value,
        )
        return TransitionOutcome(after, key, billing_item=item)

    # ───────────────────── time ─────────────────────

    def tick(self, now: datetime | None = None, actor: Actor | None = None) -> Result[TickReport]:
        """
        Apply every due time-driven step: at most one step per domain, each
        in its own transaction. Also flags issued invoices past due as overdue.
        """
        now = now or self._clock()
        actor = actor or Actor.system("tick")
        listed = run_in_transaction(self._store, "tick", lambda tx: tx.list_time_candidates(now))
        if listed.is_failure():
            return Result.failure_from(listed.error())

        report = TickReport()
        for domain_id in listed.value():
            result = run_in_transaction(
                self._store,
                "tick step",
                lambda tx, did=domain_id: self._tick_one(tx, did, now, actor),
            )
            if result.is_failure():
                report.failures.append(result.error().message)
            elif result.value().applied:
                report.transitions.append(result.value())

        overdue = self._billing.mark_overdue(now, actor)
        report = replace(report, overdue_invoices=overdue.get_or_else(0))
        log.info(
            "lifecycle.tick_completed",
            candidates=len(listed.value()),
            transitions=len(report.transitions),
            failures=len(report.failures),
            overdue_invoices=report.overdue_invoices,
        )
        return Result.success(report)

    def _tick_one(
        self, tx: LedgerTransaction, domain_id: UUID, now: datetime, actor: Actor
    ) -> TransitionOutcome:
        domain = tx.get_domain(domain_id, lock=True)
        step = next_time_step(domain, self._windows.for_tld(domain.tld), now)
        if step is None:
            return TransitionOutcome(domain, "", applied=False)
        event_type, due_at = step
        event = LifecycleEvent(type=event_type, occurred_at=due_at, source=EventSource.SCHEDULER)
        return self.transition_in(tx, domain_id, event, actor, now=now)

    def _ensure_due(self, domain: Domain, event: LifecycleEvent, now: datetime) -> None:
        step = next_time_step(domain, self._windows.for_tld(domain.tld), now)
        if step is None or step[0] != event.type:
            raise StaleTransition(
                f"{event.type} is not due for a {domain.status} domain", domain_id=domain.id
            )

    # ───────────────────── rules needing the store ─────────────────────

    @staticmethod
    def _authorize(domain: Domain, event: LifecycleEvent, actor: Actor) -> None:
        if event.source == EventSource.CUSTOMER:
            ensure_owner(actor, domain.customer_id, domain_id=domain.id)
        else:
            ensure_operator(actor, f"{event.source} event {event.type}")

    def _ensure_complete(self, tx: LedgerTransaction, domain: Domain) -> None:
        """All four roles and every required TLD attribute before leaving pending."""
        filled = {a.role for a in tx.list_role_assignments(domain.id)}
        missing_roles = sorted(role.value for role in ContactRole if role not in filled)
        values = tx.get_registry_attributes(domain.id).values
        missing_attrs = self._schemas.for_tld(domain.tld).missing_required(values)
        if missing_roles or missing_attrs:
            raise ConstraintViolation(
                f"cannot activate: missing roles {missing_roles}, "
                f"missing attributes {missing_attrs}",
                domain_id=domain.id,
            )

    def _reassign_roles(
        self,
        tx: LedgerTransaction,
        domain: Domain,
        after: Domain,
        event: LifecycleEvent,
        actor: Actor,
        request_meta: RequestMeta | None,
    ) -> None:
        """Ownership change: every role must move to a contact of the new owner."""
        tx.get_customer(after.customer_id)
        contacts = event.contacts or {}
        if set(contacts) != set(ContactRole):
            raise ConstraintViolation(
                "change_owner must reassign all four contact roles",
                domain_id=domain.id,
                customer_id=after.customer_id,
            )
        current = {a.role: a for a in tx.list_role_assignments(domain.id)}
        for role, contact_id in contacts.items():
            contact = tx.get_contact(contact_id)
            if contact.customer_id != after.customer_id:
                raise ConstraintViolation(
                    f"{role} contact belongs to another customer",
                    domain_id=domain.id,
                    contact_id=contact_id,
                )
            assignment = RoleAssignment(domain.id, role, contact_id)
            tx.upsert_role_assignment(assignment)
            before = current.get(role)
            if before is None:
                self._audit.inserted(tx, assignment, actor, request_meta)
            elif before != assignment:
                self._audit.updated(tx, before, assignment, actor, request_meta)

    def ensure_affordable(
        self, tx: LedgerTransaction, domain: Domain, event_type: EventType, years: int
    ) -> None:
        """
        Credit check for a customer-initiated billable event, before anything
        irreversible (such as a registry call) happens on its behalf.
        """
        item_type = TRANSITIONS[event_type].billable
        if item_type is None:
            return
        customer = tx.get_customer(domain.customer_id, lock=True)
        _, total = self._price(domain, item_type, years)
        self._billing.ensure_within_credit(tx, customer, total)

    def _price(self, domain: Domain, item_type: BillingItemType, years: int) -> tuple[Decimal, Decimal]:
        if years < 1:
            raise ConstraintViolation("years must be at least 1", domain_id=domain.id)
        policy = self._aggregates.policy
        unit_price = policy.quantize(self._billing.prices.price_for(domain.tld, item_type))
        return unit_price, line_total(policy, years, unit_price)

    def _bill(
        self,
        tx: LedgerTransaction,
        domain: Domain,
        item_type: BillingItemType,
        event: LifecycleEvent,
        key: str,
        actor: Actor,
        request_meta: RequestMeta | None,
    ) -> BillingItem:
        customer = tx.get_customer(domain.customer_id, lock=True)
        unit_price, total = self._price(domain, item_type, event.years)
        if event.source == EventSource.CUSTOMER:
            self._billing.ensure_within_credit(tx, customer, total)
        invoice = self._billing.open_invoice_in(tx, customer.id, actor, request_meta)
        item = BillingItem(
            invoice_id=invoice.id,
            item_type=item_type,
            description=f"{item_type.value} {domain.name} ({event.years}y)",
            unit_price=unit_price,
            total_price=total,
            quantity=event.years,
            domain_id=domain.id,
            idempotency_key=key,
            created_at=self._clock(),
        )
        return self._billing.add_item_in(tx, invoice, item, actor, request_meta)
