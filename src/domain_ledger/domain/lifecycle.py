"""
Lifecycle state machine — pure transition rules, no I/O.

    pending ──confirm_registration / complete_transfer_in──→ active
    active ──renew──→ active                 (new expires_at only)
    active ──expire──→ expired ──enter_grace──→ grace
           ──enter_redemption──→ redemption ──enter_pending_delete──→ pending_delete
           ──purge──→ cancelled
    active / expired / grace ──transfer_away──→ transferred_away
    pending / active ──cancel──→ cancelled

transferred_away and cancelled are terminal. Time events are due at
fixed offsets from `expires_at`, configured per top-level label
(LifecycleWindows).

The Domain Lifecycle Engine (domain_ledger.lifecycle) wraps these rules
with locking, billing, aggregates and audit.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from uuid import UUID

from domain_ledger.domain.errors import (
    ConstraintViolation,
    InvalidStateTransition,
    StaleTransition,
)
from domain_ledger.domain.models import (
    BillingItemType,
    Domain,
    DomainStatus,
    EventType,
    LifecycleEvent,
)

S = DomainStatus


@dataclass(frozen=True, slots=True)
class TransitionRule:
    """Allowed source statuses, the target status (None = unchanged) and what it bills."""

    sources: frozenset[DomainStatus]
    target: DomainStatus | None
    billable: BillingItemType | None = None


_NON_TERMINAL = frozenset(s for s in DomainStatus if not s.is_terminal)

TRANSITIONS: dict[EventType, TransitionRule] = {
    EventType.CONFIRM_REGISTRATION: TransitionRule(
        frozenset({S.PENDING}), S.ACTIVE, BillingItemType.REGISTRATION
    ),
    EventType.COMPLETE_TRANSFER_IN: TransitionRule(
        frozenset({S.PENDING}), S.ACTIVE, BillingItemType.TRANSFER
    ),
    EventType.RENEW: TransitionRule(
        frozenset({S.ACTIVE, S.EXPIRED, S.GRACE}), S.ACTIVE, BillingItemType.RENEWAL
    ),
    EventType.EXPIRE: TransitionRule(frozenset({S.ACTIVE}), S.EXPIRED),
    EventType.ENTER_GRACE: TransitionRule(frozenset({S.EXPIRED}), S.GRACE),
    EventType.ENTER_REDEMPTION: TransitionRule(frozenset({S.GRACE}), S.REDEMPTION),
    EventType.ENTER_PENDING_DELETE: TransitionRule(frozenset({S.REDEMPTION}), S.PENDING_DELETE),
    EventType.PURGE: TransitionRule(frozenset({S.PENDING_DELETE}), S.CANCELLED),
    EventType.TRANSFER_AWAY: TransitionRule(
        frozenset({S.ACTIVE, S.EXPIRED, S.GRACE}), S.TRANSFERRED_AWAY
    ),
    EventType.CANCEL: TransitionRule(frozenset({S.PENDING, S.ACTIVE}), S.CANCELLED),
    EventType.CHANGE_OWNER: TransitionRule(frozenset({S.ACTIVE}), S.ACTIVE),
    EventType.SYNC: TransitionRule(_NON_TERMINAL, None),
}

# Time-driven chain: (from, event, to), in lifecycle order.
TIME_CHAIN: tuple[tuple[DomainStatus, EventType, DomainStatus], ...] = (
    (S.ACTIVE, EventType.EXPIRE, S.EXPIRED),
    (S.EXPIRED, EventType.ENTER_GRACE, S.GRACE),
    (S.GRACE, EventType.ENTER_REDEMPTION, S.REDEMPTION),
    (S.REDEMPTION, EventType.ENTER_PENDING_DELETE, S.PENDING_DELETE),
    (S.PENDING_DELETE, EventType.PURGE, S.CANCELLED),
)

TIME_EVENTS = frozenset(event for _, event, _ in TIME_CHAIN)


@dataclass(frozen=True, slots=True)
class LifecycleWindows:
    """
    Durations (days) a domain spends in each post-expiry status.

    All offsets are measured from `expires_at`:
      expired        at expires_at
      grace          at expires_at + expired_days
      redemption     at ... + grace_days
      pending_delete at ... + redemption_days
      cancelled      at ... + pending_delete_days
    """

    expired_days: int = 1
    grace_days: int = 40
    redemption_days: int = 30
    pending_delete_days: int = 5

    def offset_for(self, event: EventType) -> timedelta:
        steps = (0, self.expired_days, self.grace_days, self.redemption_days, self.pending_delete_days)
        for position, (_, chain_event, _) in enumerate(TIME_CHAIN):
            if chain_event == event:
                return timedelta(days=sum(steps[: position + 1]))
        raise ValueError(f"{event} is not a time-driven event")


@dataclass(frozen=True, slots=True)
class WindowTable:
    """LifecycleWindows per top-level label, falling back to a "default" entry."""

    by_tld: dict[str, LifecycleWindows] = field(default_factory=dict)

    def for_tld(self, tld: str) -> LifecycleWindows:
        return self.by_tld.get(tld.lower()) or self.by_tld.get("default") or LifecycleWindows()


def check_transition(domain: Domain, event_type: EventType) -> DomainStatus:
    """
    Validate that `event_type` is legal from the domain's current status.

    Returns the target status; raises InvalidStateTransition otherwise.
    """
    rule = TRANSITIONS[event_type]
    if domain.status not in rule.sources:
        raise InvalidStateTransition(
            f"{event_type} not allowed from {domain.status}", domain_id=domain.id
        )
    return rule.target or domain.status


def idempotency_key(domain_id: UUID, event_type: EventType, occurred_at: datetime) -> str:
    """Deterministic key of an event: sha256(domain id | event type | source timestamp)."""
    stamp = occurred_at.astimezone(UTC).isoformat()
    return hashlib.sha256(f"{domain_id}|{event_type}|{stamp}".encode()).hexdigest()


def apply_event(domain: Domain, event: LifecycleEvent, now: datetime) -> Domain:
    """
    Build the post-transition Domain. Pure: validates legality and payload,
    never touches storage.
    """
    target = check_transition(domain, event.type)
    changes: dict[str, object] = {"status": target, "updated_at": now}

    match event.type:
        case EventType.CONFIRM_REGISTRATION:
            changes["expires_at"] = _require_expiry(domain, event)
            changes["registered_at"] = domain.registered_at or event.occurred_at
        case EventType.COMPLETE_TRANSFER_IN:
            changes["expires_at"] = _require_expiry(domain, event)
            changes["transferred_at"] = event.occurred_at
            changes["registered_at"] = domain.registered_at or event.occurred_at
        case EventType.RENEW:
            new_expiry = _require_expiry(domain, event)
            if domain.expires_at is not None and new_expiry <= domain.expires_at:
                raise StaleTransition(
                    f"renewal to {new_expiry.isoformat()} does not extend "
                    f"committed expiry {domain.expires_at.isoformat()}",
                    domain_id=domain.id,
                )
            changes["expires_at"] = new_expiry
            changes["renewed_at"] = event.occurred_at
        case EventType.TRANSFER_AWAY:
            changes["transferred_at"] = event.occurred_at
        case EventType.CHANGE_OWNER:
            if event.new_customer_id is None or event.new_customer_id == domain.customer_id:
                raise ConstraintViolation(
                    "change_owner requires a different new owner", domain_id=domain.id
                )
            changes["customer_id"] = event.new_customer_id
        case EventType.SYNC:
            if event.new_expires_at is not None:
                changes["expires_at"] = event.new_expires_at

    if event.registry_id is not None:
        changes["registry_id"] = event.registry_id
    for flag in ("locked", "privacy", "auto_renew", "nameservers"):
        value = getattr(event, flag)
        if value is not None:
            changes[flag] = value
    return replace(domain, **changes)


def _require_expiry(domain: Domain, event: LifecycleEvent) -> datetime:
    if event.new_expires_at is None:
        raise ConstraintViolation(f"{event.type} requires new_expires_at", domain_id=domain.id)
    return event.new_expires_at


def next_time_step(
    domain: Domain, windows: LifecycleWindows, now: datetime
) -> tuple[EventType, datetime] | None:
    """
    The single time-driven step due for `domain` at `now`, with its due time.

    Returns None when nothing is due. Only one step is returned even when
    several windows have elapsed: each tick advances a domain by one status.
    """
    if domain.expires_at is None:
        return None
    for source, event, _ in TIME_CHAIN:
        if domain.status == source:
            due_at = domain.expires_at + windows.offset_for(event)
            return (event, due_at) if due_at <= now else None
    return None


def events_toward(current: DomainStatus, target: DomainStatus) -> list[EventType] | None:
    """
    Time-chain events leading from `current` to `target`, step by step.

    Returns None when `target` is not reachable along the chain.
    """
    path: list[EventType] = []
    status = current
    for source, event, to in TIME_CHAIN:
        if status == target:
            break
        if source == status:
            path.append(event)
            status = to
    return path if status == target and path else None

