"""
Registrar operations — the remaining front-end-facing operations.

Customers, contacts, role assignments, registry-specific attributes, the
encrypted transfer-authorization code and the read-side queries. Every
mutation runs in one transaction and is audited like the lifecycle and
billing paths.

Registry-backed actions (register / renew / transfer in) follow a railway
that never holds a transaction across the registry call:

    read + validate + credit check (tx) → registry submit (no tx) → lifecycle transition (tx)

A customer who cannot pay for the action is refused before the registry
is ever asked; the transition re-checks credit under its own lock.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from dateutil.relativedelta import relativedelta
from railway import ErrorCode
from railway.result import Result

from domain_ledger.audit import AuditRecorder
from domain_ledger.domain.access import ensure_operator, ensure_owner
from domain_ledger.domain.attributes import AttributeSchemas
from domain_ledger.domain.errors import AuthorizationDenied, ConstraintViolation, EntityNotFound
from domain_ledger.domain.lifecycle import check_transition
from domain_ledger.domain.models import (
    Actor,
    AuditEntry,
    ChainVerification,
    Contact,
    ContactRole,
    Customer,
    CustomerSummary,
    Domain,
    EntityKind,
    EventSource,
    EventType,
    LifecycleEvent,
    RegistryAttributes,
    RequestMeta,
    RoleAssignment,
    TransitionOutcome,
)
from domain_ledger.domain.ports import (
    AuthCodeCipher,
    LedgerStore,
    LedgerTransaction,
    RegistryClient,
    RegistryReceipt,
    RegistryRequest,
)
from domain_ledger.lifecycle import LifecycleEngine
from domain_ledger.transactions import run_in_transaction, utc_now

log = structlog.get_logger()

_CONTACT_FIELDS = frozenset(
    {
        "first_name", "last_name", "organization", "email", "phone", "fax",
        "address1", "address2", "city", "state_province", "postal_code", "country_code",
    }
)


def split_domain_name(name: str) -> tuple[str, str]:
    """Normalize a domain name and derive its top-level label."""
    normalized = name.strip().lower().rstrip(".")
    labels = normalized.split(".")
    if len(labels) < 2 or not all(labels):
        raise ConstraintViolation(f"{name!r} is not a fully qualified domain name")
    return normalized, labels[-1]


class Registrar:
    def __init__(
        self,
        store: LedgerStore,
        audit: AuditRecorder,
        lifecycle: LifecycleEngine,
        cipher: AuthCodeCipher,
        registry: RegistryClient | None = None,
        schemas: AttributeSchemas | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._audit = audit
        self._lifecycle = lifecycle
        self._cipher = cipher
        self._registry = registry
        self._schemas = schemas or AttributeSchemas()
        self._clock = clock

    # ───────────────────── customers & contacts ─────────────────────

    def ensure_customer(
        self, actor: Actor, email: str, request_meta: RequestMeta | None = None
    ) -> Result[Customer]:
        """The actor's Customer, created on first interaction."""

        def work(tx: LedgerTransaction) -> Customer:
            existing = tx.find_customer_by_username(actor.username)
            if existing is not None:
                return existing
            now = self._clock()
            customer = Customer(username=actor.username, email=email, created_at=now, updated_at=now)
            if actor.customer_id is not None:
                customer = replace(customer, id=actor.customer_id)
            stored = tx.insert_customer(customer)
            self._audit.inserted(tx, stored, actor, request_meta)
            log.info("registrar.customer_created", customer_id=str(stored.id), username=actor.username)
            return stored

        return run_in_transaction(self._store, "ensure_customer", work)

    def create_contact(
        self, actor: Actor, contact: Contact, request_meta: RequestMeta | None = None
    ) -> Result[Contact]:
        def work(tx: LedgerTransaction) -> Contact:
            ensure_owner(actor, contact.customer_id)
            tx.get_customer(contact.customer_id)
            now = self._clock()
            stored = tx.insert_contact(
                replace(contact, country_code=contact.country_code.upper(), created_at=now, updated_at=now)
            )
            self._audit.inserted(tx, stored, actor, request_meta)
            return stored

        return run_in_transaction(self._store, "create_contact", work)

    def update_contact(
        self,
        actor: Actor,
        contact_id: UUID,
        changes: dict[str, Any],
        request_meta: RequestMeta | None = None,
    ) -> Result[Contact]:
        def work(tx: LedgerTransaction) -> Contact:
            unknown = set(changes) - _CONTACT_FIELDS
            if unknown:
                raise ConstraintViolation(
                    f"contact fields cannot be changed: {sorted(unknown)}", contact_id=contact_id
                )
            before = tx.get_contact(contact_id)
            ensure_owner(actor, before.customer_id, contact_id=contact_id)
            after = replace(before, **changes, updated_at=self._clock())
            tx.update_contact(after)
            self._audit.updated(tx, before, after, actor, request_meta)
            return after

        return run_in_transaction(self._store, "update_contact", work)

    def delete_contact(
        self, actor: Actor, contact_id: UUID, request_meta: RequestMeta | None = None
    ) -> Result[Contact]:
        """Delete a contact no role assignment references. Returns the deleted record."""

        def work(tx: LedgerTransaction) -> Contact:
            before = tx.get_contact(contact_id)
            ensure_owner(actor, before.customer_id, contact_id=contact_id)
            if tx.contact_in_use(contact_id):
                raise ConstraintViolation(
                    "contact is assigned to a domain role", contact_id=contact_id
                )
            tx.delete_contact(contact_id)
            self._audit.deleted(tx, before, actor, request_meta)
            return before

        return run_in_transaction(self._store, "delete_contact", work)

    # ───────────────────── domains ─────────────────────

    def register_domain(
        self,
        actor: Actor,
        customer_id: UUID,
        name: str,
        auto_renew: bool = True,
        privacy: bool = False,
        nameservers: tuple[str, ...] = (),
        request_meta: RequestMeta | None = None,
    ) -> Result[Domain]:
        """Record a new pending domain; it becomes active once the registry confirms it."""

        def work(tx: LedgerTransaction) -> Domain:
            ensure_owner(actor, customer_id)
            normalized, tld = split_domain_name(name)
            tx.get_customer(customer_id)
            if tx.find_domain_by_name(normalized) is not None:
                raise ConstraintViolation(f"{normalized} is already registered here")
            now = self._clock()
            domain = tx.insert_domain(
                Domain(
                    customer_id=customer_id,
                    name=normalized,
                    tld=tld,
                    auto_renew=auto_renew,
                    privacy=privacy,
                    nameservers=tuple(ns.lower() for ns in nameservers),
                    created_at=now,
                    updated_at=now,
                )
            )
            self._audit.inserted(tx, domain, actor, request_meta)
            log.info("registrar.domain_recorded", domain=normalized, domain_id=str(domain.id))
            return domain

        return run_in_transaction(self._store, "register_domain", work)

    def assign_contact_role(
        self,
        actor: Actor,
        domain_id: UUID,
        role: ContactRole,
        contact_id: UUID,
        request_meta: RequestMeta | None = None,
    ) -> Result[RoleAssignment]:
        """Fill or reassign one role. Roles are never removed, only reassigned."""

        def work(tx: LedgerTransaction) -> RoleAssignment:
            domain = tx.get_domain(domain_id, lock=True)
            ensure_owner(actor, domain.customer_id, domain_id=domain_id)
            if domain.status.is_terminal:
                raise ConstraintViolation(f"domain is {domain.status}", domain_id=domain_id)
            contact = tx.get_contact(contact_id)
            if contact.customer_id != domain.customer_id:
                raise ConstraintViolation(
                    "contact belongs to another customer",
                    domain_id=domain_id,
                    contact_id=contact_id,
                )
            current = {a.role: a for a in tx.list_role_assignments(domain_id)}.get(role)
            assignment = RoleAssignment(domain_id, role, contact_id)
            if current == assignment:
                return assignment
            tx.upsert_role_assignment(assignment)
            if current is None:
                self._audit.inserted(tx, assignment, actor, request_meta)
            else:
                self._audit.updated(tx, current, assignment, actor, request_meta)
            return assignment

        return run_in_transaction(self._store, "assign_contact_role", work)

    def set_registry_attributes(
        self,
        actor: Actor,
        domain_id: UUID,
        values: dict[str, str],
        request_meta: RequestMeta | None = None,
    ) -> Result[RegistryAttributes]:
        """Replace the domain's attributes after validating them against its TLD schema."""

        def work(tx: LedgerTransaction) -> RegistryAttributes:
            domain = tx.get_domain(domain_id, lock=True)
            ensure_owner(actor, domain.customer_id, domain_id=domain_id)
            validated = self._schemas.for_tld(domain.tld).validate(values, domain_id=domain_id)
            before = tx.get_registry_attributes(domain_id)
            after = RegistryAttributes(domain_id, validated)
            if before == after:
                return after
            tx.replace_registry_attributes(after)
            if before.values:
                self._audit.updated(tx, before, after, actor, request_meta)
            else:
                self._audit.inserted(tx, after, actor, request_meta)
            return after

        return run_in_transaction(self._store, "set_registry_attributes", work)

    # ───────────────────── transfer authorization code ─────────────────────

    def set_auth_code(
        self,
        actor: Actor,
        domain_id: UUID,
        auth_code: str,
        request_meta: RequestMeta | None = None,
    ) -> Result[Domain]:
        """Store a new auth code encrypted; only the change timestamp is audited."""

        def work(tx: LedgerTransaction) -> Domain:
            domain = tx.get_domain(domain_id, lock=True)
            ensure_owner(actor, domain.customer_id, domain_id=domain_id)
            if not auth_code:
                raise ConstraintViolation("auth code must not be empty", domain_id=domain_id)
            tx.store_auth_code(domain_id, self._cipher.encrypt(auth_code))
            now = self._clock()
            after = replace(domain, auth_code_changed_at=now, updated_at=now)
            tx.update_domain(after)
            self._audit.updated(tx, domain, after, actor, request_meta)
            return after

        return run_in_transaction(self._store, "set_auth_code", work)

    def reveal_auth_code(self, actor: Actor, domain_id: UUID) -> Result[str]:
        """Decrypt the auth code for the domain's owner or an operator."""

        def work(tx: LedgerTransaction) -> str:
            domain = tx.get_domain(domain_id)
            ensure_owner(actor, domain.customer_id, domain_id=domain_id)
            token = tx.load_auth_code(domain_id)
            if token is None:
                raise EntityNotFound("no auth code stored", domain_id=domain_id)
            log.info("registrar.auth_code_revealed", domain_id=str(domain_id), actor=actor.username)
            return self._cipher.decrypt(token)

        return run_in_transaction(self._store, "reveal_auth_code", work)

    # ───────────────────── queries ─────────────────────

    def customer_summary(self, actor: Actor, customer_id: UUID) -> Result[CustomerSummary]:
        """What the customer owns, in what state, and what it owes — no registry round-trip."""

        def work(tx: LedgerTransaction) -> CustomerSummary:
            ensure_owner(actor, customer_id)
            return CustomerSummary(
                customer=tx.get_customer(customer_id),
                domains=tx.list_domains_for_customer(customer_id),
                invoices=tx.list_invoices_for_customer(customer_id),
            )

        return run_in_transaction(self._store, "customer_summary", work)

    def audit_history(
        self, actor: Actor, entity_kind: EntityKind, entity_id: UUID
    ) -> Result[list[AuditEntry]]:
        ensure = run_in_transaction(
            self._store,
            "audit_history",
            lambda tx: self._authorize_history(tx, actor, entity_kind, entity_id),
        )
        return ensure.flat_map(lambda _: self._audit.history(self._store, entity_kind, entity_id))

    def verify_audit_chain(
        self, actor: Actor, entity_kind: EntityKind, entity_id: UUID
    ) -> Result[ChainVerification]:
        if not actor.is_operator:
            denied = AuthorizationDenied(
                f"audit chain verification requires an operator, not {actor.username}"
            )
            return Result.failure(denied.code, denied.describe(), denied)
        return self._audit.verify_chain(self._store, entity_kind, entity_id)

    @staticmethod
    def _authorize_history(
        tx: LedgerTransaction, actor: Actor, entity_kind: EntityKind, entity_id: UUID
    ) -> bool:
        """Customers may read their own customer record and domains; operators anything."""
        if actor.is_operator:
            return True
        match entity_kind:
            case EntityKind.CUSTOMER:
                ensure_owner(actor, entity_id)
            case EntityKind.DOMAIN:
                ensure_owner(actor, tx.get_domain(entity_id).customer_id, domain_id=entity_id)
            case _:
                ensure_operator(actor, f"{entity_kind} audit history")
        return True

    # ───────────────────── registry-backed actions ─────────────────────

    def register_with_registry(
        self,
        actor: Actor,
        domain_id: UUID,
        years: int = 1,
        request_meta: RequestMeta | None = None,
    ) -> Result[TransitionOutcome]:
        """Submit a pending domain to the registry, then confirm it locally."""
        return self._registry_action(
            actor,
            domain_id,
            EventType.CONFIRM_REGISTRATION,
            lambda d: RegistryRequest("SW_REGISTER", d.name, {"period": years, "reg_type": "new"}),
            lambda d, receipt, now: receipt.expires_at or now + relativedelta(years=years),
            years,
            request_meta,
        )

    def renew_with_registry(
        self,
        actor: Actor,
        domain_id: UUID,
        years: int = 1,
        request_meta: RequestMeta | None = None,
    ) -> Result[TransitionOutcome]:
        def new_expiry(d: Domain, receipt: RegistryReceipt, now: datetime) -> datetime:
            base = d.expires_at or now
            return receipt.expires_at or base + relativedelta(years=years)

        return self._registry_action(
            actor,
            domain_id,
            EventType.RENEW,
            lambda d: RegistryRequest(
                "RENEW",
                d.name,
                {
                    "period": years,
                    "currentexpirationyear": (d.expires_at or self._clock()).year,
                    "handle": "process",
                },
            ),
            new_expiry,
            years,
            request_meta,
        )

    def transfer_in_with_registry(
        self,
        actor: Actor,
        domain_id: UUID,
        auth_code: str,
        request_meta: RequestMeta | None = None,
    ) -> Result[TransitionOutcome]:
        return self._registry_action(
            actor,
            domain_id,
            EventType.COMPLETE_TRANSFER_IN,
            lambda d: RegistryRequest(
                "SW_REGISTER", d.name, {"reg_type": "transfer", "auth_info": auth_code}
            ),
            lambda d, receipt, now: receipt.expires_at or now + relativedelta(years=1),
            1,
            request_meta,
        )

    def _registry_action(
        self,
        actor: Actor,
        domain_id: UUID,
        event_type: EventType,
        build_request: Callable[[Domain], RegistryRequest],
        new_expiry: Callable[[Domain, RegistryReceipt, datetime], datetime],
        years: int,
        request_meta: RequestMeta | None,
    ) -> Result[TransitionOutcome]:
        registry = self._registry
        if registry is None:
            return Result.failure(
                ErrorCode.CONFIGURATION_ERROR, "no registry client is configured"
            )

        def prepare(tx: LedgerTransaction) -> Domain:
            domain = tx.get_domain(domain_id)
            ensure_owner(actor, domain.customer_id, domain_id=domain_id)
            check_transition(domain, event_type)
            if not actor.is_operator:
                self._lifecycle.ensure_affordable(tx, domain, event_type, years)
            return domain

        def confirm(domain: Domain, receipt: RegistryReceipt) -> Result[TransitionOutcome]:
            now = self._clock()
            event = LifecycleEvent(
                type=event_type,
                occurred_at=now,
                source=EventSource.OPERATOR if actor.is_operator else EventSource.CUSTOMER,
                new_expires_at=new_expiry(domain, receipt, now),
                registry_id=receipt.registry_id,
                years=years,
            )
            log.info(
                "registrar.registry_accepted",
                domain=domain.name,
                action=receipt.action,
                registry_id=receipt.registry_id,
            )
            return self._lifecycle.transition(domain_id, event, actor, request_meta)

        return run_in_transaction(self._store, f"prepare {event_type}", prepare).flat_map(
            lambda domain: registry.submit(build_request(domain)).flat_map(
                lambda receipt: confirm(domain, receipt)
            )
        )
