"""
Ports — Protocol-based interfaces for infrastructure adapters.

These define WHAT the engine needs (contracts) without specifying HOW it's
done (implementation):

  Domain ← Ports (protocols) ← Adapters (implementations)

Store contract:
  LedgerStore.transaction() opens ONE unit of work and yields a
  LedgerTransaction. Leaving the block normally commits; any exception
  rolls everything back (entity rows, aggregates and audit entries alike).

  Methods taking `lock=True` read the row with a row-level lock held until
  the transaction ends (SELECT … FOR UPDATE). Transaction methods RAISE
  (they run inside `run_in_transaction`, which converts exceptions into
  railway Failures); the registry client returns Results because it is
  called outside any transaction.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable
from uuid import UUID

from railway.result import Result

from domain_ledger.domain.models import (
    AuditEntry,
    BillingItem,
    Contact,
    Customer,
    Domain,
    EntityKind,
    Invoice,
    Payment,
    RegistryAttributes,
    RegistryFact,
    RoleAssignment,
)


@runtime_checkable
class LedgerTransaction(Protocol):
    """
    Port: reads and writes against one open store transaction.

    get_* raise EntityNotFound when the row does not exist; find_* return
    None instead. Writes raise ConstraintViolation on uniqueness or
    reference violations.
    """

    # ── customers ──
    def get_customer(self, customer_id: UUID, *, lock: bool = False) -> Customer: ...
    def find_customer_by_username(self, username: str) -> Customer | None: ...
    def insert_customer(self, customer: Customer) -> Customer: ...
    def update_customer(self, customer: Customer) -> Customer: ...
    def list_customer_ids(self) -> list[UUID]: ...

    # ── contacts ──
    def get_contact(self, contact_id: UUID) -> Contact: ...
    def insert_contact(self, contact: Contact) -> Contact: ...
    def update_contact(self, contact: Contact) -> Contact: ...
    def delete_contact(self, contact_id: UUID) -> None: ...
    def contact_in_use(self, contact_id: UUID) -> bool: ...

    # ── domains ──
    def get_domain(self, domain_id: UUID, *, lock: bool = False) -> Domain: ...
    def find_domain_by_registry_id(self, registry_id: str) -> Domain | None: ...
    def find_domain_by_name(self, name: str) -> Domain | None: ...
    def insert_domain(self, domain: Domain) -> Domain: ...
    def update_domain(self, domain: Domain) -> Domain: ...
    def list_domains_for_customer(self, customer_id: UUID) -> list[Domain]: ...
    def list_time_candidates(self, now: datetime) -> list[UUID]: ...
    def store_auth_code(self, domain_id: UUID, encrypted: bytes) -> None: ...
    def load_auth_code(self, domain_id: UUID) -> bytes | None: ...

    # ── role assignments & registry attributes ──
    def list_role_assignments(self, domain_id: UUID) -> list[RoleAssignment]: ...
    def upsert_role_assignment(self, assignment: RoleAssignment) -> None: ...
    def get_registry_attributes(self, domain_id: UUID) -> RegistryAttributes: ...
    def replace_registry_attributes(self, attributes: RegistryAttributes) -> None: ...

    # ── invoices & billing items ──
    def get_invoice(self, invoice_id: UUID, *, lock: bool = False) -> Invoice: ...
    def find_open_invoice(self, customer_id: UUID) -> Invoice | None: ...
    def insert_invoice(self, invoice: Invoice) -> Invoice: ...
    def update_invoice(self, invoice: Invoice) -> Invoice: ...
    def list_invoices_for_customer(self, customer_id: UUID) -> list[Invoice]: ...
    def list_overdue_candidates(self, now: datetime) -> list[UUID]: ...
    def insert_billing_item(self, item: BillingItem) -> BillingItem: ...
    def get_billing_item(self, item_id: UUID) -> BillingItem: ...
    def delete_billing_item(self, item_id: UUID) -> None: ...
    def list_billing_items(self, invoice_id: UUID) -> list[BillingItem]: ...

    # ── payments ──
    def insert_payment(self, payment: Payment) -> Payment: ...
    def get_payment(self, payment_id: UUID, *, lock: bool = False) -> Payment: ...
    def update_payment(self, payment: Payment) -> Payment: ...
    def list_payments_for_customer(self, customer_id: UUID) -> list[Payment]: ...
    def list_payments_for_invoice(self, invoice_id: UUID) -> list[Payment]: ...

    # ── audit (append-only) ──
    def append_audit(self, entry: AuditEntry) -> None: ...
    def find_audit_by_key(self, idempotency_key: str) -> AuditEntry | None: ...
    def list_audit(self, entity_kind: EntityKind, entity_id: UUID) -> list[AuditEntry]: ...
    def latest_audit_hash(self, entity_kind: EntityKind, entity_id: UUID) -> str | None: ...


@runtime_checkable
class LedgerStore(Protocol):
    """
    Port: factory of transactions against the relational store.

    Usage:
        with store.transaction() as tx:
            domain = tx.get_domain(domain_id, lock=True)
            ...
    """

    def transaction(self) -> AbstractContextManager[LedgerTransaction]: ...


@dataclass(frozen=True, slots=True)
class RegistryRequest:
    """A lifecycle-triggered request forwarded to the registry."""

    action: str
    domain: str
    attributes: dict[str, str | int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RegistryReceipt:
    """What the registry answered to a RegistryRequest."""

    action: str
    domain: str
    registry_id: str | None = None
    expires_at: datetime | None = None
    response_text: str = ""


@runtime_checkable
class RegistryClient(Protocol):
    """
    Port: the external registry.

    Every call is retry-safe from the engine's point of view. Failures
    surface as RegistryUnavailable (SERVICE_UNAVAILABLE_ERROR) or
    RegistryRejected (EXTERNAL_SERVICE_ERROR) Failures and never touch
    local state.
    """

    def fetch_facts(self, exp_from: datetime, exp_to: datetime) -> Result[list[RegistryFact]]:
        """Fetch every fact for domains expiring inside [exp_from, exp_to]."""
        ...

    def submit(self, request: RegistryRequest) -> Result[RegistryReceipt]: ...


@runtime_checkable
class AuthCodeCipher(Protocol):
    """Port: opaque encryption of transfer-authorization codes at rest."""

    def encrypt(self, plaintext: str) -> bytes: ...

    def decrypt(self, token: bytes) -> str: ...

