"""
In-memory ledger store for unit tests.

Implements LedgerStore / LedgerTransaction over plain dicts. Each
transaction works on a deep copy of the committed state and publishes it
only when the block exits without an exception, so rollback behaves like
PostgreSQL's. Row locks are accepted and ignored (tests are single-threaded).

Uniqueness and reference rules mirror the constraint names of schema.sql.

Below the fakes sit the harness helpers shared by the unit tests: a
movable clock, a canned registry, and seeders that build a customer with
an active domain through the public engine operations.
"""

from __future__ import annotations

import copy
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from railway.result import Result

from domain_ledger.adapters.cipher import FernetAuthCodeCipher
from domain_ledger.aggregates import AggregateMaintainer
from domain_ledger.audit import AuditRecorder
from domain_ledger.billing import BillingService, PriceList
from domain_ledger.domain.aggregates import CurrencyPolicy
from domain_ledger.domain.attributes import AttributeSchemas
from domain_ledger.domain.errors import (
    ConstraintViolation,
    EntityNotFound,
    LedgerError,
    TransientStoreError,
)
from domain_ledger.domain.lifecycle import WindowTable
from domain_ledger.domain.models import (
    Actor,
    AuditEntry,
    BillingItem,
    Contact,
    ContactRole,
    Customer,
    Domain,
    DomainStatus,
    EntityKind,
    EventSource,
    EventType,
    Invoice,
    InvoiceStatus,
    LifecycleEvent,
    Payment,
    RegistryAttributes,
    RegistryFact,
    RoleAssignment,
)
from domain_ledger.domain.ports import (
    LedgerStore,
    RegistryClient,
    RegistryReceipt,
    RegistryRequest,
)
from domain_ledger.lifecycle import LifecycleEngine
from domain_ledger.main import Services
from domain_ledger.reconciliation import ReconciliationEngine
from domain_ledger.registrar import Registrar

_TIME_DRIVEN = {
    DomainStatus.ACTIVE,
    DomainStatus.EXPIRED,
    DomainStatus.GRACE,
    DomainStatus.REDEMPTION,
    DomainStatus.PENDING_DELETE,
}


@dataclass
class LedgerState:
    customers: dict[UUID, Customer] = field(default_factory=dict)
    contacts: dict[UUID, Contact] = field(default_factory=dict)
    domains: dict[UUID, Domain] = field(default_factory=dict)
    auth_codes: dict[UUID, bytes] = field(default_factory=dict)
    roles: dict[tuple[UUID, ContactRole], RoleAssignment] = field(default_factory=dict)
    attributes: dict[UUID, RegistryAttributes] = field(default_factory=dict)
    invoices: dict[UUID, Invoice] = field(default_factory=dict)
    items: dict[UUID, BillingItem] = field(default_factory=dict)
    payments: dict[UUID, Payment] = field(default_factory=dict)
    audit: list[AuditEntry] = field(default_factory=list)


class InMemoryLedger:
    """LedgerStore fake. `transient_failures` makes the next N transactions fail to open."""

    def __init__(self) -> None:
        self.state = LedgerState()
        self.transient_failures = 0
        self.transactions_opened = 0

    @contextmanager
    def transaction(self) -> Iterator[InMemoryTransaction]:
        self.transactions_opened += 1
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientStoreError("could not serialize access due to concurrent update")
        working = copy.deepcopy(self.state)
        yield InMemoryTransaction(working)
        self.state = working

    # Convenience accessors for assertions.

    def audit_for(self, kind: EntityKind, entity_id: UUID) -> list[AuditEntry]:
        return [e for e in self.state.audit if e.entity_kind == kind and e.entity_id == entity_id]

    def items_for_domain(self, domain_id: UUID) -> list[BillingItem]:
        return [i for i in self.state.items.values() if i.domain_id == domain_id]


class InMemoryTransaction:
    def __init__(self, state: LedgerState) -> None:
        self.s = state

    @staticmethod
    def _require[T](table: dict[UUID, T], key: UUID, what: str, **ids: UUID) -> T:
        if key not in table:
            raise EntityNotFound(f"{what} does not exist", **ids)
        return table[key]

    # customers

    def get_customer(self, customer_id: UUID, *, lock: bool = False) -> Customer:
        return self._require(self.s.customers, customer_id, "customer", customer_id=customer_id)

    def find_customer_by_username(self, username: str) -> Customer | None:
        return next((c for c in self.s.customers.values() if c.username == username), None)

    def insert_customer(self, customer: Customer) -> Customer:
        if self.find_customer_by_username(customer.username) is not None:
            raise ConstraintViolation("write violates customers_username_key")
        self.s.customers[customer.id] = customer
        return customer

    def update_customer(self, customer: Customer) -> Customer:
        self.s.customers[customer.id] = customer
        return customer

    def list_customer_ids(self) -> list[UUID]:
        return list(self.s.customers)

    # contacts

    def get_contact(self, contact_id: UUID) -> Contact:
        return self._require(self.s.contacts, contact_id, "contact", contact_id=contact_id)

    def insert_contact(self, contact: Contact) -> Contact:
        if contact.customer_id not in self.s.customers:
            raise ConstraintViolation("write violates contacts_customer_id_fkey")
        self.s.contacts[contact.id] = contact
        return contact

    def update_contact(self, contact: Contact) -> Contact:
        self.s.contacts[contact.id] = contact
        return contact

    def delete_contact(self, contact_id: UUID) -> None:
        if self.contact_in_use(contact_id):
            raise ConstraintViolation("write violates domain_contacts_contact_id_fkey")
        self.s.contacts.pop(contact_id, None)

    def contact_in_use(self, contact_id: UUID) -> bool:
        return any(r.contact_id == contact_id for r in self.s.roles.values())

    # domains

    def get_domain(self, domain_id: UUID, *, lock: bool = False) -> Domain:
        return self._require(self.s.domains, domain_id, "domain", domain_id=domain_id)

    def find_domain_by_registry_id(self, registry_id: str) -> Domain | None:
        return next((d for d in self.s.domains.values() if d.registry_id == registry_id), None)

    def find_domain_by_name(self, name: str) -> Domain | None:
        return next((d for d in self.s.domains.values() if d.name == name), None)

    def _check_domain_unique(self, domain: Domain) -> None:
        for other in self.s.domains.values():
            if other.id == domain.id:
                continue
            if other.name == domain.name:
                raise ConstraintViolation("write violates domains_name_key")
            if domain.registry_id is not None and other.registry_id == domain.registry_id:
                raise ConstraintViolation("write violates domains_registry_id_key")

    def insert_domain(self, domain: Domain) -> Domain:
        if domain.customer_id not in self.s.customers:
            raise ConstraintViolation("write violates domains_customer_id_fkey")
        self._check_domain_unique(domain)
        self.s.domains[domain.id] = domain
        return domain

    def update_domain(self, domain: Domain) -> Domain:
        self._check_domain_unique(domain)
        if domain.status != DomainStatus.PENDING and domain.expires_at is None:
            raise ConstraintViolation("write violates domains_expiry_required")
        self.s.domains[domain.id] = domain
        return domain

    def list_domains_for_customer(self, customer_id: UUID) -> list[Domain]:
        return sorted(
            (d for d in self.s.domains.values() if d.customer_id == customer_id), key=lambda d: d.name
        )

    def list_time_candidates(self, now: datetime) -> list[UUID]:
        due = [
            d
            for d in self.s.domains.values()
            if d.status in _TIME_DRIVEN and d.expires_at is not None and d.expires_at <= now
        ]
        return [d.id for d in sorted(due, key=lambda d: d.expires_at)]  # type: ignore[arg-type,return-value]

    def store_auth_code(self, domain_id: UUID, encrypted: bytes) -> None:
        self.s.auth_codes[domain_id] = encrypted

    def load_auth_code(self, domain_id: UUID) -> bytes | None:
        return self.s.auth_codes.get(domain_id)

    # roles & attributes

    def list_role_assignments(self, domain_id: UUID) -> list[RoleAssignment]:
        return sorted(
            (r for r in self.s.roles.values() if r.domain_id == domain_id), key=lambda r: r.role.value
        )

    def upsert_role_assignment(self, assignment: RoleAssignment) -> None:
        if assignment.contact_id not in self.s.contacts:
            raise ConstraintViolation("write violates domain_contacts_contact_id_fkey")
        self.s.roles[(assignment.domain_id, assignment.role)] = assignment

    def get_registry_attributes(self, domain_id: UUID) -> RegistryAttributes:
        return self.s.attributes.get(domain_id, RegistryAttributes(domain_id, {}))

    def replace_registry_attributes(self, attributes: RegistryAttributes) -> None:
        self.s.attributes[attributes.domain_id] = attributes

    # invoices & items

    def get_invoice(self, invoice_id: UUID, *, lock: bool = False) -> Invoice:
        return self._require(self.s.invoices, invoice_id, "invoice", invoice_id=invoice_id)

    def find_open_invoice(self, customer_id: UUID) -> Invoice | None:
        drafts = [
            i
            for i in self.s.invoices.values()
            if i.customer_id == customer_id and i.status == InvoiceStatus.DRAFT
        ]
        return drafts[-1] if drafts else None

    def insert_invoice(self, invoice: Invoice) -> Invoice:
        if any(i.number == invoice.number for i in self.s.invoices.values()):
            raise ConstraintViolation("write violates invoices_number_key")
        self.s.invoices[invoice.id] = invoice
        return invoice

    def update_invoice(self, invoice: Invoice) -> Invoice:
        if invoice.paid_amount > invoice.total_amount:
            raise ConstraintViolation("write violates invoices_paid_within_total")
        self.s.invoices[invoice.id] = invoice
        return invoice

    def list_invoices_for_customer(self, customer_id: UUID) -> list[Invoice]:
        return [i for i in self.s.invoices.values() if i.customer_id == customer_id]

    def list_overdue_candidates(self, now: datetime) -> list[UUID]:
        return [
            i.id
            for i in self.s.invoices.values()
            if i.status == InvoiceStatus.ISSUED and i.due_at < now
        ]

    def insert_billing_item(self, item: BillingItem) -> BillingItem:
        keys = {i.idempotency_key for i in self.s.items.values()}
        if item.idempotency_key is not None and item.idempotency_key in keys:
            raise ConstraintViolation("write violates billing_items_idempotency_key_key")
        self.s.items[item.id] = item
        return item

    def get_billing_item(self, item_id: UUID) -> BillingItem:
        return self._require(self.s.items, item_id, "billing item", billing_item_id=item_id)

    def delete_billing_item(self, item_id: UUID) -> None:
        self.s.items.pop(item_id, None)

    def list_billing_items(self, invoice_id: UUID) -> list[BillingItem]:
        return [i for i in self.s.items.values() if i.invoice_id == invoice_id]

    # payments

    def insert_payment(self, payment: Payment) -> Payment:
        self.s.payments[payment.id] = payment
        return payment

    def get_payment(self, payment_id: UUID, *, lock: bool = False) -> Payment:
        return self._require(self.s.payments, payment_id, "payment", payment_id=payment_id)

    def update_payment(self, payment: Payment) -> Payment:
        self.s.payments[payment.id] = payment
        return payment

    def list_payments_for_customer(self, customer_id: UUID) -> list[Payment]:
        return [p for p in self.s.payments.values() if p.customer_id == customer_id]

    def list_payments_for_invoice(self, invoice_id: UUID) -> list[Payment]:
        return [p for p in self.s.payments.values() if p.invoice_id == invoice_id]

    # audit

    def append_audit(self, entry: AuditEntry) -> None:
        if entry.idempotency_key is not None and self.find_audit_by_key(entry.idempotency_key):
            raise ConstraintViolation("write violates audit_log_idempotency_key_key")
        self.s.audit.append(entry)

    def find_audit_by_key(self, idempotency_key: str) -> AuditEntry | None:
        return next((e for e in self.s.audit if e.idempotency_key == idempotency_key), None)

    def list_audit(self, entity_kind: EntityKind, entity_id: UUID) -> list[AuditEntry]:
        return [e for e in self.s.audit if e.entity_kind == entity_kind and e.entity_id == entity_id]

    def latest_audit_hash(self, entity_kind: EntityKind, entity_id: UUID) -> str | None:
        entries = self.list_audit(entity_kind, entity_id)
        return entries[-1].entry_hash if entries else None


# ─────────────────────── Harness ───────────────────────

T0 = datetime(2024, 12, 1, 12, 0, tzinfo=UTC)

OPERATOR = Actor(username="ops", is_operator=True)


class FakeClock:
    """Callable clock a test can move forward."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class FakeRegistry:
    """RegistryClient fake: canned facts, recorded submissions, optional failure."""

    def __init__(
        self,
        facts: list[RegistryFact] | None = None,
        receipt_expiry: datetime | None = None,
        failure: LedgerError | None = None,
    ) -> None:
        self.facts = facts or []
        self.receipt_expiry = receipt_expiry
        self.failure = failure
        self.requests: list[RegistryRequest] = []
        self.windows: list[tuple[datetime, datetime]] = []

    def fetch_facts(self, exp_from: datetime, exp_to: datetime) -> Result[list[RegistryFact]]:
        self.windows.append((exp_from, exp_to))
        if self.failure is not None:
            return Result.failure(self.failure.code, self.failure.describe(), self.failure)
        return Result.success(list(self.facts))

    def submit(self, request: RegistryRequest) -> Result[RegistryReceipt]:
        self.requests.append(request)
        if self.failure is not None:
            return Result.failure(self.failure.code, self.failure.describe(), self.failure)
        return Result.success(
            RegistryReceipt(
                action=request.action,
                domain=request.domain,
                registry_id=f"srs-{request.domain}",
                expires_at=self.receipt_expiry,
                response_text="Command completed successfully",
            )
        )


def make_services(
    store: LedgerStore,
    clock: FakeClock,
    registry: RegistryClient | None = None,
    windows: WindowTable | None = None,
    schemas: AttributeSchemas | None = None,
    prices: PriceList | None = None,
) -> Services:
    """Wire every engine over `store` the way main.build_services does, with a test clock."""
    audit = AuditRecorder(clock)
    aggregates = AggregateMaintainer(audit, CurrencyPolicy(), clock)
    billing = BillingService(store, audit, aggregates, prices=prices, clock=clock)
    lifecycle = LifecycleEngine(
        store, audit, aggregates, billing, windows=windows, schemas=schemas, clock=clock
    )
    return Services(
        store=store,
        registry=registry,
        audit=audit,
        aggregates=aggregates,
        billing=billing,
        lifecycle=lifecycle,
        reconciliation=ReconciliationEngine(store, lifecycle, clock),
        registrar=Registrar(
            store,
            audit,
            lifecycle,
            FernetAuthCodeCipher(FernetAuthCodeCipher.generate_key()),
            registry=registry,
            schemas=schemas,
            clock=clock,
        ),
    )


def customer_actor(customer: Customer) -> Actor:
    return Actor(username=customer.username, customer_id=customer.id)


def seed_customer(
    store: LedgerStore, username: str = "alice", credit_limit: str = "100.00"
) -> Customer:
    customer = Customer(
        username=username,
        email=f"{username}@example.org",
        credit_limit=Decimal(credit_limit),
        created_at=T0,
        updated_at=T0,
    )
    with store.transaction() as tx:
        return tx.insert_customer(customer)


def sample_contact(customer_id: UUID, last_name: str = "Doe") -> Contact:
    return Contact(
        customer_id=customer_id,
        first_name="Jane",
        last_name=last_name,
        email="jane@example.org",
        phone="+1.4165550100",
        address1="1 Front St",
        city="Toronto",
        state_province="ON",
        postal_code="M5J 2N1",
        country_code="ca",
    )


def seed_active_domain(
    services: Services,
    customer: Customer,
    name: str = "example.com",
    expires_at: datetime = datetime(2025, 1, 1, tzinfo=UTC),
) -> Domain:
    """A domain with all four roles filled, confirmed by an operator."""
    registrar = services.registrar
    domain = registrar.register_domain(OPERATOR, customer.id, name).value()
    contact = registrar.create_contact(OPERATOR, sample_contact(customer.id)).value()
    for role in ContactRole:
        registrar.assign_contact_role(OPERATOR, domain.id, role, contact.id)
    event = LifecycleEvent(
        type=EventType.CONFIRM_REGISTRATION,
        occurred_at=expires_at.replace(year=expires_at.year - 1),
        source=EventSource.OPERATOR,
        new_expires_at=expires_at,
    )
    return services.lifecycle.transition(domain.id, event, OPERATOR).value().domain
