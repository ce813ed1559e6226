"""
Domain models — immutable entities, enums and value objects of the ledger.

Every persisted row is represented by a frozen dataclass. Mutations never
modify an instance in place: the engine builds a new instance with
dataclasses.replace() and hands both the old and the new one to the
Audit Recorder, so an instance doubles as a typed audit snapshot.

The transfer authorization code is absent from Domain: it is
stored as an encrypted blob next to the row and only reachable through the
Registrar's authorized reveal operation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import StrEnum, unique
from uuid import UUID, uuid4

ZERO = Decimal("0")


# ─────────────────────── Enumerations ───────────────────────


@unique
class DomainStatus(StrEnum):
    """Lifecycle status of a Domain."""

    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    GRACE = "grace"
    REDEMPTION = "redemption"
    PENDING_DELETE = "pending_delete"
    TRANSFERRED_AWAY = "transferred_away"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (DomainStatus.TRANSFERRED_AWAY, DomainStatus.CANCELLED)


@unique
class ContactRole(StrEnum):
    REGISTRANT = "registrant"
    ADMIN = "admin"
    TECHNICAL = "technical"
    BILLING = "billing"


@unique
class CustomerStatus(StrEnum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


@unique
class InvoiceStatus(StrEnum):
    DRAFT = "draft"
    ISSUED = "issued"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


@unique
class BillingItemType(StrEnum):
    REGISTRATION = "registration"
    RENEWAL = "renewal"
    TRANSFER = "transfer"
    PRIVACY = "privacy"
    OTHER = "other"


@unique
class PaymentMethod(StrEnum):
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    CREDIT = "credit"
    OTHER = "other"


@unique
class PaymentStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


@unique
class EntityKind(StrEnum):
    """Tag of an audit snapshot — which entity type the entry describes."""

    CUSTOMER = "customer"
    CONTACT = "contact"
    DOMAIN = "domain"
    ROLE_ASSIGNMENT = "role_assignment"
    REGISTRY_ATTRIBUTES = "registry_attributes"
    INVOICE = "invoice"
    BILLING_ITEM = "billing_item"
    PAYMENT = "payment"


@unique
class AuditOperation(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@unique
class EventType(StrEnum):
    """Lifecycle events accepted by the Domain Lifecycle Engine."""

    CONFIRM_REGISTRATION = "confirm_registration"
    COMPLETE_TRANSFER_IN = "complete_transfer_in"
    RENEW = "renew"
    EXPIRE = "expire"
    ENTER_GRACE = "enter_grace"
    ENTER_REDEMPTION = "enter_redemption"
    ENTER_PENDING_DELETE = "enter_pending_delete"
    PURGE = "purge"
    TRANSFER_AWAY = "transfer_away"
    CANCEL = "cancel"
    CHANGE_OWNER = "change_owner"
    SYNC = "sync"


@unique
class EventSource(StrEnum):
    """Who produced a lifecycle event."""

    CUSTOMER = "customer"
    OPERATOR = "operator"
    SCHEDULER = "scheduler"
    RECONCILIATION = "reconciliation"


# ─────────────────────── Identity ───────────────────────


@dataclass(frozen=True, slots=True)
class Actor:
    """
    Verified identity supplied by the identity provider.

    The engine trusts it without re-validating credentials. `customer_id`
    is set for customer identities; operators and system jobs act on any
    customer's records.
    """

    username: str
    customer_id: UUID | None = None
    is_operator: bool = False

    @staticmethod
    def system(job: str) -> Actor:
        return Actor(username=f"system:{job}", is_operator=True)


@dataclass(frozen=True, slots=True)
class RequestMeta:
    """Request metadata copied into every Audit Entry."""

    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None


# ─────────────────────── Entities ───────────────────────


@dataclass(frozen=True, slots=True)
class Customer:
    """
    Account holder. Maps to the `customers` table.

    `balance` is a cached projection of payments and issued invoices,
    maintained by the Aggregate Maintainer only.
    """

    username: str
    email: str
    id: UUID = field(default_factory=uuid4)
    company_name: str | None = None
    balance: Decimal = ZERO
    credit_limit: Decimal = ZERO
    status: CustomerStatus = CustomerStatus.ACTIVE
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Contact:
    """Reusable person/organization record owned by one Customer."""

    customer_id: UUID
    first_name: str
    last_name: str
    email: str
    phone: str
    address1: str
    city: str
    state_province: str
    postal_code: str
    country_code: str
    id: UUID = field(default_factory=uuid4)
    organization: str | None = None
    fax: str | None = None
    address2: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Domain:
    """
    A registered (or registering) domain name. Maps to the `domains` table
    plus its ordered `nameservers` rows.

    `expires_at` is None only while the registration is pending.
    """

    customer_id: UUID
    name: str
    tld: str
    id: UUID = field(default_factory=uuid4)
    status: DomainStatus = DomainStatus.PENDING
    auto_renew: bool = True
    locked: bool = True
    privacy: bool = False
    registry_id: str | None = None
    registered_at: datetime | None = None
    expires_at: datetime | None = None
    renewed_at: datetime | None = None
    transferred_at: datetime | None = None
    auth_code_changed_at: datetime | None = None
    nameservers: tuple[str, ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class RoleAssignment:
    """Maps (domain, role) to exactly one Contact."""

    domain_id: UUID
    role: ContactRole
    contact_id: UUID


@dataclass(frozen=True, slots=True)
class RegistryAttributes:
    """Validated TLD-specific registry attributes of one Domain."""

    domain_id: UUID
    values: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Invoice:
    """
    Customer invoice. `total_amount` and `paid_amount` are cached
    aggregates of its Billing Items and applied completed Payments.
    """

    customer_id: UUID
    number: str
    due_at: datetime
    id: UUID = field(default_factory=uuid4)
    issued_on: datetime | None = None
    total_amount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    status: InvoiceStatus = InvoiceStatus.DRAFT
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def outstanding(self) -> Decimal:
        return self.total_amount - self.paid_amount


@dataclass(frozen=True, slots=True)
class BillingItem:
    """One charge on an Invoice, optionally about a Domain."""

    invoice_id: UUID
    item_type: BillingItemType
    description: str
    unit_price: Decimal
    total_price: Decimal
    id: UUID = field(default_factory=uuid4)
    quantity: int = 1
    domain_id: UUID | None = None
    idempotency_key: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Payment:
    """
    Money received from (or credit re-allocated for) a Customer.

    A payment with `invoice_id=None` is unapplied customer credit.
    """

    customer_id: UUID
    amount: Decimal
    method: PaymentMethod
    id: UUID = field(default_factory=uuid4)
    invoice_id: UUID | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: str | None = None
    notes: str | None = None
    paid_at: datetime | None = None
    created_at: datetime | None = None


type Snapshot = (
    Customer | Contact | Domain | RoleAssignment | RegistryAttributes | Invoice | BillingItem | Payment
)


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """
    Immutable record of one mutation.

    `before`/`after` are typed snapshots of the entity named by
    `entity_kind`; JSON exists only in the persisted form. `entry_hash`
    chains the entry to the previous entry of the same entity.
    """

    entity_kind: EntityKind
    entity_id: UUID
    operation: AuditOperation
    actor: Actor
    before: Snapshot | None
    after: Snapshot | None
    recorded_at: datetime
    id: UUID = field(default_factory=uuid4)
    request_meta: RequestMeta = field(default_factory=RequestMeta)
    idempotency_key: str | None = None
    previous_hash: str = ""
    entry_hash: str = ""


# ─────────────────────── Events & registry facts ───────────────────────


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    """
    A request to move a Domain through its lifecycle.

    `occurred_at` is the source timestamp used for the idempotency key.
    The remaining fields are event-specific payload; which ones are
    required depends on `type` (see domain.lifecycle).
    """

    type: EventType
    occurred_at: datetime
    source: EventSource = EventSource.CUSTOMER
    new_expires_at: datetime | None = None
    registry_id: str | None = None
    years: int = 1
    new_customer_id: UUID | None = None
    contacts: dict[ContactRole, UUID] | None = None
    locked: bool | None = None
    privacy: bool | None = None
    auto_renew: bool | None = None
    nameservers: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class TransitionOutcome:
    """Result of one lifecycle transition attempt."""

    domain: Domain
    idempotency_key: str
    applied: bool = True
    duplicate: bool = False
    billing_item: BillingItem | None = None


@dataclass(frozen=True, slots=True)
class RegistryFact:
    """
    What the registry reports about one domain at `observed_at`.

    Fields the registry did not report are None and never overwrite
    local state.
    """

    name: str
    observed_at: datetime
    registry_id: str | None = None
    status: DomainStatus | None = None
    expires_at: datetime | None = None
    locked: bool | None = None
    privacy: bool | None = None
    auto_renew: bool | None = None
    nameservers: tuple[str, ...] | None = None


# ─────────────────────── Reports ───────────────────────


@dataclass(frozen=True, slots=True)
class UnclaimedRegistryRecord:
    """A registry fact no local Domain claims. Requires manual resolution."""

    name: str
    observed_at: datetime
    registry_id: str | None = None


@dataclass(frozen=True, slots=True)
class UnresolvedDrift:
    """A status divergence with no legal transition path."""

    domain_id: UUID
    name: str
    local_status: DomainStatus
    reported_status: DomainStatus


@dataclass(frozen=True, slots=True)
class RejectedFact:
    """A fact whose correction failed and was rolled back."""

    name: str
    reason: str


@dataclass(frozen=True, slots=True)
class ReconciliationReport:
    processed: int = 0
    corrected: int = 0
    unchanged: int = 0
    unclaimed: list[UnclaimedRegistryRecord] = field(default_factory=list)
    unresolved: list[UnresolvedDrift] = field(default_factory=list)
    rejected: list[RejectedFact] = field(default_factory=list)
    cancelled: bool = False


@dataclass(frozen=True, slots=True)
class TickReport:
    """Outcome of one lifecycle tick."""

    transitions: list[TransitionOutcome] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    overdue_invoices: int = 0


@dataclass(frozen=True, slots=True)
class AggregateCorrection:
    """A cached aggregate that disagreed with its full recompute."""

    entity_kind: EntityKind
    entity_id: UUID
    attribute: str
    cached: Decimal
    recomputed: Decimal


@dataclass(frozen=True, slots=True)
class VerificationReport:
    customers_checked: int = 0
    invoices_checked: int = 0
    corrections: list[AggregateCorrection] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ChainVerification:
    """Result of re-hashing one entity's audit chain."""

    entity_kind: EntityKind
    entity_id: UUID
    entries_checked: int
    valid: bool
    broken_at: UUID | None = None


@dataclass(frozen=True, slots=True)
class CustomerSummary:
    """What a customer owns, in what state, and what they owe."""

    customer: Customer
    domains: list[Domain] = field(default_factory=list)
    invoices: list[Invoice] = field(default_factory=list)

    @property
    def outstanding(self) -> Decimal:
        return sum(
            (
                inv.outstanding
                for inv in self.invoices
                if inv.status in (InvoiceStatus.ISSUED, InvoiceStatus.OVERDUE)
            ),
            ZERO,
        )
