"""
PostgreSQL ledger store — psycopg (v3) implementation of the store ports.

Adapter layer — implements LedgerStore / LedgerTransaction with raw
parameterized SQL. One `transaction()` is one connection and one
database transaction:

  1. BEGIN (READ COMMITTED)
  2. the unit of work reads with SELECT … FOR UPDATE where it asks for a lock
  3. COMMIT on normal exit, ROLLBACK on any exception

Error mapping at this boundary:
  IntegrityError (unique / FK / check)       → ConstraintViolation (constraint name)
  SerializationFailure / DeadlockDetected    → TransientStoreError (retried upstream)
  missing rows on get_*                      → EntityNotFound

Audit chains are serialized per entity with a transaction-scoped advisory
lock taken before the chain head is read.

No ORM — raw parameterized SQL for maximum control and transparency.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from uuid import UUID

import psycopg
import structlog
from psycopg.errors import DeadlockDetected, SerializationFailure
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from domain_ledger.domain.errors import ConstraintViolation, EntityNotFound, TransientStoreError
from domain_ledger.domain.models import (
    Actor,
    AuditEntry,
    AuditOperation,
    BillingItem,
    BillingItemType,
    Contact,
    ContactRole,
    Customer,
    CustomerStatus,
    Domain,
    DomainStatus,
    EntityKind,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RegistryAttributes,
    RequestMeta,
    RoleAssignment,
)
from domain_ledger.domain.snapshots import snapshot_from_json, snapshot_to_json

log = structlog.get_logger()

type Row = dict[str, Any]

_SCHEMA_FILE = Path(__file__).with_name("schema.sql")


def load_schema() -> str:
    """DDL shipped with the package (tables, FK rules, audit trigger)."""
    return _SCHEMA_FILE.read_text(encoding="utf-8")


_CUSTOMER_COLUMNS = (
    "id, username, email, company_name, balance, credit_limit, status, created_at, updated_at"
)
_CONTACT_COLUMNS = (
    "id, customer_id, first_name, last_name, organization, email, phone, fax, "
    "address1, address2, city, state_province, postal_code, country_code, created_at, updated_at"
)
_DOMAIN_SELECT = """
SELECT d.id, d.customer_id, d.name, d.tld, d.status, d.auto_renew, d.locked, d.privacy,
       d.registry_id, d.registered_at, d.expires_at, d.renewed_at, d.transferred_at,
       d.auth_code_changed_at, d.created_at, d.updated_at,
       ARRAY(SELECT n.hostname FROM nameservers n
             WHERE n.domain_id = d.id ORDER BY n.priority) AS nameservers
FROM domains d
"""
_INVOICE_COLUMNS = (
    "id, customer_id, number, issued_on, due_at, total_amount, paid_amount, status, "
    "created_at, updated_at"
)
_ITEM_COLUMNS = (
    "id, invoice_id, domain_id, item_type, description, quantity, unit_price, total_price, "
    "idempotency_key, created_at"
)
_PAYMENT_COLUMNS = (
    "id, customer_id, invoice_id, amount, method, status, transaction_id, notes, paid_at, created_at"
)
_AUDIT_COLUMNS = (
    "id, entity_kind, entity_id, operation, actor_username, actor_customer_id, actor_is_operator, "
    "before_snapshot, after_snapshot, ip_address, user_agent, request_id, idempotency_key, "
    "previous_hash, entry_hash, recorded_at"
)

_TIME_DRIVEN_STATUSES = [
    DomainStatus.ACTIVE.value,
    DomainStatus.EXPIRED.value,
    DomainStatus.GRACE.value,
    DomainStatus.REDEMPTION.value,
    DomainStatus.PENDING_DELETE.value,
]


class PsycopgLedgerStore:
    """
    LedgerStore over PostgreSQL.

    Implements the LedgerStore port. Every transaction opens its own
    connection, mirroring a request-scoped unit of work.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    @contextmanager
    def transaction(self) -> Iterator[PsycopgLedgerTransaction]:
        try:
            with (
                psycopg.connect(self._dsn, row_factory=dict_row) as conn,
                conn.transaction(),
                conn.cursor() as cur,
            ):
                yield PsycopgLedgerTransaction(cur)
        except (SerializationFailure, DeadlockDetected) as e:
            log.warning("repository.transient_failure", error=str(e))
            raise TransientStoreError(str(e)) from e

    def apply_schema(self) -> None:
        """Create tables, indexes and the audit trigger if they do not exist."""
        with psycopg.connect(self._dsn) as conn:
            conn.execute(load_schema())
            conn.commit()
        log.info("repository.schema_applied")


class PsycopgLedgerTransaction:
    """LedgerTransaction bound to one open cursor."""

    def __init__(self, cur: psycopg.Cursor[Row]) -> None:
        self._cur = cur

    # ───────────────────── plumbing ─────────────────────

    def _execute(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> None:
        try:
            self._cur.execute(sql, params)
        except psycopg.IntegrityError as e:
            constraint = e.diag.constraint_name or "an integrity constraint"
            raise ConstraintViolation(f"write violates {constraint}") from e

    def _one(self, sql: str, params: tuple[Any, ...]) -> Row | None:
        self._execute(sql, params)
        return self._cur.fetchone()

    def _all(self, sql: str, params: tuple[Any, ...] = ()) -> list[Row]:
        self._execute(sql, params)
        return self._cur.fetchall()

    def _lock(self, table: str, row_id: UUID) -> None:
        self._execute(f"SELECT 1 FROM {table} WHERE id = %s FOR UPDATE", (row_id,))

    # ───────────────────── customers ─────────────────────

    def get_customer(self, customer_id: UUID, *, lock: bool = False) -> Customer:
        suffix = " FOR UPDATE" if lock else ""
        row = self._one(f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE id = %s{suffix}", (customer_id,))
        if row is None:
            raise EntityNotFound("customer does not exist", customer_id=customer_id)
        return _customer(row)

    def find_customer_by_username(self, username: str) -> Customer | None:
        row = self._one(f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE username = %s", (username,))
        return _customer(row) if row else None

    def insert_customer(self, customer: Customer) -> Customer:
        self._execute(
            f"INSERT INTO customers ({_CUSTOMER_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, "
            "COALESCE(%s, now()), COALESCE(%s, now()))",
            (
                customer.id, customer.username, customer.email, customer.company_name,
                customer.balance, customer.credit_limit, customer.status.value,
                customer.created_at, customer.updated_at,
            ),
        )
        return customer

    def update_customer(self, customer: Customer) -> Customer:
        self._execute(
            "UPDATE customers SET email = %s, company_name = %s, balance = %s, credit_limit = %s, "
            "status = %s, updated_at = COALESCE(%s, now()) WHERE id = %s",
            (
                customer.email, customer.company_name, customer.balance, customer.credit_limit,
                customer.status.value, customer.updated_at, customer.id,
            ),
        )
        return customer

    def list_customer_ids(self) -> list[UUID]:
        return [row["id"] for row in self._all("SELECT id FROM customers ORDER BY created_at, id")]

    # ───────────────────── contacts ─────────────────────

    def get_contact(self, contact_id: UUID) -> Contact:
        row = self._one(f"SELECT {_CONTACT_COLUMNS} FROM contacts WHERE id = %s", (contact_id,))
        if row is None:
            raise EntityNotFound("contact does not exist", contact_id=contact_id)
        return Contact(**row)

    def insert_contact(self, contact: Contact) -> Contact:
        self._execute(
            f"INSERT INTO contacts ({_CONTACT_COLUMNS}) VALUES "
            "(%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, "
            "COALESCE(%s, now()), COALESCE(%s, now()))",
            (
                contact.id, contact.customer_id, contact.first_name, contact.last_name,
                contact.organization, contact.email, contact.phone, contact.fax,
                contact.address1, contact.address2, contact.city, contact.state_province,
                contact.postal_code, contact.country_code, contact.created_at, contact.updated_at,
            ),
        )
        return contact

    def update_contact(self, contact: Contact) -> Contact:
        self._execute(
            "UPDATE contacts SET first_name = %s, last_name = %s, organization = %s, email = %s, "
            "phone = %s, fax = %s, address1 = %s, address2 = %s, city = %s, state_province = %s, "
            "postal_code = %s, country_code = %s, updated_at = COALESCE(%s, now()) WHERE id = %s",
            (
                contact.first_name, contact.last_name, contact.organization, contact.email,
                contact.phone, contact.fax, contact.address1, contact.address2, contact.city,
                contact.state_province, contact.postal_code, contact.country_code,
                contact.updated_at, contact.id,
            ),
        )
        return contact

    def delete_contact(self, contact_id: UUID) -> None:
        self._execute("DELETE FROM contacts WHERE id = %s", (contact_id,))

    def contact_in_use(self, contact_id: UUID) -> bool:
        row = self._one(
            "SELECT EXISTS (SELECT 1 FROM domain_contacts WHERE contact_id = %s) AS in_use",
            (contact_id,),
        )
        return bool(row and row["in_use"])

    # ───────────────────── domains ─────────────────────

    def get_domain(self, domain_id: UUID, *, lock: bool = False) -> Domain:
        if lock:
            self._lock("domains", domain_id)
        row = self._one(_DOMAIN_SELECT + "WHERE d.id = %s", (domain_id,))
        if row is None:
            raise EntityNotFound("domain does not exist", domain_id=domain_id)
        return _domain(row)

    def find_domain_by_registry_id(self, registry_id: str) -> Domain | None:
        row = self._one(_DOMAIN_SELECT + "WHERE d.registry_id = %s", (registry_id,))
        return _domain(row) if row else None

    def find_domain_by_name(self, name: str) -> Domain | None:
        row = self._one(_DOMAIN_SELECT + "WHERE d.name = %s", (name,))
        return _domain(row) if row else None

    def insert_domain(self, domain: Domain) -> Domain:
        self._execute(
            "INSERT INTO domains (id, customer_id, name, tld, status, auto_renew, locked, privacy, "
            "registry_id, registered_at, expires_at, renewed_at, transferred_at, "
            "auth_code_changed_at, created_at, updated_at) VALUES "
            "(%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, "
            "COALESCE(%s, now()), COALESCE(%s, now()))",
            (
                domain.id, domain.customer_id, domain.name, domain.tld, domain.status.value,
                domain.auto_renew, domain.locked, domain.privacy, domain.registry_id,
                domain.registered_at, domain.expires_at, domain.renewed_at, domain.transferred_at,
                domain.auth_code_changed_at, domain.created_at, domain.updated_at,
            ),
        )
        self._write_nameservers(domain)
        return domain

    def update_domain(self, domain: Domain) -> Domain:
        self._execute(
            "UPDATE domains SET customer_id = %s, status = %s, auto_renew = %s, locked = %s, "
            "privacy = %s, registry_id = %s, registered_at = %s, expires_at = %s, renewed_at = %s, "
            "transferred_at = %s, auth_code_changed_at = %s, updated_at = COALESCE(%s, now()) "
            "WHERE id = %s",
            (
                domain.customer_id, domain.status.value, domain.auto_renew, domain.locked,
                domain.privacy, domain.registry_id, domain.registered_at, domain.expires_at,
                domain.renewed_at, domain.transferred_at, domain.auth_code_changed_at,
                domain.updated_at, domain.id,
            ),
        )
        self._execute("DELETE FROM nameservers WHERE domain_id = %s", (domain.id,))
        self._write_nameservers(domain)
        return domain

    def _write_nameservers(self, domain: Domain) -> None:
        for priority, hostname in enumerate(domain.nameservers):
            self._execute(
                "INSERT INTO nameservers (domain_id, hostname, priority) VALUES (%s, %s, %s)",
                (domain.id, hostname, priority),
            )

    def list_domains_for_customer(self, customer_id: UUID) -> list[Domain]:
        rows = self._all(_DOMAIN_SELECT + "WHERE d.customer_id = %s ORDER BY d.name", (customer_id,))
        return [_domain(row) for row in rows]

    def list_time_candidates(self, now: Any) -> list[UUID]:
        rows = self._all(
            "SELECT id FROM domains WHERE status = ANY(%s) AND expires_at <= %s ORDER BY expires_at",
            (_TIME_DRIVEN_STATUSES, now),
        )
        return [row["id"] for row in rows]

    def store_auth_code(self, domain_id: UUID, encrypted: bytes) -> None:
        self._execute(
            "UPDATE domains SET auth_code_encrypted = %s WHERE id = %s", (encrypted, domain_id)
        )

    def load_auth_code(self, domain_id: UUID) -> bytes | None:
        row = self._one("SELECT auth_code_encrypted FROM domains WHERE id = %s", (domain_id,))
        if row is None or row["auth_code_encrypted"] is None:
            return None
        return bytes(row["auth_code_encrypted"])

    # ───────────────────── role assignments & registry attributes ─────────────────────

    def list_role_assignments(self, domain_id: UUID) -> list[RoleAssignment]:
        rows = self._all(
            "SELECT domain_id, role, contact_id FROM domain_contacts WHERE domain_id = %s ORDER BY role",
            (domain_id,),
        )
        return [RoleAssignment(row["domain_id"], ContactRole(row["role"]), row["contact_id"]) for row in rows]

    def upsert_role_assignment(self, assignment: RoleAssignment) -> None:
        self._execute(
            "INSERT INTO domain_contacts (domain_id, role, contact_id) VALUES (%s, %s, %s) "
            "ON CONFLICT (domain_id, role) DO UPDATE SET contact_id = EXCLUDED.contact_id",
            (assignment.domain_id, assignment.role.value, assignment.contact_id),
        )

    def get_registry_attributes(self, domain_id: UUID) -> RegistryAttributes:
        rows = self._all(
            "SELECT attr_key, attr_value FROM registry_attributes WHERE domain_id = %s ORDER BY attr_key",
            (domain_id,),
        )
        return RegistryAttributes(domain_id, {row["attr_key"]: row["attr_value"] for row in rows})

    def replace_registry_attributes(self, attributes: RegistryAttributes) -> None:
        self._execute("DELETE FROM registry_attributes WHERE domain_id = %s", (attributes.domain_id,))
        for key, value in attributes.values.items():
            self._execute(
                "INSERT INTO registry_attributes (domain_id, attr_key, attr_value) VALUES (%s, %s, %s)",
                (attributes.domain_id, key, value),
            )

    # ───────────────────── invoices & billing items ─────────────────────

    def get_invoice(self, invoice_id: UUID, *, lock: bool = False) -> Invoice:
        suffix = " FOR UPDATE" if lock else ""
        row = self._one(f"SELECT {_INVOICE_COLUMNS} FROM invoices WHERE id = %s{suffix}", (invoice_id,))
        if row is None:
            raise EntityNotFound("invoice does not exist", invoice_id=invoice_id)
        return _invoice(row)

    def find_open_invoice(self, customer_id: UUID) -> Invoice | None:
        row = self._one(
            f"SELECT {_INVOICE_COLUMNS} FROM invoices WHERE customer_id = %s AND status = %s "
            "ORDER BY created_at DESC LIMIT 1",
            (customer_id, InvoiceStatus.DRAFT.value),
        )
        return _invoice(row) if row else None

    def insert_invoice(self, invoice: Invoice) -> Invoice:
        self._execute(
            f"INSERT INTO invoices ({_INVOICE_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, "
            "COALESCE(%s, now()), COALESCE(%s, now()))",
            (
                invoice.id, invoice.customer_id, invoice.number, invoice.issued_on, invoice.due_at,
                invoice.total_amount, invoice.paid_amount, invoice.status.value,
                invoice.created_at, invoice.updated_at,
            ),
        )
        return invoice

    def update_invoice(self, invoice: Invoice) -> Invoice:
        self._execute(
            "UPDATE invoices SET issued_on = %s, due_at = %s, total_amount = %s, paid_amount = %s, "
            "status = %s, updated_at = COALESCE(%s, now()) WHERE id = %s",
            (
                invoice.issued_on, invoice.due_at, invoice.total_amount, invoice.paid_amount,
                invoice.status.value, invoice.updated_at, invoice.id,
            ),
        )
        return invoice

    def list_invoices_for_customer(self, customer_id: UUID) -> list[Invoice]:
        rows = self._all(
            f"SELECT {_INVOICE_COLUMNS} FROM invoices WHERE customer_id = %s ORDER BY created_at, id",
            (customer_id,),
        )
        return [_invoice(row) for row in rows]

    def list_overdue_candidates(self, now: Any) -> list[UUID]:
        rows = self._all(
            "SELECT id FROM invoices WHERE status = %s AND due_at < %s ORDER BY due_at",
            (InvoiceStatus.ISSUED.value, now),
        )
        return [row["id"] for row in rows]

    def insert_billing_item(self, item: BillingItem) -> BillingItem:
        self._execute(
            f"INSERT INTO billing_items ({_ITEM_COLUMNS}) VALUES "
            "(%s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))",
            (
                item.id, item.invoice_id, item.domain_id, item.item_type.value, item.description,
                item.quantity, item.unit_price, item.total_price, item.idempotency_key,
                item.created_at,
            ),
        )
        return item

    def get_billing_item(self, item_id: UUID) -> BillingItem:
        row = self._one(f"SELECT {_ITEM_COLUMNS} FROM billing_items WHERE id = %s", (item_id,))
        if row is None:
            raise EntityNotFound("billing item does not exist", billing_item_id=item_id)
        return _billing_item(row)

    def delete_billing_item(self, item_id: UUID) -> None:
        self._execute("DELETE FROM billing_items WHERE id = %s", (item_id,))

    def list_billing_items(self, invoice_id: UUID) -> list[BillingItem]:
        rows = self._all(
            f"SELECT {_ITEM_COLUMNS} FROM billing_items WHERE invoice_id = %s ORDER BY created_at, id",
            (invoice_id,),
        )
        return [_billing_item(row) for row in rows]

    # ───────────────────── payments ─────────────────────

    def insert_payment(self, payment: Payment) -> Payment:
        self._execute(
            f"INSERT INTO payments ({_PAYMENT_COLUMNS}) VALUES "
            "(%s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))",
            (
                payment.id, payment.customer_id, payment.invoice_id, payment.amount,
                payment.method.value, payment.status.value, payment.transaction_id, payment.notes,
                payment.paid_at, payment.created_at,
            ),
        )
        return payment

    def get_payment(self, payment_id: UUID, *, lock: bool = False) -> Payment:
        suffix = " FOR UPDATE" if lock else ""
        row = self._one(f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE id = %s{suffix}", (payment_id,))
        if row is None:
            raise EntityNotFound("payment does not exist", payment_id=payment_id)
        return _payment(row)

    def update_payment(self, payment: Payment) -> Payment:
        self._execute(
            "UPDATE payments SET invoice_id = %s, amount = %s, status = %s, transaction_id = %s, "
            "notes = %s, paid_at = %s WHERE id = %s",
            (
                payment.invoice_id, payment.amount, payment.status.value, payment.transaction_id,
                payment.notes, payment.paid_at, payment.id,
            ),
        )
        return payment

    def list_payments_for_customer(self, customer_id: UUID) -> list[Payment]:
        rows = self._all(
            f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE customer_id = %s ORDER BY created_at, id",
            (customer_id,),
        )
        return [_payment(row) for row in rows]

    def list_payments_for_invoice(self, invoice_id: UUID) -> list[Payment]:
        rows = self._all(
            f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE invoice_id = %s ORDER BY created_at, id",
            (invoice_id,),
        )
        return [_payment(row) for row in rows]

    # ───────────────────── audit (append-only) ─────────────────────

    def append_audit(self, entry: AuditEntry) -> None:
        self._execute(
            f"INSERT INTO audit_log ({_AUDIT_COLUMNS}) VALUES "
            "(%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
            (
                entry.id,
                entry.entity_kind.value,
                entry.entity_id,
                entry.operation.value,
                entry.actor.username,
                entry.actor.customer_id,
                entry.actor.is_operator,
                _jsonb(snapshot_to_json(entry.entity_kind, entry.before)),
                _jsonb(snapshot_to_json(entry.entity_kind, entry.after)),
                entry.request_meta.ip_address,
                entry.request_meta.user_agent,
                entry.request_meta.request_id,
                entry.idempotency_key,
                entry.previous_hash,
                entry.entry_hash,
                entry.recorded_at,
            ),
        )

    def find_audit_by_key(self, idempotency_key: str) -> AuditEntry | None:
        row = self._one(
            f"SELECT {_AUDIT_COLUMNS} FROM audit_log WHERE idempotency_key = %s", (idempotency_key,)
        )
        return _audit_entry(row) if row else None

    def list_audit(self, entity_kind: EntityKind, entity_id: UUID) -> list[AuditEntry]:
        rows = self._all(
            f"SELECT {_AUDIT_COLUMNS} FROM audit_log WHERE entity_kind = %s AND entity_id = %s "
            "ORDER BY seq",
            (entity_kind.value, entity_id),
        )
        return [_audit_entry(row) for row in rows]

    def latest_audit_hash(self, entity_kind: EntityKind, entity_id: UUID) -> str | None:
        self._execute(
            "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))",
            (f"audit:{entity_kind.value}:{entity_id}",),
        )
        row = self._one(
            "SELECT entry_hash FROM audit_log WHERE entity_kind = %s AND entity_id = %s "
            "ORDER BY seq DESC LIMIT 1",
            (entity_kind.value, entity_id),
        )
        return row["entry_hash"] if row else None


# ───────────────────── row mappers ─────────────────────


def _jsonb(data: dict[str, Any] | None) -> Jsonb | None:
    return Jsonb(data) if data is not None else None


def _customer(row: Row) -> Customer:
    return Customer(**{**row, "status": CustomerStatus(row["status"])})


def _domain(row: Row) -> Domain:
    return Domain(
        **{**row, "status": DomainStatus(row["status"]), "nameservers": tuple(row["nameservers"] or ())}
    )


def _invoice(row: Row) -> Invoice:
    return Invoice(**{**row, "status": InvoiceStatus(row["status"])})


def _billing_item(row: Row) -> BillingItem:
    return BillingItem(**{**row, "item_type": BillingItemType(row["item_type"])})


def _payment(row: Row) -> Payment:
    return Payment(
        **{**row, "method": PaymentMethod(row["method"]), "status": PaymentStatus(row["status"])}
    )


def _audit_entry(row: Row) -> AuditEntry:
    kind = EntityKind(row["entity_kind"])
    return AuditEntry(
        entity_kind=kind,
        entity_id=row["entity_id"],
        operation=AuditOperation(row["operation"]),
        actor=Actor(
            username=row["actor_username"],
            customer_id=row["actor_customer_id"],
            is_operator=row["actor_is_operator"],
        ),
        before=snapshot_from_json(kind, row["before_snapshot"]),
        after=snapshot_from_json(kind, row["after_snapshot"]),
        recorded_at=row["recorded_at"],
        id=row["id"],
        request_meta=RequestMeta(
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            request_id=row["request_id"],
        ),
        idempotency_key=row["idempotency_key"],
        previous_hash=row["previous_hash"],
        entry_hash=row["entry_hash"],
    )
