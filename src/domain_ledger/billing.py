"""
Billing path — invoices, billing items, payments and customer credit.

Every public operation is one transaction that:
  1. locks the customer, then the invoice (lock order customer → invoice)
  2. writes the billing/payment rows and audits each of them
  3. recomputes the invoice's cached totals (Aggregate Maintainer)
  4. applies the balance delta and verifies it against the full recompute

Balance deltas:
  issue invoice                    −total
  add / remove item (issued)       −price / +price
  cancel issued invoice            +total
  complete payment                 +amount   (not for "credit" payments)
  refund completed payment         −amount   (not for "credit" payments)

Overpayment is never applied to an invoice: the excess is recorded as a
separate unapplied payment, i.e. customer credit, which `apply_credit`
later re-allocates to another invoice.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import structlog
from railway.result import Result

from domain_ledger.aggregates import AggregateMaintainer
from domain_ledger.audit import AuditRecorder
from domain_ledger.domain.access import ensure_owner
from domain_ledger.domain.aggregates import (
    available_credit,
    balance_delta_for_invoice,
    balance_delta_for_payment,
    counts_toward_balance,
    line_total,
)
from domain_ledger.domain.errors import ConstraintViolation, CreditLimitExceeded
from domain_ledger.domain.models import (
    ZERO,
    Actor,
    BillingItem,
    BillingItemType,
    Customer,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RequestMeta,
)
from domain_ledger.domain.ports import LedgerStore, LedgerTransaction
from domain_ledger.transactions import run_in_transaction, utc_now

log = structlog.get_logger()

DEFAULT_PRICES: dict[BillingItemType, Decimal] = {
    BillingItemType.REGISTRATION: Decimal("15.00"),
    BillingItemType.RENEWAL: Decimal("15.00"),
    BillingItemType.TRANSFER: Decimal("12.00"),
    BillingItemType.PRIVACY: Decimal("0.00"),
    BillingItemType.OTHER: Decimal("0.00"),
}

_EDITABLE = (InvoiceStatus.DRAFT, InvoiceStatus.ISSUED, InvoiceStatus.OVERDUE)
_PAYABLE = (InvoiceStatus.ISSUED, InvoiceStatus.OVERDUE, InvoiceStatus.PAID)


@dataclass(frozen=True, slots=True)
class PriceList:
    """Unit prices per top-level label and item type, with a "default" entry."""

    by_tld: dict[str, dict[BillingItemType, Decimal]] = field(default_factory=dict)

    def price_for(self, tld: str, item_type: BillingItemType) -> Decimal:
        for key in (tld.lower(), "default"):
            prices = self.by_tld.get(key, {})
            if item_type in prices:
                return prices[item_type]
        return DEFAULT_PRICES[item_type]


class BillingService:
    def __init__(
        self,
        store: LedgerStore,
        audit: AuditRecorder,
        aggregates: AggregateMaintainer,
        prices: PriceList | None = None,
        invoice_due_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._audit = audit
        self._aggregates = aggregates
        self._prices = prices or PriceList()
        self._due_days = invoice_due_days
        self._clock = clock

    @property
    def prices(self) -> PriceList:
        return self._prices

    # ───────────────────── in-transaction building blocks ─────────────────────

    def open_invoice_in(
        self,
        tx: LedgerTransaction,
        customer_id: UUID,
        actor: Actor,
        request_meta: RequestMeta | None = None,
    ) -> Invoice:
        """The customer's open (draft) invoice, created when there is none."""
        invoice = tx.find_open_invoice(customer_id)
        if invoice is not None:
            return tx.get_invoice(invoice.id, lock=True)
        return self._create_invoice_in(tx, customer_id, actor, request_meta)

    def add_item_in(
        self,
        tx: LedgerTransaction,
        invoice: Invoice,
        item: BillingItem,
        actor: Actor,
        request_meta: RequestMeta | None = None,
    ) -> BillingItem:
        """Insert one item, audit it, recompute the invoice and adjust the balance."""
        if invoice.status not in _EDITABLE:
            raise ConstraintViolation(
                f"cannot add items to a {invoice.status} invoice", invoice_id=invoice.id
            )
        stored = tx.insert_billing_item(item)
        self._audit.inserted(tx, stored, actor, request_meta)
        self._aggregates.recompute_invoice_totals(tx, invoice.id, actor, request_meta)
        delta = -stored.total_price if counts_toward_balance(invoice) else ZERO
        self._aggregates.adjust_customer_balance(tx, invoice.customer_id, delta, actor, request_meta)
        return stored

    def ensure_within_credit(self, tx: LedgerTransaction, customer: Customer, amount: Decimal) -> None:
        """
        Reject a new charge that would take the customer past its credit limit.

        Exposure counts the cached balance and every open draft invoice.
        """
        drafts = sum(
            (
                inv.total_amount
                for inv in tx.list_invoices_for_customer(customer.id)
                if inv.status == InvoiceStatus.DRAFT
            ),
            ZERO,
        )
        exposure = customer.balance - drafts - amount
        if exposure < -customer.credit_limit:
            raise CreditLimitExceeded(
                f"charge of {amount} exceeds credit limit {customer.credit_limit} "
                f"(balance {customer.balance}, uninvoiced {drafts})",
                customer_id=customer.id,
            )

    def mark_overdue_in(self, tx: LedgerTransaction, invoice_id: UUID, now: datetime, actor: Actor) -> bool:
        invoice = tx.get_invoice(invoice_id, lock=True)
        if invoice.status != InvoiceStatus.ISSUED or invoice.due_at >= now:
            return False
        updated = replace(invoice, status=InvoiceStatus.OVERDUE, updated_at=now)
        tx.update_invoice(updated)
        self._audit.updated(tx, invoice, updated, actor)
        log.info("billing.invoice_overdue", invoice_id=str(invoice_id), number=invoice.number)
        return True

    def mark_overdue(self, now: datetime, actor: Actor | None = None) -> Result[int]:
        """Flag every issued invoice past its due date as overdue, one transaction each."""
        actor = actor or Actor.system("tick")
        listed = run_in_transaction(
            self._store, "list_overdue_candidates", lambda tx: tx.list_overdue_candidates(now)
        )
        if listed.is_failure():
            return Result.failure_from(listed.error())
        flagged = 0
        for invoice_id in listed.value():
            result = run_in_transaction(
                self._store,
                "mark_overdue",
                lambda tx, iid=invoice_id: self.mark_overdue_in(tx, iid, now, actor),
            )
            if result.is_success() and result.value():
                flagged += 1
        return Result.success(flagged)

    def _create_invoice_in(
        self,
        tx: LedgerTransaction,
        customer_id: UUID,
        actor: Actor,
        request_meta: RequestMeta | None,
    ) -> Invoice:
        now = self._clock()
        invoice = tx.insert_invoice(
            Invoice(
                customer_id=customer_id,
                number=_invoice_number(now),
                due_at=now + timedelta(days=self._due_days),
                created_at=now,
                updated_at=now,
            )
        )
        self._audit.inserted(tx, invoice, actor, request_meta)
        log.info("billing.invoice_created", invoice_id=str(invoice.id), customer_id=str(customer_id))
        return invoice

    def _locked_invoice(self, tx: LedgerTransaction, invoice_id: UUID, actor: Actor) -> Invoice:
        """Lock customer then invoice; returns the invoice read under lock."""
        unlocked = tx.get_invoice(invoice_id)
        ensure_owner(actor, unlocked.customer_id, invoice_id=invoice_id)
        tx.get_customer(unlocked.customer_id, lock=True)
        return tx.get_invoice(invoice_id, lock=True)

    # ───────────────────── invoices & items ─────────────────────

    def create_invoice(
        self, actor: Actor, customer_id: UUID, request_meta: RequestMeta | None = None
    ) -> Result[Invoice]:
        def work(tx: LedgerTransaction) -> Invoice:
            ensure_owner(actor, customer_id)
            tx.get_customer(customer_id, lock=True)
            return self._create_invoice_in(tx, customer_id, actor, request_meta)

        return run_in_transaction(self._store, "create_invoice", work)

    def add_billing_item(
        self,
        actor: Actor,
        invoice_id: UUID,
        item_type: BillingItemType,
        description: str,
        unit_price: Decimal,
        quantity: int = 1,
        domain_id: UUID | None = None,
        request_meta: RequestMeta | None = None,
    ) -> Result[BillingItem]:
        def work(tx: LedgerTransaction) -> BillingItem:
            if quantity < 1 or unit_price < ZERO:
                raise ConstraintViolation(
                    "quantity must be positive and unit price non-negative", invoice_id=invoice_id
                )
            invoice = self._locked_invoice(tx, invoice_id, actor)
            policy = self._aggregates.policy
            item = BillingItem(
                invoice_id=invoice_id,
                item_type=item_type,
                description=description,
                unit_price=policy.quantize(unit_price),
                total_price=line_total(policy, quantity, unit_price),
                quantity=quantity,
                domain_id=domain_id,
                created_at=self._clock(),
            )
            return self.add_item_in(tx, invoice, item, actor, request_meta)

        return run_in_transaction(self._store, "add_billing_item", work)

    def remove_billing_item(
        self, actor: Actor, item_id: UUID, request_meta: RequestMeta | None = None
    ) -> Result[Invoice]:
        """Delete one item; the total may not drop below what was already paid."""

        def work(tx: LedgerTransaction) -> Invoice:
            item = tx.get_billing_item(item_id)
            invoice = self._locked_invoice(tx, item.invoice_id, actor)
            if invoice.status not in _EDITABLE:
                raise ConstraintViolation(
                    f"cannot remove items from a {invoice.status} invoice",
                    invoice_id=invoice.id,
                    billing_item_id=item_id,
                )
            if invoice.total_amount - item.total_price < invoice.paid_amount:
                raise ConstraintViolation(
                    "removal would leave the invoice total below the amount paid",
                    invoice_id=invoice.id,
                    billing_item_id=item_id,
                )
            tx.delete_billing_item(item_id)
            self._audit.deleted(tx, item, actor, request_meta)
            updated = self._aggregates.recompute_invoice_totals(tx, invoice.id, actor, request_meta)
            delta = item.total_price if counts_toward_balance(invoice) else ZERO
            self._aggregates.adjust_customer_balance(
                tx, invoice.customer_id, delta, actor, request_meta
            )
            return updated

        return run_in_transaction(self._store, "remove_billing_item", work)

    def issue_invoice(
        self, actor: Actor, invoice_id: UUID, request_meta: RequestMeta | None = None
    ) -> Result[Invoice]:
        """draft → issued; the total enters the customer's balance."""

        def work(tx: LedgerTransaction) -> Invoice:
            invoice = self._locked_invoice(tx, invoice_id, actor)
            if invoice.status != InvoiceStatus.DRAFT:
                raise ConstraintViolation(
                    f"only draft invoices can be issued, not {invoice.status}", invoice_id=invoice_id
                )
            if invoice.total_amount <= ZERO:
                raise ConstraintViolation("cannot issue an empty invoice", invoice_id=invoice_id)
            now = self._clock()
            issued = replace(
                invoice,
                status=InvoiceStatus.ISSUED,
                issued_on=now,
                due_at=now + timedelta(days=self._due_days),
                updated_at=now,
            )
            tx.update_invoice(issued)
            self._audit.updated(tx, invoice, issued, actor, request_meta)
            issued = self._aggregates.recompute_invoice_totals(tx, invoice_id, actor, request_meta)
            self._aggregates.adjust_customer_balance(
                tx, invoice.customer_id, balance_delta_for_invoice(issued), actor, request_meta
            )
            log.info("billing.invoice_issued", invoice_id=str(invoice_id), total=str(issued.total_amount))
            return issued

        return run_in_transaction(self._store, "issue_invoice", work)

    def cancel_invoice(
        self, actor: Actor, invoice_id: UUID, request_meta: RequestMeta | None = None
    ) -> Result[Invoice]:
        """Cancel an invoice nothing has been paid against."""

        def work(tx: LedgerTransaction) -> Invoice:
            invoice = self._locked_invoice(tx, invoice_id, actor)
            if invoice.status not in _EDITABLE or invoice.paid_amount > ZERO:
                raise ConstraintViolation(
                    f"only unpaid invoices can be cancelled ({invoice.status}, "
                    f"paid {invoice.paid_amount})",
                    invoice_id=invoice_id,
                )
            cancelled = replace(invoice, status=InvoiceStatus.CANCELLED, updated_at=self._clock())
            tx.update_invoice(cancelled)
            self._audit.updated(tx, invoice, cancelled, actor, request_meta)
            delta = -balance_delta_for_invoice(invoice) if counts_toward_balance(invoice) else ZERO
            self._aggregates.adjust_customer_balance(
                tx, invoice.customer_id, delta, actor, request_meta
            )
            return cancelled

        return run_in_transaction(self._store, "cancel_invoice", work)

    # ───────────────────── payments & credit ─────────────────────

    def record_payment(
        self,
        actor: Actor,
        customer_id: UUID,
        amount: Decimal,
        method: PaymentMethod,
        invoice_id: UUID | None = None,
        transaction_id: str | None = None,
        notes: str | None = None,
        completed: bool = True,
        request_meta: RequestMeta | None = None,
    ) -> Result[list[Payment]]:
        """
        Record money received. A completed payment larger than the invoice's
        outstanding amount is split: the applied part plus an unapplied
        credit payment for the excess.
        """

        def work(tx: LedgerTransaction) -> list[Payment]:
            ensure_owner(actor, customer_id)
            if method == PaymentMethod.CREDIT:
                raise ConstraintViolation(
                    "credit re-allocation goes through apply_credit", customer_id=customer_id
                )
            value = self._aggregates.policy.quantize(amount)
            if value <= ZERO:
                raise ConstraintViolation("payment amount must be positive", customer_id=customer_id)
            tx.get_customer(customer_id, lock=True)
            if invoice_id is not None:
                self._payable_invoice(tx, invoice_id, customer_id)
            now = self._clock()
            payment = Payment(
                customer_id=customer_id,
                amount=value,
                method=method,
                invoice_id=invoice_id,
                status=PaymentStatus.PENDING,
                transaction_id=transaction_id,
                notes=notes,
                created_at=now,
            )
            if not completed:
                stored = tx.insert_payment(payment)
                self._audit.inserted(tx, stored, actor, request_meta)
                return [stored]
            payments = self._insert_completed(tx, payment, now, actor, request_meta)
            self._after_payment_change(tx, payments, balance_delta_for_payment(payment), actor, request_meta)
            return payments

        return run_in_transaction(self._store, "record_payment", work)

    def complete_payment(
        self, actor: Actor, payment_id: UUID, request_meta: RequestMeta | None = None
    ) -> Result[list[Payment]]:
        """pending → completed, splitting off any overpayment as credit."""

        def work(tx: LedgerTransaction) -> list[Payment]:
            pending = self._locked_payment(tx, payment_id, actor)
            if pending.status != PaymentStatus.PENDING:
                raise ConstraintViolation(
                    f"only pending payments can be completed, not {pending.status}",
                    payment_id=payment_id,
                )
            if pending.invoice_id is not None:
                self._payable_invoice(tx, pending.invoice_id, pending.customer_id)
            now = self._clock()
            applied, excess = self._split(tx, pending)
            completed = replace(
                pending,
                amount=applied if applied > ZERO else pending.amount,
                invoice_id=pending.invoice_id if applied > ZERO else None,
                status=PaymentStatus.COMPLETED,
                paid_at=now,
            )
            tx.update_payment(completed)
            self._audit.updated(tx, pending, completed, actor, request_meta)
            payments = [completed]
            if applied > ZERO and excess > ZERO:
                payments.append(self._insert_credit(tx, completed, excess, now, actor, request_meta))
            self._after_payment_change(
                tx, payments, balance_delta_for_payment(pending), actor, request_meta
            )
            return payments

        return run_in_transaction(self._store, "complete_payment", work)

    def fail_payment(
        self, actor: Actor, payment_id: UUID, request_meta: RequestMeta | None = None
    ) -> Result[Payment]:
        def work(tx: LedgerTransaction) -> Payment:
            pending = self._locked_payment(tx, payment_id, actor)
            if pending.status != PaymentStatus.PENDING:
                raise ConstraintViolation(
                    f"only pending payments can fail, not {pending.status}", payment_id=payment_id
                )
            failed = replace(pending, status=PaymentStatus.FAILED)
            tx.update_payment(failed)
            self._audit.updated(tx, pending, failed, actor, request_meta)
            return failed

        return run_in_transaction(self._store, "fail_payment", work)

    def refund_payment(
        self, actor: Actor, payment_id: UUID, request_meta: RequestMeta | None = None
    ) -> Result[Payment]:
        """
        completed → refunded. Refunding unapplied money is only possible
        while that credit has not been re-allocated to an invoice.
        """

        def work(tx: LedgerTransaction) -> Payment:
            payment = self._locked_payment(tx, payment_id, actor)
            if payment.status != PaymentStatus.COMPLETED:
                raise ConstraintViolation(
                    f"only completed payments can be refunded, not {payment.status}",
                    payment_id=payment_id,
                )
            if payment.invoice_id is None and payment.method != PaymentMethod.CREDIT:
                credit = available_credit(tx.list_payments_for_customer(payment.customer_id))
                if credit < payment.amount:
                    raise ConstraintViolation(
                        f"only {credit} of this credit is still unallocated",
                        payment_id=payment_id,
                        customer_id=payment.customer_id,
                    )
            if payment.invoice_id is not None:
                tx.get_invoice(payment.invoice_id, lock=True)
            refunded = replace(payment, status=PaymentStatus.REFUNDED)
            tx.update_payment(refunded)
            self._audit.updated(tx, payment, refunded, actor, request_meta)
            self._after_payment_change(
                tx, [refunded], -balance_delta_for_payment(payment), actor, request_meta
            )
            return refunded

        return run_in_transaction(self._store, "refund_payment", work)

    def apply_credit(
        self,
        actor: Actor,
        customer_id: UUID,
        invoice_id: UUID,
        amount: Decimal | None = None,
        request_meta: RequestMeta | None = None,
    ) -> Result[Payment]:
        """
        Re-allocate unapplied customer credit to an invoice (a "credit"
        payment). Defaults to the invoice's outstanding amount; bounded by
        both the outstanding amount and the available credit.
        """

        def work(tx: LedgerTransaction) -> Payment:
            ensure_owner(actor, customer_id, invoice_id=invoice_id)
            tx.get_customer(customer_id, lock=True)
            invoice = self._payable_invoice(tx, invoice_id, customer_id)
            credit = available_credit(tx.list_payments_for_customer(customer_id))
            wanted = self._aggregates.policy.quantize(amount if amount is not None else invoice.outstanding)
            if wanted <= ZERO or wanted > invoice.outstanding or wanted > credit:
                raise ConstraintViolation(
                    f"cannot apply {wanted} of credit (available {credit}, "
                    f"outstanding {invoice.outstanding})",
                    customer_id=customer_id,
                    invoice_id=invoice_id,
                )
            now = self._clock()
            payment = tx.insert_payment(
                Payment(
                    customer_id=customer_id,
                    amount=wanted,
                    method=PaymentMethod.CREDIT,
                    invoice_id=invoice_id,
                    status=PaymentStatus.COMPLETED,
                    notes="credit re-allocation",
                    paid_at=now,
                    created_at=now,
                )
            )
            self._audit.inserted(tx, payment, actor, request_meta)
            self._after_payment_change(tx, [payment], ZERO, actor, request_meta)
            return payment

        return run_in_transaction(self._store, "apply_credit", work)

    # ───────────────────── helpers ─────────────────────

    def _payable_invoice(self, tx: LedgerTransaction, invoice_id: UUID, customer_id: UUID) -> Invoice:
        invoice = tx.get_invoice(invoice_id, lock=True)
        if invoice.customer_id != customer_id:
            raise ConstraintViolation(
                "invoice belongs to another customer", invoice_id=invoice_id, customer_id=customer_id
            )
        if invoice.status not in _PAYABLE:
            raise ConstraintViolation(
                f"payments cannot be applied to a {invoice.status} invoice", invoice_id=invoice_id
            )
        return invoice

    def _locked_payment(self, tx: LedgerTransaction, payment_id: UUID, actor: Actor) -> Payment:
        unlocked = tx.get_payment(payment_id)
        ensure_owner(actor, unlocked.customer_id, payment_id=payment_id)
        tx.get_customer(unlocked.customer_id, lock=True)
        return tx.get_payment(payment_id, lock=True)

    def _split(self, tx: LedgerTransaction, payment: Payment) -> tuple[Decimal, Decimal]:
        """(applied, excess) of a payment against its invoice's outstanding amount."""
        if payment.invoice_id is None:
            return ZERO, payment.amount
        invoice = tx.get_invoice(payment.invoice_id, lock=True)
        applied = min(payment.amount, max(invoice.outstanding, ZERO))
        return applied, payment.amount - applied

    def _insert_completed(
        self,
        tx: LedgerTransaction,
        payment: Payment,
        now: datetime,
        actor: Actor,
        request_meta: RequestMeta | None,
    ) -> list[Payment]:
        applied, excess = self._split(tx, payment)
        if applied <= ZERO:
            stored = tx.insert_payment(
                replace(payment, invoice_id=None, status=PaymentStatus.COMPLETED, paid_at=now)
            )
            self._audit.inserted(tx, stored, actor, request_meta)
            return [stored]
        stored = tx.insert_payment(
            replace(payment, amount=applied, status=PaymentStatus.COMPLETED, paid_at=now)
        )
        self._audit.inserted(tx, stored, actor, request_meta)
        payments = [stored]
        if excess > ZERO:
            payments.append(self._insert_credit(tx, stored, excess, now, actor, request_meta))
        return payments

    def _insert_credit(
        self,
        tx: LedgerTransaction,
        source: Payment,
        excess: Decimal,
        now: datetime,
        actor: Actor,
        request_meta: RequestMeta | None,
    ) -> Payment:
        credit = tx.insert_payment(
            Payment(
                customer_id=source.customer_id,
                amount=excess,
                method=source.method,
                status=PaymentStatus.COMPLETED,
                transaction_id=source.transaction_id,
                notes=f"overpayment of invoice {source.invoice_id}",
                paid_at=now,
                created_at=now,
            )
        )
        self._audit.inserted(tx, credit, actor, request_meta)
        log.info(
            "billing.overpayment_credited",
            customer_id=str(source.customer_id),
            invoice_id=str(source.invoice_id),
            credit=str(excess),
        )
        return credit

    def _after_payment_change(
        self,
        tx: LedgerTransaction,
        payments: list[Payment],
        delta: Decimal,
        actor: Actor,
        request_meta: RequestMeta | None,
    ) -> None:
        for invoice_id in {p.invoice_id for p in payments if p.invoice_id is not None}:
            self._aggregates.recompute_invoice_totals(tx, invoice_id, actor, request_meta)
        self._aggregates.adjust_customer_balance(
            tx, payments[0].customer_id, delta, actor, request_meta
        )


def _invoice_number(now: datetime) -> str:
    return f"INV-{now:%Y%m%d}-{uuid4().hex[:8].upper()}"
