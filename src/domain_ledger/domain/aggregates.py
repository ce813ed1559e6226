"""
Aggregate arithmetic — pure functions over constituent rows.

These are the FULL recomputes: the single source of truth for the cached
fields Invoice.total_amount, Invoice.paid_amount and Customer.balance.
Incremental deltas (`balance_delta_*`) are an optimization that must
always agree with `customer_balance()`.

Balance:
    Σ completed payments whose method is not "credit"
  − Σ total_amount of invoices in {issued, paid, overdue}

"credit"-method payments only re-allocate money already counted as an
unapplied payment, so they move paid_amount but never the balance.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from domain_ledger.domain.models import (
    ZERO,
    BillingItem,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
)

BALANCE_STATUSES = frozenset({InvoiceStatus.ISSUED, InvoiceStatus.PAID, InvoiceStatus.OVERDUE})


@dataclass(frozen=True, slots=True)
class CurrencyPolicy:
    """Declared precision and rounding of every money amount."""

    places: int = 2
    rounding: str = ROUND_HALF_UP

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.places)

    def quantize(self, amount: Decimal) -> Decimal:
        return Decimal(amount).quantize(self.quantum, rounding=self.rounding)


def line_total(policy: CurrencyPolicy, quantity: int, unit_price: Decimal) -> Decimal:
    return policy.quantize(unit_price * quantity)


def invoice_total(items: Iterable[BillingItem]) -> Decimal:
    return sum((item.total_price for item in items), ZERO)


def invoice_paid(payments: Iterable[Payment]) -> Decimal:
    """Σ completed payments applied to the invoice (credit re-allocations included)."""
    return sum(
        (p.amount for p in payments if p.status == PaymentStatus.COMPLETED and p.invoice_id),
        ZERO,
    )


def derive_invoice_status(
    invoice: Invoice, total: Decimal, paid: Decimal, now: datetime
) -> InvoiceStatus:
    """
    Status implied by recomputed totals.

    Draft and cancelled invoices keep their status. A fully paid invoice
    becomes paid; a paid invoice that fell short again (refund, added item)
    goes back to issued, or overdue once past its due date.
    """
    if invoice.status in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED):
        return invoice.status
    if total > ZERO and paid >= total:
        return InvoiceStatus.PAID
    if invoice.status == InvoiceStatus.PAID:
        return InvoiceStatus.OVERDUE if invoice.due_at < now else InvoiceStatus.ISSUED
    return invoice.status


def customer_balance(payments: Iterable[Payment], invoices: Iterable[Invoice]) -> Decimal:
    received = sum(
        (
            p.amount
            for p in payments
            if p.status == PaymentStatus.COMPLETED and p.method != PaymentMethod.CREDIT
        ),
        ZERO,
    )
    billed = sum((inv.total_amount for inv in invoices if inv.status in BALANCE_STATUSES), ZERO)
    return received - billed


def available_credit(payments: Iterable[Payment]) -> Decimal:
    """Unapplied money a customer may re-allocate to an invoice."""
    unapplied = ZERO
    reallocated = ZERO
    for p in payments:
        if p.status != PaymentStatus.COMPLETED:
            continue
        if p.method == PaymentMethod.CREDIT:
            reallocated += p.amount
        elif p.invoice_id is None:
            unapplied += p.amount
    return unapplied - reallocated


# ── incremental deltas ──


def balance_delta_for_payment(payment: Payment) -> Decimal:
    """Delta of completing `payment`; negate it for a refund."""
    return ZERO if payment.method == PaymentMethod.CREDIT else payment.amount


def balance_delta_for_invoice(invoice: Invoice) -> Decimal:
    """Delta of `invoice` entering the balance (issue); negate it for leaving (cancel)."""
    return -invoice.total_amount


def counts_toward_balance(invoice: Invoice) -> bool:
    return invoice.status in BALANCE_STATUSES
