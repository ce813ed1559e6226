"""
Aggregate Maintainer — keeps cached totals equal to their constituent rows.

Cached fields:
  Invoice.total_amount   = Σ billing item total_price
  Invoice.paid_amount    = Σ completed payments applied to the invoice
  Customer.balance       = see domain.aggregates.customer_balance

Every method here takes the caller's open transaction and row-locks what
it writes (SELECT … FOR UPDATE). Lock order across the engine is
domain → customer → invoice: callers that touch an invoice lock its
customer first.

The incremental path (`adjust_customer_balance`) applies a delta and
immediately checks it against the full recompute. A disagreement is an
AggregateMismatch: logged, and the recomputed value is written.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from uuid import UUID

import structlog
from railway.result import Result

from domain_ledger.audit import AuditRecorder
from domain_ledger.domain.aggregates import (
    CurrencyPolicy,
    customer_balance,
    derive_invoice_status,
    invoice_paid,
    invoice_total,
)
from domain_ledger.domain.errors import AggregateMismatch, ConstraintViolation
from domain_ledger.domain.models import (
    Actor,
    AggregateCorrection,
    Customer,
    EntityKind,
    Invoice,
    RequestMeta,
    VerificationReport,
)
from domain_ledger.domain.ports import LedgerStore, LedgerTransaction
from domain_ledger.transactions import run_in_transaction, utc_now

log = structlog.get_logger()


class AggregateMaintainer:
    def __init__(
        self,
        audit: AuditRecorder,
        policy: CurrencyPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._audit = audit
        self._policy = policy or CurrencyPolicy()
        self._clock = clock

    @property
    def policy(self) -> CurrencyPolicy:
        return self._policy

    def recompute_invoice_totals(
        self,
        tx: LedgerTransaction,
        invoice_id: UUID,
        actor: Actor,
        request_meta: RequestMeta | None = None,
    ) -> Invoice:
        """
        Full recompute of one invoice's cached totals and derived status.

        Writes and audits the invoice only when something changed. Raises
        ConstraintViolation if completed payments would exceed the total.
        """
        invoice = tx.get_invoice(invoice_id, lock=True)
        total = self._policy.quantize(invoice_total(tx.list_billing_items(invoice_id)))
        paid = self._policy.quantize(invoice_paid(tx.list_payments_for_invoice(invoice_id)))
        if paid > total:
            raise ConstraintViolation(
                f"completed payments {paid} exceed invoice total {total}",
                invoice_id=invoice_id,
            )
        now = self._clock()
        status = derive_invoice_status(invoice, total, paid, now)
        if (invoice.total_amount, invoice.paid_amount, invoice.status) == (total, paid, status):
            return invoice

        updated = replace(
            invoice, total_amount=total, paid_amount=paid, status=status, updated_at=now
        )
        tx.update_invoice(updated)
        self._audit.updated(tx, invoice, updated, actor, request_meta)
        log.debug(
            "aggregates.invoice_recomputed",
            invoice_id=str(invoice_id),
            total=str(total),
            paid=str(paid),
            status=status.value,
        )
        return updated

    def recompute_customer_balance(
        self,
        tx: LedgerTransaction,
        customer_id: UUID,
        actor: Actor,
        request_meta: RequestMeta | None = None,
        expected: Decimal | None = None,
    ) -> Customer:
        """
        Full recompute of a customer's balance — the source of truth.

        `expected` is the incrementally maintained value; when it disagrees
        with the recompute the mismatch is logged and the recompute wins.
        """
        customer = tx.get_customer(customer_id, lock=True)
        balance = self._policy.quantize(
            customer_balance(
                tx.list_payments_for_customer(customer_id),
                tx.list_invoices_for_customer(customer_id),
            )
        )
        if expected is not None and self._policy.quantize(expected) != balance:
            mismatch = AggregateMismatch(
                f"incremental balance {expected} != recomputed {balance}",
                customer_id=customer_id,
            )
            log.warning("aggregates.mismatch_corrected", failure=mismatch.describe())
        if customer.balance == balance:
            return customer

        updated = replace(customer, balance=balance, updated_at=self._clock())
        tx.update_customer(updated)
        self._audit.updated(tx, customer, updated, actor, request_meta)
        return updated

    def adjust_customer_balance(
        self,
        tx: LedgerTransaction,
        customer_id: UUID,
        delta: Decimal,
        actor: Actor,
        request_meta: RequestMeta | None = None,
    ) -> Customer:
        """Incremental balance update, verified against the full recompute."""
        customer = tx.get_customer(customer_id, lock=True)
        return self.recompute_customer_balance(
            tx, customer_id, actor, request_meta, expected=customer.balance + delta
        )

    # ── periodic verification ──

    def verify_all(self, store: LedgerStore, actor: Actor | None = None) -> Result[VerificationReport]:
        """
        Recompute every invoice and customer balance, one transaction per customer.

        Returns the corrections made. A customer whose verification fails
        is logged and skipped; the others still run.
        """
        actor = actor or Actor.system("verify")
        listed = run_in_transaction(store, "verify_all", lambda tx: tx.list_customer_ids())
        if listed.is_failure():
            return Result.failure_from(listed.error())

        corrections: list[AggregateCorrection] = []
        invoices_checked = 0
        for customer_id in listed.value():
            result = run_in_transaction(
                store,
                "verify_customer",
                lambda tx, cid=customer_id: self._verify_customer(tx, cid, actor),
            )
            if result.is_failure():
                log.error(
                    "aggregates.verify_failed",
                    customer_id=str(customer_id),
                    failure=result.error().message,
                )
                continue
            checked, found = result.value()
            invoices_checked += checked
            corrections.extend(found)

        report = VerificationReport(
            customers_checked=len(listed.value()),
            invoices_checked=invoices_checked,
            corrections=corrections,
        )
        log.info(
            "aggregates.verify_completed",
            customers=report.customers_checked,
            invoices=report.invoices_checked,
            corrections=len(report.corrections),
        )
        return Result.success(report)

    def _verify_customer(
        self, tx: LedgerTransaction, customer_id: UUID, actor: Actor
    ) -> tuple[int, list[AggregateCorrection]]:
        corrections: list[AggregateCorrection] = []
        cached_customer = tx.get_customer(customer_id, lock=True)
        invoices = tx.list_invoices_for_customer(customer_id)
        for cached in invoices:
            fresh = self.recompute_invoice_totals(tx, cached.id, actor)
            for attribute in ("total_amount", "paid_amount"):
                before, after = getattr(cached, attribute), getattr(fresh, attribute)
                if before != after:
                    corrections.append(
                        AggregateCorrection(EntityKind.INVOICE, cached.id, attribute, before, after)
                    )
        fresh_customer = self.recompute_customer_balance(
            tx, customer_id, actor, expected=cached_customer.balance
        )
        if fresh_customer.balance != cached_customer.balance:
            corrections.append(
                AggregateCorrection(
                    EntityKind.CUSTOMER,
                    customer_id,
                    "balance",
                    cached_customer.balance,
                    fresh_customer.balance,
                )
            )
        return len(invoices), corrections
