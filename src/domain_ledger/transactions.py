"""
Transaction boundary — where exceptions become railway Results.

Everything that mutates the ledger runs as a unit of work:

    run_in_transaction(store, "issue_invoice", lambda tx: ...)

  1. open ONE store transaction
  2. run the work against it (the work raises on any rule violation)
  3. commit on return, roll back on any exception
  4. convert the outcome:
       value            → Result.success(value)
       LedgerError      → Result.failure(error.code, "<Kind>: <detail> [ids]")
       anything else    → Result.failure(DATABASE_ERROR,
                                         "ledger store failure during <operation>")

Serialization failures and deadlocks (TransientStoreError) re-run the
whole unit of work with exponential backoff. Raw store errors never reach
the caller's message; the original exception is attached to the
FailureDescription for logs only.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypeVar

import structlog
from railway import ErrorCode
from railway.result import Result
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from domain_ledger.domain.errors import LedgerError, TransientStoreError
from domain_ledger.domain.ports import LedgerStore, LedgerTransaction

T = TypeVar("T")

log = structlog.get_logger()


def utc_now() -> datetime:
    return datetime.now(UTC)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    retry=retry_if_exception_type(TransientStoreError),
    reraise=True,
)
def _run_once(store: LedgerStore, work: Callable[[LedgerTransaction], T]) -> T:
    """One attempt — the store context manager commits or rolls back."""
    with store.transaction() as tx:
        return work(tx)


def run_in_transaction(
    store: LedgerStore,
    operation: str,
    work: Callable[[LedgerTransaction], T],
) -> Result[T]:
    """
    Run `work` inside one store transaction and return its outcome as a Result.

    `work` must return a non-None value (Success never wraps None).
    """
    try:
        value = _run_once(store, work)
    except LedgerError as e:
        log.info(
            "ledger.operation_rejected",
            operation=operation,
            kind=e.kind,
            detail=e.detail,
            **{k: str(v) for k, v in e.entity_ids.items()},
        )
        return Result.failure(e.code, e.describe(), e)
    except Exception as e:
        log.error("ledger.store_failure", operation=operation, error=str(e))
        return Result.failure(
            ErrorCode.DATABASE_ERROR,
            f"ledger store failure during {operation}",
            e,
        )
    return Result.success(value)
