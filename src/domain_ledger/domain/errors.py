"""
Error taxonomy — exceptions raised INSIDE a ledger transaction.

Raising any of these inside `run_in_transaction` rolls the whole
transaction back; the boundary then converts the exception into a
railway Failure whose message starts with the taxonomy kind and lists the
entity identifiers involved:

    InvalidStateTransition: renew not allowed from cancelled [domain_id=...]

Business logic never sees these as exceptions past that boundary.
"""

from __future__ import annotations

from typing import ClassVar
from uuid import UUID

from railway import ErrorCode


class LedgerError(Exception):
    """Base class: a rejected ledger operation with its entity identifiers."""

    kind: ClassVar[str] = "LedgerError"
    code: ClassVar[ErrorCode] = ErrorCode.UNKNOWN_ERROR

    def __init__(self, detail: str, **entity_ids: UUID | str | None) -> None:
        self.detail = detail
        self.entity_ids = {k: v for k, v in entity_ids.items() if v is not None}
        super().__init__(self.describe())

    def describe(self) -> str:
        """User-visible message: kind, detail and entity identifiers."""
        if not self.entity_ids:
            return f"{self.kind}: {self.detail}"
        ids = ", ".join(f"{key}={value}" for key, value in self.entity_ids.items())
        return f"{self.kind}: {self.detail} [{ids}]"


class InvalidStateTransition(LedgerError):
    """Transition illegal for the domain's current status. Not retried."""

    kind = "InvalidStateTransition"
    code = ErrorCode.BUSINESS_RULE_ERROR


class StaleTransition(InvalidStateTransition):
    """The event was computed against state that has since been committed over."""


class ConstraintViolation(LedgerError):
    """Uniqueness, reference or invariant violation. Not retried."""

    kind = "ConstraintViolation"
    code = ErrorCode.VALIDATION_ERROR


class CreditLimitExceeded(ConstraintViolation):
    pass


class EntityNotFound(LedgerError):
    kind = "NotFound"
    code = ErrorCode.NOT_FOUND


class AuthorizationDenied(LedgerError):
    kind = "AuthorizationDenied"
    code = ErrorCode.AUTHORIZATION_ERROR


class RegistryUnavailable(LedgerError):
    """Transient registry failure. Retried with backoff by the caller."""

    kind = "RegistryUnavailable"
    code = ErrorCode.SERVICE_UNAVAILABLE_ERROR


class RegistryRejected(LedgerError):
    """The registry answered but refused the request."""

    kind = "RegistryRejected"
    code = ErrorCode.EXTERNAL_SERVICE_ERROR


class AggregateMismatch(LedgerError):
    """
    A cached aggregate disagreed with its full recompute.

    Never surfaced to callers: the Aggregate Maintainer logs it and writes
    the recomputed value.
    """

    kind = "AggregateMismatch"
    code = ErrorCode.TECHNICAL_ERROR


class TransientStoreError(Exception):
    """Serialization failure or deadlock; the whole unit of work may be retried."""
