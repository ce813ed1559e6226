"""
Failure description — structured error information for the failure track.

Every ledger rule violation maps onto one ErrorCode; the code decides the
HTTP status of the trigger endpoint and whether a scheduled job counts the
run as failed. The message is safe to show a caller; the exception is for
logs only.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from typing import Optional


@unique
class ErrorCode(Enum):
    """
    Structured error codes for the failure track, grouped by HTTP status range.
    """

    # --- Caller errors (4xx) ---
    VALIDATION_ERROR = "VALIDATION_ERROR"
    """A write would break a ledger constraint (→ 400)."""

    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    """The actor may not touch another customer's data (→ 403)."""

    NOT_FOUND = "NOT_FOUND"
    """Customer, domain, contact, invoice or payment doesn't exist (→ 404)."""

    BUSINESS_RULE_ERROR = "BUSINESS_RULE_ERROR"
    """Illegal lifecycle transition or credit refusal (→ 409)."""

    # --- Server errors (5xx) ---
    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    """A job or handler raised instead of returning a Result (→ 500)."""

    DATABASE_ERROR = "DATABASE_ERROR"
    """Ledger store unreachable or failing after retries (→ 500)."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """System misconfiguration, e.g. no registry connection (→ 500)."""

    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    """The registry answered but refused the request (→ 502)."""

    SERVICE_UNAVAILABLE_ERROR = "SERVICE_UNAVAILABLE_ERROR"
    """The registry could not be reached (→ 503)."""

    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    """Unexpected/unclassified failures (→ 500)."""


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor: error code, message, optional exception, and timestamp.

    >>> desc = FailureDescription(ErrorCode.NOT_FOUND, "invoice does not exist")
    >>> desc.code
    <ErrorCode.NOT_FOUND: 'NOT_FOUND'>
    """

    code: ErrorCode
    message: str
    exception: Optional[BaseException] = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def full_stack_trace(self) -> str:
        """The message followed by the formatted exception chain, if any."""
        if self.exception is None:
            return self.message
        tb = "".join(traceback.format_exception(type(self.exception), self.exception, self.exception.__traceback__))
        return f"{self.message}\n{tb}"

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"
