"""
Railway-Oriented Programming (ROP) for the domain ledger.

Explicit error handling: ledger operations return Result[T] and never
raise past their transaction boundary.

    from railway import Result, ErrorCode

    def check_years(years: int) -> Result[int]:
        if not 1 <= years <= 10:
            return Result.failure(ErrorCode.VALIDATION_ERROR, "years must be 1-10")
        return Result.success(years)

    result = check_years(2).flat_map(lambda years: registrar.renew_with_registry(actor, domain_id, years))
"""

from railway.result import Result, Success, Failure
from railway.failure import ErrorCode, FailureDescription
from railway.execution import (
    ExecutionContext,
    NoOpExecutionContext,
    LoggingExecutionContext,
)
from railway.assertions import ResultAssertions

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "ExecutionContext",
    "NoOpExecutionContext",
    "LoggingExecutionContext",
    "ResultAssertions",
]

__version__ = "1.1.0"
