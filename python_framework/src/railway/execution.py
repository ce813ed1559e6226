"""
Execution contexts — separate WHAT (a Result-returning computation) from HOW
it runs (timing, logging, exception capture).

A scheduled job or an HTTP-triggered run is a computation returning
Result[T]. Wrapping it in an ExecutionContext adds the side concerns
without touching the job:

    ctx = LoggingExecutionContext(operation="Lifecycle tick")
    result = ctx.execute(lambda: run_lifecycle_tick(engine))

An exception escaping the computation is captured as a TECHNICAL_ERROR
failure, so callers only ever see a Result.
"""

from __future__ import annotations

import time
from typing import Callable, Protocol, TypeVar, runtime_checkable

import structlog

from railway.failure import ErrorCode, FailureDescription
from railway.result import Failure, Result

T = TypeVar("T")
log = structlog.get_logger("railway.execution")


@runtime_checkable
class ExecutionContext(Protocol):
    """Anything with `execute(computation) -> Result` — structural, no inheritance needed."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        ...


class NoOpExecutionContext:
    """Passthrough context — runs the computation as is."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        return computation()


class LoggingExecutionContext:
    """
    Execution context that logs start, duration and result state.

    Wraps another context (decorator pattern), defaulting to NoOp.
    """

    def __init__(
        self,
        inner: ExecutionContext | None = None,
        operation: str = "unknown",
    ) -> None:
        self._inner = inner or NoOpExecutionContext()
        self._operation = operation

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        log.info("execution.started", operation=self._operation)
        start = time.monotonic()

        try:
            result = self._inner.execute(computation)
        except Exception as e:
            log.error(
                "execution.raised",
                operation=self._operation,
                elapsed_s=round(time.monotonic() - start, 3),
                error=str(e),
            )
            return Failure(
                FailureDescription(
                    ErrorCode.TECHNICAL_ERROR,
                    f"Execution failed: {e}",
                    e,
                )
            )

        log.info(
            "execution.completed",
            operation=self._operation,
            elapsed_s=round(time.monotonic() - start, 3),
            state="SUCCESS" if result.is_success() else "FAILURE",
        )
        return result
