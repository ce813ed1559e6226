"""Tests for ExecutionContext implementations."""

from railway import (
    ErrorCode,
    ExecutionContext,
    LoggingExecutionContext,
    NoOpExecutionContext,
    Result,
)


class TestNoOpExecutionContext:
    def test_passthrough(self):
        ctx = NoOpExecutionContext()
        result = ctx.execute(lambda: Result.success(42))
        assert result.value() == 42

    def test_passthrough_failure(self):
        ctx = NoOpExecutionContext()
        result = ctx.execute(lambda: Result.failure(ErrorCode.NOT_FOUND, "gone"))
        assert result.is_failure()

    def test_satisfies_protocol(self):
        assert isinstance(NoOpExecutionContext(), ExecutionContext)


class TestLoggingExecutionContext:
    def test_returns_success_unchanged(self):
        ctx = LoggingExecutionContext(operation="Lifecycle tick")
        assert ctx.execute(lambda: Result.success("ok")).value() == "ok"

    def test_returns_failure_unchanged(self):
        ctx = LoggingExecutionContext(operation="Reconciliation")
        result = ctx.execute(lambda: Result.failure(ErrorCode.SERVICE_UNAVAILABLE_ERROR, "down"))
        assert result.error().code == ErrorCode.SERVICE_UNAVAILABLE_ERROR
        assert result.error().message == "down"

    def test_exception_becomes_technical_error(self):
        def failing() -> Result[int]:
            raise RuntimeError("exploded")

        result = LoggingExecutionContext(operation="Boom").execute(failing)

        assert result.error().code == ErrorCode.TECHNICAL_ERROR
        assert result.error().message == "Execution failed: exploded"
        assert isinstance(result.error().exception, RuntimeError)

    def test_wraps_inner_context(self):
        calls = []

        class Recording:
            def execute(self, computation):
                calls.append("inner")
                return computation()

        ctx = LoggingExecutionContext(inner=Recording(), operation="Wrapped")
        assert ctx.execute(lambda: Result.success(99)).value() == 99
        assert calls == ["inner"]
