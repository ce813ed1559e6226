"""Tests for FailureDescription and ErrorCode."""

import pytest

from railway import ErrorCode, FailureDescription


class TestErrorCode:
    def test_values_equal_names(self):
        for code in ErrorCode:
            assert code.value == code.name

    def test_ledger_codes_present(self):
        assert {c.name for c in ErrorCode} == {
            "VALIDATION_ERROR",
            "AUTHORIZATION_ERROR",
            "NOT_FOUND",
            "BUSINESS_RULE_ERROR",
            "TECHNICAL_ERROR",
            "DATABASE_ERROR",
            "CONFIGURATION_ERROR",
            "EXTERNAL_SERVICE_ERROR",
            "SERVICE_UNAVAILABLE_ERROR",
            "UNKNOWN_ERROR",
        }


class TestFailureDescription:
    def test_creation_with_code_and_message(self):
        desc = FailureDescription(ErrorCode.VALIDATION_ERROR, "credit limit must not be negative")
        assert desc.code == ErrorCode.VALIDATION_ERROR
        assert desc.exception is None
        assert desc.timestamp.tzinfo is not None

    def test_immutability(self):
        desc = FailureDescription(ErrorCode.VALIDATION_ERROR, "test")
        with pytest.raises(AttributeError):
            desc.message = "changed"  # type: ignore

    def test_str_is_code_and_message(self):
        desc = FailureDescription(ErrorCode.NOT_FOUND, "invoice does not exist")
        assert str(desc) == "NOT_FOUND: invoice does not exist"

    def test_full_stack_trace_without_exception(self):
        desc = FailureDescription(ErrorCode.VALIDATION_ERROR, "just a message")
        assert desc.full_stack_trace() == "just a message"

    def test_full_stack_trace_with_exception(self):
        try:
            raise ValueError("boom")
        except ValueError as e:
            desc = FailureDescription(ErrorCode.DATABASE_ERROR, "query failed", e)
        trace = desc.full_stack_trace()
        assert trace.startswith("query failed\n")
        assert "ValueError: boom" in trace
