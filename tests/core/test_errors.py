"""Tests for ``mapspine.core.errors`` - exception hierarchy and sentinel codes."""

from __future__ import annotations

import errno

import pytest

from mapspine.core.errors import (
    CircuitOpenError,
    DLQEntryNotFoundError,
    ErrorType,
    FunctionNotFoundError,
    InvalidExpressionError,
    MappingError,
    OperationTimeoutError,
    PipelineAbortedError,
    PipelineError,
    QualityThresholdError,
    RetryExhaustedError,
    StageError,
    TransformationError,
    ValidationError,
    error_code,
)


class TestMappingError:
    def test_defaults(self):
        err = MappingError("boom")
        assert err.message == "boom"
        assert err.code == "MAPPING_ERROR"
        assert err.category == ErrorType.SYSTEM_ERROR
        assert err.retryable is False
        assert err.details == {}
        assert err.cause is None

    def test_cause_is_chained(self):
        root = ValueError("root")
        err = MappingError("wrapped", cause=root)
        assert err.__cause__ is root
        assert err.to_dict()["cause"] == "root"

    def test_to_dict_omits_empty_details(self):
        assert "details" not in MappingError("x").to_dict()

    def test_with_details_is_fluent(self):
        err = ValidationError("bad").with_details(field="email")
        assert err.details == {"field": "email"}
        assert err.to_dict()["details"] == {"field": "email"}

    def test_overrides(self):
        err = MappingError("x", code="CUSTOM", category=ErrorType.NETWORK_ERROR, retryable=True)
        assert (err.code, err.category, err.retryable) == ("CUSTOM", ErrorType.NETWORK_ERROR, True)


class TestSubclasses:
    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (ValidationError("v"), "VALIDATION_ERROR"),
            (QualityThresholdError("q"), "QUALITY_THRESHOLD_ERROR"),
            (TransformationError("t"), "TRANSFORMATION_ERROR"),
            (FunctionNotFoundError("slugify"), "FUNCTION_NOT_FOUND"),
            (InvalidExpressionError("e"), "INVALID_EXPRESSION"),
            (CircuitOpenError(), "CIRCUIT_OPEN"),
            (PipelineAbortedError(), "PIPELINE_ABORTED"),
            (DLQEntryNotFoundError("dlq_1"), "DLQ_ENTRY_NOT_FOUND"),
        ],
    )
    def test_codes(self, error, code):
        assert error.code == code
        assert isinstance(error, MappingError)

    def test_function_not_found_message(self):
        err = FunctionNotFoundError("slugify")
        assert err.name == "slugify"
        assert str(err) == "Transform function not found: slugify"
        assert isinstance(err, TransformationError)

    def test_timeout_is_retryable(self):
        err = OperationTimeoutError(2.0, elapsed=2.1, operation="fetch")
        assert err.code == "ETIMEDOUT"
        assert err.retryable is True
        assert str(err) == "fetch timed out after 2.0s"

    def test_retry_exhausted_wraps_original(self):
        original = TimeoutError("slow")
        err = RetryExhaustedError(original, 4)
        assert err.original_error is original
        assert err.attempts == 4
        assert err.__cause__ is original
        assert "after 4 attempts" in str(err)

    def test_circuit_open_default_message(self):
        err = CircuitOpenError(name="crm")
        assert str(err) == "Circuit breaker is open"
        assert err.details == {"circuit": "crm"}

    def test_stage_error_is_pipeline_error(self):
        err = StageError("bad config", stage="field_mapping")
        assert err.stage == "field_mapping"
        assert isinstance(err, PipelineError)

    def test_dlq_not_found_is_key_error(self):
        with pytest.raises(KeyError):
            raise DLQEntryNotFoundError("dlq_x")
        assert str(DLQEntryNotFoundError("dlq_x")) == "DLQ entry not found: dlq_x"


class TestErrorCode:
    def test_explicit_code_wins(self):
        assert error_code(ValidationError("x")) == "VALIDATION_ERROR"

    def test_builtin_mapping(self):
        assert error_code(ConnectionRefusedError()) == "ECONNREFUSED"
        assert error_code(TimeoutError()) == "ETIMEDOUT"
        assert error_code(MemoryError()) == "ENOMEM"

    def test_oserror_errno(self):
        assert error_code(OSError(errno.ENOENT, "missing")) == "ENOENT"

    def test_plain_exception_has_no_code(self):
        assert error_code(ValueError("x")) is None

    def test_non_string_code_ignored(self):
        class Weird(Exception):
            code = 42

        assert error_code(Weird()) is None
