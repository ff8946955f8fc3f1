"""
Structured error types for the mapping engine.

Provides the closed failure taxonomy used by the classifier together with a
hierarchy of typed exceptions carrying a sentinel ``code``, a taxonomy
``category``, retry semantics, structured ``details`` and a chained cause.

Every exception raised by the engine on purpose extends ``MappingError``.
Callers that only need to tell transient give-ups from permanent rejections
can test for ``RetryExhaustedError`` (code ``RETRY_EXHAUSTED``); everything
else is routed through the recovery dispatcher by its code or message.

Manifesto:
    - **Closed taxonomy:** ``ErrorType``, ``ErrorSeverity`` and
      ``RecoveryStrategy`` are string enums; new kinds are added here, not
      invented ad hoc at raise sites.
    - **Codes over isinstance:** The classifier keys on ``code`` so that
      errors coming from callbacks and builtin exceptions are routed the
      same way as engine errors.
    - **Error chaining:** The original exception is kept as ``cause`` and
      ``__cause__``.

Architecture:
    ::

        ┌────────────────────────────────────────────────────────────────┐
        │                         MappingError                            │
        │           (code, category, retryable, details, cause)           │
        ├────────────────────────────────────────────────────────────────┤
        │  ValidationError          QualityThresholdError                 │
        │  (VALIDATION_ERROR)       (QUALITY_THRESHOLD_ERROR)             │
        │                                                                 │
        │  TransformationError      FunctionNotFoundError                 │
        │  InvalidExpressionError   OperationTimeoutError (ETIMEDOUT)     │
        │                                                                 │
        │  RetryExhaustedError      CircuitOpenError                      │
        │  (RETRY_EXHAUSTED)        (CIRCUIT_OPEN)                        │
        │                                                                 │
        │  PipelineError ─┬─ PipelineValidationError                      │
        │                 ├─ StageError                                   │
        │                 └─ PipelineAbortedError                         │
        │                                                                 │
        │  TransactionError         DLQEntryNotFoundError                 │
        └────────────────────────────────────────────────────────────────┘

Examples:
    >>> err = ValidationError("Validation failed", details={"errors": ["x"]})
    >>> err.code
    'VALIDATION_ERROR'
    >>> err.to_dict()["details"]
    {'errors': ['x']}

    >>> error_code(ConnectionRefusedError(111, "refused"))
    'ECONNREFUSED'

Tags:
    error-handling, exception-hierarchy, taxonomy, retry-logic, mapspine
"""

from __future__ import annotations

import errno
from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    """Closed set of failure kinds a classification can carry."""

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SCHEMA_MISMATCH = "SCHEMA_MISMATCH"
    REQUIRED_FIELD_MISSING = "REQUIRED_FIELD_MISSING"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    FORMAT_ERROR = "FORMAT_ERROR"

    # Transformation
    TRANSFORMATION_ERROR = "TRANSFORMATION_ERROR"
    FUNCTION_NOT_FOUND = "FUNCTION_NOT_FOUND"
    TRANSFORMATION_TIMEOUT = "TRANSFORMATION_TIMEOUT"
    INVALID_EXPRESSION = "INVALID_EXPRESSION"

    # Data
    DATA_QUALITY_ERROR = "DATA_QUALITY_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    DUPLICATE_KEY_ERROR = "DUPLICATE_KEY_ERROR"

    # System
    SYSTEM_ERROR = "SYSTEM_ERROR"
    MEMORY_ERROR = "MEMORY_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"

    # Business logic
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"

    UNKNOWN = "UNKNOWN_ERROR"


class ErrorSeverity(str, Enum):
    """How loudly a failure is reported."""

    CRITICAL = "CRITICAL"  # System failure, immediate attention required
    HIGH = "HIGH"          # Processing of the record cannot continue
    MEDIUM = "MEDIUM"      # Partial processing possible
    LOW = "LOW"            # Logged and continued
    WARNING = "WARNING"    # Potential issue only


class RecoveryStrategy(str, Enum):
    """What the recovery dispatcher does about a classified failure."""

    RETRY = "RETRY"
    RETRY_WITH_BACKOFF = "RETRY_WITH_BACKOFF"
    SKIP = "SKIP"
    SKIP_AND_LOG = "SKIP_AND_LOG"
    FALLBACK = "FALLBACK"
    ROLLBACK = "ROLLBACK"
    CIRCUIT_BREAK = "CIRCUIT_BREAK"
    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"
    NONE = "NONE"


class MappingError(Exception):
    """
    Base exception for all mapping engine errors.

    Subclasses set ``default_code``, ``default_category`` and
    ``default_retryable`` so that raise sites only pass what differs.

    Attributes:
        message: Human readable message
        code: Sentinel code (e.g. ``VALIDATION_ERROR``, ``ETIMEDOUT``)
        category: Taxonomy kind from ``ErrorType``
        retryable: Whether the default retry predicate should retry it
        details: Structured payload (validation errors, quality report, ...)
        cause: Underlying exception, also set as ``__cause__``
    """

    default_code: str = "MAPPING_ERROR"
    default_category: ErrorType = ErrorType.SYSTEM_ERROR
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        category: ErrorType | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.details = details or {}
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_details(self, **kwargs: Any) -> MappingError:
        """Add detail fields to this error (fluent API)."""
        self.details.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, code={self.code})"


# =============================================================================
# RECORD ERRORS (Never Retryable)
# =============================================================================


class ValidationError(MappingError):
    """Record failed schema or business-rule validation."""

    default_code = "VALIDATION_ERROR"
    default_category = ErrorType.VALIDATION_ERROR


class QualityThresholdError(MappingError):
    """Share of records passing quality rules fell below the threshold."""

    default_code = "QUALITY_THRESHOLD_ERROR"
    default_category = ErrorType.DATA_QUALITY_ERROR


class TransformationError(MappingError):
    """A field mapping rule could not be applied."""

    default_code = "TRANSFORMATION_ERROR"
    default_category = ErrorType.TRANSFORMATION_ERROR


class FunctionNotFoundError(TransformationError):
    """Transform name is not registered in the transform library."""

    default_code = "FUNCTION_NOT_FOUND"
    default_category = ErrorType.FUNCTION_NOT_FOUND

    def __init__(self, name: str, **kwargs: Any):
        super().__init__(f"Transform function not found: {name}", **kwargs)
        self.name = name


class InvalidExpressionError(TransformationError):
    """Formula expression uses syntax outside the supported subset."""

    default_code = "INVALID_EXPRESSION"
    default_category = ErrorType.INVALID_EXPRESSION


# =============================================================================
# TRANSIENT ERRORS (Usually Retryable)
# =============================================================================


class OperationTimeoutError(MappingError):
    """
    An attempt did not finish within its time limit.

    Carries ``ETIMEDOUT`` so the default retry predicate and the classifier
    treat it like any other timed-out call.
    """

    default_code = "ETIMEDOUT"
    default_category = ErrorType.TIMEOUT_ERROR
    default_retryable = True

    def __init__(
        self,
        timeout: float,
        elapsed: float | None = None,
        operation: str | None = None,
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation
        msg = f"Operation timed out after {timeout}s"
        if operation:
            msg = f"{operation} timed out after {timeout}s"
        super().__init__(msg, details={"timeout": timeout, "elapsed": elapsed})


class RetryExhaustedError(MappingError):
    """All attempts failed; wraps the last failure."""

    default_code = "RETRY_EXHAUSTED"
    default_category = ErrorType.SYSTEM_ERROR

    def __init__(self, original_error: BaseException, attempts: int):
        super().__init__(
            f"Operation failed after {attempts} attempts: {original_error}",
            details={"attempts": attempts},
            cause=original_error,
        )
        self.original_error = original_error
        self.attempts = attempts


class CircuitOpenError(MappingError):
    """The circuit breaker rejected the call without executing it."""

    default_code = "CIRCUIT_OPEN"
    default_category = ErrorType.SYSTEM_ERROR

    def __init__(self, message: str = "Circuit breaker is open", *, name: str | None = None):
        super().__init__(message, details={"circuit": name} if name else None)
        self.name = name


# =============================================================================
# PIPELINE ERRORS
# =============================================================================


class PipelineError(MappingError):
    """Pipeline-level failure."""

    default_code = "PIPELINE_ERROR"


class PipelineValidationError(PipelineError):
    """Pipeline definition is invalid (empty, misordered, duplicate names)."""

    default_code = "PIPELINE_INVALID"


class StageError(PipelineError):
    """A stage is misconfigured or received input it cannot handle."""

    default_code = "STAGE_ERROR"

    def __init__(self, message: str, *, stage: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.stage = stage


class PipelineAbortedError(PipelineError):
    """Execution was cancelled through the context signal."""

    default_code = "PIPELINE_ABORTED"

    def __init__(self, message: str = "Pipeline execution aborted", **kwargs: Any):
        super().__init__(message, **kwargs)


# =============================================================================
# STATE ERRORS
# =============================================================================


class TransactionError(MappingError):
    """Unknown transaction or operation not allowed in its current state."""

    default_code = "TRANSACTION_ERROR"


class DLQEntryNotFoundError(MappingError, KeyError):
    """No dead-letter entry exists with the given id."""

    default_code = "DLQ_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        super().__init__(f"DLQ entry not found: {entry_id}", details={"entry_id": entry_id})
        self.entry_id = entry_id

    def __str__(self) -> str:
        return self.message


# Builtin exceptions that map onto well-known sentinel codes
_BUILTIN_CODES: tuple[tuple[type[BaseException], str], ...] = (
    (ConnectionRefusedError, "ECONNREFUSED"),
    (TimeoutError, "ETIMEDOUT"),
    (MemoryError, "ENOMEM"),
)


def error_code(error: BaseException) -> str | None:
    """
    Derive the sentinel code for an exception.

    Explicit ``code`` attributes win; builtin exceptions are mapped to the
    POSIX-style names (``ECONNREFUSED``, ``ETIMEDOUT``, ``ENOMEM``) and any
    other ``OSError`` uses its ``errno`` symbol.
    """
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code

    for exc_type, sentinel in _BUILTIN_CODES:
        if isinstance(error, exc_type):
            return sentinel

    if isinstance(error, OSError) and error.errno is not None:
        return errno.errorcode.get(error.errno)
    return None


__all__ = [
    "ErrorType",
    "ErrorSeverity",
    "RecoveryStrategy",
    "MappingError",
    "ValidationError",
    "QualityThresholdError",
    "TransformationError",
    "FunctionNotFoundError",
    "InvalidExpressionError",
    "OperationTimeoutError",
    "RetryExhaustedError",
    "CircuitOpenError",
    "PipelineError",
    "PipelineValidationError",
    "PipelineAbortedError",
    "TransactionError",
    "DLQEntryNotFoundError",
    "error_code",
]
