"""mapspine.execution -- Failure handling around a mapping run.

Architecture::

    classifier.py       ErrorClassifier: error -> (type, severity, strategy)
    retry.py            RetryManager + backoff policies
    circuit_breaker.py  CircuitBreaker (CLOSED / OPEN / HALF_OPEN) + registry
    timeout.py          Per-attempt time limits
    dlq.py              DeadLetterQueue of failed records
    dlq_storage.py      MemoryStorage / FileStorage backends
    rollback.py         RollbackManager: transactions of reversible actions
    recovery.py         ErrorRecovery: classify, then drive the recovery
"""

from mapspine.execution.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from mapspine.execution.classifier import Classification, ErrorClassifier, Verdict, fingerprint
from mapspine.execution.dlq import DeadLetterEntry, DeadLetterQueue, DLQStatus
from mapspine.execution.dlq_storage import DLQStorage, FileStorage, MemoryStorage
from mapspine.execution.recovery import ErrorRecovery, RecoveryContext, RecoveryResult
from mapspine.execution.retry import RetryManager, RetryOptions, RetryPolicy, with_retry
from mapspine.execution.rollback import (
    ActionType,
    RollbackManager,
    RollbackResult,
    RollbackStrategy,
    TransactionState,
)
from mapspine.execution.timeout import run_with_timeout, timeout

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "Classification",
    "ErrorClassifier",
    "Verdict",
    "fingerprint",
    "DeadLetterEntry",
    "DeadLetterQueue",
    "DLQStatus",
    "DLQStorage",
    "FileStorage",
    "MemoryStorage",
    "ErrorRecovery",
    "RecoveryContext",
    "RecoveryResult",
    "RetryManager",
    "RetryOptions",
    "RetryPolicy",
    "with_retry",
    "ActionType",
    "RollbackManager",
    "RollbackResult",
    "RollbackStrategy",
    "TransactionState",
    "run_with_timeout",
    "timeout",
]
