"""Error recovery dispatcher - classify a failure and drive its recovery.

``ErrorRecovery.handle_error(error, context)``:

1. Classify with ``ErrorClassifier``.
2. Log at the level matching the severity.
3. Run the handler registered for the recovery strategy.
4. Update metrics and emit ``errorRecovered`` or ``recoveryFailed``.

Failed recoveries enqueue the record to the DLQ unless the context opts out
(``add_to_dlq=False``) or the handler already dealt with the DLQ
(``CIRCUIT_BREAK`` never enqueues, ``MANUAL_INTERVENTION`` and
``SKIP_AND_LOG`` enqueue themselves).

Handlers never raise into the caller. An exception escaping a handler is
reported as ``recoveryError`` and returned as a failed result.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from mapspine.core import events as ev
from mapspine.core.clock import SYSTEM_CLOCK, Clock
from mapspine.core.errors import (
    CircuitOpenError,
    DLQEntryNotFoundError,
    ErrorSeverity,
    RecoveryStrategy,
    RetryExhaustedError,
)
from mapspine.core.events import EventEmitter
from mapspine.core.logging import get_logger
from mapspine.core.settings import EngineSettings, get_settings
from mapspine.execution.circuit_breaker import CircuitBreaker
from mapspine.execution.classifier import Classification, ErrorClassifier
from mapspine.execution.dlq import DeadLetterEntry, DeadLetterQueue, describe_error
from mapspine.execution.retry import RetryManager, RetryOptions, RetryPolicy

logger = get_logger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "<no fallback>"


NO_FALLBACK: Any = _Missing()

_SEVERITY_LOG_METHOD = {
    ErrorSeverity.CRITICAL: "critical",
    ErrorSeverity.HIGH: "error",
    ErrorSeverity.MEDIUM: "warning",
    ErrorSeverity.LOW: "info",
    ErrorSeverity.WARNING: "debug",
}


@dataclass
class RecoveryContext:
    """What the caller knows about the failed operation.

    Attributes:
        record: The input being processed (enqueued to the DLQ on failure)
        retry_function: Zero-argument thunk re-running the operation
        fallback_function: ``(error, classification) -> value``
        fallback_value: Literal fallback when no function is given
        rollback_function: ``(error, classification) -> Any``
        max_retries: Overrides the retry manager default
        add_to_dlq: Set False to never enqueue this failure
        extra: Additional keys stored with the classification and DLQ entry
    """

    record: Any = None
    mapping_id: str | None = None
    execution_id: str | None = None
    retry_function: Callable[[], Any] | None = None
    fallback_function: Callable[[BaseException, Classification], Any] | None = None
    fallback_value: Any = NO_FALLBACK
    rollback_function: Callable[[BaseException, Classification], Any] | None = None
    max_retries: int | None = None
    add_to_dlq: bool = True
    extra: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> dict[str, Any]:
        """Serializable view passed to the classifier and the DLQ."""
        return {
            **self.extra,
            "mapping_id": self.mapping_id,
            "execution_id": self.execution_id,
        }


@dataclass
class RecoveryResult:
    success: bool
    strategy: str
    skipped: bool = False
    logged: bool = False
    used_fallback: bool = False
    rolled_back: bool = False
    circuit_breaker_open: bool = False
    requires_manual_intervention: bool = False
    no_recovery_possible: bool = False
    result: Any = None
    error: BaseException | None = None
    reason: str | None = None
    classification: Classification | None = None
    dlq_entry_id: str | None = None
    add_to_dlq: bool = True

    def to_dict(self, include_stack: bool = False) -> dict[str, Any]:
        return {
            "success": self.success,
            "strategy": self.strategy,
            "skipped": self.skipped,
            "logged": self.logged,
            "used_fallback": self.used_fallback,
            "rolled_back": self.rolled_back,
            "circuit_breaker_open": self.circuit_breaker_open,
            "requires_manual_intervention": self.requires_manual_intervention,
            "no_recovery_possible": self.no_recovery_possible,
            "result": self.result,
            "error": describe_error(self.error, include_stack=include_stack) if self.error else None,
            "reason": self.reason,
            "classification": self.classification.to_dict(include_stack) if self.classification else None,
            "dlq_entry_id": self.dlq_entry_id,
        }


RecoveryHandler = Callable[[BaseException, Classification, RecoveryContext], RecoveryResult]


def _new_metrics() -> dict[str, Any]:
    return {
        "total_errors": 0,
        "recovered_errors": 0,
        "failed_recoveries": 0,
        "retried_errors": 0,
        "dlq_entries": 0,
        "errors_by_type": {},
        "errors_by_severity": {},
        "recovery_strategies": {},
    }


class ErrorRecovery:
    """Routes classified failures to recovery handlers.

    Example:
        >>> recovery = ErrorRecovery.from_settings()
        >>> result = recovery.handle_error(
        ...     exc,
        ...     RecoveryContext(record=row, retry_function=lambda: push(row)),
        ... )
        >>> result.success
    """

    def __init__(
        self,
        *,
        classifier: ErrorClassifier | None = None,
        retry_manager: RetryManager | None = None,
        dlq: DeadLetterQueue | None = None,
        handlers: dict[RecoveryStrategy, RecoveryHandler] | None = None,
        events: EventEmitter | None = None,
        clock: Clock | None = None,
        include_stack_traces: bool = False,
    ) -> None:
        self.events = events or EventEmitter()
        self.clock = clock or SYSTEM_CLOCK
        self.classifier = classifier or ErrorClassifier(clock=self.clock)
        self.retry_manager = retry_manager
        self.dlq = dlq
        self.include_stack_traces = include_stack_traces

        self._handlers: dict[RecoveryStrategy, RecoveryHandler] = {
            RecoveryStrategy.RETRY: self._handle_retry,
            RecoveryStrategy.RETRY_WITH_BACKOFF: self._handle_retry_with_backoff,
            RecoveryStrategy.SKIP: self._handle_skip,
            RecoveryStrategy.SKIP_AND_LOG: self._handle_skip_and_log,
            RecoveryStrategy.FALLBACK: self._handle_fallback,
            RecoveryStrategy.ROLLBACK: self._handle_rollback,
            RecoveryStrategy.CIRCUIT_BREAK: self._handle_circuit_break,
            RecoveryStrategy.MANUAL_INTERVENTION: self._handle_manual_intervention,
            RecoveryStrategy.NONE: self._handle_no_recovery,
        }
        self._handlers.update(handlers or {})

        self._metrics = _new_metrics()
        self._lock = threading.Lock()
        self._forward_component_events()

    @classmethod
    def from_settings(cls, settings: EngineSettings | None = None, **kwargs: Any) -> ErrorRecovery:
        """Build a dispatcher whose components share one event emitter."""
        settings = settings or get_settings()
        events = kwargs.pop("events", None) or EventEmitter()
        clock = kwargs.pop("clock", None) or SYSTEM_CLOCK
        background_tasks = kwargs.pop("background_tasks", True)
        breaker = CircuitBreaker.from_settings(
            "recovery", settings, background_tasks=background_tasks, clock=clock, events=events
        )
        retry_manager = RetryManager(
            RetryOptions.from_settings(settings),
            circuit_breaker=breaker,
            events=events,
            clock=clock,
        )
        params: dict[str, Any] = {
            "retry_manager": retry_manager,
            "dlq": DeadLetterQueue.from_settings(
                settings, events=events, clock=clock, background_tasks=background_tasks
            ),
            "events": events,
            "clock": clock,
            "include_stack_traces": settings.include_stack_traces,
        }
        params.update(kwargs)
        return cls(**params)

    def _forward_component_events(self) -> None:
        breaker = self.retry_manager.circuit_breaker if self.retry_manager else None
        if breaker is not None:
            breaker.events.on(ev.OPEN, lambda payload: self.events.emit(ev.CIRCUIT_BREAKER_OPEN, payload))
        if self.retry_manager is not None and self.retry_manager.events is not self.events:
            self.retry_manager.events.on(
                ev.RETRY_EXHAUSTED, lambda payload: self.events.emit(ev.RETRY_EXHAUSTED, payload)
            )
        if self.dlq is not None:
            self.dlq.events.on(ev.QUEUE_FULL, lambda payload: self.events.emit(ev.DEAD_LETTER_QUEUE_FULL, payload))

    def register_handler(self, strategy: RecoveryStrategy | str, handler: RecoveryHandler) -> None:
        """Replace the handler for one strategy."""
        self._handlers[RecoveryStrategy(strategy)] = handler

    # ── Dispatch ─────────────────────────────────────────────────

    def handle_error(self, error: BaseException, context: RecoveryContext | None = None) -> RecoveryResult:
        ctx = context or RecoveryContext()
        with self._lock:
            self._metrics["total_errors"] += 1

        try:
            classification = self.classifier.classify(error, ctx.describe())
            self._count(classification)
            self._log_classified(classification)
            self.events.emit(ev.ERROR_CLASSIFIED, {"classification": classification, "error": error})

            handler = self._handlers.get(classification.recovery_strategy)
            if handler is None:
                raise LookupError(f"No handler found for recovery strategy: {classification.recovery_strategy.value}")
            result = handler(error, classification, ctx)
            result.classification = classification
        except Exception as recovery_error:
            logger.exception("error_recovery_failed", error=str(error), recovery_error=str(recovery_error))
            with self._lock:
                self._metrics["failed_recoveries"] += 1
            self.events.emit(ev.RECOVERY_ERROR, {"original_error": error, "recovery_error": recovery_error})
            return RecoveryResult(success=False, strategy="ERROR_IN_RECOVERY", error=recovery_error)

        if result.success:
            with self._lock:
                self._metrics["recovered_errors"] += 1
            self.events.emit(ev.ERROR_RECOVERED, {"classification": classification, "result": result})
        else:
            with self._lock:
                self._metrics["failed_recoveries"] += 1
            self.events.emit(ev.RECOVERY_FAILED, {"classification": classification, "result": result})
            if ctx.add_to_dlq and result.add_to_dlq and result.dlq_entry_id is None:
                result.dlq_entry_id = self._add_to_dlq(result.error or error, classification, ctx)
        return result

    def _count(self, classification: Classification) -> None:
        with self._lock:
            for key, value in (
                ("errors_by_type", classification.type.value),
                ("errors_by_severity", classification.severity.value),
                ("recovery_strategies", classification.recovery_strategy.value),
            ):
                bucket = self._metrics[key]
                bucket[value] = bucket.get(value, 0) + 1

    def _log_classified(self, classification: Classification) -> None:
        log = getattr(logger, _SEVERITY_LOG_METHOD[classification.severity])
        log(
            "error_classified",
            type=classification.type.value,
            severity=classification.severity.value,
            strategy=classification.recovery_strategy.value,
            error=classification.error.get("message"),
            metadata=classification.metadata.to_dict(),
        )

    def _add_to_dlq(
        self,
        error: BaseException,
        classification: Classification,
        ctx: RecoveryContext,
        **extra: Any,
    ) -> str | None:
        if self.dlq is None:
            return None
        try:
            entry_id = self.dlq.enqueue(
                ctx.record if ctx.record is not None else {},
                error,
                {**ctx.describe(), **extra, "classification": classification.to_dict(self.include_stack_traces)},
            )
        except Exception as dlq_error:
            logger.error("dlq_enqueue_failed", error=str(dlq_error))
            return None
        with self._lock:
            self._metrics["dlq_entries"] += 1
        return entry_id

    # ── Built-in handlers ────────────────────────────────────────

    def _retry(
        self,
        strategy: RecoveryStrategy,
        policy: RetryPolicy,
        classification: Classification,
        ctx: RecoveryContext,
    ) -> RecoveryResult:
        if self.retry_manager is None:
            return RecoveryResult(success=False, strategy=strategy.value, reason="Retry disabled")
        if ctx.retry_function is None:
            return RecoveryResult(success=False, strategy=strategy.value, reason="No retry function provided")

        options = replace(
            self.retry_manager.options,
            policy=policy,
            retryable=lambda e: self.classifier.classify(e).metadata.is_retryable,
        )
        if ctx.max_retries is not None:
            options = replace(options, max_retries=ctx.max_retries)

        try:
            value = self.retry_manager.execute(ctx.retry_function, options)
        except CircuitOpenError as e:
            return RecoveryResult(success=False, strategy=strategy.value, error=e, circuit_breaker_open=True)
        except RetryExhaustedError as e:
            return RecoveryResult(success=False, strategy=strategy.value, error=e, reason="Retries exhausted")
        except Exception as e:
            return RecoveryResult(success=False, strategy=strategy.value, error=e, reason="Not retryable")

        with self._lock:
            self._metrics["retried_errors"] += 1
        return RecoveryResult(success=True, strategy=strategy.value, result=value)

    def _handle_retry(self, error: BaseException, classification: Classification, ctx: RecoveryContext) -> RecoveryResult:
        return self._retry(RecoveryStrategy.RETRY, RetryPolicy.FIXED_DELAY, classification, ctx)

    def _handle_retry_with_backoff(
        self, error: BaseException, classification: Classification, ctx: RecoveryContext
    ) -> RecoveryResult:
        return self._retry(RecoveryStrategy.RETRY_WITH_BACKOFF, RetryPolicy.EXPONENTIAL_BACKOFF, classification, ctx)

    def _handle_skip(self, error: BaseException, classification: Classification, ctx: RecoveryContext) -> RecoveryResult:
        logger.warning("error_skipped", error=str(error), type=classification.type.value, mapping_id=ctx.mapping_id)
        return RecoveryResult(success=True, strategy=RecoveryStrategy.SKIP.value, skipped=True)

    def _handle_skip_and_log(
        self, error: BaseException, classification: Classification, ctx: RecoveryContext
    ) -> RecoveryResult:
        logger.error(
            "error_skipped_and_logged",
            error=str(error),
            type=classification.type.value,
            mapping_id=ctx.mapping_id,
            execution_id=ctx.execution_id,
        )
        entry_id = self._add_to_dlq(error, classification, ctx) if ctx.add_to_dlq else None
        return RecoveryResult(
            success=True,
            strategy=RecoveryStrategy.SKIP_AND_LOG.value,
            skipped=True,
            logged=True,
            dlq_entry_id=entry_id,
        )

    def _handle_fallback(self, error: BaseException, classification: Classification, ctx: RecoveryContext) -> RecoveryResult:
        strategy = RecoveryStrategy.FALLBACK.value
        if ctx.fallback_function is None and ctx.fallback_value is NO_FALLBACK:
            return RecoveryResult(success=False, strategy=strategy, reason="No fallback value or function provided")
        if ctx.fallback_function is None:
            return RecoveryResult(success=True, strategy=strategy, result=ctx.fallback_value, used_fallback=True)
        try:
            value = ctx.fallback_function(error, classification)
        except Exception as e:
            return RecoveryResult(success=False, strategy=strategy, error=e, reason="Fallback failed")
        return RecoveryResult(success=True, strategy=strategy, result=value, used_fallback=True)

    def _handle_rollback(self, error: BaseException, classification: Classification, ctx: RecoveryContext) -> RecoveryResult:
        strategy = RecoveryStrategy.ROLLBACK.value
        if ctx.rollback_function is None:
            return RecoveryResult(success=False, strategy=strategy, reason="No rollback function provided")
        try:
            value = ctx.rollback_function(error, classification)
        except Exception as e:
            logger.error("rollback_failed", error=str(e))
            return RecoveryResult(success=False, strategy=strategy, error=e, reason="Rollback failed")
        return RecoveryResult(success=True, strategy=strategy, rolled_back=True, result=value)

    def _handle_circuit_break(
        self, error: BaseException, classification: Classification, ctx: RecoveryContext
    ) -> RecoveryResult:
        logger.error("circuit_break_requested", error=str(error), type=classification.type.value)
        return RecoveryResult(
            success=False,
            strategy=RecoveryStrategy.CIRCUIT_BREAK.value,
            circuit_breaker_open=True,
            add_to_dlq=False,
        )

    def _handle_manual_intervention(
        self, error: BaseException, classification: Classification, ctx: RecoveryContext
    ) -> RecoveryResult:
        logger.error("manual_intervention_required", error=str(error), type=classification.type.value)
        entry_id = None
        if ctx.add_to_dlq:
            entry_id = self._add_to_dlq(error, classification, ctx, requires_manual_intervention=True)
        self.events.emit(ev.MANUAL_INTERVENTION_REQUIRED, {
            "error": error,
            "classification": classification,
            "context": ctx,
        })
        return RecoveryResult(
            success=False,
            strategy=RecoveryStrategy.MANUAL_INTERVENTION.value,
            requires_manual_intervention=True,
            dlq_entry_id=entry_id,
            add_to_dlq=False,
        )

    def _handle_no_recovery(self, error: BaseException, classification: Classification, ctx: RecoveryContext) -> RecoveryResult:
        logger.error("no_recovery_possible", error=str(error), type=classification.type.value)
        return RecoveryResult(success=False, strategy=RecoveryStrategy.NONE.value, no_recovery_possible=True)

    # ── DLQ reprocessing ─────────────────────────────────────────

    def process_dlq_entries(
        self,
        retry_function: Callable[[Any], Any] | None,
        *,
        limit: int = 10,
        filter: Callable[[DeadLetterEntry], bool] | None = None,
    ) -> dict[str, Any]:
        """Dequeue entries and re-run ``retry_function(record)`` on each.

        Successes are resolved. Failures go back to pending for another
        attempt after the cooldown; without a ``retry_function`` every
        dequeued entry is marked failed for good.
        """
        if self.dlq is None:
            raise RuntimeError("Dead letter queue not enabled")

        results: dict[str, Any] = {"processed": 0, "resolved": 0, "failed": 0, "missing": 0, "details": []}
        for entry in self.dlq.dequeue(limit=limit, filter=filter):
            results["processed"] += 1
            try:
                if retry_function is None:
                    self.dlq.mark_as_failed(entry.id, "No retry function available", should_retry=False)
                    results["failed"] += 1
                    results["details"].append({"entry_id": entry.id, "status": "failed", "reason": "No retry function"})
                    continue
                try:
                    value = retry_function(entry.record)
                except Exception as e:
                    self.dlq.mark_as_failed(entry.id, e, should_retry=True)
                    results["failed"] += 1
                    results["details"].append({"entry_id": entry.id, "status": "failed", "error": str(e)})
                    continue
                self.dlq.mark_as_resolved(entry.id, value)
                results["resolved"] += 1
                results["details"].append({"entry_id": entry.id, "status": "resolved", "result": value})
            except DLQEntryNotFoundError:
                # Expired or evicted while this batch was being reprocessed
                logger.warning("dlq_entry_vanished", entry_id=entry.id)
                results["missing"] += 1
                results["details"].append({"entry_id": entry.id, "status": "missing"})

        logger.info(
            "dlq_processed",
            processed=results["processed"],
            resolved=results["resolved"],
            failed=results["failed"],
            missing=results["missing"],
        )
        self.events.emit(ev.DLQ_PROCESSED, results)
        return results

    # ── Metrics ──────────────────────────────────────────────────

    def get_metrics(self) -> dict[str, Any]:
        with self._lock:
            metrics = {
                **self._metrics,
                "errors_by_type": dict(self._metrics["errors_by_type"]),
                "errors_by_severity": dict(self._metrics["errors_by_severity"]),
                "recovery_strategies": dict(self._metrics["recovery_strategies"]),
            }
        total = metrics["total_errors"]
        metrics["success_rate"] = metrics["recovered_errors"] / total * 100 if total else 0.0
        metrics["dlq_stats"] = self.dlq.get_statistics() if self.dlq else None
        metrics["retry_stats"] = self.retry_manager.get_stats() if self.retry_manager else None
        return metrics

    def reset_metrics(self) -> None:
        with self._lock:
            self._metrics = _new_metrics()
        if self.retry_manager is not None:
            self.retry_manager.reset_stats()

    def shutdown(self) -> None:
        if self.dlq is not None:
            self.dlq.shutdown()
        if self.retry_manager is not None:
            self.retry_manager.shutdown()
        logger.info("error_recovery_shutdown")
