"""
End-to-end scenarios across the engine components.

Each test wires real components together (no mocks) with the fake clock
so delays, cooldowns and timestamps are deterministic.
"""

from __future__ import annotations

import pytest

from mapspine.core.errors import (
    CircuitOpenError,
    ErrorSeverity,
    ErrorType,
    RecoveryStrategy,
    RetryExhaustedError,
    ValidationError,
)
from mapspine.core.events import EventEmitter
from mapspine.execution.circuit_breaker import CircuitBreaker, CircuitState
from mapspine.execution.dlq import DeadLetterQueue
from mapspine.execution.recovery import ErrorRecovery, RecoveryContext
from mapspine.execution.retry import RetryManager, RetryOptions, RetryPolicy
from mapspine.execution.rollback import RollbackManager, RollbackStrategy, TransactionState
from mapspine.framework.pipelines import TransformationPipeline
from mapspine.framework.stages import (
    DataEnrichmentStage,
    DataQualityCheckStage,
    DataSanitizationStage,
    DataValidationStage,
    FieldMappingStage,
)


def failing(errors, result="ok"):
    remaining = list(errors)
    calls = []

    def thunk():
        calls.append(1)
        if remaining:
            raise remaining.pop(0)
        return result

    thunk.calls = calls
    return thunk


def customer_pipeline(clock, events=None):
    return TransformationPipeline(
        [
            DataValidationStage(schema={"a": {"type": "string", "required": True}}),
            DataSanitizationStage(sanitizers=["trim_keys", "trim_strings"]),
            FieldMappingStage(
                rules=[
                    {"type": "direct", "source_field": "a", "target_field": "x"},
                    {"type": "concat", "source_fields": ["a", "b"], "target_field": "y", "separator": "-"},
                ]
            ),
            DataQualityCheckStage(
                rules=[{"type": "required", "field": "x"}, {"type": "required", "field": "y"}],
                threshold=1.0,
            ),
            DataEnrichmentStage(rules=[{"type": "timestamp", "target_field": "ts"}]),
        ],
        config={"name": "customer_sync"},
        events=events,
        clock=clock,
    )


class TestHappyPath:
    def test_record_flows_through_every_stage(self, clock, recorder):
        pipeline = customer_pipeline(clock, recorder.events)
        result = pipeline.execute({"a": "1", " b": "2 "})

        assert result.data == {"x": "1", "y": "1-2", "ts": "2024-01-15T12:00:00Z"}
        complete = recorder.of("pipelineComplete")
        assert len(complete) == 1
        assert complete[0]["success"] is True
        assert result.context.get_state("quality_report")["quality_score"] == 1.0

    def test_every_stage_counted_once_per_run(self, clock):
        pipeline = customer_pipeline(clock)
        pipeline.execute({"a": "1", "b": "2"})
        before = {s["name"]: s for s in pipeline.get_metrics()["stages"]}
        pipeline.execute({"a": "3", "b": "4"})
        after = {s["name"]: s for s in pipeline.get_metrics()["stages"]}
        for name, stats in after.items():
            assert stats["execution_count"] == before[name]["execution_count"] + 1
            assert stats["total_execution_time"] > before[name]["total_execution_time"]


class TestRetryThenSucceed:
    def test_backoff_delays_and_events(self, clock, recorder):
        manager = RetryManager(
            RetryOptions(
                max_retries=3,
                policy=RetryPolicy.EXPONENTIAL_BACKOFF,
                initial_delay=0.01,
                factor=2.0,
                jitter=False,
            ),
            events=recorder.events,
            clock=clock,
        )
        thunk = failing([TimeoutError("ETIMEDOUT"), TimeoutError("ETIMEDOUT")])

        assert manager.execute(thunk) == "ok"
        assert len(thunk.calls) == 3
        assert [p["delay"] for p in recorder.of("retry")] == pytest.approx([0.01, 0.02])
        assert clock.sleeps == pytest.approx([0.01, 0.02])
        success = recorder.of("retrySuccess")
        assert len(success) == 1
        assert success[0]["total_attempts"] == 3


class TestCircuitOpens:
    def test_sixth_call_rejected(self, clock, recorder):
        breaker = CircuitBreaker(
            name="erp",
            failure_threshold=5,
            minimum_requests=5,
            reset_timeout=60.0,
            clock=clock,
            events=recorder.events,
        )
        manager = RetryManager(RetryOptions(max_retries=0, jitter=False), circuit_breaker=breaker, clock=clock)

        for _ in range(5):
            with pytest.raises(RetryExhaustedError):
                manager.execute(failing([ConnectionRefusedError("ECONNREFUSED")]))

        assert breaker.state == CircuitState.OPEN
        assert [(p["from"], p["to"]) for p in recorder.of("stateChange")] == [("CLOSED", "OPEN")]
        assert len(recorder.of("open")) == 1

        sixth = failing([])
        with pytest.raises(CircuitOpenError, match="Circuit breaker is open"):
            manager.execute(sixth)
        assert sixth.calls == []


class TestDeadLetterEvictionAndResolve:
    def test_oldest_evicted_then_resolved(self, clock, recorder):
        dlq = DeadLetterQueue(max_size=3, events=recorder.events, clock=clock, background_tasks=False)
        ids = {n: dlq.enqueue(n, f"failed {n}") for n in (1, 2, 3, 4)}

        assert len(recorder.of("queueFull")) == 1
        assert [e.record for e in dlq.search()] == [2, 3, 4]
        assert dlq.get_entry(ids[1]) is None

        dlq.mark_as_resolved(ids[3])
        assert [e.record for e in dlq.search()] == [2, 4]
        stats = dlq.get_statistics()
        assert stats["total_reprocessed"] == 1
        assert stats["total_enqueued"] == 4


class TestParallelRollback:
    def test_dependency_groups(self, clock, recorder):
        manager = RollbackManager(events=recorder.events, clock=clock)
        calls: dict[str, int] = {}

        def undo(name):
            def fn(data):
                calls[name] = calls.get(name, 0) + 1

            return fn

        manager.begin_transaction(strategy=RollbackStrategy.PARALLEL)
        a1 = manager.record_action(description="a1", priority=10, rollback_function=undo("a1"))
        a2 = manager.record_action(description="a2", priority=5, dependencies=[a1], rollback_function=undo("a2"))
        a3 = manager.record_action(description="a3", priority=5, rollback_function=undo("a3"))

        result = manager.rollback()

        assert result.groups == [[a1, a3], [a2]]
        assert result.state == TransactionState.ROLLED_BACK
        assert calls == {"a1": 1, "a2": 1, "a3": 1}
        assert len(recorder.of("transactionRolledBack")) == 1


class TestClassifiedSkip:
    def test_required_field_missing(self, clock, recorder):
        dlq = DeadLetterQueue(clock=clock, background_tasks=False)
        recovery = ErrorRecovery(dlq=dlq, events=recorder.events, clock=clock)
        size_before = len(dlq)

        result = recovery.handle_error(
            ValueError("required field missing: email"),
            RecoveryContext(record={"id": 7}, mapping_id="crm_to_erp"),
        )

        classification = result.classification
        assert classification.type == ErrorType.REQUIRED_FIELD_MISSING
        assert classification.severity == ErrorSeverity.HIGH
        assert classification.recovery_strategy == RecoveryStrategy.SKIP_AND_LOG
        assert len(dlq) == size_before + 1
        assert (result.success, result.skipped, result.logged) == (True, True, True)


class TestBatchFailuresToDeadLetters:
    def test_invalid_records_are_parked(self, clock):
        events = EventEmitter()
        dlq = DeadLetterQueue(clock=clock, background_tasks=False)
        recovery = ErrorRecovery(dlq=dlq, events=events, clock=clock)
        pipeline = customer_pipeline(clock, events)
        records = [{"a": "1", "b": "2"}, {"b": "orphan"}, {"a": "3", "b": "4"}, {"a": 5}]

        batch = pipeline.execute_batch(records, batch_size=2, continue_on_error=True)
        assert [r.data["y"] for r in batch.results] == ["1-2", "3-4"]
        assert [e.item_index for e in batch.errors] == [1, 3]

        for failure in batch.errors:
            assert isinstance(failure.error, ValidationError)
            result = recovery.handle_error(
                failure.error,
                RecoveryContext(record=failure.data, mapping_id="customer_sync"),
            )
            assert result.classification.type == ErrorType.VALIDATION_ERROR
            assert result.success is True

        assert [e.record for e in dlq.search(mapping_id="customer_sync")] == [{"b": "orphan"}, {"a": 5}]
        assert recovery.get_metrics()["total_errors"] == 2
