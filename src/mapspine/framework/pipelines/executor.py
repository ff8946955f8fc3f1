"""Transformation pipeline executor.

Runs a record through an ordered list of stages::

    execute(data)
      ├── middleware(data, ctx, "before")   ─ in registration order
      ├── for each stage:
      │     ├── ctx.should_abort()?         ─ PipelineAbortedError
      │     ├── ctx.report_progress(i, N)
      │     ├── stage.execute(data, ctx)    ─ metrics updated either way
      │     └── on error: error_handlers[stage.type](error, data, ctx)
      │                    proceed=True  → substitute data, next stage
      │                    otherwise     → re-raise
      ├── middleware(data, ctx, "after")
      └── pipelineComplete / pipelineError

Batch mode partitions the input into batches of ``batch_size`` and each
batch into ``parallelism`` sub-batches. Sub-batches of one batch run
concurrently on a thread pool; items inside a sub-batch run one after the
other, each with its own context.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mapspine.core import events as ev
from mapspine.core.clock import SYSTEM_CLOCK, Clock, to_iso8601
from mapspine.core.errors import PipelineAbortedError, PipelineValidationError
from mapspine.core.events import EventEmitter
from mapspine.core.logging import LogContext, get_logger
from mapspine.core.records import copy_record
from mapspine.core.settings import get_settings
from mapspine.framework.pipelines.base import PipelineStage, StageType
from mapspine.framework.pipelines.context import PipelineContext, ProgressCallback

logger = get_logger(__name__)


@dataclass
class ErrorHandlerResult:
    """Outcome of a stage-type error handler."""

    proceed: bool
    data: Any = None

    @classmethod
    def continue_with(cls, data: Any) -> ErrorHandlerResult:
        return cls(proceed=True, data=data)

    @classmethod
    def rethrow(cls) -> ErrorHandlerResult:
        return cls(proceed=False)


ErrorHandler = Callable[[BaseException, Any, PipelineContext], ErrorHandlerResult | None]
Middleware = Callable[[Any, PipelineContext, str], Any]


@dataclass
class PipelineResult:
    """Result of one successful execution."""

    data: Any
    context: PipelineContext
    execution_time: float
    success: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.data,
            "context": self.context.summary(),
            "execution_time": self.execution_time,
            "success": self.success,
        }


@dataclass
class BatchItemError:
    item_index: int
    data: Any
    error: BaseException
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_index": self.item_index,
            "data": self.data,
            "error": str(self.error),
            "timestamp": to_iso8601(self.timestamp),
        }


@dataclass
class BatchResult:
    results: list[PipelineResult] = field(default_factory=list)
    errors: list[BatchItemError] = field(default_factory=list)
    total_processed: int = 0

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "errors": [e.to_dict() for e in self.errors],
            "total_processed": self.total_processed,
            "success_count": self.success_count,
            "error_count": self.error_count,
        }


@dataclass
class PipelineMetrics:
    execution_count: int = 0
    total_execution_time: float = 0.0
    success_count: int = 0
    error_count: int = 0
    last_execution_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        count = self.execution_count
        return {
            "execution_count": count,
            "total_execution_time": self.total_execution_time,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "last_execution_time": self.last_execution_time,
            "average_execution_time": self.total_execution_time / count if count else 0.0,
            "success_rate": self.success_count / count * 100 if count else 0.0,
        }


def _elapsed_ms(start_ns: int) -> float:
    # Never report zero so total time strictly grows with every execution
    return max(time.perf_counter_ns() - start_ns, 1) / 1_000_000


class TransformationPipeline:
    """Ordered stages with per-stage metrics, error handlers and middleware."""

    def __init__(
        self,
        stages: Iterable[PipelineStage],
        *,
        config: dict[str, Any] | None = None,
        error_handlers: dict[StageType, ErrorHandler] | None = None,
        middleware: Iterable[Middleware] | None = None,
        events: EventEmitter | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.stages: list[PipelineStage] = list(stages)
        self.config = dict(config or {})
        self.name: str = self.config.get("name", "pipeline")
        self.error_handlers: dict[StageType, ErrorHandler] = {
            StageType(k): v for k, v in (error_handlers or {}).items()
        }
        self.middleware: list[Middleware] = list(middleware or [])
        self.events = events or EventEmitter()
        self.clock = clock or SYSTEM_CLOCK
        self._metrics = PipelineMetrics()
        self._metrics_lock = threading.Lock()
        self.validate()

    # =========================================================================
    # Structure
    # =========================================================================

    def validate(self) -> None:
        """Raise ``PipelineValidationError`` unless the stage list is well formed."""
        if not self.stages:
            raise PipelineValidationError("Pipeline must have at least one stage")

        seen: set[str] = set()
        last: StageType | None = None
        for stage in self.stages:
            if stage.name in seen:
                raise PipelineValidationError(f"Duplicate stage name: {stage.name}")
            seen.add(stage.name)
            if not stage.validate():
                raise PipelineValidationError(f"Stage {stage.name} failed validation")
            if last is not None and stage.stage_type.rank < last.rank:
                raise PipelineValidationError(
                    f"Invalid stage order: {stage.stage_type.value} cannot come after {last.value}"
                )
            if last is None or stage.stage_type.rank > last.rank:
                last = stage.stage_type

    def add_stage(self, stage: PipelineStage) -> None:
        self.stages.append(stage)
        try:
            self.validate()
        except PipelineValidationError:
            self.stages.pop()
            raise

    def remove_stage(self, name: str) -> bool:
        before = len(self.stages)
        self.stages = [s for s in self.stages if s.name != name]
        return len(self.stages) != before

    def get_stage(self, name: str) -> PipelineStage | None:
        return next((s for s in self.stages if s.name == name), None)

    # =========================================================================
    # Execution
    # =========================================================================

    def execute(
        self,
        data: Any,
        *,
        context: PipelineContext | None = None,
        metadata: dict[str, Any] | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> PipelineResult:
        """Run ``data`` through every stage.

        Raises:
            PipelineAbortedError: The context was aborted between stages
            Exception: Whatever a stage raised that no error handler absorbed
        """
        ctx = context or PipelineContext(
            metadata=dict(metadata or {}),
            config=dict(self.config),
            progress_callback=progress_callback,
            clock=self.clock,
        )
        start_ns = time.perf_counter_ns()
        current = copy_record(data)

        with LogContext(context_id=ctx.id, pipeline=self.name):
            try:
                logger.info("pipeline_started", stages=len(self.stages))
                self.events.emit(ev.PIPELINE_START, {"context_id": ctx.id, "data": data})

                for middleware in self.middleware:
                    current = middleware(current, ctx, "before")

                stages = list(self.stages)
                for index, stage in enumerate(stages):
                    if ctx.should_abort():
                        stage.update_metrics(0.0, False)
                        raise PipelineAbortedError(details={"stage": stage.name})
                    progress = ctx.report_progress(index, len(stages), stage.name)
                    self.events.emit(ev.PROGRESS, progress)
                    current = self._run_stage(stage, current, ctx)

                for middleware in self.middleware:
                    current = middleware(current, ctx, "after")

            except Exception as e:
                elapsed = _elapsed_ms(start_ns)
                self._record(elapsed, success=False)
                logger.error("pipeline_failed", error=str(e), error_type=type(e).__name__, duration_ms=elapsed)
                self.events.emit(ev.PIPELINE_ERROR, {
                    "data": None,
                    "context": ctx.summary(),
                    "execution_time": elapsed,
                    "success": False,
                    "error": str(e),
                    "exception": e,
                })
                raise

            elapsed = _elapsed_ms(start_ns)
            self._record(elapsed, success=True)
            result = PipelineResult(data=current, context=ctx, execution_time=elapsed)
            logger.info("pipeline_completed", duration_ms=elapsed, warnings=len(ctx.warnings))
            self.events.emit(ev.PIPELINE_COMPLETE, result.to_dict())
            return result

    def _run_stage(self, stage: PipelineStage, data: Any, ctx: PipelineContext) -> Any:
        start_ns = time.perf_counter_ns()
        logger.debug("stage_started", stage=stage.name, type=stage.stage_type.value)
        self.events.emit(ev.STAGE_START, {"context_id": ctx.id, "stage": stage.name, "type": stage.stage_type.value})
        try:
            output = stage.execute(data, ctx)
        except Exception as e:
            stage.update_metrics(_elapsed_ms(start_ns), False)
            ctx.add_error(e, stage.name)
            logger.warning("stage_failed", stage=stage.name, error=str(e))
            self.events.emit(ev.STAGE_ERROR, {
                "context_id": ctx.id,
                "stage": stage.name,
                "type": stage.stage_type.value,
                "error": str(e),
            })
            handler = self.error_handlers.get(stage.stage_type)
            if handler is not None:
                outcome = handler(e, data, ctx)
                if outcome is not None and outcome.proceed:
                    logger.info("stage_error_handled", stage=stage.name)
                    return outcome.data
            raise

        elapsed = _elapsed_ms(start_ns)
        stage.update_metrics(elapsed, True)
        logger.debug("stage_completed", stage=stage.name, duration_ms=elapsed)
        self.events.emit(ev.STAGE_COMPLETE, {
            "context_id": ctx.id,
            "stage": stage.name,
            "type": stage.stage_type.value,
            "execution_time": elapsed,
        })
        return output

    def execute_batch(
        self,
        items: Iterable[Any],
        *,
        batch_size: int | None = None,
        parallelism: int | None = None,
        continue_on_error: bool = False,
        progress_callback: ProgressCallback | None = None,
    ) -> BatchResult:
        """Execute every item, ``parallelism`` sub-batches at a time.

        Without ``continue_on_error`` a failure stops its sub-batch, and no
        further batch is started once the current one has finished.
        """
        settings = get_settings()
        batch_size = batch_size or self.config.get("batch_size") or settings.batch_size
        parallelism = parallelism or self.config.get("parallelism") or settings.parallelism
        if batch_size < 1 or parallelism < 1:
            raise ValueError("batch_size and parallelism must be >= 1")

        items = list(items)
        total_batches = math.ceil(len(items) / batch_size)
        outcome = BatchResult()
        logger.info(
            "batch_started",
            items=len(items),
            batch_size=batch_size,
            parallelism=parallelism,
        )

        with ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="mapspine-batch") as pool:
            for batch_index, offset in enumerate(range(0, len(items), batch_size)):
                batch = items[offset:offset + batch_size]
                chunk = math.ceil(len(batch) / parallelism)
                futures = [
                    pool.submit(
                        self._process_sub_batch,
                        batch[start:start + chunk],
                        offset + start,
                        batch_index,
                        total_batches,
                        continue_on_error,
                        progress_callback,
                    )
                    for start in range(0, len(batch), chunk)
                ]
                for future in futures:
                    results, errors = future.result()
                    outcome.results.extend(results)
                    outcome.errors.extend(errors)
                if outcome.errors and not continue_on_error:
                    break

        outcome.total_processed = len(outcome.results) + len(outcome.errors)
        logger.info(
            "batch_completed",
            processed=outcome.total_processed,
            succeeded=outcome.success_count,
            failed=outcome.error_count,
        )
        return outcome

    def _process_sub_batch(
        self,
        items: list[Any],
        first_index: int,
        batch_index: int,
        total_batches: int,
        continue_on_error: bool,
        progress_callback: ProgressCallback | None,
    ) -> tuple[list[PipelineResult], list[BatchItemError]]:
        results: list[PipelineResult] = []
        errors: list[BatchItemError] = []
        for i, item in enumerate(items):
            item_index = first_index + i
            try:
                results.append(self.execute(
                    item,
                    metadata={
                        "batch_index": batch_index,
                        "item_index": item_index,
                        "total_batches": total_batches,
                    },
                    progress_callback=progress_callback,
                ))
            except Exception as e:
                errors.append(BatchItemError(item_index, item, e, self.clock.now()))
                if not continue_on_error:
                    break
        return results, errors

    # =========================================================================
    # Metrics
    # =========================================================================

    def _record(self, elapsed: float, success: bool) -> None:
        with self._metrics_lock:
            self._metrics.execution_count += 1
            self._metrics.total_execution_time += elapsed
            self._metrics.last_execution_time = elapsed
            if success:
                self._metrics.success_count += 1
            else:
                self._metrics.error_count += 1

    def get_metrics(self) -> dict[str, Any]:
        with self._metrics_lock:
            pipeline = self._metrics.to_dict()
        return {
            "pipeline": pipeline,
            "stages": [
                {"name": s.name, "type": s.stage_type.value, **s.get_metrics()}
                for s in self.stages
            ],
        }

    def __repr__(self) -> str:
        return f"TransformationPipeline(name={self.name!r}, stages={[s.name for s in self.stages]})"
