"""
Pipeline Context - per-execution scratch space.

Created by ``TransformationPipeline.execute`` for every record and handed
to each stage in turn. Stages use it to share state (``set_state`` /
``get_state``), report non-fatal problems (``add_warning``) and check the
cooperative cancellation signal (``should_abort``).

A context belongs to exactly one execution. It is not meant to be written
from several threads; batch execution creates one context per item.

Example:
    def execute(self, data, context):
        for i, row in enumerate(data):
            if context.should_abort():
                break
            ...
        context.set_state("rows_seen", len(data))
        return data
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mapspine.core.clock import SYSTEM_CLOCK, Clock, to_iso8601

ProgressCallback = Callable[[dict[str, Any]], Any]


def new_context_id() -> str:
    return f"ctx_{uuid.uuid4().hex[:16]}"


@dataclass
class ContextIssue:
    """An error or warning recorded against a stage."""

    message: str
    stage: str | None
    timestamp: datetime
    error: BaseException | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "stage": self.stage,
            "timestamp": to_iso8601(self.timestamp),
            "error_type": type(self.error).__name__ if self.error is not None else None,
        }


@dataclass
class PipelineContext:
    """
    Mutable state of one pipeline execution.

    Attributes:
        id: Unique context id
        metadata: Caller-supplied key/values (batch index, mapping id, ...)
        config: Pipeline configuration visible to stages
        progress_callback: Receives ``{current, total, stage, percentage, context_id}``
        state: Values shared between stages
        errors: Errors recorded by the executor
        warnings: Non-fatal issues recorded by stages
    """

    id: str = field(default_factory=new_context_id)
    metadata: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    progress_callback: ProgressCallback | None = field(default=None, repr=False)
    clock: Clock = field(default=SYSTEM_CLOCK, repr=False)
    state: dict[str, Any] = field(default_factory=dict)
    errors: list[ContextIssue] = field(default_factory=list)
    warnings: list[ContextIssue] = field(default_factory=list)
    start_time: datetime | None = None
    _abort: threading.Event = field(default_factory=threading.Event, repr=False)

    def __post_init__(self) -> None:
        if self.start_time is None:
            self.start_time = self.clock.now()

    # =========================================================================
    # State
    # =========================================================================

    def set_state(self, key: str, value: Any) -> None:
        self.state[key] = value

    def get_state(self, key: str, default: Any = None) -> Any:
        return self.state.get(key, default)

    # =========================================================================
    # Issues
    # =========================================================================

    def add_error(self, error: BaseException, stage: str | None = None) -> None:
        self.errors.append(ContextIssue(str(error), stage, self.clock.now(), error))

    def add_warning(self, message: str, stage: str | None = None) -> None:
        self.warnings.append(ContextIssue(message, stage, self.clock.now()))

    # =========================================================================
    # Progress and cancellation
    # =========================================================================

    def report_progress(self, current: int, total: int, stage: str | None = None) -> dict[str, Any]:
        update = {
            "current": current,
            "total": total,
            "stage": stage,
            "percentage": (current / total) * 100 if total else 100.0,
            "context_id": self.id,
        }
        if self.progress_callback is not None:
            self.progress_callback(update)
        return update

    def should_abort(self) -> bool:
        return self._abort.is_set()

    def abort(self) -> None:
        """Ask the executor to stop before the next stage."""
        self._abort.set()

    # =========================================================================
    # Summary
    # =========================================================================

    @property
    def execution_time(self) -> float:
        """Milliseconds since the context was created."""
        return (self.clock.now() - self.start_time).total_seconds() * 1000

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_time": to_iso8601(self.start_time),
            "execution_time": self.execution_time,
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
            "metadata": dict(self.metadata),
        }
