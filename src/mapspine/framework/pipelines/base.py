"""Base pipeline stage interface."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mapspine.framework.pipelines.context import PipelineContext


class StageType(str, Enum):
    """Stage kind. A pipeline lists stages in this order."""

    PREPROCESS = "preprocessing"
    TRANSFORM = "transformation"
    VALIDATE = "validation"
    POSTPROCESS = "postprocessing"

    @property
    def rank(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER: tuple[StageType, ...] = (
    StageType.PREPROCESS,
    StageType.TRANSFORM,
    StageType.VALIDATE,
    StageType.POSTPROCESS,
)


@dataclass
class StageMetrics:
    """Per-stage execution counters. Times are milliseconds."""

    execution_count: int = 0
    total_execution_time: float = 0.0
    error_count: int = 0
    last_execution_time: float | None = None

    @property
    def average_execution_time(self) -> float:
        if self.execution_count == 0:
            return 0.0
        return self.total_execution_time / self.execution_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_count": self.execution_count,
            "total_execution_time": self.total_execution_time,
            "error_count": self.error_count,
            "last_execution_time": self.last_execution_time,
            "average_execution_time": self.average_execution_time,
        }


class PipelineStage(ABC):
    """Base class for all pipeline stages.

    Subclasses set ``stage_type`` and implement ``execute``. Stages must
    return a new value rather than mutate their input.
    """

    stage_type: StageType = StageType.TRANSFORM
    default_name: str = ""

    def __init__(self, name: str | None = None, options: dict[str, Any] | None = None) -> None:
        self.name = name or self.default_name or type(self).__name__
        self.options = options or {}
        self._metrics = StageMetrics()
        self._metrics_lock = threading.Lock()

    @property
    def type(self) -> StageType:
        return self.stage_type

    @abstractmethod
    def execute(self, data: Any, context: PipelineContext) -> Any:
        """Transform ``data``. Must be implemented by subclasses."""
        ...

    def validate(self) -> bool:
        """Check stage configuration. Override in subclasses."""
        return True

    def get_metrics(self) -> dict[str, Any]:
        with self._metrics_lock:
            return self._metrics.to_dict()

    def update_metrics(self, execution_time: float, success: bool) -> None:
        with self._metrics_lock:
            self._metrics.execution_count += 1
            self._metrics.total_execution_time += execution_time
            self._metrics.last_execution_time = execution_time
            if not success:
                self._metrics.error_count += 1

    def reset_metrics(self) -> None:
        with self._metrics_lock:
            self._metrics = StageMetrics()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, type={self.stage_type.value})"
