"""Pipeline stage framework, context, executor and builder."""

from mapspine.framework.pipelines.base import STAGE_ORDER, PipelineStage, StageMetrics, StageType
from mapspine.framework.pipelines.builder import PipelineBuilder
from mapspine.framework.pipelines.context import ContextIssue, PipelineContext
from mapspine.framework.pipelines.executor import (
    BatchItemError,
    BatchResult,
    ErrorHandlerResult,
    PipelineResult,
    TransformationPipeline,
)

__all__ = [
    "STAGE_ORDER",
    "PipelineStage",
    "StageMetrics",
    "StageType",
    "PipelineBuilder",
    "ContextIssue",
    "PipelineContext",
    "BatchItemError",
    "BatchResult",
    "ErrorHandlerResult",
    "PipelineResult",
    "TransformationPipeline",
]
