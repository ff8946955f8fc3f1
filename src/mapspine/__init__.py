"""
mapspine - Mapping execution engine.

Runs records through ordered transformation pipelines and decides what to
do when a record fails: retry it, skip it, park it in a dead-letter queue,
fall back, or roll back the work already done.

    core/        errors, logging, settings, events, clock, record paths
    execution/   classifier, retry, circuit breaker, DLQ, rollback, recovery
    framework/   pipeline executor, built-in stages, transforms
    cli/         ``mapspine`` command line
"""

__version__ = "0.1.0"

from mapspine.core import EngineSettings, EventEmitter, MappingError, configure_logging, get_logger  # noqa: E402
from mapspine.execution import (  # noqa: E402
    CircuitBreaker,
    DeadLetterQueue,
    ErrorClassifier,
    ErrorRecovery,
    RecoveryContext,
    RetryManager,
    RollbackManager,
)
from mapspine.framework import PipelineBuilder, PipelineContext, PipelineStage, StageType, TransformationPipeline  # noqa: E402

__all__ = [
    "__version__",
    "EngineSettings",
    "EventEmitter",
    "MappingError",
    "configure_logging",
    "get_logger",
    "CircuitBreaker",
    "DeadLetterQueue",
    "ErrorClassifier",
    "ErrorRecovery",
    "RecoveryContext",
    "RetryManager",
    "RollbackManager",
    "PipelineBuilder",
    "PipelineContext",
    "PipelineStage",
    "StageType",
    "TransformationPipeline",
]
