"""Fluent construction of transformation pipelines.

Example:
    >>> pipeline = (
    ...     PipelineBuilder()
    ...     .preprocessing(DataValidationStage(schema=Customer))
    ...     .transformation(FieldMappingStage(rules=[...]))
    ...     .validation(DataQualityCheckStage(rules=[...], threshold=0.95))
    ...     .postprocessing(DataEnrichmentStage(rules=[{"type": "timestamp", "target_field": "ts"}]))
    ...     .error_handler(StageType.VALIDATE, lambda e, data, ctx: ErrorHandlerResult.continue_with(data))
    ...     .configure(name="crm_to_erp")
    ...     .build()
    ... )
"""

from __future__ import annotations

from typing import Any

from mapspine.core.errors import PipelineValidationError
from mapspine.core.events import EventEmitter
from mapspine.framework.pipelines.base import PipelineStage, StageType
from mapspine.framework.pipelines.executor import ErrorHandler, Middleware, TransformationPipeline


class PipelineBuilder:
    """Collects stages, handlers, middleware and config, then builds once."""

    def __init__(self) -> None:
        self._stages: list[PipelineStage] = []
        self._config: dict[str, Any] = {}
        self._error_handlers: dict[StageType, ErrorHandler] = {}
        self._middleware: list[Middleware] = []
        self._events: EventEmitter | None = None

    def _add(self, stage: PipelineStage, expected: StageType | None) -> PipelineBuilder:
        if not isinstance(stage, PipelineStage):
            raise PipelineValidationError("Stage must be an instance of PipelineStage")
        if expected is not None and stage.stage_type != expected:
            raise PipelineValidationError(
                f"Stage {stage.name} must be of type {expected.value}, got {stage.stage_type.value}"
            )
        self._stages.append(stage)
        return self

    def preprocessing(self, stage: PipelineStage) -> PipelineBuilder:
        return self._add(stage, StageType.PREPROCESS)

    def transformation(self, stage: PipelineStage) -> PipelineBuilder:
        return self._add(stage, StageType.TRANSFORM)

    def validation(self, stage: PipelineStage) -> PipelineBuilder:
        return self._add(stage, StageType.VALIDATE)

    def postprocessing(self, stage: PipelineStage) -> PipelineBuilder:
        return self._add(stage, StageType.POSTPROCESS)

    def stage(self, stage: PipelineStage) -> PipelineBuilder:
        """Add a stage of any type."""
        return self._add(stage, None)

    def error_handler(self, stage_type: StageType | str, handler: ErrorHandler) -> PipelineBuilder:
        self._error_handlers[StageType(stage_type)] = handler
        return self

    def use(self, middleware: Middleware) -> PipelineBuilder:
        self._middleware.append(middleware)
        return self

    def configure(self, config: dict[str, Any] | None = None, **kwargs: Any) -> PipelineBuilder:
        self._config.update(config or {})
        self._config.update(kwargs)
        return self

    def with_events(self, events: EventEmitter) -> PipelineBuilder:
        self._events = events
        return self

    def build(self) -> TransformationPipeline:
        return TransformationPipeline(
            self._stages,
            config=self._config,
            error_handlers=self._error_handlers,
            middleware=self._middleware,
            events=self._events,
        )
