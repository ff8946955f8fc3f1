"""Data enrichment stage: stamps ids, timestamps, metadata and lookups onto records."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any, Literal

from pydantic import Field

from mapspine.core.clock import to_iso8601
from mapspine.core.errors import StageError
from mapspine.core.logging import get_logger
from mapspine.core.records import MISSING, copy_record, get_path, set_path
from mapspine.framework.pipelines.base import PipelineStage, StageType
from mapspine.framework.pipelines.context import PipelineContext
from mapspine.framework.stages.common import RuleModel, map_items, parse_rules

logger = get_logger(__name__)


class EnrichmentRule(RuleModel):
    """
    One enrichment step.

    Attributes:
        type: ``timestamp`` | ``id`` | ``metadata`` | ``lookup``
        target_field: Where the value is written (dotted path)
        prefix: ``id`` rules - id prefix (default ``"id"``)
        metadata: ``metadata`` rules - extra keys merged into the block
        source_field: ``lookup`` rules - key to look up
        table: ``lookup`` rules - static lookup table
        resolver: ``lookup`` rules - ``resolver(key) -> value`` for dynamic lookups
        default: ``lookup`` rules - value when the key is not found
        overwrite: Replace an existing value at ``target_field`` (default True)
    """

    type: Literal["timestamp", "id", "metadata", "lookup"]
    target_field: str
    prefix: str = "id"
    metadata: dict[str, Any] = Field(default_factory=dict)
    source_field: str | None = None
    table: dict[str, Any] | None = None
    resolver: Callable[[Any], Any] | None = None
    default: Any = None
    overwrite: bool = True


def generate_id(prefix: str = "id") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class DataEnrichmentStage(PipelineStage):
    """Adds derived fields to every record; the input is never mutated."""

    stage_type = StageType.POSTPROCESS
    default_name = "data_enrichment"

    def __init__(
        self,
        name: str | None = None,
        *,
        rules: list[EnrichmentRule | dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(name, options)
        self.rules = parse_rules(EnrichmentRule, rules, self.name)
        for rule in self.rules:
            if rule.type == "lookup" and (rule.source_field is None or (rule.table is None and rule.resolver is None)):
                raise StageError(
                    f"Lookup enrichment for {rule.target_field} needs source_field and a table or resolver",
                    stage=self.name,
                )

    def execute(self, data: Any, context: PipelineContext) -> Any:
        return map_items(data, lambda item, index: self._enrich(item, context))

    def _enrich(self, item: Any, context: PipelineContext) -> Any:
        if not isinstance(item, dict):
            logger.debug("enrichment_skipped_non_record", stage=self.name, type=type(item).__name__)
            return item

        enriched = copy_record(item)
        for rule in self.rules:
            if not rule.overwrite and get_path(enriched, rule.target_field) is not MISSING:
                continue
            set_path(enriched, rule.target_field, self._value(rule, enriched, context))
        return enriched

    def _value(self, rule: EnrichmentRule, item: dict[str, Any], context: PipelineContext) -> Any:
        match rule.type:
            case "timestamp":
                return to_iso8601(context.clock.now())
            case "id":
                return generate_id(rule.prefix)
            case "metadata":
                return {
                    "processed_at": to_iso8601(context.clock.now()),
                    "context_id": context.id,
                    **rule.metadata,
                }
            case "lookup":
                key = get_path(item, rule.source_field)
                if key is MISSING or key is None:
                    return rule.default
                if rule.resolver is not None:
                    value = rule.resolver(key)
                    return rule.default if value is None else value
                return (rule.table or {}).get(str(key), rule.default)
