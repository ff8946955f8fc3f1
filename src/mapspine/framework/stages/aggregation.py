"""Data aggregation stage: group a list of records and reduce each group."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any, Literal

from mapspine.core.errors import TransformationError
from mapspine.core.logging import get_logger
from mapspine.core.records import MISSING, get_path, set_path
from mapspine.framework.pipelines.base import PipelineStage, StageType
from mapspine.framework.pipelines.context import PipelineContext
from mapspine.framework.stages.common import RuleModel, parse_rules

logger = get_logger(__name__)


def _numbers(values: list[Any]) -> list[float]:
    try:
        return [v if isinstance(v, int | float) and not isinstance(v, bool) else float(v) for v in values]
    except (TypeError, ValueError) as e:
        raise TransformationError(f"Cannot aggregate non-numeric value: {e}", cause=e) from e


# sum/count of nothing is 0; avg/min/max/first/last of nothing is None
REDUCERS: dict[str, Callable[[list[Any]], Any]] = {
    "sum": lambda values: sum(_numbers(values)),
    "avg": lambda values: sum(_numbers(values)) / len(values) if values else None,
    "count": len,
    "min": lambda values: min(_numbers(values)) if values else None,
    "max": lambda values: max(_numbers(values)) if values else None,
    "first": lambda values: values[0] if values else None,
    "last": lambda values: values[-1] if values else None,
}


class Aggregation(RuleModel):
    type: Literal["sum", "avg", "count", "min", "max", "first", "last"]
    source_field: str
    target_field: str | None = None

    @property
    def target(self) -> str:
        return self.target_field or f"{self.source_field}_{self.type}"


class DataAggregationStage(PipelineStage):
    """
    Groups a list of records by ``group_by`` fields and applies aggregations.

    Groups appear in order of first occurrence. Each output record holds
    the group-by fields followed by one field per aggregation. Null and
    absent values are excluded before reducing. Input that is not a list,
    or a stage without ``group_by``, passes through unchanged.
    """

    stage_type = StageType.TRANSFORM
    default_name = "data_aggregation"

    def __init__(
        self,
        name: str | None = None,
        *,
        group_by: list[str] | None = None,
        aggregations: list[Aggregation | dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(name, options)
        self.group_by = list(group_by or [])
        self.aggregations = parse_rules(Aggregation, aggregations, self.name)

    def execute(self, data: Any, context: PipelineContext) -> Any:
        if not isinstance(data, list) or not self.group_by:
            return data

        groups: dict[str, list[Any]] = {}
        for item in data:
            groups.setdefault(self._group_key(item), []).append(item)

        result = [self._aggregate(items) for items in groups.values()]
        context.set_state("aggregation_groups", len(result))
        logger.debug("aggregation_applied", stage=self.name, records=len(data), groups=len(result))
        return result

    def _group_key(self, item: Any) -> str:
        values = [get_path(item, field) for field in self.group_by]
        return json.dumps([None if v is MISSING else v for v in values], sort_keys=True, default=str)

    def _aggregate(self, items: list[Any]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for field in self.group_by:
            value = get_path(items[0], field)
            set_path(result, field, None if value is MISSING else value)

        for aggregation in self.aggregations:
            values = [
                value
                for value in (get_path(item, aggregation.source_field) for item in items)
                if value is not MISSING and value is not None
            ]
            set_path(result, aggregation.target, REDUCERS[aggregation.type](values))
        return result
