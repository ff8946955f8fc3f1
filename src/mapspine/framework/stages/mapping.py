"""
Field mapping stage - source record in, target record out.

Every rule writes one ``target_field`` of a fresh output record::

    FieldMappingStage(rules=[
        {"type": "direct", "source_field": "a", "target_field": "x"},
        {"type": "concat", "source_fields": ["first", "last"], "target_field": "name", "separator": " "},
        {"type": "transform", "source_field": "email", "target_field": "email", "transform": "lowercase"},
        {"type": "split", "source_field": "tags", "target_field": "tags", "separator": ","},
        {"type": "lookup", "source_field": "cc", "target_field": "country", "table": {"DE": "Germany"}},
        {"type": "formula", "target_field": "total", "expression": "{qty} * {price}"},
        {"type": "conditional", "target_field": "tier", "conditions": [
            {"field": "spend", "operator": "gte", "value": 1000, "result": "gold"},
        ], "default": "standard"},
    ])

Rule semantics:
    - Rules run in order; a later rule may overwrite an earlier target.
    - A missing source yields ``None`` unless ``strict_mapping`` is set,
      in which case it raises ``TransformationError``.
    - An unknown ``transform`` name falls through to identity (with a
      warning) unless ``strict_mapping`` is set.
    - A rule that fails is skipped with a warning in non-strict mode.
    - ``default_values`` fill targets that are still ``None`` or absent
      after all rules ran.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Hashable
from typing import Any, Literal

from pydantic import Field, model_validator

from mapspine.core.errors import FunctionNotFoundError, MappingError, StageError, TransformationError
from mapspine.core.logging import get_logger
from mapspine.core.records import MISSING, get_path, set_path
from mapspine.framework.expressions import Formula
from mapspine.framework.pipelines.base import PipelineStage, StageType
from mapspine.framework.pipelines.context import PipelineContext
from mapspine.framework.stages.common import RuleModel, map_items, parse_rules
from mapspine.framework.transforms import TransformLibrary, default_library

logger = get_logger(__name__)

RULE_TYPES = frozenset({"direct", "transform", "concat", "split", "lookup", "formula", "conditional"})


# =============================================================================
# CONDITIONS
# =============================================================================


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(actual: Any, expected: Any) -> bool:
        if actual is MISSING or actual is None:
            return False
        try:
            return op(actual, expected)
        except TypeError:
            return False

    return check


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, b: a is not MISSING and a == b,
    "ne": lambda a, b: a is MISSING or a != b,
    "gt": _compare(lambda a, b: a > b),
    "gte": _compare(lambda a, b: a >= b),
    "lt": _compare(lambda a, b: a < b),
    "lte": _compare(lambda a, b: a <= b),
    "in": lambda a, b: a is not MISSING and a in (b or ()),
    "not_in": lambda a, b: a is MISSING or a not in (b or ()),
    "exists": lambda a, b: a is not MISSING and a is not None,
    "not_exists": lambda a, b: a is MISSING or a is None,
    "contains": _compare(lambda a, b: b in a),
    "matches": _compare(lambda a, b: re.search(b, str(a)) is not None),
}


class Condition(RuleModel):
    """``field <operator> value``; the first matching condition supplies the result."""

    field: str
    operator: Literal[
        "eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in", "exists", "not_exists", "contains", "matches"
    ] = "eq"
    value: Any = None
    result: Any = None
    result_field: str | None = None

    def matches(self, record: Any) -> bool:
        return OPERATORS[self.operator](get_path(record, self.field), self.value)

    def resolve(self, record: Any) -> Any:
        if self.result_field is not None:
            value = get_path(record, self.result_field)
            return None if value is MISSING else value
        return self.result


# =============================================================================
# RULES
# =============================================================================


class MappingRule(RuleModel):
    type: str = "direct"
    target_field: str
    name: str | None = None
    source_field: str | None = None
    source_fields: list[str] = Field(default_factory=list)
    transform: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)
    separator: str | None = None
    table: dict[str, Any] | None = None
    default: Any = None
    expression: str | None = None
    conditions: list[Condition] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        # ``transform_type`` is accepted as a synonym for ``transform``
        if isinstance(data, dict) and "transform_type" in data:
            data = dict(data)
            data.setdefault("transform", data.pop("transform_type"))
        return data

    @property
    def label(self) -> str:
        return self.name or f"{self.type}->{self.target_field}"


class FieldMappingStage(PipelineStage):
    """Builds a target record from ordered mapping rules."""

    stage_type = StageType.TRANSFORM
    default_name = "field_mapping"

    def __init__(
        self,
        name: str | None = None,
        *,
        rules: list[MappingRule | dict[str, Any]] | None = None,
        default_values: dict[str, Any] | None = None,
        strict_mapping: bool = False,
        transforms: TransformLibrary | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(name, options)
        self.rules = parse_rules(MappingRule, rules, self.name)
        self.default_values = dict(default_values or {})
        self.strict_mapping = strict_mapping
        self.transforms = transforms or default_library
        self._formulas: dict[int, Formula] = {}

        for index, rule in enumerate(self.rules):
            if rule.type not in RULE_TYPES and strict_mapping:
                raise StageError(f"Unknown mapping rule type: {rule.type}", stage=self.name)
            if rule.type == "formula":
                if not rule.expression:
                    raise StageError(f"Formula rule {rule.label} has no expression", stage=self.name)
                self._formulas[index] = Formula(rule.expression)
            if rule.type == "lookup" and rule.table is None:
                raise StageError(f"Lookup rule {rule.label} has no table", stage=self.name)

    def validate(self) -> bool:
        return bool(self.rules) or bool(self.default_values)

    def execute(self, data: Any, context: PipelineContext) -> Any:
        return map_items(data, lambda item, index: self._map_item(item, context))

    def _map_item(self, item: Any, context: PipelineContext) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for index, rule in enumerate(self.rules):
            try:
                value = self._apply_rule(index, rule, item, context)
            except MappingError as e:
                if self.strict_mapping:
                    raise
                logger.warning("mapping_rule_failed", stage=self.name, rule=rule.label, error=str(e))
                context.add_warning(f"Mapping rule {rule.label} failed: {e}", self.name)
                continue
            set_path(result, rule.target_field, value)

        for path, value in self.default_values.items():
            if get_path(result, path) in (MISSING, None):
                set_path(result, path, value)
        return result

    # =========================================================================
    # Rule application
    # =========================================================================

    def _source(self, item: Any, path: str | None, rule: MappingRule) -> Any:
        if path is None:
            raise StageError(f"Rule {rule.label} has no source field", stage=self.name)
        value = get_path(item, path)
        if value is MISSING:
            if self.strict_mapping:
                raise TransformationError(
                    f"Source field {path} missing for rule {rule.label}",
                    details={"rule": rule.label, "source_field": path},
                )
            return None
        return value

    def _apply_rule(self, index: int, rule: MappingRule, item: Any, context: PipelineContext) -> Any:
        match rule.type:
            case "direct":
                return self._source(item, rule.source_field, rule)

            case "transform":
                value = self._source(item, rule.source_field, rule)
                if rule.transform is None:
                    return value
                try:
                    func = self.transforms.get(rule.transform)
                except FunctionNotFoundError:
                    if self.strict_mapping:
                        raise
                    context.add_warning(f"Unknown transform {rule.transform}, value copied", self.name)
                    return value
                try:
                    return func(value, dict(rule.options))
                except MappingError:
                    raise
                except (TypeError, ValueError, ArithmeticError) as e:
                    raise TransformationError(
                        f"Transform {rule.transform} failed for rule {rule.label}: {e}", cause=e
                    ) from e

            case "concat":
                parts = []
                for path in rule.source_fields:
                    value = self._source(item, path, rule)
                    parts.append("" if value is None else str(value))
                return (rule.separator or "").join(parts)

            case "split":
                value = self._source(item, rule.source_field, rule)
                if value is None or value == "":
                    return []
                return str(value).split(rule.separator or ",")

            case "lookup":
                value = self._source(item, rule.source_field, rule)
                table = rule.table or {}
                if isinstance(value, Hashable) and value in table:
                    return table[value]
                return table.get(str(value), rule.default) if value is not None else rule.default

            case "formula":
                return self._formulas[index].evaluate(item)

            case "conditional":
                for condition in rule.conditions:
                    if condition.matches(item):
                        return condition.resolve(item)
                return rule.default

        # Unknown rule type, non-strict
        logger.debug("mapping_rule_unknown_type", stage=self.name, type=rule.type)
        return self._source(item, rule.source_field, rule) if rule.source_field else None
