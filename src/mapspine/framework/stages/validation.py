"""Data validation stage - schema plus business rules.

The schema is either a pydantic model class or a field spec::

    {
        "email": {"type": "string", "required": True, "pattern": r".+@.+"},
        "age":   {"type": "integer", "min": 0, "max": 150},
        "tier":  {"enum": ["gold", "silver"]},
    }

Business rules are ``BusinessRule(name, check, message, severity)``
entries, where ``check(record)`` returns a bool. A failing rule with
severity ``error`` (or any failing rule in ``strict_mode``) is an error;
otherwise it becomes a context warning.

Raises ``ValidationError`` (code ``VALIDATION_ERROR``) with
``details={"errors": [...], "warnings": [...]}`` when any error was found.
The input passes through unchanged.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from mapspine.core.errors import ValidationError
from mapspine.core.logging import get_logger
from mapspine.core.records import MISSING, get_path
from mapspine.framework.pipelines.base import PipelineStage, StageType
from mapspine.framework.pipelines.context import PipelineContext
from mapspine.framework.stages.common import RuleModel, parse_rules

logger = get_logger(__name__)

_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, int | float) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


class FieldSpec(RuleModel):
    type: Literal["string", "number", "integer", "boolean", "object", "array"] | None = None
    required: bool = False
    nullable: bool = True
    pattern: str | None = None
    min: float | None = None
    max: float | None = None
    enum: list[Any] | None = None


class BusinessRule(RuleModel):
    name: str
    check: Callable[[Any], bool]
    message: str | None = None
    severity: Literal["error", "warning"] = "warning"


def _check_field(path: str, value: Any, spec: FieldSpec) -> list[str]:
    if value is MISSING:
        return [f"{path}: required field missing"] if spec.required else []
    if value is None:
        return [] if spec.nullable else [f"{path}: must not be null"]

    errors: list[str] = []
    if spec.type and not _TYPE_CHECKS[spec.type](value):
        errors.append(f"{path}: expected type {spec.type}, got {type(value).__name__}")
        return errors
    if spec.pattern is not None and not re.search(spec.pattern, str(value)):
        errors.append(f"{path}: does not match pattern {spec.pattern}")
    if spec.min is not None or spec.max is not None:
        measure = len(value) if isinstance(value, str | list | dict) else value
        if isinstance(measure, int | float):
            if spec.min is not None and measure < spec.min:
                errors.append(f"{path}: below minimum {spec.min}")
            if spec.max is not None and measure > spec.max:
                errors.append(f"{path}: above maximum {spec.max}")
    if spec.enum is not None and value not in spec.enum:
        errors.append(f"{path}: must be one of {spec.enum}")
    return errors


class DataValidationStage(PipelineStage):
    """Validates records against a schema and business rules."""

    stage_type = StageType.PREPROCESS
    default_name = "data_validation"

    def __init__(
        self,
        name: str | None = None,
        *,
        schema: type[BaseModel] | dict[str, FieldSpec | dict[str, Any]] | None = None,
        rules: list[BusinessRule | dict[str, Any]] | None = None,
        strict_mode: bool = False,
        options: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(name, options)
        self.strict_mode = strict_mode
        self.rules = parse_rules(BusinessRule, rules, self.name)
        self.model: type[BaseModel] | None = None
        self.fields: dict[str, FieldSpec] = {}
        if isinstance(schema, type) and issubclass(schema, BaseModel):
            self.model = schema
        elif schema:
            self.fields = {
                path: parse_rules(FieldSpec, [spec], self.name)[0] for path, spec in schema.items()
            }

    def validate(self) -> bool:
        return all(callable(rule.check) for rule in self.rules)

    def execute(self, data: Any, context: PipelineContext) -> Any:
        items = data if isinstance(data, list) else [data]
        errors: list[str] = []
        warnings: list[str] = []
        for index, item in enumerate(items):
            prefix = f"[{index}] " if isinstance(data, list) else ""
            errors.extend(prefix + e for e in self._validate_schema(item))
            rule_errors, rule_warnings = self._validate_rules(item)
            errors.extend(prefix + e for e in rule_errors)
            warnings.extend(prefix + w for w in rule_warnings)

        for warning in warnings:
            context.add_warning(warning, self.name)

        result = {"valid": not errors, "errors": errors, "warnings": warnings}
        if errors:
            logger.info("validation_failed", stage=self.name, errors=len(errors))
            raise ValidationError(f"Data validation failed: {'; '.join(errors)}", details=result)

        context.set_state("validation_result", result)
        return data

    def _validate_schema(self, item: Any) -> list[str]:
        if self.model is not None:
            try:
                self.model.model_validate(item)
            except PydanticValidationError as e:
                return [
                    f"{'.'.join(str(p) for p in err['loc']) or '<record>'}: {err['msg']}"
                    for err in e.errors(include_url=False)
                ]
            return []
        errors: list[str] = []
        for path, spec in self.fields.items():
            errors.extend(_check_field(path, get_path(item, path), spec))
        return errors

    def _validate_rules(self, item: Any) -> tuple[list[str], list[str]]:
        errors: list[str] = []
        warnings: list[str] = []
        for rule in self.rules:
            try:
                passed = bool(rule.check(item))
                message = rule.message or f"Business rule {rule.name} failed"
            except Exception as e:
                passed = False
                message = f"Business rule {rule.name} raised: {e}"
            if passed:
                continue
            if rule.severity == "error" or self.strict_mode:
                errors.append(message)
            else:
                warnings.append(message)
        return errors, warnings
