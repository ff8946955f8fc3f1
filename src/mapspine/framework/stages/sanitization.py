"""
Data sanitization stage.

Sanitizers clean values, normalizers make equivalent values identical.
Both are applied in declaration order, sanitizers first, and every
built-in is idempotent: running the stage twice gives the same record as
running it once.

A step is one of:
    - a built-in name: ``"trim_strings"``
    - a dict naming the built-in and the fields it applies to:
      ``{"type": "lowercase", "fields": ["email"]}``
    - a callable ``(record) -> record``

Built-ins:
    trim_strings, trim_keys, collapse_whitespace, strip_control_chars,
    remove_nulls, remove_empty_strings, empty_to_null (sanitizers)
    normalize_unicode, lowercase, uppercase (normalizers)
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Callable
from typing import Any

from mapspine.core.errors import StageError
from mapspine.core.logging import get_logger
from mapspine.core.records import MISSING, copy_record, get_path, set_path
from mapspine.framework.pipelines.base import PipelineStage, StageType
from mapspine.framework.pipelines.context import PipelineContext
from mapspine.framework.stages.common import RuleModel, map_items, parse_rules

logger = get_logger(__name__)

ValueFunc = Callable[[Any], Any]
RecordFunc = Callable[[Any], Any]

_WHITESPACE = re.compile(r"\s+")
_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_DROP = object()


def _strings(func: Callable[[str], str]) -> ValueFunc:
    return lambda value: func(value) if isinstance(value, str) else value


# =============================================================================
# VALUE-LEVEL BUILT-INS
# =============================================================================

VALUE_SANITIZERS: dict[str, ValueFunc] = {
    "trim_strings": _strings(str.strip),
    "collapse_whitespace": _strings(lambda s: _WHITESPACE.sub(" ", s).strip()),
    "strip_control_chars": _strings(lambda s: _CONTROL.sub("", s)),
    "empty_to_null": lambda value: None if isinstance(value, str) and not value.strip() else value,
    "remove_nulls": lambda value: _DROP if value is None else value,
    "remove_empty_strings": lambda value: _DROP if value == "" else value,
}

VALUE_NORMALIZERS: dict[str, ValueFunc] = {
    "normalize_unicode": _strings(lambda s: unicodedata.normalize("NFC", s)),
    "lowercase": _strings(str.lower),
    "uppercase": _strings(str.upper),
}

KEY_SANITIZERS: dict[str, Callable[[str], str]] = {
    "trim_keys": str.strip,
}


def _walk(node: Any, func: ValueFunc, key_func: Callable[[str], str] | None = None) -> Any:
    """Apply ``func`` to every leaf and ``key_func`` to every key of a record tree."""
    if isinstance(node, dict):
        result: dict[Any, Any] = {}
        for key, value in node.items():
            new_key = key_func(key) if key_func and isinstance(key, str) else key
            new_value = _walk(value, func, key_func)
            if new_value is not _DROP:
                result[new_key] = new_value
        return result
    if isinstance(node, list):
        return [v for v in (_walk(item, func, key_func) for item in node) if v is not _DROP]
    return func(node)


def _identity(value: Any) -> Any:
    return value


class SanitizerSpec(RuleModel):
    type: str
    fields: list[str] | None = None


class DataSanitizationStage(PipelineStage):
    """Applies ordered sanitizers then normalizers to every record."""

    stage_type = StageType.PREPROCESS
    default_name = "data_sanitization"

    def __init__(
        self,
        name: str | None = None,
        *,
        sanitizers: list[str | dict[str, Any] | RecordFunc] | None = None,
        normalizers: list[str | dict[str, Any] | RecordFunc] | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(name, options)
        self.sanitizers = [self._compile(s, VALUE_SANITIZERS) for s in sanitizers or []]
        self.normalizers = [self._compile(n, VALUE_NORMALIZERS) for n in normalizers or []]

    def _compile(self, step: str | dict[str, Any] | RecordFunc, table: dict[str, ValueFunc]) -> RecordFunc:
        if callable(step):
            return step

        spec = parse_rules(SanitizerSpec, [{"type": step} if isinstance(step, str) else step], self.name)[0]
        if spec.type in KEY_SANITIZERS:
            key_func = KEY_SANITIZERS[spec.type]
            return lambda record: _walk(record, _identity, key_func)

        value_func = table.get(spec.type) or VALUE_SANITIZERS.get(spec.type) or VALUE_NORMALIZERS.get(spec.type)
        if value_func is None:
            raise StageError(f"Unknown sanitizer: {spec.type}", stage=self.name)

        if spec.fields is None:
            return lambda record: _walk(record, value_func)
        fields = list(spec.fields)
        return lambda record: self._apply_to_fields(record, fields, value_func)

    @staticmethod
    def _apply_to_fields(record: Any, fields: list[str], func: ValueFunc) -> Any:
        if not isinstance(record, dict):
            return record
        record = copy_record(record)
        for path in fields:
            value = get_path(record, path)
            if value is MISSING:
                continue
            new_value = _walk(value, func)
            set_path(record, path, None if new_value is _DROP else new_value)
        return record

    def execute(self, data: Any, context: PipelineContext) -> Any:
        steps = self.sanitizers + self.normalizers
        if not steps:
            return data

        def sanitize(record: Any, index: int) -> Any:
            for step in steps:
                record = step(record)
            return None if record is _DROP else record

        result = map_items(data, sanitize)
        logger.debug("sanitization_applied", stage=self.name, steps=len(steps))
        return result
