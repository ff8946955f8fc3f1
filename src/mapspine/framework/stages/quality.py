"""
Data quality check stage.

Each record is checked against every rule; a record passes when no rule
reports an issue. The quality score is ``passed_records / total_records``
(1.0 for an empty list) and the stage raises ``QualityThresholdError``
when it falls below ``threshold``.

Rule types:
    required     field present, not None, not ""
    format       ``pattern`` regex or a named ``format`` (email, uuid, iso_date, ...)
    range        numeric ``min`` / ``max`` (inclusive)
    uniqueness   value not repeated across the records of one execution
    timeliness   ISO-8601 / datetime field no older than ``max_age_seconds``
    custom       ``check(record) -> bool``

``format``, ``range`` and ``timeliness`` skip absent and null values;
combine them with ``required`` to reject those.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Literal

from mapspine.core.errors import QualityThresholdError, StageError
from mapspine.core.logging import get_logger
from mapspine.core.records import MISSING, get_path
from mapspine.framework.pipelines.base import PipelineStage, StageType
from mapspine.framework.pipelines.context import PipelineContext
from mapspine.framework.stages.common import RuleModel, parse_rules

logger = get_logger(__name__)

NAMED_FORMATS: dict[str, str] = {
    "email": r"^[^@\s]+@[^@\s]+\.[^@\s]+$",
    "uuid": r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$",
    "iso_date": r"^\d{4}-\d{2}-\d{2}$",
    "iso_datetime": r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?$",
    "phone": r"^\+?[\d\s\-().]{7,}$",
    "url": r"^https?://\S+$",
    "postal_code": r"^[A-Za-z0-9][A-Za-z0-9\- ]{2,9}$",
}


class QualityRule(RuleModel):
    type: Literal["required", "format", "range", "uniqueness", "timeliness", "custom"]
    field: str | None = None
    name: str | None = None
    message: str | None = None
    pattern: str | None = None
    format: str | None = None
    min: float | None = None
    max: float | None = None
    max_age_seconds: float | None = None
    check: Callable[[Any], bool] | None = None

    @property
    def label(self) -> str:
        return self.name or f"{self.type}:{self.field or '*'}"


class QualityIssue(RuleModel):
    type: str
    rule: str
    field: str | None
    message: str
    index: int


class DataQualityCheckStage(PipelineStage):
    """Scores records against quality rules and enforces a threshold."""

    stage_type = StageType.VALIDATE
    default_name = "data_quality_check"

    def __init__(
        self,
        name: str | None = None,
        *,
        rules: list[QualityRule | dict[str, Any]] | None = None,
        threshold: float = 0.8,
        options: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(name, options)
        if not 0.0 <= threshold <= 1.0:
            raise StageError(f"Quality threshold must be between 0 and 1, got {threshold}", stage=self.name)
        self.threshold = threshold
        self.rules = parse_rules(QualityRule, rules, self.name)
        self._patterns: dict[int, re.Pattern[str]] = {}

        for index, rule in enumerate(self.rules):
            if rule.type != "custom" and rule.field is None:
                raise StageError(f"Quality rule {rule.label} needs a field", stage=self.name)
            if rule.type == "format":
                pattern = rule.pattern or NAMED_FORMATS.get(rule.format or "")
                if pattern is None:
                    raise StageError(f"Quality rule {rule.label} needs a pattern or known format", stage=self.name)
                self._patterns[index] = re.compile(pattern)
            if rule.type == "custom" and not callable(rule.check):
                raise StageError(f"Custom quality rule {rule.label} needs a check", stage=self.name)
            if rule.type == "timeliness" and rule.max_age_seconds is None:
                raise StageError(f"Timeliness rule {rule.label} needs max_age_seconds", stage=self.name)

    def execute(self, data: Any, context: PipelineContext) -> Any:
        items = data if isinstance(data, list) else [data]
        seen: dict[int, set[str]] = {i: set() for i, r in enumerate(self.rules) if r.type == "uniqueness"}
        now = context.clock.now()

        passed = 0
        issues: list[QualityIssue] = []
        for item_index, item in enumerate(items):
            item_issues = [
                issue
                for rule_index, rule in enumerate(self.rules)
                if (issue := self._check(rule_index, rule, item, item_index, seen, now)) is not None
            ]
            if item_issues:
                issues.extend(item_issues)
            else:
                passed += 1

        total = len(items)
        report = {
            "total_records": total,
            "passed_records": passed,
            "failed_records": total - passed,
            "quality_score": passed / total if total else 1.0,
            "threshold": self.threshold,
            "issues": [issue.model_dump() for issue in issues],
        }
        context.set_state("quality_report", report)

        if report["quality_score"] < self.threshold:
            logger.info(
                "quality_threshold_not_met",
                stage=self.name,
                score=report["quality_score"],
                threshold=self.threshold,
            )
            raise QualityThresholdError(
                f"Data quality check failed: score {report['quality_score']:.2f} "
                f"below threshold {self.threshold:.2f}",
                details=report,
            )
        return data

    def _check(
        self,
        index: int,
        rule: QualityRule,
        item: Any,
        item_index: int,
        seen: dict[int, set[str]],
        now: datetime,
    ) -> QualityIssue | None:
        value = get_path(item, rule.field) if rule.field else item
        absent = value is MISSING or value is None

        match rule.type:
            case "required":
                ok = not absent and value != ""
                default_message = f"Required field {rule.field} is missing"
            case "format":
                ok = absent or self._patterns[index].search(str(value)) is not None
                default_message = f"Field {rule.field} does not match required format"
            case "range":
                ok = absent or self._in_range(value, rule)
                default_message = f"Field {rule.field} is outside allowed range"
            case "uniqueness":
                key = json.dumps(None if absent else value, sort_keys=True, default=str)
                ok = absent or key not in seen[index]
                seen[index].add(key)
                default_message = f"Field {rule.field} has duplicate value {value!r}"
            case "timeliness":
                ok = absent or self._is_fresh(value, rule, now)
                default_message = f"Field {rule.field} is older than {rule.max_age_seconds}s"
            case "custom":
                try:
                    ok = bool(rule.check(item))
                except Exception as e:
                    ok = False
                    default_message = f"Custom rule {rule.label} raised: {e}"
                else:
                    default_message = f"Custom rule {rule.label} failed"

        if ok:
            return None
        return QualityIssue(
            type=rule.type,
            rule=rule.label,
            field=rule.field,
            message=rule.message or default_message,
            index=item_index,
        )

    @staticmethod
    def _in_range(value: Any, rule: QualityRule) -> bool:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return False
        if rule.min is not None and number < rule.min:
            return False
        return rule.max is None or number <= rule.max

    @staticmethod
    def _is_fresh(value: Any, rule: QualityRule, now: datetime) -> bool:
        if isinstance(value, datetime):
            moment = value
        else:
            try:
                moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            except ValueError:
                return False
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return (now - moment).total_seconds() <= rule.max_age_seconds
