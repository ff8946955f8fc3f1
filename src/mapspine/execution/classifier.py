"""
Error classifier - map a raw failure to {type, severity, strategy}.

Resolution order:

1. Custom classifiers, in registration order; the first non-``None``
   verdict wins.
2. Ordered regex rules against the error message. Only when no rule
   matches the message are the rules tried against the exception chain
   text (``Type: message`` lines of the error and its causes).
3. Sentinel code lookup (``ECONNREFUSED``, ``ETIMEDOUT``, ``ENOMEM``, ...).
4. Default ``UNKNOWN / MEDIUM / SKIP_AND_LOG``.

``classify`` never raises. A failure inside a custom classifier or the
enrichment step is logged and the default classification is returned.

Example:
    >>> classifier = ErrorClassifier()
    >>> c = classifier.classify(ValueError("required field missing: email"))
    >>> (c.type, c.severity, c.recovery_strategy)
    (<ErrorType.REQUIRED_FIELD_MISSING: ...>, <ErrorSeverity.HIGH: ...>, <RecoveryStrategy.SKIP_AND_LOG: ...>)
"""

from __future__ import annotations

import hashlib
import re
import traceback
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mapspine.core.clock import SYSTEM_CLOCK, Clock, to_iso8601
from mapspine.core.errors import ErrorSeverity, ErrorType, RecoveryStrategy, error_code
from mapspine.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Verdict:
    """The (type, severity, strategy) triple before enrichment."""

    type: ErrorType
    severity: ErrorSeverity
    recovery_strategy: RecoveryStrategy


@dataclass(frozen=True)
class ClassificationRule:
    """Ordered message pattern."""

    pattern: re.Pattern[str]
    type: ErrorType
    severity: ErrorSeverity
    default_strategy: RecoveryStrategy

    @property
    def verdict(self) -> Verdict:
        return Verdict(self.type, self.severity, self.default_strategy)


@dataclass(frozen=True)
class ClassificationMetadata:
    is_retryable: bool
    is_recoverable: bool
    requires_manual_intervention: bool
    affects_data_integrity: bool

    def to_dict(self) -> dict[str, bool]:
        return {
            "is_retryable": self.is_retryable,
            "is_recoverable": self.is_recoverable,
            "requires_manual_intervention": self.requires_manual_intervention,
            "affects_data_integrity": self.affects_data_integrity,
        }


@dataclass
class Classification:
    """Enriched description of one failure."""

    type: ErrorType
    severity: ErrorSeverity
    recovery_strategy: RecoveryStrategy
    error: dict[str, Any]
    context: dict[str, Any]
    metadata: ClassificationMetadata
    classified_at: datetime | None = None

    def to_dict(self, include_stack: bool = False) -> dict[str, Any]:
        error = dict(self.error)
        if not include_stack:
            error.pop("stack", None)
        context = {
            k: (to_iso8601(v) if isinstance(v, datetime) else v)
            for k, v in self.context.items()
        }
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "recovery_strategy": self.recovery_strategy.value,
            "error": error,
            "context": context,
            "metadata": self.metadata.to_dict(),
        }


CustomClassifier = Callable[[BaseException, dict[str, Any]], Verdict | None]


def _rule(pattern: str, type_: ErrorType, severity: ErrorSeverity, strategy: RecoveryStrategy) -> ClassificationRule:
    return ClassificationRule(re.compile(pattern, re.IGNORECASE), type_, severity, strategy)


def default_rules() -> list[ClassificationRule]:
    """Seed rules. Order is significant: the first match wins."""
    return [
        _rule(r"validation|validate|invalid.*schema|schema.*invalid",
              ErrorType.VALIDATION_ERROR, ErrorSeverity.MEDIUM, RecoveryStrategy.SKIP_AND_LOG),
        _rule(r"required.*field|field.*required|missing.*required",
              ErrorType.REQUIRED_FIELD_MISSING, ErrorSeverity.HIGH, RecoveryStrategy.SKIP_AND_LOG),
        _rule(r"type.*mismatch|expected.*type|invalid.*type",
              ErrorType.TYPE_MISMATCH, ErrorSeverity.MEDIUM, RecoveryStrategy.SKIP),
        _rule(r"\btransform\b|\btransformation.*failed\b|function.*not.*found",
              ErrorType.TRANSFORMATION_ERROR, ErrorSeverity.HIGH, RecoveryStrategy.RETRY),
        _rule(r"timeout|timed.*out|execution.*timeout",
              ErrorType.TIMEOUT_ERROR, ErrorSeverity.HIGH, RecoveryStrategy.RETRY_WITH_BACKOFF),
        _rule(r"duplicate.*key|unique.*constraint|already.*exists",
              ErrorType.DUPLICATE_KEY_ERROR, ErrorSeverity.MEDIUM, RecoveryStrategy.SKIP),
        _rule(r"data.*quality|quality.*check.*failed",
              ErrorType.DATA_QUALITY_ERROR, ErrorSeverity.MEDIUM, RecoveryStrategy.SKIP_AND_LOG),
        _rule(r"out.*of.*memory|memory.*exhausted|heap.*limit",
              ErrorType.MEMORY_ERROR, ErrorSeverity.CRITICAL, RecoveryStrategy.CIRCUIT_BREAK),
        _rule(r"network|connection.*refused|ECONNREFUSED|ETIMEDOUT",
              ErrorType.NETWORK_ERROR, ErrorSeverity.HIGH, RecoveryStrategy.RETRY_WITH_BACKOFF),
        _rule(r"business.*rule|rule.*violation|constraint.*violation",
              ErrorType.BUSINESS_RULE_VIOLATION, ErrorSeverity.HIGH, RecoveryStrategy.SKIP_AND_LOG),
    ]


CODE_MAP: dict[str, Verdict] = {
    "VALIDATION_ERROR": Verdict(ErrorType.VALIDATION_ERROR, ErrorSeverity.MEDIUM, RecoveryStrategy.SKIP_AND_LOG),
    "ECONNREFUSED": Verdict(ErrorType.NETWORK_ERROR, ErrorSeverity.HIGH, RecoveryStrategy.RETRY_WITH_BACKOFF),
    "ETIMEDOUT": Verdict(ErrorType.TIMEOUT_ERROR, ErrorSeverity.HIGH, RecoveryStrategy.RETRY_WITH_BACKOFF),
    "ENOMEM": Verdict(ErrorType.MEMORY_ERROR, ErrorSeverity.CRITICAL, RecoveryStrategy.CIRCUIT_BREAK),
    "CIRCUIT_OPEN": Verdict(ErrorType.SYSTEM_ERROR, ErrorSeverity.HIGH, RecoveryStrategy.CIRCUIT_BREAK),
}

DEFAULT_VERDICT = Verdict(ErrorType.UNKNOWN, ErrorSeverity.MEDIUM, RecoveryStrategy.SKIP_AND_LOG)

RETRYABLE_TYPES = frozenset({
    ErrorType.NETWORK_ERROR,
    ErrorType.TIMEOUT_ERROR,
    ErrorType.TRANSFORMATION_ERROR,
    ErrorType.SYSTEM_ERROR,
})
NON_RECOVERABLE_TYPES = frozenset({
    ErrorType.MEMORY_ERROR,
    ErrorType.DATA_INTEGRITY_ERROR,
    ErrorType.UNKNOWN,
})
INTEGRITY_TYPES = frozenset({
    ErrorType.DATA_INTEGRITY_ERROR,
    ErrorType.DUPLICATE_KEY_ERROR,
    ErrorType.CONSTRAINT_VIOLATION,
})


def chain_text(error: BaseException) -> str:
    """``Type: message`` lines for the error and every chained cause."""
    lines: list[str] = []
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        lines.extend(traceback.format_exception_only(type(current), current))
        current = current.__cause__ or current.__context__
    return "".join(lines)


_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
_HEX_RE = re.compile(r"\b[0-9a-f]{8,}\b", re.IGNORECASE)
_DIGITS_RE = re.compile(r"\d+")
_SPACE_RE = re.compile(r"\s+")


def fingerprint(error: BaseException | str) -> str:
    """
    Stable hash of a normalised error message.

    Numbers, UUIDs and long hex identifiers are masked so that the same
    failure on different records collapses to one fingerprint. Used for
    alert de-duplication only; DLQ entries are keyed by id, never by
    fingerprint.
    """
    message = error if isinstance(error, str) else str(error)
    normalised = _UUID_RE.sub("UUID", message)
    normalised = _HEX_RE.sub("ID", normalised)
    normalised = _DIGITS_RE.sub("N", normalised)
    normalised = _SPACE_RE.sub(" ", normalised).strip().lower()
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()[:16]


class ErrorClassifier:
    """Classifies failures and picks a recovery strategy."""

    def __init__(
        self,
        custom_classifiers: Iterable[CustomClassifier] | None = None,
        *,
        rules: list[ClassificationRule] | None = None,
        code_map: dict[str, Verdict] | None = None,
        critical_error_rate: float = 0.5,
        high_error_rate: float = 0.3,
        medium_error_rate: float = 0.1,
        clock: Clock | None = None,
    ) -> None:
        self.custom_classifiers: list[CustomClassifier] = list(custom_classifiers or [])
        self.rules = rules if rules is not None else default_rules()
        self.code_map = dict(code_map if code_map is not None else CODE_MAP)
        self.thresholds = {
            "critical": critical_error_rate,
            "high": high_error_rate,
            "medium": medium_error_rate,
        }
        self.clock = clock or SYSTEM_CLOCK

    def add_classifier(self, classifier: CustomClassifier) -> None:
        self.custom_classifiers.append(classifier)

    def add_pattern(
        self,
        pattern: str | re.Pattern[str],
        type_: ErrorType,
        severity: ErrorSeverity,
        strategy: RecoveryStrategy,
        *,
        index: int | None = None,
    ) -> None:
        """Add a rule at the end (or at ``index``) of the ordered rule list."""
        compiled = pattern if isinstance(pattern, re.Pattern) else re.compile(pattern, re.IGNORECASE)
        rule = ClassificationRule(compiled, type_, severity, strategy)
        if index is None:
            self.rules.append(rule)
        else:
            self.rules.insert(index, rule)

    def classify(self, error: BaseException, context: dict[str, Any] | None = None) -> Classification:
        context = dict(context or {})
        try:
            verdict = self._resolve(error, context)
            return self._enrich(verdict, error, context)
        except Exception as e:
            logger.warning("classification_failed", error=str(e), original_error=str(error))
            return self._fallback(error, context)

    def _resolve(self, error: BaseException, context: dict[str, Any]) -> Verdict:
        for classifier in self.custom_classifiers:
            verdict = classifier(error, context)
            if verdict:
                return verdict

        message = str(error)
        for rule in self.rules:
            if rule.pattern.search(message):
                return rule.verdict

        chain = chain_text(error)
        for rule in self.rules:
            if rule.pattern.search(chain):
                return rule.verdict

        code = error_code(error)
        if code and code in self.code_map:
            return self.code_map[code]

        return DEFAULT_VERDICT

    def _enrich(self, verdict: Verdict, error: BaseException, context: dict[str, Any]) -> Classification:
        now = self.clock.now()
        return Classification(
            type=verdict.type,
            severity=verdict.severity,
            recovery_strategy=verdict.recovery_strategy,
            error={
                "message": str(error),
                "code": error_code(error),
                "name": type(error).__name__,
                "stack": "".join(traceback.format_exception(error)),
            },
            context={**context, "timestamp": now, "classified_by": type(self).__name__},
            metadata=ClassificationMetadata(
                is_retryable=verdict.type in RETRYABLE_TYPES,
                is_recoverable=verdict.type not in NON_RECOVERABLE_TYPES,
                requires_manual_intervention=verdict.recovery_strategy is RecoveryStrategy.MANUAL_INTERVENTION,
                affects_data_integrity=verdict.type in INTEGRITY_TYPES,
            ),
            classified_at=now,
        )

    def _fallback(self, error: BaseException, context: dict[str, Any]) -> Classification:
        return Classification(
            type=DEFAULT_VERDICT.type,
            severity=DEFAULT_VERDICT.severity,
            recovery_strategy=DEFAULT_VERDICT.recovery_strategy,
            error={"message": str(error), "code": None, "name": type(error).__name__},
            context=context,
            metadata=ClassificationMetadata(False, False, False, False),
        )

    def analyze_error_trend(self, classifications: Iterable[Classification]) -> dict[str, Any]:
        """Summarise a window of classifications and recommend a strategy."""
        type_counts: dict[str, int] = {}
        severity_counts = {severity.value: 0 for severity in ErrorSeverity}
        total = 0
        for c in classifications:
            total += 1
            type_counts[c.type.value] = type_counts.get(c.type.value, 0) + 1
            severity_counts[c.severity.value] += 1

        rates = (
            {severity.lower(): count / total for severity, count in severity_counts.items()}
            if total else {}
        )
        return {
            "total_errors": total,
            "error_counts": type_counts,
            "severity_counts": severity_counts,
            "error_rate": rates,
            "recommendation": self._recommend(rates),
        }

    def _recommend(self, rates: dict[str, float]) -> dict[str, str]:
        if rates.get("critical", 0.0) >= self.thresholds["critical"]:
            return {
                "action": RecoveryStrategy.CIRCUIT_BREAK.value,
                "message": "Critical error rate too high. Circuit breaker should be activated.",
            }
        if rates.get("high", 0.0) >= self.thresholds["high"]:
            return {
                "action": RecoveryStrategy.RETRY_WITH_BACKOFF.value,
                "message": "High error rate detected. Implement backoff strategy.",
            }
        if rates.get("medium", 0.0) >= self.thresholds["medium"]:
            return {
                "action": RecoveryStrategy.SKIP_AND_LOG.value,
                "message": "Moderate error rate. Consider logging errors for analysis.",
            }
        return {
            "action": RecoveryStrategy.NONE.value,
            "message": "Error rate within acceptable limits.",
        }
