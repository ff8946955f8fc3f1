"""mapspine.core -- Foundation primitives shared by every engine component.

Architecture::

    errors.py      Failure taxonomy + MappingError hierarchy + error_code()
    logging.py     structlog configuration and get_logger()
    settings.py    EngineSettings (pydantic-settings, MAPSPINE_ prefix)
    events.py      Synchronous EventEmitter + stable event names
    clock.py       Clock protocol, SystemClock, PeriodicTask, ISO helpers
    records.py     Dotted-path access into nested records
"""

from mapspine.core.clock import SYSTEM_CLOCK, Clock, PeriodicTask, SystemClock
from mapspine.core.errors import (
    CircuitOpenError,
    DLQEntryNotFoundError,
    ErrorSeverity,
    ErrorType,
    MappingError,
    QualityThresholdError,
    RecoveryStrategy,
    RetryExhaustedError,
    ValidationError,
    error_code,
)
from mapspine.core.events import EventEmitter
from mapspine.core.logging import configure_logging, get_logger
from mapspine.core.settings import EngineSettings, get_settings

__all__ = [
    "SYSTEM_CLOCK",
    "Clock",
    "PeriodicTask",
    "SystemClock",
    "CircuitOpenError",
    "DLQEntryNotFoundError",
    "ErrorSeverity",
    "ErrorType",
    "MappingError",
    "QualityThresholdError",
    "RecoveryStrategy",
    "RetryExhaustedError",
    "ValidationError",
    "error_code",
    "EventEmitter",
    "configure_logging",
    "get_logger",
    "EngineSettings",
    "get_settings",
]
