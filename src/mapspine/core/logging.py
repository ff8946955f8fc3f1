"""
Structured logging for the mapping engine.

Every module logs through structlog with snake_case event names and keyword
fields::

    logger = get_logger(__name__)
    logger.info("stage_complete", stage="map_fields", duration_ms=3.2)

``configure_logging`` is called once by the host application (or by the
CLI); library code never configures logging on import.

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, service="mapspine")
            │
            ▼
        processor chain:
          1. TimeStamper (ISO, UTC)
          2. merge_contextvars   (execution_id, mapping_id bound per run)
          3. add_log_level
          4. service metadata
          5. JSONRenderer  (non-tty)  |  ConsoleRenderer (tty)

    The engine reports severities through the standard structlog methods.
    A classified CRITICAL failure is logged with ``critical``; the other
    levels map one to one (HIGH→error, MEDIUM→warning, LOW→info,
    WARNING→debug).

Examples:
    >>> from mapspine.core.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG", json_format=True, service="mapper")
    >>> get_logger(__name__).debug("mapping_loaded", rules=12)

    Scoping fields to one execution:

    >>> with LogContext(execution_id="exec_42"):
    ...     get_logger(__name__).info("record_mapped")

Tags:
    logging, structlog, observability, json-logging, mapspine
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "mapspine"
_configured = False


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service", _SERVICE_NAME)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "mapspine",
    add_timestamp: bool = True,
    force: bool = False,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Service name to include in logs
        add_timestamp: Include ISO timestamp in logs
        force: Reconfigure even if already configured
    """
    global _SERVICE_NAME, _configured
    if _configured and not force:
        return
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stderr.isatty()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]
    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))

    if json_format:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs of this thread/task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager for scoped logging context.

    Example:
        with LogContext(execution_id="exec_42", mapping_id="crm_to_erp"):
            logger.info("pipeline_start")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
