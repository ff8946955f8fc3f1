"""
Time source and background timers.

All engine components read time through a ``Clock`` so tests can drive
cooldowns, reset windows and retention without sleeping. ``PeriodicTask``
is the interval timer used for circuit-breaker counter resets and DLQ
flushes.

Architecture:
    ::

        PeriodicTask.start()
            │
            ▼
        daemon thread:  while not stop_event.wait(interval):
                            callback()      # failures logged, loop continues
            │
        PeriodicTask.stop()  → stop_event.set(); thread.join(timeout)

Tags:
    clock, time, timers, threading, mapspine
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from mapspine.core.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class Clock(Protocol):
    """Injectable time source."""

    def now(self) -> datetime:
        """Current instant as a timezone-aware UTC datetime."""
        ...

    def sleep(self, seconds: float) -> None:
        """Block the calling thread for ``seconds``."""
        ...


class SystemClock:
    """Wall-clock time and real sleeping."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


SYSTEM_CLOCK = SystemClock()


def utc_now() -> datetime:
    """Current UTC time."""
    return datetime.now(UTC)


def to_iso8601(dt: datetime | None) -> str | None:
    """Serialize a datetime as ISO-8601 (UTC ``Z`` suffix)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat().replace("+00:00", "Z")


def from_iso8601(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string produced by ``to_iso8601``."""
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


class PeriodicTask:
    """Run ``callback`` every ``interval`` seconds on a daemon thread.

    Example:
        >>> task = PeriodicTask("dlq_flush", dlq.clear_expired, interval=60.0)
        >>> task.start()
        >>> # ... later ...
        >>> task.stop()
    """

    def __init__(self, name: str, callback: Callable[[], object], interval: float) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                logger.warning("periodic_task_already_started", task=self.name)
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._loop, name=f"mapspine-{self.name}", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _loop(self) -> None:
        logger.debug("periodic_task_started", task=self.name, interval=self.interval)
        while not self._stop_event.wait(self.interval):
            self.tick_count += 1
            try:
                self._callback()
            except Exception as e:
                logger.exception("periodic_task_failed", task=self.name, error=str(e))
        logger.debug("periodic_task_stopped", task=self.name)
