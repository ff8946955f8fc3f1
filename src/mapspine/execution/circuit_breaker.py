"""Circuit breaker pattern for fault tolerance.

Prevents cascading failures by failing fast when an upstream keeps failing.

States:
    CLOSED: Normal operation, requests pass through
    OPEN: Failing fast, requests rejected until ``next_attempt_time``
    HALF_OPEN: Probing; one success closes, one failure re-opens

Transitions:
    CLOSED → OPEN       requests >= minimum_requests and failures >= failure_threshold
    OPEN → HALF_OPEN    now >= next_attempt_time (checked in ``can_execute``)
    HALF_OPEN → CLOSED  one success (all counters reset)
    HALF_OPEN → OPEN    one failure

While CLOSED the counters are reset every ``monitoring_period`` seconds by
a background ``PeriodicTask`` (started by ``from_settings``, the registry
or ``start_monitoring``), so the threshold applies to a rolling window
rather than the process lifetime.

Example:
    >>> breaker = CircuitBreaker(failure_threshold=5, minimum_requests=5)
    >>> result = breaker.call(fetch_customer, "c-42")
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from mapspine.core import events as ev
from mapspine.core.clock import SYSTEM_CLOCK, Clock, PeriodicTask, to_iso8601
from mapspine.core.errors import CircuitOpenError
from mapspine.core.events import EventEmitter
from mapspine.core.logging import get_logger
from mapspine.core.settings import EngineSettings, get_settings

T = TypeVar("T")

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"        # Normal operation
    OPEN = "OPEN"            # Rejecting requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass
class CircuitStats:
    """Lifetime statistics (never reset by the monitoring window)."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_state_change: datetime | None = None

    @property
    def failure_rate(self) -> float:
        """Failure rate as a percentage of completed requests."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100


@dataclass
class CircuitBreaker:
    """Shared three-state guard for one upstream.

    Attributes:
        name: Identifier for this circuit
        failure_threshold: Failures in the window before opening
        reset_timeout: Seconds to stay OPEN before probing
        monitoring_period: Seconds between counter resets while CLOSED
        minimum_requests: Requests in the window before the threshold applies
    """

    name: str = "default"
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    monitoring_period: float = 10.0
    minimum_requests: int = 10
    clock: Clock = field(default=SYSTEM_CLOCK, repr=False)
    events: EventEmitter = field(default_factory=EventEmitter, repr=False)

    # Internal state
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failures: int = field(default=0, init=False)
    _successes: int = field(default=0, init=False)
    _requests: int = field(default=0, init=False)
    _last_failure_time: datetime | None = field(default=None, init=False)
    _next_attempt_time: datetime | None = field(default=None, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)
    _monitor: PeriodicTask | None = field(default=None, init=False, repr=False)

    @classmethod
    def from_settings(
        cls,
        name: str = "default",
        settings: EngineSettings | None = None,
        *,
        background_tasks: bool = True,
        **kwargs: Any,
    ) -> CircuitBreaker:
        """Build a breaker from settings and start its counter reset unless ``background_tasks`` is off."""
        settings = settings or get_settings()
        params: dict[str, Any] = {
            "failure_threshold": settings.breaker_failure_threshold,
            "reset_timeout": settings.breaker_reset_timeout,
            "monitoring_period": settings.breaker_monitoring_period,
            "minimum_requests": settings.breaker_minimum_requests,
        }
        params.update(kwargs)
        breaker = cls(name=name, **params)
        if background_tasks:
            breaker.start_monitoring()
        return breaker

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    def can_execute(self) -> bool:
        """Check whether a request may run now, moving OPEN → HALF_OPEN when due."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if self._next_attempt_time is not None and self.clock.now() >= self._next_attempt_time:
                    self._transition_to(CircuitState.HALF_OPEN)
                    return True
                self._stats.rejected_requests += 1
                return False
            return True

    def record_success(self) -> None:
        with self._lock:
            self._successes += 1
            self._requests += 1
            self._stats.total_requests += 1
            self._stats.successful_requests += 1
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._failures += 1
            self._requests += 1
            self._stats.total_requests += 1
            self._stats.failed_requests += 1
            self._last_failure_time = self.clock.now()
            if self._state == CircuitState.HALF_OPEN:
                self._open(error)
            elif self._state == CircuitState.CLOSED and self._should_open():
                self._open(error)

    def _should_open(self) -> bool:
        return self._requests >= self.minimum_requests and self._failures >= self.failure_threshold

    def _open(self, error: BaseException | None) -> None:
        self._next_attempt_time = self.clock.now() + timedelta(seconds=self.reset_timeout)
        self._transition_to(CircuitState.OPEN)
        logger.warning(
            "circuit_opened",
            circuit=self.name,
            failures=self._failures,
            requests=self._requests,
            next_attempt_time=to_iso8601(self._next_attempt_time),
            error=str(error) if error is not None else None,
        )
        self.events.emit(ev.OPEN, {
            "name": self.name,
            "failures": self._failures,
            "requests": self._requests,
            "next_attempt_time": self._next_attempt_time,
        })

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._stats.state_changes += 1
        self._stats.last_state_change = self.clock.now()

        if new_state == CircuitState.CLOSED:
            self._reset_counters()
            self._next_attempt_time = None

        logger.info("circuit_state_change", circuit=self.name, old_state=old_state.value, new_state=new_state.value)
        self.events.emit(ev.STATE_CHANGE, {
            "name": self.name,
            "from": old_state.value,
            "to": new_state.value,
        })

    def _reset_counters(self) -> None:
        self._failures = 0
        self._successes = 0
        self._requests = 0

    def reset_counters(self) -> None:
        """Clear the window counters if CLOSED. Called by the monitoring task."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                self._reset_counters()

    def close(self) -> None:
        """Manually close the circuit (maintenance / tests)."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._reset_counters()
            self._last_failure_time = None

    def get_state(self) -> dict[str, Any]:
        """Consistent snapshot of the breaker."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": self._failures,
                "successes": self._successes,
                "requests": self._requests,
                "last_failure_time": to_iso8601(self._last_failure_time),
                "next_attempt_time": to_iso8601(self._next_attempt_time),
                "failure_rate": self._stats.failure_rate,
                "rejected_requests": self._stats.rejected_requests,
            }

    def start_monitoring(self) -> None:
        """Start the background counter reset."""
        with self._lock:
            if self._monitor is None:
                self._monitor = PeriodicTask(
                    f"breaker-{self.name}", self.reset_counters, self.monitoring_period
                )
            monitor = self._monitor
        if not monitor.running:
            monitor.start()

    def shutdown(self) -> None:
        with self._lock:
            monitor, self._monitor = self._monitor, None
        if monitor is not None:
            monitor.stop()

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute a function through the circuit breaker.

        Raises:
            CircuitOpenError: If the circuit rejects the call
        """
        if not self.can_execute():
            raise CircuitOpenError(name=self.name)
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result


class CircuitBreakerRegistry:
    """Registry of named circuit breakers (one per upstream)."""

    def __init__(self) -> None:
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.RLock()

    def get(self, name: str) -> CircuitBreaker | None:
        with self._lock:
            return self._breakers.get(name)

    def get_or_create(self, name: str, **kwargs: Any) -> CircuitBreaker:
        with self._lock:
            if name not in self._breakers:
                breaker = CircuitBreaker(name=name, **kwargs)
                breaker.start_monitoring()
                self._breakers[name] = breaker
            return self._breakers[name]

    def list_all(self) -> list[str]:
        with self._lock:
            return list(self._breakers.keys())

    def close_all(self) -> None:
        with self._lock:
            for breaker in self._breakers.values():
                breaker.close()

    def shutdown(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
            self._breakers.clear()
        for breaker in breakers:
            breaker.shutdown()
