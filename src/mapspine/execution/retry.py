"""Retry manager with backoff policies, jitter and circuit-breaker integration.

``RetryManager.execute`` calls a thunk up to ``max_retries + 1`` times:

- Before each attempt the shared circuit breaker (if any) is consulted. A
  rejection raises ``CircuitOpenError`` straight to the caller; it is never
  retried.
- A failure that the retry predicate rejects is re-raised unchanged.
- A retryable failure waits ``calculate_delay(attempt)`` and tries again.
- When attempts run out the last failure is wrapped in
  ``RetryExhaustedError`` (code ``RETRY_EXHAUSTED``).

Delay policies (``attempt`` is zero-based, delays in seconds)::

    EXPONENTIAL_BACKOFF   min(initial * factor ** attempt, max_delay)
    LINEAR_BACKOFF        min(initial * (attempt + 1), max_delay)
    FIXED_DELAY           initial
    FIBONACCI_BACKOFF     min(fib(attempt + 1) * initial, max_delay)
    CUSTOM                custom_delay(attempt)

With jitter the delay is multiplied by a factor drawn uniformly from
[0.9, 1.1] using the manager's ``random.Random``.

Example:
    >>> manager = RetryManager(RetryOptions(max_retries=3, initial_delay=0.5))
    >>> manager.execute(lambda: fetch_customer("c-42"))
"""

from __future__ import annotations

import functools
import random
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, TypeVar

from mapspine.core import events as ev
from mapspine.core.clock import SYSTEM_CLOCK, Clock
from mapspine.core.errors import CircuitOpenError, RetryExhaustedError, error_code
from mapspine.core.events import EventEmitter
from mapspine.core.logging import get_logger
from mapspine.core.settings import EngineSettings, get_settings
from mapspine.execution.circuit_breaker import CircuitBreaker
from mapspine.execution.timeout import run_with_timeout

T = TypeVar("T")

logger = get_logger(__name__)

RetryPredicate = Callable[[BaseException], bool]

DEFAULT_RETRYABLE_MARKERS: tuple[str, ...] = (
    "ECONNREFUSED",
    "ETIMEDOUT",
    "ENOTFOUND",
    "ENETUNREACH",
    "EAI_AGAIN",
    "timeout",
    "network",
)


class RetryPolicy(str, Enum):
    """Delay growth between attempts."""

    EXPONENTIAL_BACKOFF = "EXPONENTIAL_BACKOFF"
    LINEAR_BACKOFF = "LINEAR_BACKOFF"
    FIXED_DELAY = "FIXED_DELAY"
    FIBONACCI_BACKOFF = "FIBONACCI_BACKOFF"
    CUSTOM = "CUSTOM"


def fibonacci(n: int) -> int:
    """n-th Fibonacci number with fib(0)=0, fib(1)=fib(2)=1."""
    a, b = 0, 1
    for _ in range(n):
        a, b = b, a + b
    return a


class BackoffStrategy(ABC):
    """Abstract base for delay strategies (delay before jitter)."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds after the zero-based ``attempt`` failed."""
        ...


@dataclass
class ExponentialBackoff(BackoffStrategy):
    initial_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0

    def next_delay(self, attempt: int) -> float:
        return min(self.initial_delay * (self.factor ** attempt), self.max_delay)


@dataclass
class LinearBackoff(BackoffStrategy):
    initial_delay: float = 1.0
    max_delay: float = 30.0

    def next_delay(self, attempt: int) -> float:
        return min(self.initial_delay * (attempt + 1), self.max_delay)


@dataclass
class FixedDelay(BackoffStrategy):
    initial_delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return self.initial_delay


@dataclass
class FibonacciBackoff(BackoffStrategy):
    initial_delay: float = 1.0
    max_delay: float = 30.0

    def next_delay(self, attempt: int) -> float:
        return min(fibonacci(attempt + 1) * self.initial_delay, self.max_delay)


@dataclass
class CustomBackoff(BackoffStrategy):
    func: Callable[[int], float]

    def next_delay(self, attempt: int) -> float:
        return float(self.func(attempt))


@dataclass
class RetryOptions:
    """Per-call retry configuration.

    Attributes:
        max_retries: Retries after the first attempt
        policy: Delay policy
        initial_delay: Base delay in seconds
        max_delay: Delay cap in seconds
        factor: Exponential growth factor
        jitter: Multiply each delay by uniform(0.9, 1.1)
        timeout: Per-attempt time limit in seconds (None = unlimited)
        retryable: Predicate, or iterable of substrings / compiled regexes
            matched against the error message and code
        custom_delay: Delay function for ``RetryPolicy.CUSTOM``
        on_retry: Callback ``(attempt, error, delay)`` before each wait
    """

    max_retries: int = 3
    policy: RetryPolicy = RetryPolicy.EXPONENTIAL_BACKOFF
    initial_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0
    jitter: bool = True
    timeout: float | None = None
    retryable: RetryPredicate | Iterable[str | re.Pattern[str]] | None = None
    custom_delay: Callable[[int], float] | None = None
    on_retry: Callable[[int, BaseException, float], None] | None = None

    @classmethod
    def from_settings(cls, settings: EngineSettings | None = None, **kwargs: Any) -> RetryOptions:
        settings = settings or get_settings()
        params: dict[str, Any] = {
            "max_retries": settings.retry_max_retries,
            "initial_delay": settings.retry_initial_delay,
            "max_delay": settings.retry_max_delay,
            "factor": settings.retry_factor,
            "jitter": settings.retry_jitter,
        }
        params.update(kwargs)
        return cls(**params)

    def strategy(self) -> BackoffStrategy:
        if self.policy == RetryPolicy.EXPONENTIAL_BACKOFF:
            return ExponentialBackoff(self.initial_delay, self.max_delay, self.factor)
        if self.policy == RetryPolicy.LINEAR_BACKOFF:
            return LinearBackoff(self.initial_delay, self.max_delay)
        if self.policy == RetryPolicy.FIXED_DELAY:
            return FixedDelay(self.initial_delay)
        if self.policy == RetryPolicy.FIBONACCI_BACKOFF:
            return FibonacciBackoff(self.initial_delay, self.max_delay)
        if self.custom_delay is None:
            raise ValueError("RetryPolicy.CUSTOM requires custom_delay")
        return CustomBackoff(self.custom_delay)


@dataclass
class RetryStats:
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    total_retries: int = 0
    retry_successes: int = 0
    retry_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        finished = self.retry_successes + self.retry_failures
        return {
            "total_attempts": self.total_attempts,
            "successful_attempts": self.successful_attempts,
            "failed_attempts": self.failed_attempts,
            "total_retries": self.total_retries,
            "retry_successes": self.retry_successes,
            "retry_failures": self.retry_failures,
            "success_rate": self.successful_attempts / self.total_attempts if self.total_attempts else 0.0,
            "retry_success_rate": self.retry_successes / finished if finished else 0.0,
        }


def default_is_retryable(error: BaseException) -> bool:
    """Substring match of message and code against well-known transient markers."""
    return _matches_markers(error, DEFAULT_RETRYABLE_MARKERS)


def _matches_markers(error: BaseException, markers: Iterable[str | re.Pattern[str]]) -> bool:
    haystacks = [str(error)]
    code = error_code(error)
    if code:
        haystacks.append(code)
    lowered = [h.lower() for h in haystacks]
    for marker in markers:
        if isinstance(marker, re.Pattern):
            if any(marker.search(h) for h in haystacks):
                return True
        elif any(marker.lower() in h for h in lowered):
            return True
    return False


class RetryManager:
    """Bounded retries around a thunk, sharing one circuit breaker.

    Emits ``retry``, ``retrySuccess`` and ``retryExhausted``. The circuit
    breaker emits ``stateChange`` and ``open`` on the same emitter when it
    was built by the manager.
    """

    def __init__(
        self,
        options: RetryOptions | None = None,
        *,
        circuit_breaker: CircuitBreaker | None = None,
        events: EventEmitter | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.options = options or RetryOptions()
        self.circuit_breaker = circuit_breaker
        self.events = events or EventEmitter()
        self.clock = clock or SYSTEM_CLOCK
        self.rng = rng or random.Random()
        self._stats = RetryStats()
        self._lock = threading.Lock()

    def calculate_delay(self, attempt: int, options: RetryOptions | None = None) -> float:
        options = options or self.options
        delay = options.strategy().next_delay(attempt)
        if options.jitter:
            delay *= self.rng.uniform(0.9, 1.1)
        return max(0.0, delay)

    def is_retryable(self, error: BaseException, options: RetryOptions | None = None) -> bool:
        if isinstance(error, CircuitOpenError):
            return False
        retryable = (options or self.options).retryable
        if retryable is None:
            return default_is_retryable(error)
        if callable(retryable):
            return bool(retryable(error))
        return _matches_markers(error, retryable)

    def execute(self, func: Callable[[], T], options: RetryOptions | None = None, **overrides: Any) -> T:
        """Run ``func`` with retries.

        Args:
            func: Zero-argument callable
            options: Replaces the manager defaults for this call
            **overrides: Individual ``RetryOptions`` fields for this call

        Raises:
            CircuitOpenError: The breaker rejected an attempt
            RetryExhaustedError: Every attempt failed with a retryable error
            Exception: The first non-retryable failure, unchanged
        """
        opts = options or self.options
        if overrides:
            opts = replace(opts, **overrides)

        last_error: BaseException | None = None
        for attempt in range(opts.max_retries + 1):
            if self.circuit_breaker is not None and not self.circuit_breaker.can_execute():
                logger.warning("retry_rejected_by_circuit", circuit=self.circuit_breaker.name, attempt=attempt)
                raise CircuitOpenError(name=self.circuit_breaker.name)

            with self._lock:
                self._stats.total_attempts += 1
            try:
                if opts.timeout is not None:
                    result = run_with_timeout(func, opts.timeout)
                else:
                    result = func()
            except Exception as e:
                last_error = e
                with self._lock:
                    self._stats.failed_attempts += 1
                if self.circuit_breaker is not None:
                    self.circuit_breaker.record_failure(e)

                if not self.is_retryable(e, opts):
                    logger.debug("retry_not_retryable", attempt=attempt, error=str(e))
                    raise
                if attempt >= opts.max_retries:
                    break

                delay = self.calculate_delay(attempt, opts)
                with self._lock:
                    self._stats.total_retries += 1
                logger.info("retry_scheduled", attempt=attempt + 1, delay=delay, error=str(e))
                self.events.emit(ev.RETRY, {
                    "attempt": attempt + 1,
                    "next_attempt": attempt + 2,
                    "delay": delay,
                    "error": e,
                })
                if opts.on_retry is not None:
                    opts.on_retry(attempt + 1, e, delay)
                self.clock.sleep(delay)
                continue

            with self._lock:
                self._stats.successful_attempts += 1
                if attempt > 0:
                    self._stats.retry_successes += 1
            if self.circuit_breaker is not None:
                self.circuit_breaker.record_success()
            if attempt > 0:
                self.events.emit(ev.RETRY_SUCCESS, {"retries": attempt, "total_attempts": attempt + 1})
            return result

        attempts = opts.max_retries + 1
        with self._lock:
            self._stats.retry_failures += 1
        logger.warning("retry_exhausted", attempts=attempts, error=str(last_error))
        self.events.emit(ev.RETRY_EXHAUSTED, {"attempts": attempts, "last_error": last_error})
        raise RetryExhaustedError(last_error, attempts) from last_error

    def wrap(self, func: Callable[..., T], options: RetryOptions | None = None) -> Callable[..., T]:
        """Return a retried version of ``func``."""

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return self.execute(lambda: func(*args, **kwargs), options)

        return wrapper

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            stats = self._stats.to_dict()
        if self.circuit_breaker is not None:
            stats["circuit_breaker"] = self.circuit_breaker.get_state()
        return stats

    def reset_stats(self) -> None:
        with self._lock:
            self._stats = RetryStats()

    def shutdown(self) -> None:
        if self.circuit_breaker is not None:
            self.circuit_breaker.shutdown()


def with_retry(
    options: RetryOptions | None = None,
    manager: RetryManager | None = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator factory to add retry logic to a function.

    Example:
        >>> @with_retry(RetryOptions(max_retries=2, jitter=False))
        ... def push_record(record):
        ...     return client.upsert(record)
    """
    runner = manager or RetryManager(options)

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        return runner.wrap(func, options)

    return decorator


__all__ = [
    "RetryPolicy",
    "RetryOptions",
    "RetryManager",
    "RetryStats",
    "BackoffStrategy",
    "ExponentialBackoff",
    "LinearBackoff",
    "FixedDelay",
    "FibonacciBackoff",
    "CustomBackoff",
    "default_is_retryable",
    "fibonacci",
    "with_retry",
]
