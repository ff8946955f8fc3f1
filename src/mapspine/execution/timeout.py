"""Per-attempt time limits.

``run_with_timeout`` races a callable on a worker thread against the
deadline. When the deadline fires the caller gets ``OperationTimeoutError``
(code ``ETIMEDOUT``) immediately; the worker thread cannot be killed and is
left to finish in the background, its result discarded.

Guardrails:
    - Callables that hold locks or write shared state should check a
      cancellation signal themselves; the timeout only stops waiting.
    - CPU-bound work still occupies the abandoned thread until it returns.

Example:
    >>> run_with_timeout(fetch_customer, 2.0, "fetch_customer", args=("c-42",))
"""

from __future__ import annotations

import concurrent.futures
import functools
import time
from collections.abc import Callable
from typing import Any, ParamSpec, TypeVar

from mapspine.core.errors import OperationTimeoutError

T = TypeVar("T")
P = ParamSpec("P")


def run_with_timeout(
    func: Callable[..., T],
    timeout_seconds: float,
    operation: str | None = None,
    args: tuple[Any, ...] = (),
    kwargs: dict[str, Any] | None = None,
) -> T:
    """Run ``func`` and wait at most ``timeout_seconds`` for its result.

    Raises:
        OperationTimeoutError: If the deadline passes first
        Exception: Whatever ``func`` raised, unchanged
    """
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=1, thread_name_prefix="mapspine-timeout"
    )
    start = time.monotonic()
    future = executor.submit(func, *args, **(kwargs or {}))
    try:
        return future.result(timeout=timeout_seconds)
    except concurrent.futures.TimeoutError:
        raise OperationTimeoutError(
            timeout_seconds,
            elapsed=time.monotonic() - start,
            operation=operation or getattr(func, "__name__", None),
        ) from None
    finally:
        # Never block on an attempt that overran its deadline
        executor.shutdown(wait=False, cancel_futures=True)


def timeout(seconds: float, operation: str | None = None) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Decorator form of ``run_with_timeout``."""

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return run_with_timeout(func, seconds, operation or func.__name__, args, kwargs)

        return wrapper

    return decorator
