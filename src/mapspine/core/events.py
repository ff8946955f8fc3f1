"""
Synchronous in-process event emitter.

Every engine component owns (or shares) an ``EventEmitter`` and emits the
stable event names listed below. Handlers are called synchronously, in
subscription order, on the thread that caused the event. A failing handler
is logged and never breaks the operation that emitted the event.

Tags:
    events, observer, pub-sub, in-memory, mapspine
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from mapspine.core.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[dict[str, Any]], Any]

# ── Stable event names ──────────────────────────────────────────────────

# Pipeline
PIPELINE_START = "pipelineStart"
STAGE_START = "stageStart"
STAGE_COMPLETE = "stageComplete"
STAGE_ERROR = "stageError"
PIPELINE_COMPLETE = "pipelineComplete"
PIPELINE_ERROR = "pipelineError"
PROGRESS = "progress"

# Retry / circuit breaker
RETRY = "retry"
RETRY_SUCCESS = "retrySuccess"
RETRY_EXHAUSTED = "retryExhausted"
OPEN = "open"
STATE_CHANGE = "stateChange"

# Dead-letter queue
ENTRY_ENQUEUED = "entryEnqueued"
ENTRIES_DEQUEUED = "entriesDequeued"
ENTRY_RESOLVED = "entryResolved"
ENTRY_FAILED = "entryFailed"
ENTRIES_EXPIRED = "entriesExpired"
QUEUE_FULL = "queueFull"
ENTRY_REMOVED = "entryRemoved"
EXPORTED = "exported"

# Rollback
TRANSACTION_STARTED = "transactionStarted"
ACTION_RECORDED = "actionRecorded"
TRANSACTION_COMMITTED = "transactionCommitted"
TRANSACTION_ROLLED_BACK = "transactionRolledBack"
SNAPSHOT_TAKEN = "snapshotTaken"
SNAPSHOT_RESTORED = "snapshotRestored"
SAVEPOINT_CREATED = "savepointCreated"
ACTION_ROLLED_BACK = "actionRolledBack"
ACTION_ROLLBACK_FAILED = "actionRollbackFailed"

# Recovery
ERROR_CLASSIFIED = "errorClassified"
ERROR_RECOVERED = "errorRecovered"
RECOVERY_FAILED = "recoveryFailed"
RECOVERY_ERROR = "recoveryError"
MANUAL_INTERVENTION_REQUIRED = "manualInterventionRequired"
CIRCUIT_BREAKER_OPEN = "circuitBreakerOpen"
DEAD_LETTER_QUEUE_FULL = "deadLetterQueueFull"
DLQ_PROCESSED = "dlqProcessed"

WILDCARD = "*"


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    event: str
    handler: EventHandler
    once: bool = False


class EventEmitter:
    """Thread-safe synchronous event emitter.

    Handlers receive the payload dict. Wildcard subscribers (``"*"``)
    receive a copy of the payload with an added ``event`` key.

    Example::

        events = EventEmitter()
        events.on("retry", lambda payload: print(payload["delay"]))
        events.emit("retry", {"attempt": 1, "delay": 0.5})
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.RLock()

    def on(self, event: str, handler: EventHandler) -> str:
        """Subscribe ``handler`` to ``event`` (or ``"*"``). Returns the subscription id."""
        return self._add(event, handler, once=False)

    def once(self, event: str, handler: EventHandler) -> str:
        """Subscribe for a single delivery."""
        return self._add(event, handler, once=True)

    def off(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns False if it did not exist."""
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()

    def emit(self, event: str, payload: dict[str, Any] | None = None) -> int:
        """Deliver ``payload`` to every matching handler. Returns the delivery count."""
        payload = payload if payload is not None else {}
        with self._lock:
            matching = [
                sub for sub in self._subscriptions.values()
                if sub.event == event or sub.event == WILDCARD
            ]
            for sub in matching:
                if sub.once:
                    self._subscriptions.pop(sub.id, None)

        for sub in matching:
            body = payload if sub.event == event else {"event": event, **payload}
            try:
                sub.handler(body)
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub.id,
                    event_type=event,
                    error=str(e),
                )
        return len(matching)

    def listener_count(self, event: str | None = None) -> int:
        with self._lock:
            if event is None:
                return len(self._subscriptions)
            return sum(1 for sub in self._subscriptions.values() if sub.event == event)

    def _add(self, event: str, handler: EventHandler, *, once: bool) -> str:
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._subscriptions[sub_id] = Subscription(
                id=sub_id, event=event, handler=handler, once=once
            )
        return sub_id
