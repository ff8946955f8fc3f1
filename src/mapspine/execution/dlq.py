"""Dead Letter Queue (DLQ) - capture, inspect and reprocess failed records.

WHY
───
A record that cannot be mapped must not disappear. The DLQ keeps the
record, the failure and the execution context so operators (or
``ErrorRecovery.process_dlq_entries``) can retry, resolve or expire it.

ARCHITECTURE
────────────
::

    DeadLetterQueue(max_size, retention_seconds, storage)
      ├── .enqueue(record, error, context)   ─ pending entry, FIFO eviction at capacity
      ├── .dequeue(limit, filter)            ─ pending entries past their cooldown
      ├── .mark_as_resolved(id, result)      ─ remove from queue and storage
      ├── .mark_as_failed(id, error, retry)  ─ back to pending, or failed
      ├── .search(...) / .get_entry(id)      ─ read-only snapshots
      ├── .bulk_resolve(ids)
      ├── .clear_expired()                   ─ retention sweep (background, every flush_interval)
      ├── .export_to_file(path)
      └── .get_statistics()

    DLQStorage (dlq_storage.py)  ─ MemoryStorage | FileStorage

STATUS LIFECYCLE
────────────────
::

    pending ──dequeue──▶ processing ──resolve──▶ resolved (removed)
       ▲                     │
       └──fail(retry=True)───┤
                             └──fail(retry=False)──▶ failed (kept until expiry)

Cooldown between reprocessing attempts is ``min(60s * 2**attempts, 1h)``.

Entry ids have the form ``dlq_<microsecond timestamp>_<random>``. The
timestamp is strictly increasing within a process, so sorting ids by it
reproduces insertion order when a file-backed queue is reloaded.

Example::

    dlq = DeadLetterQueue(max_size=1000)
    entry_id = dlq.enqueue({"id": 7}, ValueError("bad email"), {"mapping_id": "crm"})
    for entry in dlq.dequeue(limit=10):
        ...
        dlq.mark_as_resolved(entry.id)
"""

from __future__ import annotations

import copy
import json
import random
import re
import string
import threading
import traceback
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from mapspine.core import events as ev
from mapspine.core.clock import SYSTEM_CLOCK, Clock, PeriodicTask, from_iso8601, to_iso8601
from mapspine.core.errors import DLQEntryNotFoundError, error_code
from mapspine.core.events import EventEmitter
from mapspine.core.logging import get_logger
from mapspine.core.settings import EngineSettings, get_settings
from mapspine.execution.dlq_storage import DLQStorage, FileStorage, MemoryStorage

logger = get_logger(__name__)

COOLDOWN_BASE_SECONDS = 60.0
COOLDOWN_MAX_SECONDS = 3600.0

_ID_RE = re.compile(r"^dlq_(\d+)_")
_ID_ALPHABET = string.ascii_lowercase + string.digits


class DLQStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RESOLVED = "resolved"
    FAILED = "failed"


def describe_error(error: BaseException | str | dict[str, Any], include_stack: bool = True) -> dict[str, Any]:
    """Serializable ``{message, code, name, stack}`` view of a failure."""
    if isinstance(error, dict):
        return dict(error)
    if isinstance(error, str):
        return {"message": error, "code": None, "name": "Error"}
    info: dict[str, Any] = {
        "message": str(error),
        "code": error_code(error),
        "name": type(error).__name__,
    }
    if include_stack:
        info["stack"] = "".join(traceback.format_exception(error))
    return info


def cooldown_seconds(attempt_count: int) -> float:
    """Wait before an entry with ``attempt_count`` failed attempts is eligible again."""
    return min(COOLDOWN_BASE_SECONDS * (2 ** attempt_count), COOLDOWN_MAX_SECONDS)


def id_sort_key(entry_id: str) -> tuple[int, str]:
    match = _ID_RE.match(entry_id)
    return (int(match.group(1)) if match else 0, entry_id)


@dataclass
class DeadLetterEntry:
    """One failed record.

    ``context`` always carries ``enqueued_at``, ``retry_count``,
    ``mapping_id``, ``execution_id`` and ``classification`` plus any extra
    keys the caller supplied.
    """

    id: str
    record: Any
    error: dict[str, Any]
    context: dict[str, Any]
    status: DLQStatus = DLQStatus.PENDING
    attempts: list[dict[str, Any]] = field(default_factory=list)
    last_attempt: datetime | None = None
    resolved_at: datetime | None = None
    failed_at: datetime | None = None
    result: Any = None

    @property
    def enqueued_at(self) -> datetime:
        return self.context["enqueued_at"]

    @property
    def mapping_id(self) -> str | None:
        return self.context.get("mapping_id")

    def to_dict(self) -> dict[str, Any]:
        context = dict(self.context)
        context["enqueued_at"] = to_iso8601(self.enqueued_at)
        return {
            "id": self.id,
            "record": self.record,
            "error": self.error,
            "context": context,
            "status": self.status.value,
            "attempts": [
                {**attempt, "timestamp": to_iso8601(attempt["timestamp"])}
                for attempt in self.attempts
            ],
            "last_attempt": to_iso8601(self.last_attempt),
            "resolved_at": to_iso8601(self.resolved_at),
            "failed_at": to_iso8601(self.failed_at),
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeadLetterEntry:
        context = dict(data["context"])
        context["enqueued_at"] = from_iso8601(context["enqueued_at"])
        return cls(
            id=data["id"],
            record=data.get("record"),
            error=data.get("error") or {},
            context=context,
            status=DLQStatus(data.get("status", DLQStatus.PENDING.value)),
            attempts=[
                {**attempt, "timestamp": from_iso8601(attempt["timestamp"])}
                for attempt in data.get("attempts", [])
            ],
            last_attempt=from_iso8601(data.get("last_attempt")),
            resolved_at=from_iso8601(data.get("resolved_at")),
            failed_at=from_iso8601(data.get("failed_at")),
            result=data.get("result"),
        )


@dataclass
class DLQCounters:
    total_enqueued: int = 0
    total_dequeued: int = 0
    total_expired: int = 0
    total_reprocessed: int = 0


class DeadLetterQueue:
    """Bounded FIFO store of failed records with a status lifecycle.

    All mutations happen under one lock; every read returns deep-copied
    entries so callers see a consistent snapshot.
    """

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        retention_seconds: float = 7 * 24 * 3600.0,
        flush_interval: float = 60.0,
        storage: DLQStorage | None = None,
        events: EventEmitter | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        background_tasks: bool = True,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.retention_seconds = retention_seconds
        self.flush_interval = flush_interval
        self.storage: DLQStorage = storage or MemoryStorage()
        self.events = events or EventEmitter()
        self.clock = clock or SYSTEM_CLOCK
        self._rng = rng or random.Random()

        self._queue: dict[str, DeadLetterEntry] = {}
        self._counters = DLQCounters()
        self._lock = threading.RLock()
        self._expiry_lock = threading.Lock()
        self._last_stamp = 0
        self._flush_task: PeriodicTask | None = None

        for entry in self.storage.load():
            if entry.status == DLQStatus.PROCESSING:
                # Left behind by a process that died mid-reprocessing
                entry.status = DLQStatus.PENDING
                self.storage.save(entry)
                logger.warning("dlq_entry_requeued", entry_id=entry.id)
            self._queue[entry.id] = entry
            self._last_stamp = max(self._last_stamp, id_sort_key(entry.id)[0])

        if background_tasks:
            self.start()

    @classmethod
    def from_settings(cls, settings: EngineSettings | None = None, **kwargs: Any) -> DeadLetterQueue:
        settings = settings or get_settings()
        if "storage" not in kwargs and settings.dlq_storage == "file":
            kwargs["storage"] = FileStorage(settings.dlq_storage_path, fsync=settings.dlq_fsync)
        params: dict[str, Any] = {
            "max_size": settings.dlq_max_size,
            "retention_seconds": settings.dlq_retention_seconds,
            "flush_interval": settings.dlq_flush_interval,
        }
        params.update(kwargs)
        return cls(**params)

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        """Start the background expiry sweep."""
        with self._lock:
            if self._flush_task is None:
                self._flush_task = PeriodicTask("dlq-flush", self._flush, self.flush_interval)
        self._flush_task.start()

    def shutdown(self) -> None:
        with self._lock:
            task, self._flush_task = self._flush_task, None
        if task is not None:
            task.stop()

    def _flush(self) -> None:
        self.clear_expired()
        logger.debug("dlq_stats", **{k: v for k, v in self.get_statistics().items() if isinstance(v, int)})

    # ── Core operations ──────────────────────────────────────────

    def _generate_id(self) -> str:
        stamp = int(self.clock.now().timestamp() * 1_000_000)
        stamp = max(stamp, self._last_stamp + 1)
        self._last_stamp = stamp
        suffix = "".join(self._rng.choices(_ID_ALPHABET, k=7))
        return f"dlq_{stamp:017d}_{suffix}"

    def enqueue(
        self,
        record: Any,
        error: BaseException | str | dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> str:
        """Add a failed record. Returns the new entry id."""
        context = dict(context or {})
        with self._lock:
            entry = DeadLetterEntry(
                id=self._generate_id(),
                record=copy.deepcopy(record),
                error=describe_error(error),
                context={
                    **context,
                    "enqueued_at": self.clock.now(),
                    "retry_count": context.get("retry_count", 0),
                    "mapping_id": context.get("mapping_id"),
                    "execution_id": context.get("execution_id"),
                    "classification": context.get("classification"),
                },
            )

            if len(self._queue) >= self.max_size:
                self.events.emit(ev.QUEUE_FULL, {"size": len(self._queue), "max_size": self.max_size})
                oldest_id = next(iter(self._queue))
                removed = self._queue.pop(oldest_id)
                self.storage.delete(oldest_id)
                logger.warning("dlq_entry_evicted", entry_id=oldest_id, reason="capacity")
                self.events.emit(ev.ENTRY_REMOVED, {"entry": removed, "reason": "capacity"})

            self._queue[entry.id] = entry
            self.storage.save(entry)
            self._counters.total_enqueued += 1
            logger.info(
                "dlq_entry_enqueued",
                entry_id=entry.id,
                mapping_id=entry.mapping_id,
                error=entry.error.get("message"),
            )
            self.events.emit(ev.ENTRY_ENQUEUED, {"entry": copy.deepcopy(entry)})
            return entry.id

    def dequeue(
        self,
        limit: int = 10,
        filter: Callable[[DeadLetterEntry], bool] | None = None,
        mark_as_processing: bool = True,
    ) -> list[DeadLetterEntry]:
        """Select up to ``limit`` entries in FIFO order that are not processing
        and whose cooldown has elapsed."""
        now = self.clock.now()
        selected: list[DeadLetterEntry] = []
        with self._lock:
            for entry in self._queue.values():
                if len(selected) >= limit:
                    break
                if entry.status == DLQStatus.PROCESSING:
                    continue
                if filter is not None and not filter(entry):
                    continue
                if entry.last_attempt is not None:
                    ready_at = entry.last_attempt + timedelta(seconds=cooldown_seconds(len(entry.attempts)))
                    if now < ready_at:
                        continue
                if mark_as_processing:
                    entry.status = DLQStatus.PROCESSING
                    entry.last_attempt = now
                    self.storage.save(entry)
                selected.append(copy.deepcopy(entry))

            self._counters.total_dequeued += len(selected)
            if selected:
                self.events.emit(ev.ENTRIES_DEQUEUED, {"entries": selected, "count": len(selected)})
        return selected

    def _require(self, entry_id: str) -> DeadLetterEntry:
        entry = self._queue.get(entry_id)
        if entry is None:
            raise DLQEntryNotFoundError(entry_id)
        return entry

    def mark_as_resolved(self, entry_id: str, result: Any = None) -> DeadLetterEntry:
        """Resolve an entry; it leaves the queue and its backing record is deleted."""
        with self._lock:
            entry = self._require(entry_id)
            entry.status = DLQStatus.RESOLVED
            entry.resolved_at = self.clock.now()
            entry.result = result
            del self._queue[entry_id]
            self.storage.delete(entry_id)
            self._counters.total_reprocessed += 1
            logger.info("dlq_entry_resolved", entry_id=entry_id)
            self.events.emit(ev.ENTRY_RESOLVED, {"entry": entry})
            return entry

    def mark_as_failed(
        self,
        entry_id: str,
        error: BaseException | str | dict[str, Any],
        should_retry: bool = True,
    ) -> DeadLetterEntry:
        """Record a failed reprocessing attempt."""
        with self._lock:
            entry = self._require(entry_id)
            now = self.clock.now()
            info = describe_error(error, include_stack=False)
            entry.attempts.append({
                "timestamp": now,
                "error": {"message": info.get("message"), "code": info.get("code")},
            })
            if should_retry:
                entry.status = DLQStatus.PENDING
            else:
                entry.status = DLQStatus.FAILED
                entry.failed_at = now
            self.storage.save(entry)
            logger.info(
                "dlq_entry_failed",
                entry_id=entry_id,
                attempts=len(entry.attempts),
                should_retry=should_retry,
            )
            snapshot = copy.deepcopy(entry)
            self.events.emit(ev.ENTRY_FAILED, {"entry": snapshot, "error": error, "should_retry": should_retry})
            return snapshot

    # ── Queries ──────────────────────────────────────────────────

    def get_entry(self, entry_id: str) -> DeadLetterEntry | None:
        with self._lock:
            entry = self._queue.get(entry_id)
            return copy.deepcopy(entry) if entry is not None else None

    def entries(self) -> list[DeadLetterEntry]:
        """Snapshot of the queue in FIFO order."""
        with self._lock:
            return copy.deepcopy(list(self._queue.values()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def size(self) -> int:
        return len(self)

    def search(
        self,
        *,
        status: DLQStatus | str | None = None,
        mapping_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        error_pattern: str | None = None,
        limit: int = 100,
    ) -> list[DeadLetterEntry]:
        """Filter entries; all criteria are combined with AND."""
        pattern = re.compile(error_pattern, re.IGNORECASE) if error_pattern else None
        status = DLQStatus(status) if status is not None else None
        results: list[DeadLetterEntry] = []
        with self._lock:
            for entry in self._queue.values():
                if len(results) >= limit:
                    break
                if status is not None and entry.status != status:
                    continue
                if mapping_id is not None and entry.mapping_id != mapping_id:
                    continue
                if start_date is not None and entry.enqueued_at < start_date:
                    continue
                if end_date is not None and entry.enqueued_at > end_date:
                    continue
                if pattern is not None and not (
                    pattern.search(entry.error.get("message") or "")
                    or pattern.search(entry.error.get("code") or "")
                ):
                    continue
                results.append(copy.deepcopy(entry))
        return results

    def get_statistics(self) -> dict[str, Any]:
        with self._lock:
            status_counts: dict[str, int] = {}
            context_counts: dict[str, int] = {}
            for entry in self._queue.values():
                status_counts[entry.status.value] = status_counts.get(entry.status.value, 0) + 1
                mapping_id = entry.mapping_id or "unknown"
                context_counts[mapping_id] = context_counts.get(mapping_id, 0) + 1
            ordered = list(self._queue.values())
            return {
                "total_enqueued": self._counters.total_enqueued,
                "total_dequeued": self._counters.total_dequeued,
                "total_expired": self._counters.total_expired,
                "total_reprocessed": self._counters.total_reprocessed,
                "current_size": len(ordered),
                "status_counts": status_counts,
                "context_counts": context_counts,
                "oldest_entry": to_iso8601(ordered[0].enqueued_at) if ordered else None,
                "newest_entry": to_iso8601(ordered[-1].enqueued_at) if ordered else None,
            }

    # ── Bulk / maintenance ───────────────────────────────────────

    def bulk_resolve(self, entry_ids: Iterable[str]) -> dict[str, list[Any]]:
        """Resolve many entries. Unknown ids are reported, not raised."""
        results: dict[str, list[Any]] = {"resolved": [], "not_found": []}
        for entry_id in entry_ids:
            try:
                results["resolved"].append(self.mark_as_resolved(entry_id))
            except DLQEntryNotFoundError:
                results["not_found"].append(entry_id)
        return results

    def clear_expired(self) -> int:
        """Drop entries older than the retention period. Returns the count removed.

        Concurrent calls do not overlap; a sweep already in progress makes
        the second caller return 0.
        """
        if not self._expiry_lock.acquire(blocking=False):
            return 0
        try:
            now = self.clock.now()
            retention = timedelta(seconds=self.retention_seconds)
            with self._lock:
                expired = [e for e in self._queue.values() if now - e.enqueued_at > retention]
                for entry in expired:
                    del self._queue[entry.id]
                    self.storage.delete(entry.id)
                self._counters.total_expired += len(expired)
                if expired:
                    logger.info("dlq_entries_expired", count=len(expired))
                    self.events.emit(ev.ENTRIES_EXPIRED, {"entries": expired, "count": len(expired)})
            return len(expired)
        finally:
            self._expiry_lock.release()

    def export_to_file(self, path: str | Path) -> dict[str, Any]:
        """Write ``{exported_at, options, statistics, entries}`` as one JSON document."""
        path = Path(path)
        with self._lock:
            data = {
                "exported_at": to_iso8601(self.clock.now()),
                "options": {
                    "max_size": self.max_size,
                    "retention_seconds": self.retention_seconds,
                    "flush_interval": self.flush_interval,
                    **self.storage.describe(),
                },
                "statistics": self.get_statistics(),
                "entries": [entry.to_dict() for entry in self._queue.values()],
            }
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        summary = {
            "filepath": str(path),
            "entry_count": len(data["entries"]),
            "file_size": path.stat().st_size,
        }
        logger.info("dlq_exported", **summary)
        self.events.emit(ev.EXPORTED, summary)
        return summary
