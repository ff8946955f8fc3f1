"""Rollback manager - reversible actions grouped into transactions.

WHY
───
A mapping run writes to systems that have no shared transaction. Each
side effect is recorded as an action carrying its own undo
(``rollback_function``) or forward compensation (``compensating_action``).
On abort the manager replays those in a safe order.

ARCHITECTURE
────────────
::

    RollbackManager
      ├── .begin_transaction(strategy)     ─ becomes the thread's current transaction
      ├── .record_action(...)              ─ auto-snapshot every snapshot_interval actions
      ├── .create_savepoint(name)
      ├── .commit(txn_id)
      ├── .rollback(txn_id, strategy, partial, from_action, to_action, skip_errors)
      ├── .rollback_to_savepoint(name)
      ├── .restore_snapshot(snapshot_id)
      └── .transaction()                   ─ context manager: commit or roll back

STATE MACHINE
─────────────
::

    active ──commit──▶ committed
      │
      └──rollback──▶ rolling_back ──▶ rolled_back
                                  ├─▶ partially_rolled_back   (errors skipped, or a partial rollback)
                                  └─▶ rollback_failed         (error, skip_errors=False)

A partial rollback (explicit slice, savepoint or snapshot) always ends the
transaction in ``partially_rolled_back``. The action log is kept as recorded.

ORDERING
────────
The rollback plan starts from the selected actions in reverse record
order, is stable-sorted by ``priority`` (highest first), and is then
adjusted so that every action runs after the actions it lists in
``dependencies``.

- sequential: the plan, one action at a time.
- parallel: the plan grouped into dependency levels; a level runs
  concurrently once every earlier level has finished.
- compensating: ``compensating_action(data)`` for each selected action in
  forward record order.

Terminal transactions are reaped 24 hours after they end.
"""

from __future__ import annotations

import json
import threading
import time
import uuid
import zlib
from collections import deque
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from mapspine.core import events as ev
from mapspine.core.clock import SYSTEM_CLOCK, Clock, to_iso8601
from mapspine.core.errors import TransactionError
from mapspine.core.events import EventEmitter
from mapspine.core.logging import get_logger
from mapspine.core.settings import EngineSettings, get_settings

logger = get_logger(__name__)

TRANSACTION_TTL = timedelta(hours=24)


class TransactionState(str, Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    PARTIALLY_ROLLED_BACK = "partially_rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


TERMINAL_STATES = frozenset({
    TransactionState.COMMITTED,
    TransactionState.ROLLED_BACK,
    TransactionState.PARTIALLY_ROLLED_BACK,
    TransactionState.ROLLBACK_FAILED,
})


class RollbackStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    COMPENSATING = "compensating"


class ActionType(str, Enum):
    RESTORE_STATE = "RESTORE_STATE"
    UNDO_OPERATION = "UNDO_OPERATION"
    COMPENSATE = "COMPENSATE"
    DELETE_CREATED = "DELETE_CREATED"
    REVERT_UPDATED = "REVERT_UPDATED"
    CUSTOM = "CUSTOM"


@dataclass
class RollbackAction:
    """A recorded side effect and how to undo it."""

    id: str
    type: ActionType
    timestamp: datetime
    description: str | None = None
    data: Any = None
    rollback_function: Callable[[Any], Any] | None = None
    rollback_data: Any = None
    compensating_action: Callable[[Any], Any] | None = None
    priority: int = 0
    dependencies: list[str] = field(default_factory=list)

    @property
    def reversible(self) -> bool:
        return self.rollback_function is not None or self.compensating_action is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": to_iso8601(self.timestamp),
            "description": self.description,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "reversible": self.reversible,
        }


@dataclass
class Snapshot:
    """Checkpoint of a transaction at ``action_count`` actions."""

    id: str
    timestamp: datetime
    action_count: int
    data: Any = None
    compressed: bool = False

    def payload(self) -> Any:
        """The snapshot data, decompressed if necessary."""
        if self.compressed:
            return json.loads(zlib.decompress(self.data).decode("utf-8"))
        return self.data


@dataclass
class Savepoint:
    name: str
    action_index: int
    timestamp: datetime


@dataclass
class Transaction:
    id: str
    start_time: datetime
    rollback_strategy: RollbackStrategy = RollbackStrategy.SEQUENTIAL
    state: TransactionState = TransactionState.ACTIVE
    actions: list[RollbackAction] = field(default_factory=list)
    snapshots: list[Snapshot] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    end_time: datetime | None = None

    @property
    def savepoints(self) -> list[Savepoint]:
        return self.metadata.setdefault("savepoints", [])

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "rollback_strategy": self.rollback_strategy.value,
            "start_time": to_iso8601(self.start_time),
            "end_time": to_iso8601(self.end_time),
            "action_count": len(self.actions),
            "snapshot_count": len(self.snapshots),
            "savepoints": [sp.name for sp in self.savepoints],
        }


@dataclass
class ActionOutcome:
    action_id: str
    type: str
    status: str  # success | failed | skipped
    duration_ms: float = 0.0
    result: Any = None
    error: str | None = None


@dataclass
class RollbackResult:
    transaction_id: str
    strategy: RollbackStrategy
    partial: bool
    started_at: datetime
    status: str = "success"  # success | partial | failed
    state: TransactionState = TransactionState.ROLLING_BACK
    ended_at: datetime | None = None
    duration_ms: float = 0.0
    actions: list[ActionOutcome] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    groups: list[list[str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "strategy": self.strategy.value,
            "partial": self.partial,
            "status": self.status,
            "state": self.state.value,
            "started_at": to_iso8601(self.started_at),
            "ended_at": to_iso8601(self.ended_at),
            "duration_ms": self.duration_ms,
            "actions": [outcome.__dict__ for outcome in self.actions],
            "errors": self.errors,
            "groups": self.groups,
        }


class _AbortRollback(Exception):
    """Internal: stop the plan after an error with skip_errors=False."""


def plan_rollback_order(actions: list[RollbackAction]) -> list[RollbackAction]:
    """Reverse record order, priority first, dependencies before dependents."""
    ordered = sorted(reversed(actions), key=lambda a: -a.priority)
    selected = {a.id for a in ordered}
    done: set[str] = set()
    plan: list[RollbackAction] = []
    remaining = list(ordered)
    while remaining:
        for i, action in enumerate(remaining):
            if all(dep in done or dep not in selected for dep in action.dependencies):
                plan.append(action)
                done.add(action.id)
                del remaining[i]
                break
        else:
            logger.warning("rollback_dependency_cycle", actions=[a.id for a in remaining])
            plan.extend(remaining)
            break
    return plan


def group_by_dependencies(plan: list[RollbackAction]) -> list[list[RollbackAction]]:
    """Split a plan into levels whose dependencies all sit in earlier levels."""
    selected = {a.id for a in plan}
    processed: set[str] = set()
    groups: list[list[RollbackAction]] = []
    remaining = list(plan)
    while remaining:
        level = [
            a for a in remaining
            if all(dep in processed or dep not in selected for dep in a.dependencies)
        ]
        if not level:
            logger.warning("rollback_dependency_cycle", actions=[a.id for a in remaining])
            groups.append(remaining)
            break
        groups.append(level)
        processed.update(a.id for a in level)
        level_ids = {a.id for a in level}
        remaining = [a for a in remaining if a.id not in level_ids]
    return groups


class RollbackManager:
    """Records reversible actions per transaction and replays them on abort."""

    def __init__(
        self,
        *,
        max_history: int = 1000,
        enable_snapshots: bool = True,
        snapshot_interval: int = 100,
        compression_enabled: bool = False,
        max_parallelism: int = 8,
        events: EventEmitter | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.enable_snapshots = enable_snapshots
        self.snapshot_interval = snapshot_interval
        self.compression_enabled = compression_enabled
        self.max_parallelism = max_parallelism
        self.events = events or EventEmitter()
        self.clock = clock or SYSTEM_CLOCK

        self._transactions: dict[str, Transaction] = {}
        self._history: deque[dict[str, Any]] = deque(maxlen=max_history)
        self._stats = {
            "total_transactions": 0,
            "successful_rollbacks": 0,
            "failed_rollbacks": 0,
            "partial_rollbacks": 0,
        }
        self._lock = threading.RLock()
        self._local = threading.local()

    @classmethod
    def from_settings(cls, settings: EngineSettings | None = None, **kwargs: Any) -> RollbackManager:
        settings = settings or get_settings()
        params: dict[str, Any] = {
            "max_history": settings.rollback_max_history,
            "enable_snapshots": settings.rollback_snapshots,
            "snapshot_interval": settings.rollback_snapshot_interval,
        }
        params.update(kwargs)
        return cls(**params)

    # ── Transaction lookup ───────────────────────────────────────

    @property
    def current_transaction_id(self) -> str | None:
        return getattr(self._local, "current", None)

    def _set_current(self, txn_id: str | None) -> None:
        self._local.current = txn_id

    def _resolve(self, transaction_id: str | None) -> Transaction:
        txn_id = transaction_id or self.current_transaction_id
        if txn_id is None:
            raise TransactionError("No active transaction")
        txn = self._transactions.get(txn_id)
        if txn is None:
            raise TransactionError(f"Transaction not found: {txn_id}", details={"transaction_id": txn_id})
        return txn

    def _require_active(self, txn: Transaction, operation: str) -> None:
        if txn.state != TransactionState.ACTIVE:
            raise TransactionError(
                f"Cannot {operation} transaction in state: {txn.state.value}",
                details={"transaction_id": txn.id, "state": txn.state.value},
            )

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        with self._lock:
            return self._transactions.get(transaction_id)

    # ── Recording ────────────────────────────────────────────────

    def begin_transaction(
        self,
        transaction_id: str | None = None,
        *,
        strategy: RollbackStrategy | str = RollbackStrategy.SEQUENTIAL,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Start a transaction and make it the calling thread's current one."""
        txn_id = transaction_id or f"txn_{uuid.uuid4().hex[:12]}"
        with self._lock:
            if txn_id in self._transactions:
                raise TransactionError(f"Transaction {txn_id} already exists")
            self._transactions[txn_id] = Transaction(
                id=txn_id,
                start_time=self.clock.now(),
                rollback_strategy=RollbackStrategy(strategy),
                metadata=dict(metadata or {}),
            )
            self._stats["total_transactions"] += 1
        self._set_current(txn_id)
        logger.debug("transaction_started", transaction_id=txn_id)
        self.events.emit(ev.TRANSACTION_STARTED, {"transaction_id": txn_id})
        return txn_id

    def record_action(
        self,
        *,
        type: ActionType | str = ActionType.CUSTOM,
        description: str | None = None,
        data: Any = None,
        rollback_function: Callable[[Any], Any] | None = None,
        rollback_data: Any = None,
        compensating_action: Callable[[Any], Any] | None = None,
        priority: int = 0,
        dependencies: list[str] | None = None,
        transaction_id: str | None = None,
    ) -> str:
        """Append an action to an active transaction. Returns the action id."""
        with self._lock:
            txn = self._resolve(transaction_id)
            self._require_active(txn, "record action on")
            action = RollbackAction(
                id=f"act_{uuid.uuid4().hex[:12]}",
                type=ActionType(type),
                timestamp=self.clock.now(),
                description=description,
                data=data if data is not None else {},
                rollback_function=rollback_function,
                rollback_data=rollback_data if rollback_data is not None else {},
                compensating_action=compensating_action,
                priority=priority,
                dependencies=list(dependencies or []),
            )
            if not action.reversible:
                logger.warning(
                    "action_not_reversible",
                    transaction_id=txn.id,
                    action_id=action.id,
                    description=description,
                )
            txn.actions.append(action)

            if self.enable_snapshots and len(txn.actions) % self.snapshot_interval == 0:
                self.take_snapshot(transaction_id=txn.id)

        self.events.emit(ev.ACTION_RECORDED, {"transaction_id": txn.id, "action": action})
        return action.id

    def take_snapshot(self, data: Any = None, transaction_id: str | None = None) -> str:
        with self._lock:
            txn = self._resolve(transaction_id)
            self._require_active(txn, "snapshot")
            payload: Any = data if data is not None else {}
            compressed = False
            if self.compression_enabled and payload:
                payload = zlib.compress(json.dumps(payload, default=str).encode("utf-8"))
                compressed = True
            snapshot = Snapshot(
                id=f"snap_{uuid.uuid4().hex[:12]}",
                timestamp=self.clock.now(),
                action_count=len(txn.actions),
                data=payload,
                compressed=compressed,
            )
            txn.snapshots.append(snapshot)
        self.events.emit(ev.SNAPSHOT_TAKEN, {"transaction_id": txn.id, "snapshot_id": snapshot.id})
        return snapshot.id

    def create_savepoint(self, name: str | None = None, transaction_id: str | None = None) -> str:
        with self._lock:
            txn = self._resolve(transaction_id)
            self._require_active(txn, "create savepoint on")
            savepoint = Savepoint(
                name=name or f"savepoint_{len(txn.savepoints) + 1}",
                action_index=len(txn.actions),
                timestamp=self.clock.now(),
            )
            txn.savepoints.append(savepoint)
        self.events.emit(ev.SAVEPOINT_CREATED, {
            "transaction_id": txn.id,
            "name": savepoint.name,
            "action_index": savepoint.action_index,
        })
        return savepoint.name

    # ── Outcomes ─────────────────────────────────────────────────

    def commit(self, transaction_id: str | None = None) -> Transaction:
        with self._lock:
            txn = self._resolve(transaction_id)
            self._require_active(txn, "commit")
            txn.state = TransactionState.COMMITTED
            txn.end_time = self.clock.now()
            self._history.append({
                "type": "commit",
                "transaction_id": txn.id,
                "timestamp": txn.end_time,
                "action_count": len(txn.actions),
            })
            self._reap()
        if self.current_transaction_id == txn.id:
            self._set_current(None)
        logger.info("transaction_committed", transaction_id=txn.id, actions=len(txn.actions))
        self.events.emit(ev.TRANSACTION_COMMITTED, {"transaction_id": txn.id})
        return txn

    def rollback(
        self,
        transaction_id: str | None = None,
        *,
        strategy: RollbackStrategy | str | None = None,
        partial: bool = False,
        from_action: int | None = None,
        to_action: int | None = None,
        skip_errors: bool = True,
    ) -> RollbackResult:
        """Undo the actions of an active transaction.

        Args:
            strategy: Overrides the transaction's strategy
            partial: Only undo ``actions[from_action:to_action + 1]``
            skip_errors: Keep going after a failed action

        Returns:
            RollbackResult with per-action outcomes
        """
        with self._lock:
            txn = self._resolve(transaction_id)
            self._require_active(txn, "roll back")
            txn.state = TransactionState.ROLLING_BACK
            chosen = RollbackStrategy(strategy) if strategy is not None else txn.rollback_strategy
            selected = list(txn.actions)
            if partial:
                start = from_action or 0
                stop = to_action + 1 if to_action is not None else len(selected)
                selected = selected[start:stop]

        result = RollbackResult(
            transaction_id=txn.id,
            strategy=chosen,
            partial=partial,
            started_at=self.clock.now(),
        )
        started = time.perf_counter()
        logger.info(
            "rollback_started",
            transaction_id=txn.id,
            strategy=chosen.value,
            partial=partial,
            actions=len(selected),
        )

        try:
            if chosen == RollbackStrategy.COMPENSATING:
                self._rollback_compensating(txn, selected, result, skip_errors)
            elif chosen == RollbackStrategy.PARALLEL:
                self._rollback_parallel(txn, plan_rollback_order(selected), result, skip_errors)
            else:
                self._rollback_sequential(txn, plan_rollback_order(selected), result, skip_errors)
        except _AbortRollback:
            pass
        except Exception as e:
            logger.exception("rollback_crashed", transaction_id=txn.id, error=str(e))
            result.errors.append({"action_id": None, "error": str(e)})
            skip_errors = False

        with self._lock:
            if result.errors and not skip_errors:
                txn.state = TransactionState.ROLLBACK_FAILED
                result.status = "failed"
                self._stats["failed_rollbacks"] += 1
            elif result.errors or partial:
                txn.state = TransactionState.PARTIALLY_ROLLED_BACK
                result.status = "partial" if result.errors else "success"
                self._stats["partial_rollbacks"] += 1
            else:
                txn.state = TransactionState.ROLLED_BACK
                result.status = "success"
                self._stats["successful_rollbacks"] += 1

            result.state = txn.state
            result.ended_at = self.clock.now()
            result.duration_ms = (time.perf_counter() - started) * 1000
            if txn.state in TERMINAL_STATES:
                txn.end_time = result.ended_at
            self._history.append({
                "type": "rollback",
                "transaction_id": txn.id,
                "timestamp": result.ended_at,
                "result": result,
            })
            self._reap()

        if txn.state in TERMINAL_STATES and self.current_transaction_id == txn.id:
            self._set_current(None)

        log = logger.warning if result.errors else logger.info
        log(
            "rollback_finished",
            transaction_id=txn.id,
            status=result.status,
            state=txn.state.value,
            errors=len(result.errors),
        )
        self.events.emit(ev.TRANSACTION_ROLLED_BACK, {"result": result, "transaction_id": txn.id})
        return result

    def rollback_to_savepoint(self, name: str, transaction_id: str | None = None) -> RollbackResult:
        with self._lock:
            txn = self._resolve(transaction_id)
            savepoint = next((sp for sp in txn.savepoints if sp.name == name), None)
            if savepoint is None:
                raise TransactionError(f"Savepoint {name} not found", details={"transaction_id": txn.id})
        return self.rollback(txn.id, partial=True, from_action=savepoint.action_index)

    def restore_snapshot(self, snapshot_id: str, transaction_id: str | None = None) -> RollbackResult:
        """Undo every action recorded after the snapshot."""
        with self._lock:
            txn = self._resolve(transaction_id)
            snapshot = next((s for s in txn.snapshots if s.id == snapshot_id), None)
            if snapshot is None:
                raise TransactionError(f"Snapshot {snapshot_id} not found", details={"transaction_id": txn.id})
            pending = len(txn.actions) - snapshot.action_count
        result = self.rollback(txn.id, partial=True, from_action=snapshot.action_count)
        self.events.emit(ev.SNAPSHOT_RESTORED, {
            "transaction_id": txn.id,
            "snapshot_id": snapshot.id,
            "rolled_back_actions": pending,
        })
        return result

    @contextmanager
    def transaction(
        self,
        *,
        strategy: RollbackStrategy | str = RollbackStrategy.SEQUENTIAL,
        metadata: dict[str, Any] | None = None,
        skip_errors: bool = True,
    ) -> Iterator[str]:
        """Commit on normal exit, roll back (then re-raise) on exception.

        Example:
            >>> with manager.transaction() as txn_id:
            ...     target.insert(row)
            ...     manager.record_action(rollback_function=target.delete, rollback_data=row["id"])
        """
        txn_id = self.begin_transaction(strategy=strategy, metadata=metadata)
        try:
            yield txn_id
        except BaseException:
            txn = self.get_transaction(txn_id)
            if txn is not None and txn.state == TransactionState.ACTIVE:
                self.rollback(txn_id, skip_errors=skip_errors)
            raise
        else:
            txn = self.get_transaction(txn_id)
            if txn is not None and txn.state == TransactionState.ACTIVE:
                self.commit(txn_id)

    # ── Strategies ───────────────────────────────────────────────

    def _run_action(self, txn: Transaction, action: RollbackAction, result: RollbackResult) -> None:
        started = time.perf_counter()
        try:
            if action.rollback_function is not None:
                value = action.rollback_function(action.rollback_data)
            elif action.compensating_action is not None:
                value = action.compensating_action(action.data)
            else:
                raise TransactionError(f"No rollback method available for action {action.id}")
        except Exception as e:
            outcome = ActionOutcome(
                action_id=action.id,
                type=action.type.value,
                status="failed",
                duration_ms=(time.perf_counter() - started) * 1000,
                error=str(e),
            )
            with self._lock:
                result.actions.append(outcome)
                result.errors.append({"action_id": action.id, "error": str(e)})
            logger.warning("action_rollback_failed", transaction_id=txn.id, action_id=action.id, error=str(e))
            self.events.emit(ev.ACTION_ROLLBACK_FAILED, {"transaction_id": txn.id, "outcome": outcome})
            raise

        outcome = ActionOutcome(
            action_id=action.id,
            type=action.type.value,
            status="success",
            duration_ms=(time.perf_counter() - started) * 1000,
            result=value,
        )
        with self._lock:
            result.actions.append(outcome)
        self.events.emit(ev.ACTION_ROLLED_BACK, {"transaction_id": txn.id, "outcome": outcome})

    def _rollback_sequential(
        self, txn: Transaction, plan: list[RollbackAction], result: RollbackResult, skip_errors: bool
    ) -> None:
        result.groups = [[a.id] for a in plan]
        for action in plan:
            try:
                self._run_action(txn, action, result)
            except Exception:
                if not skip_errors:
                    raise _AbortRollback() from None

    def _rollback_parallel(
        self, txn: Transaction, plan: list[RollbackAction], result: RollbackResult, skip_errors: bool
    ) -> None:
        groups = group_by_dependencies(plan)
        result.groups = [[a.id for a in group] for group in groups]
        for group in groups:
            workers = max(1, min(len(group), self.max_parallelism))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mapspine-rollback") as pool:
                futures = [pool.submit(self._run_action, txn, action, result) for action in group]
            failed = [f for f in futures if f.exception() is not None]
            if failed and not skip_errors:
                raise _AbortRollback()

    def _rollback_compensating(
        self, txn: Transaction, selected: list[RollbackAction], result: RollbackResult, skip_errors: bool
    ) -> None:
        result.groups = [[a.id] for a in selected]
        for action in selected:
            if action.compensating_action is None:
                logger.warning("no_compensating_action", transaction_id=txn.id, action_id=action.id)
                result.actions.append(ActionOutcome(action.id, action.type.value, "skipped"))
                continue
            started = time.perf_counter()
            try:
                value = action.compensating_action(action.data)
            except Exception as e:
                result.actions.append(ActionOutcome(
                    action.id, "compensating", "failed",
                    duration_ms=(time.perf_counter() - started) * 1000, error=str(e),
                ))
                result.errors.append({"action_id": action.id, "type": "compensating", "error": str(e)})
                logger.warning("compensating_action_failed", transaction_id=txn.id, action_id=action.id, error=str(e))
                if not skip_errors:
                    raise _AbortRollback() from None
                continue
            result.actions.append(ActionOutcome(
                action.id, "compensating", "success",
                duration_ms=(time.perf_counter() - started) * 1000, result=value,
            ))

    # ── Housekeeping ─────────────────────────────────────────────

    def _reap(self) -> None:
        cutoff = self.clock.now() - TRANSACTION_TTL
        stale = [
            txn_id for txn_id, txn in self._transactions.items()
            if txn.state in TERMINAL_STATES and txn.end_time is not None and txn.end_time < cutoff
        ]
        for txn_id in stale:
            del self._transactions[txn_id]
        if stale:
            logger.debug("transactions_reaped", count=len(stale))

    def clear_completed_transactions(self) -> int:
        """Drop every terminal transaction now. Returns the count removed."""
        with self._lock:
            done = [txn_id for txn_id, txn in self._transactions.items() if txn.state in TERMINAL_STATES]
            for txn_id in done:
                del self._transactions[txn_id]
        return len(done)

    def get_history(self, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            history = list(self._history)
        return history[-limit:] if limit else history

    def get_statistics(self) -> dict[str, Any]:
        with self._lock:
            active = sum(1 for txn in self._transactions.values() if txn.state == TransactionState.ACTIVE)
            return {**self._stats, "active_transactions": active}
