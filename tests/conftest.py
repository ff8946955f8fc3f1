"""
Shared pytest fixtures for mapspine tests.

This module provides:
- A deterministic clock (``FakeClock``) whose ``sleep`` advances time
- An event recorder subscribed to every event of an ``EventEmitter``
- A seeded ``random.Random`` for reproducible ids and jitter
- Settings cache isolation

Usage:
    def test_something(clock, recorder):
        manager = RetryManager(events=recorder.events, clock=clock)
        ...
        assert recorder.names() == ["retry", "retrySuccess"]
"""

import random
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from mapspine.core.events import WILDCARD, EventEmitter
from mapspine.core.logging import configure_logging
from mapspine.core.settings import clear_settings_cache

# Keep test output (and CLI stdout captured by CliRunner) free of log lines
configure_logging(level="WARNING", json_format=False, force=True)


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    root = Path(__file__).parent
    for item in items:
        parts = Path(item.fspath).relative_to(root).parts
        if parts and parts[0] == "integration":
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Manually driven clock. ``sleep`` advances time instead of blocking."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 15, 12, 0, 0, tzinfo=UTC)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Events
# =============================================================================


class EventRecorder:
    """Collects ``(event, payload)`` pairs from a wildcard subscription."""

    def __init__(self, events: EventEmitter | None = None) -> None:
        self.events = events or EventEmitter()
        self.received: list[tuple[str, dict[str, Any]]] = []
        self.events.on(WILDCARD, self._record)

    def _record(self, payload: dict[str, Any]) -> None:
        body = dict(payload)
        self.received.append((body.pop("event"), body))

    def names(self) -> list[str]:
        return [name for name, _ in self.received]

    def of(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.received if name == event]


@pytest.fixture()
def recorder() -> EventRecorder:
    return EventRecorder()


# =============================================================================
# Misc
# =============================================================================


@pytest.fixture()
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Point file-backed defaults at a temp dir and drop cached settings."""
    monkeypatch.setenv("MAPSPINE_DLQ_STORAGE_PATH", str(tmp_path / "dlq"))
    clear_settings_cache()
    yield
    clear_settings_cache()
