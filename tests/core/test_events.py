"""Tests for the synchronous event emitter."""

from mapspine.core.events import WILDCARD, EventEmitter


class TestEventEmitter:
    def test_on_and_emit(self):
        events = EventEmitter()
        seen = []
        events.on("retry", seen.append)
        assert events.emit("retry", {"attempt": 1}) == 1
        assert seen == [{"attempt": 1}]

    def test_emit_without_listeners(self):
        assert EventEmitter().emit("nothing") == 0

    def test_once(self):
        events = EventEmitter()
        seen = []
        events.once("open", seen.append)
        events.emit("open", {"n": 1})
        events.emit("open", {"n": 2})
        assert seen == [{"n": 1}]
        assert events.listener_count("open") == 0

    def test_off(self):
        events = EventEmitter()
        seen = []
        sub = events.on("x", seen.append)
        assert events.off(sub) is True
        assert events.off(sub) is False
        events.emit("x", {})
        assert seen == []

    def test_wildcard_receives_event_name(self):
        events = EventEmitter()
        seen = []
        events.on(WILDCARD, seen.append)
        events.emit("queueFull", {"size": 3})
        assert seen == [{"event": "queueFull", "size": 3}]

    def test_failing_handler_does_not_break_emit(self):
        events = EventEmitter()
        seen = []

        def broken(payload):
            raise RuntimeError("handler bug")

        events.on("x", broken)
        events.on("x", seen.append)
        assert events.emit("x", {"ok": True}) == 2
        assert seen == [{"ok": True}]

    def test_listener_count_and_clear(self):
        events = EventEmitter()
        events.on("a", lambda p: None)
        events.on("b", lambda p: None)
        assert events.listener_count() == 2
        assert events.listener_count("a") == 1
        events.clear()
        assert events.listener_count() == 0
