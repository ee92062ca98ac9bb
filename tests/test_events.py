"""Tests for printlink.events -- publish/subscribe event bus.

Covers:
- EventType values
- Event.to_dict
- Subscribe/unsubscribe, wildcard and filtered handlers
- Failing handlers are isolated
- Recent events history and its size limit
- Thread safety
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from printlink.events import Event, EventBus, EventType


# ---------------------------------------------------------------------------
# EventType enum
# ---------------------------------------------------------------------------


class TestEventType:
    def test_link_events(self):
        assert EventType.LINK_CONNECTING.value == "link.connecting"
        assert EventType.LINK_CONNECTED.value == "link.connected"
        assert EventType.LINK_DISCONNECTED.value == "link.disconnected"
        assert EventType.LINK_ERROR.value == "link.error"
        assert EventType.DEVICE_REMOVED.value == "link.device_removed"

    def test_job_events(self):
        assert EventType.JOB_STARTED.value == "job.started"
        assert EventType.JOB_PROGRESS.value == "job.progress"
        assert EventType.JOB_PAUSED.value == "job.paused"
        assert EventType.JOB_RESUMED.value == "job.resumed"
        assert EventType.JOB_COMPLETED.value == "job.completed"
        assert EventType.JOB_STOPPED.value == "job.stopped"
        assert EventType.JOB_FAILED.value == "job.failed"

    def test_safety_and_telemetry(self):
        assert EventType.EMERGENCY_STOP.value == "safety.emergency_stop"
        assert EventType.TELEMETRY_UPDATED.value == "telemetry.updated"

    def test_from_value(self):
        assert EventType("job.paused") is EventType.JOB_PAUSED

    def test_invalid_value(self):
        with pytest.raises(ValueError):
            EventType("nonexistent.event")


# ---------------------------------------------------------------------------
# Event dataclass
# ---------------------------------------------------------------------------


class TestEvent:
    def test_to_dict_converts_enum(self):
        event = Event(
            type=EventType.JOB_PROGRESS,
            data={"sent": 4, "total": 10},
            timestamp=1000.0,
            source="job",
        )
        assert event.to_dict() == {
            "type": "job.progress",
            "data": {"sent": 4, "total": 10},
            "timestamp": 1000.0,
            "source": "job",
        }

    def test_default_values(self):
        event = Event(type=EventType.LINK_CONNECTED)
        assert event.data == {}
        assert event.source == ""
        assert isinstance(event.timestamp, float)


# ---------------------------------------------------------------------------
# Subscribe / publish
# ---------------------------------------------------------------------------


class TestEventBusSubscription:
    def test_subscribe_specific_event(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(EventType.JOB_STARTED, handler)
        bus.publish(Event(type=EventType.JOB_STARTED))
        handler.assert_called_once()

    def test_does_not_fire_for_other_events(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(EventType.JOB_STARTED, handler)
        bus.publish(Event(type=EventType.JOB_COMPLETED))
        handler.assert_not_called()

    def test_duplicate_subscription_ignored(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(EventType.JOB_PAUSED, handler)
        bus.subscribe(EventType.JOB_PAUSED, handler)
        bus.publish(Event(type=EventType.JOB_PAUSED))
        handler.assert_called_once()

    def test_unsubscribe(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(EventType.JOB_STARTED, handler)
        bus.unsubscribe(EventType.JOB_STARTED, handler)
        bus.publish(Event(type=EventType.JOB_STARTED))
        handler.assert_not_called()

    def test_unsubscribe_nonexistent_handler_is_silent(self):
        EventBus().unsubscribe(EventType.JOB_STARTED, MagicMock())

    def test_handlers_run_in_subscription_order(self):
        bus = EventBus()
        order: list[str] = []
        bus.subscribe(None, lambda e: order.append("any"))
        bus.subscribe(EventType.JOB_STARTED, lambda e: order.append("started"))
        bus.publish(EventType.JOB_STARTED)
        assert order == ["any", "started"]

    def test_same_handler_on_two_types(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(EventType.JOB_PAUSED, handler)
        bus.subscribe(EventType.JOB_RESUMED, handler)
        bus.unsubscribe(EventType.JOB_PAUSED, handler)
        bus.publish(EventType.JOB_PAUSED)
        bus.publish(EventType.JOB_RESUMED)
        handler.assert_called_once()

    def test_filter(self):
        bus = EventBus()
        received: list[Event] = []
        bus.subscribe(EventType.LINK_ERROR, received.append, filter=lambda e: e.data.get("code") == "DEVICE_REMOVED")
        bus.publish(EventType.LINK_ERROR, {"code": "ACK_TIMEOUT"})
        bus.publish(EventType.LINK_ERROR, {"code": "DEVICE_REMOVED"})
        assert [e.data["code"] for e in received] == ["DEVICE_REMOVED"]


class TestEventBusPublish:
    def test_publish_by_type_builds_event(self):
        bus = EventBus()
        received: list[Event] = []
        bus.subscribe(EventType.JOB_PROGRESS, received.append)
        event = bus.publish(EventType.JOB_PROGRESS, {"sent": 1}, source="job")
        assert received == [event]
        assert event.source == "job"
        assert event.data == {"sent": 1}

    def test_handler_receives_same_object(self):
        bus = EventBus()
        received: list[Event] = []
        bus.subscribe(EventType.JOB_COMPLETED, received.append)
        event = Event(type=EventType.JOB_COMPLETED)
        bus.publish(event)
        assert received[0] is event

    def test_handler_exception_does_not_prevent_others(self):
        bus = EventBus()
        broken = MagicMock(side_effect=ValueError("broken"))
        healthy = MagicMock()
        bus.subscribe(EventType.JOB_FAILED, broken)
        bus.subscribe(EventType.JOB_FAILED, healthy)
        bus.publish(Event(type=EventType.JOB_FAILED))
        broken.assert_called_once()
        healthy.assert_called_once()

    def test_handler_may_publish(self):
        bus = EventBus()
        received: list[EventType] = []
        bus.subscribe(EventType.DEVICE_REMOVED, lambda e: bus.publish(EventType.LINK_ERROR))
        bus.subscribe(EventType.LINK_ERROR, lambda e: received.append(e.type))
        bus.publish(EventType.DEVICE_REMOVED)
        assert received == [EventType.LINK_ERROR]


class TestEventBusWildcard:
    def test_wildcard_receives_all_events(self):
        bus = EventBus()
        received: list[Event] = []
        bus.subscribe(None, received.append)
        bus.publish(Event(type=EventType.LINK_CONNECTED))
        bus.publish(Event(type=EventType.JOB_STARTED))
        assert [e.type for e in received] == [EventType.LINK_CONNECTED, EventType.JOB_STARTED]

    def test_wildcard_and_specific_both_called(self):
        bus = EventBus()
        wildcard = MagicMock()
        specific = MagicMock()
        bus.subscribe(None, wildcard)
        bus.subscribe(EventType.EMERGENCY_STOP, specific)
        bus.publish(Event(type=EventType.EMERGENCY_STOP))
        wildcard.assert_called_once()
        specific.assert_called_once()

    def test_unsubscribe_wildcard(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(None, handler)
        bus.unsubscribe(None, handler)
        bus.publish(Event(type=EventType.JOB_STARTED))
        handler.assert_not_called()


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestEventBusHistory:
    def test_newest_first(self):
        bus = EventBus()
        bus.publish(Event(type=EventType.JOB_STARTED, timestamp=100.0))
        bus.publish(Event(type=EventType.JOB_COMPLETED, timestamp=200.0))
        events = bus.recent_events()
        assert [e.type for e in events] == [EventType.JOB_COMPLETED, EventType.JOB_STARTED]

    def test_filter_and_limit(self):
        bus = EventBus()
        for _ in range(5):
            bus.publish(Event(type=EventType.JOB_PROGRESS))
        bus.publish(Event(type=EventType.JOB_COMPLETED))
        assert len(bus.recent_events(EventType.JOB_PROGRESS, limit=2)) == 2
        assert len(bus.recent_events(EventType.JOB_COMPLETED)) == 1

    def test_history_size_from_env(self, monkeypatch):
        monkeypatch.setenv("PRINTLINK_EVENT_HISTORY", "5")
        bus = EventBus()
        for i in range(10):
            bus.publish(Event(type=EventType.JOB_PROGRESS, data={"i": i}))
        events = bus.recent_events()
        assert len(events) == 5
        assert events[0].data["i"] == 9

    def test_invalid_history_env_uses_default(self, monkeypatch):
        monkeypatch.setenv("PRINTLINK_EVENT_HISTORY", "lots")
        bus = EventBus()
        for _ in range(60):
            bus.publish(Event(type=EventType.JOB_PROGRESS))
        assert len(bus.recent_events(limit=100)) == 60

    def test_explicit_size_overrides_env(self, monkeypatch):
        monkeypatch.setenv("PRINTLINK_EVENT_HISTORY", "5")
        bus = EventBus(history=2)
        for i in range(4):
            bus.publish(EventType.JOB_PROGRESS, {"i": i})
        assert [e.data["i"] for e in bus.recent_events()] == [3, 2]

    def test_filtered_events_are_still_recorded(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(EventType.LINK_ERROR, handler, filter=lambda e: False)
        bus.publish(EventType.LINK_ERROR, {"code": "ACK_TIMEOUT"})
        handler.assert_not_called()
        assert bus.recent_events(EventType.LINK_ERROR, limit=1)[0].data == {"code": "ACK_TIMEOUT"}


# ---------------------------------------------------------------------------
# Thread safety
# ---------------------------------------------------------------------------


class TestEventBusThreadSafety:
    def test_concurrent_publish(self):
        bus = EventBus()
        received: list[Event] = []
        lock = threading.Lock()

        def handler(event: Event) -> None:
            with lock:
                received.append(event)

        bus.subscribe(None, handler)

        def publish_batch(count: int) -> None:
            for _ in range(count):
                bus.publish(Event(type=EventType.TELEMETRY_UPDATED))

        threads = [threading.Thread(target=publish_batch, args=(20,)) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(received) == 100
        assert len(bus.recent_events(limit=200)) == 100
