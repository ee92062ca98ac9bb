"""Event system: publish/subscribe for link, telemetry and job events.

The link manager and the print executor publish an :class:`Event` whenever
something observable happens (connected, device removed, progress, pause,
emergency stop...).  Presentation layers subscribe read-only; nothing they
do in a handler can affect the link, and a failing handler is logged and
skipped.

Example::

    bus = EventBus()

    def on_progress(event: Event) -> None:
        print(f"{event.data['sent']}/{event.data['total']}")

    bus.subscribe(EventType.JOB_PROGRESS, on_progress)
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from itertools import islice
from dataclasses import dataclass, field
from typing import Any

from printlink import parse_int_env

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    """All event types emitted by printlink."""

    # Link lifecycle
    LINK_CONNECTING = "link.connecting"
    LINK_CONNECTED = "link.connected"
    LINK_DISCONNECTED = "link.disconnected"
    LINK_ERROR = "link.error"
    DEVICE_REMOVED = "link.device_removed"

    # Telemetry
    TELEMETRY_UPDATED = "telemetry.updated"

    # Job lifecycle
    JOB_STARTED = "job.started"
    JOB_PROGRESS = "job.progress"
    JOB_PAUSED = "job.paused"
    JOB_RESUMED = "job.resumed"
    JOB_COMPLETED = "job.completed"
    JOB_STOPPED = "job.stopped"
    JOB_FAILED = "job.failed"

    # Safety
    EMERGENCY_STOP = "safety.emergency_stop"


@dataclass
class Event:
    """A single event in the system."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    source: str = ""  # e.g. "link:/dev/ttyUSB0" or "job"

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "source": self.source,
        }


EventHandler = Callable[[Event], None]
EventFilter = Callable[[Event], bool]

# Events kept for late observers; PRINTLINK_EVENT_HISTORY overrides.
_DEFAULT_HISTORY = 1000


@dataclass(frozen=True)
class _Subscription:
    event_type: EventType | None  # None: every event
    handler: EventHandler
    predicate: EventFilter | None = None

    def wants(self, event: Event) -> bool:
        if self.event_type is not None and self.event_type is not event.type:
            return False
        return self.predicate is None or self.predicate(event)


class EventBus:
    """Thread-safe publish/subscribe event bus.

    Handlers run synchronously in the publishing thread (usually the serial
    read loop or the job feed thread) in subscription order, so they should
    return quickly.  A handler that raises is logged and skipped.

    The last *history* events are retained for :meth:`recent_events`.
    """

    def __init__(self, history: int | None = None) -> None:
        if history is None:
            history = parse_int_env("PRINTLINK_EVENT_HISTORY", _DEFAULT_HISTORY)
        self._subscriptions: list[_Subscription] = []
        self._history: deque[Event] = deque(maxlen=max(history, 1))
        self._lock = threading.Lock()

    def subscribe(
        self,
        event_type: EventType | None,
        handler: EventHandler,
        *,
        filter: EventFilter | None = None,
    ) -> None:
        """Call *handler* for every published *event_type* (``None``: all types).

        *filter*, when given, must return ``True`` for the handler to run.
        Subscribing the same handler to the same type twice has no effect.
        """
        with self._lock:
            if any(s.event_type is event_type and s.handler is handler for s in self._subscriptions):
                logger.debug("Handler %r already subscribed to %s", handler, event_type)
                return
            self._subscriptions.append(_Subscription(event_type, handler, filter))

    def unsubscribe(self, event_type: EventType | None, handler: EventHandler) -> None:
        """Drop *handler* from *event_type*; unknown handlers are ignored."""
        with self._lock:
            self._subscriptions = [
                s for s in self._subscriptions if not (s.event_type is event_type and s.handler is handler)
            ]

    def publish(
        self,
        event_or_type: Event | EventType,
        data: dict[str, Any] | None = None,
        source: str = "",
    ) -> Event:
        """Record an event, deliver it, and return it.

        Accepts a ready :class:`Event` or an :class:`EventType` plus *data*
        and *source* to build one from.
        """
        if isinstance(event_or_type, Event):
            event = event_or_type
        else:
            event = Event(type=event_or_type, data=data or {}, source=source)

        with self._lock:
            self._history.append(event)
            subscriptions = list(self._subscriptions)

        # Outside the lock: handlers may publish or subscribe in turn.
        for sub in subscriptions:
            try:
                if sub.wants(event):
                    sub.handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", sub.handler, event.type.value)
        return event

    def recent_events(self, event_type: EventType | None = None, limit: int = 50) -> list[Event]:
        """Up to *limit* retained events, newest first, optionally of one type."""
        with self._lock:
            retained = list(self._history)
        newest_first = (e for e in reversed(retained) if event_type is None or e.type is event_type)
        return list(islice(newest_first, limit))
