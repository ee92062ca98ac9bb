"""Append-only, observable log of everything crossing the serial link.

Each entry is tagged with a :class:`LogDirection` (``tx`` for commands we
wrote, ``rx`` for lines the firmware sent, ``sys`` for link housekeeping,
``err`` for failures).  Entries are never edited; retention only drops the
oldest ones (count cap and age cap).

Every entry is mirrored to the ``printlink.serial`` logger so that a
rotating log file configured by :func:`printlink.log_config.configure_logging`
captures the wire traffic as well.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from printlink.models import LogDirection, LogEntry

logger = logging.getLogger(__name__)
_wire_logger = logging.getLogger("printlink.serial")

_LEVELS: dict[LogDirection, int] = {
    LogDirection.TX: logging.DEBUG,
    LogDirection.RX: logging.DEBUG,
    LogDirection.SYS: logging.INFO,
    LogDirection.ERR: logging.WARNING,
}

LogListener = Callable[[LogEntry], None]


class SerialLog:
    """Thread-safe bounded serial log with subscribers.

    Args:
        max_entries: Maximum number of entries retained.
        max_age: Entries older than this many seconds are dropped on the
            next append.  ``0`` disables age-based retention.
    """

    def __init__(self, *, max_entries: int = 1000, max_age: float = 3600.0) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._max_age = max_age
        self._lock = threading.Lock()
        self._listeners: list[LogListener] = []

    def append(
        self,
        direction: LogDirection,
        text: str,
        *,
        tag: str | None = None,
    ) -> LogEntry:
        """Record one entry and notify subscribers.  Returns the entry."""
        entry = LogEntry(direction=direction, text=text, tag=tag)
        with self._lock:
            self._entries.append(entry)
            self._expire_locked(entry.timestamp)
            listeners = list(self._listeners)

        if tag:
            _wire_logger.log(_LEVELS[direction], "%s [%s] %s", direction.value.upper(), tag, text)
        else:
            _wire_logger.log(_LEVELS[direction], "%s %s", direction.value.upper(), text)

        for listener in listeners:
            try:
                listener(entry)
            except Exception:
                logger.exception("Serial log listener %r failed", listener)
        return entry

    # Convenience wrappers -------------------------------------------------

    def tx(self, text: str) -> LogEntry:
        return self.append(LogDirection.TX, text)

    def rx(self, text: str) -> LogEntry:
        return self.append(LogDirection.RX, text)

    def sys(self, text: str) -> LogEntry:
        return self.append(LogDirection.SYS, text)

    def err(self, text: str, *, tag: str | None = None) -> LogEntry:
        return self.append(LogDirection.ERR, text, tag=tag)

    # ----------------------------------------------------------------------

    def _expire_locked(self, now: float) -> None:
        if self._max_age <= 0:
            return
        cutoff = now - self._max_age
        while self._entries and self._entries[0].timestamp < cutoff:
            self._entries.popleft()

    def entries(
        self,
        direction: LogDirection | None = None,
        limit: int | None = None,
    ) -> list[LogEntry]:
        """Return entries oldest first, optionally filtered and limited to the newest *limit*."""
        with self._lock:
            self._expire_locked(time.time())
            items = list(self._entries)
        if direction is not None:
            items = [e for e in items if e.direction is direction]
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def subscribe(self, listener: LogListener) -> None:
        """Call *listener* with every new entry."""
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: LogListener) -> None:
        with self._lock:
            self._listeners = [cb for cb in self._listeners if cb is not listener]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
