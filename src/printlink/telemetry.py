"""Live telemetry snapshot fed by parsed firmware lines."""

from __future__ import annotations

import threading
import time

from printlink.models import PrinterTelemetry, ResponseEvent, ResponseKind


class TelemetryStore:
    """Holds the latest :class:`PrinterTelemetry`, updated from response events.

    Position and temperature events update the snapshot regardless of
    whether a job is running; acks carrying inline temperatures
    (``ok T:...``) count as well.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot = PrinterTelemetry()

    def apply(self, event: ResponseEvent) -> bool:
        """Fold *event* into the snapshot.  Returns ``True`` if anything changed."""
        if event.kind not in (ResponseKind.POSITION, ResponseKind.TEMPERATURE, ResponseKind.ACK):
            return False
        position = event.fields.get("position")
        hotend = event.fields.get("hotend")
        bed = event.fields.get("bed")
        if position is None and hotend is None and bed is None:
            return False

        with self._lock:
            current = self._snapshot
            self._snapshot = PrinterTelemetry(
                position=position or current.position,
                hotend=hotend or current.hotend,
                bed=bed or current.bed,
                timestamp=event.timestamp or time.time(),
            )
        return True

    def snapshot(self) -> PrinterTelemetry:
        with self._lock:
            return self._snapshot

    def reset(self) -> None:
        with self._lock:
            self._snapshot = PrinterTelemetry()
