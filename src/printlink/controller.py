"""Host-facing facade over the link, flow control and job executor.

:class:`PrinterController` is what applications and the CLI use::

    with PrinterController(load_settings()) as printer:
        printer.connect(port="/dev/ttyUSB0")
        printer.send_command("G28")
        printer.send_gcode_program(Path("part.gcode").read_text())

It owns one :class:`~printlink.session.LinkManager` (and through it at
most one live session) plus the :class:`~printlink.job.PrintExecutor`.
Observers read :attr:`status`, :attr:`telemetry`, :attr:`job`,
:attr:`log` and subscribe to :attr:`events`; nothing they do can write to
the link.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from typing import Any

from printlink.config import Settings
from printlink.errors import InvalidJobState
from printlink.events import EventBus, EventType
from printlink.job import PrintExecutor, fmt_coord
from printlink.models import (
    Acknowledgement,
    ConnectOptions,
    FirmwareInfo,
    JobStatus,
    LinkStatus,
    Position,
    PrinterSettings,
    PrinterTelemetry,
    PrintJob,
    ProgramSummary,
)
from printlink.serial_log import SerialLog
from printlink.session import LinkManager
from printlink.streaming import StreamingAdapter
from printlink.transport import TransportFactory

logger = logging.getLogger(__name__)


class PrinterController:
    """One printer, one link, one job at a time.

    Args:
        settings: Resolved settings; defaults when omitted.
        transport_factory: Override for the serial transport (tests, sims).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self._manager = LinkManager(self.settings, transport_factory=transport_factory)
        self._executor = PrintExecutor(self._manager, park=self.settings.park)
        self._streamer = StreamingAdapter(self._executor)

    # -- observables --------------------------------------------------------

    @property
    def status(self) -> LinkStatus:
        return self._manager.status

    @property
    def is_connected(self) -> bool:
        return self._manager.is_connected

    @property
    def telemetry(self) -> PrinterTelemetry:
        return self._manager.telemetry.snapshot()

    @property
    def job(self) -> PrintJob | None:
        return self._executor.job

    @property
    def job_status(self) -> JobStatus:
        return self._executor.status

    @property
    def log(self) -> SerialLog:
        return self._manager.log

    @property
    def events(self) -> EventBus:
        return self._manager.events

    @property
    def firmware(self) -> FirmwareInfo | None:
        session = self._manager.session
        return session.firmware if session is not None else None

    @property
    def printer_settings(self) -> PrinterSettings | None:
        """Firmware settings from the last ``M503`` report, if one was parsed."""
        session = self._manager.session
        return session.printer_settings if session is not None else None

    @property
    def baudrate(self) -> int | None:
        session = self._manager.session
        return session.baudrate if session is not None else None

    @property
    def port(self) -> str | None:
        session = self._manager.session
        return session.port if session is not None else None

    @property
    def progress(self) -> tuple[int, int]:
        """``(sent, total)`` of the program being streamed."""
        return self._streamer.progress

    def snapshot(self) -> dict[str, Any]:
        """Everything an observer would display, as one JSON-serialisable dict."""
        job = self.job
        settings = self.printer_settings
        errors = self.events.recent_events(EventType.LINK_ERROR, limit=1)
        return {
            "status": self.status.value,
            "port": self.port,
            "baudrate": self.baudrate,
            "firmware": self.firmware.to_dict() if self.firmware else None,
            "settings": settings.to_dict() if settings else None,
            "telemetry": self.telemetry.to_dict(),
            "job": job.to_dict() if job else {"status": JobStatus.IDLE.value},
            "last_error": errors[0].to_dict() if errors else None,
        }

    # -- link ---------------------------------------------------------------

    def connect(
        self,
        baudrate: int | None = None,
        auto_detect: bool | None = None,
        *,
        port: str | None = None,
    ) -> None:
        """Connect, discovering the baud rate when auto-detect is on."""
        self._manager.connect(ConnectOptions(baudrate=baudrate, auto_detect=auto_detect), port=port)

    def disconnect(self, force: bool = False) -> bool:
        """Disconnect; safe to call any number of times."""
        return self._manager.disconnect(force=force)

    # -- commands -----------------------------------------------------------

    def send_command(self, text: str) -> Acknowledgement:
        """Send one command through flow control and wait for its ``ok``."""
        session = self._manager.require_session()
        return session.flow.submit(text)

    def read_settings(self) -> PrinterSettings | None:
        """Ask the firmware for its stored settings (``M503``) and parse them.

        Returns ``None`` (keeping the previous settings) when the report
        holds nothing recognisable.
        """
        session = self._manager.require_session()
        ack = session.flow.submit("M503")
        return session.update_settings(list(ack.lines))

    def send_gcode_program(
        self,
        text: str,
        delay: float = 0.0,
        on_progress: Callable[[int, int], None] | None = None,
        *,
        timeout: float | None = None,
    ) -> ProgramSummary:
        """Stream a program and block until it finishes."""
        return self._streamer.send_program(text, delay=delay, on_progress=on_progress, timeout=timeout)

    def start_job(
        self,
        commands: list[str],
        *,
        on_progress: Callable[[int, int], None] | None = None,
        delay: float = 0.0,
    ) -> PrintJob:
        """Start a job in the background and return immediately."""
        return self._executor.start(commands, on_progress=on_progress, delay=delay)

    def wait(self, timeout: float | None = None) -> bool:
        return self._executor.wait(timeout)

    def pause(self) -> Position:
        return self._executor.pause()

    def resume(self) -> None:
        self._executor.resume()

    def stop(self, reason: str | None = None) -> PrintJob:
        return self._executor.stop(reason)

    def emergency_stop(self, reason: str | None = None) -> PrintJob:
        """Halt the printer immediately.  Never raises."""
        return self._executor.emergency_stop(reason)

    def reset_job(self) -> None:
        self._executor.reset()

    def adjust_z_offset(self, delta: float) -> Acknowledgement:
        """Babystep the nozzle by *delta* mm (``M290``), then refresh the position.

        Raises:
            ValueError: *delta* is zero, not finite, or larger than
                ``park.max_babystep``.
        """
        limit = self.settings.park.max_babystep
        if not math.isfinite(delta) or delta == 0:
            raise ValueError(f"Z offset delta must be a non-zero number, got {delta!r}")
        if abs(delta) > limit:
            raise ValueError(f"Z offset delta {delta} exceeds the {limit} mm babystep limit")
        if self._executor.status is JobStatus.PAUSED:
            raise InvalidJobState("Cannot babystep while paused: the nozzle is parked")
        session = self._manager.require_session()
        ack = session.flow.submit(f"M290 Z{fmt_coord(delta)}")
        session.flow.submit("M114")
        self.log.sys(f"Z offset adjusted by {fmt_coord(delta)} mm")
        return ack

    # -- context manager ----------------------------------------------------

    def close(self) -> None:
        if self._executor.status.is_active:
            try:
                self._executor.stop("Controller closed")
            except InvalidJobState:
                pass
        self._manager.disconnect(force=True)

    def __enter__(self) -> PrinterController:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<PrinterController status={self.status.value} port={self.port!r}>"
