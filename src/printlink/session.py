"""Serial link lifecycle: baud discovery, handshake, read loop and teardown.

:class:`LinkManager` owns at most one :class:`LinkSession` at a time.  A
session owns the transport, a daemon read-loop thread that turns bytes into
classified lines, the :class:`~printlink.flow.FlowController` every
command goes through, and an optional low-frequency ``M105`` poller.

Connecting walks a list of candidate baud rates.  At each rate the port is
opened, the firmware is given time to boot (Marlin resets on open), the
handshake probes ``M115``, ``M503`` and ``M119`` are written, and the rate
is accepted only once a recognised firmware signature line comes back.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from printlink.config import Settings
from printlink.errors import (
    ConnectionInProgress,
    DeviceRemoved,
    HandshakeFailure,
    LinkError,
    NotConnected,
    TransportError,
)
from printlink.events import EventBus, EventType
from printlink.flow import FlowController, ResponseChannel
from printlink.models import ConnectOptions, FirmwareInfo, LinkStatus, PrinterSettings
from printlink.parser import parse_line, parse_m503
from printlink.serial_log import SerialLog
from printlink.telemetry import TelemetryStore
from printlink.transport import SerialTransport, Transport, TransportFactory, guess_printer_port

logger = logging.getLogger(__name__)

HANDSHAKE_PROBES: tuple[str, ...] = ("M115", "M503", "M119")

# After the first signature, wait this long without traffic for the
# remaining probe output to finish before handing the link to flow control.
_HANDSHAKE_QUIET: float = 0.2

_READ_CHUNK: int = 256
# A line longer than this without a newline is flushed as-is.
_MAX_LINE: int = 4096
_JOIN_TIMEOUT: float = 2.0
# Slice for waits that must also notice the session closing.
_WAIT_SLICE: float = 0.05


def _port_is_unusable(exc: TransportError) -> bool:
    """Whether *exc* is an open failure no other baud rate can fix."""
    msg = str(exc).lower()
    return "not found" in msg or "permission denied" in msg or "pyserial is required" in msg


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class LinkSession:
    """One open link to one printer at one baud rate.

    Args:
        transport: Opened transport; the session takes ownership.
        settings: Link and flow settings.
        serial_log: Log receiving every line written and read.
        telemetry: Store updated from position / temperature lines.
        events: Bus receiving telemetry events.
        on_failure: Called (from the read thread) when the transport fails
            mid-session.  The callee is expected to tear the session down.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        settings: Settings,
        serial_log: SerialLog,
        telemetry: TelemetryStore,
        events: EventBus,
        on_failure: Callable[[LinkSession, TransportError], None] | None = None,
    ) -> None:
        self.transport = transport
        self.port = transport.port
        self.baudrate = transport.baudrate
        self.status = LinkStatus.CONNECTING
        self.firmware: FirmwareInfo | None = None
        self.printer_settings: PrinterSettings | None = None
        self.failure: TransportError | None = None

        self._settings = settings
        self._log = serial_log
        self._telemetry = telemetry
        self._events = events
        self._on_failure = on_failure

        self.channel = ResponseChannel(settings.link.channel_size)
        flow = settings.flow
        self.flow = FlowController(
            self.write_line,
            self.channel,
            capacity=flow.capacity,
            command_cost=flow.command_cost,
            byte_accurate=flow.byte_accurate,
            max_attempts=flow.max_attempts,
            ack_timeout=flow.ack_timeout,
            max_busy_wait=flow.max_busy_wait,
            error_grace=flow.error_grace,
            serial_log=serial_log,
        )

        self._write_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._closed = False
        self._stop = threading.Event()
        self._handshake = threading.Event()
        self._poll_suspended = threading.Event()
        self._last_rx = time.monotonic()
        self._watch_silence = False
        self._reader: threading.Thread | None = None
        self._poller: threading.Thread | None = None

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def last_rx(self) -> float:
        """Monotonic time of the last line received."""
        return self._last_rx

    # -- writing ------------------------------------------------------------

    def write_line(self, text: str) -> None:
        """Write one command line.  Raises :class:`TransportError`.

        A failed write on a connected session is a link failure: the
        session is torn down before the error propagates.
        """
        if self._closed:
            raise NotConnected("Link closed")
        line = text.strip()
        with self._write_lock:
            self._log.tx(line)
            try:
                self.transport.write((line + "\n").encode("ascii", errors="replace"))
                return
            except TransportError as exc:
                if self.status is not LinkStatus.CONNECTED:
                    self._log.err(str(exc), tag=exc.code)
                    raise
                failure = exc
        self._handle_failure(failure)
        raise failure

    # -- read loop ----------------------------------------------------------

    def start_reader(self) -> None:
        self._reader = threading.Thread(
            target=self._read_loop,
            name=f"printlink-reader-{self.port}",
            daemon=True,
        )
        self._reader.start()

    def _read_loop(self) -> None:
        buffer = bytearray()
        silence_warned = False
        while not self._stop.is_set():
            try:
                chunk = self.transport.read(_READ_CHUNK)
            except TransportError as exc:
                if self._stop.is_set():
                    return
                self._handle_failure(exc)
                return

            now = time.monotonic()
            if not chunk:
                limit = self._settings.link.silence_warning
                if self._watch_silence and limit > 0 and not silence_warned and now - self._last_rx >= limit:
                    silence_warned = True
                    self._log.sys(f"No data received from printer for {limit:g}s")
                continue

            self._last_rx = now
            silence_warned = False
            buffer.extend(chunk)
            while True:
                idx = buffer.find(b"\n")
                if idx < 0:
                    if len(buffer) > _MAX_LINE:
                        self._dispatch(bytes(buffer))
                        buffer.clear()
                    break
                raw = bytes(buffer[:idx])
                del buffer[: idx + 1]
                self._dispatch(raw)

    def _dispatch(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        event = parse_line(line)
        self._log.rx(line)

        if event.fields.get("handshake"):
            info = event.fields.get("firmware")
            if info is not None and self.firmware is None:
                self.firmware = info
            self._handshake.set()

        if self._telemetry.apply(event):
            self._events.publish(
                EventType.TELEMETRY_UPDATED,
                self._telemetry.snapshot().to_dict(),
                source=f"link:{self.port}",
            )
        self.channel.put(event)

    def _handle_failure(self, exc: TransportError) -> None:
        self.failure = exc
        logger.warning("Transport failure on %s: %s", self.port, exc)
        if self._on_failure is not None:
            self._on_failure(self, exc)
        else:
            self.close(exc)

    # -- handshake ----------------------------------------------------------

    def handshake(self, settle_window: float) -> bool:
        """Write the probes and wait up to *settle_window* for a signature line."""
        for probe in HANDSHAKE_PROBES:
            self.write_line(probe)
        deadline = time.monotonic() + settle_window
        while not self._handshake.wait(_WAIT_SLICE):
            if self._stop.is_set() or time.monotonic() >= deadline:
                return False
        # Let the rest of the probe output arrive so it is not taken for an ack.
        while not self._stop.is_set():
            now = time.monotonic()
            quiet_for = now - self._last_rx
            if quiet_for >= _HANDSHAKE_QUIET or now >= deadline:
                break
            time.sleep(min(_HANDSHAKE_QUIET - quiet_for, deadline - now))
        return self.failure is None and not self._stop.is_set()

    def mark_connected(self) -> None:
        output = [event.raw for event in self.channel.drain()]
        logger.debug("Handshake produced %d line(s)", len(output))
        self.update_settings(output)
        self.status = LinkStatus.CONNECTED
        self._last_rx = time.monotonic()
        self._watch_silence = True
        interval = self._settings.link.poll_interval
        if interval > 0:
            self._poller = threading.Thread(
                target=self._poll_loop,
                args=(interval,),
                name=f"printlink-poller-{self.port}",
                daemon=True,
            )
            self._poller.start()

    def update_settings(self, lines: list[str]) -> PrinterSettings | None:
        """Record the settings found in *lines* of M503 output, if any."""
        settings = parse_m503(lines)
        if settings.is_empty:
            return None
        self.printer_settings = settings
        return settings

    # -- telemetry poll -----------------------------------------------------

    def suspend_polling(self) -> None:
        self._poll_suspended.set()

    def resume_polling(self) -> None:
        self._poll_suspended.clear()

    @property
    def polling_suspended(self) -> bool:
        return self._poll_suspended.is_set()

    def _poll_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            if self._poll_suspended.is_set():
                continue
            try:
                self.flow.try_submit("M105")
            except NotConnected:
                return
            except LinkError as exc:
                logger.debug("Temperature poll failed: %s", exc)

    # -- teardown -----------------------------------------------------------

    def close(self, error: LinkError | None = None, *, grace: float = 0.0) -> bool:
        """Release the transport and stop all threads.

        Idempotent: returns ``False`` and touches nothing if already closed.
        With *grace* > 0 the in-flight command (if any) is given that long
        to be acknowledged first.
        """
        with self._close_lock:
            if self._closed:
                return False
            self._closed = True

        if grace > 0:
            deadline = time.monotonic() + grace
            while self.flow.pending is not None and time.monotonic() < deadline:
                time.sleep(0.05)

        self._stop.set()
        self.flow.abort(error or NotConnected("Link closed"))
        self.transport.close()
        current = threading.current_thread()
        for thread in (self._reader, self._poller):
            if thread is not None and thread is not current and thread.is_alive():
                thread.join(_JOIN_TIMEOUT)
        self.status = LinkStatus.DISCONNECTED
        return True

    def __repr__(self) -> str:
        return f"<LinkSession port={self.port!r} baudrate={self.baudrate} status={self.status.value}>"


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


@dataclass
class _ConnectAttempt:
    """Bookkeeping for the connect call currently running."""

    thread: threading.Thread
    cancelled: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    session: LinkSession | None = None

    def raise_if_cancelled(self) -> None:
        if self.cancelled.is_set():
            raise NotConnected("Connection attempt cancelled")


class LinkManager:
    """Establishes and tears down the single :class:`LinkSession`.

    Args:
        settings: Resolved settings; defaults when omitted.
        transport_factory: ``(port, baudrate) -> Transport``; defaults to
            :class:`SerialTransport` built from the link settings.
        serial_log: Shared serial log.
        telemetry: Shared telemetry store.
        events: Shared event bus.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport_factory: TransportFactory | None = None,
        serial_log: SerialLog | None = None,
        telemetry: TelemetryStore | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self._factory = transport_factory or self._serial_factory
        self.log = serial_log or SerialLog(
            max_entries=self.settings.log.max_entries,
            max_age=self.settings.log.max_age,
        )
        self.telemetry = telemetry or TelemetryStore()
        self.events = events or EventBus()

        self._lock = threading.Lock()
        self._status = LinkStatus.DISCONNECTED
        self._session: LinkSession | None = None
        self._attempt: _ConnectAttempt | None = None

    def _serial_factory(self, port: str, baudrate: int) -> Transport:
        link = self.settings.link
        return SerialTransport(
            port,
            baudrate,
            read_timeout=link.read_timeout,
            write_timeout=link.write_timeout,
            open_timeout=link.open_timeout,
        )

    # -- observables --------------------------------------------------------

    @property
    def status(self) -> LinkStatus:
        return self._status

    @property
    def session(self) -> LinkSession | None:
        return self._session

    @property
    def is_connected(self) -> bool:
        return self._status is LinkStatus.CONNECTED and self._session is not None

    def require_session(self) -> LinkSession:
        """Return the live session or raise :class:`NotConnected`."""
        session = self._session
        if session is None or self._status is not LinkStatus.CONNECTED:
            raise NotConnected("Not connected to a printer. Call connect() first.")
        return session

    def candidate_bauds(self, options: ConnectOptions | None = None) -> list[int]:
        """Ordered baud rates to try for *options*.

        The requested (or configured) rate always comes first; with
        auto-detect the remaining candidates follow in their usual order.
        """
        link = self.settings.link
        options = options or ConnectOptions()
        baudrate = options.baudrate or link.baudrate
        auto = link.auto_detect if options.auto_detect is None else options.auto_detect
        if not auto:
            return [baudrate]
        return [baudrate] + [b for b in link.baud_candidates if b != baudrate]

    # -- connect ------------------------------------------------------------

    def connect(self, options: ConnectOptions | None = None, *, port: str | None = None) -> LinkSession:
        """Open a verified link, replacing any existing session.

        Raises:
            ConnectionInProgress: Another connect is still running.
            TransportError: The port cannot be opened at all.
            HandshakeFailure: No firmware answered at any candidate baud.
            NotConnected: :meth:`disconnect` cancelled the attempt.
        """
        attempt = _ConnectAttempt(threading.current_thread())
        with self._lock:
            if self._status is LinkStatus.CONNECTING:
                raise ConnectionInProgress("A connection attempt is already in progress")
            previous, self._session = self._session, None
            self._status = LinkStatus.CONNECTING
            self._attempt = attempt

        try:
            if previous is not None:
                self.log.sys("Closing previous connection")
                self._teardown(previous, NotConnected("Link replaced by a new connection"))
            self.telemetry.reset()

            target = port or self.settings.link.port or guess_printer_port()
            if not target:
                raise TransportError(
                    "No serial port configured and none detected. "
                    "Pass --port or set PRINTLINK_PORT (e.g. /dev/ttyUSB0, COM3)."
                )
            self.events.publish(EventType.LINK_CONNECTING, {"port": target}, source=f"link:{target}")
            session = self._discover(target, self.candidate_bauds(options), attempt)

            with self._lock:
                cancelled = attempt.cancelled.is_set()
                if not cancelled:
                    self._session = session
                    self._status = LinkStatus.CONNECTED
                    self._attempt = None
            if cancelled:
                session.close(NotConnected("Connection attempt cancelled"))
                attempt.raise_if_cancelled()
        except LinkError as exc:
            with self._lock:
                self._status = LinkStatus.DISCONNECTED
                self._attempt = None
            if attempt.cancelled.is_set():
                self.log.sys("Connection attempt cancelled")
                logger.info("Connection attempt cancelled")
            else:
                self.log.err(str(exc), tag=exc.code)
                self.events.publish(EventType.LINK_ERROR, {"error": str(exc), "code": exc.code})
            raise
        finally:
            attempt.done.set()

        firmware = session.firmware.name if session.firmware else "unknown firmware"
        self.log.sys(f"Connected to {session.port} @ {session.baudrate} baud ({firmware})")
        logger.info("Connected to %s @ %d baud", session.port, session.baudrate)
        self.events.publish(
            EventType.LINK_CONNECTED,
            {
                "port": session.port,
                "baudrate": session.baudrate,
                "firmware": session.firmware.to_dict() if session.firmware else None,
            },
            source=f"link:{session.port}",
        )
        return session

    def _discover(self, port: str, candidates: list[int], attempt: _ConnectAttempt) -> LinkSession:
        link = self.settings.link
        last_open_error: TransportError | None = None
        opened_any = False

        for baud in candidates:
            attempt.raise_if_cancelled()
            self.log.sys(f"Trying {port} @ {baud} baud")
            transport = self._factory(port, baud)
            try:
                transport.open()
            except TransportError as exc:
                self.log.err(str(exc), tag=exc.code)
                if _port_is_unusable(exc):
                    raise
                last_open_error = exc
                continue
            opened_any = True

            session = LinkSession(
                transport,
                settings=self.settings,
                serial_log=self.log,
                telemetry=self.telemetry,
                events=self.events,
                on_failure=self._on_session_failure,
            )
            with self._lock:
                attempt.session = session
            session.start_reader()
            try:
                attempt.raise_if_cancelled()
                if link.boot_delay > 0:
                    attempt.cancelled.wait(link.boot_delay)
                    attempt.raise_if_cancelled()
                accepted = session.handshake(link.settle_window)
                attempt.raise_if_cancelled()
            except LinkError as exc:
                failure = session.failure or exc
                session.close(failure)
                attempt.raise_if_cancelled()
                if isinstance(failure, DeviceRemoved) or not isinstance(failure, TransportError):
                    raise failure from None
                last_open_error = failure
                continue
            finally:
                with self._lock:
                    attempt.session = None

            if session.failure is not None:
                session.close(session.failure)
                raise session.failure
            if accepted:
                session.mark_connected()
                return session

            self.log.sys(f"No firmware response at {baud} baud")
            session.close()

        if not opened_any and last_open_error is not None:
            raise last_open_error
        raise HandshakeFailure(
            f"No firmware response on {port} at any baud rate "
            f"({', '.join(str(b) for b in candidates)}). "
            "Check that the printer is powered on and the port is correct.",
            tried=tuple(candidates),
        )

    # -- teardown -----------------------------------------------------------

    def _teardown(self, session: LinkSession, error: LinkError | None = None, *, grace: float = 0.0) -> bool:
        closed = session.close(error, grace=grace)
        if closed:
            self.log.sys(f"Disconnected from {session.port}")
            logger.info("Disconnected from %s", session.port)
            self.events.publish(
                EventType.LINK_DISCONNECTED,
                {"port": session.port, "reason": str(error) if error else None},
                source=f"link:{session.port}",
            )
        return closed

    def disconnect(self, force: bool = False) -> bool:
        """Tear down the current session, or cancel a connect in progress.

        Returns ``False`` when there was nothing to disconnect.  Never
        raises.  Without *force* the in-flight command is given up to one
        ack timeout to complete first.
        """
        with self._lock:
            attempt = self._attempt
            session, self._session = self._session, None
            if attempt is None:
                self._status = LinkStatus.DISCONNECTED
        if attempt is not None:
            return self._cancel_attempt(attempt)
        if session is None:
            return False
        grace = 0.0 if force else self.settings.flow.ack_timeout
        try:
            return self._teardown(session, NotConnected("Disconnected"), grace=grace)
        except Exception:
            logger.exception("Error while disconnecting from %s", session.port)
            return False

    def _cancel_attempt(self, attempt: _ConnectAttempt) -> bool:
        """Abort a running :meth:`connect`; it raises :class:`NotConnected`."""
        logger.info("Cancelling connection attempt")
        attempt.cancelled.set()
        with self._lock:
            handshaking = attempt.session
        if handshaking is not None:
            handshaking.close(NotConnected("Connection attempt cancelled"))
        if attempt.thread is not threading.current_thread():
            attempt.done.wait(_JOIN_TIMEOUT)
        return True

    def _on_session_failure(self, session: LinkSession, exc: TransportError) -> None:
        self.log.err(str(exc), tag=exc.code)
        with self._lock:
            current = self._session is session
            if current:
                self._session = None
                self._status = LinkStatus.DISCONNECTED
        if not current:
            # Still handshaking; _discover sees session.failure.
            session.close(exc)
            return
        if isinstance(exc, DeviceRemoved):
            self.events.publish(EventType.DEVICE_REMOVED, {"port": session.port, "error": str(exc)})
        self.events.publish(EventType.LINK_ERROR, {"error": str(exc), "code": exc.code})
        self._teardown(session, exc)
