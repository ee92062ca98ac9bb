"""Shared fixtures for the printlink test suite.

Provides :class:`FakeMarlin`, an in-memory :class:`~printlink.transport.Transport`
that behaves like a Marlin board on the other end of the cable: it answers
the handshake queries, tracks absolute/relative positioning and the tool
position, reports temperatures, and can be told to stay silent, reject
commands, only answer at certain baud rates, or vanish mid-session.
"""

from __future__ import annotations

import queue
import re
import threading

import pytest

from printlink.config import FlowSettings, LinkSettings, LogSettings, ParkSettings, Settings
from printlink.errors import DeviceRemoved, TransportError
from printlink.transport import Transport

FIRMWARE_LINE = (
    "FIRMWARE_NAME:Marlin 2.1.2.1 (Feb 27 2024 12:00:00) "
    "SOURCE_CODE_URL:github.com/MarlinFirmware/Marlin PROTOCOL_VERSION:1.0 "
    "MACHINE_TYPE:Ender-3 V2 EXTRUDER_COUNT:1 UUID:cede2a2f-41a2-4748-9b12-c55c62f367ff"
)

M503_REPORT: tuple[str, ...] = (
    "echo:; Linear Units:",
    "echo:  G21 ; (mm)",
    "echo:; Steps per unit:",
    "echo:  M92 X80.00 Y80.00 Z400.00 E93.00",
    "echo:; Max feedrates (units/s):",
    "echo:  M203 X500.00 Y500.00 Z5.00 E25.00",
    "echo:; Max Acceleration (units/s2):",
    "echo:  M201 X500.00 Y500.00 Z100.00 E5000.00",
    "echo:; Acceleration (units/s2) (P<print-accel> R<retract-accel> T<travel-accel>):",
    "echo:  M204 P500.00 R500.00 T1000.00",
    "echo:; Advanced (B<min_segment_time_us> S<min_feedrate> T<min_travel_feedrate> X<max_jerk> ...):",
    "echo:  M205 B20000.00 S0.00 T0.00 X10.00 Y10.00 Z0.30 E5.00",
    "echo:; Home offset:",
    "echo:  M206 X0.00 Y0.00 Z0.00",
    "echo:; Auto Bed Leveling:",
    "echo:  M420 S1 Z10.00",
    "echo:; Material heatup parameters:",
    "echo:  M145 S0 H185.00 B60.00 F0",
    "echo:  M145 S1 H240.00 B110.00 F0",
    "echo:; Hotend PID:",
    "echo:  M301 P21.73 I1.54 D76.55",
    "echo:; Bed PID:",
    "echo:  M304 P462.10 I85.47 D624.59",
    "echo:; Power-Loss Recovery:",
    "echo:  M413 S1",
    "echo:; Z-Probe Offset:",
    "echo:  M851 X-45.00 Y-7.00 Z-1.55 ; (mm)",
    "echo:; Linear Advance:",
    "echo:  M900 K0.00",
    "echo:; Filament load/unload:",
    "echo:  M603 L0.00 U100.00 ; (mm)",
)

_ARG_RE = re.compile(r"([XYZE])(-?\d+(?:\.\d+)?)")


class FakeMarlin(Transport):
    """Simulated Marlin firmware behind a byte transport.

    Args:
        port: Port name reported back.
        baudrate: Baud rate this instance was opened at.
        accept_bauds: Rates at which the firmware understands us; at any
            other rate writes are answered with line noise.
        silent: Commands (first token, e.g. ``"G4"``) that never get a reply.
        errors: Commands answered with an ``Error:`` line followed by ``ok``,
            as Marlin does.
        error_ok_delay: Seconds between the ``Error:`` line and its ``ok``.
        remove_on: Command whose write makes the device disappear.
        write_error_on: Command whose write fails with a :class:`TransportError`.
        open_error: Exception raised from :meth:`open`.
    """

    def __init__(
        self,
        port: str = "/dev/ttyFAKE0",
        baudrate: int = 115200,
        *,
        accept_bauds: tuple[int, ...] = (115200,),
        silent: set[str] | None = None,
        errors: set[str] | None = None,
        error_ok_delay: float = 0.0,
        remove_on: str | None = None,
        write_error_on: str | None = None,
        open_error: TransportError | None = None,
    ) -> None:
        self.port = port
        self.baudrate = baudrate
        self.accept_bauds = accept_bauds
        self.silent = set(silent or ())
        self.errors = set(errors or ())
        self.error_ok_delay = error_ok_delay
        self.remove_on = remove_on
        self.write_error_on = write_error_on
        self.open_error = open_error

        self.written: list[str] = []
        self.open_calls = 0
        self.close_calls = 0
        self.halted = False
        self.removed = False
        self.relative = False
        self.position = {"X": 0.0, "Y": 0.0, "Z": 0.0, "E": 0.0}
        self.hotend = (24.5, 0.0)
        self.bed = (23.8, 0.0)

        self._open = False
        self._rx: queue.Queue[bytes] = queue.Queue()
        self._lock = threading.Lock()

    # -- Transport ----------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self.open_calls += 1
        if self.open_error is not None:
            raise self.open_error
        self._open = True

    def close(self) -> None:
        self.close_calls += 1
        self._open = False

    def read(self, size: int = 256) -> bytes:
        if self.removed:
            raise DeviceRemoved(f"Serial device {self.port} was removed")
        if not self._open:
            raise TransportError(f"Serial port {self.port} is not open")
        try:
            return self._rx.get(timeout=0.02)
        except queue.Empty:
            return b""

    def write(self, data: bytes) -> None:
        if self.removed:
            raise DeviceRemoved(f"Serial device {self.port} was removed")
        if not self._open:
            raise TransportError(f"Serial port {self.port} is not open")
        for raw in data.decode("ascii").splitlines():
            line = raw.strip()
            if not line:
                continue
            if line.split()[0].upper() == self.write_error_on:
                raise TransportError(f"Write to {self.port} timed out")
            with self._lock:
                self.written.append(line)
            self._handle(line)

    # -- helpers for tests --------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Inject raw bytes as if the firmware had sent them unprompted."""
        self._rx.put(data)

    def reply(self, *lines: str) -> None:
        for line in lines:
            self._rx.put((line + "\n").encode("utf-8"))

    @property
    def commands(self) -> list[str]:
        with self._lock:
            return list(self.written)

    # -- firmware -----------------------------------------------------------

    def _handle(self, line: str) -> None:
        if self.baudrate not in self.accept_bauds:
            self._rx.put(b"\x8f\xfe\x00\xc3")
            return
        word = line.split()[0].upper()
        if word == self.remove_on:
            self.removed = True
            return
        if self.halted or word in self.silent:
            return
        if word in self.errors:
            self.reply(f"Error:Unknown command: \"{line}\"")
            if self.error_ok_delay > 0:
                threading.Timer(self.error_ok_delay, self.reply, args=("ok",)).start()
            else:
                self.reply("ok")
            return

        if word == "M115":
            self.reply(FIRMWARE_LINE, "Cap:AUTOREPORT_TEMP:1", "ok")
        elif word == "M503":
            self.reply(*M503_REPORT, "ok")
        elif word == "M119":
            self.reply("Reporting endstop status", "x_min: open", "y_min: open", "z_min: TRIGGERED", "ok")
        elif word == "M105":
            self.reply(
                f"ok T:{self.hotend[0]:.2f} /{self.hotend[1]:.2f} B:{self.bed[0]:.2f} /{self.bed[1]:.2f} @:0 B@:0"
            )
        elif word == "M114":
            p = self.position
            self.reply(
                f"X:{p['X']:.2f} Y:{p['Y']:.2f} Z:{p['Z']:.2f} E:{p['E']:.2f} Count X:0 Y:0 Z:0",
                "ok",
            )
        elif word == "M112":
            self.halted = True
        elif word == "G90":
            self.relative = False
            self.reply("ok")
        elif word == "G91":
            self.relative = True
            self.reply("ok")
        elif word == "G28":
            self.position.update({"X": 0.0, "Y": 0.0, "Z": 0.0})
            self.reply("echo:busy: processing", "ok")
        elif word in ("G0", "G1", "G92"):
            for axis, value in _ARG_RE.findall(line.upper()):
                if self.relative and word != "G92":
                    self.position[axis] = round(self.position[axis] + float(value), 4)
                else:
                    self.position[axis] = float(value)
            self.reply("ok")
        else:
            self.reply("ok")


class MarlinFactory:
    """Transport factory handing out :class:`FakeMarlin` instances.

    Keyword arguments are forwarded to every instance created.
    """

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.instances: list[FakeMarlin] = []

    def __call__(self, port: str, baudrate: int) -> FakeMarlin:
        transport = FakeMarlin(port, baudrate, **self.kwargs)
        self.instances.append(transport)
        return transport

    @property
    def last(self) -> FakeMarlin:
        return self.instances[-1]

    @property
    def bauds_tried(self) -> list[int]:
        return [t.baudrate for t in self.instances]


def fast_settings(**flow_overrides) -> Settings:
    """Settings with every wait shrunk so tests run in milliseconds."""
    flow = FlowSettings(ack_timeout=0.3, **flow_overrides)
    return Settings(
        link=LinkSettings(
            port="/dev/ttyFAKE0",
            boot_delay=0.0,
            settle_window=0.4,
            poll_interval=0.0,
            silence_warning=0.0,
        ),
        flow=flow,
        park=ParkSettings(settle_time=0.0),
        log=LogSettings(),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep tests away from the user's environment, config and log dir."""
    for name in (
        "PRINTLINK_PORT",
        "PRINTLINK_BAUDRATE",
        "PRINTLINK_AUTO_DETECT",
        "PRINTLINK_ACK_TIMEOUT",
        "PRINTLINK_LOG_LEVEL",
        "PRINTLINK_EVENT_HISTORY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PRINTLINK_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("HOME", str(tmp_path))


@pytest.fixture
def settings() -> Settings:
    return fast_settings()


@pytest.fixture
def factory() -> MarlinFactory:
    return MarlinFactory()


@pytest.fixture
def controller(settings, factory):
    from printlink.controller import PrinterController

    printer = PrinterController(settings, transport_factory=factory)
    yield printer
    printer.close()


@pytest.fixture
def connected(controller):
    controller.connect()
    return controller
