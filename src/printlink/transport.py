"""Byte transport abstraction and the pyserial-backed implementation.

The link session only ever talks to a :class:`Transport`: open, read a
chunk of bytes, write bytes, close.  :class:`SerialTransport` maps every
pyserial / OS failure onto :class:`~printlink.errors.TransportError` (or
:class:`~printlink.errors.DeviceRemoved` when the device vanished) so that
raw library exceptions never leave this module.

Requires the ``pyserial`` package (``pip install pyserial``).
"""

from __future__ import annotations

import errno
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any

from printlink.errors import DeviceRemoved, TransportError
from printlink.models import PortInfo

logger = logging.getLogger(__name__)

# WCH CH340/CH341 USB-serial bridges used by most hobby printer boards.
CH340_VENDOR_ID: int = 0x1A86

# Other bridges commonly found on printer mainboards (FTDI, Silicon Labs,
# Arduino/Atmel CDC, STMicro CDC).
_PRINTER_VENDOR_IDS: frozenset[int] = frozenset({0x0403, 0x10C4, 0x2341, 0x0483})

# errno values raised by the OS when a USB serial device is unplugged mid-session.
_REMOVAL_ERRNOS: frozenset[int] = frozenset({errno.EIO, errno.ENXIO, errno.ENODEV})


class Transport(ABC):
    """A bidirectional byte stream to the printer.

    Implementations must be safe to :meth:`close` repeatedly and from a
    thread other than the one blocked in :meth:`read`.
    """

    port: str
    baudrate: int

    @abstractmethod
    def open(self) -> None:
        """Open the underlying device.  Raises :class:`TransportError`."""

    @abstractmethod
    def close(self) -> None:
        """Release the device.  Never raises."""

    @abstractmethod
    def read(self, size: int = 256) -> bytes:
        """Return up to *size* bytes, or ``b""`` when the read timeout expires.

        Raises :class:`DeviceRemoved` when the device disappeared and
        :class:`TransportError` on any other failure.
        """

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Write all of *data*.  Raises :class:`TransportError`."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the device is currently open."""


TransportFactory = Callable[[str, int], Transport]


def _looks_like_removal(exc: BaseException) -> bool:
    if isinstance(exc, OSError) and exc.errno in _REMOVAL_ERRNOS:
        return True
    msg = str(exc).lower()
    return "disconnected" in msg or "device not configured" in msg or "no such device" in msg


class SerialTransport(Transport):
    """Transport over a local serial port using pyserial.

    Framing is fixed at 8 data bits, no parity, 1 stop bit, no flow
    control, which is what Marlin and its derivatives expect.

    Args:
        port: Serial port path, e.g. ``"/dev/ttyUSB0"`` or ``"COM3"``.
        baudrate: Line speed.
        read_timeout: Seconds a single :meth:`read` may block.
        write_timeout: Seconds a single :meth:`write` may block.
        open_timeout: Seconds allowed for the port to open.
    """

    def __init__(
        self,
        port: str,
        baudrate: int,
        *,
        read_timeout: float = 0.1,
        write_timeout: float = 2.0,
        open_timeout: float = 5.0,
    ) -> None:
        try:
            import serial as _serial  # noqa: F401
        except ImportError as exc:
            raise TransportError(
                "pyserial is required for serial printers: pip install pyserial",
                cause=exc,
            ) from exc

        if not port:
            raise ValueError("port must not be empty")

        self.port = port
        self.baudrate = baudrate
        self._read_timeout = read_timeout
        self._write_timeout = write_timeout
        self._open_timeout = open_timeout
        self._serial: Any | None = None  # serial.Serial instance
        self._close_lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._serial is not None and bool(self._serial.is_open)

    def _create_port(self) -> Any:
        import serial

        return serial.Serial(
            port=self.port,
            baudrate=self.baudrate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            xonxoff=False,
            rtscts=False,
            dsrdtr=False,
            timeout=self._read_timeout,
            write_timeout=self._write_timeout,
        )

    def open(self) -> None:
        """Open the port, bounded by ``open_timeout``.

        Raises:
            TransportError: Port missing, permission denied, busy or the
                open did not complete in time.
        """
        import serial

        if self.is_open:
            return

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="printlink-open")
        future = executor.submit(self._create_port)
        try:
            self._serial = future.result(timeout=self._open_timeout)
        except FutureTimeout as exc:
            # A late open must not leak the port.
            future.add_done_callback(_close_late_port)
            raise TransportError(
                f"Timed out after {self._open_timeout:g}s opening {self.port}. "
                "Check that no other program holds the port.",
                cause=exc,
            ) from exc
        except serial.SerialException as exc:
            msg = str(exc).lower()
            if "permission" in msg or "access is denied" in msg:
                raise TransportError(
                    f"Permission denied opening {self.port}. "
                    "Add your user to the 'dialout' group: "
                    "sudo usermod -a -G dialout $USER",
                    cause=exc,
                ) from exc
            if "no such file" in msg or "not found" in msg or "filenotfounderror" in msg:
                raise TransportError(
                    f"Serial port {self.port} not found. Check USB cable and port path.",
                    cause=exc,
                ) from exc
            if "busy" in msg or "in use" in msg:
                raise TransportError(
                    f"Serial port {self.port} is busy. Close other programs using the printer.",
                    cause=exc,
                ) from exc
            raise TransportError(
                f"Failed to open serial port {self.port}: {exc}",
                cause=exc,
            ) from exc
        except OSError as exc:
            raise TransportError(
                f"OS error opening serial port {self.port}: {exc}",
                cause=exc,
            ) from exc
        finally:
            executor.shutdown(wait=False)

        logger.debug("Opened %s @ %d baud", self.port, self.baudrate)

    def close(self) -> None:
        with self._close_lock:
            port, self._serial = self._serial, None
        if port is None:
            return
        try:
            port.close()
        except Exception as exc:
            logger.debug("Failed to close serial port %s: %s", self.port, exc)
        logger.debug("Closed %s", self.port)

    def read(self, size: int = 256) -> bytes:
        port = self._serial
        if port is None:
            raise TransportError(f"Serial port {self.port} is not open")
        try:
            waiting = port.in_waiting
            return bytes(port.read(max(1, min(size, waiting)) if waiting else 1))
        except Exception as exc:
            if self._serial is None:
                # Closed underneath us by another thread.
                return b""
            if _looks_like_removal(exc):
                raise DeviceRemoved(
                    f"Serial device {self.port} was removed (USB unplugged or printer powered off)",
                    cause=exc,
                ) from exc
            raise TransportError(f"Serial read error on {self.port}: {exc}", cause=exc) from exc

    def write(self, data: bytes) -> None:
        port = self._serial
        if port is None:
            raise TransportError(f"Serial port {self.port} is not open")
        try:
            port.write(data)
            port.flush()
        except Exception as exc:
            if _looks_like_removal(exc):
                raise DeviceRemoved(
                    f"Serial device {self.port} was removed (USB unplugged or printer powered off)",
                    cause=exc,
                ) from exc
            raise TransportError(f"Serial write error on {self.port}: {exc}", cause=exc) from exc

    def __repr__(self) -> str:
        return f"<SerialTransport port={self.port!r} baudrate={self.baudrate}>"


def _close_late_port(future: Any) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    try:
        future.result().close()
    except Exception as exc:
        logger.debug("Failed to close late-opened port: %s", exc)


# ---------------------------------------------------------------------------
# Port discovery
# ---------------------------------------------------------------------------


def list_serial_ports() -> list[PortInfo]:
    """Enumerate local serial ports, flagging CH340/CH341 bridges."""
    try:
        from serial.tools import list_ports
    except ImportError as exc:
        raise TransportError(
            "pyserial is required for serial printers: pip install pyserial",
            cause=exc,
        ) from exc

    ports: list[PortInfo] = []
    for info in list_ports.comports():
        ports.append(
            PortInfo(
                device=info.device,
                description=info.description or "",
                hwid=info.hwid or "",
                vid=info.vid,
                pid=info.pid,
                is_ch340=info.vid == CH340_VENDOR_ID,
            )
        )
    ports.sort(key=lambda p: p.device)
    return ports


def guess_printer_port(ports: list[PortInfo] | None = None) -> str | None:
    """Return the port most likely to be a printer, or ``None``.

    CH340 bridges win, then other known printer USB bridges, then any
    ``ttyUSB``/``ttyACM``/``COM`` device.
    """
    if ports is None:
        ports = list_serial_ports()
    for port in ports:
        if port.is_ch340:
            return port.device
    for port in ports:
        if port.vid in _PRINTER_VENDOR_IDS:
            return port.device
    for port in ports:
        name = port.device.lower()
        if "ttyusb" in name or "ttyacm" in name or "usbserial" in name or name.startswith("com"):
            return port.device
    return None
