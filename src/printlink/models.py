"""Data model shared by the link, flow controller and job state machine.

All structured values are plain dataclasses with a ``to_dict`` method so
they can be handed straight to ``json.dumps`` by the CLI or by any
presentation layer that observes the controller.
"""

from __future__ import annotations

import enum
import time
from dataclasses import asdict, dataclass, field
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class LinkStatus(enum.Enum):
    """Connection state of the serial link."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class JobStatus(enum.Enum):
    """Lifecycle state of a print job."""

    IDLE = "idle"
    PRINTING = "printing"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    EMERGENCY_STOPPED = "emergency_stopped"

    @property
    def is_active(self) -> bool:
        """Whether a job in this state still owns the feed loop."""
        return self in (JobStatus.PRINTING, JobStatus.PAUSED)


class LogDirection(enum.Enum):
    """Direction tag of a serial log entry."""

    TX = "tx"
    RX = "rx"
    SYS = "sys"
    ERR = "err"


class ResponseKind(enum.Enum):
    """Classification of a single line received from the firmware."""

    ACK = "ack"
    ERROR = "error"
    POSITION = "position"
    TEMPERATURE = "temperature"
    BUSY = "busy"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResponseEvent:
    """A classified firmware line.  ``raw`` is always the original text."""

    kind: ResponseKind
    raw: str
    fields: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "raw": self.raw,
            "fields": dict(self.fields),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Position:
    """Tool position as reported by ``M114``."""

    x: float
    y: float
    z: float
    e: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class HeaterReading:
    """Current and target temperature of one heater, in degrees Celsius."""

    current: float
    target: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PrinterTelemetry:
    """Snapshot of the latest known position and temperatures.

    Fields stay ``None`` until the firmware has reported them at least once.
    """

    position: Position | None = None
    hotend: HeaterReading | None = None
    bed: HeaterReading | None = None
    timestamp: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position.to_dict() if self.position else None,
            "hotend": self.hotend.to_dict() if self.hotend else None,
            "bed": self.bed.to_dict() if self.bed else None,
            "timestamp": self.timestamp,
        }


@dataclass
class PendingCommand:
    """The single command currently written but not yet acknowledged."""

    text: str
    sent_at: float
    retry_count: int = 0
    awaiting_ack: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Acknowledgement:
    """Outcome of a successfully acknowledged command.

    ``lines`` holds every non-ack line received while the command was in
    flight (e.g. the position report preceding the ``ok`` of ``M114``) plus
    the ``ok`` line itself as the last element.
    """

    command: str
    lines: tuple[str, ...] = ()
    attempts: int = 1
    elapsed: float = 0.0

    @property
    def response(self) -> str:
        """All response lines joined with newlines."""
        return "\n".join(self.lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "lines": list(self.lines),
            "attempts": self.attempts,
            "elapsed": round(self.elapsed, 4),
        }


@dataclass(frozen=True)
class FirmwareInfo:
    """Identification parsed from the ``M115`` capability report."""

    name: str
    version: str | None = None
    machine_type: str | None = None
    extruder_count: int | None = None
    raw: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PrinterSettings:
    """Stored firmware settings as replayed by ``M503``.

    Axis maps are keyed by lower-case axis letter.  Anything the firmware
    did not report stays empty or ``None``; nothing is guessed.
    """

    steps_per_unit: dict[str, float] = field(default_factory=dict)
    max_feedrates: dict[str, float] = field(default_factory=dict)
    max_acceleration: dict[str, float] = field(default_factory=dict)
    # print / retract / travel (M204 P R T)
    acceleration: dict[str, float] = field(default_factory=dict)
    jerk: dict[str, float] = field(default_factory=dict)
    junction_deviation: float | None = None
    home_offset: dict[str, float] = field(default_factory=dict)
    leveling_enabled: bool | None = None
    fade_height: float | None = None
    # M145 preset index -> hotend / bed / fan
    material_presets: dict[int, dict[str, float]] = field(default_factory=dict)
    hotend_pid: dict[str, float] = field(default_factory=dict)
    bed_pid: dict[str, float] = field(default_factory=dict)
    power_loss_recovery: bool | None = None
    probe_offset: dict[str, float] = field(default_factory=dict)
    linear_advance: float | None = None
    # load / unload lengths (M603 L U)
    filament_change: dict[str, float] = field(default_factory=dict)
    lines: list[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    @property
    def is_empty(self) -> bool:
        """True when no recognised setting line was seen."""
        return not self.lines

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["material_presets"] = {str(k): v for k, v in self.material_presets.items()}
        return data


@dataclass(frozen=True)
class LogEntry:
    """One append-only serial log record."""

    direction: LogDirection
    text: str
    timestamp: float = field(default_factory=time.time)
    tag: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["direction"] = self.direction.value
        return data


@dataclass
class PrintJob:
    """A running (or finished) print job.

    ``cursor`` counts acknowledged commands and is the index of the next
    command to send.  ``buffer_occupancy`` mirrors the flow controller's
    estimate at the time of the last acknowledgement.
    """

    commands: list[str]
    cursor: int = 0
    status: JobStatus = JobStatus.IDLE
    park_position: Position | None = None
    buffer_occupancy: int = 0
    error: str | None = None
    error_code: str | None = None
    failed_command: str | None = None
    discarded: int = 0
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def total(self) -> int:
        return len(self.commands)

    @property
    def remaining(self) -> int:
        return max(self.total - self.cursor, 0)

    @property
    def progress(self) -> float:
        """Percentage of commands acknowledged, 0.0 -- 100.0.

        Only a fully acknowledged job reports 100; anything short of that
        is floored to two decimals so rounding never reaches it early.
        """
        if not self.commands:
            return 100.0 if self.status is JobStatus.COMPLETED else 0.0
        if self.cursor >= self.total:
            return 100.0
        return self.cursor * 10000 // self.total / 100

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary (commands are summarised)."""
        return {
            "status": self.status.value,
            "cursor": self.cursor,
            "total": self.total,
            "progress": self.progress,
            "park_position": self.park_position.to_dict() if self.park_position else None,
            "buffer_occupancy": self.buffer_occupancy,
            "error": self.error,
            "error_code": self.error_code,
            "failed_command": self.failed_command,
            "discarded": self.discarded,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass(frozen=True)
class ProgramSummary:
    """Result of streaming a whole G-code program."""

    sent: int
    total: int
    status: JobStatus
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class ConnectOptions:
    """Per-call overrides for :meth:`LinkManager.connect`.

    ``None`` means "use the configured default".
    """

    baudrate: int | None = None
    auto_detect: bool | None = None


@dataclass(frozen=True)
class PortInfo:
    """A serial port discovered on the host."""

    device: str
    description: str = ""
    hwid: str = ""
    vid: int | None = None
    pid: int | None = None
    is_ch340: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
