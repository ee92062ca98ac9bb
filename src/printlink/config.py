"""Configuration for printlink.

Settings live in ``~/.printlink/config.yaml`` and are only ever read.
The file has one section per concern::

    link:
      port: /dev/ttyUSB0
      baudrate: 115200
      auto_detect: true
    flow:
      ack_timeout: 10
      max_attempts: 3
    park:
      park_z: 5
    log:
      max_entries: 1000

Precedence (highest first):
    1. Explicit arguments / CLI flags (``--port``, ``--baud``, ...)
    2. Environment variables (``PRINTLINK_PORT``, ``PRINTLINK_BAUDRATE``,
       ``PRINTLINK_AUTO_DETECT``, ``PRINTLINK_ACK_TIMEOUT``)
    3. Config file
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from printlink import parse_bool_env, parse_float_env, parse_int_env

logger = logging.getLogger(__name__)

# Most likely first; 115200 covers nearly every stock Marlin build.
DEFAULT_BAUD_CANDIDATES: tuple[int, ...] = (115200, 250000, 57600, 38400, 9600)


@dataclass(frozen=True)
class LinkSettings:
    """Serial link and handshake parameters."""

    port: str | None = None
    baudrate: int = 115200
    auto_detect: bool = True
    baud_candidates: tuple[int, ...] = DEFAULT_BAUD_CANDIDATES
    # Marlin resets when the port opens and prints its banner ~1-2 s later.
    boot_delay: float = 2.0
    settle_window: float = 3.0
    open_timeout: float = 5.0
    read_timeout: float = 0.1
    write_timeout: float = 2.0
    # Seconds between idle M105 polls; 0 disables the poller.
    poll_interval: float = 5.0
    silence_warning: float = 10.0
    channel_size: int = 1000


@dataclass(frozen=True)
class FlowSettings:
    """Firmware buffer model and retry policy."""

    capacity: int = 128
    command_cost: int = 32
    byte_accurate: bool = False
    max_attempts: int = 3
    ack_timeout: float = 10.0
    max_busy_wait: float = 900.0
    error_grace: float = 0.5


@dataclass(frozen=True)
class ParkSettings:
    """Pause / resume motion parameters (mm, mm/min, seconds)."""

    retract: float = 3.0
    retract_feedrate: int = 1800
    park_x: float = 0.0
    park_y: float = 0.0
    park_z: float = 5.0
    z_feedrate: int = 300
    xy_feedrate: int = 3000
    resume_clearance: float = 5.0
    # Motion has no completion ack; pause/resume wait this long for it.
    settle_time: float = 2.0
    max_babystep: float = 2.0


@dataclass(frozen=True)
class LogSettings:
    """Retention of the in-memory serial log."""

    max_entries: int = 1000
    max_age: float = 3600.0


@dataclass(frozen=True)
class Settings:
    link: LinkSettings = field(default_factory=LinkSettings)
    flow: FlowSettings = field(default_factory=FlowSettings)
    park: ParkSettings = field(default_factory=ParkSettings)
    log: LogSettings = field(default_factory=LogSettings)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["link"]["baud_candidates"] = list(self.link.baud_candidates)
        return data


_SECTIONS: dict[str, type] = {
    "link": LinkSettings,
    "flow": FlowSettings,
    "park": ParkSettings,
    "log": LogSettings,
}


def get_config_path() -> Path:
    """Return the default config file path (``~/.printlink/config.yaml``)."""
    return Path.home() / ".printlink" / "config.yaml"


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read and parse the YAML config file; return ``{}`` on any failure."""
    if not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        logger.warning("Config file %s has invalid YAML: %s", path, exc)
        return {}
    except OSError as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def _coerce(value: Any, current: Any) -> Any:
    """Convert *value* to the type of the default *current*; raise ValueError if impossible."""
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes", "on", "0", "false", "no", "off"):
            return value.strip().lower() in ("1", "true", "yes", "on")
        raise ValueError(f"expected a boolean, got {value!r}")
    if isinstance(current, int):
        if isinstance(value, bool) or isinstance(value, float) and not value.is_integer():
            raise ValueError(f"expected an integer, got {value!r}")
        return int(value)
    if isinstance(current, float):
        if isinstance(value, bool):
            raise ValueError(f"expected a number, got {value!r}")
        return float(value)
    if isinstance(current, tuple):
        if not isinstance(value, (list, tuple)) or not value:
            raise ValueError(f"expected a non-empty list, got {value!r}")
        return tuple(int(v) for v in value)
    if current is None or isinstance(current, str):
        return None if value is None else str(value)
    return value


def _apply_section(section: Any, raw: Any, name: str, path: Path) -> Any:
    if raw is None:
        return section
    if not isinstance(raw, dict):
        logger.warning("Config file %s: section %r must be a mapping, ignoring", path, name)
        return section
    known = {f.name for f in fields(section)}
    updates: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            logger.warning(
                "Config file %s contains unknown key %s.%s (expected one of: %s)",
                path,
                name,
                key,
                ", ".join(sorted(known)),
            )
            continue
        try:
            updates[key] = _coerce(value, getattr(section, key))
        except (TypeError, ValueError) as exc:
            logger.warning("Config file %s: invalid value for %s.%s: %s", path, name, key, exc)
    return replace(section, **updates)


def _apply_env(settings: Settings) -> Settings:
    link = settings.link
    flow = settings.flow
    port = os.environ.get("PRINTLINK_PORT", "").strip()
    if port:
        link = replace(link, port=port)
    link = replace(
        link,
        baudrate=parse_int_env("PRINTLINK_BAUDRATE", link.baudrate),
        auto_detect=parse_bool_env("PRINTLINK_AUTO_DETECT", link.auto_detect),
    )
    flow = replace(flow, ack_timeout=parse_float_env("PRINTLINK_ACK_TIMEOUT", flow.ack_timeout))
    return replace(settings, link=link, flow=flow)


def load_settings(
    *,
    config_path: Path | None = None,
    port: str | None = None,
    baudrate: int | None = None,
    auto_detect: bool | None = None,
) -> Settings:
    """Build :class:`Settings` from the config file, environment and arguments.

    Unknown keys and invalid values are logged and skipped; a missing or
    unreadable file yields the defaults.
    """
    path = config_path or get_config_path()
    raw = _read_config_file(path)

    for key in sorted(set(raw) - set(_SECTIONS)):
        logger.warning(
            "Config file %s contains unknown section %r (expected one of: %s)",
            path,
            key,
            ", ".join(sorted(_SECTIONS)),
        )

    settings = Settings()
    sections = {name: _apply_section(getattr(settings, name), raw.get(name), name, path) for name in _SECTIONS}
    settings = _apply_env(Settings(**sections))

    overrides: dict[str, Any] = {}
    if port:
        overrides["port"] = port
    if baudrate is not None:
        overrides["baudrate"] = baudrate
    if auto_detect is not None:
        overrides["auto_detect"] = auto_detect
    if overrides:
        settings = replace(settings, link=replace(settings.link, **overrides))
    return settings
