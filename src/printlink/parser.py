"""Classification of lines received from Marlin-style firmware.

:func:`parse_line` is a pure function: it never touches the link and never
drops a line.  Lines it cannot interpret come back as
:attr:`ResponseKind.OTHER` with the raw text intact so they still reach the
serial log.

Recognised forms::

    ok                                      -> ack
    ok T:210.0 /210.0 B:60.0 /60.0          -> ack (with temperature fields)
    Error:Line Number is not Last Line...   -> error
    echo:busy: processing                   -> busy
    X:10.00 Y:20.00 Z:5.00 E:0.00 Count ... -> position
    T:210.0 /210.0 B:60.0 /60.0 @:127       -> temperature
    FIRMWARE_NAME:Marlin 2.1.2 ...          -> other (handshake signature)
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from printlink.models import (
    FirmwareInfo,
    HeaterReading,
    Position,
    PrinterSettings,
    ResponseEvent,
    ResponseKind,
)

_NUM = r"-?\d+(?:\.\d+)?"

_POSITION_RE = re.compile(
    rf"X:\s*(?P<x>{_NUM})\s+Y:\s*(?P<y>{_NUM})\s+Z:\s*(?P<z>{_NUM})\s+E:\s*(?P<e>{_NUM})"
)

# Heater pairs are identified by their leading label character.  Both the
# spaced ("T:25.0 /0.0") and unspaced ("T:25.0/0.0") forms occur in the wild.
_HOTEND_RE = re.compile(rf"(?:^|\s)T:\s*(?P<current>{_NUM})\s*/\s*(?P<target>{_NUM})")
_BED_RE = re.compile(rf"(?:^|\s)B:\s*(?P<current>{_NUM})\s*/\s*(?P<target>{_NUM})")

_HANDSHAKE_SIGNATURES: tuple[str, ...] = (
    "FIRMWARE_NAME:",
    "Steps per unit:",
    "Reporting endstop",
)

# Keys of the M115 capability line, e.g. "FIRMWARE_NAME:Marlin 2.1.2 SOURCE_CODE_URL:...".
_M115_KEY_RE = re.compile(r"(?:^|\s)([A-Z][A-Z_]+):")
_VERSION_IN_NAME_RE = re.compile(r"(\d+\.\d+(?:\.\d+)*(?:[-.\w]*)?)")


def _is_ack(lower: str) -> bool:
    return lower == "ok" or (lower.startswith("ok") and lower[2:3] in (" ", "\t"))


def parse_position(text: str) -> Position | None:
    """Extract an ``X: Y: Z: E:`` position from *text*, or ``None``."""
    match = _POSITION_RE.search(text)
    if not match:
        return None
    return Position(
        x=float(match.group("x")),
        y=float(match.group("y")),
        z=float(match.group("z")),
        e=float(match.group("e")),
    )


def parse_temperatures(text: str) -> dict[str, HeaterReading]:
    """Extract the hotend (``T``) and bed (``B``) pairs present in *text*.

    Returns a dict with keys ``"hotend"`` and/or ``"bed"``; absent heaters
    are simply missing.
    """
    temps: dict[str, HeaterReading] = {}
    match = _HOTEND_RE.search(text)
    if match:
        temps["hotend"] = HeaterReading(float(match.group("current")), float(match.group("target")))
    match = _BED_RE.search(text)
    if match:
        temps["bed"] = HeaterReading(float(match.group("current")), float(match.group("target")))
    return temps


def is_handshake_signature(line: str) -> bool:
    """Whether *line* proves that firmware is talking at the current baud."""
    return any(sig in line for sig in _HANDSHAKE_SIGNATURES)


def parse_firmware_info(line: str) -> FirmwareInfo | None:
    """Parse an ``M115`` capability line into :class:`FirmwareInfo`.

    Returns ``None`` when *line* carries no ``FIRMWARE_NAME`` key.
    """
    if "FIRMWARE_NAME:" not in line:
        return None

    keys = list(_M115_KEY_RE.finditer(line))
    values: dict[str, str] = {}
    for idx, match in enumerate(keys):
        end = keys[idx + 1].start() if idx + 1 < len(keys) else len(line)
        values[match.group(1)] = line[match.end() : end].strip()

    name = values.get("FIRMWARE_NAME", "").strip() or "Unknown"
    version = values.get("FIRMWARE_VERSION")
    if not version:
        ver_match = _VERSION_IN_NAME_RE.search(name)
        version = ver_match.group(1) if ver_match else None

    extruders: int | None = None
    raw_count = values.get("EXTRUDER_COUNT")
    if raw_count and raw_count.split()[0].isdigit():
        extruders = int(raw_count.split()[0])

    return FirmwareInfo(
        name=name,
        version=version,
        machine_type=values.get("MACHINE_TYPE") or None,
        extruder_count=extruders,
        raw=line,
    )


def parse_line(line: str) -> ResponseEvent:
    """Classify one line of firmware output.

    The line is stripped of surrounding whitespace; the classification
    order is ack, error, busy, position, temperature, other.
    """
    text = line.strip()
    lower = text.lower()
    fields: dict[str, Any] = {}

    if _is_ack(lower):
        fields.update(parse_temperatures(text))
        return ResponseEvent(ResponseKind.ACK, text, fields)

    if "error" in lower:
        message = text.split(":", 1)[1].strip() if ":" in text else text
        if lower.startswith("echo:error"):
            message = text[len("echo:error") :].lstrip(": ").strip() or text
        return ResponseEvent(ResponseKind.ERROR, text, {"message": message})

    if "busy:" in lower:
        reason = text[lower.index("busy:") + len("busy:") :].strip()
        return ResponseEvent(ResponseKind.BUSY, text, {"reason": reason})

    position = parse_position(text)
    if position is not None:
        return ResponseEvent(ResponseKind.POSITION, text, {"position": position})

    temps = parse_temperatures(text)
    if temps:
        return ResponseEvent(ResponseKind.TEMPERATURE, text, dict(temps))

    if is_handshake_signature(text):
        fields["handshake"] = True
        info = parse_firmware_info(text)
        if info is not None:
            fields["firmware"] = info
    return ResponseEvent(ResponseKind.OTHER, text, fields)


# ---------------------------------------------------------------------------
# M503 settings report
# ---------------------------------------------------------------------------

# "echo:  M92 X80.00 Y80.00 Z400.00 E93.00"; comment lines start with "echo:;".
_SETTING_LINE_RE = re.compile(r"^(?:echo:)?\s*(?P<code>M\d+)(?P<args>(?:\s+.*)?)$", re.IGNORECASE)
_WORD_RE = re.compile(rf"\b([A-Za-z])({_NUM})\b")


def _words(args: str) -> dict[str, float]:
    return {letter.upper(): float(value) for letter, value in _WORD_RE.findall(args)}


def _axes(words: dict[str, float]) -> dict[str, float]:
    return {letter.lower(): value for letter, value in words.items() if letter in ("X", "Y", "Z", "E")}


def _pick(words: dict[str, float], **names: str) -> dict[str, float]:
    return {name: words[letter] for letter, name in names.items() if letter in words}


def parse_m503(lines: Iterable[str]) -> PrinterSettings:
    """Build :class:`PrinterSettings` from the lines of an ``M503`` report.

    Each report line replays one setting command.  Comment lines, the
    trailing ``ok`` and commands not listed below are skipped; a later line
    for the same command updates the earlier values.

    ====  ===========================================
    M92   steps per unit
    M203  max feedrates
    M201  max acceleration per axis
    M204  print / retract / travel acceleration
    M205  jerk (X Y Z E) or junction deviation (J)
    M206  home offset
    M420  bed leveling state (S) and fade height (Z)
    M145  material preset (S index, H hotend, B bed, F fan)
    M301  hotend PID
    M304  bed PID
    M413  power-loss recovery
    M851  probe offset
    M900  linear advance K
    M603  filament load / unload lengths
    ====  ===========================================
    """
    settings = PrinterSettings()
    for line in lines:
        text = line.strip()
        match = _SETTING_LINE_RE.match(text)
        if not match:
            continue
        code = match.group("code").upper()
        words = _words(match.group("args"))
        if not words:
            continue

        if code == "M92":
            settings.steps_per_unit.update(_axes(words))
        elif code == "M203":
            settings.max_feedrates.update(_axes(words))
        elif code == "M201":
            settings.max_acceleration.update(_axes(words))
        elif code == "M204":
            settings.acceleration.update(_pick(words, P="print", R="retract", T="travel"))
        elif code == "M205":
            settings.jerk.update(_axes(words))
            if "J" in words:
                settings.junction_deviation = words["J"]
        elif code == "M206":
            settings.home_offset.update(_axes(words))
        elif code == "M420":
            if "S" in words:
                settings.leveling_enabled = words["S"] == 1
            if "Z" in words:
                settings.fade_height = words["Z"]
        elif code == "M145":
            preset = _pick(words, H="hotend", B="bed", F="fan")
            settings.material_presets[int(words.get("S", 0))] = preset
        elif code == "M301":
            settings.hotend_pid.update(_pick(words, P="p", I="i", D="d"))
        elif code == "M304":
            settings.bed_pid.update(_pick(words, P="p", I="i", D="d"))
        elif code == "M413":
            settings.power_loss_recovery = words.get("S") == 1
        elif code == "M851":
            settings.probe_offset.update(_axes(words))
        elif code == "M900":
            if "K" not in words:
                continue
            settings.linear_advance = words["K"]
        elif code == "M603":
            settings.filament_change.update(_pick(words, L="load", U="unload"))
        else:
            continue
        settings.lines.append(text)
    return settings
