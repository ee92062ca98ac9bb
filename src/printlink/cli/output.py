"""Output formatting for the printlink CLI.

Provides both JSON (machine-parseable) and human-readable (Rich) output.
All public functions accept a ``json_mode`` flag:
    - ``True``  -> JSON envelope ``{status, data, error}``
    - ``False`` -> Rich-formatted panels and tables
"""

from __future__ import annotations

import json
from io import StringIO
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

# ---------------------------------------------------------------------------
# Generic helpers
# ---------------------------------------------------------------------------


def format_temp(reading: dict[str, Any] | None) -> str:
    """Format a heater reading like ``214.8°C -> 220.0°C``."""
    if not reading:
        return "N/A"
    current = reading.get("current")
    target = reading.get("target")
    current_str = f"{current:.1f}°C" if current is not None else "N/A"
    target_str = f"{target:.1f}°C" if target else "off"
    return f"{current_str} → {target_str}"


def format_position(position: dict[str, Any] | None) -> str:
    if not position:
        return "N/A"
    return "  ".join(f"{axis.upper()}:{position[axis]:.2f}" for axis in ("x", "y", "z", "e"))


def progress_bar(completion: float | None, width: int = 20) -> str:
    """ASCII progress bar: ``[████████░░░░] 42.3%``."""
    if completion is None:
        completion = 0.0
    completion = max(0.0, min(100.0, completion))
    filled = int(round(width * completion / 100))
    bar = "█" * filled + "░" * (width - filled)
    return f"[{bar}] {completion:.1f}%"


def _render(renderable: Any) -> str:
    """Render a Rich object to a string."""
    buf = StringIO()
    console = Console(file=buf, force_terminal=True, width=100)
    console.print(renderable)
    return buf.getvalue().rstrip("\n")


def _dumps(data: Any) -> str:
    return json.dumps(data, indent=2, sort_keys=False)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def format_response(
    status: str,
    data: dict[str, Any] | None = None,
    error: dict[str, Any] | None = None,
    *,
    json_mode: bool = False,
) -> str:
    """Build a standard ``{status, data, error}`` response."""
    if json_mode:
        envelope: dict[str, Any] = {"status": status}
        if data is not None:
            envelope["data"] = data
        if error is not None:
            envelope["error"] = error
        return _dumps(envelope)

    if status == "error" and error:
        t = Text()
        t.append("Error", style="bold red")
        t.append(f" [{error.get('code', 'UNKNOWN')}]: ", style="red")
        t.append(error.get("message", "An unknown error occurred."))
        return _render(Panel(t, title="Error", border_style="red"))

    if data:
        lines = [f"[bold]{k}:[/bold] {v}" for k, v in data.items()]
        return _render(Panel("\n".join(lines), border_style="green"))

    return f"Status: {status}"


def format_error(
    message: str,
    code: str = "ERROR",
    *,
    json_mode: bool = False,
) -> str:
    """Shortcut for a standard error response."""
    return format_response(
        "error",
        error={"code": code, "message": message},
        json_mode=json_mode,
    )


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


def format_ports(ports: list[dict[str, Any]], suggested: str | None, *, json_mode: bool = False) -> str:
    """Format discovered serial ports (dicts from ``PortInfo.to_dict()``)."""
    if json_mode:
        return _dumps({"status": "success", "data": {"ports": ports, "count": len(ports), "suggested": suggested}})

    if not ports:
        return _render(Panel("No serial ports found.", title="Ports", border_style="yellow"))

    table = Table(title="Serial ports", border_style="blue")
    table.add_column("Device", style="bold")
    table.add_column("Description")
    table.add_column("VID:PID")
    table.add_column("")
    for port in ports:
        vid, pid = port.get("vid"), port.get("pid")
        ids = f"{vid:04x}:{pid:04x}" if vid is not None and pid is not None else ""
        marks = []
        if port.get("is_ch340"):
            marks.append("[cyan]CH340[/cyan]")
        if port.get("device") == suggested:
            marks.append("[green]suggested[/green]")
        table.add_row(port.get("device", ""), port.get("description", ""), ids, " ".join(marks))
    return _render(table)


# ---------------------------------------------------------------------------
# Link / status
# ---------------------------------------------------------------------------


def _axis_values(values: dict[str, float]) -> str:
    return " ".join(f"{axis.upper()}{value:g}" for axis, value in values.items())


def format_probe(info: dict[str, Any], *, json_mode: bool = False) -> str:
    """Format the outcome of a successful handshake."""
    if json_mode:
        return _dumps({"status": "success", "data": info})

    firmware = info.get("firmware") or {}
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Port", str(info.get("port")))
    table.add_row("Baud rate", str(info.get("baudrate")))
    table.add_row("Firmware", firmware.get("name") or "unknown")
    if firmware.get("machine_type"):
        table.add_row("Machine", firmware["machine_type"])
    if firmware.get("extruder_count") is not None:
        table.add_row("Extruders", str(firmware["extruder_count"]))
    settings = info.get("settings") or {}
    if settings.get("steps_per_unit"):
        table.add_row("Steps/mm", _axis_values(settings["steps_per_unit"]))
    if settings.get("probe_offset"):
        table.add_row("Probe offset", _axis_values(settings["probe_offset"]))
    if settings.get("leveling_enabled") is not None:
        table.add_row("Bed leveling", "on" if settings["leveling_enabled"] else "off")
    return _render(Panel(table, title="Printer found", border_style="green"))


def format_status(snapshot: dict[str, Any], *, json_mode: bool = False) -> str:
    """Format ``PrinterController.snapshot()``."""
    if json_mode:
        return _dumps({"status": "success", "data": snapshot})

    telemetry = snapshot.get("telemetry") or {}
    job = snapshot.get("job") or {}
    job_state = job.get("status", "idle")

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")

    link = snapshot.get("status", "disconnected")
    color = "green" if link == "connected" else "red"
    table.add_row("Link", f"[{color}]{link}[/{color}]")
    if snapshot.get("port"):
        table.add_row("Port", f"{snapshot['port']} @ {snapshot.get('baudrate')} baud")
    table.add_row("Hotend", format_temp(telemetry.get("hotend")))
    table.add_row("Bed", format_temp(telemetry.get("bed")))
    table.add_row("Position", format_position(telemetry.get("position")))
    table.add_row("Job", job_state)
    if "progress" in job:
        table.add_row("Progress", progress_bar(job.get("progress")))
    last_error = snapshot.get("last_error")
    if last_error:
        table.add_row("Last error", Text(str(last_error["data"].get("error")), style="red"))
    return _render(Panel(table, title="Printer Status", border_style="blue"))


# ---------------------------------------------------------------------------
# Commands / programs
# ---------------------------------------------------------------------------


def format_acks(acks: list[dict[str, Any]], *, json_mode: bool = False) -> str:
    """Format the acknowledgements of ``send`` (dicts from ``Acknowledgement.to_dict()``)."""
    if json_mode:
        return _dumps({"status": "success", "data": {"results": acks, "count": len(acks)}})

    table = Table(border_style="blue")
    table.add_column("Command", style="bold")
    table.add_column("Response")
    table.add_column("Tries", justify="right")
    for ack in acks:
        table.add_row(ack["command"], "\n".join(ack["lines"]), str(ack["attempts"]))
    return _render(table)


def format_program(summary: dict[str, Any], *, json_mode: bool = False) -> str:
    """Format a ``ProgramSummary.to_dict()``."""
    if json_mode:
        return _dumps({"status": "success", "data": summary})

    total = summary.get("total") or 0
    sent = summary.get("sent") or 0
    state = summary.get("status", "unknown")
    completion = 100.0 if total == 0 else sent / total * 100.0
    border = "green" if state == "completed" else "yellow"
    message = f"{state}: {sent}/{total} command(s) sent\n{progress_bar(completion)}"
    if summary.get("error"):
        message += f"\n{summary['error']}"
    return _render(Panel(message, title="Program", border_style=border))
