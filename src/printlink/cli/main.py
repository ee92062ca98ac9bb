"""printlink CLI: talk to a Marlin printer over USB serial.

Every subcommand supports a ``--json`` flag for machine-parseable output.
Connection options (``--port``, ``--baud``, ``--no-auto-detect``) are
global and override the environment and ``~/.printlink/config.yaml``.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn

from printlink.config import Settings, load_settings
from printlink.controller import PrinterController
from printlink.errors import LinkError
from printlink.log_config import DATE_FORMAT, LOG_FORMAT, configure_logging
from printlink.models import JobStatus, ProgramSummary
from printlink.transport import guess_printer_port, list_serial_ports

from printlink.cli.output import (
    format_acks,
    format_error,
    format_ports,
    format_probe,
    format_program,
    format_status,
)

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    try:
        configure_logging()
    except OSError as exc:
        logger.debug("File logging unavailable: %s", exc)
    if verbose:
        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        if not any(getattr(h, "_printlink_stderr", False) for h in root.handlers):
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
            handler._printlink_stderr = True  # type: ignore[attr-defined]
            root.addHandler(handler)


def _make_controller(ctx: click.Context) -> PrinterController:
    settings: Settings = ctx.obj["settings"]
    return PrinterController(settings, transport_factory=ctx.obj.get("transport_factory"))


def _connect(ctx: click.Context) -> PrinterController:
    printer = _make_controller(ctx)
    try:
        printer.connect()
    except BaseException:
        printer.close()
        raise
    return printer


def _fail(exc: Exception, action: str, json_mode: bool) -> None:
    code = exc.code if isinstance(exc, LinkError) else "ERROR"
    click.echo(format_error(f"{action}: {exc}", code=code, json_mode=json_mode))
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option("--port", "-p", default=None, help="Serial port (e.g. /dev/ttyUSB0, COM3).")
@click.option("--baud", "-b", type=int, default=None, help="Baud rate (tried first when auto-detecting).")
@click.option("--no-auto-detect", is_flag=True, help="Only try the configured baud rate.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default ~/.printlink/config.yaml).",
)
@click.option("--verbose", "-v", is_flag=True, help="Log to stderr, including serial traffic.")
@click.version_option(package_name="printlink")
@click.pass_context
def cli(
    ctx: click.Context,
    port: str | None,
    baud: int | None,
    no_auto_detect: bool,
    config_path: Path | None,
    verbose: bool,
) -> None:
    """printlink: reliable serial link to Marlin 3D printers."""
    ctx.ensure_object(dict)
    _setup_logging(verbose)
    ctx.obj["settings"] = load_settings(
        config_path=config_path,
        port=port,
        baudrate=baud,
        auto_detect=False if no_auto_detect else None,
    )


# ---------------------------------------------------------------------------
# ports
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
def ports(json_mode: bool) -> None:
    """List serial ports and guess which one is the printer."""
    try:
        found = list_serial_ports()
        suggested = guess_printer_port(found)
        click.echo(format_ports([p.to_dict() for p in found], suggested, json_mode=json_mode))
    except LinkError as exc:
        _fail(exc, "Failed to list serial ports", json_mode)


# ---------------------------------------------------------------------------
# probe
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def probe(ctx: click.Context, json_mode: bool) -> None:
    """Connect, identify the firmware and disconnect."""
    try:
        with _connect(ctx) as printer:
            firmware = printer.firmware
            settings = printer.printer_settings
            info: dict[str, Any] = {
                "port": printer.port,
                "baudrate": printer.baudrate,
                "firmware": firmware.to_dict() if firmware else None,
                "settings": settings.to_dict() if settings else None,
            }
        click.echo(format_probe(info, json_mode=json_mode))
    except LinkError as exc:
        _fail(exc, "Printer not found", json_mode)


# ---------------------------------------------------------------------------
# send
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("commands", nargs=-1, required=True)
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def send(ctx: click.Context, commands: tuple[str, ...], json_mode: bool) -> None:
    """Send G-code commands one at a time, waiting for each 'ok'.

    Pass multiple commands as separate arguments or as a single
    newline-separated string.
    """
    lines = [line.strip() for cmd in commands for line in cmd.splitlines() if line.strip()]
    try:
        with _connect(ctx) as printer:
            acks = [printer.send_command(line).to_dict() for line in lines]
        click.echo(format_acks(acks, json_mode=json_mode))
    except LinkError as exc:
        _fail(exc, "Failed to send G-code", json_mode)


# ---------------------------------------------------------------------------
# stream
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--delay", default=0.0, type=float, help="Extra seconds between commands.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def stream(ctx: click.Context, file: Path, delay: float, json_mode: bool) -> None:
    """Stream a G-code file to the printer with flow control.

    Ctrl+C stops the job (no emergency halt).
    """
    try:
        text = file.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        _fail(exc, f"Cannot read {file}", json_mode)
        return

    try:
        with _connect(ctx) as printer:
            if json_mode:
                summary = _stream(printer, text, delay, None)
            else:
                progress = Progress(
                    TextColumn("[bold blue]{task.description}"),
                    BarColumn(),
                    MofNCompleteColumn(),
                    console=Console(stderr=True),
                    transient=True,
                )
                with progress:
                    task = progress.add_task(file.name, total=None)

                    def _on_progress(sent: int, total: int) -> None:
                        progress.update(task, completed=sent, total=total)

                    summary = _stream(printer, text, delay, _on_progress)
        click.echo(format_program(summary.to_dict(), json_mode=json_mode))
        if summary.status is not JobStatus.COMPLETED:
            sys.exit(1)
    except LinkError as exc:
        _fail(exc, "Streaming failed", json_mode)


def _stream(printer: PrinterController, text: str, delay: float, on_progress: Any) -> ProgramSummary:
    try:
        return printer.send_gcode_program(text, delay=delay, on_progress=on_progress)
    except KeyboardInterrupt:
        if printer.job_status.is_active:
            printer.stop("Interrupted by user")
            printer.wait(printer.settings.flow.ack_timeout)
        job = printer.job
        if job is None:
            raise
        return ProgramSummary(sent=job.cursor, total=job.total, status=job.status, error=job.error)


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def status(ctx: click.Context, json_mode: bool) -> None:
    """Connect and report temperatures and position."""
    try:
        with _connect(ctx) as printer:
            printer.send_command("M105")
            printer.send_command("M114")
            snapshot = printer.snapshot()
        click.echo(format_status(snapshot, json_mode=json_mode))
    except LinkError as exc:
        _fail(exc, "Failed to get printer status", json_mode)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
