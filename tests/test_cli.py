"""Tests for printlink.cli.main -- CLI commands using Click's CliRunner.

The simulated printer from ``conftest`` is injected through the Click
context object; timing settings come from a config file written to the
(isolated) home directory, so the config layer is exercised as well.
"""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from printlink.cli.main import cli
from printlink.cli.output import format_status
from printlink.errors import TransportError

from conftest import MarlinFactory


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def fast_config(tmp_path):
    path = tmp_path / ".printlink" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump(
            {
                "link": {
                    "port": "/dev/ttyFAKE0",
                    "boot_delay": 0,
                    "settle_window": 0.4,
                    "poll_interval": 0,
                    "silence_warning": 0,
                },
                "flow": {"ack_timeout": 0.3},
                "park": {"settle_time": 0},
            }
        ),
        encoding="utf-8",
    )
    return path


def invoke(runner, args, factory=None):
    factory = factory if factory is not None else MarlinFactory()
    return runner.invoke(cli, args, obj={"transport_factory": factory}), factory


class TestHelp:
    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("ports", "probe", "send", "stream", "status"):
            assert command in result.output

    @pytest.mark.parametrize("command", ["ports", "probe", "send", "stream", "status"])
    def test_subcommand_help(self, runner, command):
        result = runner.invoke(cli, [command, "--help"])
        assert result.exit_code == 0
        assert "--json" in result.output

    def test_version_option(self, runner):
        import printlink

        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert printlink.__version__ == "0.1.0"

    def test_version_without_metadata(self):
        from importlib.metadata import PackageNotFoundError

        import printlink

        with patch("printlink.Path.is_file", return_value=False), patch(
            "printlink.version", side_effect=PackageNotFoundError("printlink")
        ):
            assert printlink._resolve_version() == "unknown"


class TestPorts:
    def test_json(self, runner):
        found = [
            SimpleNamespace(device="/dev/ttyS0", vid=None, pid=None, description="n/a", hwid="n/a"),
            SimpleNamespace(device="/dev/ttyUSB0", vid=0x1A86, pid=0x7523, description="USB Serial", hwid="USB"),
        ]
        with patch("serial.tools.list_ports.comports", return_value=found):
            result = runner.invoke(cli, ["ports", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)["data"]
        assert data["count"] == 2
        assert data["suggested"] == "/dev/ttyUSB0"
        assert data["ports"][1]["is_ch340"] is True

    def test_human_readable(self, runner):
        found = [SimpleNamespace(device="/dev/ttyUSB0", vid=0x1A86, pid=0x7523, description="USB Serial", hwid="USB")]
        with patch("serial.tools.list_ports.comports", return_value=found):
            result = runner.invoke(cli, ["ports"])
        assert result.exit_code == 0
        assert "/dev/ttyUSB0" in result.output
        assert "CH340" in result.output

    def test_no_ports(self, runner):
        with patch("serial.tools.list_ports.comports", return_value=[]):
            result = runner.invoke(cli, ["ports"])
        assert result.exit_code == 0
        assert "No serial ports found" in result.output


class TestProbe:
    def test_json(self, runner):
        result, factory = invoke(runner, ["probe", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)["data"]
        assert data["port"] == "/dev/ttyFAKE0"
        assert data["baudrate"] == 115200
        assert data["firmware"]["machine_type"] == "Ender-3 V2"
        assert data["settings"]["steps_per_unit"]["z"] == 400.0
        assert not factory.last.is_open

    def test_human_readable(self, runner):
        result, _ = invoke(runner, ["probe"])
        assert result.exit_code == 0
        assert "Printer found" in result.output
        assert "Ender-3 V2" in result.output
        assert "X80 Y80 Z400 E93" in result.output
        assert "Bed leveling" in result.output

    def test_global_port_and_baud(self, runner):
        factory = MarlinFactory(accept_bauds=(250000,))
        result, _ = invoke(runner, ["--port", "/dev/ttyACM7", "--baud", "250000", "probe", "--json"], factory)
        assert result.exit_code == 0, result.output
        assert factory.bauds_tried == [250000]
        assert factory.last.port == "/dev/ttyACM7"

    def test_no_auto_detect(self, runner):
        factory = MarlinFactory(accept_bauds=(250000,))
        result, _ = invoke(runner, ["--no-auto-detect", "probe", "--json"], factory)
        assert result.exit_code == 1
        assert factory.bauds_tried == [115200]
        assert json.loads(result.output)["error"]["code"] == "HANDSHAKE_FAILURE"

    def test_port_not_found(self, runner):
        factory = MarlinFactory(open_error=TransportError("Serial port /dev/ttyFAKE0 not found. Check USB cable."))
        result, _ = invoke(runner, ["probe", "--json"], factory)
        assert result.exit_code == 1
        error = json.loads(result.output)["error"]
        assert error["code"] == "TRANSPORT_ERROR"
        assert "not found" in error["message"]


class TestSend:
    def test_json(self, runner):
        result, factory = invoke(runner, ["send", "G28", "M114", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)["data"]
        assert data["count"] == 2
        assert [r["command"] for r in data["results"]] == ["G28", "M114"]
        assert data["results"][1]["lines"][0].startswith("X:")
        assert factory.last.commands[-2:] == ["G28", "M114"]

    def test_newline_separated(self, runner):
        result, factory = invoke(runner, ["send", "G90\nG1 X5\n\n", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.output)["data"]["count"] == 2
        assert factory.last.commands[-2:] == ["G90", "G1 X5"]

    def test_retry_budget_error(self, runner):
        result, factory = invoke(runner, ["send", "G4 S1", "--json"], MarlinFactory(silent={"G4"}))
        assert result.exit_code == 1
        error = json.loads(result.output)["error"]
        assert error["code"] == "RETRY_BUDGET_EXCEEDED"
        assert factory.last.commands.count("G4 S1") == 3

    def test_human_readable(self, runner):
        result, _ = invoke(runner, ["send", "M105"])
        assert result.exit_code == 0
        assert "M105" in result.output


class TestStream:
    def test_json(self, runner, tmp_path):
        program = tmp_path / "part.gcode"
        program.write_text("; generated\nG28\n;comment\nG1 X10 ; corner\nG1 Y10\n", encoding="utf-8")
        result, factory = invoke(runner, ["stream", str(program), "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)["data"]
        assert data == {"sent": 3, "total": 3, "status": "completed", "error": None}
        assert not any("comment" in c or ";" in c for c in factory.last.commands)
        assert factory.last.commands[-3:] == ["G28", "G1 X10", "G1 Y10"]

    def test_failure_exits_nonzero(self, runner, tmp_path):
        program = tmp_path / "part.gcode"
        program.write_text("G28\nG4 S5\nG1 X1\n", encoding="utf-8")
        result, _ = invoke(runner, ["stream", str(program), "--json"], MarlinFactory(silent={"G4"}))
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "RETRY_BUDGET_EXCEEDED"

    def test_missing_file(self, runner, tmp_path):
        result, _ = invoke(runner, ["stream", str(tmp_path / "missing.gcode")])
        assert result.exit_code == 2


class TestStatus:
    def test_json(self, runner):
        result, _ = invoke(runner, ["status", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)["data"]
        assert data["status"] == "connected"
        assert data["telemetry"]["hotend"]["current"] == 24.5
        assert data["telemetry"]["bed"]["current"] == 23.8
        assert data["telemetry"]["position"] == {"x": 0.0, "y": 0.0, "z": 0.0, "e": 0.0}
        assert data["job"]["status"] == "idle"

    def test_human_readable(self, runner):
        result, _ = invoke(runner, ["status"])
        assert result.exit_code == 0
        assert "Printer Status" in result.output
        assert "24.5°C" in result.output

    def test_not_connected(self, runner):
        result, _ = invoke(runner, ["status", "--json"], MarlinFactory(accept_bauds=()))
        assert result.exit_code == 1
        assert json.loads(result.output)["status"] == "error"

    def test_last_error_row(self):
        snapshot = {
            "status": "disconnected",
            "telemetry": {},
            "job": {"status": "idle"},
            "last_error": {
                "type": "link.error",
                "data": {"error": "Serial device [ttyUSB0] was removed", "code": "DEVICE_REMOVED"},
            },
        }
        text = format_status(snapshot)
        assert "Last error" in text
        assert "[ttyUSB0]" in text

    def test_no_last_error_row(self):
        text = format_status({"status": "connected", "telemetry": {}, "job": {}, "last_error": None})
        assert "Last error" not in text
