"""Tests for the command line interface."""

import json

import pytest
import typer
from rich.console import Console
from typer.testing import CliRunner

from esp_serial_flasher import cli
from esp_serial_flasher.flasher.session import ResetMode

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Wide console so table cells are not wrapped."""
    monkeypatch.setattr(cli, "console", Console(width=200))


class TestParseOffset:
    """CLI offset parsing raises typer.BadParameter."""

    def test_hex(self):
        assert cli.parse_offset("0x1000") == 0x1000

    def test_none(self):
        assert cli.parse_offset(None) is None

    def test_invalid_raises_bad_parameter(self):
        with pytest.raises(typer.BadParameter):
            cli.parse_offset("not-a-number")


class TestParseResetMode:
    def test_dashes_accepted(self):
        assert cli.parse_reset_mode("usb-reset") == ResetMode.USB_RESET
        assert cli.parse_reset_mode("NO_RESET") == ResetMode.NO_RESET

    def test_unknown(self):
        with pytest.raises(typer.BadParameter, match="Unknown reset mode"):
            cli.parse_reset_mode("power_cycle")


class TestCommands:
    def test_list_chips(self):
        result = runner.invoke(cli.app, ["list-chips"])
        assert result.exit_code == 0
        assert "ESP32-C3" in result.output
        assert "0x00f01d83" in result.output

    def test_validate_reset_valid(self):
        result = runner.invoke(cli.app, ["validate-reset", "D0|R1|W100|D1|R0|W50|D0"])
        assert result.exit_code == 0
        assert "Valid reset sequence" in result.output

    def test_validate_reset_invalid(self):
        result = runner.invoke(cli.app, ["validate-reset", "D0|X1"])
        assert result.exit_code == 1
        assert "Invalid reset sequence" in result.output

    def test_package_info(self, tmp_path):
        package = tmp_path / "pkg"
        package.mkdir()
        (package / "manifest.json").write_text(json.dumps({
            "board": "DevKit",
            "version": "2.1",
            "platform": "esp32",
            "config": {
                "chip": "ESP32",
                "partitions": [{"address": "0x10000", "file": "app.bin"}],
            },
        }))
        (package / "app.bin").write_bytes(b"\x00" * 64)

        result = runner.invoke(cli.app, ["package-info", str(package)])

        assert result.exit_code == 0
        assert "Board: DevKit" in result.output
        assert "app.bin (at 0x10000, 64 bytes)" in result.output

    def test_package_info_missing(self, tmp_path):
        result = runner.invoke(cli.app, ["package-info", str(tmp_path / "nope")])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_write_flash_dry_run(self, tmp_path):
        image = tmp_path / "app.bin"
        image.write_bytes(b"\x01" * 1024)

        result = runner.invoke(cli.app, ["write-flash", "0x10000", str(image), "--dry-run"])

        assert result.exit_code == 0, result.output
        assert "Dry run complete" in result.output

    def test_write_flash_requires_write_flag(self, tmp_path):
        image = tmp_path / "app.bin"
        image.write_bytes(b"\x01" * 1024)

        result = runner.invoke(
            cli.app, ["write-flash", "0x10000", str(image), "--port", "/dev/null"]
        )

        assert result.exit_code == 1
        assert "--write" in result.output

    def test_write_flash_odd_pairs(self):
        result = runner.invoke(cli.app, ["write-flash", "0x10000", "--dry-run"])
        assert result.exit_code == 1
        assert "pairs" in result.output
