"""Tests for write gating."""

import io
import sys

import pytest

from esp_serial_flasher.core.safety import (
    CONFIRMATION_TOKEN,
    SafetyContext,
    WritePermissionError,
    WriteRequest,
    create_cli_safety_context,
    require_write_permission,
)


APP = WriteRequest(regions=[(0x1000, 0x1000)])


class TestWriteRequest:
    def test_describe_regions(self):
        request = WriteRequest(regions=[(0x1000, 0x7000), (0x10000, 0x100)])
        assert request.describe() == "0x1000-0x8000, 0x10000-0x10100"
        assert request.bytes_length == 0x7100

    def test_chip_erase(self):
        request = WriteRequest.chip_erase()
        assert request.describe() == "entire flash"
        assert request.bytes_length == 0

    def test_erase_then_write(self):
        request = WriteRequest(regions=[(0x0, 0x100)], erase_all=True)
        assert request.describe() == "entire flash (erase), then 0x0-0x100"


class TestRequireWritePermission:
    def test_simulate_always_allowed(self):
        ctx = SafetyContext(write_enabled=False, simulate=True, interactive=False)
        require_write_permission(ctx, APP)

    def test_write_flag_required(self):
        ctx = SafetyContext(write_enabled=False)
        with pytest.raises(WritePermissionError, match="--write") as exc:
            require_write_permission(ctx, APP)
        assert exc.value.details["target_region"] == "0x1000-0x2000"
        assert exc.value.details["bytes_length"] == 4096
        assert "erase_all" not in exc.value.details

    def test_token_accepted(self):
        ctx = SafetyContext(write_enabled=True, confirmation_token=" write ", interactive=False)
        require_write_permission(ctx)

    def test_token_mismatch(self):
        ctx = SafetyContext(write_enabled=True, confirmation_token="YES", interactive=False)
        with pytest.raises(WritePermissionError, match="mismatch"):
            require_write_permission(ctx)

    def test_non_interactive_without_token(self):
        ctx = SafetyContext(write_enabled=True, interactive=False)
        with pytest.raises(WritePermissionError, match="--confirm WRITE"):
            require_write_permission(ctx)

    def test_interactive_prompt_accepted(self):
        shown = []
        ctx = SafetyContext(
            write_enabled=True,
            chip="ESP32",
            prompt_confirmation=lambda text: CONFIRMATION_TOKEN,
            show_details=shown.append,
        )
        require_write_permission(ctx, WriteRequest(regions=[(0x0, 0x100)]))
        assert shown == [{"chip": "ESP32", "target_region": "0x0-0x100", "bytes_length": 256}]

    def test_chip_erase_is_flagged(self):
        shown = []
        ctx = SafetyContext(
            write_enabled=True,
            prompt_confirmation=lambda text: "write",
            show_details=shown.append,
        )
        require_write_permission(ctx, WriteRequest.chip_erase())
        assert shown[0]["erase_all"] is True
        assert shown[0]["target_region"] == "entire flash"

    def test_interactive_prompt_declined(self):
        ctx = SafetyContext(write_enabled=True, prompt_confirmation=lambda text: "no")
        with pytest.raises(WritePermissionError, match="aborted by user"):
            require_write_permission(ctx)

    def test_interactive_without_handler(self):
        ctx = SafetyContext(write_enabled=True)
        with pytest.raises(WritePermissionError, match="no prompt handler"):
            require_write_permission(ctx)

    def test_warnings_in_details(self):
        ctx = SafetyContext()
        ctx.add_warning("Skipping storage partition")
        details = ctx.describe_request(WriteRequest())
        assert details["chip"] == "auto-detect"
        assert details["warnings"] == ["Skipping storage partition"]


class TestCliContext:
    def test_token_disables_prompt(self):
        ctx = create_cli_safety_context(write_flag=True, confirmation_token="WRITE")
        assert ctx.interactive is False
        assert ctx.write_enabled is True

    def test_not_a_tty(self, monkeypatch):
        monkeypatch.setattr(sys, "stdin", io.StringIO())
        ctx = create_cli_safety_context(write_flag=True, chip="ESP32-C3", simulate=True)
        assert ctx.interactive is False
        assert ctx.chip == "ESP32-C3"
        assert ctx.simulate is True
