"""Tests for connecting, syncing and chip detection against a simulated loader."""

import struct

import pytest

from esp_serial_flasher.flasher.session import (
    ESP_ROM_FLASH_WRITE_SIZE,
    LoaderMode,
    ResetMode,
    Session,
    SessionState,
)
from esp_serial_flasher.protocol.command import ESP_SPI_ATTACH, ESP_SYNC, ESP_WRITE_REG
from esp_serial_flasher.protocol.errors import SyncFailedError, UnknownChipError

from conftest import ScriptedLink, SimulatedBootloader


class ChattyLink(ScriptedLink):
    """Target that never stops printing (application log on the UART)."""

    def read(self, timeout: float) -> bytes:
        return b"I (123) app: tick\r\n"


class TestConnect:
    """Reset, sync and detect."""

    def test_endless_output_still_fails_sync(self, settings, fake_sleep):
        """Post-reset drain is bounded, so the sync attempts still run and fail."""
        link = ChattyLink()
        chatty = settings.with_overrides(connect_attempts=1, sync_tries=1)
        session = Session(link, chatty, sleep=fake_sleep)

        with pytest.raises(SyncFailedError):
            session.connect(ResetMode.NO_RESET)
        assert link.written

    def test_sync_after_failed_attempts(self, settings, fake_sleep):
        """Loader answers the third sync with value 0: connected, stub not active."""
        link = SimulatedBootloader(sync_failures=2, sync_value=0)
        session = Session(link, settings, sleep=fake_sleep)

        chip = session.connect(ResetMode.NO_RESET)

        assert chip.name == "ESP32"
        assert len(link.ops(ESP_SYNC)) == 3
        assert session.sync_stub_detected
        assert session.mode == LoaderMode.ROM
        assert not session.is_stub
        assert session.state == SessionState.DETECTED

    def test_rom_sync_is_not_a_stub(self, settings, fake_sleep):
        link = SimulatedBootloader()
        session = Session(link, settings, sleep=fake_sleep)
        session.connect(ResetMode.NO_RESET)

        assert not session.sync_stub_detected
        assert session.flash_write_size == ESP_ROM_FLASH_WRITE_SIZE
        assert session.channel.status_bytes_length == 4
        assert link.baud_history == [settings.rom_baud]

    def test_esp8266_status_length(self, settings, fake_sleep):
        link = SimulatedBootloader(magic=0xFFF0C101)
        session = Session(link, settings, sleep=fake_sleep)
        assert session.connect(ResetMode.NO_RESET).name == "ESP8266"
        assert session.channel.status_bytes_length == 2

    def test_no_detect(self, settings, fake_sleep):
        session = Session(SimulatedBootloader(), settings, sleep=fake_sleep)
        assert session.connect(ResetMode.NO_RESET, detect=False) is None
        assert session.chip is None
        assert session.state == SessionState.SYNCED

    def test_gives_up_after_attempts(self, settings, fake_sleep):
        link = SimulatedBootloader(sync_failures=1000)
        session = Session(link, settings, sleep=fake_sleep)

        with pytest.raises(SyncFailedError, match="Failed to connect"):
            session.connect(ResetMode.NO_RESET)

        expected = settings.connect_attempts * 2 * settings.sync_tries
        assert len(link.ops(ESP_SYNC)) == expected
        assert session.state == SessionState.FAILED

    def test_wrong_boot_mode_is_reported(self, settings, fake_sleep):
        link = SimulatedBootloader(
            sync_failures=1000,
            boot_log=b"rst:0x1 (POWERON_RESET),boot:0x13 (SPI_FAST_FLASH_BOOT)\r\n",
        )
        session = Session(link, settings, sleep=fake_sleep)

        with pytest.raises(SyncFailedError, match=r"Wrong boot mode detected \(0x13\)"):
            session.connect(ResetMode.NO_RESET)

    def test_download_mode_boot_log_is_not_wrong_mode(self, settings, fake_sleep):
        link = SimulatedBootloader(
            sync_failures=1000,
            boot_log=b"rst:0x1 (POWERON_RESET),boot:0x3 (DOWNLOAD_BOOT(UART0/UART1/SDIO_REI_REO_V2))\r\n"
                     b"waiting for download\r\n",
        )
        session = Session(link, settings, sleep=fake_sleep)

        with pytest.raises(SyncFailedError) as exc_info:
            session.connect(ResetMode.NO_RESET)
        assert "Wrong boot mode" not in str(exc_info.value)

    def test_boot_log_is_drained_before_sync(self, settings, fake_sleep):
        link = SimulatedBootloader(boot_log=b"ets Jun  8 2016 00:22:57\r\n")
        session = Session(link, settings, sleep=fake_sleep)
        assert session.connect(ResetMode.NO_RESET).name == "ESP32"

    def test_unknown_chip(self, settings, fake_sleep):
        session = Session(SimulatedBootloader(magic=0xDEADBEEF), settings, sleep=fake_sleep)
        with pytest.raises(UnknownChipError):
            session.connect(ResetMode.NO_RESET)


class TestResetModes:
    """Which reset runs before syncing."""

    def test_default_reset_uses_classic_sequence(self, settings, fake_sleep):
        link = SimulatedBootloader()
        Session(link, settings, sleep=fake_sleep).connect(ResetMode.DEFAULT_RESET)

        assert link.signals == [
            ("dtr", False),
            ("rts", True),
            ("dtr", True),
            ("rts", False),
            ("dtr", False),
        ]

    def test_second_try_uses_long_delay(self, settings, sleeps, fake_sleep):
        """First reset plus its sync tries fail; the ESP32 r0 variant follows."""
        link = SimulatedBootloader(sync_failures=settings.sync_tries)
        Session(link, settings, sleep=fake_sleep).connect(ResetMode.DEFAULT_RESET)

        assert 2.0 in sleeps

    def test_custom_sequence_from_settings(self, settings, sleeps, fake_sleep):
        link = SimulatedBootloader()
        custom = settings.with_overrides(custom_reset_sequence="R1|W10|R0")
        Session(link, custom, sleep=fake_sleep).connect(ResetMode.DEFAULT_RESET)

        assert link.signals == [("rts", True), ("rts", False)]
        assert sleeps[0] == 0.01

    def test_reset_delay_from_settings(self, settings, sleeps, fake_sleep):
        link = SimulatedBootloader()
        slow = settings.with_overrides(reset_delay=0.2)
        Session(link, slow, sleep=fake_sleep).connect(ResetMode.DEFAULT_RESET)

        assert sleeps[:2] == [0.1, 0.2]

    def test_usb_jtag_serial_by_product_id(self, settings, fake_sleep):
        link = SimulatedBootloader(product_id=0x1001)
        Session(link, settings, sleep=fake_sleep).connect(ResetMode.DEFAULT_RESET)

        assert link.signals[:2] == [("rts", False), ("dtr", False)]
        assert len(link.signals) == 9
        assert link.signals[-2:] == [("dtr", False), ("rts", False)]

    def test_no_reset(self, settings, fake_sleep):
        link = SimulatedBootloader()
        Session(link, settings, sleep=fake_sleep).connect(ResetMode.NO_RESET)
        assert link.signals == []

    def test_reset_mode_accepts_strings(self, settings, fake_sleep):
        link = SimulatedBootloader()
        Session(link, settings, sleep=fake_sleep).connect("no_reset")
        assert link.signals == []


class TestRegisters:
    def test_read_mac(self, settings, fake_sleep):
        link = SimulatedBootloader()
        link.registers[0x3FF5A004] = 0xCCDDEEFF
        link.registers[0x3FF5A008] = 0x0000AABB
        session = Session(link, settings, sleep=fake_sleep)
        session.connect(ResetMode.NO_RESET)

        assert session.read_mac() == "aa:bb:cc:dd:ee:ff"

    def test_read_mac_without_efuse_reg(self, settings, fake_sleep):
        session = Session(SimulatedBootloader(magic=0xFFF0C101), settings, sleep=fake_sleep)
        session.connect(ResetMode.NO_RESET)
        assert session.read_mac() is None

    def test_write_reg_packs_all_fields(self, settings, fake_sleep):
        link = SimulatedBootloader()
        session = Session(link, settings, sleep=fake_sleep)
        session.connect(ResetMode.NO_RESET)

        session.write_reg(0x60000000, 0x12345678, mask=0xFF, delay_us=5)

        _, data, _ = link.ops(ESP_WRITE_REG)[-1]
        assert struct.unpack("<IIII", data) == (0x60000000, 0x12345678, 0xFF, 5)
        assert link.registers[0x60000000] == 0x12345678

    def test_spi_attach_rom_sends_legacy_word(self, settings, fake_sleep):
        link = SimulatedBootloader()
        session = Session(link, settings, sleep=fake_sleep)
        session.connect(ResetMode.NO_RESET)

        session.flash_spi_attach(0)

        _, data, _ = link.ops(ESP_SPI_ATTACH)[-1]
        assert data == b"\x00" * 8

    def test_usb_otg_detected_on_s3(self, settings, fake_sleep):
        link = SimulatedBootloader(magic=0x9)
        link.registers[0x3FCEF14C] = 3
        session = Session(link, settings, sleep=fake_sleep)
        session.connect(ResetMode.NO_RESET)

        assert session.chip.name == "ESP32-S3"
        assert session.using_usb_otg

    def test_hard_reset_and_disconnect(self, settings, sleeps, fake_sleep):
        link = SimulatedBootloader()
        session = Session(link, settings, sleep=fake_sleep)
        session.connect(ResetMode.NO_RESET)

        session.hard_reset()
        session.disconnect()

        assert link.signals == [("rts", True), ("rts", False)]
        assert not link.is_open
        assert session.state == SessionState.DISCONNECTED
