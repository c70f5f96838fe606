"""Tests for raw SPI flash commands through the controller registers."""

import pytest

from esp_serial_flasher.flasher.session import Session
from esp_serial_flasher.flasher.spi_flash import (
    detect_flash_size,
    flash_id,
    run_spiflash_command,
)
from esp_serial_flasher.protocol.errors import FlasherError

from conftest import SimulatedBootloader, connect_session


class TestSpiFlash:
    def test_flash_id(self, settings, fake_sleep):
        link = SimulatedBootloader(flash_id=0x1640EF)
        session = connect_session(link, settings, fake_sleep)
        assert flash_id(session) == 0x1640EF

    def test_registers_restored(self, settings, fake_sleep):
        link = SimulatedBootloader()
        spi = link.chip.spi
        link.registers[spi.usr_reg] = 0x11
        link.registers[spi.usr2_reg] = 0x22
        session = connect_session(link, settings, fake_sleep)

        flash_id(session)

        assert link.registers[spi.usr_reg] == 0x11
        assert link.registers[spi.usr2_reg] == 0x22
        assert link.registers[spi.miso_dlen_reg] == 23

    def test_esp8266_lengths_in_usr1(self, settings, fake_sleep):
        link = SimulatedBootloader(magic=0xFFF0C101)
        session = connect_session(link, settings, fake_sleep)

        flash_id(session)

        assert link.registers[link.chip.spi.usr1_reg] == 23 << 8

    @pytest.mark.parametrize("fid,label", [
        (0x1640EF, "4MB"),
        (0x1840C8, "16MB"),
        (0x3970C2, "32MB"),
    ])
    def test_detect_flash_size(self, settings, fake_sleep, fid, label):
        session = connect_session(SimulatedBootloader(flash_id=fid), settings, fake_sleep)
        assert detect_flash_size(session) == label

    def test_unknown_capacity(self, settings, fake_sleep, caplog):
        session = connect_session(SimulatedBootloader(flash_id=0xFF40EF), settings, fake_sleep)
        assert detect_flash_size(session) is None
        assert "Could not auto-detect flash size" in caplog.text

    def test_limits(self, settings, fake_sleep):
        session = connect_session(SimulatedBootloader(), settings, fake_sleep)
        with pytest.raises(FlasherError):
            run_spiflash_command(session, 0x9F, read_bits=33)
        with pytest.raises(FlasherError):
            run_spiflash_command(session, 0x02, data=b"\x00" * 65)

    def test_needs_detected_chip(self, settings, fake_sleep):
        session = Session(SimulatedBootloader(), settings, sleep=fake_sleep)
        with pytest.raises(FlasherError, match="Chip not detected"):
            flash_id(session)

    def test_stuck_controller(self, settings, fake_sleep):
        class Stuck(SimulatedBootloader):
            def _op_09(self, op, data):
                self.respond(op)

        link = Stuck()
        link.registers[link.chip.spi.cmd_reg] = 1 << 18
        session = connect_session(link, settings, fake_sleep)

        with pytest.raises(FlasherError, match="did not complete"):
            flash_id(session)
