"""Tests for uploading and starting the flasher stub."""

import struct

import pytest

from esp_serial_flasher.flasher.session import (
    ESP_STUB_FLASH_WRITE_SIZE,
    ResetMode,
    Session,
    SessionState,
)
from esp_serial_flasher.flasher.stub_loader import ESP_RAM_BLOCK, StubLoader
from esp_serial_flasher.protocol.command import (
    ESP_MEM_BEGIN,
    ESP_MEM_DATA,
    ESP_MEM_END,
    checksum,
)
from esp_serial_flasher.protocol.errors import FlasherError, StubStartError

from conftest import STUB_DATA, STUB_DOC, STUB_TEXT, SimulatedBootloader


def _connected(link, settings, sleep):
    session = Session(link, settings, sleep=sleep)
    session.connect(ResetMode.NO_RESET)
    return session


class TestRunStub:
    """Upload, start and acknowledge."""

    def test_upload_and_ack_switches_to_stub(self, settings, fake_sleep):
        link = SimulatedBootloader()
        session = _connected(link, settings, fake_sleep)

        StubLoader(session).run_stub()

        assert session.is_stub
        assert session.state == SessionState.STUB_ACTIVE
        assert session.flash_write_size == ESP_STUB_FLASH_WRITE_SIZE
        assert session.channel.status_bytes_length == 2
        assert link.ram[STUB_DOC["text_start"]] == STUB_TEXT
        assert link.ram[STUB_DOC["data_start"]] == STUB_DATA

    def test_upload_splits_into_ram_blocks(self, settings, fake_sleep):
        link = SimulatedBootloader()
        session = _connected(link, settings, fake_sleep)
        StubLoader(session).run_stub()

        begins = [struct.unpack("<IIII", data) for _, data, _ in link.ops(ESP_MEM_BEGIN)]
        assert begins[0] == (len(STUB_TEXT), 2, ESP_RAM_BLOCK, STUB_DOC["text_start"])
        assert begins[1] == (len(STUB_DATA), 1, ESP_RAM_BLOCK, STUB_DOC["data_start"])

        blocks = link.ops(ESP_MEM_DATA)
        assert len(blocks) == 3
        _, first, chk = blocks[0]
        assert struct.unpack("<IIII", first[:16]) == (ESP_RAM_BLOCK, 0, 0, 0)
        assert chk == checksum(STUB_TEXT[:ESP_RAM_BLOCK])

    def test_mem_end_carries_entry(self, settings, fake_sleep):
        link = SimulatedBootloader()
        session = _connected(link, settings, fake_sleep)
        StubLoader(session).run_stub()

        _, data, _ = link.ops(ESP_MEM_END)[-1]
        assert struct.unpack("<II", data) == (0, STUB_DOC["entry"])

    def test_no_ack_fails(self, settings, fake_sleep):
        link = SimulatedBootloader(stub_ack=False)
        session = _connected(link, settings, fake_sleep)

        with pytest.raises(StubStartError, match="Failed to start stub"):
            StubLoader(session).run_stub()
        assert not session.is_stub

    def test_already_running_skips_upload(self, settings, fake_sleep):
        link = SimulatedBootloader(sync_value=0)
        session = _connected(link, settings, fake_sleep)

        StubLoader(session).run_stub()

        assert session.is_stub
        assert link.ops(ESP_MEM_BEGIN) == []

    def test_missing_stub_file(self, settings, fake_sleep, tmp_path, monkeypatch):
        monkeypatch.setattr("esp_serial_flasher.chips.stub.BUNDLED_STUB_DIR", tmp_path)
        link = SimulatedBootloader()
        empty = settings.with_overrides(stub_dir=str(tmp_path))
        session = _connected(link, empty, fake_sleep)

        with pytest.raises(StubStartError, match="No flasher stub"):
            StubLoader(session).run_stub()
        assert link.ops(ESP_MEM_BEGIN) == []


class TestMemCommands:
    def test_overlap_with_resident_stub_is_refused(self, settings, fake_sleep):
        link = SimulatedBootloader()
        session = _connected(link, settings, fake_sleep)
        loader = StubLoader(session)
        loader.run_stub()
        sent = len(link.ops(ESP_MEM_BEGIN))

        with pytest.raises(FlasherError, match="resident"):
            loader.mem_begin(0x100, 1, ESP_RAM_BLOCK, STUB_DOC["text_start"] + 0x10)
        assert len(link.ops(ESP_MEM_BEGIN)) == sent

    def test_non_overlapping_load_is_allowed(self, settings, fake_sleep):
        link = SimulatedBootloader()
        session = _connected(link, settings, fake_sleep)
        loader = StubLoader(session)
        loader.run_stub()

        loader.mem_begin(0x100, 1, ESP_RAM_BLOCK, 0x3FFC0000)

    def test_rom_mem_finish_tolerates_silence(self, settings, fake_sleep):
        """ROM may jump before replying to MEM_END."""

        class SilentMemEnd(SimulatedBootloader):
            def _op_06(self, op, data):
                pass

        session = _connected(SilentMemEnd(), settings, fake_sleep)
        StubLoader(session).mem_finish(0x40080010)
