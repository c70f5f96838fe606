"""Shared fixtures: a simulated ESP bootloader behind the SerialLink interface."""

import base64
import hashlib
import json
import struct
import zlib
from typing import Dict, List, Optional, Tuple

import pytest

from esp_serial_flasher.chips.registry import CHIP_DETECT_MAGIC_REG_ADDR, detect_chip
from esp_serial_flasher.config import FlasherSettings
from esp_serial_flasher.flasher.session import ResetMode, Session
from esp_serial_flasher.flasher.stub_loader import StubLoader
from esp_serial_flasher.protocol import slip
from esp_serial_flasher.protocol.command import HEADER
from esp_serial_flasher.protocol.errors import CommandTimeoutError, UnknownChipError
from esp_serial_flasher.protocol.serial_link import SerialLink

ESP32_MAGIC = 0x00F01D83
FLASH_SIZE = 4 * 1024 * 1024
ROM_SYNC_VALUE = 0x20120707
SPI_CMD_USR = 1 << 18

# Small but valid stub: text spans two RAM blocks
STUB_TEXT = bytes(range(256)) * 32
STUB_DATA = b"\x11" * 16
STUB_DOC = {
    "text": base64.b64encode(STUB_TEXT).decode("ascii"),
    "text_start": 0x40080000,
    "data": base64.b64encode(STUB_DATA).decode("ascii"),
    "data_start": 0x3FFB0000,
    "entry": 0x40080010,
    "bss_start": 0x3FFB1000,
}


class SimulatedBootloader(SerialLink):
    """
    In-memory ESP bootloader.

    Requests written to the link are parsed and answered immediately;
    responses queue up until read. read() raises CommandTimeoutError
    when nothing is queued, so tests never wait on a real clock.

    Attributes:
        requests: (op, data, chk) of every request received
        signals: ("dtr"|"rts", state) of every control line change
        flash: Simulated flash contents
        registers: Register values served by READ_REG
    """

    def __init__(
        self,
        magic: int = ESP32_MAGIC,
        sync_failures: int = 0,
        sync_value: int = ROM_SYNC_VALUE,
        stub_ack: bool = True,
        md5_override: Optional[bytes] = None,
        boot_log: bytes = b"",
        flash_id: int = 0x1640EF,
        product_id: Optional[int] = None,
    ):
        self.magic = magic
        try:
            self.chip = detect_chip(magic)
        except UnknownChipError:
            self.chip = None
        self.sync_failures = sync_failures
        self.sync_value = sync_value
        self.stub_ack = stub_ack
        self.md5_override = md5_override
        self.boot_log = boot_log
        self.flash_id = flash_id
        self.product_id = product_id

        self.stub_running = sync_value == 0
        self.requests: List[Tuple[int, bytes, int]] = []
        self.signals: List[Tuple[str, bool]] = []
        self.baud_history: List[int] = []
        self.registers: Dict[int, int] = {CHIP_DETECT_MAGIC_REG_ADDR: magic}
        self.flash = bytearray(b"\xff" * FLASH_SIZE)
        self.ram: Dict[int, bytes] = {}
        self.is_open = False

        self._rx = b""
        self._tx = b""
        self._baud = 0
        self._syncs_seen = 0
        self._write_offset = 0
        self._write_pos = 0
        self._inflater = None

    # SerialLink --------------------------------------------------------------

    @property
    def baudrate(self) -> int:
        return self._baud

    def connect(self, baudrate: int) -> None:
        self.is_open = True
        self._baud = baudrate
        self.baud_history.append(baudrate)
        if self.boot_log:
            self._tx += self.boot_log

    def disconnect(self) -> None:
        self.is_open = False

    def write(self, data: bytes) -> None:
        self._rx += data
        while True:
            frame, self._rx = slip.decode(self._rx)
            if frame is None:
                break
            self._handle(frame)

    def read(self, timeout: float) -> bytes:
        if not self._tx:
            raise CommandTimeoutError("Timed out waiting for packet header")
        data, self._tx = self._tx, b""
        return data

    def set_dtr(self, state: bool) -> None:
        self.signals.append(("dtr", state))

    def set_rts(self, state: bool) -> None:
        self.signals.append(("rts", state))

    def get_product_id(self) -> Optional[int]:
        return self.product_id

    def flush_input(self) -> None:
        self._tx = b""

    # Bootloader --------------------------------------------------------------

    @property
    def status_length(self) -> int:
        if self.stub_running:
            return 2
        return self.chip.rom_status_bytes_length if self.chip else 4

    def ops(self, op: int) -> List[Tuple[int, bytes, int]]:
        return [r for r in self.requests if r[0] == op]

    def queue_frame(self, payload: bytes) -> None:
        self._tx += slip.encode(payload)

    def respond(self, op: int, value: int = 0, data: bytes = b"", status: int = 0) -> None:
        body = data + bytes([status]) + b"\x00" * (self.status_length - 1)
        self.queue_frame(HEADER.pack(1, op, len(body), value) + body)

    def _handle(self, packet: bytes) -> None:
        # read_flash acks are bare 4-byte frames
        if len(packet) < HEADER.size:
            return
        direction, op, size, chk = HEADER.unpack(packet[:HEADER.size])
        data = packet[HEADER.size:]
        self.requests.append((op, data, chk))

        handler = getattr(self, f"_op_{op:02x}", None)
        if handler is None:
            self.respond(op, status=1)
            return
        handler(op, data)

    def _op_08(self, op: int, data: bytes) -> None:  # SYNC
        self._syncs_seen += 1
        if self._syncs_seen <= self.sync_failures:
            return
        value = 0 if self.stub_running else self.sync_value
        for _ in range(8):
            self.respond(op, value=value)

    def _op_0a(self, op: int, data: bytes) -> None:  # READ_REG
        addr, = struct.unpack("<I", data[:4])
        self.respond(op, value=self.registers.get(addr, 0))

    def _op_09(self, op: int, data: bytes) -> None:  # WRITE_REG
        addr, value, mask, delay = struct.unpack("<IIII", data[:16])
        self.registers[addr] = value
        if self.chip and addr == self.chip.spi.cmd_reg and value & SPI_CMD_USR:
            self.registers[self.chip.spi.w0_reg] = self.flash_id
            self.registers[addr] = 0
        self.respond(op)

    def _op_05(self, op: int, data: bytes) -> None:  # MEM_BEGIN
        size, blocks, blocksize, offset = struct.unpack("<IIII", data[:16])
        self._write_offset = offset
        self.ram[offset] = b""
        self.respond(op)

    def _op_07(self, op: int, data: bytes) -> None:  # MEM_DATA
        self.ram[self._write_offset] += data[16:]
        self.respond(op)

    def _op_06(self, op: int, data: bytes) -> None:  # MEM_END
        flag, entry = struct.unpack("<II", data[:8])
        self.respond(op)
        if entry and self.stub_ack:
            self.stub_running = True
            self.queue_frame(b"OHAI")

    def _op_02(self, op: int, data: bytes) -> None:  # FLASH_BEGIN
        size, blocks, write_size, offset = struct.unpack("<IIII", data[:16])
        self._write_offset = offset
        self._write_pos = 0
        self.respond(op)

    def _op_03(self, op: int, data: bytes) -> None:  # FLASH_DATA
        block = data[16:]
        start = self._write_offset + self._write_pos
        self.flash[start:start + len(block)] = block
        self._write_pos += len(block)
        self.respond(op)

    def _op_04(self, op: int, data: bytes) -> None:  # FLASH_END
        self.respond(op)

    def _op_10(self, op: int, data: bytes) -> None:  # FLASH_DEFL_BEGIN
        size, blocks, write_size, offset = struct.unpack("<IIII", data[:16])
        self._write_offset = offset
        self._write_pos = 0
        self._inflater = zlib.decompressobj()
        self.respond(op)

    def _op_11(self, op: int, data: bytes) -> None:  # FLASH_DEFL_DATA
        block = self._inflater.decompress(data[16:])
        start = self._write_offset + self._write_pos
        self.flash[start:start + len(block)] = block
        self._write_pos += len(block)
        self.respond(op)

    def _op_12(self, op: int, data: bytes) -> None:  # FLASH_DEFL_END
        self.respond(op)

    def _op_13(self, op: int, data: bytes) -> None:  # SPI_FLASH_MD5
        addr, size, _, _ = struct.unpack("<IIII", data[:16])
        digest = self.md5_override or hashlib.md5(bytes(self.flash[addr:addr + size])).digest()
        if self.stub_running:
            self.respond(op, data=digest)
        else:
            self.respond(op, data=digest.hex().encode("ascii"))

    def _op_0d(self, op: int, data: bytes) -> None:  # SPI_ATTACH
        self.respond(op)

    def _op_0f(self, op: int, data: bytes) -> None:  # CHANGE_BAUDRATE
        self.respond(op)

    def _op_d0(self, op: int, data: bytes) -> None:  # ERASE_FLASH
        self.flash[:] = b"\xff" * FLASH_SIZE
        self.respond(op)

    def _op_d2(self, op: int, data: bytes) -> None:  # READ_FLASH
        offset, length, sector, _ = struct.unpack("<IIII", data[:16])
        self.respond(op)
        chunk = bytes(self.flash[offset:offset + length])
        for pos in range(0, length, sector):
            self.queue_frame(chunk[pos:pos + sector])
        self.queue_frame(hashlib.md5(chunk).digest())

    def _op_d3(self, op: int, data: bytes) -> None:  # RUN_USER_CODE
        pass


class ScriptedLink(SerialLink):
    """SerialLink that serves pre-recorded bytes and records writes."""

    def __init__(self, incoming: bytes = b""):
        self.incoming = incoming
        self.written = b""
        self.flushed = 0

    @property
    def baudrate(self) -> int:
        return 115200

    def connect(self, baudrate: int) -> None:
        pass

    def disconnect(self) -> None:
        pass

    def write(self, data: bytes) -> None:
        self.written += data

    def read(self, timeout: float) -> bytes:
        if not self.incoming:
            raise CommandTimeoutError("Timed out waiting for packet header")
        data, self.incoming = self.incoming[:1], self.incoming[1:]
        return data

    def set_dtr(self, state: bool) -> None:
        pass

    def set_rts(self, state: bool) -> None:
        pass

    def flush_input(self) -> None:
        self.flushed += 1
        self.incoming = b""


def response_frame(op: int, value: int = 0, data: bytes = b"") -> bytes:
    """A SLIP-framed response packet."""
    return slip.encode(HEADER.pack(1, op, len(data), value) + data)


def connect_session(
    link: SimulatedBootloader,
    settings: FlasherSettings,
    sleep,
    stub: bool = False,
) -> Session:
    """Connected session, optionally running the stub."""
    session = Session(link, settings, sleep=sleep)
    session.connect(ResetMode.NO_RESET)
    if stub:
        StubLoader(session).run_stub()
    return session


@pytest.fixture
def sleeps():
    """Recorded sleep durations."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append


@pytest.fixture
def stub_dir(tmp_path):
    """Directory holding a stub image for the ESP32."""
    directory = tmp_path / "stubs"
    directory.mkdir()
    (directory / "stub_flasher_32.json").write_text(json.dumps(STUB_DOC))
    return directory


@pytest.fixture
def settings(stub_dir):
    """Settings with short retry loops and the test stub directory."""
    return FlasherSettings(
        connect_attempts=2,
        sync_tries=3,
        stub_poll_attempts=5,
        baud_resync_tries=3,
        stub_dir=str(stub_dir),
    )


@pytest.fixture
def bootloader():
    return SimulatedBootloader()
