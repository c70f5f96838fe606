"""
Upload the flasher stub into RAM and start it.

The stub replaces the ROM loader's command set with a faster one
(bigger flash blocks, deflate, erase/read flash). Upload uses the
MEM_BEGIN / MEM_DATA / MEM_END triplet; once running, the stub sends a
single "OHAI" frame.
"""

import logging
import math
import struct
from typing import Optional

from ..chips.stub import StubImage, load_stub
from ..protocol.command import (
    ESP_MEM_BEGIN,
    ESP_MEM_DATA,
    ESP_MEM_END,
    checksum,
)
from ..protocol.errors import (
    CommandTimeoutError,
    FlasherError,
    StubStartError,
)
from .session import Session, SessionState

logger = logging.getLogger(__name__)

ESP_RAM_BLOCK = 0x1800
STUB_ACK = b"OHAI"


class StubLoader:
    """
    RAM upload commands plus the stub bootstrap.

    Example:
        loader = StubLoader(session)
        loader.run_stub()
        assert session.is_stub
    """

    def __init__(self, session: Session):
        self.session = session

    @property
    def channel(self):
        return self.session.channel

    def mem_begin(self, size: int, blocks: int, blocksize: int, offset: int) -> None:
        """
        Start a RAM download of `size` bytes at `offset`.

        Raises:
            FlasherError: If a running stub would be overwritten
        """
        stub = self.session.stub
        if self.session.is_stub and stub is not None:
            load_start = offset
            load_end = offset + size
            for name, start, data in stub.segments():
                end = start + len(data)
                if load_start < end and load_end > start:
                    raise FlasherError(
                        f"Software loader is resident at 0x{start:08x}-0x{end:08x}. "
                        f"Can't load binary at overlapping address range "
                        f"0x{load_start:08x}-0x{load_end:08x}. Either change the "
                        "binary loading address, or use --no-stub to disable "
                        "the software loader."
                    )

        self.channel.check_command(
            "enter RAM download mode",
            ESP_MEM_BEGIN,
            struct.pack("<IIII", size, blocks, blocksize, offset),
            timeout=self.session.settings.default_timeout,
        )

    def mem_block(self, data: bytes, seq: int) -> None:
        """Send one block of a RAM download."""
        self.channel.check_command(
            "write to target RAM",
            ESP_MEM_DATA,
            struct.pack("<IIII", len(data), seq, 0, 0) + data,
            checksum(data),
            timeout=self.session.settings.default_timeout,
        )

    def mem_finish(self, entrypoint: int = 0) -> None:
        """
        Leave RAM download mode and jump to `entrypoint`.

        An entrypoint of 0 leaves the upload resident without running it.
        The ROM loader may jump before its reply gets out, so a missing or
        broken reply is only an error when talking to the stub.
        """
        settings = self.session.settings
        timeout = settings.default_timeout if self.session.is_stub else settings.mem_end_rom_timeout
        data = struct.pack("<II", int(entrypoint == 0), entrypoint)
        try:
            self.channel.check_command(
                "leave RAM download mode", ESP_MEM_END, data, timeout=timeout
            )
        except FlasherError as e:
            if self.session.is_stub:
                raise
            logger.debug(f"No MEM_END reply from ROM loader: {e}")

    def upload(self, stub: StubImage) -> None:
        """Push each stub segment into RAM."""
        for name, start, data in stub.segments():
            length = len(data)
            blocks = math.ceil(length / ESP_RAM_BLOCK)
            logger.debug(f"Writing stub {name} segment: {length} bytes at 0x{start:08x}")
            self.mem_begin(length, blocks, ESP_RAM_BLOCK, start)
            for seq in range(blocks):
                from_offs = seq * ESP_RAM_BLOCK
                self.mem_block(data[from_offs:from_offs + ESP_RAM_BLOCK], seq)

    def _wait_for_ack(self) -> None:
        settings = self.session.settings
        for _ in range(settings.stub_poll_attempts):
            try:
                frame = self.channel.read_frame(settings.stub_poll_timeout)
            except CommandTimeoutError:
                continue
            if len(frame) >= len(STUB_ACK) and frame[:len(STUB_ACK)] == STUB_ACK:
                return
            logger.debug(f"Ignoring frame while waiting for stub: {frame.hex()}")
        raise StubStartError("Failed to start stub. Unexpected response")

    def run_stub(self, stub: Optional[StubImage] = None) -> None:
        """
        Upload and start the flasher stub.

        Does nothing beyond switching modes if sync already showed a
        running stub.

        Args:
            stub: Stub image (default: loaded for the detected chip)

        Raises:
            StubStartError: If the stub is missing or never announced itself
        """
        session = self.session
        if session.sync_stub_detected:
            logger.info("Stub is already running. No upload is necessary.")
            session.enter_stub_mode(stub)
            return

        if stub is None:
            if session.chip is None:
                raise StubStartError("Chip not detected, cannot select a stub")
            stub = load_stub(session.chip, session.settings.stub_dir)

        logger.info("Uploading stub...")
        session.state = SessionState.STUB_UPLOADING
        self.upload(stub)

        logger.info("Running stub...")
        self.mem_finish(stub.entry)
        self._wait_for_ack()

        session.enter_stub_mode(stub)
        logger.info("Stub running...")
