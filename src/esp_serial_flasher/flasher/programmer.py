"""
Flash programming: erase, write (raw or deflated), verify.

ROM and stub differ in ways that matter for timeouts:
- The ROM loader erases the whole region before acknowledging
  FLASH_BEGIN / FLASH_DEFL_BEGIN, so those timeouts scale with size.
- The ROM writes each block to flash before acknowledging it; the stub
  acknowledges on receipt and writes while the next block is in flight.
  The timeout for a stub block therefore covers the flash write of the
  previous block.
"""

import hashlib
import logging
import struct
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..chips.registry import (
    CHIP_DETECT_MAGIC_REG_ADDR,
    ESP_IMAGE_MAGIC,
    flash_size_bytes,
    get_erase_size,
    parse_flash_freq,
    parse_flash_mode,
    parse_flash_size,
)
from ..protocol.command import (
    ESP_ERASE_FLASH,
    ESP_FLASH_BEGIN,
    ESP_FLASH_DATA,
    ESP_FLASH_DEFL_BEGIN,
    ESP_FLASH_DEFL_DATA,
    ESP_FLASH_DEFL_END,
    ESP_FLASH_END,
    ESP_READ_FLASH,
    ESP_RUN_USER_CODE,
    ESP_SPI_FLASH_MD5,
    checksum,
    timeout_per_mb,
)
from ..protocol.compression import StreamingInflater, compress
from ..protocol.errors import (
    FlashFitError,
    InvalidResponseError,
    Md5MismatchError,
    ReadbackMismatchError,
)
from .session import Session, stub_function_only
from .spi_flash import detect_flash_size

logger = logging.getLogger(__name__)

FLASH_SECTOR_SIZE = 0x1000
READ_FLASH_MAX_IN_FLIGHT = 64

ProgressCallback = Callable[[int, int, int], None]


@dataclass
class FlashFile:
    """One image to write."""
    address: int
    data: bytes
    name: str = ""

    @property
    def end(self) -> int:
        return self.address + len(self.data)


@dataclass
class FlashJob:
    """
    Everything write_flash needs.

    flash_size/flash_mode/flash_freq are labels ("4MB", "dio", "40m");
    "keep" leaves the image header alone, flash_size "detect" asks the
    flash chip.
    """
    files: List[FlashFile]
    flash_size: str = "keep"
    flash_mode: str = "keep"
    flash_freq: str = "keep"
    erase_all: bool = False
    compress: bool = True
    verify: bool = True
    expected_chip: Optional[str] = None
    skipped: List[str] = field(default_factory=list)


@dataclass
class WrittenImage:
    """Summary of one written image."""
    address: int
    size: int
    sent: int
    md5: str
    seconds: float
    verified: bool
    name: str = ""


def pad_to(data: bytes, alignment: int, pad_character: bytes = b"\xff") -> bytes:
    """Pad to the next multiple of `alignment`."""
    pad_mod = len(data) % alignment
    if pad_mod != 0:
        data += pad_character * (alignment - pad_mod)
    return data


def check_image_fit(files: List[FlashFile], flash_size: str) -> None:
    """
    Fail before any I/O if an image runs past the end of flash.

    Raises:
        FlashFitError: If a file does not fit
    """
    flash_end = flash_size_bytes(flash_size)
    if flash_end is None:
        return
    for i, f in enumerate(files):
        if f.end > flash_end:
            raise FlashFitError(
                f"File {i + 1} ({f.name or hex(f.address)}) doesn't fit in "
                f"the available flash: 0x{f.address:x}+{len(f.data)} > "
                f"{flash_size}"
            )


class FlashProgrammer:
    """
    Flash commands for a connected Session.

    Example:
        programmer = FlashProgrammer(session)
        job = FlashJob(files=[FlashFile(0x10000, app_bytes, "app.bin")])
        programmer.write_flash(job)
    """

    def __init__(self, session: Session):
        self.session = session

    @property
    def channel(self):
        return self.session.channel

    @property
    def settings(self):
        return self.session.settings

    def _require_chip(self):
        if self.session.chip is None:
            raise InvalidResponseError("Chip not detected; connect first")
        return self.session.chip

    # =========================================================================
    # Raw writes
    # =========================================================================

    def flash_begin(self, size: int, offset: int) -> int:
        """
        Enter flash download mode.

        Returns:
            Number of FLASH_DATA blocks to send
        """
        chip = self._require_chip()
        write_size = self.session.flash_write_size
        num_blocks = (size + write_size - 1) // write_size

        if self.session.is_stub:
            erase_size = size
            timeout = self.settings.default_timeout
        else:
            erase_size = get_erase_size(chip, offset, size)
            timeout = timeout_per_mb(
                self.settings.erase_region_timeout_per_mb, size,
                floor=self.settings.default_timeout,
            )

        params = struct.pack("<IIII", erase_size, num_blocks, write_size, offset)
        if chip.supports_encrypted_flash and not self.session.is_stub:
            params += struct.pack("<I", 0)

        t = time.monotonic()
        self.channel.check_command(
            "enter Flash download mode", ESP_FLASH_BEGIN, params, timeout=timeout
        )
        if size != 0 and not self.session.is_stub:
            logger.info(f"Took {time.monotonic() - t:.2f}s to erase flash block")
        return num_blocks

    def flash_block(self, data: bytes, seq: int, timeout: Optional[float] = None) -> None:
        if timeout is None:
            timeout = self.settings.default_timeout
        self.channel.check_command(
            f"write to target Flash after seq {seq}",
            ESP_FLASH_DATA,
            struct.pack("<IIII", len(data), seq, 0, 0) + data,
            checksum(data),
            timeout=timeout,
        )

    def flash_finish(self, reboot: bool = False) -> None:
        """Leave flash mode, optionally rebooting into the application."""
        self.channel.check_command(
            "leave Flash mode",
            ESP_FLASH_END,
            struct.pack("<I", int(not reboot)),
            timeout=self.settings.default_timeout,
        )

    # =========================================================================
    # Deflated writes
    # =========================================================================

    def flash_defl_begin(self, size: int, compsize: int, offset: int) -> int:
        """
        Enter compressed flash download mode.

        Args:
            size: Uncompressed size
            compsize: Compressed size
            offset: Flash offset

        Returns:
            Number of FLASH_DEFL_DATA blocks to send
        """
        chip = self._require_chip()
        write_size = self.session.flash_write_size
        num_blocks = (compsize + write_size - 1) // write_size
        erase_blocks = (size + write_size - 1) // write_size

        if self.session.is_stub:
            erase_size = size
            timeout = self.settings.default_timeout
        else:
            # ROM erases whole blocks
            erase_size = erase_blocks * write_size
            timeout = timeout_per_mb(
                self.settings.erase_region_timeout_per_mb, erase_size,
                floor=self.settings.default_timeout,
            )

        logger.debug(f"Compressed {size} bytes to {compsize}...")
        params = struct.pack("<IIII", erase_size, num_blocks, write_size, offset)
        if chip.supports_encrypted_flash and not self.session.is_stub:
            params += struct.pack("<I", 0)

        t = time.monotonic()
        self.channel.check_command(
            "enter compressed flash mode", ESP_FLASH_DEFL_BEGIN, params, timeout=timeout
        )
        if size != 0 and not self.session.is_stub:
            logger.info(f"Took {time.monotonic() - t:.2f}s to erase flash block")
        return num_blocks

    def flash_defl_block(self, data: bytes, seq: int, timeout: Optional[float] = None) -> None:
        if timeout is None:
            timeout = self.settings.default_timeout
        self.channel.check_command(
            f"write compressed data to flash after seq {seq}",
            ESP_FLASH_DEFL_DATA,
            struct.pack("<IIII", len(data), seq, 0, 0) + data,
            checksum(data),
            timeout=timeout,
        )

    def flash_defl_finish(self, reboot: bool = False) -> None:
        """Leave compressed flash mode, optionally rebooting."""
        if not reboot and not self.session.is_stub:
            # skip sending flash_finish to ROM loader, as this may
            # reboot the chip
            return
        self.channel.check_command(
            "leave compressed flash mode",
            ESP_FLASH_DEFL_END,
            struct.pack("<I", int(not reboot)),
            timeout=self.settings.default_timeout,
        )

    # =========================================================================
    # Verify / misc
    # =========================================================================

    def flash_md5sum(self, addr: int, size: int) -> bytes:
        """
        MD5 of a flash region, computed on the device.

        The stub answers with 16 raw bytes, the ROM with 32 hex characters.

        Returns:
            16-byte digest
        """
        timeout = timeout_per_mb(
            self.settings.md5_timeout_per_mb, size, floor=self.settings.default_timeout
        )
        res = self.channel.check_command(
            "calculate md5sum",
            ESP_SPI_FLASH_MD5,
            struct.pack("<IIII", addr, size, 0, 0),
            timeout=timeout,
        )
        if not isinstance(res, bytes):
            raise InvalidResponseError("MD5 response carried no digest")
        if self.session.is_stub:
            return res[:16]
        return bytes.fromhex(res[:32].decode("ascii"))

    @stub_function_only
    def erase_flash(self) -> None:
        """Erase the whole flash chip."""
        logger.info("Erasing flash (this may take a while)...")
        t = time.monotonic()
        self.channel.check_command(
            "erase flash", ESP_ERASE_FLASH, timeout=self.settings.chip_erase_timeout
        )
        logger.info(f"Chip erase completed successfully in {time.monotonic() - t:.1f}s")

    @stub_function_only
    def read_flash(
        self,
        offset: int,
        length: int,
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> bytes:
        """
        Read a flash region.

        The stub streams sector-sized frames; each one is acknowledged
        with the running byte count. A final frame carries the MD5.

        Raises:
            InvalidResponseError: On short frames or overrun
            ReadbackMismatchError: If the received data fails the digest check
        """
        self.channel.check_command(
            "read flash",
            ESP_READ_FLASH,
            struct.pack("<IIII", offset, length, FLASH_SECTOR_SIZE, READ_FLASH_MAX_IN_FLIGHT),
            timeout=self.settings.default_timeout,
        )

        data = b""
        while len(data) < length:
            packet = self.channel.read_frame(self.settings.default_timeout)
            data += packet
            if len(data) < length and len(packet) < FLASH_SECTOR_SIZE:
                raise InvalidResponseError(
                    f"Corrupt data, expected 0x{FLASH_SECTOR_SIZE:x} bytes "
                    f"but received 0x{len(packet):x} bytes"
                )
            self.channel.write_frame(struct.pack("<I", len(data)))
            if progress:
                progress(len(data), length)

        if len(data) > length:
            raise InvalidResponseError("Read more than expected")

        digest_frame = self.channel.read_frame(self.settings.default_timeout)
        if len(digest_frame) != 16:
            raise InvalidResponseError(f"Expected digest, got: {digest_frame.hex()}")
        actual = hashlib.md5(data).digest()
        if actual != digest_frame:
            raise ReadbackMismatchError(offset, digest_frame, actual)
        return data

    @stub_function_only
    def run_user_code(self) -> None:
        """Jump to the application without a reset. No reply is sent."""
        self.channel.command(ESP_RUN_USER_CODE, wait_response=False)

    # =========================================================================
    # Image helpers
    # =========================================================================

    def update_image_flash_params(
        self,
        image: bytes,
        address: int,
        flash_size: str,
        flash_mode: str,
        flash_freq: str,
    ) -> bytes:
        """
        Rewrite the SPI flash parameters in a bootloader image header.

        Only the image at the chip's bootloader offset is touched, and
        only if it starts with the image magic byte.
        """
        chip = self._require_chip()
        if len(image) < 8:
            return image
        if address != chip.bootloader_flash_offset:
            return image
        if flash_size == "keep" and flash_mode == "keep" and flash_freq == "keep":
            logger.info("Not changing the image")
            return image

        magic, mode, size_freq = image[0], image[2], image[3]
        if magic != ESP_IMAGE_MAGIC:
            logger.warning(
                f"Image file at 0x{address:x} doesn't look like an image file, "
                "so not changing any flash settings."
            )
            return image

        if flash_mode != "keep":
            mode = parse_flash_mode(chip, flash_mode)

        freq = size_freq & 0x0F
        if flash_freq != "keep":
            freq = parse_flash_freq(chip, flash_freq)

        size = size_freq & 0xF0
        if flash_size != "keep":
            size = parse_flash_size(chip, flash_size)

        flash_params = struct.pack("BB", mode, size + freq)
        if flash_params != image[2:4]:
            logger.info(f"Flash params set to 0x{mode << 8 | (size + freq):04x}")
            image = image[0:2] + flash_params + image[4:]
        return image

    # =========================================================================
    # write_flash
    # =========================================================================

    def _write_compressed(
        self,
        index: int,
        image: bytes,
        address: int,
        progress: Optional[ProgressCallback],
    ) -> int:
        uncsize = len(image)
        image = compress(image, 9)
        total = len(image)
        blocks = self.flash_defl_begin(uncsize, total, address)

        inflater = StreamingInflater()
        write_size = self.session.flash_write_size
        timeout = self.settings.default_timeout
        bytes_sent = 0
        if progress:
            progress(index, 0, total)

        for seq in range(blocks):
            logger.info(
                f"Writing at 0x{address + inflater.total_out:08x}... "
                f"({100 * (seq + 1) // blocks} %)"
            )
            block = image[seq * write_size:(seq + 1) * write_size]
            block_uncompressed = inflater.push(block, is_last=seq == blocks - 1)
            block_timeout = timeout_per_mb(
                self.settings.erase_write_timeout_per_mb,
                block_uncompressed,
                floor=self.settings.default_timeout,
            )
            if not self.session.is_stub:
                # ROM writes the block before replying
                timeout = block_timeout
            self.flash_defl_block(block, seq, timeout=timeout)
            if self.session.is_stub:
                # stub replied at once; this covers the write still running
                timeout = block_timeout

            bytes_sent += len(block)
            if progress:
                progress(index, bytes_sent, total)

        if self.session.is_stub:
            # stub acks each block before writing it; this read is only
            # answered once the last block is in flash
            self.session.read_reg(CHIP_DETECT_MAGIC_REG_ADDR, timeout=timeout)
        return bytes_sent

    def _write_raw(
        self,
        index: int,
        image: bytes,
        address: int,
        progress: Optional[ProgressCallback],
    ) -> int:
        total = len(image)
        blocks = self.flash_begin(total, address)
        write_size = self.session.flash_write_size
        bytes_sent = 0
        if progress:
            progress(index, 0, total)

        for seq in range(blocks):
            logger.info(
                f"Writing at 0x{address + seq * write_size:08x}... "
                f"({100 * (seq + 1) // blocks} %)"
            )
            block = image[seq * write_size:(seq + 1) * write_size]
            sent = len(block)
            block = block + b"\xff" * (write_size - len(block))
            self.flash_block(block, seq)
            bytes_sent += sent
            if progress:
                progress(index, bytes_sent, total)

        if self.session.is_stub:
            self.session.read_reg(CHIP_DETECT_MAGIC_REG_ADDR)
        return bytes_sent

    def write_flash(
        self,
        job: FlashJob,
        progress: Optional[ProgressCallback] = None,
    ) -> List[WrittenImage]:
        """
        Write every file of a job, verifying each with MD5.

        A failure aborts the job; anything already written stays written.

        Args:
            job: Files and flash parameters
            progress: Called as (file_index, bytes_sent, total_bytes)
                before the first block and after every block

        Returns:
            One WrittenImage per file
        """
        flash_size = job.flash_size
        if flash_size == "detect":
            flash_size = detect_flash_size(self.session) or "keep"
            logger.info(f"Auto-detected flash size: {flash_size}")

        check_image_fit(job.files, flash_size)

        if job.erase_all:
            self.erase_flash()

        written = []
        for index, f in enumerate(job.files):
            image = pad_to(f.data, 4)
            image = self.update_image_flash_params(
                image, f.address, flash_size, job.flash_mode, job.flash_freq
            )
            digest = hashlib.md5(image).digest()
            uncsize = len(image)

            t = time.monotonic()
            if job.compress:
                sent = self._write_compressed(index, image, f.address, progress)
            else:
                sent = self._write_raw(index, image, f.address, progress)
            seconds = time.monotonic() - t

            if job.compress:
                logger.info(
                    f"Wrote {uncsize} bytes ({sent} compressed) at "
                    f"0x{f.address:08x} in {seconds:.1f} seconds."
                )
            else:
                logger.info(f"Wrote {uncsize} bytes at 0x{f.address:08x} in {seconds:.1f} seconds.")

            verified = False
            if job.verify:
                actual = self.flash_md5sum(f.address, uncsize)
                if actual != digest:
                    raise Md5MismatchError(f.address, digest, actual)
                logger.info("Hash of data verified.")
                verified = True

            written.append(WrittenImage(
                address=f.address,
                size=uncsize,
                sent=sent,
                md5=digest.hex(),
                seconds=seconds,
                verified=verified,
                name=f.name,
            ))

        logger.info("Leaving...")
        if self.session.is_stub:
            # ROM would leave the loader and run the app on flash_finish
            self.flash_begin(0, 0)
            if job.compress:
                self.flash_defl_finish(False)
            else:
                self.flash_finish(False)

        return written


