"""
Bootloader session: connect, sync and identify the chip.

A Session owns the command channel and tracks which loader (ROM or stub)
is answering. It is driven by exactly one caller; nothing here is
thread-safe.

States:
    DISCONNECTED -> RESETTING -> SYNCING -> SYNCED -> DETECTED
        -> (STUB_UPLOADING -> STUB_ACTIVE)? -> READY
    FAILED is terminal for the connection attempt.
"""

import functools
import logging
import re
import struct
import time
from enum import Enum
from typing import Callable, Optional

from ..chips.registry import (
    CHIP_DETECT_MAGIC_REG_ADDR,
    ChipProfile,
    detect_chip,
)
from ..chips.stub import StubImage
from ..config import DEFAULT_SETTINGS, FlasherSettings
from ..protocol.command import (
    CommandChannel,
    ESP_READ_REG,
    ESP_SPI_ATTACH,
    ESP_WRITE_REG,
)
from ..protocol.errors import (
    CommandFailedError,
    CommandTimeoutError,
    FlasherError,
    NotSupportedInRomError,
    SyncFailedError,
    TransportError,
)
from ..protocol.reset import (
    USB_JTAG_SERIAL_PID,
    ResetSequencer,
    classic_reset_sequence,
)
from ..protocol.serial_link import SerialLink

logger = logging.getLogger(__name__)

ESP_ROM_FLASH_WRITE_SIZE = 0x400
ESP_STUB_FLASH_WRITE_SIZE = 0x4000
STUB_STATUS_BYTES_LENGTH = 2

SYNC_EXTRA_RESPONSES = 7

# Upper bounds on the post-reset drain
DRAIN_MAX_SECONDS = 1.0
DRAIN_MAX_BYTES = 0x4000

BOOT_LOG_PATTERN = re.compile(
    rb"boot:(0x[0-9a-fA-F]+)(.*waiting for download)?", re.DOTALL
)


class LoaderMode(Enum):
    """Which program is answering commands."""
    ROM = "rom"
    STUB = "stub"


class ResetMode(str, Enum):
    """How to get the chip into the bootloader before syncing."""
    DEFAULT_RESET = "default_reset"
    USB_RESET = "usb_reset"
    NO_RESET = "no_reset"


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    RESETTING = "resetting"
    SYNCING = "syncing"
    SYNCED = "synced"
    DETECTED = "detected"
    STUB_UPLOADING = "stub_uploading"
    STUB_ACTIVE = "stub_active"
    READY = "ready"
    FAILED = "failed"


def stub_function_only(func: Callable) -> Callable:
    """Decorator for commands only the flasher stub implements."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        session = getattr(self, "session", self)
        if not session.is_stub:
            raise NotSupportedInRomError(func.__name__)
        return func(self, *args, **kwargs)

    return wrapper


class Session:
    """
    Connection to one ESP bootloader over a SerialLink.

    Example:
        session = Session(PySerialLink("/dev/ttyUSB0"))
        chip = session.connect()
        print(chip.name, session.read_mac())
        session.hard_reset()
        session.disconnect()

    Attributes:
        chip: Detected chip profile (None until detected)
        mode: LoaderMode.ROM until the stub announces itself
        flash_write_size: Block size for flash writes in the current mode
        sync_stub_detected: A sync was answered by an already running stub
    """

    def __init__(
        self,
        link: SerialLink,
        settings: FlasherSettings = DEFAULT_SETTINGS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.link = link
        self.settings = settings
        self.sleep = sleep
        self.channel = CommandChannel(link, max_timeout=settings.max_timeout)
        self.reset = ResetSequencer(link, sleep=sleep)

        self.state = SessionState.DISCONNECTED
        self.mode = LoaderMode.ROM
        self.chip: Optional[ChipProfile] = None
        self.stub: Optional[StubImage] = None
        self.flash_write_size = ESP_ROM_FLASH_WRITE_SIZE
        self.sync_stub_detected = False
        self.using_usb_otg = False

        self._boot_mode: Optional[str] = None
        self._download_mode = False

    @property
    def is_stub(self) -> bool:
        return self.mode == LoaderMode.STUB

    # =========================================================================
    # Connect / sync
    # =========================================================================

    def sync(self) -> int:
        """
        Sync with the loader.

        The ROM answers a sync with eight responses; the extra ones are
        read here so they do not confuse the next command.

        Returns:
            Value field of the first response
        """
        value, _ = self.channel.sync(timeout=self.settings.sync_timeout)
        self.sync_stub_detected = value == 0
        for _ in range(SYNC_EXTRA_RESPONSES):
            try:
                extra, _ = self.channel.command(timeout=self.settings.sync_timeout)
            except CommandTimeoutError:
                break
            self.sync_stub_detected &= extra == 0
        return value

    def _reset(self, mode: ResetMode, esp32r0_delay: bool) -> None:
        if mode == ResetMode.NO_RESET:
            return
        if mode == ResetMode.USB_RESET or self.link.get_product_id() == USB_JTAG_SERIAL_PID:
            self.reset.usb_jtag_serial_reset()
            return
        if self.settings.custom_reset_sequence:
            sequence = self.settings.custom_reset_sequence
        else:
            sequence = classic_reset_sequence(self.settings.reset_delay, esp32r0_delay)
        self.reset.custom_reset(sequence)

    def _drain_input(self) -> bytes:
        """
        Read and discard whatever the chip printed after reset.

        Stops at the first quiet read, or once the drain budget is spent
        so a chip that keeps printing still gets its sync attempts.
        """
        drained = b""
        deadline = time.monotonic() + DRAIN_MAX_SECONDS
        while len(drained) < DRAIN_MAX_BYTES and time.monotonic() < deadline:
            try:
                drained += self.link.read(self.settings.drain_timeout)
            except CommandTimeoutError:
                break
        self.channel.flush_input()

        if drained:
            logger.debug(f"Drained {len(drained)} bytes after reset")
            match = BOOT_LOG_PATTERN.search(drained)
            if match:
                self._boot_mode = match.group(1).decode("ascii")
                self._download_mode = match.group(2) is not None
        return drained

    def _connect_attempt(self, mode: ResetMode, esp32r0_delay: bool) -> bool:
        """One reset followed by a burst of sync tries."""
        self.state = SessionState.RESETTING
        self._reset(mode, esp32r0_delay)
        self._drain_input()

        self.state = SessionState.SYNCING
        for _ in range(self.settings.sync_tries):
            try:
                self.sync()
                return True
            except TransportError:
                raise
            except FlasherError as e:
                logger.debug(f"Sync failed: {e}")
                self.channel.flush_input()
            self.sleep(0.05)
        return False

    def connect(
        self,
        mode: ResetMode = ResetMode.DEFAULT_RESET,
        attempts: Optional[int] = None,
        detect: bool = True,
    ) -> Optional[ChipProfile]:
        """
        Reset the chip into the bootloader and sync with it.

        Each attempt tries the standard reset and then the variant with
        the long delay some ESP32 revision 0 boards need.

        Args:
            mode: Reset strategy
            attempts: Number of attempts (default from settings)
            detect: Also read the magic register and resolve the chip

        Returns:
            Detected ChipProfile, or None if detect is False

        Raises:
            SyncFailedError: If no attempt produced a sync response
            UnknownChipError: If the magic value is not registered
        """
        mode = ResetMode(mode)
        if attempts is None:
            attempts = self.settings.connect_attempts

        logger.info("Connecting...")
        self.link.connect(self.settings.rom_baud)

        synced = False
        for attempt in range(attempts):
            for esp32r0_delay in (False, True):
                if self._connect_attempt(mode, esp32r0_delay):
                    synced = True
                    break
            if synced:
                break
            logger.debug(f"Connect attempt {attempt + 1}/{attempts} failed")

        if not synced:
            self.state = SessionState.FAILED
            message = "Failed to connect to the ESP bootloader: no sync reply"
            if self._boot_mode and not self._download_mode:
                message += (
                    f". Wrong boot mode detected ({self._boot_mode}), "
                    "the chip needs to be in download mode"
                )
            raise SyncFailedError(message)

        self.state = SessionState.SYNCED
        if self.sync_stub_detected:
            logger.info("Sync answered by a running flasher stub")

        if not detect:
            return None
        return self.detect_chip()

    def detect_chip(self) -> ChipProfile:
        """Read the magic register and resolve the chip profile."""
        magic = self.read_reg(CHIP_DETECT_MAGIC_REG_ADDR)
        logger.debug(f"Chip magic value 0x{magic:08x}")
        self.chip = detect_chip(magic)
        if not self.is_stub:
            self.channel.status_bytes_length = self.chip.rom_status_bytes_length
        self.state = SessionState.DETECTED
        logger.info(f"Chip is {self.chip.name}")

        if self.chip.uart_dev_buf_no is not None:
            self.using_usb_otg = self.uses_usb_otg()
        return self.chip

    def enter_stub_mode(self, stub: Optional[StubImage] = None) -> None:
        """Switch to the stub command set after it announced itself."""
        self.mode = LoaderMode.STUB
        self.stub = stub
        self.flash_write_size = ESP_STUB_FLASH_WRITE_SIZE
        self.channel.status_bytes_length = STUB_STATUS_BYTES_LENGTH
        self.state = SessionState.STUB_ACTIVE

    def mark_ready(self) -> None:
        self.state = SessionState.READY

    # =========================================================================
    # Registers
    # =========================================================================

    def read_reg(self, addr: int, timeout: Optional[float] = None) -> int:
        """Read a 32-bit register or memory word."""
        if timeout is None:
            timeout = self.settings.default_timeout
        value, data = self.channel.command(
            ESP_READ_REG, struct.pack("<I", addr), timeout=timeout
        )
        if data and data[0] != 0:
            raise CommandFailedError(f"read register address 0x{addr:08x}", data)
        return value

    def write_reg(
        self,
        addr: int,
        value: int,
        mask: int = 0xFFFFFFFF,
        delay_us: int = 0,
    ) -> None:
        """Write a 32-bit register, optionally masked."""
        self.channel.check_command(
            "write target memory",
            ESP_WRITE_REG,
            struct.pack("<IIII", addr, value, mask, delay_us),
            timeout=self.settings.default_timeout,
        )

    def flash_spi_attach(self, hspi_arg: int = 0) -> None:
        """
        Attach the SPI flash.

        The ROM loader takes an extra "is legacy" word the stub does not.
        """
        arg = struct.pack("<I", hspi_arg)
        if not self.is_stub:
            arg += struct.pack("<BBBB", 0, 0, 0, 0)
        self.channel.check_command(
            "configure SPI flash pins",
            ESP_SPI_ATTACH,
            arg,
            timeout=self.settings.default_timeout,
        )

    def read_mac(self) -> Optional[str]:
        """
        Read the factory MAC from eFuse.

        Returns:
            MAC as "aa:bb:cc:dd:ee:ff", or None if the chip has no MAC
            eFuse register in its profile
        """
        if self.chip is None or self.chip.mac_efuse_reg is None:
            return None
        mac0 = self.read_reg(self.chip.mac_efuse_reg)
        mac1 = self.read_reg(self.chip.mac_efuse_reg + 4)
        mac = struct.pack(">II", mac1, mac0)[2:]
        return ":".join(f"{b:02x}" for b in mac)

    def uses_usb_otg(self) -> bool:
        """True if the ROM console runs over the chip's USB-OTG peripheral."""
        if self.chip is None or self.chip.uart_dev_buf_no is None:
            return False
        uart_no = self.read_reg(self.chip.uart_dev_buf_no) & 0xFF
        return uart_no == self.chip.uart_dev_buf_no_usb_otg

    # =========================================================================
    # Teardown
    # =========================================================================

    def hard_reset(self) -> None:
        """Reset the chip into the user application."""
        self.reset.hard_reset(self.using_usb_otg)

    def disconnect(self) -> None:
        self.link.disconnect()
        self.state = SessionState.DISCONNECTED
