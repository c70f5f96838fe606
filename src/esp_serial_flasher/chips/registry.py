"""
Chip registry for ESP serial bootloader targets.

Provides a single source of truth for:
- Chip identification (magic register values)
- Protocol differences between families (status length, extra fields)
- SPI controller and eFuse register addresses
- Flash size / frequency / mode encodings for the image header

Usage:
    from esp_serial_flasher.chips import list_chips, get_chip, detect_chip

    # List all known chips
    names = list_chips()

    # Get the profile for a specific chip
    profile = get_chip("ESP32-S3")

    # Resolve the value read from the magic register
    profile = detect_chip(0x00F01D83)
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..protocol.errors import (
    ChipMismatchError,
    FlashParameterError,
    UnknownChipError,
)

# Register holding the chip magic value on every supported family
CHIP_DETECT_MAGIC_REG_ADDR = 0x40001000

FLASH_SECTOR_SIZE = 0x1000
ESP_IMAGE_MAGIC = 0xE9

FLASH_MODES: Dict[str, int] = {
    "qio": 0,
    "qout": 1,
    "dio": 2,
    "dout": 3,
}

ESP32_FLASH_SIZES: Dict[str, int] = {
    "1MB": 0x00,
    "2MB": 0x10,
    "4MB": 0x20,
    "8MB": 0x30,
    "16MB": 0x40,
    "32MB": 0x50,
    "64MB": 0x60,
    "128MB": 0x70,
}

ESP32C2_FLASH_SIZES: Dict[str, int] = {
    "1MB": 0x00,
    "2MB": 0x10,
    "4MB": 0x20,
    "8MB": 0x30,
    "16MB": 0x40,
}

ESP8266_FLASH_SIZES: Dict[str, int] = {
    "512KB": 0x00,
    "256KB": 0x10,
    "1MB": 0x20,
    "2MB": 0x30,
    "4MB": 0x40,
    "2MB-c1": 0x50,
    "4MB-c1": 0x60,
    "8MB": 0x80,
    "16MB": 0x90,
}

ESP32_FLASH_FREQUENCY: Dict[str, int] = {
    "80m": 0xF,
    "40m": 0x0,
    "26m": 0x1,
    "20m": 0x2,
}

ESP32C2_FLASH_FREQUENCY: Dict[str, int] = {
    "60m": 0xF,
    "30m": 0x0,
    "20m": 0x1,
    "15m": 0x2,
}

ESP32C6_FLASH_FREQUENCY: Dict[str, int] = {
    "80m": 0x0,
    "40m": 0x0,
    "20m": 0x2,
}

ESP32H2_FLASH_FREQUENCY: Dict[str, int] = {
    "48m": 0xF,
    "24m": 0x0,
    "16m": 0x1,
    "12m": 0x2,
}


@dataclass(frozen=True)
class SpiRegisters:
    """SPI flash controller register map (absolute base, relative offsets)."""
    base: int
    usr_offs: int
    usr1_offs: int
    usr2_offs: int
    w0_offs: int
    mosi_dlen_offs: Optional[int] = None
    miso_dlen_offs: Optional[int] = None

    @property
    def cmd_reg(self) -> int:
        return self.base + 0x00

    @property
    def usr_reg(self) -> int:
        return self.base + self.usr_offs

    @property
    def usr1_reg(self) -> int:
        return self.base + self.usr1_offs

    @property
    def usr2_reg(self) -> int:
        return self.base + self.usr2_offs

    @property
    def w0_reg(self) -> int:
        return self.base + self.w0_offs

    @property
    def mosi_dlen_reg(self) -> Optional[int]:
        if self.mosi_dlen_offs is None:
            return None
        return self.base + self.mosi_dlen_offs

    @property
    def miso_dlen_reg(self) -> Optional[int]:
        if self.miso_dlen_offs is None:
            return None
        return self.base + self.miso_dlen_offs


ESP8266_SPI = SpiRegisters(
    base=0x60000200, usr_offs=0x1C, usr1_offs=0x20, usr2_offs=0x24, w0_offs=0x40,
)
ESP32_SPI = SpiRegisters(
    base=0x3FF42000, usr_offs=0x1C, usr1_offs=0x20, usr2_offs=0x24, w0_offs=0x80,
    mosi_dlen_offs=0x28, miso_dlen_offs=0x2C,
)


def _s2_style_spi(base: int) -> SpiRegisters:
    return SpiRegisters(
        base=base, usr_offs=0x18, usr1_offs=0x1C, usr2_offs=0x20, w0_offs=0x58,
        mosi_dlen_offs=0x24, miso_dlen_offs=0x28,
    )


@dataclass(frozen=True)
class ChipProfile:
    """
    Immutable description of one chip family.

    Attributes:
        name: Chip name as reported to users ("ESP32-S3")
        magic_values: Values of the magic register identifying the family
        rom_status_bytes_length: Trailing status bytes in ROM responses
        supports_encrypted_flash: ROM expects an extra zero word on
            FLASH_BEGIN / FLASH_DEFL_BEGIN
        rom_erase_size_workaround: ROM erases more than asked for; the
            requested erase size must be adjusted (ESP8266)
        mac_efuse_reg: Address of the low MAC eFuse word, None if the
            MAC cannot be read this way
        uart_dev_buf_no: ROM variable holding the active UART device
        uart_dev_buf_no_usb_otg: Value of that variable when the
            console runs over USB-OTG
    """
    name: str
    magic_values: Tuple[int, ...]
    spi: SpiRegisters
    bootloader_flash_offset: int = 0x0
    rom_status_bytes_length: int = 4
    supports_encrypted_flash: bool = False
    rom_erase_size_workaround: bool = False
    mac_efuse_reg: Optional[int] = None
    uart_dev_buf_no: Optional[int] = None
    uart_dev_buf_no_usb_otg: Optional[int] = None
    flash_sizes: Dict[str, int] = field(default_factory=lambda: dict(ESP32_FLASH_SIZES))
    flash_frequency: Dict[str, int] = field(default_factory=lambda: dict(ESP32_FLASH_FREQUENCY))
    notes: List[str] = field(default_factory=list)

    def __hash__(self) -> int:
        return hash(self.name)

    @property
    def stub_name(self) -> str:
        """Short name used in stub file names ("ESP32-S3" -> "32s3")."""
        return self.name.lower().replace("-", "").replace("esp", "")


def get_erase_size(profile: ChipProfile, offset: int, size: int) -> int:
    """
    Erase size to request in FLASH_BEGIN when talking to the ROM loader.

    The ESP8266 ROM erases whole 64 KB blocks from the start sector and
    then erases the requested size again, so the size is shrunk to end up
    erasing roughly what was asked for. Everything else passes through.
    """
    if not profile.rom_erase_size_workaround:
        return size

    sectors_per_block = 16
    num_sectors = (size + FLASH_SECTOR_SIZE - 1) // FLASH_SECTOR_SIZE
    start_sector = offset // FLASH_SECTOR_SIZE

    head_sectors = sectors_per_block - (start_sector % sectors_per_block)
    if num_sectors < head_sectors:
        head_sectors = num_sectors

    if num_sectors < 2 * head_sectors:
        return (num_sectors + 1) // 2 * FLASH_SECTOR_SIZE
    return (num_sectors - head_sectors) * FLASH_SECTOR_SIZE


def flash_size_bytes(label: str) -> Optional[int]:
    """
    Convert a flash size label ("4MB", "512KB", "2MB-c1") to bytes.

    Returns:
        Size in bytes, or None for labels that carry no size ("keep", "detect")
    """
    if label in ("keep", "detect"):
        return None
    text = label.split("-")[0]
    try:
        if text.endswith("MB"):
            return int(text[:-2]) * 1024 * 1024
        if text.endswith("KB"):
            return int(text[:-2]) * 1024
    except ValueError:
        pass
    raise FlashParameterError(f"Unknown flash size label: {label}")


def parse_flash_mode(profile: ChipProfile, mode: str) -> int:
    try:
        return FLASH_MODES[mode]
    except KeyError:
        raise FlashParameterError(
            f"Unknown flash mode {mode!r} (expected one of {', '.join(FLASH_MODES)})"
        )


def parse_flash_size(profile: ChipProfile, label: str) -> int:
    try:
        return profile.flash_sizes[label]
    except KeyError:
        raise FlashParameterError(
            f"Flash size {label!r} not supported by {profile.name} "
            f"(supported: {', '.join(profile.flash_sizes)})"
        )


def parse_flash_freq(profile: ChipProfile, freq: str) -> int:
    try:
        return profile.flash_frequency[freq]
    except KeyError:
        raise FlashParameterError(
            f"Flash frequency {freq!r} not supported by {profile.name} "
            f"(supported: {', '.join(profile.flash_frequency)})"
        )


# =============================================================================
# Chip Registry
# =============================================================================

_CHIP_REGISTRY: Dict[str, ChipProfile] = {}


def _register_chip(profile: ChipProfile) -> None:
    """Register a chip profile."""
    _CHIP_REGISTRY[profile.name] = profile


def _init_registry() -> None:
    """Initialize the chip registry with known families."""

    _register_chip(ChipProfile(
        name="ESP8266",
        magic_values=(0xFFF0C101,),
        spi=ESP8266_SPI,
        rom_status_bytes_length=2,
        rom_erase_size_workaround=True,
        flash_sizes=dict(ESP8266_FLASH_SIZES),
        notes=["ROM erases in 64 KB blocks; erase size is adjusted"],
    ))

    _register_chip(ChipProfile(
        name="ESP32",
        magic_values=(0x00F01D83,),
        spi=ESP32_SPI,
        bootloader_flash_offset=0x1000,
        mac_efuse_reg=0x3FF5A004,
    ))

    _register_chip(ChipProfile(
        name="ESP32-S2",
        magic_values=(0x000007C6,),
        spi=_s2_style_spi(0x3F402000),
        bootloader_flash_offset=0x1000,
        supports_encrypted_flash=True,
        mac_efuse_reg=0x3F41A044,
        uart_dev_buf_no=0x3FFFFD14,
        uart_dev_buf_no_usb_otg=2,
    ))

    # Matched by an 8-bit value, unlike the other families
    _register_chip(ChipProfile(
        name="ESP32-S3",
        magic_values=(0x9,),
        spi=_s2_style_spi(0x60002000),
        supports_encrypted_flash=True,
        mac_efuse_reg=0x60007044,
        uart_dev_buf_no=0x3FCEF14C,
        uart_dev_buf_no_usb_otg=3,
    ))

    _register_chip(ChipProfile(
        name="ESP32-C3",
        magic_values=(0x6921506F, 0x1B31506F, 0x4881606F, 0x4361606F),
        spi=_s2_style_spi(0x60002000),
        supports_encrypted_flash=True,
        mac_efuse_reg=0x60008844,
    ))

    _register_chip(ChipProfile(
        name="ESP32-C2",
        magic_values=(0x6F51306F, 0x7C41A06F, 0x0C21E06F),
        spi=_s2_style_spi(0x60002000),
        supports_encrypted_flash=True,
        mac_efuse_reg=0x60008840,
        flash_sizes=dict(ESP32C2_FLASH_SIZES),
        flash_frequency=dict(ESP32C2_FLASH_FREQUENCY),
    ))

    _register_chip(ChipProfile(
        name="ESP32-C6",
        magic_values=(0x2CE0806F,),
        spi=_s2_style_spi(0x60003000),
        supports_encrypted_flash=True,
        mac_efuse_reg=0x600B0844,
        flash_frequency=dict(ESP32C6_FLASH_FREQUENCY),
    ))

    _register_chip(ChipProfile(
        name="ESP32-H2",
        magic_values=(0xD7B73E80,),
        spi=_s2_style_spi(0x60003000),
        supports_encrypted_flash=True,
        mac_efuse_reg=0x600B0844,
        flash_frequency=dict(ESP32H2_FLASH_FREQUENCY),
    ))


# Initialize on module load
_init_registry()


def list_chips() -> List[str]:
    """
    List all registered chip names.

    Returns:
        Chip names in registration order.
    """
    return list(_CHIP_REGISTRY.keys())


def get_chip(name: str) -> Optional[ChipProfile]:
    """
    Get the profile for a chip by name.

    Args:
        name: Chip name, case-insensitive ("esp32-c3" works)

    Returns:
        ChipProfile or None if not found.
    """
    profile = _CHIP_REGISTRY.get(name)
    if profile is None:
        profile = _CHIP_REGISTRY.get(name.upper())
    return profile


def detect_chip(magic: int) -> ChipProfile:
    """
    Resolve a magic register value to a chip profile.

    Raises:
        UnknownChipError: If no registered family uses this value
    """
    for profile in _CHIP_REGISTRY.values():
        if magic in profile.magic_values:
            return profile
    raise UnknownChipError(magic)


def check_chip(expected: Optional[str], detected: ChipProfile) -> None:
    """
    Fail if the detected chip is not the one the caller asked for.

    Raises:
        ChipMismatchError: On mismatch (None or "auto" accepts anything)
    """
    if expected is None or expected.lower() == "auto":
        return
    if expected.upper() != detected.name.upper():
        raise ChipMismatchError(expected, detected.name)
