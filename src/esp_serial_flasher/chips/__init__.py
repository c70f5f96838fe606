"""Chip registry and flasher stub images."""

from .registry import (
    ChipProfile,
    SpiRegisters,
    CHIP_DETECT_MAGIC_REG_ADDR,
    ESP_IMAGE_MAGIC,
    FLASH_MODES,
    list_chips,
    get_chip,
    detect_chip,
    check_chip,
    get_erase_size,
    flash_size_bytes,
    parse_flash_mode,
    parse_flash_size,
    parse_flash_freq,
)
from .stub import StubImage, load_stub, parse_stub, stub_file_name, stub_search_path

__all__ = [
    "ChipProfile",
    "SpiRegisters",
    "CHIP_DETECT_MAGIC_REG_ADDR",
    "ESP_IMAGE_MAGIC",
    "FLASH_MODES",
    "list_chips",
    "get_chip",
    "detect_chip",
    "check_chip",
    "get_erase_size",
    "flash_size_bytes",
    "parse_flash_mode",
    "parse_flash_size",
    "parse_flash_freq",
    "StubImage",
    "load_stub",
    "parse_stub",
    "stub_file_name",
    "stub_search_path",
]
