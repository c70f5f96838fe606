"""Session, stub bootstrap and flash programming."""

from .session import (
    Session,
    SessionState,
    LoaderMode,
    ResetMode,
    stub_function_only,
    ESP_ROM_FLASH_WRITE_SIZE,
    ESP_STUB_FLASH_WRITE_SIZE,
)
from .stub_loader import StubLoader, ESP_RAM_BLOCK, STUB_ACK
from .programmer import (
    FlashProgrammer,
    FlashFile,
    FlashJob,
    WrittenImage,
    ProgressCallback,
    pad_to,
    check_image_fit,
)
from .baud import change_baud
from .spi_flash import run_spiflash_command, flash_id, detect_flash_size, DETECTED_FLASH_SIZES

__all__ = [
    "Session",
    "SessionState",
    "LoaderMode",
    "ResetMode",
    "stub_function_only",
    "ESP_ROM_FLASH_WRITE_SIZE",
    "ESP_STUB_FLASH_WRITE_SIZE",
    "StubLoader",
    "ESP_RAM_BLOCK",
    "STUB_ACK",
    "FlashProgrammer",
    "FlashFile",
    "FlashJob",
    "WrittenImage",
    "ProgressCallback",
    "pad_to",
    "check_image_fit",
    "change_baud",
    "run_spiflash_command",
    "flash_id",
    "detect_flash_size",
    "DETECTED_FLASH_SIZES",
]
