"""
ESP Serial Flasher - program Espressif chips over the ROM serial bootloader

Connect, detect the chip, start the flasher stub and write, verify,
read or erase flash through a SLIP-framed command protocol.
"""

__version__ = "0.1.0"

from esp_serial_flasher.protocol import PySerialLink, FlasherError
from esp_serial_flasher.flasher import Session, StubLoader, FlashProgrammer, FlashJob, FlashFile
from esp_serial_flasher.config import FlasherSettings, load_settings

__all__ = [
    "PySerialLink",
    "FlasherError",
    "Session",
    "StubLoader",
    "FlashProgrammer",
    "FlashJob",
    "FlashFile",
    "FlasherSettings",
    "load_settings",
    "__version__",
]
