"""
Tunable settings for the flashing engine.

Timeouts are in seconds. Defaults match the values the ROM loader and
the flasher stub are known to work with; override them only for
unusual adapters or very slow flash parts.

Usage:
    from esp_serial_flasher.config import FlasherSettings, load_settings

    settings = load_settings("flasher.json")
    fast = settings.with_overrides(flash_baud=2000000)
"""

import json
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional, Union


@dataclass(frozen=True)
class FlasherSettings:
    """Session-wide tunables."""
    rom_baud: int = 115200
    flash_baud: int = 921600

    default_timeout: float = 3.0
    sync_timeout: float = 0.1
    chip_erase_timeout: float = 120.0
    max_timeout: float = 240.0
    md5_timeout_per_mb: float = 8.0
    erase_region_timeout_per_mb: float = 30.0
    erase_write_timeout_per_mb: float = 40.0
    mem_end_rom_timeout: float = 0.2

    connect_attempts: int = 7
    sync_tries: int = 7
    reset_delay: float = 0.05
    drain_timeout: float = 0.05

    stub_poll_attempts: int = 100
    stub_poll_timeout: float = 1.0

    baud_resync_tries: int = 64

    custom_reset_sequence: Optional[str] = None
    stub_dir: Optional[str] = None

    def with_overrides(self, **overrides) -> "FlasherSettings":
        """Return a copy with the given fields replaced."""
        return replace(self, **overrides)

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


DEFAULT_SETTINGS = FlasherSettings()


def load_settings(path: Optional[Union[str, Path]] = None) -> FlasherSettings:
    """
    Load settings from a JSON file.

    The file holds a single object whose keys are FlasherSettings field
    names. Missing keys keep their defaults.

    Args:
        path: JSON file, or None for the defaults

    Raises:
        ValueError: If the file is not an object or names unknown settings
    """
    if path is None:
        return DEFAULT_SETTINGS

    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a JSON object")

    known = {f.name for f in fields(FlasherSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown settings in {path}: {', '.join(unknown)}")

    return DEFAULT_SETTINGS.with_overrides(**data)
