"""
Standardized warning and message system.

Provides structured warning items with stable codes so every front end
displays known conditions the same way, with a remediation hint.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any

from .results import OperationResult


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Connection
    W_SYNC_FAILED = "W_SYNC_FAILED"
    W_WRONG_BOOT_MODE = "W_WRONG_BOOT_MODE"
    W_SERIAL_TIMEOUT = "W_SERIAL_TIMEOUT"
    W_SERIAL_ERROR = "W_SERIAL_ERROR"
    W_BAUD_RESYNC = "W_BAUD_RESYNC"

    # Chip
    W_CHIP_UNKNOWN = "W_CHIP_UNKNOWN"
    W_CHIP_MISMATCH = "W_CHIP_MISMATCH"
    W_STUB_FAILED = "W_STUB_FAILED"
    W_ROM_ONLY = "W_ROM_ONLY"

    # Flash
    W_IMAGE_TOO_LARGE = "W_IMAGE_TOO_LARGE"
    W_VERIFY_MISMATCH = "W_VERIFY_MISMATCH"
    W_HEADER_NOT_PATCHED = "W_HEADER_NOT_PATCHED"
    W_PARTITION_SKIPPED = "W_PARTITION_SKIPPED"

    # Safety
    W_WRITE_DISABLED = "W_WRITE_DISABLED"
    W_DRY_RUN = "W_DRY_RUN"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


# Default remediation hints for each warning code
WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_SYNC_FAILED:
        "Hold BOOT (IO0) while pressing RESET, or try --before usb_reset.",
    WarningCode.W_WRONG_BOOT_MODE:
        "The chip booted normally. Put it in download mode (IO0 low at reset).",
    WarningCode.W_SERIAL_TIMEOUT:
        "Check the cable. Try a lower --baud or a shorter cable.",
    WarningCode.W_SERIAL_ERROR:
        "Close other serial apps (monitors, IDEs). Check the USB driver.",
    WarningCode.W_BAUD_RESYNC:
        "The adapter may not support this baud rate. Try a lower --baud.",
    WarningCode.W_CHIP_UNKNOWN:
        "Check supported chips with the 'list-chips' command.",
    WarningCode.W_CHIP_MISMATCH:
        "This firmware is built for a different chip. Use the matching package.",
    WarningCode.W_STUB_FAILED:
        "Check the stub files, or use --no-stub to talk to the ROM loader.",
    WarningCode.W_ROM_ONLY:
        "This command needs the flasher stub. Drop --no-stub.",
    WarningCode.W_IMAGE_TOO_LARGE:
        "Use a larger --flash-size or check the partition addresses.",
    WarningCode.W_VERIFY_MISMATCH:
        "Flash contents differ from the file. Check power and connection, then retry.",
    WarningCode.W_HEADER_NOT_PATCHED:
        "Image at the bootloader offset has no image header; flash settings unchanged.",
    WarningCode.W_PARTITION_SKIPPED:
        "Storage partitions are kept when flashing without erase.",
    WarningCode.W_WRITE_DISABLED:
        "Add --write (and --confirm WRITE when not on a terminal) to write.",
    WarningCode.W_DRY_RUN:
        "Dry run complete. Add --write to perform the actual operation.",
    WarningCode.W_UNKNOWN:
        "Check logs (--verbose) for more details.",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def info(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.INFO, code, title, detail)

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }

    def to_cli_string(self, verbose: bool = False) -> str:
        """Format for CLI output."""
        icons = {
            MessageLevel.INFO: "ℹ️ ",
            MessageLevel.WARN: "⚠️ ",
            MessageLevel.ERROR: "❌",
        }
        icon = icons.get(self.level, "")

        if verbose:
            lines = [f"{icon} [{self.code.value}] {self.title}"]
            if self.detail:
                lines.append(f"   {self.detail}")
            if self.remediation:
                lines.append(f"   → {self.remediation}")
            return "\n".join(lines)
        return f"{icon} {self.title}"


def classify_message(message: str) -> WarningCode:
    """Guess the warning code for a plain message."""
    msg = message.lower()
    if "wrong boot mode" in msg:
        return WarningCode.W_WRONG_BOOT_MODE
    if "failed to connect" in msg or "sync" in msg:
        return WarningCode.W_SYNC_FAILED
    if "chip type mismatch" in msg:
        return WarningCode.W_CHIP_MISMATCH
    if "magic value" in msg:
        return WarningCode.W_CHIP_UNKNOWN
    if "not supported by the rom" in msg:
        return WarningCode.W_ROM_ONLY
    if "stub" in msg:
        return WarningCode.W_STUB_FAILED
    if "doesn't fit" in msg:
        return WarningCode.W_IMAGE_TOO_LARGE
    if "md5" in msg or "digest" in msg:
        return WarningCode.W_VERIFY_MISMATCH
    if "doesn't look like an image" in msg:
        return WarningCode.W_HEADER_NOT_PATCHED
    if "skipping" in msg:
        return WarningCode.W_PARTITION_SKIPPED
    if "dry run" in msg:
        return WarningCode.W_DRY_RUN
    if "permission" in msg or "--write" in msg:
        return WarningCode.W_WRITE_DISABLED
    if "timed out" in msg or "timeout" in msg:
        return WarningCode.W_SERIAL_TIMEOUT
    if "port" in msg:
        return WarningCode.W_SERIAL_ERROR
    return WarningCode.W_UNKNOWN


def warnings_from_strings(
    warning_strings: List[str],
    default_level: MessageLevel = MessageLevel.WARN,
) -> List[WarningItem]:
    """Convert plain warning strings to WarningItem list."""
    return [
        WarningItem(level=default_level, code=classify_message(msg), title=msg)
        for msg in warning_strings
    ]


def result_to_warnings(result: OperationResult) -> List[WarningItem]:
    """
    Convert a result's warnings and errors to WarningItem list.

    Args:
        result: OperationResult from core operations
    """
    items = warnings_from_strings(result.warnings, MessageLevel.WARN)
    items.extend(warnings_from_strings(result.errors, MessageLevel.ERROR))
    return items
