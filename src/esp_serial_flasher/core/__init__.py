"""
Core module for ESP Serial Flasher.

This module provides the single source of truth for:
- Write gating / confirmation (safety.py)
- Offset and address/file parsing (parsing.py)
- Operation results and per-image records (results.py)
- Connect/flash/read/erase workflows (actions.py)
- Standardized warnings/messages (messages.py)

Front ends should call into this module rather than driving the
session and programmer themselves.
"""

from .safety import (
    SafetyContext,
    WriteRequest,
    require_write_permission,
    WritePermissionError,
    CONFIRMATION_TOKEN,
    create_cli_safety_context,
)
from .parsing import parse_offset, parse_address_file_pairs
from .results import ImageRecord, OperationResult
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    classify_message,
    warnings_from_strings,
    result_to_warnings,
)
from .actions import (
    flasher_session,
    detect_device,
    write_flash_files,
    flash_package,
    erase_flash,
    read_flash,
    reset_device,
)

__all__ = [
    # Safety
    "SafetyContext",
    "WriteRequest",
    "require_write_permission",
    "WritePermissionError",
    "CONFIRMATION_TOKEN",
    "create_cli_safety_context",
    # Parsing
    "parse_offset",
    "parse_address_file_pairs",
    # Results
    "ImageRecord",
    "OperationResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "classify_message",
    "warnings_from_strings",
    "result_to_warnings",
    # Actions
    "flasher_session",
    "detect_device",
    "write_flash_files",
    "flash_package",
    "erase_flash",
    "read_flash",
    "reset_device",
]
