"""Serial protocol layer - framing, transport, reset and command channel."""

from .errors import (
    FlasherError,
    TransportError,
    FramingError,
    CommandTimeoutError,
    UnsupportedCommandError,
    InvalidResponseError,
    CommandFailedError,
    SyncFailedError,
    UnknownChipError,
    ChipMismatchError,
    StubStartError,
    StubNotFoundError,
    Md5MismatchError,
    ReadbackMismatchError,
    InvalidResetSequenceError,
    FlashFitError,
    FlashParameterError,
    NotSupportedInRomError,
    PackageError,
)
from .serial_link import SerialLink, PySerialLink, SerialPortInfo, list_serial_ports
from .reset import (
    ResetSequencer,
    validate_custom_reset_sequence,
    DEFAULT_RESET_SEQUENCE,
    ESP32R0_RESET_SEQUENCE,
    USB_JTAG_SERIAL_PID,
)
from .command import CommandChannel, checksum, timeout_per_mb
from .compression import compress, StreamingInflater

__all__ = [
    # Errors
    "FlasherError",
    "TransportError",
    "FramingError",
    "CommandTimeoutError",
    "UnsupportedCommandError",
    "InvalidResponseError",
    "CommandFailedError",
    "SyncFailedError",
    "UnknownChipError",
    "ChipMismatchError",
    "StubStartError",
    "StubNotFoundError",
    "Md5MismatchError",
    "ReadbackMismatchError",
    "InvalidResetSequenceError",
    "FlashFitError",
    "FlashParameterError",
    "NotSupportedInRomError",
    "PackageError",
    # Transport
    "SerialLink",
    "PySerialLink",
    "SerialPortInfo",
    "list_serial_ports",
    # Reset
    "ResetSequencer",
    "validate_custom_reset_sequence",
    "DEFAULT_RESET_SEQUENCE",
    "ESP32R0_RESET_SEQUENCE",
    "USB_JTAG_SERIAL_PID",
    # Command channel
    "CommandChannel",
    "checksum",
    "timeout_per_mb",
    # Compression
    "compress",
    "StreamingInflater",
]
