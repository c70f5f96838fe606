"""
Error taxonomy for the flashing engine.

Every failure raised by the protocol, chip registry and flasher layers
derives from FlasherError so front ends can catch the whole family and
display the message directly.
"""

from typing import Optional


class FlasherError(Exception):
    """Base exception for all flasher errors"""
    pass


class TransportError(FlasherError):
    """Serial port could not be opened, written or read"""
    pass


class FramingError(FlasherError):
    """Malformed SLIP data on the wire"""
    pass


class CommandTimeoutError(FlasherError, TimeoutError):
    """No qualifying response arrived within the timeout budget"""
    pass


class UnsupportedCommandError(FlasherError):
    """Bootloader explicitly rejected an opcode"""

    def __init__(self, op: Optional[int]):
        self.op = op
        if op is None:
            super().__init__("Bootloader rejected the request as an invalid message")
        else:
            super().__init__(
                f"Unsupported command 0x{op:02X}: the bootloader rejected it "
                "as an invalid message"
            )


class InvalidResponseError(FlasherError):
    """Read budget exhausted without a response matching the request"""
    pass


class CommandFailedError(FlasherError):
    """
    Response carried a non-zero status.

    Attributes:
        description: What the command was trying to do
        status: Raw status bytes from the tail of the response
    """

    def __init__(self, description: str, status: bytes):
        self.description = description
        self.status = bytes(status)
        reason = self.status[1] if len(self.status) > 1 else 0
        super().__init__(
            f"Failed to {description} (result was {self.status.hex()}, "
            f"reason 0x{reason:02X})"
        )


class SyncFailedError(FlasherError):
    """All reset/sync attempts were exhausted"""
    pass


class UnknownChipError(FlasherError):
    """Chip magic value is not in the registry"""

    def __init__(self, magic: int):
        self.magic = magic
        super().__init__(
            f"Unexpected chip magic value 0x{magic:08x}. "
            "Failed to autodetect chip type."
        )


class ChipMismatchError(FlasherError):
    """Detected chip differs from the one the caller expected"""

    def __init__(self, expected: str, detected: str):
        self.expected = expected
        self.detected = detected
        super().__init__(
            f"Chip type mismatch (expected {expected}, got {detected})"
        )


class StubStartError(FlasherError):
    """Flasher stub could not be uploaded or did not announce itself"""
    pass


class StubNotFoundError(StubStartError):
    """No stub image exists for the chip in any searched directory"""
    pass


class Md5MismatchError(FlasherError):
    """Flash digest reported by the device differs from the source data"""

    def __init__(self, address: int, expected: bytes, actual: bytes):
        self.address = address
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"MD5 of file does not match data in flash at 0x{address:08x} "
            f"(file {expected.hex()}, flash {actual.hex()})"
        )


class ReadbackMismatchError(Md5MismatchError):
    """Data read back from flash fails the digest the device sent with it"""

    def __init__(self, address: int, device_digest: bytes, received_digest: bytes):
        self.address = address
        self.expected = device_digest
        self.actual = received_digest
        FlasherError.__init__(
            self,
            f"Data read from flash at 0x{address:08x} is corrupt "
            f"(device digest {device_digest.hex()}, received {received_digest.hex()})",
        )


class InvalidResetSequenceError(FlasherError):
    """Custom reset sequence is malformed or failed to execute"""
    pass


class FlashFitError(FlasherError):
    """Image does not fit in the requested flash size"""
    pass


class FlashParameterError(FlasherError):
    """Flash size, mode or frequency label unknown for the chip"""
    pass


class NotSupportedInRomError(FlasherError):
    """Command is only implemented by the flasher stub"""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            f"{operation} is not supported by the ROM bootloader, "
            "it requires the flasher stub"
        )


class PackageError(FlasherError):
    """Firmware package or manifest is malformed"""
    pass
