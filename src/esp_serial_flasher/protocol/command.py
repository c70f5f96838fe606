"""
Command/response channel for the ESP serial bootloader.

Packet format (carried inside one SLIP frame):

    REQUEST:  [0x00 | opcode | size (u16 LE) | checksum (u32 LE) | payload]
    RESPONSE: [0x01 | opcode | size (u16 LE) | value (u32 LE)    | payload]

The channel keeps exactly one request outstanding. The "value" field of a
response is overloaded: register reads return the register contents in
it, bulk commands (MD5, security info) return their result in the payload
instead.
"""

import logging
import struct
import time
from typing import Optional, Tuple, Union

from . import slip
from .errors import (
    CommandFailedError,
    CommandTimeoutError,
    InvalidResponseError,
    UnsupportedCommandError,
)
from .serial_link import SerialLink

logger = logging.getLogger(__name__)

# Opcodes supported by the ROM loader and the stub
ESP_FLASH_BEGIN = 0x02
ESP_FLASH_DATA = 0x03
ESP_FLASH_END = 0x04
ESP_MEM_BEGIN = 0x05
ESP_MEM_END = 0x06
ESP_MEM_DATA = 0x07
ESP_SYNC = 0x08
ESP_WRITE_REG = 0x09
ESP_READ_REG = 0x0A
ESP_SPI_ATTACH = 0x0D
ESP_CHANGE_BAUDRATE = 0x0F
ESP_FLASH_DEFL_BEGIN = 0x10
ESP_FLASH_DEFL_DATA = 0x11
ESP_FLASH_DEFL_END = 0x12
ESP_SPI_FLASH_MD5 = 0x13

# Stub-only opcodes
ESP_ERASE_FLASH = 0xD0
ESP_READ_FLASH = 0xD2
ESP_RUN_USER_CODE = 0xD3

DIRECTION_REQUEST = 0x00
DIRECTION_RESPONSE = 0x01

# Status byte the ROM answers with when it could not parse a request
ROM_INVALID_RECV_MSG = 0x05

ESP_CHECKSUM_MAGIC = 0xEF
HEADER = struct.Struct("<BBHI")
SYNC_PAYLOAD = b"\x07\x07\x12\x20" + 32 * b"\x55"
READ_PACKET_ATTEMPTS = 100

DEFAULT_TIMEOUT = 3.0
SYNC_TIMEOUT = 0.1


def checksum(data: bytes, state: int = ESP_CHECKSUM_MAGIC) -> int:
    """
    Calculate the data checksum used by MEM_DATA and FLASH_DATA.

    XOR fold of every payload byte, seeded with 0xEF.
    """
    for byte in data:
        state ^= byte
    return state


def timeout_per_mb(seconds_per_mb: float, size_bytes: int, floor: float = DEFAULT_TIMEOUT) -> float:
    """Scale a timeout by data size, never going below the floor."""
    result = seconds_per_mb * (size_bytes / 1e6)
    if result < floor:
        return floor
    return result


def build_request(op: int, data: bytes = b"", chk: int = 0) -> bytes:
    """Build an unframed request packet."""
    return HEADER.pack(DIRECTION_REQUEST, op, len(data), chk) + data


def _hex_preview(data: bytes, limit: int = 32) -> str:
    return data[:limit].hex() + ("..." if len(data) > limit else "")


class CommandChannel:
    """
    Request/response discipline over a SerialLink.

    Holds the leftover bytes between reads so partial frames survive
    across calls.

    Attributes:
        status_bytes_length: Trailing status bytes in a response
            (4 for ESP32-family ROM loaders, 2 for the ESP8266 ROM and
            for the stub)
        max_timeout: Upper clamp applied to every command timeout
    """

    def __init__(
        self,
        link: SerialLink,
        status_bytes_length: int = 4,
        max_timeout: float = 240.0,
    ):
        self.link = link
        self.status_bytes_length = status_bytes_length
        self.max_timeout = max_timeout
        self._buffer = b""

    def write_frame(self, packet: bytes) -> None:
        """SLIP-encode a packet and send it."""
        logger.debug(f">>> {_hex_preview(packet)}")
        self.link.write(slip.encode(packet))

    def read_frame(self, timeout: float) -> bytes:
        """
        Read one complete SLIP frame.

        Raises:
            CommandTimeoutError: If no complete frame arrives in time
        """
        deadline = time.monotonic() + timeout
        while True:
            frame, self._buffer = slip.decode(self._buffer)
            if frame is not None:
                logger.debug(f"<<< {_hex_preview(frame)}")
                return frame
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if self._buffer:
                    raise CommandTimeoutError(
                        f"Packet content transfer stopped "
                        f"(received {len(self._buffer)} bytes)"
                    )
                raise CommandTimeoutError("Timed out waiting for packet header")
            self._buffer += self.link.read(remaining)

    def flush_input(self) -> None:
        """Drop buffered and pending input."""
        self._buffer = b""
        self.link.flush_input()

    def command(
        self,
        op: Optional[int] = None,
        data: bytes = b"",
        chk: int = 0,
        wait_response: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> Tuple[int, bytes]:
        """
        Send a request and read the response.

        Args:
            op: Opcode, or None to only await a response
            data: Request payload
            chk: Checksum (data commands) or value field
            wait_response: If False, return (0, b"") right after writing
            timeout: Per-read timeout in seconds

        Returns:
            Tuple of (value, payload)
        """
        timeout = min(timeout, self.max_timeout)
        if op is not None:
            logger.debug(
                f"command op=0x{op:02x} data len={len(data)} "
                f"wait_response={int(wait_response)} timeout={timeout:.3f}"
            )
            self.write_frame(build_request(op, data, chk))

        if not wait_response:
            return 0, b""

        return self.read_packet(op, timeout)

    def read_packet(self, op: Optional[int] = None, timeout: float = DEFAULT_TIMEOUT) -> Tuple[int, bytes]:
        """
        Read responses until one matches the expected opcode.

        Unsolicited or mismatched responses are ignored, up to the
        iteration bound.

        Raises:
            UnsupportedCommandError: If the loader flagged the request as invalid
            InvalidResponseError: If no matching response was seen
        """
        for _ in range(READ_PACKET_ATTEMPTS):
            packet = self.read_frame(timeout)
            if len(packet) < HEADER.size:
                continue
            direction, op_ret, _size, value = HEADER.unpack(packet[:HEADER.size])
            if direction != DIRECTION_RESPONSE:
                continue
            data = packet[HEADER.size:]

            if op is None or op_ret == op:
                return value, data
            if len(data) >= 2 and data[0] != 0 and data[1] == ROM_INVALID_RECV_MSG:
                # an unsupported command can produce more than one error response
                self.flush_input()
                raise UnsupportedCommandError(op)

        raise InvalidResponseError("Response doesn't match request")

    def check_command(
        self,
        description: str,
        op: Optional[int] = None,
        data: bytes = b"",
        chk: int = 0,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> Union[int, bytes]:
        """
        Execute a command and check its status bytes.

        Returns:
            The raw payload if it is longer than 4 bytes (bulk results),
            otherwise the 32-bit value field (register-style results)

        Raises:
            CommandFailedError: If the first status byte is non-zero
        """
        value, payload = self.command(op, data, chk, timeout=timeout)

        if len(payload) >= self.status_bytes_length:
            status = payload[-self.status_bytes_length:]
            if status[0] != 0:
                raise CommandFailedError(description, status)

        if len(payload) > 4:
            return payload
        return value

    def sync(self, timeout: float = SYNC_TIMEOUT) -> Tuple[int, bytes]:
        """
        Send the SYNC command.

        A value of zero in the reply means the flasher stub is already
        running; the ROM loader answers with a non-zero value.
        """
        return self.command(ESP_SYNC, SYNC_PAYLOAD, timeout=timeout)
