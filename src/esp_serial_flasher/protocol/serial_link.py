"""
Serial link layer.

Defines the byte-transparent channel the flashing engine consumes and a
pyserial-backed implementation of it.

This module provides:
- SerialLink: the interface (connect/disconnect, raw read/write, DTR/RTS)
- PySerialLink: SerialLink over a local serial port
- list_serial_ports: enumerate ports with their USB identifiers
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

try:
    import serial
    import serial.tools.list_ports as list_ports
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

from .errors import CommandTimeoutError, TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SerialPortInfo:
    """A serial port as reported by the operating system."""
    device: str
    description: str = ""
    vid: Optional[int] = None
    pid: Optional[int] = None


def list_serial_ports() -> List[SerialPortInfo]:
    """Return available serial ports."""
    return [
        SerialPortInfo(
            device=port.device,
            description=port.description or "",
            vid=port.vid,
            pid=port.pid,
        )
        for port in list_ports.comports()
    ]


class SerialLink:
    """
    Byte-oriented duplex channel to the target.

    Exactly one read and one write may be outstanding at a time. The
    engine performs SLIP framing on top; implementations must not alter
    the bytes.
    """

    @property
    def baudrate(self) -> int:
        raise NotImplementedError

    def connect(self, baudrate: int) -> None:
        raise NotImplementedError

    def disconnect(self) -> None:
        raise NotImplementedError

    def write(self, data: bytes) -> None:
        raise NotImplementedError

    def read(self, timeout: float) -> bytes:
        """
        Return at least one byte, waiting up to timeout seconds.

        Raises:
            CommandTimeoutError: If nothing arrived in time
        """
        raise NotImplementedError

    def set_dtr(self, state: bool) -> None:
        raise NotImplementedError

    def set_rts(self, state: bool) -> None:
        raise NotImplementedError

    def get_product_id(self) -> Optional[int]:
        """USB product ID of the attached bridge, if known."""
        return None

    def flush_input(self) -> None:
        """Discard anything buffered on the receive side."""
        pass


class PySerialLink(SerialLink):
    """
    SerialLink over a pyserial port.

    Example:
        link = PySerialLink("/dev/ttyUSB0")
        link.connect(115200)
        link.write(b"...")
        data = link.read(timeout=1.0)
        link.disconnect()
    """

    def __init__(self, port: str, write_timeout: float = 10.0):
        """
        Initialize link.

        Args:
            port: Serial port (e.g., "/dev/ttyUSB0", "COM3")
            write_timeout: Write timeout in seconds (default 10)
        """
        self.port = port
        self.write_timeout = write_timeout
        self.ser: Optional[serial.Serial] = None
        self._pid: Optional[int] = None
        self._pid_looked_up = False

    @property
    def baudrate(self) -> int:
        return self.ser.baudrate if self.ser else 0

    @property
    def is_open(self) -> bool:
        return bool(self.ser and self.ser.is_open)

    def connect(self, baudrate: int) -> None:
        """
        Open the serial port at the given baud rate.

        Raises:
            TransportError: If port cannot be opened
        """
        try:
            self.ser = serial.Serial(
                port=self.port,
                baudrate=baudrate,
                bytesize=8,
                parity='N',
                stopbits=1,
                timeout=0.1,
                write_timeout=self.write_timeout,
            )
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()
            logger.debug(f"Opened {self.port} at {baudrate} bps")
        except serial.SerialException as e:
            raise TransportError(f"Cannot open port {self.port}: {e}")

    def disconnect(self) -> None:
        """Close serial port."""
        if self.ser and self.ser.is_open:
            self.ser.close()
            logger.debug(f"Closed {self.port}")

    def _require_open(self) -> serial.Serial:
        if not self.ser or not self.ser.is_open:
            raise TransportError("Serial port not open")
        return self.ser

    def write(self, data: bytes) -> None:
        ser = self._require_open()
        try:
            written = ser.write(data)
            if written != len(data):
                raise TransportError(
                    f"Incomplete write: sent {written}/{len(data)} bytes"
                )
            ser.flush()
        except serial.SerialException as e:
            raise TransportError(f"Write error: {e}")

    def read(self, timeout: float) -> bytes:
        ser = self._require_open()
        try:
            ser.timeout = timeout
            waiting = ser.in_waiting
            data = ser.read(waiting if waiting else 1)
        except serial.SerialException as e:
            raise TransportError(f"Read error: {e}")
        if not data:
            raise CommandTimeoutError(
                f"No serial data received within {timeout:.3f}s"
            )
        return data

    def set_dtr(self, state: bool) -> None:
        self._require_open().dtr = state

    def set_rts(self, state: bool) -> None:
        ser = self._require_open()
        ser.rts = state
        # usbser.sys on Windows only propagates RTS on a DTR write
        ser.dtr = ser.dtr

    def get_product_id(self) -> Optional[int]:
        if self._pid_looked_up:
            return self._pid
        self._pid_looked_up = True
        for info in list_serial_ports():
            if info.device == self.port:
                self._pid = info.pid
                break
        else:
            logger.debug(
                f"Failed to get PID of a device on {self.port}, "
                "using standard reset sequence"
            )
        return self._pid

    def flush_input(self) -> None:
        if self.ser and self.ser.is_open:
            self.ser.reset_input_buffer()
