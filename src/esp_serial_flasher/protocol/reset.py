"""
Reset sequences that force the target into (or out of) the bootloader.

Timing is empirically tuned per board family and is reproduced exactly.
Everything is built from two primitives, set_dtr and set_rts, plus
fixed sleeps.

Custom sequences are pipe-separated tokens:
    D<0|1>  set DTR
    R<0|1>  set RTS
    W<ms>   sleep for a positive number of milliseconds
"""

import logging
import time
from typing import Callable, List, Tuple

from .errors import InvalidResetSequenceError
from .serial_link import SerialLink

logger = logging.getLogger(__name__)

DEFAULT_RESET_DELAY = 0.05  # seconds
USB_JTAG_SERIAL_PID = 0x1001

# Extra time in reset needed by ESP32 revision 0 silicon
ESP32R0_EXTRA_DELAY_MS = 2000

_RESET_COMMANDS = ("D", "R", "W")


def classic_reset_sequence(
    reset_delay: float = DEFAULT_RESET_DELAY,
    esp32r0_delay: bool = False,
) -> str:
    """
    Custom-sequence form of the classic reset used by connect().

    Args:
        reset_delay: Seconds IO0 is held low after EN is released
        esp32r0_delay: Keep the chip in reset longer (ESP32 revision 0)
    """
    delay_ms = max(1, int(round(reset_delay * 1000)))
    extra = f"|W{ESP32R0_EXTRA_DELAY_MS}" if esp32r0_delay else ""
    return f"D0|R1|W100{extra}|D1|R0|W{delay_ms}|D0"


DEFAULT_RESET_SEQUENCE = classic_reset_sequence()
ESP32R0_RESET_SEQUENCE = classic_reset_sequence(esp32r0_delay=True)


def validate_custom_reset_sequence(sequence: str) -> bool:
    """
    Check a custom reset sequence without executing it.

    Returns:
        True if every token is D0/D1, R0/R1 or W<positive int>
    """
    for token in sequence.split("|"):
        code, arg = token[:1], token[1:]
        if code not in _RESET_COMMANDS:
            return False
        if code in ("D", "R"):
            if arg not in ("0", "1"):
                return False
        else:
            try:
                delay = int(arg)
            except ValueError:
                return False
            if delay <= 0:
                return False
    return True


def parse_custom_reset_sequence(sequence: str) -> List[Tuple[str, int]]:
    """
    Parse a custom reset sequence into (code, argument) steps.

    Raises:
        InvalidResetSequenceError: If the sequence does not validate
    """
    if not validate_custom_reset_sequence(sequence):
        raise InvalidResetSequenceError(
            f"Invalid custom reset sequence: {sequence!r}"
        )
    return [(token[0], int(token[1:])) for token in sequence.split("|")]


class ResetSequencer:
    """
    Drives DTR/RTS on a SerialLink to reset the chip.

    Example:
        sequencer = ResetSequencer(link)
        sequencer.classic_reset()
        sequencer.custom_reset("D0|R1|W100|D1|R0|W50|D0")
    """

    def __init__(self, link: SerialLink, sleep: Callable[[float], None] = time.sleep):
        self.link = link
        self.sleep = sleep

    def classic_reset(self, reset_delay: float = DEFAULT_RESET_DELAY) -> None:
        """Classic reset through a USB-to-serial bridge (EN on RTS, IO0 on DTR)."""
        logger.debug("Classic reset")
        self.link.set_dtr(False)  # IO0=HIGH
        self.link.set_rts(True)   # EN=LOW, chip in reset
        self.sleep(0.1)
        self.link.set_dtr(True)   # IO0=LOW
        self.link.set_rts(False)  # EN=HIGH, chip out of reset
        self.sleep(reset_delay)
        self.link.set_dtr(False)  # IO0=HIGH, done

    def usb_jtag_serial_reset(self) -> None:
        """Reset sequence for chips attached through the USB-JTAG-Serial peripheral."""
        logger.debug("USB-JTAG-Serial reset")
        self.link.set_rts(False)
        self.link.set_dtr(False)  # idle
        self.sleep(0.1)
        self.link.set_dtr(True)   # set IO0
        self.link.set_rts(False)
        self.sleep(0.1)
        self.link.set_rts(True)   # reset; goes through (1,1) instead of (0,0)
        self.link.set_dtr(False)
        self.link.set_rts(True)   # Windows only propagates DTR on an RTS change
        self.sleep(0.1)
        self.link.set_dtr(False)
        self.link.set_rts(False)  # chip out of reset

    def hard_reset(self, using_usb_otg: bool = False) -> None:
        """Reset the chip into the user application by pulsing RTS."""
        logger.info("Hard resetting via RTS pin...")
        self.link.set_rts(True)  # EN->LOW
        if using_usb_otg:
            self.sleep(0.2)
            self.link.set_rts(False)
            self.sleep(0.2)
        else:
            self.sleep(0.1)
            self.link.set_rts(False)

    def custom_reset(self, sequence: str) -> None:
        """
        Execute a custom reset sequence.

        The sequence is validated before any signal is touched.

        Raises:
            InvalidResetSequenceError: If the sequence is malformed or a
                signal change fails while executing it
        """
        steps = parse_custom_reset_sequence(sequence)
        logger.debug(f"Custom reset: {sequence}")
        try:
            for code, arg in steps:
                if code == "D":
                    self.link.set_dtr(arg == 1)
                elif code == "R":
                    self.link.set_rts(arg == 1)
                else:
                    self.sleep(arg / 1000)
        except Exception as e:
            raise InvalidResetSequenceError(
                f"Invalid custom reset sequence {sequence!r}: {e}"
            ) from e
