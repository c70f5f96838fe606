"""
SLIP framing used by the ESP serial bootloader.

Frame format:
    0xC0 | payload (escaped) | 0xC0

Inside the payload 0xC0 is sent as 0xDB 0xDC and 0xDB as 0xDB 0xDD.
Both helpers are pure functions; the caller owns any leftover bytes
between reads.
"""

from typing import Optional, Tuple

from .errors import FramingError

SLIP_END = 0xC0
SLIP_ESC = 0xDB
SLIP_ESC_END = 0xDC
SLIP_ESC_ESC = 0xDD


def encode(payload: bytes) -> bytes:
    """
    Wrap a payload in a SLIP frame.

    Args:
        payload: Raw packet bytes

    Returns:
        Framed bytes, delimited by 0xC0 on both ends
    """
    frame = bytearray([SLIP_END])
    for byte in payload:
        if byte == SLIP_END:
            frame.extend((SLIP_ESC, SLIP_ESC_END))
        elif byte == SLIP_ESC:
            frame.extend((SLIP_ESC, SLIP_ESC_ESC))
        else:
            frame.append(byte)
    frame.append(SLIP_END)
    return bytes(frame)


def unescape(body: bytes) -> bytes:
    """Reverse the SLIP escaping of a frame body (delimiters excluded)."""
    out = bytearray()
    in_escape = False
    for byte in body:
        if in_escape:
            in_escape = False
            if byte == SLIP_ESC_END:
                out.append(SLIP_END)
            elif byte == SLIP_ESC_ESC:
                out.append(SLIP_ESC)
            else:
                raise FramingError(f"Invalid SLIP escape (0xdb, 0x{byte:02x})")
        elif byte == SLIP_ESC:
            in_escape = True
        else:
            out.append(byte)
    if in_escape:
        raise FramingError("SLIP frame ends inside an escape sequence")
    return bytes(out)


def decode(stream: bytes) -> Tuple[Optional[bytes], bytes]:
    """
    Extract the first complete frame from a byte stream.

    Bytes before the opening delimiter are discarded (boot log noise).
    The closing delimiter is consumed with the frame, so the next frame
    needs its own opening delimiter; 0xC0 0xC0 is an empty frame.

    Args:
        stream: Accumulated bytes received so far

    Returns:
        Tuple of (frame, remainder). frame is None when no complete
        frame is present; remainder must be prefixed to the next read.
    """
    start = stream.find(SLIP_END)
    if start == -1:
        return None, stream
    end = stream.find(SLIP_END, start + 1)
    if end == -1:
        return None, stream
    return unescape(stream[start + 1:end]), stream[end + 1:]
