"""
Raw SPI flash commands issued through the chip's SPI controller registers.

Works with both the ROM loader and the stub since it only needs
READ_REG / WRITE_REG.
"""

import logging
import struct
from typing import Optional

from ..protocol.errors import FlasherError
from .session import Session

logger = logging.getLogger(__name__)

SPI_USR_COMMAND = 1 << 31
SPI_USR_ADDR = 1 << 30
SPI_USR_DUMMY = 1 << 29
SPI_USR_MISO = 1 << 28
SPI_USR_MOSI = 1 << 27

SPI_CMD_USR = 1 << 18
SPI_USR2_COMMAND_LEN_SHIFT = 28
SPI_USR_ADDR_LEN_SHIFT = 26

# ESP8266 has no separate data length registers; lengths live in USR1
SPI_MOSI_BITLEN_S = 17
SPI_MISO_BITLEN_S = 8

SPIFLASH_RDID = 0x9F
SPI_CMD_POLL_ATTEMPTS = 10

# JEDEC capacity byte -> flash size label
DETECTED_FLASH_SIZES = {
    0x12: "256KB",
    0x13: "512KB",
    0x14: "1MB",
    0x15: "2MB",
    0x16: "4MB",
    0x17: "8MB",
    0x18: "16MB",
    0x19: "32MB",
    0x1A: "64MB",
    0x1B: "128MB",
    0x1C: "256MB",
    0x20: "64MB",
    0x21: "128MB",
    0x22: "256MB",
    0x32: "256KB",
    0x33: "512KB",
    0x34: "1MB",
    0x35: "2MB",
    0x36: "4MB",
    0x37: "8MB",
    0x38: "16MB",
    0x39: "32MB",
    0x3A: "64MB",
}


def _set_data_lengths(session: Session, mosi_bits: int, miso_bits: int,
                      addr_len: int, dummy_len: int) -> None:
    spi = session.chip.spi
    if spi.mosi_dlen_reg is not None:
        if mosi_bits > 0:
            session.write_reg(spi.mosi_dlen_reg, mosi_bits - 1)
        if miso_bits > 0:
            session.write_reg(spi.miso_dlen_reg, miso_bits - 1)
        flags = 0
        if dummy_len > 0:
            flags |= dummy_len - 1
        if addr_len > 0:
            flags |= (addr_len - 1) << SPI_USR_ADDR_LEN_SHIFT
        if flags:
            session.write_reg(spi.usr1_reg, flags)
    else:
        mosi_mask = 0 if mosi_bits == 0 else mosi_bits - 1
        miso_mask = 0 if miso_bits == 0 else miso_bits - 1
        flags = (miso_mask << SPI_MISO_BITLEN_S) | (mosi_mask << SPI_MOSI_BITLEN_S)
        if dummy_len > 0:
            flags |= dummy_len - 1
        if addr_len > 0:
            flags |= (addr_len - 1) << SPI_USR_ADDR_LEN_SHIFT
        session.write_reg(spi.usr1_reg, flags)


def run_spiflash_command(
    session: Session,
    spiflash_command: int,
    data: bytes = b"",
    read_bits: int = 0,
    addr: Optional[int] = None,
    addr_len: int = 0,
    dummy_len: int = 0,
) -> int:
    """
    Run an arbitrary SPI flash command.

    Args:
        session: Connected session with a detected chip
        spiflash_command: Command byte
        data: Up to 64 bytes to send after the command
        read_bits: Bits to read back (at most 32)
        addr: Address to send, if any
        addr_len: Address length in bits
        dummy_len: Dummy cycles

    Returns:
        Value of the first data register after the command completed
    """
    if session.chip is None:
        raise FlasherError("Chip not detected; connect first")
    if read_bits > 32:
        raise FlasherError(
            "Reading more than 32 bits back from a SPI flash operation is unsupported"
        )
    if len(data) > 64:
        raise FlasherError(
            "Writing more than 64 bytes of data with one SPI command is unsupported"
        )

    spi = session.chip.spi
    data_bits = len(data) * 8
    old_spi_usr = session.read_reg(spi.usr_reg)
    old_spi_usr2 = session.read_reg(spi.usr2_reg)

    flags = SPI_USR_COMMAND
    if read_bits > 0:
        flags |= SPI_USR_MISO
    if data_bits > 0:
        flags |= SPI_USR_MOSI
    if addr_len > 0:
        flags |= SPI_USR_ADDR
    if dummy_len > 0:
        flags |= SPI_USR_DUMMY

    _set_data_lengths(session, data_bits, read_bits, addr_len, dummy_len)
    session.write_reg(spi.usr_reg, flags)
    session.write_reg(spi.usr2_reg, (7 << SPI_USR2_COMMAND_LEN_SHIFT) | spiflash_command)
    if addr and addr_len > 0:
        session.write_reg(spi.base + 0x04, addr)

    if data_bits == 0:
        session.write_reg(spi.w0_reg, 0)  # clear data register before we read it
    else:
        if len(data) % 4:
            data += b"\x00" * (4 - len(data) % 4)
        next_reg = spi.w0_reg
        for word in struct.unpack(f"<{len(data) // 4}I", data):
            session.write_reg(next_reg, word)
            next_reg += 4

    session.write_reg(spi.cmd_reg, SPI_CMD_USR)
    for _ in range(SPI_CMD_POLL_ATTEMPTS):
        if session.read_reg(spi.cmd_reg) & SPI_CMD_USR == 0:
            break
    else:
        raise FlasherError("SPI command did not complete in time")

    status = session.read_reg(spi.w0_reg)
    # restore some SPI controller registers
    session.write_reg(spi.usr_reg, old_spi_usr)
    session.write_reg(spi.usr2_reg, old_spi_usr2)
    return status


def flash_id(session: Session) -> int:
    """JEDEC ID of the attached flash (manufacturer, type, capacity)."""
    return run_spiflash_command(session, SPIFLASH_RDID, b"", 24)


def detect_flash_size(session: Session) -> Optional[str]:
    """
    Flash size label from the JEDEC capacity byte.

    Returns:
        Label such as "4MB", or None if the capacity byte is not known
    """
    fid = flash_id(session)
    size_id = (fid >> 16) & 0xFF
    label = DETECTED_FLASH_SIZES.get(size_id)
    if label is None:
        logger.warning(
            f"Could not auto-detect flash size (flash ID 0x{fid:06x}, "
            f"capacity byte 0x{size_id:02x})"
        )
    return label
