"""Switch the bootloader and the local port to a faster baud rate."""

import logging
import struct

from ..protocol.command import ESP_CHANGE_BAUDRATE
from ..protocol.errors import FlasherError, TransportError
from .session import Session

logger = logging.getLogger(__name__)

BAUD_CHANGE_SETTLE = 0.05
RESYNC_SPACING = 0.01


def change_baud(session: Session, baud: int) -> bool:
    """
    Change the baud rate on both ends and resync.

    The stub needs the current rate to reprogram its UART divider; the
    ROM ignores the second word. If resync fails the failure is only
    logged: the next command fails visibly if the link is really broken.

    Returns:
        True if a sync succeeded at the new rate
    """
    logger.info(f"Changing baud rate to {baud}")
    old_baud = session.link.baudrate if session.is_stub else 0
    session.channel.command(
        ESP_CHANGE_BAUDRATE,
        struct.pack("<II", baud, old_baud),
        timeout=session.settings.default_timeout,
    )
    logger.info("Changed.")

    session.link.disconnect()
    session.sleep(BAUD_CHANGE_SETTLE)
    session.link.connect(baud)
    session.channel.flush_input()

    for attempt in range(session.settings.baud_resync_tries):
        try:
            session.sync()
            return True
        except TransportError:
            raise
        except FlasherError as e:
            logger.debug(f"Resync attempt {attempt + 1} failed: {e}")
        session.sleep(RESYNC_SPACING)

    logger.warning(
        f"No sync reply after changing baud rate to {baud}; continuing anyway"
    )
    return False
