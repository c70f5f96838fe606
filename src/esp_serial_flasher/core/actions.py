"""
Core workflow actions.

Plain functions the CLI (or any other front end) calls. Each one opens
a session on the given SerialLink, does its work and returns an
OperationResult; flasher errors become failed results with the message
and captured log lines. All flash-modifying operations go through the
safety context first.
"""

import hashlib
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from ..chips.registry import check_chip
from ..config import DEFAULT_SETTINGS, FlasherSettings
from ..flasher.baud import change_baud
from ..flasher.programmer import FlashJob, FlashProgrammer, ProgressCallback, check_image_fit
from ..flasher.session import ResetMode, Session
from ..flasher.spi_flash import detect_flash_size, flash_id
from ..flasher.stub_loader import StubLoader
from ..package import Package, build_flash_job, load_package
from ..protocol.errors import FlasherError, StubNotFoundError
from ..protocol.reset import ResetSequencer
from ..protocol.serial_link import SerialLink
from .results import OperationResult
from .safety import SafetyContext, WriteRequest, require_write_permission

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "esp_serial_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _write_request(job: FlashJob) -> WriteRequest:
    return WriteRequest(
        regions=[(f.address, len(f.data)) for f in job.files],
        erase_all=job.erase_all,
    )


@contextmanager
def flasher_session(
    link: SerialLink,
    settings: FlasherSettings = DEFAULT_SETTINGS,
    reset_mode: ResetMode = ResetMode.DEFAULT_RESET,
    use_stub: bool = True,
    baud: Optional[int] = None,
    hard_reset_after: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[Session]:
    """
    Connected, ready session.

    Connects and detects the chip, starts the stub (unless disabled;
    without a stub image for the chip the ROM loader is used instead),
    switches baud rate and attaches SPI flash. On exit the chip is reset
    into the application (if requested) and the link is closed.
    """
    session = Session(link, settings, sleep=sleep)
    try:
        session.connect(reset_mode)
        if use_stub:
            try:
                StubLoader(session).run_stub()
            except StubNotFoundError as e:
                logger.warning(f"{e}. Continuing with the ROM loader")
        if baud and baud != settings.rom_baud:
            if session.chip.name == "ESP8266" and not session.is_stub:
                logger.warning(
                    "ESP8266 ROM does not support changing baud rate. "
                    f"Keeping {settings.rom_baud} bps"
                )
            else:
                change_baud(session, baud)
        if session.chip.name != "ESP8266":
            session.flash_spi_attach(0)
        session.mark_ready()
        yield session
    finally:
        try:
            if hard_reset_after and session.chip is not None:
                session.hard_reset()
        finally:
            session.disconnect()


def detect_device(
    link: SerialLink,
    settings: FlasherSettings = DEFAULT_SETTINGS,
    reset_mode: ResetMode = ResetMode.DEFAULT_RESET,
    use_stub: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> OperationResult:
    """
    Connect, identify the chip and report what is known about it.

    Returns:
        OperationResult with:
            - chip: detected chip name
            - metadata["mac"], ["flash_id"], ["flash_size"], ["mode"],
              ["usb_otg"], ["stub_already_running"]
    """
    with _capture_logs() as logs:
        try:
            with flasher_session(
                link, settings, reset_mode, use_stub=use_stub, sleep=sleep
            ) as session:
                result = OperationResult.success(
                    operation="chip_id", chip=session.chip.name
                )
                result.metadata["mac"] = session.read_mac()
                fid = flash_id(session)
                result.metadata["flash_id"] = f"0x{fid:06x}"
                result.metadata["flash_size"] = detect_flash_size(session)
                result.metadata["mode"] = session.mode.value
                if use_stub and not session.is_stub:
                    result.add_warning("Flasher stub not available, identified through the ROM loader")
                result.metadata["usb_otg"] = session.using_usb_otg
                result.metadata["stub_already_running"] = session.sync_stub_detected
                if result.metadata["flash_size"] is None:
                    result.add_warning("Flash size could not be detected")
        except FlasherError as e:
            logger.debug(f"chip_id failed: {e}")
            result = OperationResult.failure(operation="chip_id", error=str(e))
        result.logs = logs
        return result


def write_flash_files(
    link: SerialLink,
    job: FlashJob,
    safety_ctx: SafetyContext,
    settings: FlasherSettings = DEFAULT_SETTINGS,
    reset_mode: ResetMode = ResetMode.DEFAULT_RESET,
    use_stub: bool = True,
    baud: Optional[int] = None,
    progress_cb: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> OperationResult:
    """
    Write a FlashJob to the device.

    The safety context is enforced and the images are checked against the
    flash size before the port is touched. A chip mismatch is reported
    before anything is written.

    Returns:
        OperationResult with one ImageRecord per written image and the
        skipped package files

    Raises:
        WritePermissionError: If the safety check fails
    """
    request = _write_request(job)
    region = request.describe()
    total = request.bytes_length

    with _capture_logs() as logs:
        require_write_permission(safety_ctx, request)

        try:
            check_image_fit(job.files, job.flash_size)
        except FlasherError as e:
            result = OperationResult.failure(
                operation="write_flash", error=str(e), chip=safety_ctx.chip
            )
            result.logs = logs
            return result

        for name in job.skipped:
            logger.info(f"Skipping {name} (storage partition)")

        if safety_ctx.simulate:
            result = OperationResult.success(
                operation="write_flash",
                chip=job.expected_chip or safety_ctx.chip,
                region=region,
                bytes_len=total,
                skipped=list(job.skipped),
            )
            result.metadata["simulated"] = True
            result.add_warning("Dry run - no device I/O performed")
            result.logs = logs
            return result

        try:
            with flasher_session(
                link,
                settings,
                reset_mode,
                use_stub=use_stub,
                baud=baud or settings.flash_baud,
                sleep=sleep,
            ) as session:
                check_chip(job.expected_chip or safety_ctx.chip or None, session.chip)
                logger.info("Writing flash...")
                written = FlashProgrammer(session).write_flash(job, progress_cb)

            result = OperationResult.success(
                operation="write_flash",
                chip=session.chip.name,
                region=region,
                bytes_len=sum(w.size for w in written),
                skipped=list(job.skipped),
            )
            for w in written:
                result.add_image(w.address, w.size, w.md5, w.name, w.verified, w.seconds)
            if result.unverified_images:
                result.add_warning(
                    f"{len(result.unverified_images)} image(s) written without MD5 verification"
                )
            result.metadata["mode"] = session.mode.value
            if use_stub and not session.is_stub:
                result.add_warning("Flasher stub not available, wrote through the ROM loader")
        except FlasherError as e:
            logger.debug(f"write_flash failed: {e}")
            result = OperationResult.failure(
                operation="write_flash",
                error=str(e),
                chip=safety_ctx.chip,
                region=region,
            )
        result.logs = logs
        return result


def flash_package(
    link: SerialLink,
    package: Union[str, Path, Package],
    safety_ctx: SafetyContext,
    no_erase: bool = False,
    flash_size: str = "4MB",
    settings: FlasherSettings = DEFAULT_SETTINGS,
    reset_mode: ResetMode = ResetMode.DEFAULT_RESET,
    use_stub: bool = True,
    baud: Optional[int] = None,
    progress_cb: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> OperationResult:
    """
    Flash a firmware package.

    Uses the package's flashBaud unless `baud` is given, and refuses to
    write if the connected chip differs from the package's chip.
    """
    try:
        if not isinstance(package, Package):
            package = load_package(package)
        job = build_flash_job(package, no_erase=no_erase, flash_size=flash_size)
    except FlasherError as e:
        return OperationResult.failure(operation="flash_package", error=str(e))

    if not safety_ctx.chip and job.expected_chip:
        safety_ctx.chip = job.expected_chip

    result = write_flash_files(
        link,
        job,
        safety_ctx,
        settings=settings,
        reset_mode=reset_mode,
        use_stub=use_stub,
        baud=baud or package.flash_baud,
        progress_cb=progress_cb,
        sleep=sleep,
    )
    result.operation = "flash_package"
    result.metadata["board"] = package.manifest.board
    result.metadata["version"] = package.manifest.version
    return result


def erase_flash(
    link: SerialLink,
    safety_ctx: SafetyContext,
    settings: FlasherSettings = DEFAULT_SETTINGS,
    reset_mode: ResetMode = ResetMode.DEFAULT_RESET,
    use_stub: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> OperationResult:
    """Erase the whole flash chip (needs the stub)."""
    with _capture_logs() as logs:
        require_write_permission(safety_ctx, WriteRequest.chip_erase())

        if safety_ctx.simulate:
            result = OperationResult.success(operation="erase_flash", chip=safety_ctx.chip)
            result.metadata["simulated"] = True
            result.add_warning("Dry run - no device I/O performed")
            result.logs = logs
            return result

        try:
            with flasher_session(
                link, settings, reset_mode, use_stub=use_stub, sleep=sleep
            ) as session:
                check_chip(safety_ctx.chip or None, session.chip)
                FlashProgrammer(session).erase_flash()
            result = OperationResult.success(
                operation="erase_flash", chip=session.chip.name, region="entire flash"
            )
        except FlasherError as e:
            logger.debug(f"erase_flash failed: {e}")
            result = OperationResult.failure(operation="erase_flash", error=str(e))
        result.logs = logs
        return result


def read_flash(
    link: SerialLink,
    offset: int,
    length: int,
    output_path: Optional[Union[str, Path]] = None,
    settings: FlasherSettings = DEFAULT_SETTINGS,
    reset_mode: ResetMode = ResetMode.DEFAULT_RESET,
    baud: Optional[int] = None,
    progress_cb: Optional[Callable[[int, int], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> OperationResult:
    """
    Read a flash region (needs the stub).

    Returns:
        OperationResult with metadata["data"] holding the bytes and
        hashes["md5"]; the bytes are also written to output_path if given
    """
    region = f"0x{offset:x}-0x{offset + length:x}"
    with _capture_logs() as logs:
        try:
            with flasher_session(
                link,
                settings,
                reset_mode,
                use_stub=True,
                baud=baud or settings.flash_baud,
                sleep=sleep,
            ) as session:
                data = FlashProgrammer(session).read_flash(offset, length, progress_cb)
            if output_path is not None:
                Path(output_path).write_bytes(data)
                logger.info(f"Read {len(data)} bytes at 0x{offset:x} into {output_path}")
            result = OperationResult.success(
                operation="read_flash",
                chip=session.chip.name,
                region=region,
                bytes_len=len(data),
            )
            result.hashes["md5"] = hashlib.md5(data).hexdigest()
            result.metadata["data"] = data
        except (FlasherError, OSError) as e:
            logger.debug(f"read_flash failed: {e}")
            result = OperationResult.failure(operation="read_flash", error=str(e), region=region)
        result.logs = logs
        return result


def reset_device(
    link: SerialLink,
    sequence: Optional[str] = None,
    settings: FlasherSettings = DEFAULT_SETTINGS,
    sleep: Callable[[float], None] = time.sleep,
) -> OperationResult:
    """
    Reset the chip without talking to the bootloader.

    With a custom sequence the sequence runs as given; otherwise the chip
    is hard reset into its application.
    """
    with _capture_logs() as logs:
        try:
            link.connect(settings.rom_baud)
            try:
                sequencer = ResetSequencer(link, sleep=sleep)
                if sequence:
                    sequencer.custom_reset(sequence)
                else:
                    sequencer.hard_reset()
            finally:
                link.disconnect()
            result = OperationResult.success(operation="reset")
            result.metadata["sequence"] = sequence or "hard_reset"
        except FlasherError as e:
            result = OperationResult.failure(operation="reset", error=str(e))
        result.logs = logs
        return result
