"""
ESP Serial Flasher CLI

Command-line interface for detecting, flashing, reading and erasing
Espressif chips over the serial bootloader.
"""

import sys
import json
import logging
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn
from rich.markup import escape

from esp_serial_flasher.chips import list_chips as registry_list_chips, get_chip
from esp_serial_flasher.config import FlasherSettings, load_settings
from esp_serial_flasher.flasher import FlashFile, FlashJob, ResetMode
from esp_serial_flasher.package import build_flash_job, load_package, package_info as describe_package
from esp_serial_flasher.protocol import (
    PackageError,
    PySerialLink,
    list_serial_ports,
    validate_custom_reset_sequence,
)
from esp_serial_flasher.core.parsing import (
    parse_offset as _parse_offset_core,
    parse_address_file_pairs,
)
from esp_serial_flasher.core.safety import (
    SafetyContext,
    WritePermissionError,
    CONFIRMATION_TOKEN,
    create_cli_safety_context,
)
from esp_serial_flasher.core.results import OperationResult
from esp_serial_flasher.core.actions import (
    detect_device as core_detect_device,
    write_flash_files as core_write_flash_files,
    flash_package as core_flash_package,
    erase_flash as core_erase_flash,
    read_flash as core_read_flash,
    reset_device as core_reset_device,
)
from esp_serial_flasher.core.messages import (
    WarningItem,
    MessageLevel,
    result_to_warnings,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("esp_serial_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="🔧 ESP Serial Flasher - flash Espressif chips over the ROM bootloader")

# Common option help
PORT_HELP = "Serial port (e.g., /dev/ttyUSB0, COM3)"
BEFORE_HELP = "Reset before connecting: default_reset, usb_reset or no_reset"


@app.callback()
def main_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show protocol debug logging"),
) -> None:
    """Global options."""
    if verbose:
        logger.setLevel(logging.DEBUG)


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} \\[{warning.code.value}] {escape(warning.title)}", style=style)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if verbose and warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def print_result(result: OperationResult, verbose: bool = True) -> None:
    """Print a result summary, its warnings and errors; exit 1 on failure."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=verbose)

    if not result.ok:
        sys.exit(1)

    console.print(result.to_summary())


def parse_offset(value: Optional[str]) -> Optional[int]:
    """
    CLI wrapper around core.parsing.parse_offset that converts
    ValueError to typer.BadParameter for proper CLI error handling.
    """
    try:
        return _parse_offset_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_reset_mode(value: str) -> ResetMode:
    try:
        return ResetMode(value.replace("-", "_").lower())
    except ValueError:
        choices = ", ".join(m.value for m in ResetMode)
        raise typer.BadParameter(f"Unknown reset mode '{value}'. Choose one of: {choices}")


def get_settings(config: Optional[str]) -> FlasherSettings:
    """Load the settings file, if any, exiting on a bad file."""
    try:
        return load_settings(config)
    except (OSError, ValueError) as e:
        print_error(f"Cannot load settings: {e}")
        sys.exit(1)


def open_link(port: Optional[str]) -> PySerialLink:
    if not port:
        print_error("--port is required")
        sys.exit(1)
    return PySerialLink(port)


def build_safety_context(
    write: bool,
    confirm: Optional[str],
    chip: Optional[str],
    dry_run: bool,
) -> SafetyContext:
    """
    Safety context for a flash-modifying command.

    On a terminal without --confirm the user is shown the details and
    asked to type the confirmation token.
    """
    ctx = create_cli_safety_context(
        write_flag=write,
        chip=chip or "",
        simulate=dry_run,
        confirmation_token=confirm,
    )

    def show_details(details: dict) -> None:
        erase_line = "Erase:         whole chip\n" if details.get("erase_all") else ""
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  WRITE CONFIRMATION REQUIRED[/bold yellow]\n\n"
            f"Chip:          {details.get('chip', 'auto-detect')}\n"
            f"Target:        {details.get('target_region', 'Unknown')}\n"
            f"Bytes:         {details.get('bytes_length', 0):,}\n"
            f"{erase_line}"
            f"\n[bold]Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort:[/bold]",
            title="Flash Write Operation",
            expand=False,
        ))

    def prompt_confirmation(prompt_text: str) -> str:
        return typer.prompt("Confirm")

    if ctx.interactive:
        ctx.show_details = show_details
        ctx.prompt_confirmation = prompt_confirmation
    return ctx


class UploadReporter:
    """Rich progress bars fed by the programmer's progress callback."""

    def __init__(self, progress: Progress, files: List[FlashFile]):
        self.progress = progress
        self.files = files
        self.tasks: Dict[int, int] = {}

    def __call__(self, index: int, sent: int, total: int) -> None:
        if index not in self.tasks:
            f = self.files[index]
            name = f.name or f"0x{f.address:x}"
            description = f"{index + 1}/{len(self.files)} | {name} | {len(f.data):,} bytes"
            self.tasks[index] = self.progress.add_task(description, total=max(total, 1))
        self.progress.update(self.tasks[index], completed=sent)


def flash_progress() -> Progress:
    return Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    )


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    ports_list = list_serial_ports()
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Description", style="green")
    table.add_column("VID:PID", style="magenta")

    for port in ports_list:
        ids = f"{port.vid:04x}:{port.pid:04x}" if port.vid is not None and port.pid is not None else "-"
        table.add_row(port.device, port.description or "-", ids)

    console.print(table)


@app.command("list-chips")
def list_chips() -> None:
    """List supported chips and their bootloader details."""
    print_header("Supported Chips")

    table = Table(title="Chips")
    table.add_column("Chip", style="cyan")
    table.add_column("Magic", style="yellow")
    table.add_column("Bootloader", style="green")
    table.add_column("ROM Status", style="magenta")
    table.add_column("Stub", style="blue")

    for name in registry_list_chips():
        chip = get_chip(name)
        magics = ", ".join(f"0x{m:08x}" for m in chip.magic_values)
        table.add_row(
            chip.name,
            magics,
            f"0x{chip.bootloader_flash_offset:x}",
            f"{chip.rom_status_bytes_length} bytes",
            chip.stub_name,
        )

    console.print(table)


@app.command("chip-id")
def chip_id(
    port: str = typer.Option(..., "--port", "-p", help=PORT_HELP),
    before: str = typer.Option("default_reset", "--before", help=BEFORE_HELP),
    stub: bool = typer.Option(False, "--stub", help="Start the flasher stub first"),
    config: Optional[str] = typer.Option(None, "--config", help="Settings JSON file"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Connect to the bootloader and identify the chip."""
    if not output_json:
        print_header("Chip Identification")

    result = core_detect_device(
        open_link(port),
        settings=get_settings(config),
        reset_mode=parse_reset_mode(before),
        use_stub=stub,
    )

    if output_json:
        console.print_json(json.dumps(result.to_dict()))
        if not result.ok:
            sys.exit(1)
        return

    if not result.ok:
        print_result(result)

    table = Table(title=result.chip)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Chip", result.chip)
    table.add_row("MAC", result.metadata.get("mac") or "-")
    table.add_row("Flash ID", result.metadata.get("flash_id") or "-")
    table.add_row("Flash size", result.metadata.get("flash_size") or "unknown")
    table.add_row("Loader", result.metadata.get("mode", "-"))
    table.add_row("USB-OTG", "Yes" if result.metadata.get("usb_otg") else "No")
    console.print(table)

    for warning in result.warnings:
        print_warning(warning)


@app.command("write-flash")
def write_flash(
    pairs: List[str] = typer.Argument(..., help="ADDRESS FILE pairs, e.g. 0x1000 bootloader.bin"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help=PORT_HELP),
    baud: Optional[int] = typer.Option(None, "--baud", "-b", help="Baud rate for flashing (default: flash_baud setting)"),
    chip: Optional[str] = typer.Option(None, "--chip", help="Expected chip (refuse others)"),
    before: str = typer.Option("default_reset", "--before", help=BEFORE_HELP),
    no_stub: bool = typer.Option(False, "--no-stub", help="Talk to the ROM loader only"),
    config: Optional[str] = typer.Option(None, "--config", help="Settings JSON file"),
    flash_size: str = typer.Option("keep", "--flash-size", help="Flash size (e.g. 4MB, detect, keep)"),
    flash_mode: str = typer.Option("keep", "--flash-mode", help="Flash mode (qio, qout, dio, dout, keep)"),
    flash_freq: str = typer.Option("keep", "--flash-freq", help="Flash frequency (e.g. 40m, keep)"),
    erase_all: bool = typer.Option(False, "--erase-all", help="Erase the whole flash first (needs stub)"),
    no_compress: bool = typer.Option(False, "--no-compress", help="Send uncompressed data"),
    no_verify: bool = typer.Option(False, "--no-verify", help="Skip MD5 verification"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate only, no device I/O"),
    confirm: Optional[str] = typer.Option(
        None,
        "--confirm",
        help="Non-interactive confirmation token (must be 'WRITE' for write operations)",
    ),
    write: bool = typer.Option(False, "--write", help="Required flag to enable actual write to flash"),
) -> None:
    """Write binary images at the given flash addresses."""
    print_header("Write Flash")

    try:
        parsed = parse_address_file_pairs(pairs)
        files = [
            FlashFile(address=address, data=path.read_bytes(), name=path.name)
            for address, path in parsed
        ]
    except (ValueError, OSError) as e:
        print_error(str(e))
        sys.exit(1)

    job = FlashJob(
        files=files,
        flash_size=flash_size,
        flash_mode=flash_mode,
        flash_freq=flash_freq,
        erase_all=erase_all,
        compress=not no_compress,
        verify=not no_verify,
        expected_chip=chip,
    )
    ctx = build_safety_context(write, confirm, chip, dry_run)
    link = PySerialLink(port or "") if dry_run else open_link(port)

    try:
        with flash_progress() as progress:
            result = core_write_flash_files(
                link,
                job,
                ctx,
                settings=get_settings(config),
                reset_mode=parse_reset_mode(before),
                use_stub=not no_stub,
                baud=baud,
                progress_cb=UploadReporter(progress, files),
            )
    except WritePermissionError as e:
        print_error(str(e))
        sys.exit(1)

    print_result(result)
    print_success("Dry run complete: no data written" if dry_run else "Flash written")


@app.command("flash-package")
def flash_package(
    package: str = typer.Argument(..., help="Firmware package (.tar.gz or directory)"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help=PORT_HELP),
    baud: Optional[int] = typer.Option(None, "--baud", "-b", help="Override the package's flash baud"),
    before: str = typer.Option("default_reset", "--before", help=BEFORE_HELP),
    no_stub: bool = typer.Option(False, "--no-stub", help="Talk to the ROM loader only"),
    config: Optional[str] = typer.Option(None, "--config", help="Settings JSON file"),
    no_erase: bool = typer.Option(False, "--no-erase", help="Keep storage partitions"),
    flash_size: str = typer.Option("4MB", "--flash-size", help="Flash size (e.g. 4MB, detect, keep)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate only, no device I/O"),
    confirm: Optional[str] = typer.Option(
        None,
        "--confirm",
        help="Non-interactive confirmation token (must be 'WRITE' for write operations)",
    ),
    write: bool = typer.Option(False, "--write", help="Required flag to enable actual write to flash"),
) -> None:
    """Flash a firmware package described by its manifest.json."""
    print_header("Flash Package")

    try:
        pkg = load_package(package)
        console.print(describe_package(pkg))
        files = build_flash_job(pkg, no_erase=no_erase, flash_size=flash_size).files
    except PackageError as e:
        print_error(str(e))
        sys.exit(1)

    ctx = build_safety_context(write, confirm, pkg.chip, dry_run)
    link = PySerialLink(port or "") if dry_run else open_link(port)

    try:
        with flash_progress() as progress:
            result = core_flash_package(
                link,
                pkg,
                ctx,
                no_erase=no_erase,
                flash_size=flash_size,
                settings=get_settings(config),
                reset_mode=parse_reset_mode(before),
                use_stub=not no_stub,
                baud=baud,
                progress_cb=UploadReporter(progress, files),
            )
    except WritePermissionError as e:
        print_error(str(e))
        sys.exit(1)

    print_result(result)
    print_success("Dry run complete: no data written" if dry_run else "Package flashed")


@app.command("package-info")
def package_info(
    package: str = typer.Argument(..., help="Firmware package (.tar.gz or directory)"),
) -> None:
    """Show what a firmware package contains."""
    print_header("Package Info")
    try:
        console.print(describe_package(load_package(package)))
    except PackageError as e:
        print_error(str(e))
        sys.exit(1)


@app.command("erase-flash")
def erase_flash(
    port: Optional[str] = typer.Option(None, "--port", "-p", help=PORT_HELP),
    chip: Optional[str] = typer.Option(None, "--chip", help="Expected chip (refuse others)"),
    before: str = typer.Option("default_reset", "--before", help=BEFORE_HELP),
    config: Optional[str] = typer.Option(None, "--config", help="Settings JSON file"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate only, no device I/O"),
    confirm: Optional[str] = typer.Option(
        None,
        "--confirm",
        help="Non-interactive confirmation token (must be 'WRITE' for write operations)",
    ),
    write: bool = typer.Option(False, "--write", help="Required flag to enable the erase"),
) -> None:
    """Erase the entire flash chip (uses the flasher stub)."""
    print_header("Erase Flash")

    ctx = build_safety_context(write, confirm, chip, dry_run)
    link = PySerialLink(port or "") if dry_run else open_link(port)
    try:
        result = core_erase_flash(
            link,
            ctx,
            settings=get_settings(config),
            reset_mode=parse_reset_mode(before),
        )
    except WritePermissionError as e:
        print_error(str(e))
        sys.exit(1)

    print_result(result)
    print_success("Dry run complete: nothing erased" if dry_run else "Flash erased")


@app.command("read-flash")
def read_flash(
    address: str = typer.Argument(..., help="Start address: decimal, hex (0x1000) or suffix (1000h)"),
    size: str = typer.Argument(..., help="Number of bytes to read"),
    output: str = typer.Argument(..., help="Output file"),
    port: str = typer.Option(..., "--port", "-p", help=PORT_HELP),
    baud: Optional[int] = typer.Option(None, "--baud", "-b", help="Baud rate for reading (default: flash_baud setting)"),
    before: str = typer.Option("default_reset", "--before", help=BEFORE_HELP),
    config: Optional[str] = typer.Option(None, "--config", help="Settings JSON file"),
) -> None:
    """Read a flash region into a file (uses the flasher stub)."""
    print_header("Read Flash")

    offset = parse_offset(address)
    length = parse_offset(size)
    if offset is None or not length:
        raise typer.BadParameter("Address and a non-zero size are required")

    with flash_progress() as progress:
        task = progress.add_task("Reading flash...", total=length)
        result = core_read_flash(
            open_link(port),
            offset,
            length,
            output_path=output,
            settings=get_settings(config),
            reset_mode=parse_reset_mode(before),
            baud=baud,
            progress_cb=lambda done, total: progress.update(task, completed=done),
        )

    print_result(result)
    print_success(f"Saved to {output}")


@app.command()
def reset(
    port: str = typer.Option(..., "--port", "-p", help=PORT_HELP),
    sequence: Optional[str] = typer.Option(
        None, "--sequence", help="Custom reset sequence, e.g. D0|R1|W100|D1|R0|W50|D0"
    ),
    config: Optional[str] = typer.Option(None, "--config", help="Settings JSON file"),
) -> None:
    """Reset the chip into its application, or run a custom sequence."""
    print_header("Reset")

    if sequence and not validate_custom_reset_sequence(sequence):
        print_error(f"Invalid reset sequence: {sequence}")
        sys.exit(1)

    result = core_reset_device(open_link(port), sequence=sequence, settings=get_settings(config))
    print_result(result)


@app.command("validate-reset")
def validate_reset(
    sequence: str = typer.Argument(..., help="Reset sequence, e.g. D0|R1|W100|D1|R0|W50|D0"),
) -> None:
    """Check a custom reset sequence without touching a port."""
    if validate_custom_reset_sequence(sequence):
        print_success(f"Valid reset sequence: {sequence}")
        return
    print_error(f"Invalid reset sequence: {sequence}")
    console.print("Tokens are D0/D1 (DTR), R0/R1 (RTS) and W<ms> (wait), joined by '|'.")
    sys.exit(1)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
