"""
Write gating for operations that modify flash.

Nothing reaches the device until require_write_permission() accepts the
WriteRequest describing what is about to be written or erased. Front
ends share these rules; only the prompt and the details panel differ.
"""

import sys
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

# Token a non-interactive caller must pass to allow a write
CONFIRMATION_TOKEN = "WRITE"


@dataclass
class WriteRequest:
    """
    What a flash-modifying operation is about to do.

    Attributes:
        regions: (address, length) of every image to be written
        erase_all: The whole chip is erased (before writing, or on its own)
    """
    regions: List[Tuple[int, int]] = field(default_factory=list)
    erase_all: bool = False

    @classmethod
    def chip_erase(cls) -> "WriteRequest":
        return cls(erase_all=True)

    @property
    def bytes_length(self) -> int:
        return sum(length for _, length in self.regions)

    def describe(self) -> str:
        ranges = ", ".join(f"0x{addr:x}-0x{addr + length:x}" for addr, length in self.regions)
        if self.erase_all:
            return f"entire flash (erase), then {ranges}" if ranges else "entire flash"
        return ranges


class WritePermissionError(Exception):
    """
    A flash-modifying operation was refused.

    Attributes:
        reason: Why, and what to pass to allow it
        details: The request as shown to the user (chip, target_region, ...)
    """
    def __init__(self, reason: str, details: Optional[dict] = None):
        super().__init__(reason)
        self.reason = reason
        self.details = details or {}


@dataclass
class SafetyContext:
    """
    Who may write, and how the go-ahead is obtained.

    Attributes:
        write_enabled: --write was given
        confirmation_token: --confirm value; must equal CONFIRMATION_TOKEN
        interactive: A terminal is available for prompting
        chip: Expected chip name ("" lets the device decide)
        simulate: Dry run; validate the request, touch no hardware
        warnings: Notes shown along with the request details
        prompt_confirmation: Asks the user for the token (set by the CLI)
        show_details: Displays the request details before prompting
    """
    write_enabled: bool = False
    confirmation_token: Optional[str] = None
    interactive: bool = True
    chip: str = ""
    simulate: bool = False
    warnings: List[str] = field(default_factory=list)
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def describe_request(self, request: WriteRequest) -> dict:
        """Details of a request, as shown before confirming it."""
        details = {
            "chip": self.chip or "auto-detect",
            "target_region": request.describe(),
            "bytes_length": request.bytes_length,
        }
        if request.erase_all:
            details["erase_all"] = True
        if self.warnings:
            details["warnings"] = list(self.warnings)
        return details


def _token_matches(value: str) -> bool:
    return value.strip().upper() == CONFIRMATION_TOKEN


def _confirm_interactively(ctx: SafetyContext, details: dict) -> None:
    if not ctx.prompt_confirmation:
        raise WritePermissionError(
            "Interactive confirmation required but no prompt handler set. "
            "Provide confirmation_token for non-interactive mode.",
            details=details,
        )
    if ctx.show_details:
        ctx.show_details(details)
    answer = ctx.prompt_confirmation(
        f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
    )
    if not _token_matches(answer):
        raise WritePermissionError("Confirmation failed. Write aborted by user.", details=details)


def require_write_permission(ctx: SafetyContext, request: Optional[WriteRequest] = None) -> None:
    """
    Allow or refuse a flash-modifying request.

    A dry run is always allowed. Otherwise --write must be set, and the
    go-ahead comes from the confirmation token when one was given, or
    from an interactive prompt on a terminal.

    Raises:
        WritePermissionError: If the request is refused
    """
    if ctx.simulate:
        return

    details = ctx.describe_request(request or WriteRequest())

    if not ctx.write_enabled:
        raise WritePermissionError(
            "Flash write requires explicit permission. Use the --write flag.",
            details=details,
        )

    if ctx.confirmation_token is not None:
        if not _token_matches(ctx.confirmation_token):
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        return

    if not ctx.interactive:
        raise WritePermissionError(
            "Non-interactive mode requires --confirm WRITE.", details=details
        )
    _confirm_interactively(ctx, details)


def create_cli_safety_context(
    write_flag: bool,
    chip: str = "",
    simulate: bool = False,
    confirmation_token: Optional[str] = None,
) -> SafetyContext:
    """SafetyContext for the CLI; prompting only on a TTY without --confirm."""
    return SafetyContext(
        write_enabled=write_flag,
        confirmation_token=confirmation_token,
        interactive=sys.stdin.isatty() and confirmation_token is None,
        chip=chip,
        simulate=simulate,
    )
