"""
Outcome of a flasher operation.

Every core action returns an OperationResult: the chip that answered,
the flash bytes touched, one ImageRecord per written image, the
partitions a package flash left alone, plus warnings, errors and the
log lines captured while the operation ran. read_flash keeps the digest
of its dump in `hashes["md5"]`.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List


@dataclass
class ImageRecord:
    """One image as it ended up in flash."""
    address: int
    size: int
    md5: str
    name: str = ""
    verified: bool = False
    seconds: float = 0.0

    @property
    def hash_key(self) -> str:
        return f"md5@0x{self.address:x}"

    def describe(self) -> str:
        state = "verified" if self.verified else "not verified"
        return (
            f"0x{self.address:08x} {self.name or 'image'}: {self.size:,} bytes, "
            f"md5 {self.md5} ({state})"
        )


@dataclass
class OperationResult:
    """
    Result of a core operation.

    Attributes:
        ok: Whether the operation completed
        operation: "write_flash", "flash_package", "chip_id", ...
        chip: Chip that answered (or the expected one when none did)
        region: Flash range(s) touched, "entire flash" for a chip erase
        bytes_len: Payload bytes written or read
        images: Written images, in write order
        skipped: Package files left out of the write (storage partitions)
        hashes: Digests keyed by label; "md5@0x<addr>" per image
        warnings: Non-fatal problems
        errors: What made the operation fail
        metadata: Operation-specific values (mac, flash_id, mode, ...)
        logs: Log lines captured during the operation
    """
    ok: bool
    operation: str
    chip: str = ""
    region: str = ""
    bytes_len: int = 0
    images: List[ImageRecord] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    hashes: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, operation: str, **fields) -> "OperationResult":
        return cls(ok=True, operation=operation, **fields)

    @classmethod
    def failure(cls, operation: str, error: str, **fields) -> "OperationResult":
        return cls(ok=False, operation=operation, errors=[error], **fields)

    def add_image(
        self,
        address: int,
        size: int,
        md5: str,
        name: str = "",
        verified: bool = False,
        seconds: float = 0.0,
    ) -> ImageRecord:
        """Record a written image; its digest is also listed in `hashes`."""
        image = ImageRecord(address, size, md5, name, verified, seconds)
        self.images.append(image)
        self.hashes[image.hash_key] = md5
        return image

    def add_warning(self, message: str) -> None:
        if message not in self.warnings:
            self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Record an error; the result is failed from now on."""
        self.errors.append(message)
        self.ok = False

    @property
    def unverified_images(self) -> List[ImageRecord]:
        return [image for image in self.images if not image.verified]

    def to_summary(self) -> str:
        """Plain-text report, one fact per line."""
        mode = self.metadata.get("mode")
        header = f"[{'SUCCESS' if self.ok else 'FAILED'}] {self.operation}"
        lines = [f"{header} ({mode} loader)" if mode else header]

        if self.chip:
            lines.append(f"  Chip: {self.chip}")
        if self.region:
            lines.append(f"  Region: {self.region}")
        if self.bytes_len:
            lines.append(f"  Bytes: {self.bytes_len:,}")

        if self.images:
            lines.append("  Images:")
            lines.extend(f"    {image.describe()}" for image in self.images)
        imaged = {image.hash_key for image in self.images}
        for label, digest in self.hashes.items():
            if label not in imaged:
                lines.append(f"  {label}: {digest}")
        if self.skipped:
            lines.append(f"  Skipped: {', '.join(self.skipped)}")

        for title, entries in (("Warnings", self.warnings), ("Errors", self.errors)):
            if entries:
                lines.append(f"  {title}:")
                lines.extend(f"    - {entry}" for entry in entries)

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready form; raw bytes in metadata are left out."""
        data = asdict(self)
        data["metadata"] = {
            k: v for k, v in self.metadata.items() if not isinstance(v, (bytes, bytearray))
        }
        return data
