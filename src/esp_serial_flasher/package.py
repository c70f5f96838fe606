"""
Firmware packages.

A package is a .tar.gz archive (or a plain directory) holding a
manifest.json and arbitrary files the flasher for its platform uses.

manifest.json fields:
- board: The board name
- version: The version of the package
- platform: Which flasher handles it (only "esp32" is supported)
- config: Flasher-specific configuration

For the esp32 platform, config holds:
- chip: The chip type ("ESP32", "ESP32-S3", ...)
- flashBaud: Baud rate to use for flashing (default: 921600)
- partitions: Partitions to flash, each with
    - name: The name of the partition
    - address: Start address ("0x1000" or a number)
    - file: The file from the package to flash
    - isStorage: Skipped when flashing without erase

Example manifest.json:
    {
        "board": "ESP32-DevKitC",
        "version": "v0.0.5",
        "platform": "esp32",
        "config": {
            "flashBaud": 921600,
            "chip": "ESP32",
            "partitions": [
                {
                    "name": "bootloader",
                    "address": "0x1000",
                    "file": "bootloader.bin",
                    "isStorage": false
                }
            ]
        }
    }
"""

import json
import logging
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .flasher.programmer import FlashFile, FlashJob
from .protocol.errors import PackageError

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
DEFAULT_FLASH_BAUD = 921600
SUPPORTED_PLATFORMS = ("esp32",)


@dataclass(frozen=True)
class Manifest:
    board: str
    version: str
    platform: str
    config: Dict[str, Any]


@dataclass(frozen=True)
class Partition:
    """One partition entry from the esp32 config."""
    name: str
    address: int
    file: str
    is_storage: bool = False


@dataclass
class Package:
    """A manifest plus the package's files keyed by relative path."""
    manifest: Manifest
    files: Dict[str, bytes] = field(default_factory=dict)

    @property
    def chip(self) -> Optional[str]:
        return self.manifest.config.get("chip")

    @property
    def flash_baud(self) -> int:
        return int(self.manifest.config.get("flashBaud", DEFAULT_FLASH_BAUD))

    def partitions(self) -> List[Partition]:
        """
        Parse the partition list.

        Raises:
            PackageError: If the platform is unsupported or an entry is incomplete
        """
        if self.manifest.platform not in SUPPORTED_PLATFORMS:
            raise PackageError(f"Unsupported platform: {self.manifest.platform}")

        entries = self.manifest.config.get("partitions")
        if not entries:
            raise PackageError("No partitions defined")

        partitions = []
        for entry in entries:
            file = entry.get("file")
            if file is None:
                raise PackageError("No file defined for partition")
            address = entry.get("address")
            if address is None:
                raise PackageError(f"No address defined for partition {file}")
            if isinstance(address, str):
                try:
                    address = int(address, 0)
                except ValueError as e:
                    raise PackageError(f"Bad address for partition {file}: {e}") from e
            partitions.append(Partition(
                name=entry.get("name", file),
                address=int(address),
                file=file,
                is_storage=bool(entry.get("isStorage", False)),
            ))
        return partitions

    def file_data(self, name: str) -> bytes:
        try:
            return self.files[name]
        except KeyError:
            raise PackageError(f"File {name} not found in package")


def parse_manifest(data: Union[str, bytes]) -> Manifest:
    """
    Parse manifest.json contents.

    Raises:
        PackageError: If the JSON is invalid or a required field is missing
    """
    try:
        doc = json.loads(data)
    except ValueError as e:
        raise PackageError(f"Invalid manifest.json: {e}") from e
    if not isinstance(doc, dict):
        raise PackageError("manifest.json must contain an object")

    values = {}
    for key in ("board", "version", "platform", "config"):
        if not doc.get(key):
            raise PackageError(f"No {key} defined in manifest")
        values[key] = doc[key]
    return Manifest(**values)


def _normalize_name(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    return name


def _load_tar(path: Path) -> Dict[str, bytes]:
    files = {}
    try:
        with tarfile.open(path, "r:*") as tar:
            for member in tar.getmembers():
                if not member.isfile():
                    continue
                extracted = tar.extractfile(member)
                if extracted is None:
                    continue
                with extracted:
                    files[_normalize_name(member.name)] = extracted.read()
    except tarfile.TarError as e:
        raise PackageError(f"Cannot read package {path}: {e}") from e
    return files


def _load_dir(path: Path) -> Dict[str, bytes]:
    return {
        p.relative_to(path).as_posix(): p.read_bytes()
        for p in sorted(path.rglob("*"))
        if p.is_file()
    }


def load_package(path: Union[str, Path]) -> Package:
    """
    Load a package from a .tar.gz archive or a directory.

    Raises:
        PackageError: If the package or its manifest is unusable
    """
    path = Path(path)
    if not path.exists():
        raise PackageError(f"Package not found: {path}")

    files = _load_dir(path) if path.is_dir() else _load_tar(path)
    manifest_data = files.pop(MANIFEST_NAME, None)
    if manifest_data is None:
        raise PackageError("No manifest.json file found")

    package = Package(manifest=parse_manifest(manifest_data), files=files)
    logger.debug(
        f"Loaded package {package.manifest.board} {package.manifest.version} "
        f"({len(files)} files)"
    )
    return package


def build_flash_job(
    package: Package,
    no_erase: bool = False,
    flash_size: str = "4MB",
) -> FlashJob:
    """
    Turn a package into a FlashJob.

    Args:
        package: Loaded package
        no_erase: Skip storage partitions so their data survives
        flash_size: Flash size label used for the fit check and header

    Raises:
        PackageError: On missing files or malformed partitions
    """
    files = []
    skipped = []
    for partition in package.partitions():
        if partition.is_storage and no_erase:
            skipped.append(partition.file)
            continue
        files.append(FlashFile(
            address=partition.address,
            data=package.file_data(partition.file),
            name=partition.file,
        ))

    return FlashJob(
        files=files,
        flash_size=flash_size,
        expected_chip=package.chip,
        skipped=skipped,
    )


def package_info(package: Package) -> str:
    """Human-readable summary of a package."""
    manifest = package.manifest
    lines = [
        f"Board: {manifest.board}",
        f"Version: {manifest.version}",
        f"Platform: {manifest.platform}",
        f"Chip type: {package.chip}",
    ]
    if "flashBaud" in manifest.config:
        lines.append(f"Flash baudrate: {manifest.config['flashBaud']}")
    lines.append("Partitions:")
    for partition in package.partitions():
        data = package.file_data(partition.file)
        storage = " [storage]" if partition.is_storage else ""
        lines.append(
            f"  {partition.file} (at 0x{partition.address:x}, {len(data)} bytes){storage}"
        )
    return "\n".join(lines)
