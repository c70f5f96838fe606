"""
Flasher stub images.

Stubs are shipped as the JSON files produced by the esptool build
("stub_flasher_32s3.json" etc.): base64 "text" and "data" segments plus
their load addresses and the entry point.
"""

import base64
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from ..protocol.errors import StubNotFoundError, StubStartError
from .registry import ChipProfile

logger = logging.getLogger(__name__)

BUNDLED_STUB_DIR = Path(__file__).parent / "stubs"


@dataclass(frozen=True)
class StubImage:
    """Flasher stub program for one chip family."""
    text: bytes
    text_start: int
    data: bytes
    data_start: int
    entry: int
    bss_start: Optional[int] = None

    def segments(self):
        """Yield (name, load address, bytes) for each non-empty segment."""
        if self.text:
            yield "text", self.text_start, self.text
        if self.data:
            yield "data", self.data_start, self.data


def stub_file_name(profile: ChipProfile) -> str:
    return f"stub_flasher_{profile.stub_name}.json"


def parse_stub(raw: Union[str, bytes]) -> StubImage:
    """
    Parse a stub JSON document.

    Raises:
        StubStartError: If a required field is missing or malformed
    """
    try:
        doc = json.loads(raw)
        return StubImage(
            text=base64.b64decode(doc["text"]),
            text_start=int(doc["text_start"]),
            data=base64.b64decode(doc.get("data", "")),
            data_start=int(doc.get("data_start", 0)),
            entry=int(doc["entry"]),
            bss_start=int(doc["bss_start"]) if doc.get("bss_start") is not None else None,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise StubStartError(f"Malformed stub image: {e}") from e


def stub_search_path(stub_dir: Optional[Union[str, Path]] = None) -> List[Path]:
    """Directories searched for stub images, in order."""
    if stub_dir:
        return [Path(stub_dir), BUNDLED_STUB_DIR]
    return [BUNDLED_STUB_DIR]


def load_stub(profile: ChipProfile, stub_dir: Optional[Union[str, Path]] = None) -> StubImage:
    """
    Load the stub for a chip.

    Args:
        profile: Chip to load the stub for
        stub_dir: Directory searched before the bundled stubs

    Raises:
        StubNotFoundError: If no searched directory holds the stub file
        StubStartError: If the stub file cannot be parsed
    """
    name = stub_file_name(profile)
    searched = stub_search_path(stub_dir)
    for directory in searched:
        path = directory / name
        if path.is_file():
            logger.debug(f"Loading stub from {path}")
            return parse_stub(path.read_text(encoding="utf-8"))

    raise StubNotFoundError(
        f"No flasher stub for {profile.name}: {name} not found in "
        + ", ".join(str(d) for d in searched)
    )
