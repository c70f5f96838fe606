"""
Centralized parsing helpers for addresses, sizes and address/file pairs.

Front ends import these helpers rather than re-implement them.
"""

from pathlib import Path
from typing import List, Optional, Tuple


def parse_offset(value: Optional[str]) -> Optional[int]:
    """
    Parse an address or size from string, supporting multiple formats.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x1000" or "0X1000"
        - Hex with h suffix: "1000h" or "1000H"
        - None or empty for "not given"

    Returns:
        Parsed integer, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            return int(value, 16)
        if value.lower().endswith("h"):
            return int(value[:-1], 16)
        return int(value)
    except ValueError:
        raise ValueError(
            f"Invalid offset '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )


def parse_address_file_pairs(values: List[str]) -> List[Tuple[int, Path]]:
    """
    Parse "ADDR FILE [ADDR FILE ...]" command line arguments.

    Raises:
        ValueError: On an odd number of values or a bad address
    """
    if not values or len(values) % 2:
        raise ValueError("Arguments must be pairs of ADDRESS FILE")

    pairs = []
    for i in range(0, len(values), 2):
        address = parse_offset(values[i])
        if address is None:
            raise ValueError(f"Missing address for {values[i + 1]}")
        pairs.append((address, Path(values[i + 1])))

    pairs.sort(key=lambda pair: pair[0])
    for (addr_a, file_a), (addr_b, _) in zip(pairs, pairs[1:]):
        end_a = addr_a + file_a.stat().st_size if file_a.exists() else addr_a
        if end_a > addr_b:
            raise ValueError(
                f"Detected overlap at address 0x{addr_b:x} for file {file_a}"
            )
    return pairs
