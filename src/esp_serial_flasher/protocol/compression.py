"""
Compression adapter for deflated flash writes.

The device inflates FLASH_DEFL_DATA blocks itself; the host only needs the
one-shot compressor and a streaming inflater that reports how many bytes
each compressed block expands to.
"""

import zlib
from typing import Callable, Optional


def compress(data: bytes, level: int = 9) -> bytes:
    """Deflate data with a zlib wrapper (what the loader expects)."""
    return zlib.compress(data, level)


class StreamingInflater:
    """
    Incremental inflater used for progress and timeout accounting.

    Example:
        total = []
        inflater = StreamingInflater(lambda n: total.append(n))
        inflater.push(block)
        inflater.push(last_block, is_last=True)
    """

    def __init__(self, on_data: Optional[Callable[[int], None]] = None):
        self.on_data = on_data
        self.total_out = 0
        self._decompressor = zlib.decompressobj()

    def push(self, chunk: bytes, is_last: bool = False) -> int:
        """
        Feed one compressed chunk.

        Returns:
            Number of decompressed bytes this chunk produced
        """
        out = self._decompressor.decompress(chunk)
        if is_last:
            out += self._decompressor.flush()
        if out:
            self.total_out += len(out)
            if self.on_data:
                self.on_data(len(out))
        return len(out)
