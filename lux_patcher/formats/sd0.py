"""sd0 segmented zlib container.

The patch server stores every full file payload as an sd0 stream:

- 5-byte magic ``sd0\\x01\\xff``
- Repeated chunks: u32 little-endian compressed length, then a complete
  zlib stream of that length

Each chunk decompresses to at most 256 KiB. An empty file is just the
magic.
"""

from __future__ import annotations

import struct
import zlib
from typing import BinaryIO

import structlog

from lux_patcher.formats.base import FormatParser, read_all

logger = structlog.get_logger()

SD0_MAGIC = b"sd0\x01\xff"
SD0_CHUNK_SIZE = 1024 * 256


def is_sd0(data: bytes) -> bool:
    """Check for the sd0 magic."""
    return data[:len(SD0_MAGIC)] == SD0_MAGIC


class Sd0Parser(FormatParser[bytes]):
    """Decode and encode sd0 payloads.

    ``parse`` returns the decompressed content; ``build`` compresses it.
    """

    def __init__(self, chunk_size: int = SD0_CHUNK_SIZE, level: int = 9):
        if not 0 < chunk_size <= SD0_CHUNK_SIZE:
            raise ValueError(f"chunk_size must be in 1..{SD0_CHUNK_SIZE}")
        self.chunk_size = chunk_size
        self.level = level

    def parse(self, data: bytes | BinaryIO) -> bytes:
        """Decompress an sd0 payload.

        Raises:
            ValueError: If the magic is wrong, a chunk is truncated or a
                chunk fails to decompress
        """
        raw = read_all(data)
        if not is_sd0(raw):
            raise ValueError(f"Invalid sd0 magic: {raw[:len(SD0_MAGIC)]!r}")

        out = bytearray()
        pos = len(SD0_MAGIC)
        index = 0
        while pos < len(raw):
            if pos + 4 > len(raw):
                raise ValueError(f"Truncated sd0 chunk header at offset {pos}")
            (length,) = struct.unpack_from("<I", raw, pos)
            pos += 4
            if pos + length > len(raw):
                raise ValueError(
                    f"sd0 chunk {index} too short: {len(raw) - pos} < {length}"
                )
            try:
                chunk = zlib.decompress(raw[pos:pos + length])
            except zlib.error as e:
                raise ValueError(f"Failed to decompress sd0 chunk {index}: {e}") from e
            if len(chunk) > SD0_CHUNK_SIZE:
                raise ValueError(f"sd0 chunk {index} exceeds {SD0_CHUNK_SIZE} bytes")
            out += chunk
            pos += length
            index += 1

        logger.debug("sd0_decoded", chunks=index, size=len(out))
        return bytes(out)

    def build(self, obj: bytes) -> bytes:
        """Compress content into an sd0 payload."""
        out = bytearray(SD0_MAGIC)
        for start in range(0, len(obj), self.chunk_size):
            compressed = zlib.compress(obj[start:start + self.chunk_size], self.level)
            out += struct.pack("<I", len(compressed))
            out += compressed
        return bytes(out)


def decompress_sd0(data: bytes) -> bytes:
    """Decompress an sd0 payload."""
    return Sd0Parser().parse(data)


def compress_sd0(data: bytes, chunk_size: int = SD0_CHUNK_SIZE) -> bytes:
    """Compress content into an sd0 payload."""
    return Sd0Parser(chunk_size=chunk_size).build(data)
