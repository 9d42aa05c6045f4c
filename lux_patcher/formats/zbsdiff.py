"""ZBSDIFF1 binary delta format.

bsdiff with every block zlib-compressed. Used by the patch server to
publish deltas between consecutive versions of a file.

Format Structure:
- 32-byte header (big-endian): magic ``ZBSDIFF1``, compressed control
  block length, compressed diff block length, new file size
- Control block (zlib): triples of little-endian signed int64
  ``(diff_length, extra_length, seek)``
- Diff block (zlib): bytes added to the old file, byte-wise mod 256
- Extra block (zlib, rest of the file): bytes inserted verbatim

Applying a control triple:
1. ``new += old[pos:pos+diff_length] + diff[...]`` byte-wise
2. ``new += extra[...extra_length]``
3. ``pos += diff_length + seek``
"""

from __future__ import annotations

import struct
import zlib
from typing import BinaryIO

import structlog
from pydantic import BaseModel, Field, field_validator

from lux_patcher.formats.base import FormatParser, read_all

logger = structlog.get_logger()

ZBSDIFF_MAGIC = b"ZBSDIFF1"
HEADER_SIZE = 32
CONTROL_ENTRY_SIZE = 24

# Safety limits
MAX_FILE_SIZE = 1024 * 1024 * 1024  # 1GB
MAX_CONTROL_ENTRIES = 100000


class ZbsdiffHeader(BaseModel):
    """ZBSDIFF1 header."""

    magic: bytes = Field(default=ZBSDIFF_MAGIC, description="Magic bytes")
    control_length: int = Field(description="Compressed control block size")
    diff_length: int = Field(description="Compressed diff block size")
    new_size: int = Field(description="Size of the patched file")

    @field_validator("magic")
    @classmethod
    def validate_magic(cls, v: bytes) -> bytes:
        """Validate magic bytes."""
        if v != ZBSDIFF_MAGIC:
            raise ValueError(f"Invalid ZBSDIFF1 magic: {v!r}")
        return v

    @field_validator("control_length", "diff_length", "new_size")
    @classmethod
    def validate_sizes(cls, v: int) -> int:
        """Validate size fields are reasonable."""
        if v < 0:
            raise ValueError(f"Size cannot be negative: {v}")
        if v > MAX_FILE_SIZE:
            raise ValueError(f"Size too large: {v} > {MAX_FILE_SIZE}")
        return v


class ZbsdiffControl(BaseModel):
    """One control triple."""

    diff_length: int = Field(ge=0, description="Bytes produced from old + diff")
    extra_length: int = Field(ge=0, description="Bytes copied from the extra block")
    seek: int = Field(description="Relative seek in the old file")


class ZbsdiffFile(BaseModel):
    """Decoded ZBSDIFF1 patch."""

    new_size: int = Field(ge=0, le=MAX_FILE_SIZE)
    controls: list[ZbsdiffControl] = Field(default_factory=list)
    diff_data: bytes = b""
    extra_data: bytes = b""

    @field_validator("controls")
    @classmethod
    def validate_controls(cls, v: list[ZbsdiffControl]) -> list[ZbsdiffControl]:
        """Validate control entry count."""
        if len(v) > MAX_CONTROL_ENTRIES:
            raise ValueError(f"Too many control entries: {len(v)} > {MAX_CONTROL_ENTRIES}")
        return v


def _inflate(block: bytes, name: str) -> bytes:
    if not block:
        return b""
    try:
        return zlib.decompress(block)
    except zlib.error as e:
        raise ValueError(f"Failed to decompress {name} block: {e}") from e


class ZbsdiffParser(FormatParser[ZbsdiffFile]):
    """Parser, builder and applier for ZBSDIFF1 patches."""

    def parse(self, data: bytes | BinaryIO) -> ZbsdiffFile:
        """Parse ZBSDIFF1 data.

        Raises:
            ValueError: If data is invalid or corrupted
        """
        raw = read_all(data)
        if len(raw) < HEADER_SIZE:
            raise ValueError(f"Header too short: {len(raw)} < {HEADER_SIZE}")

        control_length, diff_length, new_size = struct.unpack(">QQQ", raw[8:HEADER_SIZE])
        header = ZbsdiffHeader(
            magic=raw[:8],
            control_length=control_length,
            diff_length=diff_length,
            new_size=new_size,
        )

        diff_start = HEADER_SIZE + header.control_length
        extra_start = diff_start + header.diff_length
        if extra_start > len(raw):
            raise ValueError(
                f"Patch truncated: blocks need {extra_start} bytes, have {len(raw)}"
            )

        control_data = _inflate(raw[HEADER_SIZE:diff_start], "control")
        if len(control_data) % CONTROL_ENTRY_SIZE:
            raise ValueError(f"Control block size {len(control_data)} is not a multiple of 24")

        count = len(control_data) // CONTROL_ENTRY_SIZE
        if count > MAX_CONTROL_ENTRIES:
            raise ValueError(f"Too many control entries: {count}")

        controls = []
        for diff_len, extra_len, seek in struct.iter_unpack("<qqq", control_data):
            if diff_len < 0 or extra_len < 0:
                raise ValueError(f"Negative control length: ({diff_len}, {extra_len})")
            controls.append(
                ZbsdiffControl(diff_length=diff_len, extra_length=extra_len, seek=seek)
            )

        patch = ZbsdiffFile(
            new_size=header.new_size,
            controls=controls,
            diff_data=_inflate(raw[diff_start:extra_start], "diff"),
            extra_data=_inflate(raw[extra_start:], "extra"),
        )
        logger.debug(
            "zbsdiff_parsed",
            controls=len(controls),
            diff_size=len(patch.diff_data),
            extra_size=len(patch.extra_data),
            new_size=patch.new_size,
        )
        return patch

    def build(self, obj: ZbsdiffFile) -> bytes:
        """Serialize a patch."""
        control_data = b"".join(
            struct.pack("<qqq", c.diff_length, c.extra_length, c.seek) for c in obj.controls
        )
        control_block = zlib.compress(control_data)
        diff_block = zlib.compress(obj.diff_data)
        extra_block = zlib.compress(obj.extra_data) if obj.extra_data else b""

        header = ZBSDIFF_MAGIC + struct.pack(
            ">QQQ", len(control_block), len(diff_block), obj.new_size
        )
        return header + control_block + diff_block + extra_block

    def apply_patch(self, old_data: bytes, patch: ZbsdiffFile) -> bytes:
        """Apply a patch to the old file content.

        Raises:
            ValueError: If the patch does not fit the old data or overruns
                any of its blocks
        """
        if len(old_data) > MAX_FILE_SIZE:
            raise ValueError(f"Old file too large: {len(old_data)} > {MAX_FILE_SIZE}")

        new_data = bytearray()
        old_pos = diff_pos = extra_pos = 0

        for i, control in enumerate(patch.controls):
            n = control.diff_length
            if diff_pos + n > len(patch.diff_data):
                raise ValueError(f"Diff block overflow at entry {i}")
            if n and (old_pos < 0 or old_pos + n > len(old_data)):
                raise ValueError(f"Old data overflow at entry {i}")
            if len(new_data) + n + control.extra_length > patch.new_size:
                raise ValueError(f"New data overflow at entry {i}")

            old_slice = old_data[old_pos:old_pos + n]
            diff_slice = patch.diff_data[diff_pos:diff_pos + n]
            new_data += bytes((a + b) & 0xFF for a, b in zip(old_slice, diff_slice))
            old_pos += n
            diff_pos += n

            m = control.extra_length
            if extra_pos + m > len(patch.extra_data):
                raise ValueError(f"Extra block overflow at entry {i}")
            new_data += patch.extra_data[extra_pos:extra_pos + m]
            extra_pos += m

            old_pos += control.seek

        if len(new_data) != patch.new_size:
            raise ValueError(
                f"Patched size mismatch: expected {patch.new_size}, got {len(new_data)}"
            )
        return bytes(new_data)


def create_patch(old_data: bytes, new_data: bytes) -> ZbsdiffFile:
    """Build a single-control patch transforming ``old_data`` into ``new_data``.

    The overlapping prefix is expressed as byte-wise differences (which
    compress well when the files are similar) and the tail as extra data.
    Not size-optimal like a real bsdiff, but always valid.
    """
    overlap = min(len(old_data), len(new_data))
    diff = bytes((b - a) & 0xFF for a, b in zip(old_data[:overlap], new_data[:overlap]))
    return ZbsdiffFile(
        new_size=len(new_data),
        controls=[ZbsdiffControl(diff_length=overlap, extra_length=len(new_data) - overlap, seek=0)],
        diff_data=diff,
        extra_data=new_data[overlap:],
    )


def apply_zbsdiff(old_data: bytes, patch_data: bytes) -> bytes:
    """Parse and apply a serialized ZBSDIFF1 patch."""
    parser = ZbsdiffParser()
    return parser.apply_patch(old_data, parser.parse(patch_data))
