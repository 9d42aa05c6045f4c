"""Tests for ZBSDIFF1 format parser."""

import struct
import zlib
from io import BytesIO

import pytest

from lux_patcher.formats.zbsdiff import (
    HEADER_SIZE,
    MAX_FILE_SIZE,
    ZBSDIFF_MAGIC,
    ZbsdiffControl,
    ZbsdiffFile,
    ZbsdiffHeader,
    ZbsdiffParser,
    apply_zbsdiff,
    create_patch,
)


def raw_patch(controls, diff: bytes, extra: bytes, new_size: int) -> bytes:
    """Serialize a patch by hand, independent of ZbsdiffParser.build."""
    control_block = zlib.compress(b"".join(struct.pack("<qqq", *c) for c in controls))
    diff_block = zlib.compress(diff)
    extra_block = zlib.compress(extra)
    header = ZBSDIFF_MAGIC + struct.pack(">QQQ", len(control_block), len(diff_block), new_size)
    return header + control_block + diff_block + extra_block


class TestZbsdiffHeader:
    """Test ZBSDIFF1 header model."""

    def test_invalid_magic(self):
        """Test invalid magic bytes."""
        with pytest.raises(ValueError, match="Invalid ZBSDIFF1 magic"):
            ZbsdiffHeader(magic=b"BSDIFF40", control_length=1, diff_length=1, new_size=1)

    def test_size_limits(self):
        """Test negative and oversized fields."""
        with pytest.raises(ValueError, match="negative"):
            ZbsdiffHeader(control_length=-1, diff_length=0, new_size=0)
        with pytest.raises(ValueError, match="too large"):
            ZbsdiffHeader(control_length=0, diff_length=0, new_size=MAX_FILE_SIZE + 1)


class TestZbsdiffParser:
    """Test ZbsdiffParser class."""

    def test_parse_hand_built(self):
        """Test parsing a patch built without the builder."""
        data = raw_patch([(3, 2, 2), (2, 0, 0)], b"\x00" * 5, b"xy", 7)

        patch = ZbsdiffParser().parse(BytesIO(data))

        assert patch.new_size == 7
        assert patch.controls == [
            ZbsdiffControl(diff_length=3, extra_length=2, seek=2),
            ZbsdiffControl(diff_length=2, extra_length=0, seek=0),
        ]
        assert patch.extra_data == b"xy"

    def test_apply_with_seek(self):
        """Test copy, insert and seek semantics."""
        data = raw_patch([(3, 2, 2), (2, 0, 0)], b"\x00" * 5, b"xy", 7)
        assert apply_zbsdiff(b"ABCDEFGH", data) == b"ABCxyFG"

    def test_apply_byte_diffs_wrap(self):
        """Test diff bytes are added modulo 256."""
        data = raw_patch([(2, 0, 0)], b"\x01\x02", b"", 2)
        assert apply_zbsdiff(b"\xff\x10", data) == b"\x00\x12"

    def test_negative_seek(self):
        """Test backward seeks reuse old data."""
        data = raw_patch([(2, 0, -2), (2, 0, 0)], b"\x00" * 4, b"", 4)
        assert apply_zbsdiff(b"AB", data) == b"ABAB"

    def test_create_patch_transforms(self):
        """Test generated patches reproduce the new content."""
        parser = ZbsdiffParser()
        for old, new in [
            (b"hello world", b"hello there world"),
            (b"long old content", b"short"),
            (b"", b"from nothing"),
            (b"to nothing", b""),
        ]:
            data = parser.build(create_patch(old, new))
            assert apply_zbsdiff(old, data) == new

    def test_build_omits_empty_extra(self):
        """Test a patch without extra data ends after the diff block."""
        patch = ZbsdiffFile(
            new_size=2,
            controls=[ZbsdiffControl(diff_length=2, extra_length=0, seek=0)],
            diff_data=b"\x00\x00",
        )
        data = ZbsdiffParser().build(patch)
        control_length, diff_length, _ = struct.unpack(">QQQ", data[8:HEADER_SIZE])
        assert len(data) == HEADER_SIZE + control_length + diff_length
        assert ZbsdiffParser().parse(data).extra_data == b""

    def test_short_header(self):
        """Test truncated headers are rejected."""
        with pytest.raises(ValueError, match="Header too short"):
            ZbsdiffParser().parse(b"ZBSDIFF1" + b"\x00" * 8)

    def test_truncated_blocks(self):
        """Test block lengths beyond the data are rejected."""
        data = raw_patch([(1, 0, 0)], b"\x00", b"", 1)
        with pytest.raises(ValueError, match="truncated"):
            ZbsdiffParser().parse(data[:HEADER_SIZE + 2])

    def test_corrupt_block(self):
        """Test zlib failures are reported."""
        header = ZBSDIFF_MAGIC + struct.pack(">QQQ", 4, 0, 0)
        with pytest.raises(ValueError, match="decompress control"):
            ZbsdiffParser().parse(header + b"\x01\x02\x03\x04")

    def test_misaligned_control_block(self):
        """Test control blocks must hold whole triples."""
        control = zlib.compress(b"\x00" * 10)
        header = ZBSDIFF_MAGIC + struct.pack(">QQQ", len(control), 0, 0)
        with pytest.raises(ValueError, match="multiple of 24"):
            ZbsdiffParser().parse(header + control)

    def test_negative_lengths(self):
        """Test negative diff or extra lengths are rejected."""
        with pytest.raises(ValueError, match="Negative"):
            ZbsdiffParser().parse(raw_patch([(-1, 0, 0)], b"", b"", 0))

    def test_old_data_overflow(self):
        """Test reading past the old file is rejected."""
        data = raw_patch([(5, 0, 0)], b"\x00" * 5, b"", 5)
        with pytest.raises(ValueError, match="Old data overflow"):
            apply_zbsdiff(b"abc", data)

    def test_extra_overflow(self):
        """Test reading past the extra block is rejected."""
        data = raw_patch([(0, 3, 0)], b"", b"x", 3)
        with pytest.raises(ValueError, match="Extra block overflow"):
            apply_zbsdiff(b"", data)

    def test_size_mismatch(self):
        """Test output shorter than declared is rejected."""
        data = raw_patch([(1, 0, 0)], b"\x00", b"", 2)
        with pytest.raises(ValueError, match="size mismatch"):
            apply_zbsdiff(b"a", data)
