"""Base class for patch server file formats."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class FormatParser(ABC, Generic[T]):
    """Parser/builder pair for one format."""

    @abstractmethod
    def parse(self, data: bytes | BinaryIO) -> T:
        """Parse binary data.

        Args:
            data: Binary data or stream

        Returns:
            Parsed format object

        Raises:
            ValueError: If the data is malformed
        """
        ...

    @abstractmethod
    def build(self, obj: T) -> bytes:
        """Build binary data from object."""
        ...

    def parse_file(self, path: Path | str) -> T:
        """Parse format from file.

        Raises:
            ValueError: If the file cannot be read or is malformed
        """
        try:
            with open(path, "rb") as f:
                return self.parse(f)
        except OSError as e:
            logger.error("format_read_failed", path=str(path), error=str(e))
            raise ValueError(f"Cannot read file {path}: {e}") from e


def read_all(data: bytes | BinaryIO) -> bytes:
    """Return the full contents of bytes or a binary stream."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    return data.read()
