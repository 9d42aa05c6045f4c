"""Shared utilities for lux-patcher."""

from __future__ import annotations

import hashlib
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO

HASH_CHUNK_SIZE = 1024 * 1024


def normalize_path(path: str) -> str:
    """Normalize a manifest-relative path.

    Converts backslashes to forward slashes, drops empty and ``.``
    segments and leading slashes. Case is preserved; use ``path_key``
    for comparisons.

    Args:
        path: Relative path as found in a manifest or on disk

    Returns:
        Normalized path

    Raises:
        ValueError: If the path is empty or contains ``..`` segments

    Example:
        >>> normalize_path("client\\\\res\\\\./Foo.dat")
        'client/res/Foo.dat'
    """
    parts = [p for p in path.replace("\\", "/").split("/") if p not in ("", ".")]
    if not parts:
        raise ValueError(f"Empty path: {path!r}")
    if ".." in parts:
        raise ValueError(f"Path escapes installation root: {path!r}")
    return "/".join(parts)


def path_key(path: str) -> str:
    """Case-insensitive lookup key for a path.

    Example:
        >>> path_key("Client/Res/Foo.DAT")
        'client/res/foo.dat'
    """
    return normalize_path(path).lower()


def compute_md5(data: bytes) -> str:
    """Compute MD5 hash as lowercase hex.

    Example:
        >>> compute_md5(b"hello")
        '5d41402abc4b2a76b9719d911017c592'
    """
    return hashlib.md5(data).hexdigest()


def chunked_read(
    stream: BinaryIO,
    chunk_size: int = 8192
) -> Iterator[bytes]:
    """Read stream in chunks.

    Raises:
        ValueError: If chunk_size is not positive
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        yield chunk


def md5_file(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Stream a file through MD5.

    Args:
        path: File to hash
        chunk_size: Read size in bytes

    Returns:
        Lowercase hex digest

    Raises:
        OSError: If the file cannot be opened or read
    """
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in chunked_read(f, chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def format_size(size: int) -> str:
    """Format byte size as human-readable string.

    Example:
        >>> format_size(1536)
        '1.5 KB'
    """
    if size < 0:
        return "0 B"

    size_float = float(size)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_float < 1024.0:
            if unit == "B":
                return f"{int(size_float)} {unit}"
            return f"{size_float:.1f} {unit}"
        size_float /= 1024.0
    return f"{size_float:.1f} PB"


def validate_hash_string(hash_str: str, length: int | None = 32) -> bool:
    """Validate hex hash string.

    Args:
        hash_str: Hash string to validate
        length: Required number of hex characters, None for any

    Example:
        >>> validate_hash_string("d41d8cd98f00b204e9800998ecf8427e")
        True
        >>> validate_hash_string("invalid")
        False
    """
    if not hash_str or hash_str != hash_str.strip() or ' ' in hash_str:
        return False
    if length is not None and len(hash_str) != length:
        return False
    try:
        bytes.fromhex(hash_str)
        return True
    except ValueError:
        return False
