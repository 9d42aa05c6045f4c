"""Content integrity verification for patch payloads.

Manifest entries declare the MD5 and size of the decompressed file, and
optionally of the sd0 blob as served. The declared values are the
contract: a payload is only staged after both checks pass.
"""

from __future__ import annotations

import hashlib

import structlog

from lux_patcher.core.errors import IntegrityError

logger = structlog.get_logger()


def verify_content(
    data: bytes,
    expected_hash: str,
    expected_size: int | None = None,
    *,
    path: str | None = None,
) -> bool:
    """Verify content matches its declared MD5 (and size).

    Args:
        data: File content
        expected_hash: Expected lowercase hex MD5
        expected_size: Expected size in bytes, None to skip the size check
        path: Manifest path, for error reporting

    Returns:
        True if the content matches

    Raises:
        IntegrityError: If the size or hash does not match
    """
    if expected_size is not None and len(data) != expected_size:
        raise IntegrityError(
            f"Size mismatch: expected {expected_size}, got {len(data)}",
            expected=expected_size,
            actual=len(data),
            path=path,
        )

    actual = hashlib.md5(data).hexdigest()
    if actual != expected_hash.lower():
        logger.debug("integrity_mismatch", path=path, expected=expected_hash, actual=actual)
        raise IntegrityError(
            f"Content hash mismatch: expected {expected_hash}, got {actual}",
            expected=expected_hash,
            actual=actual,
            path=path,
        )
    return True
