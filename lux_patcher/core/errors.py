"""Error kinds raised by the patcher core.

Every error carries an ``ErrorKind`` so that per-operation failures can be
reported uniformly at the end of a run. Errors attached to a single
operation (integrity, fetch, filesystem) never abort sibling operations;
``ConflictError`` is raised while a manifest is being built and aborts the
run before anything is touched on disk.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Error classification used in session reports."""
    NOT_FOUND = "not_found"
    IO = "io"
    INTEGRITY = "integrity"
    FETCH = "fetch"
    FILESYSTEM = "filesystem"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"


class PatcherError(Exception):
    """Base class for all patcher errors."""

    kind: ErrorKind = ErrorKind.IO

    def __init__(self, message: str, *, path: str | None = None):
        self.path = path
        super().__init__(message)


class NotFoundError(PatcherError):
    """A local path does not exist."""

    kind = ErrorKind.NOT_FOUND


class PatchIOError(PatcherError):
    """Reading a local file failed."""

    kind = ErrorKind.IO


class IntegrityError(PatcherError):
    """Fetched or patched content does not match its declared hash or size.

    Attributes:
        expected: Expected hash or size
        actual: Actual hash or size
    """

    kind = ErrorKind.INTEGRITY

    def __init__(
        self,
        message: str,
        *,
        expected: str | int | None = None,
        actual: str | int | None = None,
        path: str | None = None,
    ):
        self.expected = expected
        self.actual = actual
        super().__init__(message, path=path)


class FetchError(PatcherError):
    """Network retrieval failed after the retry budget was spent.

    Attributes:
        url: URL that could not be fetched
        attempts: Number of attempts made
        status_code: Last HTTP status, if a response was received
    """

    kind = ErrorKind.FETCH

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        attempts: int = 0,
        status_code: int | None = None,
        path: str | None = None,
    ):
        self.url = url
        self.attempts = attempts
        self.status_code = status_code
        super().__init__(message, path=path)


class FileSystemError(PatcherError):
    """Writing, moving or deleting a file in the installation failed."""

    kind = ErrorKind.FILESYSTEM


class ConflictError(PatcherError):
    """A manifest contains two entries with the same normalized path."""

    kind = ErrorKind.CONFLICT


class CancelledError(PatcherError):
    """The run was cancelled before this operation started."""

    kind = ErrorKind.CANCELLED
