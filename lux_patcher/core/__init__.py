"""Core functionality for lux_patcher.

- Types, errors and configuration
- Hash store and local installation view
- Manifest differ, patch fetcher, patch applier and orchestrator
- Environment resolution
"""

from lux_patcher.core.errors import (
    CancelledError,
    ConflictError,
    ErrorKind,
    FetchError,
    FileSystemError,
    IntegrityError,
    NotFoundError,
    PatcherError,
    PatchIOError,
)
from lux_patcher.core.types import (
    AddOperation,
    DeleteOperation,
    EnvironmentDescriptor,
    FileEntry,
    Manifest,
    Operation,
    OperationStatus,
    UpdateOperation,
)
from lux_patcher.core.utils import compute_md5, format_size, normalize_path, path_key

__all__ = [
    # Errors
    "ErrorKind",
    "PatcherError",
    "NotFoundError",
    "PatchIOError",
    "IntegrityError",
    "FetchError",
    "FileSystemError",
    "ConflictError",
    "CancelledError",
    # Types
    "FileEntry",
    "Manifest",
    "AddOperation",
    "UpdateOperation",
    "DeleteOperation",
    "Operation",
    "OperationStatus",
    "EnvironmentDescriptor",
    # Utils
    "compute_md5",
    "format_size",
    "normalize_path",
    "path_key",
]
