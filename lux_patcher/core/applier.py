"""Commit staged payloads into the installation directory.

Writes never happen in place. The staged payload is moved to a temporary
sibling of the destination, flushed, and renamed over the destination, so
the final path only ever holds the old content or the complete new
content.
"""

from __future__ import annotations

import errno
import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path

import structlog

from lux_patcher.core.errors import FileSystemError
from lux_patcher.core.fetcher import StagedFile
from lux_patcher.core.hash_store import HashStore
from lux_patcher.core.types import (
    AddOperation,
    DeleteOperation,
    Operation,
    OperationStatus,
    UpdateOperation,
)
from lux_patcher.core.utils import normalize_path

logger = structlog.get_logger()

TEMP_SUFFIX = ".luxtmp"


@dataclass
class ApplyResult:
    """Outcome of applying one operation."""

    status: OperationStatus
    error: FileSystemError | None = None

    @property
    def ok(self) -> bool:
        return self.status == OperationStatus.APPLIED


def _fsync_file(path: Path) -> None:
    with open(path, "rb+") as f:
        os.fsync(f.fileno())


def _move_into(src: Path, dst: Path) -> None:
    """Move ``src`` to ``dst``, copying when they are on different volumes."""
    try:
        os.replace(src, dst)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        shutil.copyfile(src, dst)
        _fsync_file(dst)
        src.unlink()


class PatchApplier:
    """Applies operations to an installation directory.

    Args:
        install_dir: Installation root; no operation may touch anything
            outside it
        hash_store: Session hash cache, kept in sync with every write
    """

    def __init__(self, install_dir: Path, hash_store: HashStore):
        self.install_dir = install_dir
        self.hash_store = hash_store

    def resolve(self, path: str) -> Path:
        """Absolute destination for a manifest path.

        Raises:
            FileSystemError: If the path escapes the installation root
        """
        try:
            rel = normalize_path(path)
        except ValueError as e:
            raise FileSystemError(str(e), path=path) from e

        target = self.install_dir / rel
        root = os.path.abspath(self.install_dir)
        if os.path.commonpath([root, os.path.abspath(target)]) != root:
            raise FileSystemError(f"Path escapes installation root: {path!r}", path=path)
        return target

    def apply(self, operation: Operation, staged: StagedFile | None = None) -> ApplyResult:
        """Apply one operation.

        Filesystem failures are returned, not raised, so the caller can
        carry on with other operations.

        Args:
            operation: Operation to apply
            staged: Verified payload, required for add and update

        Returns:
            APPLIED, or FAILED with a FileSystemError
        """
        try:
            if isinstance(operation, DeleteOperation):
                self._delete(operation)
            else:
                if staged is None:
                    raise ValueError(f"No staged payload for {operation.kind} {operation.path}")
                self._commit(operation, staged)
        except FileSystemError as e:
            logger.warning("apply_failed", path=operation.path, kind=operation.kind, error=str(e))
            return ApplyResult(OperationStatus.FAILED, e)

        logger.debug("operation_applied", path=operation.path, kind=operation.kind)
        return ApplyResult(OperationStatus.APPLIED)

    def _commit(self, operation: AddOperation | UpdateOperation, staged: StagedFile) -> None:
        target = self.resolve(operation.path)
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}{TEMP_SUFFIX}")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            _move_into(staged.path, tmp)
            _fsync_file(tmp)
            os.replace(tmp, target)
        except OSError as e:
            self._cleanup(tmp)
            staged.discard()
            raise FileSystemError(
                f"Cannot write {operation.path}: {e.strerror or e}", path=operation.path
            ) from e

        self.hash_store.record(target, staged.hash)

        # A case-only rename leaves the old spelling behind on case-sensitive filesystems
        if isinstance(operation, UpdateOperation) and operation.local_path:
            old = self.resolve(operation.local_path)
            try:
                stale = old != target and old.exists() and not old.samefile(target)
                if stale:
                    old.unlink()
            except OSError as e:
                raise FileSystemError(
                    f"Cannot remove old spelling {operation.local_path}: {e}",
                    path=operation.local_path,
                ) from e
            if stale:
                self.hash_store.invalidate(old)

    def _delete(self, operation: DeleteOperation) -> None:
        target = self.resolve(operation.path)
        try:
            target.unlink(missing_ok=True)
        except IsADirectoryError as e:
            raise FileSystemError(
                f"Cannot delete {operation.path}: is a directory", path=operation.path
            ) from e
        except OSError as e:
            raise FileSystemError(
                f"Cannot delete {operation.path}: {e.strerror or e}", path=operation.path
            ) from e
        finally:
            self.hash_store.invalidate(target)

    @staticmethod
    def _cleanup(tmp: Path) -> None:
        try:
            tmp.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("temp_cleanup_failed", path=str(tmp), error=str(e))

    def remove_leftovers(self) -> int:
        """Delete temp files left by an interrupted commit.

        Returns:
            Number of files removed
        """
        removed = 0
        if not self.install_dir.is_dir():
            return removed
        for path in self.install_dir.rglob(f"*{TEMP_SUFFIX}"):
            if path.is_file():
                self._cleanup(path)
                removed += 1
        if removed:
            logger.info("temp_leftovers_removed", count=removed)
        return removed
