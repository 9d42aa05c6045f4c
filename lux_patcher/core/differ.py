"""Manifest reconciliation.

Compares the desired manifest against the actual installation state and
classifies every path:
- only desired: add
- only actual: delete
- both, same hash: unchanged
- both, different hash: update (by delta when the published delta source
  matches the local hash, otherwise full replace)

Paths are keyed case-insensitively, so a file whose name only changed in
case is a single update (or nothing, when the content is equal) rather than
a delete followed by an add.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

import structlog

from lux_patcher.core.types import (
    AddOperation,
    DeleteOperation,
    FileEntry,
    Operation,
    UpdateOperation,
)

logger = structlog.get_logger()


class ManifestView(Protocol):
    """Anything that can be diffed: a ``Manifest`` or a ``LocalInstallation``."""

    def keys(self) -> Iterable[str]: ...

    def get(self, path: str) -> FileEntry | None: ...


@dataclass
class DiffSummary:
    """Counts describing an operation list."""

    added: int = 0
    updated: int = 0
    deleted: int = 0
    delta_updates: int = 0
    download_bytes: int = 0

    @property
    def total(self) -> int:
        return self.added + self.updated + self.deleted


def _classify(want: FileEntry | None, have: FileEntry | None) -> Operation | None:
    if want is None and have is None:
        return None
    if want is None:
        assert have is not None
        return DeleteOperation(path=have.path)
    if have is None:
        return AddOperation(entry=want)
    if want.hash == have.hash:
        return None

    local_path = have.path if have.path != want.path else None
    if want.delta is not None and want.delta.from_hash == have.hash:
        return UpdateOperation(entry=want, from_hash=have.hash, local_path=local_path)
    return UpdateOperation(entry=want, local_path=local_path)


def compute_diff(desired: ManifestView, actual: ManifestView) -> list[Operation]:
    """Compute the operations that converge ``actual`` to ``desired``.

    The result holds at most one operation per normalized path, ordered
    lexicographically by that path, so the same inputs always produce the
    same list.

    Args:
        desired: Remote manifest
        actual: Local state (concrete manifest or lazy installation view)

    Returns:
        Ordered list of operations

    Raises:
        PatchIOError: If a local file exists but cannot be hashed
    """
    operations: list[Operation] = []
    for key in sorted(set(desired.keys()) | set(actual.keys())):
        want = desired.get(key)
        have = actual.get(want.path if want is not None else key)
        op = _classify(want, have)
        if op is not None:
            operations.append(op)

    summary = summarize(operations)
    logger.info(
        "diff_computed",
        added=summary.added,
        updated=summary.updated,
        deleted=summary.deleted,
        delta=summary.delta_updates,
    )
    return operations


def summarize(operations: Iterable[Operation]) -> DiffSummary:
    """Count operations by kind and estimate transfer size.

    Delta updates count their delta size, everything else the compressed
    payload size when known.
    """
    summary = DiffSummary()
    for op in operations:
        if isinstance(op, DeleteOperation):
            summary.deleted += 1
            continue

        entry = op.entry
        if isinstance(op, UpdateOperation):
            summary.updated += 1
            if op.is_delta and entry.delta is not None:
                summary.delta_updates += 1
                summary.download_bytes += entry.delta.size
                continue
        else:
            summary.added += 1
        summary.download_bytes += (
            entry.compressed_size if entry.compressed_size is not None else entry.size
        )
    return summary
