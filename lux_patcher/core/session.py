"""Patch session state: operations, per-operation status and the final report."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from lux_patcher.core.differ import ManifestView
from lux_patcher.core.errors import ErrorKind, PatcherError
from lux_patcher.core.hash_store import HashStore
from lux_patcher.core.types import (
    EnvironmentDescriptor,
    Manifest,
    Operation,
    OperationStatus,
)

logger = structlog.get_logger()

# PENDING -> FETCHING -> STAGED -> APPLIED, any non-terminal state -> FAILED.
# Deletes go straight from PENDING to APPLIED.
_ALLOWED_TRANSITIONS: dict[OperationStatus, set[OperationStatus]] = {
    OperationStatus.PENDING: {
        OperationStatus.FETCHING,
        OperationStatus.APPLIED,
        OperationStatus.FAILED,
    },
    OperationStatus.FETCHING: {OperationStatus.STAGED, OperationStatus.FAILED},
    OperationStatus.STAGED: {OperationStatus.APPLIED, OperationStatus.FAILED},
    OperationStatus.APPLIED: set(),
    OperationStatus.FAILED: set(),
}


class CancellationToken:
    """Cooperative cancellation flag shared between the caller and workers."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class ProgressEvent:
    """One status transition, delivered to the progress sink.

    Attributes:
        operation: Operation whose status changed
        status: New status
        completed: Operations in a terminal state so far
        total: Operations in the session
        error: Failure reason when ``status`` is FAILED
    """

    operation: Operation
    status: OperationStatus
    completed: int
    total: int
    error: str | None = None


ProgressSink = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class FailedOperation:
    """An operation that did not complete, with its reason."""

    operation: Operation
    kind: ErrorKind
    message: str

    @property
    def path(self) -> str:
        return self.operation.path


@dataclass
class SessionResult:
    """Outcome of a patch run."""

    applied_count: int = 0
    failed_operations: list[FailedOperation] = field(default_factory=list)
    cancelled_count: int = 0

    @property
    def failed_count(self) -> int:
        return len(self.failed_operations)

    @property
    def converged(self) -> bool:
        """True when every operation was applied."""
        return not self.failed_operations and self.cancelled_count == 0

    @property
    def partial_success(self) -> bool:
        """True when at least one operation applied and at least one failed.

        Cancelled operations do not count as failures here.
        """
        return self.applied_count > 0 and bool(self.failed_operations)


class PatchSession:
    """State of one reconciliation run.

    Args:
        environment: Environment being patched against
        install_dir: Installation root
        desired: Remote manifest
        actual: Local state (usually a ``LocalInstallation``)
        staging_dir: Where verified payloads wait before commit; defaults to
            ``.lux_staging`` inside ``install_dir``
        hash_store: Hash cache shared by the local view and the applier
    """

    def __init__(
        self,
        environment: EnvironmentDescriptor,
        install_dir: Path,
        desired: Manifest,
        actual: ManifestView,
        staging_dir: Path | None = None,
        hash_store: HashStore | None = None,
    ):
        self.environment = environment
        self.install_dir = install_dir
        self.desired = desired
        self.actual = actual
        self.staging_dir = staging_dir or install_dir / ".lux_staging"
        if hash_store is None:
            hash_store = getattr(actual, "hash_store", None)
        self.hash_store = hash_store if hash_store is not None else HashStore()
        self.operations: list[Operation] | None = None
        self.statuses: dict[Operation, OperationStatus] = {}
        self.errors: dict[Operation, PatcherError] = {}
        self._lock = threading.Lock()

    def set_operations(self, operations: list[Operation]) -> None:
        """Install the operation list, resetting every status to PENDING."""
        self.operations = list(operations)
        self.statuses = {op: OperationStatus.PENDING for op in self.operations}
        self.errors = {}

    def status(self, operation: Operation) -> OperationStatus:
        return self.statuses[operation]

    def transition(
        self,
        operation: Operation,
        status: OperationStatus,
        error: PatcherError | None = None,
    ) -> None:
        """Move an operation to a new status.

        Raises:
            ValueError: If the transition is not allowed
        """
        with self._lock:
            current = self.statuses[operation]
            if status not in _ALLOWED_TRANSITIONS[current]:
                raise ValueError(
                    f"Invalid transition for {operation.path}: {current} -> {status}"
                )
            self.statuses[operation] = status
            if error is not None:
                self.errors[operation] = error

    @property
    def completed(self) -> int:
        """Operations in a terminal state."""
        with self._lock:
            return sum(
                1
                for s in self.statuses.values()
                if s in (OperationStatus.APPLIED, OperationStatus.FAILED)
            )

    def result(self) -> SessionResult:
        """Summarize statuses into a ``SessionResult``.

        Operations never started are counted as cancelled.
        """
        result = SessionResult()
        for op in self.operations or []:
            status = self.statuses[op]
            if status == OperationStatus.APPLIED:
                result.applied_count += 1
            elif status == OperationStatus.FAILED:
                error = self.errors.get(op)
                if error is not None and error.kind == ErrorKind.CANCELLED:
                    result.cancelled_count += 1
                    continue
                result.failed_operations.append(
                    FailedOperation(
                        operation=op,
                        kind=error.kind if error is not None else ErrorKind.IO,
                        message=str(error) if error is not None else "unknown error",
                    )
                )
            else:
                result.cancelled_count += 1
        return result
