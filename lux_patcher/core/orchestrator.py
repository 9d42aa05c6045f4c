"""Run a patch session: diff, then fetch and apply with a bounded worker pool.

Operations are grouped into one chain per normalized path. Chains run
concurrently, operations within a chain run in order, so two operations on
the same path never overlap. A failed operation is recorded in the session
and never stops the others.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from pathlib import Path

import structlog

from lux_patcher.core.applier import PatchApplier
from lux_patcher.core.config import FetchConfig
from lux_patcher.core.differ import compute_diff
from lux_patcher.core.errors import CancelledError, PatcherError
from lux_patcher.core.fetcher import PatchFetcher, StagedFile
from lux_patcher.core.retry import RetryPolicy
from lux_patcher.core.session import (
    CancellationToken,
    PatchSession,
    ProgressEvent,
    ProgressSink,
    SessionResult,
)
from lux_patcher.core.types import DeleteOperation, Operation, OperationStatus

logger = structlog.get_logger()

__all__ = ["PatchOrchestrator", "compute_diff", "group_by_path", "run_patch"]

DEFAULT_CONCURRENCY = 4


def group_by_path(operations: Iterable[Operation]) -> list[list[Operation]]:
    """Split operations into per-path chains, keeping their relative order."""
    chains: dict[str, list[Operation]] = {}
    for op in operations:
        chains.setdefault(op.key, []).append(op)
    return list(chains.values())


class PatchOrchestrator:
    """Drives a session through fetch and apply.

    Args:
        fetcher: Downloads and stages payloads
        applier: Commits staged payloads and deletes files
        concurrency: Maximum operations in flight
    """

    def __init__(
        self,
        fetcher: PatchFetcher,
        applier: PatchApplier,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        if concurrency < 1:
            raise ValueError("Concurrency must be at least 1")
        self.fetcher = fetcher
        self.applier = applier
        self.concurrency = concurrency

    async def run(
        self,
        session: PatchSession,
        progress_sink: ProgressSink | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> SessionResult:
        """Converge the installation to the session's desired manifest.

        Args:
            session: Session to run; diffed here unless it already has
                operations
            progress_sink: Called on every status transition
            cancel_token: Checked before each operation starts

        Returns:
            Applied, failed and cancelled counts

        Raises:
            PatchIOError: If the local state cannot be read while diffing
        """
        if session.operations is None:
            operations = await asyncio.to_thread(compute_diff, session.desired, session.actual)
            session.set_operations(operations)
        assert session.operations is not None

        total = len(session.operations)
        token = cancel_token or CancellationToken()

        def emit(op: Operation, status: OperationStatus, error: PatcherError | None = None) -> None:
            session.transition(op, status, error)
            if progress_sink is not None:
                progress_sink(
                    ProgressEvent(
                        operation=op,
                        status=status,
                        completed=session.completed,
                        total=total,
                        error=str(error) if error is not None else None,
                    )
                )

        queue: asyncio.Queue[list[Operation]] = asyncio.Queue()
        for chain in group_by_path(session.operations):
            queue.put_nowait(chain)

        async def worker() -> None:
            while True:
                try:
                    chain = queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                for op in chain:
                    if token.is_cancelled():
                        emit(op, OperationStatus.FAILED, CancelledError("Cancelled", path=op.path))
                        continue
                    await self._run_one(op, emit)

        logger.info("patch_started", operations=total, concurrency=self.concurrency)
        await asyncio.to_thread(self.applier.remove_leftovers)

        try:
            workers = min(self.concurrency, max(total, 1))
            await asyncio.gather(*(worker() for _ in range(workers)))
        finally:
            await asyncio.to_thread(_clean_staging, session.staging_dir)

        result = session.result()
        logger.info(
            "patch_finished",
            applied=result.applied_count,
            failed=result.failed_count,
            cancelled=result.cancelled_count,
            delta_fallbacks=self.fetcher.delta_fallbacks,
            bytes_downloaded=self.fetcher.bytes_downloaded,
        )
        return result

    async def _run_one(self, op: Operation, emit) -> None:
        staged: StagedFile | None = None
        try:
            if not isinstance(op, DeleteOperation):
                emit(op, OperationStatus.FETCHING)
                try:
                    staged = await self.fetcher.fetch(op)
                except PatcherError as e:
                    logger.warning("fetch_failed", path=op.path, kind=e.kind, error=str(e))
                    emit(op, OperationStatus.FAILED, e)
                    return
                emit(op, OperationStatus.STAGED)

            result = await asyncio.to_thread(self.applier.apply, op, staged)
        except Exception as e:
            logger.error(
                "operation_crashed", path=op.path, kind=op.kind, error=str(e), exc_info=True
            )
            emit(
                op,
                OperationStatus.FAILED,
                PatcherError(f"Unexpected {type(e).__name__}: {e}", path=op.path),
            )
            return
        finally:
            if staged is not None:
                staged.discard()

        if result.ok:
            emit(op, OperationStatus.APPLIED)
        else:
            emit(op, OperationStatus.FAILED, result.error)


def _clean_staging(staging_dir: Path) -> None:
    """Remove leftover staged and partial payloads, then the empty staging directory."""
    if not staging_dir.is_dir():
        return
    for path in [*staging_dir.glob("*.staged"), *staging_dir.glob("*.partial")]:
        try:
            path.unlink()
        except OSError as e:
            logger.warning("staged_cleanup_failed", path=str(path), error=str(e))
    try:
        staging_dir.rmdir()
    except OSError:
        logger.debug("staging_dir_kept", path=str(staging_dir))


async def _run_session(
    session: PatchSession,
    concurrency: int,
    progress_sink: ProgressSink | None,
    cancel_token: CancellationToken | None,
    config: FetchConfig | None,
    retry_policy: RetryPolicy | None,
    client,
) -> SessionResult:
    fetcher = PatchFetcher(
        session.environment.patch_server_base_url,
        install_dir=session.install_dir,
        staging_dir=session.staging_dir,
        config=config,
        client=client,
        retry_policy=retry_policy,
    )
    applier = PatchApplier(session.install_dir, session.hash_store)
    async with fetcher:
        orchestrator = PatchOrchestrator(fetcher, applier, concurrency=concurrency)
        return await orchestrator.run(session, progress_sink, cancel_token)


def run_patch(
    session: PatchSession,
    concurrency: int = DEFAULT_CONCURRENCY,
    progress_sink: ProgressSink | None = None,
    cancel_token: CancellationToken | None = None,
    *,
    config: FetchConfig | None = None,
    retry_policy: RetryPolicy | None = None,
    client=None,
) -> SessionResult:
    """Run a session to completion from synchronous code.

    Args:
        session: Session to run
        concurrency: Maximum operations in flight
        progress_sink: Called on every status transition
        cancel_token: Set from another thread to stop starting new work
        config: Fetch configuration (timeouts, retries, SSL)
        retry_policy: Override the policy derived from ``config``
        client: Pre-built ``httpx.AsyncClient`` (tests, custom transports)

    Returns:
        Session result
    """
    return asyncio.run(
        _run_session(
            session, concurrency, progress_sink, cancel_token, config, retry_policy, client
        )
    )
