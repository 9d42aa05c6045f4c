"""Patch server client: download, verify and stage file payloads.

Full files live on the patch server as sd0 payloads addressed by content
hash::

    {base}/{h[0]}/{h[1]}/{h}.sd0

Deltas are ZBSDIFF1 patches addressed by (from, to) hash::

    {base}/deltas/{to[0]}/{to[1]}/{from}_{to}.zbsdiff

A delta is only an optimization: if it is missing, malformed, or produces
the wrong content, the full file is fetched instead.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from dataclasses import dataclass
from pathlib import Path

import httpx
import structlog

from lux_patcher.core.config import FetchConfig
from lux_patcher.core.errors import FetchError, FileSystemError, IntegrityError, PatcherError
from lux_patcher.core.integrity import verify_content
from lux_patcher.core.retry import RetryPolicy
from lux_patcher.core.types import (
    AddOperation,
    DeleteOperation,
    FileEntry,
    Operation,
    UpdateOperation,
)
from lux_patcher.core.utils import compute_md5
from lux_patcher.formats.sd0 import decompress_sd0
from lux_patcher.formats.zbsdiff import apply_zbsdiff

logger = structlog.get_logger()


@dataclass
class StagedFile:
    """Verified payload waiting to be committed.

    Attributes:
        path: Location in the staging directory
        hash: MD5 of the content (equals the manifest entry's hash)
        size: Content size in bytes
        via_delta: Whether the content was produced by a delta
    """

    path: Path
    hash: str
    size: int
    via_delta: bool = False

    def discard(self) -> None:
        """Remove the staged file, if still present."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("staged_discard_failed", path=str(self.path), error=str(e))


def _write_staged(staging_dir: Path, digest: str, data: bytes) -> Path:
    staging_dir.mkdir(parents=True, exist_ok=True)
    token = uuid.uuid4().hex
    path = staging_dir / f"{digest}.{token}.staged"
    tmp_path = staging_dir / f"{digest}.{token}.partial"
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    return path


class PatchFetcher:
    """Fetches and stages payloads for add and update operations.

    Args:
        base_url: Patch server directory URL
        install_dir: Installation directory (source of delta bases)
        staging_dir: Directory verified payloads are written to
        config: Fetch configuration (timeout, retries, SSL)
        client: Optional pre-built async HTTP client
        retry_policy: Override the policy derived from ``config``
    """

    def __init__(
        self,
        base_url: str,
        install_dir: Path,
        staging_dir: Path,
        config: FetchConfig | None = None,
        client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.install_dir = install_dir
        self.staging_dir = staging_dir
        self.config = config or FetchConfig()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self._client = client
        self._owns_client = client is None

        self.bytes_downloaded = 0
        self.delta_fallbacks = 0

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                verify=self.config.verify_ssl,
                follow_redirects=True,
            )
        return self._client

    def full_url(self, content_hash: str) -> str:
        """URL of the sd0 payload for a content hash."""
        h = content_hash.lower()
        return f"{self.base_url}{h[0]}/{h[1]}/{h}.sd0"

    def delta_url(self, from_hash: str, to_hash: str) -> str:
        """URL of the ZBSDIFF1 delta between two content hashes."""
        f, t = from_hash.lower(), to_hash.lower()
        return f"{self.base_url}deltas/{t[0]}/{t[1]}/{f}_{t}.zbsdiff"

    async def get_bytes(self, url: str) -> bytes:
        """GET a URL, retrying transport errors and 5xx responses.

        Raises:
            FetchError: On a 4xx response, an undecodable body, or once the
                retry budget is spent
        """
        last_error = ""
        last_status: int | None = None
        policy = self.retry_policy

        for attempt in range(1, policy.max_attempts + 1):
            try:
                response = await self.client.get(url)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = None
            except httpx.HTTPError as e:
                # Decoding errors and redirect loops are not retried
                raise FetchError(
                    f"Fetching {url} failed: {type(e).__name__}: {e}",
                    url=url,
                    attempts=attempt,
                ) from e
            else:
                last_status = response.status_code
                if response.is_success:
                    self.bytes_downloaded += len(response.content)
                    return response.content
                last_error = f"HTTP {response.status_code}"
                if response.status_code < 500:
                    raise FetchError(
                        f"Fetching {url} failed: {last_error}",
                        url=url,
                        attempts=attempt,
                        status_code=last_status,
                    )

            if not policy.should_retry(attempt):
                break
            delay = policy.delay(attempt)
            logger.debug("fetch_retry", url=url, attempt=attempt, wait=delay, error=last_error)
            await asyncio.sleep(delay)

        logger.warning("fetch_failed", url=url, attempts=policy.max_attempts, error=last_error)
        raise FetchError(
            f"Fetching {url} failed after {policy.max_attempts} attempts: {last_error}",
            url=url,
            attempts=policy.max_attempts,
            status_code=last_status,
        )

    async def fetch(self, operation: Operation) -> StagedFile:
        """Download, verify and stage the payload for an operation.

        Args:
            operation: Add or update operation

        Returns:
            Staged file whose content matches the entry

        Raises:
            FetchError: If the payload cannot be downloaded
            IntegrityError: If the payload does not match the entry
            ValueError: If called with a delete operation
        """
        if isinstance(operation, DeleteOperation):
            raise ValueError("Delete operations have no payload")

        if isinstance(operation, UpdateOperation) and operation.is_delta:
            staged = await self._try_delta(operation)
            if staged is not None:
                return staged
            self.delta_fallbacks += 1

        assert isinstance(operation, (AddOperation, UpdateOperation))
        return await self._fetch_full(operation.entry)

    async def _fetch_full(self, entry: FileEntry) -> StagedFile:
        payload = await self.get_bytes(self.full_url(entry.hash))

        if entry.compressed_hash is not None:
            verify_content(payload, entry.compressed_hash, entry.compressed_size, path=entry.path)

        try:
            content = decompress_sd0(payload)
        except ValueError as e:
            raise IntegrityError(
                f"Corrupt payload for {entry.path}: {e}", path=entry.path
            ) from e

        verify_content(content, entry.hash, entry.size, path=entry.path)
        return await self._stage(entry, content, via_delta=False)

    async def _try_delta(self, operation: UpdateOperation) -> StagedFile | None:
        entry = operation.entry
        assert operation.from_hash is not None
        url = self.delta_url(operation.from_hash, entry.hash)
        local = self.install_dir / (operation.local_path or operation.path)

        try:
            # Read fresh: the delta base must be what is on disk right now
            old_data = await asyncio.to_thread(local.read_bytes)
            if compute_md5(old_data) != operation.from_hash:
                raise IntegrityError(
                    f"Local file {operation.path} changed since diff",
                    expected=operation.from_hash,
                    path=operation.path,
                )
            patch = await self.get_bytes(url)
            content = await asyncio.to_thread(apply_zbsdiff, old_data, patch)
            verify_content(content, entry.hash, entry.size, path=entry.path)
        except (PatcherError, ValueError, OSError) as e:
            logger.info(
                "delta_fallback",
                path=entry.path,
                from_hash=operation.from_hash,
                to_hash=entry.hash,
                error=str(e),
            )
            return None

        logger.debug("delta_applied", path=entry.path, delta_size=len(patch))
        return await self._stage(entry, content, via_delta=True)

    async def _stage(self, entry: FileEntry, content: bytes, via_delta: bool) -> StagedFile:
        try:
            path = await asyncio.to_thread(_write_staged, self.staging_dir, entry.hash, content)
        except OSError as e:
            raise FileSystemError(
                f"Cannot stage {entry.path}: {e}", path=entry.path
            ) from e
        logger.debug("payload_staged", path=entry.path, staged=str(path), size=len(content))
        return StagedFile(path=path, hash=entry.hash, size=len(content), via_delta=via_delta)

    async def aclose(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> PatchFetcher:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()
