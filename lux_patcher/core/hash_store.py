"""Content hash cache for local installation files.

Hashes are cached per path and validated against the file's size and
modification time, so an unchanged file is hashed at most once per run.
The store is an explicit object owned by a session; nothing is cached at
module level.

The cache can also be persisted as a quick-check file so that a later run
can skip rehashing files that have not been touched since. Paths are
written with backslash separators, as the game client writes them::

    client\\res\\foo.fdb,1690000000.123456,1024,0123456789abcdef0123456789abcdef
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path

import structlog

from lux_patcher.core.errors import NotFoundError, PatchIOError
from lux_patcher.core.utils import md5_file, normalize_path, validate_hash_string

logger = structlog.get_logger()


@dataclass(frozen=True)
class CacheEntry:
    """One cached hash.

    Attributes:
        mtime_us: Modification time in microseconds
        size: File size in bytes
        hash: Lowercase hex MD5
    """

    mtime_us: int
    size: int
    hash: str

    def matches(self, st: os.stat_result) -> bool:
        return self.size == st.st_size and self.mtime_us == st.st_mtime_ns // 1000


class HashStore:
    """Thread-safe cache of file content hashes.

    Reads are shared across workers; a write to a path must be followed by
    ``invalidate`` or ``record`` for that path. Hashing itself runs outside
    the lock, so two workers may occasionally hash the same file; the result
    is identical either way.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(path: Path) -> str:
        return os.path.normcase(os.path.abspath(path))

    def _stat(self, path: Path) -> os.stat_result:
        try:
            st = path.stat()
        except FileNotFoundError as e:
            raise NotFoundError(f"File not found: {path}", path=str(path)) from e
        except OSError as e:
            raise PatchIOError(f"Cannot stat {path}: {e}", path=str(path)) from e
        if not path.is_file():
            raise NotFoundError(f"Not a regular file: {path}", path=str(path))
        return st

    def hash_of(self, path: Path) -> str:
        """Return the MD5 of a file, using the cache when still valid.

        Args:
            path: File to hash

        Returns:
            Lowercase hex MD5

        Raises:
            NotFoundError: If the file does not exist
            PatchIOError: If the file cannot be read
        """
        st = self._stat(path)
        key = self._key(path)

        with self._lock:
            cached = self._entries.get(key)
            if cached is not None and cached.matches(st):
                self.hits += 1
                return cached.hash
            self.misses += 1

        try:
            digest = md5_file(path)
        except FileNotFoundError as e:
            raise NotFoundError(f"File not found: {path}", path=str(path)) from e
        except OSError as e:
            raise PatchIOError(f"Cannot read {path}: {e}", path=str(path)) from e

        with self._lock:
            self._entries[key] = CacheEntry(
                mtime_us=st.st_mtime_ns // 1000, size=st.st_size, hash=digest
            )
        return digest

    def invalidate(self, path: Path) -> None:
        """Forget the cached hash for a path."""
        with self._lock:
            self._entries.pop(self._key(path), None)

    def record(self, path: Path, digest: str) -> None:
        """Record a known hash for a file that was just written.

        Falls back to invalidation if the file cannot be stat'ed.
        """
        try:
            st = path.stat()
        except OSError:
            self.invalidate(path)
            return
        with self._lock:
            self._entries[self._key(path)] = CacheEntry(
                mtime_us=st.st_mtime_ns // 1000, size=st.st_size, hash=digest.lower()
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def load(self, cache_file: Path, root: Path) -> int:
        """Load a quick-check file.

        Missing files are not an error; malformed lines are skipped.

        Args:
            cache_file: Quick-check file to read
            root: Directory the stored paths are relative to

        Returns:
            Number of entries loaded
        """
        try:
            text = cache_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return 0
        except OSError as e:
            logger.warning("quickcheck_load_failed", path=str(cache_file), error=str(e))
            return 0

        loaded = 0
        entries: dict[str, CacheEntry] = {}
        for line in text.splitlines():
            parts = line.strip().rsplit(",", 3)
            if len(parts) != 4:
                continue
            rel, mtime, size, digest = parts
            try:
                rel = normalize_path(rel)
                mtime_us = int(Decimal(mtime) * 1_000_000)
                size_val = int(size)
            except (ValueError, InvalidOperation):
                continue
            if not validate_hash_string(digest):
                continue
            entries[self._key(root / rel)] = CacheEntry(mtime_us, size_val, digest.lower())
            loaded += 1

        with self._lock:
            self._entries.update(entries)

        logger.debug("quickcheck_loaded", path=str(cache_file), entries=loaded)
        return loaded

    def save(self, cache_file: Path, root: Path) -> int:
        """Write entries under ``root`` to a quick-check file atomically.

        Args:
            cache_file: Quick-check file to write
            root: Directory stored paths are made relative to

        Returns:
            Number of entries written
        """
        root_key = self._key(root)
        with self._lock:
            items = sorted(self._entries.items())

        lines = []
        for key, entry in items:
            if not key.startswith(root_key + os.sep):
                continue
            rel = Path(os.path.relpath(key, root_key)).as_posix().replace("/", "\\")
            mtime = Decimal(entry.mtime_us) / 1_000_000
            lines.append(f"{rel},{mtime:.6f},{entry.size},{entry.hash}\n")

        cache_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = cache_file.with_suffix(cache_file.suffix + ".tmp")
        tmp_path.write_text("".join(lines), encoding="utf-8")
        os.replace(tmp_path, cache_file)

        logger.debug("quickcheck_saved", path=str(cache_file), entries=len(lines))
        return len(lines)
