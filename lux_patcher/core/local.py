"""Lazy view of an installation directory as a manifest.

Files are enumerated once (when scanning is enabled) but only hashed when
the differ asks for them, through the session's ``HashStore``.
"""

from __future__ import annotations

import fnmatch
import os
from collections.abc import Iterable
from pathlib import Path

import structlog

from lux_patcher.core.errors import NotFoundError
from lux_patcher.core.hash_store import HashStore
from lux_patcher.core.types import FileEntry, Manifest
from lux_patcher.core.utils import normalize_path, path_key

logger = structlog.get_logger()


def _compile_patterns(patterns: Iterable[str]) -> list[str]:
    return [path_key(p) for p in patterns if p.strip()]


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    """Case-insensitive glob match of a relative path against patterns.

    Example:
        >>> matches_any("Patcher/patcher.ini", ["patcher/*"])
        True
    """
    key = path_key(path)
    return any(fnmatch.fnmatchcase(key, p) for p in _compile_patterns(patterns))


def filter_manifest(manifest: Manifest, exclude: Iterable[str]) -> Manifest:
    """Drop entries matching any exclude pattern.

    Args:
        manifest: Desired manifest
        exclude: Glob patterns (e.g. ``patcher/*``)

    Returns:
        New manifest without the excluded entries
    """
    patterns = list(exclude)
    if not patterns:
        return manifest
    kept = [e for e in manifest if not matches_any(e.path, patterns)]
    logger.debug("manifest_filtered", removed=len(manifest) - len(kept), kept=len(kept))
    return Manifest(kept, version=manifest.version, name=manifest.name)


class LocalInstallation:
    """Actual installation state, read from disk on demand.

    Args:
        root: Installation directory
        hash_store: Hash cache shared with the rest of the session
        scan: Enumerate files on disk. When False only paths asked for via
            ``get`` are looked at, so no file is ever reported as extra.
        ignore: Glob patterns never reported (staging, downloads, noclean)
    """

    def __init__(
        self,
        root: Path,
        hash_store: HashStore,
        *,
        scan: bool = True,
        ignore: Iterable[str] = (),
    ):
        self.root = root
        self.hash_store = hash_store
        self.scan = scan
        self.ignore = _compile_patterns(ignore)
        self._index: dict[str, str] | None = None

    def _ignored(self, key: str) -> bool:
        return any(fnmatch.fnmatchcase(key, p) for p in self.ignore)

    def _build_index(self) -> dict[str, str]:
        index: dict[str, str] = {}
        if not self.root.is_dir():
            return index

        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames.sort()
            for name in sorted(filenames):
                rel = Path(os.path.relpath(os.path.join(dirpath, name), self.root)).as_posix()
                key = rel.lower()
                if self._ignored(key):
                    continue
                if key in index:
                    # Case-variant duplicates only exist on case-sensitive filesystems
                    logger.warning("local_case_collision", path=rel, existing=index[key])
                    continue
                index[key] = rel

        logger.debug("local_scan_complete", root=str(self.root), files=len(index))
        return index

    @property
    def index(self) -> dict[str, str]:
        """Map of normalized key to on-disk relative path."""
        if self._index is None:
            self._index = self._build_index() if self.scan else {}
        return self._index

    def keys(self) -> Iterable[str]:
        return self.index.keys()

    def local_path(self, path: str) -> str | None:
        """On-disk spelling of a manifest path, if the file exists."""
        key = path_key(path)
        if self.scan:
            return self.index.get(key)
        if self._ignored(key):
            return None
        rel = normalize_path(path)
        return rel if (self.root / rel).is_file() else None

    def get(self, path: str) -> FileEntry | None:
        """Entry for a path as it exists on disk, hashing lazily.

        Returns:
            FileEntry with the on-disk spelling, or None if absent

        Raises:
            PatchIOError: If the file exists but cannot be read
        """
        rel = self.local_path(path)
        if rel is None:
            return None

        full_path = self.root / rel
        try:
            digest = self.hash_store.hash_of(full_path)
            size = full_path.stat().st_size
        except NotFoundError:
            return None
        except FileNotFoundError:
            return None
        return FileEntry(path=rel, size=size, hash=digest)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.local_path(path) is not None

    def snapshot(self) -> Manifest:
        """Hash every enumerated file into a concrete manifest."""
        entries: list[FileEntry] = []
        for key in list(self.keys()):
            entry = self.get(key)
            if entry is not None:
                entries.append(entry)
        return Manifest(entries)
