"""Core type definitions for lux_patcher."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from lux_patcher.core.errors import ConflictError
from lux_patcher.core.utils import normalize_path, path_key, validate_hash_string


def _validate_md5(v: str) -> str:
    if not validate_hash_string(v):
        raise ValueError(f"Invalid MD5 hash: {v!r}")
    return v.lower()


class DeltaSource(BaseModel):
    """Prior file version a delta can be applied against."""
    from_hash: str = Field(..., description="MD5 of the version the delta applies to")
    size: int = Field(..., ge=0, description="Delta payload size in bytes")

    model_config = ConfigDict(frozen=True)

    @field_validator("from_hash")
    @classmethod
    def validate_from_hash(cls, v: str) -> str:
        """Validate and lowercase the source hash."""
        return _validate_md5(v)


class FileEntry(BaseModel):
    """One file record in a manifest."""
    path: str = Field(..., description="Relative path with forward slashes")
    size: int = Field(..., ge=0, description="Uncompressed size in bytes")
    hash: str = Field(..., description="MD5 of the uncompressed content")
    compressed_size: int | None = Field(None, ge=0, description="sd0 payload size")
    compressed_hash: str | None = Field(None, description="MD5 of the sd0 payload")
    delta: DeltaSource | None = Field(None, description="Delta source, if one is published")

    model_config = ConfigDict(frozen=True)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Normalize separators and reject escaping paths."""
        return normalize_path(v)

    @field_validator("hash")
    @classmethod
    def validate_hash(cls, v: str) -> str:
        """Validate and lowercase the content hash."""
        return _validate_md5(v)

    @field_validator("compressed_hash")
    @classmethod
    def validate_compressed_hash(cls, v: str | None) -> str | None:
        """Validate and lowercase the payload hash."""
        return None if v is None else _validate_md5(v)

    @property
    def key(self) -> str:
        """Case-insensitive manifest key."""
        return path_key(self.path)


class Manifest:
    """File entries keyed by normalized path.

    Paths are unique under case-insensitive comparison; a duplicate raises
    ``ConflictError`` since nothing downstream can be trusted once two
    entries claim the same file.

    Args:
        entries: File entries
        version: Manifest version from the ``[version]`` section
        name: Manifest name from the ``[version]`` section
    """

    def __init__(
        self,
        entries: Iterable[FileEntry] = (),
        version: str = "",
        name: str = "",
    ):
        self.version = version
        self.name = name
        self._entries: dict[str, FileEntry] = {}
        for entry in entries:
            existing = self._entries.get(entry.key)
            if existing is not None:
                raise ConflictError(
                    f"Duplicate manifest path: {existing.path!r} and {entry.path!r}",
                    path=entry.path,
                )
            self._entries[entry.key] = entry

    def keys(self) -> Iterable[str]:
        """Normalized keys of all entries."""
        return self._entries.keys()

    def get(self, path: str) -> FileEntry | None:
        """Look up an entry by path (any case or separator style)."""
        return self._entries.get(path_key(path))

    def __getitem__(self, path: str) -> FileEntry:
        entry = self.get(path)
        if entry is None:
            raise KeyError(path)
        return entry

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and path_key(path) in self._entries

    def __iter__(self) -> Iterator[FileEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def total_size(self) -> int:
        """Sum of uncompressed sizes."""
        return sum(e.size for e in self._entries.values())

    def __repr__(self) -> str:
        return f"Manifest(name={self.name!r}, version={self.version!r}, files={len(self)})"


class OperationKind(StrEnum):
    """Kind of file operation."""
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class AddOperation:
    """Create a file that does not exist locally."""

    entry: FileEntry

    kind = OperationKind.ADD

    @property
    def path(self) -> str:
        return self.entry.path

    @property
    def key(self) -> str:
        return self.entry.key


@dataclass(frozen=True)
class UpdateOperation:
    """Replace a local file whose content differs.

    Attributes:
        entry: Desired entry
        from_hash: Local hash the delta applies to; None for a full replace
        local_path: On-disk spelling of the path when it differs in case
    """

    entry: FileEntry
    from_hash: str | None = None
    local_path: str | None = None

    kind = OperationKind.UPDATE

    @property
    def path(self) -> str:
        return self.entry.path

    @property
    def key(self) -> str:
        return self.entry.key

    @property
    def is_delta(self) -> bool:
        return self.from_hash is not None


@dataclass(frozen=True)
class DeleteOperation:
    """Remove a local file that is not in the desired manifest."""

    path: str

    kind = OperationKind.DELETE

    @property
    def key(self) -> str:
        return path_key(self.path)


Operation = AddOperation | UpdateOperation | DeleteOperation


class OperationStatus(StrEnum):
    """Per-operation lifecycle state within a session."""
    PENDING = "pending"
    FETCHING = "fetching"
    STAGED = "staged"
    APPLIED = "applied"
    FAILED = "failed"


class EnvironmentDescriptor(BaseModel):
    """Resolved environment a session patches against."""
    name: str = Field(..., description="Environment name (e.g., live)")
    patch_server_base_url: str = Field(..., description="Base URL of the patch server directory")
    manifest_url: str = Field(..., description="URL of the version manifest")
    server_name: str | None = Field(None, description="Selected universe name")

    model_config = ConfigDict(extra="allow")

    @field_validator("patch_server_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure the base URL ends with a slash so relative joins work."""
        return v if v.endswith("/") else v + "/"
