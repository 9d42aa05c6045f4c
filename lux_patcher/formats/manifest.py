"""Parser and builder for text manifests (``version.txt``, ``index.txt``).

Format:
- ``[version]`` header, then one line ``version,name`` or
  ``version,hash,name``
- ``[files]`` header, then one line per file:
  ``path,size,md5[,compressed_size,compressed_md5[,line_hash]]``
- optional ``[deltas]`` header, then one line per published delta:
  ``path,from_md5,delta_size``

Paths may use either separator; they are normalized on load. Blank lines
and lines starting with ``#`` are ignored.
"""

from __future__ import annotations

from typing import BinaryIO

import structlog

from lux_patcher.core.types import DeltaSource, FileEntry, Manifest
from lux_patcher.core.utils import path_key
from lux_patcher.formats.base import FormatParser, read_all

logger = structlog.get_logger()

VERSION_HEADER = "[version]"
FILES_HEADER = "[files]"
DELTAS_HEADER = "[deltas]"


def _parse_int(value: str, what: str, line_no: int) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"Line {line_no}: invalid {what}: {value!r}") from e


class ManifestParser(FormatParser[Manifest]):
    """Parser for text manifests."""

    def parse(self, data: bytes | BinaryIO) -> Manifest:
        """Parse manifest text.

        Raises:
            ValueError: If a header is missing or a line is malformed
            ConflictError: If two entries share a normalized path
        """
        text = read_all(data).decode("utf-8-sig")
        lines = [
            (no, line.strip())
            for no, line in enumerate(text.splitlines(), start=1)
            if line.strip() and not line.lstrip().startswith("#")
        ]

        if not lines or lines[0][1].lower() != VERSION_HEADER:
            raise ValueError(f"Expected '{VERSION_HEADER}' header")
        if len(lines) < 2 or lines[1][1].startswith("["):
            raise ValueError("Missing version line")

        version, name = self._parse_version(lines[1][1], lines[1][0])

        if len(lines) < 3 or lines[2][1].lower() != FILES_HEADER:
            got = lines[2][1] if len(lines) >= 3 else None
            raise ValueError(f"Expected '{FILES_HEADER}' header, got {got!r}")

        files: list[dict] = []
        deltas: dict[str, DeltaSource] = {}
        section = FILES_HEADER
        for line_no, line in lines[3:]:
            if line.startswith("["):
                if line.lower() != DELTAS_HEADER or section == DELTAS_HEADER:
                    raise ValueError(f"Line {line_no}: unexpected section {line!r}")
                section = DELTAS_HEADER
                continue

            if section == FILES_HEADER:
                files.append(self._parse_file_line(line, line_no))
            else:
                path, delta = self._parse_delta_line(line, line_no)
                deltas[path] = delta

        entries: list[FileEntry] = []
        for fields in files:
            key = path_key(fields["path"])
            entries.append(FileEntry(**fields, delta=deltas.pop(key, None)))

        if deltas:
            raise ValueError(f"Delta for unknown path: {next(iter(deltas))!r}")

        manifest = Manifest(entries, version=version, name=name)
        logger.info("manifest_loaded", name=name, version=version, files=len(manifest))
        return manifest

    def _parse_version(self, line: str, line_no: int) -> tuple[str, str]:
        parts = [p.strip() for p in line.split(",")]
        if len(parts) == 2:
            return parts[0], parts[1]
        if len(parts) == 3:
            return parts[0], parts[2]
        raise ValueError(f"Line {line_no}: malformed version line: {line!r}")

    def _parse_file_line(self, line: str, line_no: int) -> dict:
        # Paths may contain commas, so fields are taken from the right
        parts = line.split(",")
        if len(parts) < 3:
            raise ValueError(f"Line {line_no}: malformed file line: {line!r}")

        # path,size,hash | path,size,hash,csize,chash | path,size,hash,csize,chash,linehash
        for field_count in (6, 5, 3):
            if len(parts) < field_count:
                continue
            tail = parts[-(field_count - 1):]
            if field_count > 3 and not tail[2].strip().isdigit():
                continue
            path = ",".join(parts[:-(field_count - 1)])
            fields: dict = {
                "path": path,
                "size": _parse_int(tail[0].strip(), "size", line_no),
                "hash": tail[1].strip(),
            }
            if field_count > 3:
                fields["compressed_size"] = _parse_int(tail[2].strip(), "compressed size", line_no)
                fields["compressed_hash"] = tail[3].strip()
            return fields

        raise ValueError(f"Line {line_no}: malformed file line: {line!r}")

    def _parse_delta_line(self, line: str, line_no: int) -> tuple[str, DeltaSource]:
        parts = line.rsplit(",", 2)
        if len(parts) != 3:
            raise ValueError(f"Line {line_no}: malformed delta line: {line!r}")
        path, from_hash, size = parts
        delta = DeltaSource(
            from_hash=from_hash.strip(),
            size=_parse_int(size.strip(), "delta size", line_no),
        )
        return path_key(path.strip()), delta

    def build(self, obj: Manifest) -> bytes:
        """Serialize a manifest, entries sorted by key."""
        out = [VERSION_HEADER, f"{obj.version},{obj.name}", FILES_HEADER]
        entries = sorted(obj, key=lambda e: e.key)
        for e in entries:
            line = f"{e.path},{e.size},{e.hash}"
            if e.compressed_size is not None and e.compressed_hash is not None:
                line += f",{e.compressed_size},{e.compressed_hash}"
            out.append(line)

        deltas = [e for e in entries if e.delta is not None]
        if deltas:
            out.append(DELTAS_HEADER)
            for e in deltas:
                assert e.delta is not None
                out.append(f"{e.path},{e.delta.from_hash},{e.delta.size}")

        return ("\n".join(out) + "\n").encode("utf-8")


def load_manifest(data: bytes) -> Manifest:
    """Parse manifest bytes."""
    return ManifestParser().parse(data)
