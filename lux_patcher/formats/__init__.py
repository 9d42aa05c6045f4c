"""Patch server file formats."""

from lux_patcher.formats.base import FormatParser
from lux_patcher.formats.manifest import ManifestParser, load_manifest
from lux_patcher.formats.patcher_ini import PatcherConfig, PatcherIniParser, parse_patcher_ini
from lux_patcher.formats.sd0 import Sd0Parser, compress_sd0, decompress_sd0, is_sd0
from lux_patcher.formats.zbsdiff import ZbsdiffParser, apply_zbsdiff, create_patch

__all__ = [
    "FormatParser",
    "ManifestParser",
    "load_manifest",
    "PatcherConfig",
    "PatcherIniParser",
    "parse_patcher_ini",
    "Sd0Parser",
    "compress_sd0",
    "decompress_sd0",
    "is_sd0",
    "ZbsdiffParser",
    "apply_zbsdiff",
    "create_patch",
]
