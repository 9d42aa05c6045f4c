"""Parser for ``patcher.ini``, the patch server's client configuration.

Format: ``key=value`` lines. Lines starting with ``#`` are comments,
values may be quoted, booleans are ``Yes``/``True`` (anything else is
false) and ``noclean`` may repeat. Unknown keys are rejected.
"""

from __future__ import annotations

from typing import BinaryIO

import structlog
from pydantic import BaseModel, Field

from lux_patcher.formats.base import FormatParser, read_all

logger = structlog.get_logger()

BOOL_KEYS = {
    "check",
    "quickcheck",
    "clean",
    "log",
    "waitstart",
    "usedefaultinstallpath",
    "usedynamicdownload",
}
LIST_KEYS = {"win_exclude", "mac_exclude"}


def _is_true(value: str) -> bool:
    return value in ("Yes", "True")


class PatcherConfig(BaseModel):
    """Contents of ``patcher.ini``."""

    patcherexeversion: str = ""
    serverdirectory: str = "lwoclient"
    downloaddirectory: str = "versions"
    patcherdirectory: str = "patcher"
    installerdirectory: str = "installer"
    versionfile: str = "version.txt"
    indexfile: str = "index.txt"
    defaultmanifestfile: str = "trunk.txt"
    minimalmanifestfile: str = "frontend.txt"
    hotfixmanifestfile: str = "hotfix.txt"
    packcatalog: str = "primary.pki"
    defaultinstallpath: str = ".."
    installkey: str = "Software\\NetDevil\\LEGO Universe"
    installfile: str = "lego_universe_install.exe"
    configfile: str = "{%installpath}\\client\\boot.cfg"
    win_exclude: list[str] = Field(
        default_factory=lambda: [
            "client/legouniverse_mac.exe",
            "client/stlport.5.2.dll",
            "cider/*",
            "patcher/*",
        ]
    )
    mac_exclude: list[str] = Field(
        default_factory=lambda: [
            "client/legouniverse.exe",
            "client/d3dx9_34.dll",
            "client/awesomium.dll",
            "patcher/*",
        ]
    )
    noclean: list[str] = Field(default_factory=list)
    caption: str = "LEGO Universe Updater"
    cachefile: str = "quickcheck.txt"
    check: bool = True
    quickcheck: bool = True
    clean: bool = True
    log: bool = True
    waitstart: bool = True
    usedefaultinstallpath: bool = True
    usedynamicdownload: bool = True

    def exclude_for(self, platform: str) -> list[str]:
        """Exclude patterns for a ``sys.platform`` value."""
        return list(self.mac_exclude if platform == "darwin" else self.win_exclude)

    @property
    def config_key(self) -> str:
        return f"{self.patcherdirectory}/patcher.ini"

    @property
    def install_file_key(self) -> str:
        return f"{self.installerdirectory}/{self.installfile}"


class PatcherIniParser(FormatParser[PatcherConfig]):
    """Parser for ``patcher.ini``."""

    def parse(self, data: bytes | BinaryIO) -> PatcherConfig:
        """Parse ``patcher.ini`` text.

        Raises:
            ValueError: On an unknown key
        """
        text = read_all(data).decode("utf-8-sig")
        values: dict[str, object] = {}
        noclean: list[str] = []

        for line in text.splitlines():
            if line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip('"')

            if key not in PatcherConfig.model_fields:
                raise ValueError(f"Unknown key '{key}'")
            if key == "noclean":
                noclean.append(value)
            elif key in BOOL_KEYS:
                values[key] = _is_true(value)
            elif key in LIST_KEYS:
                values[key] = [p.strip() for p in value.split(",") if p.strip()]
            else:
                values[key] = value

        if noclean:
            values["noclean"] = noclean

        config = PatcherConfig(**values)
        logger.debug("patcher_config_parsed", keys=sorted(values))
        return config

    def build(self, obj: PatcherConfig) -> bytes:
        """Serialize back to ``key=value`` lines."""
        lines = []
        for key, value in obj.model_dump().items():
            if key == "noclean":
                lines.extend(f"noclean={v}" for v in value)
            elif isinstance(value, bool):
                lines.append(f"{key}={'Yes' if value else 'No'}")
            elif isinstance(value, list):
                lines.append(f"{key}={','.join(value)}")
            else:
                lines.append(f"{key}={value}")
        return ("\n".join(lines) + "\n").encode("utf-8")


def parse_patcher_ini(data: bytes | str) -> PatcherConfig:
    """Parse ``patcher.ini`` bytes or text."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return PatcherIniParser().parse(data)
