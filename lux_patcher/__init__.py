"""lux-patcher - game asset patcher for LEGO Universe clients.

Reconciles a local client installation against the patch server's file
manifest and applies the minimal set of downloads, deltas and deletes.

Key modules:
- core: Reconciliation, fetching, applying and orchestration
- formats: Manifest, sd0, ZBSDIFF1 and patcher.ini parsers
- commands: CLI command implementations
"""

__version__ = "0.1.0"

from lux_patcher.core.differ import compute_diff
from lux_patcher.core.orchestrator import run_patch
from lux_patcher.core.session import PatchSession, SessionResult
from lux_patcher.core.types import EnvironmentDescriptor, FileEntry, Manifest

__all__ = [
    "__version__",
    "compute_diff",
    "run_patch",
    "EnvironmentDescriptor",
    "FileEntry",
    "Manifest",
    "PatchSession",
    "SessionResult",
]
