"""Depot Mirror - keeps per-title depot manifests mirrored in a git repository.

For every tracked title, the upstream catalog's public-track depot manifests
are reconciled into a branch named after the title, with one atomic commit
per update.

Key modules:
- core: Fetcher, resolver, repository, synchronizer, DLC analysis, scheduling
- database: Local state store on SQLite
- commands: CLI command implementations
"""

__version__ = "0.1.0"

from depot_mirror.core.types import (
    ArtifactFile,
    DlcAnalysis,
    DlcType,
    SyncOutcome,
    SyncStatus,
    TitleRecord,
)

__all__ = [
    "__version__",
    "ArtifactFile",
    "DlcAnalysis",
    "DlcType",
    "SyncOutcome",
    "SyncStatus",
    "TitleRecord",
]
