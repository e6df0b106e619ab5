"""Core functionality for depot_mirror.

- Configuration, types and errors
- Rate-limited fetcher and caches
- Upstream catalog resolver and artifact repository
- Synchronizer, DLC analyzer and scheduler
"""

from depot_mirror.core.errors import (
    ConfigError,
    DepotMirrorError,
    FetchError,
    NotFoundError,
    UpstreamUnavailableError,
    WriteConflictError,
)
from depot_mirror.core.utils import completion_percent, format_size, is_numeric_id

__all__ = [
    "ConfigError",
    "DepotMirrorError",
    "FetchError",
    "NotFoundError",
    "UpstreamUnavailableError",
    "WriteConflictError",
    "completion_percent",
    "format_size",
    "is_numeric_id",
]
