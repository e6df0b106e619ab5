"""Time-boxed caches for read-path lookups.

Caches are injected into the components that use them; nothing in the
package holds a module-level cache. Three backends share one interface:

- MemoryCache: in-process, monotonic-clock expiry
- DiskCache: JSON files with embedded expiry, survives restarts
- NullCache: stores nothing, for tests and for disabling caching
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()


class Cache(ABC):
    """Key/value cache with per-entry lifetime.

    Args:
        default_ttl: Lifetime in seconds for entries stored without one
    """

    def __init__(self, default_ttl: float = 300.0):
        self.default_ttl = default_ttl

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the cached value, or None if absent or expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a value for ttl seconds (default_ttl if None)."""

    @abstractmethod
    def expire(self, key: str) -> None:
        """Drop a single entry."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every entry."""


class NullCache(Cache):
    """Cache that never holds anything."""

    def get(self, key: str) -> Any | None:
        return None

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        return None

    def expire(self, key: str) -> None:
        return None

    def clear(self) -> None:
        return None


class MemoryCache(Cache):
    """Thread-safe in-memory cache.

    Args:
        default_ttl: Lifetime in seconds for entries stored without one
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(default_ttl)
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = (self._clock() + lifetime, value)

    def expire(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class DiskCache(Cache):
    """JSON-file cache under a base directory.

    Each entry is one file named by the SHA-1 of its key, holding the value
    and its absolute expiry time. Values must be JSON-serializable.

    Args:
        base_dir: Cache directory, defaults to ~/.cache/depot-mirror
        default_ttl: Lifetime in seconds for entries stored without one
        clock: Wall-clock time source, injectable for tests
    """

    def __init__(
        self,
        base_dir: Path | None = None,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(default_ttl)
        self.base_dir = base_dir or (Path.home() / ".cache" / "depot-mirror")
        self.entries_dir = self.base_dir / "entries"
        self._clock = clock

        self.entries_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        return self.entries_dir / f"{digest}.json"

    def get(self, key: str) -> Any | None:
        path = self._path(key)
        if not path.exists():
            return None

        try:
            with open(path, encoding="utf-8") as f:
                entry = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("disk_cache_read_failed", key=key, error=str(e))
            return None

        if not isinstance(entry, dict) or self._clock() >= entry.get("expires_at", 0):
            self.expire(key)
            return None
        return entry.get("value")

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        path = self._path(key)
        entry = {"key": key, "expires_at": self._clock() + lifetime, "value": value}

        # Write atomically with temp file
        temp_path = path.with_suffix(".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(entry, f)
            temp_path.replace(path)
        except (OSError, TypeError) as e:
            logger.warning("disk_cache_write_failed", key=key, error=str(e))
            if temp_path.exists():
                temp_path.unlink()
            return

        logger.debug("disk_cache_stored", key=key, ttl=lifetime)

    def expire(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("disk_cache_expire_failed", key=key, error=str(e))

    def clear(self) -> None:
        for path in self.entries_dir.glob("*.json"):
            try:
                path.unlink()
            except OSError as e:
                logger.warning("disk_cache_clear_failed", path=str(path), error=str(e))

    def clear_expired(self) -> int:
        """Remove expired entries.

        Returns:
            Number of files removed
        """
        removed = 0
        now = self._clock()

        for path in self.entries_dir.glob("*.json"):
            try:
                with open(path, encoding="utf-8") as f:
                    entry = json.load(f)
                expired = now >= entry.get("expires_at", 0)
            except (json.JSONDecodeError, OSError, AttributeError):
                expired = True

            if expired:
                try:
                    path.unlink()
                    removed += 1
                except OSError as e:
                    logger.warning("cache_cleanup_failed", path=str(path), error=str(e))

        if removed > 0:
            logger.info("cache_cleanup", removed=removed)

        return removed
