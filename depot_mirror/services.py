"""Component wiring.

One Services instance owns the shared fetcher, so every caller in a process
(scheduled batch, on-demand sync, read commands) goes through the same
per-endpoint spacing.
"""

from __future__ import annotations

import threading

import httpx
import structlog

from depot_mirror.core.cache import Cache, DiskCache, MemoryCache, NullCache
from depot_mirror.core.config import AppConfig
from depot_mirror.core.dlc import DlcAnalyzer
from depot_mirror.core.fetcher import RateLimitedFetcher
from depot_mirror.core.repository import ArtifactRepository
from depot_mirror.core.scheduler import Scheduler
from depot_mirror.core.sync import Synchronizer
from depot_mirror.core.upstream import UpstreamResolver
from depot_mirror.database.kv_store import KeyValueStore
from depot_mirror.database.title_state import TitleStateStore

logger = structlog.get_logger()


def build_cache(config: AppConfig) -> Cache:
    """Create the configured cache backend."""
    settings = config.cache
    if not settings.enabled:
        return NullCache()
    if settings.backend == "disk":
        return DiskCache(settings.cache_dir, default_ttl=settings.analysis_ttl)
    return MemoryCache(default_ttl=settings.analysis_ttl)


class Services:
    """Lazily built components sharing one fetcher, cache and state store.

    Args:
        config: Application configuration
        client: HTTP client for the fetcher (tests pass a MockTransport client)
        fetcher: Prebuilt fetcher, overriding ``client``
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        client: httpx.Client | None = None,
        fetcher: RateLimitedFetcher | None = None,
    ):
        self.config = config
        self.cancel_event = fetcher.cancel_event if fetcher else threading.Event()
        self._client = client
        self._fetcher = fetcher
        self._cache: Cache | None = None
        self._store: KeyValueStore | None = None
        self._state: TitleStateStore | None = None
        self._resolver: UpstreamResolver | None = None
        self._repository: ArtifactRepository | None = None
        self._synchronizer: Synchronizer | None = None
        self._analyzer: DlcAnalyzer | None = None
        self._scheduler: Scheduler | None = None

    @property
    def fetcher(self) -> RateLimitedFetcher:
        """Shared rate-limited fetcher."""
        if self._fetcher is None:
            self._fetcher = RateLimitedFetcher(
                self.config.endpoints,
                self._client,
                user_agent=self.config.upstream.user_agent,
                cancel_event=self.cancel_event,
            )
        return self._fetcher

    @property
    def cache(self) -> Cache:
        """Read-path cache."""
        if self._cache is None:
            self._cache = build_cache(self.config)
        return self._cache

    @property
    def state(self) -> TitleStateStore:
        """Local state store."""
        if self._state is None:
            self._store = KeyValueStore(self.config.state_db_path)
            self._state = TitleStateStore(self._store)
        return self._state

    @property
    def resolver(self) -> UpstreamResolver:
        """Upstream catalog resolver."""
        if self._resolver is None:
            self._resolver = UpstreamResolver(self.fetcher, self.config.upstream)
        return self._resolver

    @property
    def repository(self) -> ArtifactRepository:
        """Artifact repository (read access needs owner and name only)."""
        if self._repository is None:
            self._repository = ArtifactRepository(self.fetcher, self.config.repository)
        return self._repository

    @property
    def analyzer(self) -> DlcAnalyzer:
        """DLC completeness analyzer."""
        if self._analyzer is None:
            self._analyzer = DlcAnalyzer(
                self.resolver,
                self.repository,
                self.cache,
                max_lookups=self.config.max_dlc_lookups,
                name_ttl=self.config.cache.name_ttl,
                analysis_ttl=self.config.cache.analysis_ttl,
            )
        return self._analyzer

    @property
    def synchronizer(self) -> Synchronizer:
        """Synchronizer; requires full repository credentials.

        Raises:
            ConfigError: If owner, name or token is missing
        """
        if self._synchronizer is None:
            self.config.require_repository()
            self._synchronizer = Synchronizer(
                self.resolver,
                self.repository,
                self.state,
                commit_retries=self.config.repository.commit_retries,
                name_lookup=self.analyzer.dlc_name,
            )
        return self._synchronizer

    @property
    def scheduler(self) -> Scheduler:
        """Batch scheduler; requires full repository credentials."""
        if self._scheduler is None:
            self._scheduler = Scheduler(
                self.synchronizer,
                self.state,
                self.config.scheduler,
                cancel_event=self.cancel_event,
            )
        return self._scheduler

    def import_branches(self) -> list[str]:
        """Track every title that has a branch in the artifact repository.

        Returns:
            Identifiers that were not tracked before
        """
        known = set(self.state.list_title_ids())
        added: list[str] = []
        for title_id in self.repository.list_branches(numeric_only=True):
            if title_id in known:
                continue
            self.state.track(title_id)
            added.append(title_id)

        logger.info("branches_imported", added=len(added), known=len(known))
        return added

    def close(self) -> None:
        """Stop the scheduler and release connections."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
        if self._fetcher is not None:
            self._fetcher.close()
        if self._store is not None:
            self._store.close()

    def __enter__(self) -> Services:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()
