"""DLC Completeness Analyzer.

Cross-references a title's declared DLC against its branch. A DLC counts as
tracked when the title script registers it with ``addappid`` or, failing
that, when the DLC has a branch of its own. Completion is measured over
content DLC only; extras (soundtracks, cosmetics, artbooks...) are listed
but do not count against it.
"""

from __future__ import annotations

import re
from typing import Any

import structlog

from depot_mirror.core.cache import Cache, NullCache
from depot_mirror.core.depots import load_metadata
from depot_mirror.core.errors import DepotMirrorError, FetchCancelledError, NotFoundError
from depot_mirror.core.repository import ArtifactRepository
from depot_mirror.core.script import referenced_ids, script_name
from depot_mirror.core.types import DlcAnalysis, DlcInfo, DlcType
from depot_mirror.core.upstream import UpstreamResolver
from depot_mirror.core.utils import completion_percent, is_numeric_id

logger = structlog.get_logger()

EXTRA_DLC_KEYWORDS = (
    "soundtrack", "ost", "original score", "music",
    "cosmetic", "skin", "costume", "outfit", "appearance",
    "art book", "artbook", "art of", "digital art",
    "wallpaper", "desktop",
    "pre-order", "preorder", "pre order", "bonus pack",
    "supporter pack", "supporter bundle",
    "digital deluxe", "digital upgrade",
    "credits", "making of", "behind the scenes",
)

# Whole words only, with an optional plural "s"
EXTRA_DLC_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(k) for k in EXTRA_DLC_KEYWORDS) + r")s?\b",
    re.IGNORECASE,
)


def classify_dlc(name: str) -> DlcType:
    """Classify a DLC by its display name.

    Examples:
        >>> classify_dlc("Original Soundtrack")
        <DlcType.EXTRA: 'extra'>
        >>> classify_dlc("Chapter 2: The Reckoning")
        <DlcType.CONTENT: 'content'>
    """
    if EXTRA_DLC_PATTERN.search(name):
        return DlcType.EXTRA
    return DlcType.CONTENT


def placeholder_name(dlc_id: int) -> str:
    """Display name used when the store has none."""
    return f"DLC {dlc_id}"


def dedicated_depots(document: dict[str, Any] | None) -> set[int]:
    """DLC identifiers that own a depot in a metadata document."""
    if not document:
        return set()
    table = document.get("depot") or document.get("depots")
    if not isinstance(table, dict):
        return set()

    owners: set[int] = set()
    for depot_id, depot in table.items():
        if not is_numeric_id(depot_id):
            continue
        owners.add(int(depot_id))
        if isinstance(depot, dict) and is_numeric_id(str(depot.get("dlcappid", ""))):
            owners.add(int(depot["dlcappid"]))
    return owners


class DlcAnalyzer:
    """Computes DLC completeness for a title.

    Args:
        resolver: Upstream resolver (DLC list and names)
        repository: Artifact repository (script and branch checks)
        cache: Cache for DLC names and analysis results
        max_lookups: DLC checked per query; the rest get placeholder names
        name_ttl: Lifetime of cached DLC names in seconds
        analysis_ttl: Lifetime of cached analyses in seconds
    """

    def __init__(
        self,
        resolver: UpstreamResolver,
        repository: ArtifactRepository,
        cache: Cache | None = None,
        *,
        max_lookups: int = 50,
        name_ttl: float = 3600,
        analysis_ttl: float = 300,
    ):
        self.resolver = resolver
        self.repository = repository
        self.cache = cache if cache is not None else NullCache()
        self.max_lookups = max_lookups
        self.name_ttl = name_ttl
        self.analysis_ttl = analysis_ttl

    def dlc_name(self, dlc_id: int) -> str:
        """Display name of a DLC, from cache or the store."""
        key = f"dlc-name:{dlc_id}"
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("dlc_name_cache_hit", dlc_id=dlc_id)
            return cached

        try:
            name = self.resolver.dlc_name(dlc_id)
        except FetchCancelledError:
            raise
        except DepotMirrorError as e:
            logger.debug("dlc_name_unavailable", dlc_id=dlc_id, error=str(e))
            name = None

        if not name:
            return placeholder_name(dlc_id)
        self.cache.set(key, name, ttl=self.name_ttl)
        return name

    def _script_references(self, title_id: str) -> set[int]:
        try:
            return referenced_ids(self.repository.read_text(title_id, script_name(title_id)))
        except NotFoundError:
            return set()
        except FetchCancelledError:
            raise
        except DepotMirrorError as e:
            logger.warning("dlc_script_unreadable", title_id=title_id, error=str(e))
            return set()

    def _own_depots(self, title_id: str) -> set[int]:
        try:
            return dedicated_depots(load_metadata(self.repository, title_id))
        except FetchCancelledError:
            raise
        except DepotMirrorError as e:
            logger.warning("dlc_metadata_unreadable", title_id=title_id, error=str(e))
            return set()

    def _has_branch(self, dlc_id: int) -> bool:
        try:
            return self.repository.branch_exists(str(dlc_id))
        except FetchCancelledError:
            raise
        except DepotMirrorError as e:
            logger.warning("dlc_branch_check_failed", dlc_id=dlc_id, error=str(e))
            return False

    def analyze(self, title_id: str, use_cache: bool = True) -> DlcAnalysis:
        """Compute DLC completeness for a title.

        Args:
            title_id: Parent title identifier
            use_cache: Return a recent cached analysis if one exists

        Returns:
            Analysis with per-DLC tracking state and content completion

        Raises:
            UpstreamUnavailableError: If the DLC list cannot be resolved
        """
        title_id = str(title_id)
        key = f"dlc-analysis:{title_id}"
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("dlc_analysis_cache_hit", title_id=title_id)
                return DlcAnalysis.model_validate(cached)

        dlc_ids = list(dict.fromkeys(self.resolver.resolve_dlc_ids(title_id)))
        if not dlc_ids:
            analysis = DlcAnalysis(title_id=title_id)
            self.cache.set(key, analysis.model_dump(mode="json"), ttl=self.analysis_ttl)
            return analysis

        in_script = self._script_references(title_id)
        own_depots = self._own_depots(title_id)

        dlc_list: list[DlcInfo] = []
        for index, dlc_id in enumerate(dlc_ids):
            checked = index < self.max_lookups
            name = self.dlc_name(dlc_id) if checked else placeholder_name(dlc_id)
            tracked = dlc_id in in_script
            if not tracked and checked:
                tracked = self._has_branch(dlc_id)
            dlc_list.append(DlcInfo(
                app_id=dlc_id,
                name=name,
                is_tracked=tracked,
                has_own_depot=dlc_id in own_depots,
                dlc_type=classify_dlc(name),
            ))

        content = [d for d in dlc_list if d.dlc_type == DlcType.CONTENT]
        tracked_total = sum(1 for d in dlc_list if d.is_tracked)
        tracked_content = sum(1 for d in content if d.is_tracked)

        analysis = DlcAnalysis(
            title_id=title_id,
            total_dlc=len(dlc_list),
            content_dlc_count=len(content),
            extra_dlc_count=len(dlc_list) - len(content),
            tracked_dlc=tracked_total,
            tracked_content_dlc=tracked_content,
            missing_dlc=len(dlc_list) - tracked_total,
            completion_percent=completion_percent(tracked_content, len(content)),
            dlc_list=dlc_list,
        )
        self.cache.set(key, analysis.model_dump(mode="json"), ttl=self.analysis_ttl)

        logger.info(
            "dlc_analyzed",
            title_id=title_id,
            total=analysis.total_dlc,
            tracked_content=tracked_content,
            completion=analysis.completion_percent,
        )
        return analysis
