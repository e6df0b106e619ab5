"""Upstream Catalog Resolver.

Reads the upstream info endpoint for a title and reduces its depot table to
a depot -> manifest mapping for one release track (``public`` by default).
Depots without a manifest on that track are skipped rather than filled from
another track, since a manifest from a different release channel would
overwrite a valid one.

Info payload shape::

    {"status": "success",
     "data": {"<title>": {"common": {"name": ...},
                          "extended": {"listofdlc": "1,2,3"},
                          "depots": {"<depot>": {"manifests": {"public": {"gid": ...}}},
                                     "branches": {"public": {"buildid": ...}}}}}}

The depot table interleaves configuration keys (``branches``,
``baselanguages``...) with numeric depot keys; only numeric keys are depots.
"""

from __future__ import annotations

from typing import Any

import structlog

from depot_mirror.core.config import UpstreamConfig
from depot_mirror.core.errors import FetchCancelledError, FetchError, UpstreamUnavailableError
from depot_mirror.core.fetcher import RateLimitedFetcher
from depot_mirror.core.types import ResolvedTitle
from depot_mirror.core.utils import is_numeric_id

logger = structlog.get_logger()


def is_depot_key(key: object) -> bool:
    """Check whether a depot-table key is a depot identifier."""
    return is_numeric_id(key)


def track_manifest(depot: Any, track: str) -> str | None:
    """Manifest ID of a depot on a release track, or None."""
    if not isinstance(depot, dict):
        return None
    manifests = depot.get("manifests")
    if not isinstance(manifests, dict):
        return None
    entry = manifests.get(track)
    if isinstance(entry, dict):
        gid = entry.get("gid")
    else:
        gid = entry
    if gid is None or gid == "":
        return None
    return str(gid)


def extract_manifests(depots: dict[str, Any], track: str = "public") -> dict[str, str]:
    """Reduce a raw depot table to depot -> manifest for one track.

    Args:
        depots: Raw ``depots`` object from the info payload
        track: Release track name

    Returns:
        Mapping for depots that have a manifest on ``track``
    """
    manifests: dict[str, str] = {}
    for key, depot in depots.items():
        if not is_depot_key(key):
            continue
        manifest_id = track_manifest(depot, track)
        if manifest_id is None:
            continue
        manifests[key] = manifest_id
    return manifests


def extract_build_id(depots: dict[str, Any], track: str = "public") -> str | None:
    """Build identifier of a release track, from ``depots.branches``."""
    branches = depots.get("branches")
    if not isinstance(branches, dict):
        return None
    branch = branches.get(track)
    if not isinstance(branch, dict):
        return None
    build_id = branch.get("buildid")
    return str(build_id) if build_id is not None else None


def parse_id_list(value: Any) -> list[int]:
    """Parse a comma-separated or list-valued identifier list, keeping order."""
    if value is None:
        return []
    items = value.split(",") if isinstance(value, str) else list(value)
    ids: list[int] = []
    for item in items:
        text = str(item).strip()
        if is_numeric_id(text):
            ids.append(int(text))
    return ids


class UpstreamResolver:
    """Resolves current manifests and DLC lists from the upstream catalog.

    Every request goes through the shared rate-limited fetcher.

    Args:
        fetcher: Shared fetcher
        config: Upstream endpoint configuration
    """

    def __init__(self, fetcher: RateLimitedFetcher, config: UpstreamConfig | None = None):
        self.fetcher = fetcher
        self.config = config or UpstreamConfig()

    def fetch_info(self, title_id: str) -> dict[str, Any]:
        """Fetch and validate the info payload for a title.

        Returns:
            The per-title object from the payload

        Raises:
            UpstreamUnavailableError: Unreachable, failed or malformed response
            FetchCancelledError: Shutdown observed while waiting
        """
        title_id = str(title_id)
        url = self.config.info_url.format(title_id=title_id)

        try:
            payload = self.fetcher.get_json("upstream", url)
        except FetchCancelledError:
            raise
        except FetchError as e:
            logger.warning("upstream_fetch_failed", title_id=title_id, error=str(e))
            raise UpstreamUnavailableError(title_id, str(e)) from e

        if not isinstance(payload, dict) or payload.get("status") != "success":
            status = payload.get("status") if isinstance(payload, dict) else type(payload).__name__
            raise UpstreamUnavailableError(title_id, f"unexpected status: {status}")

        data = payload.get("data")
        info = data.get(title_id) if isinstance(data, dict) else None
        if not isinstance(info, dict):
            raise UpstreamUnavailableError(title_id, "title missing from payload")
        return info

    def resolve(self, title_id: str) -> ResolvedTitle:
        """Resolve manifests, build ID and depot table for a title.

        Raises:
            UpstreamUnavailableError: If the upstream catalog cannot answer
        """
        title_id = str(title_id)
        info = self.fetch_info(title_id)
        depots = info.get("depots")
        if not isinstance(depots, dict):
            depots = {}

        track = self.config.release_track
        manifests = extract_manifests(depots, track)
        common = info.get("common")
        name = common.get("name") if isinstance(common, dict) else None

        resolved = ResolvedTitle(
            title_id=title_id,
            manifests=manifests,
            build_id=extract_build_id(depots, track),
            name=name,
            depots={k: v for k, v in depots.items() if is_depot_key(k) and isinstance(v, dict)},
        )
        logger.debug(
            "upstream_resolved",
            title_id=title_id,
            depots=len(manifests),
            build_id=resolved.build_id,
        )
        return resolved

    def resolve_manifests(self, title_id: str) -> dict[str, str]:
        """Current depot -> manifest mapping on the configured track."""
        return self.resolve(title_id).manifests

    def app_details(self, app_id: int | str) -> dict[str, Any] | None:
        """Store details for a title.

        Returns:
            The ``data`` object, or None if the store has no entry

        Raises:
            UpstreamUnavailableError: If the store endpoint cannot be reached
        """
        key = str(app_id)
        try:
            payload = self.fetcher.get_json(
                "store",
                self.config.details_url,
                params={"appids": key, "l": "english"},
            )
        except FetchCancelledError:
            raise
        except FetchError as e:
            logger.debug("store_details_failed", app_id=key, error=str(e))
            raise UpstreamUnavailableError(key, str(e)) from e

        entry = payload.get(key) if isinstance(payload, dict) else None
        if not isinstance(entry, dict) or not entry.get("success"):
            return None
        data = entry.get("data")
        return data if isinstance(data, dict) else None

    def resolve_dlc_ids(self, title_id: str) -> list[int]:
        """Declared DLC identifiers, in upstream order.

        The store details list is authoritative; titles without a store entry
        fall back to ``extended.listofdlc`` from the info payload.
        """
        details = self.app_details(title_id)
        if details is not None:
            return parse_id_list(details.get("dlc"))

        info = self.fetch_info(title_id)
        extended = info.get("extended")
        if not isinstance(extended, dict):
            return []
        return parse_id_list(extended.get("listofdlc"))

    def dlc_name(self, app_id: int) -> str | None:
        """Display name of a DLC, or None if the store does not know it."""
        details = self.app_details(app_id)
        if details is None:
            return None
        name = details.get("name")
        return str(name) if name else None

    def download_manifest(self, depot_id: str, manifest_id: str) -> bytes | None:
        """Fetch a manifest binary, if a download endpoint is configured.

        Returns:
            The manifest bytes, or None when no endpoint is configured

        Raises:
            FetchError: If the download fails
        """
        if not self.config.manifest_url:
            return None
        url = self.config.manifest_url.format(depot_id=depot_id, manifest_id=manifest_id)
        response = self.fetcher.request("manifest", "GET", url)
        logger.debug(
            "manifest_downloaded",
            depot_id=depot_id,
            manifest_id=manifest_id,
            size=len(response.content),
        )
        return response.content
