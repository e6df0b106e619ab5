"""DepotInfo views computed from a title branch.

The branch's ``{title_id}.json`` metadata document carries the upstream
depot table; when it is missing, depots are inferred from
``{depot}_{manifest}.manifest`` file names alone.
"""

from __future__ import annotations

import json
from typing import Any

import structlog

from depot_mirror.core.errors import NotFoundError
from depot_mirror.core.repository import ArtifactRepository
from depot_mirror.core.script import metadata_name, parse_manifest_filename
from depot_mirror.core.types import ArtifactFile, DepotInfo, DepotSummary
from depot_mirror.core.upstream import is_depot_key, track_manifest
from depot_mirror.core.utils import completion_percent, is_numeric_id

logger = structlog.get_logger()


def _to_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def parse_depot(depot_id: str, depot: dict[str, Any], track: str = "public") -> DepotInfo:
    """Build a DepotInfo from one entry of the raw depot table."""
    manifests = depot.get("manifests")
    entry = manifests.get(track) if isinstance(manifests, dict) else None
    if not isinstance(entry, dict):
        entry = {}
    config = depot.get("config")
    if not isinstance(config, dict):
        config = {}
    shared_from = _text(depot.get("depotfromapp"))

    return DepotInfo(
        depot_id=depot_id,
        manifest_id=track_manifest(depot, track),
        size=_to_int(entry.get("size")),
        download_size=_to_int(entry.get("download")),
        oslist=_text(config.get("oslist")),
        language=_text(config.get("language")),
        is_shared=shared_from is not None,
        shared_from_app=shared_from,
        is_optional=str(depot.get("optional", "")) == "1",
        has_decryption_key=bool(depot.get("decryptionkey")),
    )


def summarize(title_id: str, depots: list[DepotInfo], source: str,
              system_defined: set[str] | None = None,
              dlc_app_ids: list[int] | None = None) -> DepotSummary:
    """Compute coverage totals over a depot list.

    A depot counts as missing when it has no manifest, is not inherited from
    another title and is not system defined. Completion is the share of all
    depots that have a manifest.
    """
    system_defined = system_defined or set()
    missing = [
        d.depot_id for d in depots
        if d.manifest_id is None and not d.is_shared and d.depot_id not in system_defined
    ]
    with_manifests = sum(1 for d in depots if d.manifest_id)

    return DepotSummary(
        title_id=title_id,
        source=source,
        depots=depots,
        total_depots=len(depots),
        depots_with_manifests=with_manifests,
        shared_depots=sum(1 for d in depots if d.is_shared),
        missing_manifests=missing,
        completion_percent=completion_percent(with_manifests, len(depots)),
        dlc_app_ids=dlc_app_ids or [],
    )


def parse_game_depots(title_id: str, document: dict[str, Any], track: str = "public") -> DepotSummary:
    """Parse a metadata document (``{"depot": {...}, "dlc": {...}}``).

    Args:
        title_id: Title identifier
        document: Decoded ``{title_id}.json``
        track: Release track whose manifests count

    Returns:
        Depot summary with source ``metadata``
    """
    table = document.get("depot") or document.get("depots")
    if not isinstance(table, dict):
        table = {}
    depots: list[DepotInfo] = []
    system_defined: set[str] = set()

    for depot_id, depot in table.items():
        if not is_depot_key(depot_id) or not isinstance(depot, dict):
            continue
        if depot.get("systemdefined"):
            system_defined.add(depot_id)
        depots.append(parse_depot(depot_id, depot, track))

    dlc = document.get("dlc")
    dlc_ids = [int(k) for k in dlc if is_numeric_id(k)] if isinstance(dlc, dict) else []
    return summarize(title_id, depots, "metadata", system_defined, dlc_ids)


def depots_from_files(title_id: str, files: list[ArtifactFile]) -> DepotSummary:
    """Infer depots from manifest binary file names on a branch.

    When several manifests exist for one depot, the last listed wins.
    """
    manifests: dict[str, str] = {}
    for artifact in files:
        parsed = parse_manifest_filename(artifact.name)
        if parsed:
            depot_id, manifest_id = parsed
            manifests[depot_id] = manifest_id

    depots = [
        DepotInfo(depot_id=depot_id, manifest_id=manifest_id)
        for depot_id, manifest_id in sorted(manifests.items(), key=lambda kv: int(kv[0]))
    ]
    return summarize(title_id, depots, "files")


def load_metadata(repository: ArtifactRepository, title_id: str) -> dict[str, Any] | None:
    """Read and decode a branch's metadata document, or None if absent or invalid."""
    try:
        raw = repository.read_file(title_id, metadata_name(title_id))
    except NotFoundError:
        return None
    try:
        document = json.loads(raw)
    except ValueError:
        logger.warning("metadata_invalid", title_id=title_id)
        return None
    return document if isinstance(document, dict) else None


def describe_depots(repository: ArtifactRepository, title_id: str, track: str = "public") -> DepotSummary:
    """Depot view of a title branch.

    Raises:
        NotFoundError: If the branch does not exist
    """
    files = repository.list_files(title_id)
    names = {f.name for f in files}
    if metadata_name(title_id) in names:
        document = load_metadata(repository, title_id)
        if document is not None:
            return parse_game_depots(title_id, document, track)
    return depots_from_files(title_id, files)
