"""Drift Detector / Synchronizer.

Each title runs Resolve, Compare, Decide, Apply and Persist to completion:

- Resolve: current public-track manifests from the upstream resolver
- Compare: depots whose manifest differs from (or is absent in) local state
- Decide: nothing pending means nothing is written
- Apply: rebuild the branch files and commit them atomically, rebuilding on
  the new tip after a write conflict
- Persist: record exactly the committed depots, after the commit succeeded

Per-title failures become a SyncOutcome; they are never raised to the batch.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime

import structlog

from depot_mirror.core.errors import (
    DepotMirrorError,
    FetchCancelledError,
    FetchError,
    NotFoundError,
    SyncError,
    UpstreamUnavailableError,
    WriteConflictError,
)
from depot_mirror.core.repository import ArtifactRepository
from depot_mirror.core.script import (
    append_missing_dlc,
    apply_manifests,
    manifest_name,
    new_script,
    parse_manifest_filename,
    referenced_ids,
    script_name,
)
from depot_mirror.core.types import CommitResult, ResolvedTitle, SyncOutcome, SyncStatus
from depot_mirror.core.upstream import UpstreamResolver
from depot_mirror.database.title_state import TitleStateStore, utc_now

logger = structlog.get_logger()

UPSTREAM_UNREACHABLE = "upstream unreachable"

# (files to write, files to delete, commit message)
CommitPlan = tuple[dict[str, bytes], list[str], str]


def pending_changes(stored: dict[str, str], upstream: dict[str, str]) -> dict[str, str]:
    """Depots whose upstream manifest is absent from or differs in ``stored``."""
    return {
        depot_id: manifest_id
        for depot_id, manifest_id in upstream.items()
        if stored.get(depot_id) != manifest_id
    }


def commit_message(title_id: str, new_branch: bool) -> str:
    """Commit message for a manifest update."""
    if new_branch:
        return f"[bot] Add new game files for AppID: {title_id}"
    return f"[bot] Update files for AppID: {title_id}"


class Synchronizer:
    """Reconciles titles against the upstream catalog.

    Args:
        resolver: Upstream catalog resolver
        repository: Artifact repository
        state: Local state store
        commit_retries: Conflict retries after the first commit attempt
        name_lookup: DLC display name source used by ``add_missing_dlc``
        clock: Source of "now" for script headers
        timer: Monotonic time source for durations
    """

    def __init__(
        self,
        resolver: UpstreamResolver,
        repository: ArtifactRepository,
        state: TitleStateStore,
        *,
        commit_retries: int = 3,
        name_lookup: Callable[[int], str] | None = None,
        clock: Callable[[], datetime] = utc_now,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.resolver = resolver
        self.repository = repository
        self.state = state
        self.commit_retries = commit_retries
        self._name_lookup = name_lookup
        self._clock = clock
        self._timer = timer

    def _outcome(self, title_id: str, status: SyncStatus, started: float, **fields) -> SyncOutcome:
        return SyncOutcome(
            title_id=title_id,
            status=status,
            duration=round(self._timer() - started, 3),
            **fields,
        )

    def check(self, title_id: str) -> SyncOutcome:
        """Run Resolve and Compare only; nothing is written.

        Returns:
            DRIFTED with the pending depots, UP_TO_DATE, or UNAVAILABLE
        """
        title_id = str(title_id)
        started = self._timer()
        try:
            resolved = self.resolver.resolve(title_id)
        except UpstreamUnavailableError:
            return self._outcome(title_id, SyncStatus.UNAVAILABLE, started, reason=UPSTREAM_UNREACHABLE)
        except FetchCancelledError:
            return self._outcome(title_id, SyncStatus.CANCELLED, started, reason="cancelled")

        record = self.state.load(title_id)
        pending = pending_changes(record.depot_manifests, resolved.manifests)
        status = SyncStatus.DRIFTED if pending else SyncStatus.UP_TO_DATE
        return self._outcome(title_id, status, started, pending_depots=pending)

    def sync(self, title_id: str) -> SyncOutcome:
        """Reconcile one title.

        Returns:
            Outcome with status UPDATED, UP_TO_DATE, UNAVAILABLE, FAILED or CANCELLED
        """
        title_id = str(title_id)
        started = self._timer()
        log = logger.bind(title_id=title_id)

        try:
            resolved = self.resolver.resolve(title_id)
        except UpstreamUnavailableError as e:
            log.warning("sync_upstream_unavailable", reason=e.reason)
            return self._outcome(title_id, SyncStatus.UNAVAILABLE, started, reason=UPSTREAM_UNREACHABLE)
        except FetchCancelledError:
            return self._outcome(title_id, SyncStatus.CANCELLED, started, reason="cancelled")

        record = self.state.load(title_id)
        pending = pending_changes(record.depot_manifests, resolved.manifests)

        if not resolved.manifests:
            log.info("sync_no_public_manifests")
            return self._outcome(title_id, SyncStatus.UP_TO_DATE, started, reason="no public manifests")
        if not pending:
            log.debug("sync_up_to_date")
            return self._outcome(title_id, SyncStatus.UP_TO_DATE, started)

        log.info("sync_drift_detected", pending=sorted(pending))

        try:
            binaries, committed = self._download_manifests(title_id, pending)
            if not committed:
                return self._outcome(
                    title_id,
                    SyncStatus.FAILED,
                    started,
                    reason="no manifest could be downloaded",
                    pending_depots=pending,
                )
            result, attempts = self._commit_with_retry(
                title_id,
                lambda: self._plan_manifest_commit(title_id, resolved, committed, binaries),
            )
        except FetchCancelledError:
            log.warning("sync_cancelled")
            return self._outcome(title_id, SyncStatus.CANCELLED, started, reason="cancelled", pending_depots=pending)
        except SyncError as e:
            log.warning("sync_failed", reason=e.reason)
            return self._outcome(title_id, SyncStatus.FAILED, started, reason=e.reason, pending_depots=pending)
        except DepotMirrorError as e:
            log.warning("sync_failed", reason=str(e))
            return self._outcome(title_id, SyncStatus.FAILED, started, reason=str(e), pending_depots=pending)

        remaining = {d: m for d, m in pending.items() if d not in committed}
        self.state.record_commit(
            title_id,
            committed,
            build_id=resolved.build_id if not remaining else None,
            name=resolved.name,
        )

        log.info(
            "sync_updated",
            depots=sorted(committed),
            remaining=sorted(remaining),
            commit=result.commit_sha,
            attempts=attempts,
        )
        return self._outcome(
            title_id,
            SyncStatus.UPDATED,
            started,
            updated_depots=committed,
            pending_depots=remaining,
            commit_sha=result.commit_sha,
            files=result.files,
            attempts=attempts,
        )

    def _download_manifests(
        self, title_id: str, pending: dict[str, str]
    ) -> tuple[dict[str, bytes], dict[str, str]]:
        """Fetch manifest binaries for pending depots, when downloads are configured.

        Returns:
            (filename -> bytes, depots that can be committed)
        """
        if not self.resolver.config.manifest_url:
            return {}, dict(pending)

        binaries: dict[str, bytes] = {}
        committed: dict[str, str] = {}
        for depot_id, manifest_id in sorted(pending.items()):
            try:
                data = self.resolver.download_manifest(depot_id, manifest_id)
            except FetchCancelledError:
                raise
            except FetchError as e:
                logger.warning(
                    "manifest_download_failed",
                    title_id=title_id,
                    depot_id=depot_id,
                    manifest_id=manifest_id,
                    error=str(e),
                )
                continue
            if data is None:
                continue
            binaries[manifest_name(depot_id, manifest_id)] = data
            committed[depot_id] = manifest_id
        return binaries, committed

    def _plan_manifest_commit(
        self,
        title_id: str,
        resolved: ResolvedTitle,
        committed: dict[str, str],
        binaries: dict[str, bytes],
    ) -> CommitPlan:
        """Build the files of a manifest update against the current branch."""
        try:
            existing = {f.name for f in self.repository.list_files(title_id)}
            new_branch = False
        except NotFoundError:
            existing = set()
            new_branch = True

        keys = {
            depot_id: str(depot["decryptionkey"])
            for depot_id, depot in resolved.depots.items()
            if depot_id in committed and depot.get("decryptionkey")
        }
        now = self._clock()
        filename = script_name(title_id)

        script = None
        if filename in existing:
            try:
                script = self.repository.read_text(title_id, filename)
            except NotFoundError:
                script = None
        if script is None:
            text = new_script(title_id, resolved.name, committed, now, keys)
        else:
            text = apply_manifests(script, committed, now, keys)

        writes = dict(binaries)
        writes[filename] = text.encode("utf-8")

        superseded: list[str] = []
        if binaries:
            for name in sorted(existing):
                parsed = parse_manifest_filename(name)
                if parsed and parsed[0] in committed and parsed[1] != committed[parsed[0]]:
                    superseded.append(name)

        return writes, superseded, commit_message(title_id, new_branch)

    def _commit_with_retry(
        self, title_id: str, plan: Callable[[], CommitPlan]
    ) -> tuple[CommitResult, int]:
        """Run Apply, rebuilding the commit on the new tip after each conflict.

        Raises:
            SyncError: If conflicts outlast the retry budget
        """
        max_attempts = self.commit_retries + 1
        for attempt in range(1, max_attempts + 1):
            writes, deletes, message = plan()
            try:
                return self.repository.commit(title_id, writes, message, delete=deletes), attempt
            except WriteConflictError as e:
                logger.warning(
                    "commit_conflict",
                    title_id=title_id,
                    attempt=attempt,
                    expected=e.expected_sha,
                )
        raise SyncError(title_id, f"write conflict persisted after {max_attempts} attempts")

    def _dlc_name(self, dlc_id: int) -> str:
        if self._name_lookup is not None:
            return self._name_lookup(dlc_id)
        try:
            return self.resolver.dlc_name(dlc_id) or f"DLC {dlc_id}"
        except UpstreamUnavailableError:
            return f"DLC {dlc_id}"

    def add_missing_dlc(self, title_id: str) -> SyncOutcome:
        """Register upstream DLC that the title's script does not reference.

        Raises:
            NotFoundError: If the title has no branch or no script
        """
        title_id = str(title_id)
        started = self._timer()
        log = logger.bind(title_id=title_id)
        filename = script_name(title_id)

        if not self.repository.branch_exists(title_id):
            raise NotFoundError(title_id)

        try:
            dlc_ids = self.resolver.resolve_dlc_ids(title_id)
        except UpstreamUnavailableError as e:
            log.warning("dlc_upstream_unavailable", reason=e.reason)
            return self._outcome(title_id, SyncStatus.UNAVAILABLE, started, reason=UPSTREAM_UNREACHABLE)
        except FetchCancelledError:
            return self._outcome(title_id, SyncStatus.CANCELLED, started, reason="cancelled")

        registered = referenced_ids(self.repository.read_text(title_id, filename))
        missing = [dlc_id for dlc_id in dict.fromkeys(dlc_ids) if dlc_id not in registered]
        if not missing:
            log.info("dlc_all_registered", total=len(dlc_ids))
            return self._outcome(title_id, SyncStatus.UP_TO_DATE, started)

        try:
            names = {dlc_id: self._dlc_name(dlc_id) for dlc_id in missing}
        except FetchCancelledError:
            return self._outcome(title_id, SyncStatus.CANCELLED, started, reason="cancelled")

        def plan() -> CommitPlan:
            script = self.repository.read_text(title_id, filename)
            text = append_missing_dlc(script, [(d, names[d]) for d in missing], self._clock())
            message = f"Regenerate Lua: added {len(missing)} missing DLC(s) for AppID: {title_id}"
            return {filename: text.encode("utf-8")}, [], message

        try:
            result, attempts = self._commit_with_retry(title_id, plan)
        except FetchCancelledError:
            return self._outcome(title_id, SyncStatus.CANCELLED, started, reason="cancelled")
        except SyncError as e:
            log.warning("dlc_update_failed", reason=e.reason)
            return self._outcome(title_id, SyncStatus.FAILED, started, reason=e.reason)
        except NotFoundError:
            raise
        except DepotMirrorError as e:
            log.warning("dlc_update_failed", reason=str(e))
            return self._outcome(title_id, SyncStatus.FAILED, started, reason=str(e))

        log.info("dlc_registered", added=missing, commit=result.commit_sha)
        return self._outcome(
            title_id,
            SyncStatus.UPDATED,
            started,
            commit_sha=result.commit_sha,
            files=result.files,
            added_dlc=missing,
            attempts=attempts,
        )
