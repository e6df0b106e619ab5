"""Local State Store: last-confirmed manifest state per title."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from depot_mirror.core.types import TitleRecord
from depot_mirror.database.kv_store import KeyValueStore

logger = structlog.get_logger()


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class TitleStateStore:
    """TitleRecord persistence on top of the key-value store.

    The synchronizer is the only writer of depot manifests, and it writes
    only after the artifact repository confirmed a commit. Merges are done
    under a lock so two reconciliations of the same title cannot drop each
    other's depots.

    Args:
        store: Backing key-value store
        clock: Source of "now" for sync timestamps
    """

    COLLECTION = "titles"
    RECENT_WINDOW = timedelta(hours=24)

    def __init__(self, store: KeyValueStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock
        self._lock = threading.Lock()

    def get(self, title_id: str) -> TitleRecord | None:
        """Return the stored record, or None if the title is unknown."""
        document = self.store.get(self.COLLECTION, str(title_id))
        if document is None:
            return None
        return TitleRecord.model_validate(document)

    def load(self, title_id: str) -> TitleRecord:
        """Return the stored record, or an empty one if absent."""
        return self.get(title_id) or TitleRecord(title_id=str(title_id))

    def save(self, record: TitleRecord) -> None:
        """Upsert a record."""
        self.store.put(self.COLLECTION, record.title_id, record.model_dump(mode="json"))

    def track(self, title_id: str, name: str | None = None) -> TitleRecord:
        """Register a title for batch reconciliation.

        Returns:
            The existing record, or the newly created one
        """
        title_id = str(title_id)
        with self._lock:
            record = self.get(title_id)
            if record is None:
                record = TitleRecord(title_id=title_id, name=name)
                self.save(record)
                logger.info("title_tracked", title_id=title_id)
            elif name and not record.name:
                record.name = name
                self.save(record)
        return record

    def untrack(self, title_id: str) -> bool:
        """Forget a title. Returns True if it was known."""
        removed = self.store.delete(self.COLLECTION, str(title_id))
        if removed:
            logger.info("title_untracked", title_id=title_id)
        return removed

    def list_title_ids(self) -> list[str]:
        """Every known title, in registration order."""
        return self.store.keys(self.COLLECTION)

    def records(self) -> list[TitleRecord]:
        """Every stored record."""
        return [TitleRecord.model_validate(doc) for _, doc in self.store.items(self.COLLECTION)]

    def record_commit(
        self,
        title_id: str,
        committed: dict[str, str],
        build_id: str | None = None,
        name: str | None = None,
    ) -> TitleRecord:
        """Record depots confirmed on the branch by a successful commit.

        Only the depots in ``committed`` are changed; everything else in the
        stored mapping is left as it was.

        Args:
            title_id: Title identifier
            committed: Depot ID to manifest ID for exactly the committed depots
            build_id: Public-track build identifier, if known
            name: Title name, if known

        Returns:
            The updated record
        """
        with self._lock:
            record = self.load(title_id)
            record.depot_manifests.update(committed)
            if build_id is not None:
                record.build_id = build_id
            if name and not record.name:
                record.name = name
            record.last_synced_at = self._clock()
            record.auto_updated = True
            self.save(record)

        logger.info(
            "title_state_recorded",
            title_id=title_id,
            depots=sorted(committed),
            build_id=record.build_id,
        )
        return record

    def statistics(self) -> dict[str, Any]:
        """Catalog-wide counters.

        Returns:
            Dictionary with total, auto_updated, recently_synced,
            with_manifests and coverage percent
        """
        records = self.records()
        cutoff = self._clock() - self.RECENT_WINDOW
        total = len(records)
        with_manifests = sum(1 for r in records if r.depot_manifests)

        return {
            "total_titles": total,
            "auto_updated": sum(1 for r in records if r.auto_updated),
            "recently_synced": sum(
                1 for r in records if r.last_synced_at and r.last_synced_at >= cutoff
            ),
            "with_manifests": with_manifests,
            "coverage_percent": round(with_manifests / total * 100) if total else 0,
        }
