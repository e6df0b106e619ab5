"""Batch and on-demand reconciliation scheduling.

The batch job runs on an APScheduler interval trigger, with the first run
shortly after start. Titles are reconciled one at a time with a fixed pause
between them; the pause and every fetcher wait observe the shared
cancellation event, so shutdown interrupts a batch between requests.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger
from structlog.contextvars import bound_contextvars

from depot_mirror.core.config import SchedulerConfig
from depot_mirror.core.sync import Synchronizer
from depot_mirror.core.types import BatchSummary, SyncOutcome, SyncStatus
from depot_mirror.database.title_state import TitleStateStore, utc_now

logger = structlog.get_logger()


class Scheduler:
    """Runs the synchronizer over the catalog.

    Args:
        synchronizer: Per-title reconciler
        state: Local state store (source of the catalog)
        config: Interval and delay settings
        cancel_event: Shutdown signal shared with the fetcher
        scheduler: APScheduler instance, BackgroundScheduler by default
        clock: Source of "now" for batch timestamps
    """

    JOB_ID = "batch_reconcile"

    def __init__(
        self,
        synchronizer: Synchronizer,
        state: TitleStateStore,
        config: SchedulerConfig | None = None,
        *,
        cancel_event: threading.Event | None = None,
        scheduler: BaseScheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.synchronizer = synchronizer
        self.state = state
        self.config = config or SchedulerConfig()
        self.cancel_event = cancel_event or threading.Event()
        self._scheduler = scheduler or BackgroundScheduler(timezone=UTC)
        self._clock = clock
        self._batch_lock = threading.Lock()
        self.last_summary: BatchSummary | None = None

    @property
    def running(self) -> bool:
        """Whether the interval job is scheduled."""
        return bool(self._scheduler.running)

    @property
    def next_run_time(self) -> datetime | None:
        """Next scheduled batch, if the scheduler is running."""
        job = self._scheduler.get_job(self.JOB_ID)
        return job.next_run_time if job else None

    def start(self) -> None:
        """Schedule the batch job and start the background scheduler."""
        first_run = self._clock() + timedelta(seconds=self.config.initial_delay)
        self._scheduler.add_job(
            self._scheduled_batch,
            trigger=IntervalTrigger(hours=self.config.interval_hours, start_date=first_run),
            id=self.JOB_ID,
            name="Batch reconciliation",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "scheduler_started",
            interval_hours=self.config.interval_hours,
            first_run=first_run.isoformat(),
        )

    def shutdown(self, wait: bool = True) -> None:
        """Signal cancellation and stop the scheduler."""
        self.cancel_event.set()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        logger.info("scheduler_shutdown")

    def _scheduled_batch(self) -> None:
        try:
            self.run_batch()
        except Exception:
            logger.exception("batch_crashed")

    def run_one(self, title_id: str) -> SyncOutcome:
        """Reconcile one title and return its outcome."""
        outcome = self.synchronizer.sync(title_id)
        logger.info(
            "title_reconciled",
            title_id=outcome.title_id,
            status=outcome.status.value,
            reason=outcome.reason or None,
        )
        return outcome

    def run_batch(self) -> BatchSummary | None:
        """Reconcile every known title, sequentially.

        Per-title failures are collected in the summary; they never stop the
        batch. Cancellation stops it before the next title.

        Returns:
            Batch summary, or None if another batch is already running
        """
        if not self._batch_lock.acquire(blocking=False):
            logger.warning("batch_already_running")
            return None

        batch_id = uuid.uuid4().hex[:12]
        try:
            with bound_contextvars(batch_id=batch_id):
                summary = self._run_batch(batch_id)
        finally:
            self._batch_lock.release()

        self.last_summary = summary
        return summary

    def _run_batch(self, batch_id: str) -> BatchSummary:
        title_ids = self.state.list_title_ids()
        summary = BatchSummary(batch_id=batch_id, started_at=self._clock(), total=len(title_ids))
        logger.info("batch_started", titles=len(title_ids))

        for index, title_id in enumerate(title_ids):
            if index > 0 and self.config.inter_title_delay > 0:
                if self.cancel_event.wait(self.config.inter_title_delay):
                    summary.cancelled = True
                    break
            elif self.cancel_event.is_set():
                summary.cancelled = True
                break

            try:
                outcome = self.synchronizer.sync(title_id)
            except Exception as e:
                logger.exception("title_crashed", title_id=title_id)
                outcome = SyncOutcome(title_id=title_id, status=SyncStatus.FAILED, reason=str(e))

            if outcome.status == SyncStatus.UPDATED:
                summary.updated += 1
            elif outcome.status == SyncStatus.UP_TO_DATE:
                summary.up_to_date += 1
            elif outcome.status == SyncStatus.CANCELLED:
                summary.cancelled = True
                break
            else:
                logger.warning("title_failed", title_id=title_id, reason=outcome.reason)
                summary.failures.append(outcome)

        summary.finished_at = self._clock()
        logger.info(
            "batch_finished",
            total=summary.total,
            updated=summary.updated,
            up_to_date=summary.up_to_date,
            failed=summary.failed,
            cancelled=summary.cancelled,
        )
        return summary
