"""Lease scheduler and maintenance tasks.

This module provides:
- Periodic claiming of due jobs into the worker pool
- Periodic return of jobs with expired leases to pending
- Periodic firing of recurring sync schedules
- Automatic daily purge of finished jobs at 3:00 AM
- Manual trigger functions for CLI/API usage
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from cloudrelay.core.config import EngineConfig
    from cloudrelay.engine.pool import WorkerPool
    from cloudrelay.server.jobs import JobStore
    from cloudrelay.server.schedules import ScheduleStore

logger = logging.getLogger(__name__)


class LeaseScheduler:
    """Drives the job engine of one process.

    Runs on a BackgroundScheduler:
    - tick every ``poll_interval`` seconds: lease due jobs into free pool slots
    - reclaim every ``lease_timeout`` seconds: expired leases back to pending
    - schedule check every ``schedule_interval`` seconds
    - purge of finished jobs daily at hour:minute
    """

    def __init__(
        self,
        job_store: JobStore,
        pool: WorkerPool,
        config: EngineConfig,
        schedules: ScheduleStore | None = None,
        hour: int = 3,
        minute: int = 0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            job_store: Job store to claim from.
            pool: Worker pool executing claimed jobs.
            config: Engine configuration (worker id, intervals, retention).
            schedules: Recurring sync schedules to fire (optional).
            hour: Hour to run the purge job (0-23).
            minute: Minute to run the purge job (0-59).
        """
        self._jobs = job_store
        self._pool = pool
        self._config = config
        self._schedules = schedules
        self._hour = hour
        self._minute = minute
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def tick(self) -> int:
        """Claim up to the pool's free slots and submit the leases.

        Returns:
            Number of jobs submitted.
        """
        slots = self._pool.free_slots
        if slots <= 0:
            return 0
        submitted = 0
        for lease in self._jobs.claim_next(self._config.worker_id, slots):
            if self._pool.submit(lease):
                submitted += 1
            else:
                self._jobs.release(lease.job_id, lease.owner)
        if submitted:
            logger.debug("Tick: submitted %d jobs", submitted)
        return submitted

    def reclaim_now(self) -> int:
        """Return jobs whose lease expired to pending.

        Claims also take over expired leases, but only when this process
        has free slots.

        Returns:
            Number of jobs reclaimed.
        """
        return self._jobs.reclaim_expired()

    def fire_schedules(self) -> list[str]:
        """Enqueue jobs for due schedules.

        Returns:
            Ids of the enqueued jobs.
        """
        if self._schedules is None:
            return []
        return self._schedules.enqueue_due(self._jobs)

    def purge_now(self) -> int:
        """Purge finished jobs older than the retention period (manual trigger).

        Returns:
            Number of jobs deleted.
        """
        return self._jobs.purge_finished(timedelta(hours=self._config.retention_hours))

    def _tick_job(self) -> None:
        """Job function for the lease tick."""
        try:
            self.tick()
        except Exception:
            logger.exception("Error during lease tick")

    def _reclaim_job(self) -> None:
        """Job function for expired lease reclaim."""
        try:
            self.reclaim_now()
        except Exception:
            logger.exception("Error while reclaiming expired leases")

    def _schedules_job(self) -> None:
        """Job function for recurring sync schedules."""
        try:
            self.fire_schedules()
        except Exception:
            logger.exception("Error while firing sync schedules")

    def _purge_job(self) -> None:
        """Job function for scheduled purge."""
        logger.info(
            "Starting scheduled purge of finished jobs (retention: %.1f hours)",
            self._config.retention_hours,
        )
        try:
            self.purge_now()
        except Exception:
            logger.exception("Error during scheduled purge")

    def start(self) -> None:
        """Start the pool and the scheduler."""
        if self._scheduler is not None:
            return  # Already running

        self._pool.start()
        self._scheduler = BackgroundScheduler()

        self._scheduler.add_job(
            self._tick_job,
            trigger=IntervalTrigger(seconds=self._config.poll_interval),
            id="lease_tick",
            name="Lease due jobs",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        self._scheduler.add_job(
            self._reclaim_job,
            trigger=IntervalTrigger(seconds=self._config.lease_timeout),
            id="lease_reclaim",
            name="Reclaim expired leases",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        if self._schedules is not None:
            self._scheduler.add_job(
                self._schedules_job,
                trigger=IntervalTrigger(seconds=self._config.schedule_interval),
                id="sync_schedules",
                name="Fire sync schedules",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

        self._scheduler.add_job(
            self._purge_job,
            trigger=CronTrigger(hour=self._hour, minute=self._minute),
            id="job_purge",
            name="Daily purge of finished jobs",
            replace_existing=True,
        )

        self._scheduler.start()
        logger.info(
            "Lease scheduler started (worker %s, poll every %.1fs, lease timeout %.0fs, %d slots)",
            self._config.worker_id,
            self._config.poll_interval,
            self._config.lease_timeout,
            self._pool.max_workers,
        )

    def stop(self) -> None:
        """Stop the scheduler, then the pool."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            self._pool.stop()
            logger.info("Lease scheduler stopped")
