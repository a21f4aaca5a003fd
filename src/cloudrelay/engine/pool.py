"""Worker pool for concurrent job execution.

This module provides:
- PoolState: lifecycle of the pool
- WorkerPool: fixed set of threads running leased jobs through JobWorker

The pool never claims jobs itself; the lease scheduler asks for
``free_slots`` and submits what it claimed.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from enum import Enum, auto
from typing import TYPE_CHECKING

from cloudrelay.core.types import JobStatus
from cloudrelay.engine.worker import JobOutcome, JobWorker

if TYPE_CHECKING:
    from cloudrelay.core.clock import Clock
    from cloudrelay.core.config import EngineConfig
    from cloudrelay.engine.providers import ProviderRegistry
    from cloudrelay.server.jobs import JobStore, Lease
    from cloudrelay.server.versions import VersionRecorder

logger = logging.getLogger(__name__)


class PoolState(Enum):
    """State of the worker pool."""

    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


class WorkerPool:
    """Pool of worker threads executing leased jobs.

    Usage:
        pool = WorkerPool(job_store, versions, providers, config)
        pool.start()
        for lease in job_store.claim_next(config.worker_id, pool.free_slots):
            pool.submit(lease)
        pool.stop()
    """

    def __init__(
        self,
        job_store: JobStore,
        versions: VersionRecorder,
        providers: ProviderRegistry,
        config: EngineConfig,
        clock: Clock | None = None,
        max_workers: int | None = None,
    ) -> None:
        """Initialize the worker pool.

        Args:
            job_store: Job persistence (used to release unstarted leases on stop).
            versions: Version recorder handed to workers.
            providers: Adapter registry handed to workers.
            config: Engine configuration.
            clock: Time source handed to workers.
            max_workers: Thread count. Defaults to config.global_concurrency.
        """
        self._jobs = job_store
        self._max_workers = max_workers or config.global_concurrency
        self._worker = JobWorker(
            job_store,
            versions,
            providers,
            config=config,
            clock=clock,
            should_stop=lambda: self._pool_state != PoolState.RUNNING,
        )

        # Pool state
        self._pool_state = PoolState.STOPPED
        self._lock = threading.Lock()

        # Task queue
        self._task_queue: queue.Queue[tuple[Lease, Callable[[JobOutcome], None] | None] | None] = (
            queue.Queue()
        )
        self._queued = 0

        # Leases currently executing, by job id
        self._active: dict[str, Lease] = {}

        # Worker threads
        self._workers: list[threading.Thread] = []

        # Statistics
        self._completed_count = 0
        self._error_count = 0

    @property
    def state(self) -> PoolState:
        """Get current pool state."""
        return self._pool_state

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def free_slots(self) -> int:
        """Number of additional leases the pool can take right now."""
        if self._pool_state != PoolState.RUNNING:
            return 0
        with self._lock:
            return max(self._max_workers - len(self._active) - self._queued, 0)

    @property
    def active_job_ids(self) -> list[str]:
        """Ids of jobs currently executing."""
        with self._lock:
            return sorted(self._active)

    @property
    def completed_count(self) -> int:
        """Get number of jobs that completed."""
        return self._completed_count

    @property
    def error_count(self) -> int:
        """Get number of attempts that failed."""
        return self._error_count

    def start(self) -> None:
        """Start the worker pool."""
        with self._lock:
            if self._pool_state != PoolState.STOPPED:
                logger.warning("Worker pool already running")
                return

            self._pool_state = PoolState.RUNNING
            for i in range(self._max_workers):
                thread = threading.Thread(
                    target=self._worker_loop,
                    name=f"WorkerPool-{i}",
                    daemon=True,
                )
                thread.start()
                self._workers.append(thread)

            logger.info("Worker pool started with %d workers", self._max_workers)

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the pool.

        Running jobs are handed back to pending at their next item boundary;
        leases still queued are released without running.

        Args:
            timeout: Maximum time to wait for workers to finish.
        """
        with self._lock:
            if self._pool_state == PoolState.STOPPED:
                return
            self._pool_state = PoolState.STOPPING
            logger.info("Worker pool stopping...")
            workers = list(self._workers)

        # Release leases that never started
        while True:
            try:
                item = self._task_queue.get_nowait()
            except queue.Empty:
                break
            if item is None:
                continue
            lease, _ = item
            with self._lock:
                self._queued -= 1
            self._jobs.release(lease.job_id, lease.owner)
            logger.info("Released queued job %s", lease.job_id)

        # Poison pills
        for _ in workers:
            self._task_queue.put(None)
        for worker in workers:
            worker.join(timeout=timeout / max(len(workers), 1))

        with self._lock:
            self._pool_state = PoolState.STOPPED
            self._workers.clear()
            logger.info("Worker pool stopped")

    def submit(self, lease: Lease, on_done: Callable[[JobOutcome], None] | None = None) -> bool:
        """Queue a leased job for execution.

        Args:
            lease: Lease returned by JobStore.claim_next.
            on_done: Called with the outcome once the job ran.

        Returns:
            True if the job was queued, False if the pool is not running.
        """
        with self._lock:
            if self._pool_state != PoolState.RUNNING:
                logger.warning("Cannot submit job %s: pool not running", lease.job_id)
                return False
            self._queued += 1
        self._task_queue.put((lease, on_done))
        logger.debug("Job %s submitted", lease.job_id)
        return True

    def _worker_loop(self) -> None:
        """Main loop for worker threads."""
        while True:
            try:
                item = self._task_queue.get(timeout=1.0)
            except queue.Empty:
                if self._pool_state != PoolState.RUNNING:
                    break
                continue

            if item is None:
                # Poison pill - stop worker
                break

            lease, on_done = item
            with self._lock:
                self._queued -= 1
                self._active[lease.job_id] = lease
            try:
                self._process(lease, on_done)
            except Exception:
                logger.exception("Unexpected error running job %s", lease.job_id)
            finally:
                with self._lock:
                    self._active.pop(lease.job_id, None)

    def _process(self, lease: Lease, on_done: Callable[[JobOutcome], None] | None) -> None:
        outcome = self._worker.run(lease)
        with self._lock:
            if outcome.status == JobStatus.COMPLETED:
                self._completed_count += 1
            elif outcome.status in (JobStatus.FAILED, JobStatus.PENDING) and outcome.error is not None:
                self._error_count += 1
        if on_done:
            on_done(outcome)
