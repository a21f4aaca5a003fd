"""Job store: durable queue of copy/sync jobs with leasing.

This module provides:
- JobSpec: validated enqueue request
- Lease: a time-bounded claim of one job by one worker
- JobStore: enqueue, claim, heartbeat, progress, terminal transitions,
  cancellation and the SyncRun lifecycle

Every mutation made on behalf of a worker is a conditional UPDATE whose
WHERE clause re-checks lease ownership, so a worker whose lease expired can
never overwrite the state written by the next claimant.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.sql.elements import ColumnElement

from cloudrelay.core.clock import Clock, SystemClock
from cloudrelay.core.config import EngineConfig
from cloudrelay.core.errors import InvalidSpec, JobNotFound, LeaseLost, ProviderError
from cloudrelay.core.types import (
    TERMINAL_STATUSES,
    DuplicateAction,
    ErrorCode,
    ItemKind,
    JobStatus,
    RunStatus,
    SyncMode,
)
from cloudrelay.engine.retry import RetryPolicy
from cloudrelay.server.models import Job, SyncRun

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from cloudrelay.server.database import Database

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


@dataclass
class JobSpec:
    """Enqueue request for a copy or sync job."""

    user_id: str
    source_provider: str
    dest_provider: str
    source_item_id: str
    dest_folder_id: str
    item_kind: ItemKind | str = ItemKind.FILE
    mode: SyncMode | str = SyncMode.ONE_SHOT_COPY
    priority: int = 0
    max_retries: int | None = None
    schedule_id: int | None = None
    duplicate_action: DuplicateAction | str = DuplicateAction.SKIP


@dataclass(frozen=True)
class Lease:
    """A worker's claim on a job.

    Attributes:
        job_id: Leased job.
        owner: Worker identity stored in ``locked_by``.
        acquired_at: Time of the claim.
        expires_at: Time the lease lapses without a heartbeat.
        job: Snapshot of the job row at claim time.
        reclaimed: True when the job was taken over from an expired lease.
    """

    job_id: str
    owner: str
    acquired_at: datetime
    expires_at: datetime
    job: Job
    reclaimed: bool = False


@dataclass
class JobResult:
    """Outcome data written by complete()."""

    item_id: str | None = None
    item_name: str | None = None
    item_url: str | None = None
    duration: float | None = None


@dataclass
class RunCounters:
    """Aggregate counters persisted on a SyncRun."""

    files_processed: int = 0
    files_new: int = 0
    files_modified: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    files_deleted: int = 0
    bytes_transferred: int = 0

    def as_values(self) -> dict[str, int]:
        """Column values for an UPDATE."""
        return {
            "files_processed": self.files_processed,
            "files_new": self.files_new,
            "files_modified": self.files_modified,
            "files_skipped": self.files_skipped,
            "files_failed": self.files_failed,
            "files_deleted": self.files_deleted,
            "bytes_transferred": self.bytes_transferred,
        }


def _required(value: Any, field_name: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidSpec(f"{field_name} is required")
    return str(value).strip()


class JobStore:
    """Single source of truth for job and SyncRun lifecycle."""

    def __init__(
        self,
        db: Database,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
        known_providers: Collection[str] | None = None,
    ) -> None:
        """Initialize the job store.

        Args:
            db: Database holding the jobs and sync_runs tables.
            config: Engine configuration (lease timeout, limits, retry delays).
            clock: Time source; defaults to the system clock.
            retry_policy: Backoff policy; built from config when omitted.
            known_providers: Provider names accepted by enqueue (any when None).
        """
        self._db = db
        self._config = config or EngineConfig()
        self._clock = clock or SystemClock()
        self._retry = retry_policy or RetryPolicy(
            base_delay=self._config.base_delay, max_delay=self._config.max_delay
        )
        self._known_providers = set(known_providers) if known_providers is not None else None
        self._lease_timeout = timedelta(seconds=self._config.lease_timeout)

    @property
    def lease_timeout(self) -> timedelta:
        """How long a lease survives without a heartbeat."""
        return self._lease_timeout

    # === Helpers ===

    def _cutoff(self, now: datetime) -> datetime:
        return now - self._lease_timeout

    def _live_lease(self, job_id: str, worker_id: str, now: datetime) -> ColumnElement[bool]:
        """Predicate matching the job only while worker_id holds a live lease."""
        return and_(
            Job.id == job_id,
            Job.locked_by == worker_id,
            Job.status == JobStatus.RUNNING.value,
            Job.locked_at > self._cutoff(now),
        )

    def _claimable(self, now: datetime) -> ColumnElement[bool]:
        """Predicate for jobs a worker may lease right now."""
        pending_due = and_(
            Job.status == JobStatus.PENDING.value,
            Job.next_run_at <= now,
            Job.locked_by.is_(None),
        )
        expired = and_(
            Job.status == JobStatus.RUNNING.value,
            or_(Job.locked_at.is_(None), Job.locked_at <= self._cutoff(now)),
        )
        return or_(pending_due, expired)

    def _guarded_update(
        self, session: Session, job_id: str, worker_id: str, now: datetime, **values: Any
    ) -> None:
        stmt = (
            update(Job)
            .where(self._live_lease(job_id, worker_id, now))
            .values(updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        if result.rowcount != 1:
            session.rollback()
            raise LeaseLost(job_id, worker_id)

    def _abandon_runs(self, session: Session, job_ids: list[str], now: datetime) -> None:
        """Close runs left open by workers whose lease expired."""
        if not job_ids:
            return
        session.execute(
            update(SyncRun)
            .where(SyncRun.job_id.in_(job_ids), SyncRun.status == RunStatus.RUNNING.value)
            .values(
                status=RunStatus.ABANDONED.value,
                completed_at=now,
                error_message="Lease expired before the run finished",
            )
            .execution_options(synchronize_session=False)
        )

    # === Enqueue ===

    def validate(self, spec: JobSpec) -> JobSpec:
        """Normalize and validate an enqueue request.

        Raises:
            InvalidSpec: If routing is incomplete or a value is unrecognized.
        """
        user_id = _required(spec.user_id, "user_id")
        source_provider = _required(spec.source_provider, "source_provider")
        dest_provider = _required(spec.dest_provider, "dest_provider")
        source_item_id = _required(spec.source_item_id, "source_item_id")
        dest_folder_id = _required(spec.dest_folder_id, "dest_folder_id")

        try:
            item_kind = ItemKind(spec.item_kind)
        except ValueError as e:
            raise InvalidSpec(f"Unrecognized item kind: {spec.item_kind!r}") from e
        try:
            mode = SyncMode(spec.mode)
        except ValueError as e:
            raise InvalidSpec(f"Unrecognized sync mode: {spec.mode!r}") from e
        try:
            duplicate_action = DuplicateAction(spec.duplicate_action)
        except ValueError as e:
            raise InvalidSpec(f"Unrecognized duplicate action: {spec.duplicate_action!r}") from e

        if self._known_providers is not None:
            for provider in (source_provider, dest_provider):
                if provider not in self._known_providers:
                    raise InvalidSpec(f"Unknown provider: {provider}")

        if isinstance(spec.priority, bool) or not isinstance(spec.priority, int):
            raise InvalidSpec("priority must be an integer")

        max_retries = spec.max_retries
        if max_retries is None:
            max_retries = self._config.default_max_retries
        if max_retries < 1:
            raise InvalidSpec("max_retries must be at least 1")

        return JobSpec(
            user_id=user_id,
            source_provider=source_provider,
            dest_provider=dest_provider,
            source_item_id=source_item_id,
            dest_folder_id=dest_folder_id,
            item_kind=item_kind,
            mode=mode,
            priority=spec.priority,
            max_retries=max_retries,
            schedule_id=spec.schedule_id,
            duplicate_action=duplicate_action,
        )

    def enqueue(self, spec: JobSpec) -> str:
        """Insert a pending job.

        Args:
            spec: Enqueue request.

        Returns:
            The new job id.

        Raises:
            InvalidSpec: If the request is rejected; nothing is stored.
        """
        valid = self.validate(spec)
        now = self._clock.now()
        with self._db.session() as session:
            job = Job(
                user_id=valid.user_id,
                source_provider=valid.source_provider,
                dest_provider=valid.dest_provider,
                source_item_id=valid.source_item_id,
                dest_folder_id=valid.dest_folder_id,
                item_kind=ItemKind(valid.item_kind).value,
                mode=SyncMode(valid.mode).value,
                duplicate_action=DuplicateAction(valid.duplicate_action).value,
                schedule_id=valid.schedule_id,
                priority=valid.priority,
                max_retries=valid.max_retries,
                status=JobStatus.PENDING.value,
                next_run_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            session.commit()
            job_id = job.id

        logger.info(
            "Enqueued job %s for user %s: %s %s -> %s (%s, priority %d)",
            job_id,
            valid.user_id,
            ItemKind(valid.item_kind).value,
            valid.source_provider,
            valid.dest_provider,
            SyncMode(valid.mode).value,
            valid.priority,
        )
        return job_id

    # === Leasing ===

    def claim_next(self, worker_id: str, capacity: int) -> list[Lease]:
        """Lease up to ``capacity`` eligible jobs to ``worker_id``.

        Eligible jobs are pending jobs whose next_run_at has passed, plus
        running jobs whose lease expired. Order: priority descending, then
        oldest due first. Each claim is a conditional UPDATE that re-checks
        eligibility, so concurrent claimants never receive the same job.

        Args:
            worker_id: Identity of the claiming worker.
            capacity: Maximum number of jobs to lease.

        Returns:
            Leases for the claimed jobs (possibly empty).
        """
        if capacity <= 0:
            return []

        now = self._clock.now()
        cap = self._config.max_jobs_per_user
        leases: list[Lease] = []

        with self._db.session() as session:
            candidates = list(
                session.execute(
                    select(Job.id, Job.user_id, Job.status, Job.locked_by)
                    .where(self._claimable(now))
                    .order_by(Job.priority.desc(), Job.next_run_at.asc(), Job.created_at.asc())
                    .limit(max(capacity * 4, 20))
                ).all()
            )
            if not candidates:
                return []

            running: dict[str, int] = {}
            if cap:
                rows = session.execute(
                    select(Job.user_id, func.count())
                    .where(
                        Job.status == JobStatus.RUNNING.value,
                        Job.locked_at > self._cutoff(now),
                    )
                    .group_by(Job.user_id)
                ).all()
                running = {user_id: count for user_id, count in rows}

            for job_id, user_id, status, previous_owner in candidates:
                if len(leases) >= capacity:
                    break
                if cap and running.get(user_id, 0) >= cap:
                    logger.debug("User %s at concurrency limit (%d), skipping job %s", user_id, cap, job_id)
                    continue

                result = session.execute(
                    update(Job)
                    .where(Job.id == job_id, self._claimable(now))
                    .values(
                        status=JobStatus.RUNNING.value,
                        locked_by=worker_id,
                        locked_at=now,
                        started_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                reclaimed = status == JobStatus.RUNNING.value
                if reclaimed:
                    self._abandon_runs(session, [job_id], now)
                session.commit()

                job = session.get(Job, job_id, populate_existing=True)
                if job is None:
                    continue
                session.expunge(job)
                running[user_id] = running.get(user_id, 0) + 1
                leases.append(
                    Lease(
                        job_id=job_id,
                        owner=worker_id,
                        acquired_at=now,
                        expires_at=now + self._lease_timeout,
                        job=job,
                        reclaimed=reclaimed,
                    )
                )
                if reclaimed:
                    logger.warning(
                        "Job %s reclaimed by %s after lease held by %s expired",
                        job_id,
                        worker_id,
                        previous_owner,
                    )
                else:
                    logger.info("Job %s leased to %s", job_id, worker_id)

        return leases

    def heartbeat(self, job_id: str, worker_id: str) -> bool:
        """Extend a lease.

        Returns:
            True if the lease was renewed, False if it was lost.
        """
        now = self._clock.now()
        with self._db.session() as session:
            result = session.execute(
                update(Job)
                .where(self._live_lease(job_id, worker_id, now))
                .values(locked_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            renewed = result.rowcount == 1
        if not renewed:
            logger.warning("Heartbeat for job %s by %s failed: lease lost", job_id, worker_id)
        return renewed

    def ensure_lease(self, job_id: str, worker_id: str) -> None:
        """Raise LeaseLost unless worker_id holds a live lease on the job."""
        now = self._clock.now()
        with self._db.session() as session:
            held = session.execute(
                select(func.count()).select_from(Job).where(self._live_lease(job_id, worker_id, now))
            ).scalar_one()
        if not held:
            raise LeaseLost(job_id, worker_id)

    def release(self, job_id: str, worker_id: str) -> bool:
        """Return a leased job to pending without counting an attempt.

        Used when a worker shuts down before starting the job.
        """
        now = self._clock.now()
        with self._db.session() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.locked_by == worker_id,
                    Job.status == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    locked_by=None,
                    locked_at=None,
                    next_run_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def reclaim_expired(self) -> int:
        """Return running jobs with expired leases to pending.

        Returns:
            Number of jobs reclaimed.
        """
        now = self._clock.now()
        expired = and_(
            Job.status == JobStatus.RUNNING.value,
            or_(Job.locked_at.is_(None), Job.locked_at <= self._cutoff(now)),
        )
        with self._db.session() as session:
            job_ids = list(session.execute(select(Job.id).where(expired)).scalars().all())
            if not job_ids:
                return 0
            result = session.execute(
                update(Job)
                .where(Job.id.in_(job_ids), expired)
                .values(
                    status=JobStatus.PENDING.value,
                    locked_by=None,
                    locked_at=None,
                    next_run_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self._abandon_runs(session, job_ids, now)
            session.commit()
            count = result.rowcount

        if count:
            logger.info("Reclaimed %d jobs with expired leases", count)
        return count

    # === Progress ===

    def set_progress(self, job_id: str, worker_id: str, completed: int, total: int) -> int:
        """Record item progress and renew the lease.

        progress_pct never decreases during the job's lifetime.

        Returns:
            The percentage computed from this update.

        Raises:
            LeaseLost: If the worker no longer holds the lease.
        """
        total = max(total, 0)
        completed = max(0, min(completed, total))
        pct = (completed * 100) // total if total else 0
        now = self._clock.now()
        with self._db.session() as session:
            self._guarded_update(
                session,
                job_id,
                worker_id,
                now,
                completed_items=completed,
                total_items=total,
                progress_pct=case((Job.progress_pct > pct, Job.progress_pct), else_=pct),
                locked_at=now,
            )
            session.commit()
        logger.debug("Job %s progress: %d/%d (%d%%)", job_id, completed, total, pct)
        return pct

    # === Terminal transitions ===

    def complete(self, job_id: str, worker_id: str, result: JobResult | None = None) -> None:
        """Mark a leased job completed and release the lease.

        Raises:
            LeaseLost: If the worker no longer holds the lease.
        """
        result = result or JobResult()
        now = self._clock.now()
        with self._db.session() as session:
            self._guarded_update(
                session,
                job_id,
                worker_id,
                now,
                status=JobStatus.COMPLETED.value,
                progress_pct=100,
                locked_by=None,
                locked_at=None,
                error_code=None,
                error_message=None,
                result_item_id=result.item_id,
                result_item_name=result.item_name,
                result_item_url=result.item_url,
                duration=result.duration,
                finished_at=now,
            )
            session.commit()
        logger.info("Job %s completed", job_id)

    def fail(
        self,
        job_id: str,
        worker_id: str,
        error: ProviderError,
        retryable: bool | None = None,
        duration: float | None = None,
    ) -> JobStatus:
        """Record a failed attempt.

        A retryable error with attempts remaining puts the job back to
        pending with a backoff next_run_at; anything else is terminal.

        Args:
            job_id: Failed job.
            worker_id: Lease owner.
            error: Classified failure.
            retryable: Overrides ``error.retryable`` when given.
            duration: Seconds spent on the attempt.

        Returns:
            PENDING if the job will be retried, FAILED otherwise.

        Raises:
            LeaseLost: If the worker no longer holds the lease.
        """
        retryable = error.retryable if retryable is None else retryable
        now = self._clock.now()
        with self._db.session() as session:
            row = session.execute(
                select(Job.attempts, Job.max_retries).where(self._live_lease(job_id, worker_id, now))
            ).one_or_none()
            if row is None:
                raise LeaseLost(job_id, worker_id)
            prior_attempts, max_retries = row
            attempts = prior_attempts + 1

            values: dict[str, Any] = {
                "attempts": attempts,
                "locked_by": None,
                "locked_at": None,
                "duration": duration,
            }
            if retryable and attempts < max_retries:
                status = JobStatus.PENDING
                next_run = self._retry.next_run_at(prior_attempts, now)
                values.update(
                    status=status.value,
                    next_run_at=next_run,
                    error_code=error.code.value,
                    error_message=error.describe(),
                )
            else:
                status = JobStatus.FAILED
                next_run = None
                if retryable:
                    code = ErrorCode.EXHAUSTED_RETRIES
                    message = f"[{code.value}] Gave up after {attempts} attempts: {error.describe()}"
                else:
                    code = error.code
                    message = error.describe()
                values.update(
                    status=status.value,
                    error_code=code.value,
                    error_message=message,
                    finished_at=now,
                )

            # attempts re-checked so two failures cannot both count as the same attempt
            stmt = (
                update(Job)
                .where(self._live_lease(job_id, worker_id, now), Job.attempts == prior_attempts)
                .values(updated_at=now, **values)
                .execution_options(synchronize_session=False)
            )
            if session.execute(stmt).rowcount != 1:
                session.rollback()
                raise LeaseLost(job_id, worker_id)
            session.commit()

        if status == JobStatus.PENDING:
            logger.warning(
                "Job %s failed (attempt %d/%d), retrying at %s: %s",
                job_id,
                attempts,
                max_retries,
                next_run.isoformat() if next_run else "-",
                error.describe(),
            )
        else:
            logger.error("Job %s failed permanently: %s", job_id, values["error_message"])
        return status

    def mark_cancelled(self, job_id: str, worker_id: str, duration: float | None = None) -> None:
        """Mark a leased job cancelled and release the lease.

        Raises:
            LeaseLost: If the worker no longer holds the lease.
        """
        now = self._clock.now()
        with self._db.session() as session:
            self._guarded_update(
                session,
                job_id,
                worker_id,
                now,
                status=JobStatus.CANCELLED.value,
                locked_by=None,
                locked_at=None,
                duration=duration,
                finished_at=now,
            )
            session.commit()
        logger.info("Job %s cancelled", job_id)

    # === Cancellation ===

    def request_cancel(self, job_id: str, user_id: str | None = None) -> Job:
        """Ask for a job to be cancelled. Idempotent.

        A pending job nobody holds is cancelled immediately. A running job
        gets the cancel_requested flag, honored by its worker between items.
        Terminal jobs are returned unchanged.

        Raises:
            JobNotFound: If the job does not exist (or is not the user's).
        """
        now = self._clock.now()
        with self._db.session() as session:
            job = self._load(session, job_id, user_id)
            if not job.is_terminal:
                result = session.execute(
                    update(Job)
                    .where(
                        Job.id == job_id,
                        Job.status == JobStatus.PENDING.value,
                        Job.locked_by.is_(None),
                    )
                    .values(
                        status=JobStatus.CANCELLED.value,
                        cancel_requested=True,
                        finished_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    logger.info("Pending job %s cancelled", job_id)
                else:
                    session.execute(
                        update(Job)
                        .where(Job.id == job_id, Job.status.not_in(_TERMINAL_VALUES))
                        .values(cancel_requested=True, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    logger.info("Cancellation requested for running job %s", job_id)
                session.commit()
                job = self._load(session, job_id, user_id, refresh=True)
            session.expunge(job)
            return job

    def is_cancel_requested(self, job_id: str) -> bool:
        """Read the cancel flag (checked by workers between items)."""
        with self._db.session() as session:
            flag = session.execute(
                select(Job.cancel_requested).where(Job.id == job_id)
            ).scalar_one_or_none()
        return bool(flag)

    # === Reads ===

    def _load(self, session: Session, job_id: str, user_id: str | None, refresh: bool = False) -> Job:
        job = session.get(Job, job_id, populate_existing=refresh)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise JobNotFound(f"Job not found: {job_id}")
        return job

    def get(self, job_id: str, user_id: str | None = None) -> Job:
        """Get a job by id.

        Args:
            job_id: Job id.
            user_id: When given, the job must belong to this user.

        Raises:
            JobNotFound: If the job does not exist (or is not the user's).
        """
        with self._db.session() as session:
            job = self._load(session, job_id, user_id)
            session.expunge(job)
            return job

    def list_jobs(
        self,
        user_id: str | None = None,
        status: JobStatus | str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        """List jobs, newest first."""
        with self._db.session() as session:
            stmt = select(Job)
            if user_id is not None:
                stmt = stmt.where(Job.user_id == user_id)
            if status is not None:
                stmt = stmt.where(Job.status == JobStatus(status).value)
            stmt = stmt.order_by(Job.created_at.desc()).limit(limit)
            jobs = list(session.execute(stmt).scalars().all())
            for job in jobs:
                session.expunge(job)
            return jobs

    def has_active_job(self, job_id: str | None) -> bool:
        """Whether the job exists and is not terminal."""
        if job_id is None:
            return False
        with self._db.session() as session:
            status = session.execute(select(Job.status).where(Job.id == job_id)).scalar_one_or_none()
        return status is not None and not JobStatus(status).is_terminal

    # === Maintenance ===

    def purge_finished(self, older_than: timedelta) -> int:
        """Delete terminal jobs (and their runs) not updated since ``older_than`` ago.

        Returns:
            Number of jobs deleted.
        """
        threshold = self._clock.now() - older_than
        with self._db.session() as session:
            result = session.execute(
                delete(Job)
                .where(Job.status.in_(_TERMINAL_VALUES), Job.updated_at <= threshold)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            count = result.rowcount
        if count:
            logger.info("Purged %d finished jobs", count)
        else:
            logger.debug("Purge: no finished jobs older than %s", threshold.isoformat())
        return count

    # === SyncRun lifecycle ===

    def start_run(self, job_id: str, worker_id: str, mode: SyncMode | str) -> SyncRun:
        """Create the running SyncRun for this execution.

        Raises:
            LeaseLost: If the worker no longer holds the lease.
        """
        now = self._clock.now()
        with self._db.session() as session:
            user_id = session.execute(
                select(Job.user_id).where(self._live_lease(job_id, worker_id, now))
            ).scalar_one_or_none()
            if user_id is None:
                raise LeaseLost(job_id, worker_id)
            run = SyncRun(
                job_id=job_id,
                user_id=user_id,
                mode=SyncMode(mode).value,
                worker_id=worker_id,
                status=RunStatus.RUNNING.value,
                started_at=now,
            )
            session.add(run)
            session.commit()
            session.expunge(run)
            return run

    def finish_run(
        self,
        run_id: int,
        status: RunStatus,
        counters: RunCounters,
        error_message: str | None = None,
    ) -> bool:
        """Finalize a SyncRun. Runs are finalized once and never again.

        Returns:
            True if the run was finalized by this call.
        """
        now = self._clock.now()
        with self._db.session() as session:
            started_at = session.execute(
                select(SyncRun.started_at).where(SyncRun.id == run_id)
            ).scalar_one_or_none()
            if started_at is None:
                return False
            result = session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status == RunStatus.RUNNING.value)
                .values(
                    status=status.value,
                    completed_at=now,
                    duration=(now - started_at).total_seconds(),
                    error_message=error_message,
                    **counters.as_values(),
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def latest_run(self, job_id: str) -> SyncRun | None:
        """Most recent SyncRun of a job."""
        with self._db.session() as session:
            run = session.execute(
                select(SyncRun)
                .where(SyncRun.job_id == job_id)
                .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if run:
                session.expunge(run)
            return run

    def list_runs(self, job_id: str) -> list[SyncRun]:
        """All SyncRuns of a job, newest first."""
        with self._db.session() as session:
            runs = list(
                session.execute(
                    select(SyncRun)
                    .where(SyncRun.job_id == job_id)
                    .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
                ).scalars().all()
            )
            for run in runs:
                session.expunge(run)
            return runs

    def last_completed_run_at(self, job: Job) -> datetime | None:
        """Completion time of the newest completed run with the same routing as ``job``.

        Runs of earlier jobs count too, so recurring syncs see the previous
        firing of their schedule.
        """
        with self._db.session() as session:
            return session.execute(
                select(SyncRun.completed_at)
                .join(Job, SyncRun.job_id == Job.id)
                .where(
                    Job.user_id == job.user_id,
                    Job.source_provider == job.source_provider,
                    Job.source_item_id == job.source_item_id,
                    Job.dest_provider == job.dest_provider,
                    Job.dest_folder_id == job.dest_folder_id,
                    SyncRun.status == RunStatus.COMPLETED.value,
                )
                .order_by(SyncRun.completed_at.desc())
                .limit(1)
            ).scalar_one_or_none()
