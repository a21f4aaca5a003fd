"""Job worker: executes one leased job end-to-end.

This module provides:
- JobOutcome: what happened to a leased job
- JobWorker: resolve -> diff (sync modes) -> transfer -> finalize

Provider and I/O errors are classified at this boundary before they reach
the job store. Cancellation is honored between items; an item already
streaming always finishes (or fails) first. Items copied before a
cancellation or failure keep their versions.
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Callable, Collection, Iterable, Iterator
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING

from cloudrelay.core.clock import Clock, SystemClock
from cloudrelay.core.config import EngineConfig
from cloudrelay.core.errors import (
    ConcurrentAppend,
    LeaseLost,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
    classify_error,
)
from cloudrelay.core.types import (
    ChangeType,
    DuplicateAction,
    ErrorCode,
    ItemKind,
    JobStatus,
    RunStatus,
    SyncMode,
)
from cloudrelay.engine.diff import (
    DestinationRecord,
    DiffPlan,
    PlannedCopy,
    PriorState,
    Verdict,
    compute_diff,
)
from cloudrelay.engine.phases import JobPhase, PhaseTracker
from cloudrelay.engine.providers import ProviderAdapter, ProviderEntry, ProviderRegistry, walk
from cloudrelay.server.jobs import JobResult, RunCounters

if TYPE_CHECKING:
    from cloudrelay.server.jobs import JobStore, Lease
    from cloudrelay.server.models import Job
    from cloudrelay.server.versions import VersionRecorder

logger = logging.getLogger(__name__)


class JobCancelled(Exception):
    """Raised between items when cancellation was requested."""


class WorkerInterrupted(Exception):
    """Raised between items when the worker is shutting down."""


@dataclass
class JobOutcome:
    """Result of running one leased job.

    Attributes:
        job_id: The job.
        status: Status the job was left in (None if the lease was lost).
        phase: Last execution phase reached.
        counters: SyncRun counters.
        run_id: SyncRun created for this execution.
        error: Classified error for failed attempts.
        lease_lost: Whether the worker lost its lease mid-run.
    """

    job_id: str
    status: JobStatus | None
    phase: JobPhase
    counters: RunCounters = field(default_factory=RunCounters)
    run_id: int | None = None
    error: ProviderError | None = None
    lease_lost: bool = False


@dataclass
class _Meter:
    bytes: int = 0


@dataclass
class _Execution:
    """Mutable state of one execution."""

    lease: Lease
    tracker: PhaseTracker
    counters: RunCounters
    started_at: datetime
    last_heartbeat: datetime
    run_id: int | None = None
    completed_items: int = 0
    total_items: int = 0
    mapping_folder_id: str = ""
    dest_files: dict[str, dict[str, ProviderEntry]] = field(default_factory=dict)

    @property
    def job(self) -> Job:
        return self.lease.job

    @property
    def worker_id(self) -> str:
        return self.lease.owner


class JobWorker:
    """Runs leased jobs against provider adapters."""

    def __init__(
        self,
        job_store: JobStore,
        versions: VersionRecorder,
        providers: ProviderRegistry,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            job_store: Job and SyncRun persistence.
            versions: Version chain and mapping persistence.
            providers: Adapter lookup.
            config: Engine configuration (size cap, heartbeat interval, mirror policy).
            clock: Time source.
            should_stop: Polled between items; True hands the job back to pending.
        """
        self._jobs = job_store
        self._versions = versions
        self._providers = providers
        self._config = config or EngineConfig()
        self._clock = clock or SystemClock()
        self._should_stop = should_stop or (lambda: False)

    def run(self, lease: Lease) -> JobOutcome:
        """Execute a leased job and leave it in its next status.

        Never raises for job-level failures; the outcome carries them.
        """
        now = self._clock.now()
        ctx = _Execution(
            lease=lease,
            tracker=PhaseTracker(),
            counters=RunCounters(),
            started_at=now,
            last_heartbeat=now,
        )
        job = lease.job
        logger.info(
            "Worker %s starting job %s (%s %s, attempt %d/%d)",
            lease.owner,
            job.id,
            job.mode,
            job.item_kind,
            job.attempts + 1,
            job.max_retries,
        )

        try:
            run = self._jobs.start_run(job.id, lease.owner, job.mode)
            ctx.run_id = run.id
            result = self._execute(ctx)
            self._finish(ctx, RunStatus.COMPLETED)
            ctx.tracker.transition_to(JobPhase.COMPLETED)
            result.duration = self._elapsed(ctx)
            self._jobs.complete(job.id, lease.owner, result)
            return self._outcome(ctx, JobStatus.COMPLETED)

        except LeaseLost:
            logger.warning("Job %s: lease lost by %s, abandoning execution", job.id, lease.owner)
            return self._outcome(ctx, None, lease_lost=True)

        except JobCancelled:
            return self._cancel(ctx)

        except WorkerInterrupted:
            return self._interrupt(ctx)

        except Exception as exc:
            error = classify_error(exc)
            if not isinstance(exc, ProviderError):
                logger.exception("Job %s: unexpected error", job.id)
            return self._fail(ctx, error)

    # === Terminal handling ===

    def _elapsed(self, ctx: _Execution) -> float:
        return (self._clock.now() - ctx.started_at).total_seconds()

    def _outcome(
        self,
        ctx: _Execution,
        status: JobStatus | None,
        error: ProviderError | None = None,
        lease_lost: bool = False,
    ) -> JobOutcome:
        return JobOutcome(
            job_id=ctx.job.id,
            status=status,
            phase=ctx.tracker.phase,
            counters=ctx.counters,
            run_id=ctx.run_id,
            error=error,
            lease_lost=lease_lost,
        )

    def _finish(self, ctx: _Execution, status: RunStatus, error_message: str | None = None) -> None:
        if ctx.run_id is None:
            return
        self._jobs.ensure_lease(ctx.job.id, ctx.worker_id)
        if ctx.tracker.phase == JobPhase.TRANSFERRING and status == RunStatus.COMPLETED:
            ctx.tracker.transition_to(JobPhase.FINALIZING)
        self._jobs.finish_run(ctx.run_id, status, ctx.counters, error_message)

    def _interrupt(self, ctx: _Execution) -> JobOutcome:
        job = ctx.job
        try:
            self._finish(ctx, RunStatus.ABANDONED, "Worker shut down")
        except LeaseLost:
            return self._outcome(ctx, None, lease_lost=True)
        self._jobs.release(job.id, ctx.worker_id)
        logger.info("Job %s released by %s on shutdown", job.id, ctx.worker_id)
        return self._outcome(ctx, JobStatus.PENDING)

    def _cancel(self, ctx: _Execution) -> JobOutcome:
        job = ctx.job
        try:
            if not ctx.tracker.is_terminal:
                ctx.tracker.transition_to(JobPhase.CANCELLED)
            self._finish(ctx, RunStatus.CANCELLED, "Cancelled by request")
            self._jobs.mark_cancelled(job.id, ctx.worker_id, duration=self._elapsed(ctx))
        except LeaseLost:
            return self._outcome(ctx, None, lease_lost=True)
        logger.info(
            "Job %s cancelled after %d of %d items",
            job.id,
            ctx.completed_items,
            ctx.total_items,
        )
        return self._outcome(ctx, JobStatus.CANCELLED)

    def _fail(self, ctx: _Execution, error: ProviderError) -> JobOutcome:
        job = ctx.job
        try:
            if not ctx.tracker.is_terminal:
                ctx.tracker.transition_to(JobPhase.FAILED)
            self._finish(ctx, RunStatus.FAILED, error.describe())
            status = self._jobs.fail(job.id, ctx.worker_id, error, duration=self._elapsed(ctx))
        except LeaseLost:
            return self._outcome(ctx, None, error=error, lease_lost=True)
        return self._outcome(ctx, status, error=error)

    # === Execution ===

    def _check_interrupts(self, ctx: _Execution) -> None:
        """Item boundary: honor shutdown and cancellation requests."""
        if self._should_stop():
            raise WorkerInterrupted()
        if self._jobs.is_cancel_requested(ctx.job.id):
            raise JobCancelled()

    def _heartbeat(self, ctx: _Execution) -> None:
        now = self._clock.now()
        if (now - ctx.last_heartbeat).total_seconds() < self._config.heartbeat_interval:
            return
        if not self._jobs.heartbeat(ctx.job.id, ctx.worker_id):
            raise LeaseLost(ctx.job.id, ctx.worker_id)
        ctx.last_heartbeat = now

    def _progress(self, ctx: _Execution) -> None:
        self._jobs.set_progress(ctx.job.id, ctx.worker_id, ctx.completed_items, ctx.total_items)
        ctx.last_heartbeat = self._clock.now()

    def _execute(self, ctx: _Execution) -> JobResult:
        job = ctx.job
        mode = SyncMode(job.mode)
        source = self._providers.get(job.source_provider, job.user_id)
        dest = self._providers.get(job.dest_provider, job.user_id)

        # Resolving
        root = source.stat_file(job.source_item_id)
        kind = ItemKind(job.item_kind)
        if root.is_folder != (kind == ItemKind.FOLDER):
            raise PermanentProviderError(
                f"Source item {job.source_item_id} is not a {kind.value}", ErrorCode.UNSUPPORTED
            )
        dest_folder = dest.stat_file(job.dest_folder_id)
        if not dest_folder.is_folder:
            raise PermanentProviderError(
                f"Destination {job.dest_folder_id} is not a folder", ErrorCode.UNSUPPORTED
            )
        self._check_interrupts(ctx)

        if kind == ItemKind.FILE:
            snapshot = [replace(root, path=root.name)]
        else:
            snapshot = walk(source, root.id, on_folder=lambda: self._heartbeat(ctx))

        # Mappings are keyed on the folder the items are written into
        if mode == SyncMode.ONE_SHOT_COPY and kind == ItemKind.FOLDER:
            target_root = dest.ensure_folder(job.dest_folder_id, root.name)
            ctx.mapping_folder_id = target_root.id
        else:
            target_root = dest_folder
            ctx.mapping_folder_id = job.dest_folder_id

        prior, written = self._recorded_state(job, ctx.mapping_folder_id)
        if mode == SyncMode.ONE_SHOT_COPY:
            plan = compute_diff(mode, snapshot, prior)
        else:
            ctx.tracker.transition_to(JobPhase.DIFFING)
            # A single-file mirror never deletes its siblings
            mirror_folder = mode == SyncMode.MIRROR and kind == ItemKind.FOLDER
            dest_entries = (
                walk(dest, target_root.id, on_folder=lambda: self._heartbeat(ctx))
                if mirror_folder
                else []
            )
            plan = compute_diff(
                mode,
                snapshot,
                prior,
                dest_entries,
                preserve_edits=self._config.preserve_destination_edits,
                last_run_at=self._jobs.last_completed_run_at(job),
                written=written,
            )

        ctx.tracker.transition_to(JobPhase.TRANSFERRING)
        ctx.counters.files_skipped = len(plan.skipped)
        ctx.total_items = plan.total_items
        self._progress(ctx)

        result_entry = self._transfer(ctx, source, dest, plan, target_root)
        if kind == ItemKind.FOLDER or result_entry is None:
            result_entry = target_root
        return JobResult(
            item_id=result_entry.id,
            item_name=result_entry.name,
            item_url=result_entry.web_url,
        )

    def _recorded_state(
        self, job: Job, dest_folder_id: str
    ) -> tuple[dict[str, PriorState], dict[str, DestinationRecord]]:
        """State recorded by earlier runs into the same destination folder."""
        mappings = self._versions.mappings_for_destination(
            job.user_id, job.source_provider, job.dest_provider, dest_folder_id
        )
        latest = self._versions.latest_versions(m.id for m in mappings)
        prior: dict[str, PriorState] = {}
        written: dict[str, DestinationRecord] = {}
        for mapping in mappings:
            if mapping.dest_item_id:
                written[mapping.dest_item_id] = DestinationRecord(
                    size=mapping.dest_size, modified_at=mapping.dest_modified_at
                )
            version = latest.get(mapping.id)
            if version is None:
                continue
            prior[mapping.source_item_id] = PriorState(
                file_id=mapping.id,
                dest_item_id=mapping.dest_item_id,
                size=version.size,
                modified_at=version.source_modified_at,
                fingerprint=version.fingerprint,
            )
        return prior, written

    def _transfer(
        self,
        ctx: _Execution,
        source: ProviderAdapter,
        dest: ProviderAdapter,
        plan: DiffPlan,
        target_root: ProviderEntry,
    ) -> ProviderEntry | None:
        """Copy planned items, then run deletions if every copy succeeded.

        Returns:
            The last destination file copied or kept (the job result for
            single-file jobs).
        """
        job = ctx.job
        folder_ids = {"": target_root.id}
        for folder in plan.folders:
            parent_id = folder_ids[posixpath.dirname(folder.path)]
            folder_ids[folder.path] = dest.ensure_folder(parent_id, folder.name).id

        failures: list[tuple[str, ProviderError]] = []
        last_written: ProviderEntry | None = None
        for item in plan.copies:
            self._check_interrupts(ctx)
            try:
                last_written = self._copy_item(ctx, source, dest, item, folder_ids)
            except (LeaseLost, ConcurrentAppend):
                raise
            except Exception as exc:
                error = classify_error(exc)
                if error.retryable:
                    raise
                ctx.counters.files_failed += 1
                failures.append((item.entry.path, error))
                logger.warning("Job %s: %s failed: %s", job.id, item.entry.path, error.describe())
            ctx.counters.files_processed += 1
            ctx.completed_items += 1
            self._progress(ctx)

        if plan.deletes:
            if failures:
                logger.warning(
                    "Job %s: skipping %d deletions after %d failed copies",
                    job.id,
                    len(plan.deletes),
                    len(failures),
                )
            else:
                self._delete_orphans(ctx, dest, plan.deletes)

        if plan.preserved:
            logger.info(
                "Job %s: kept %d destination files edited since the last run",
                job.id,
                len(plan.preserved),
            )

        if failures:
            path, first = failures[0]
            if len(plan.copies) == 1:
                raise first
            raise PermanentProviderError(
                f"{len(failures)} of {len(plan.copies)} items failed; first: {path}: {first.describe()}",
                ErrorCode.ITEMS_FAILED,
            )
        return last_written

    def _delete_orphans(
        self, ctx: _Execution, dest: ProviderAdapter, entries: list[ProviderEntry]
    ) -> None:
        job = ctx.job
        mapped = {
            m.dest_item_id: m.id
            for m in self._versions.mappings_for_destination(
                job.user_id, job.source_provider, job.dest_provider, ctx.mapping_folder_id
            )
            if m.dest_item_id
        }
        for entry in entries:
            self._check_interrupts(ctx)
            self._jobs.ensure_lease(job.id, ctx.worker_id)
            dest.delete_file(entry.id)
            file_id = mapped.get(entry.id)
            if file_id is not None:
                self._versions.mark_mapping_deleted(file_id)
            ctx.counters.files_deleted += 1
            ctx.completed_items += 1
            self._progress(ctx)
            logger.debug("Job %s: deleted %s from destination", job.id, entry.path)

    def _stream(
        self, ctx: _Execution, chunks: Iterable[bytes], path: str, meter: _Meter
    ) -> Iterator[bytes]:
        """Pass chunks through, enforcing the size cap and heartbeating."""
        limit = self._config.max_file_size
        for chunk in chunks:
            meter.bytes += len(chunk)
            if limit and meter.bytes > limit:
                raise PermanentProviderError(
                    f"{path} exceeds the {limit} byte limit", ErrorCode.FILE_TOO_LARGE
                )
            self._heartbeat(ctx)
            yield chunk

    def _copy_item(
        self,
        ctx: _Execution,
        source: ProviderAdapter,
        dest: ProviderAdapter,
        item: PlannedCopy,
        folder_ids: dict[str, str],
    ) -> ProviderEntry:
        job = ctx.job
        entry = item.entry
        limit = self._config.max_file_size
        if limit and entry.size is not None and entry.size > limit:
            raise PermanentProviderError(
                f"{entry.path} is {entry.size} bytes, limit is {limit}", ErrorCode.FILE_TOO_LARGE
            )

        mapping, created = self._versions.get_or_create_mapping(
            job.user_id,
            job.source_provider,
            entry.id,
            job.dest_provider,
            ctx.mapping_folder_id,
            entry.name,
            entry.path,
        )

        folder_id = folder_ids[posixpath.dirname(entry.path)]
        target_name = entry.name
        existing_id = mapping.dest_item_id
        if existing_id is None:
            files = self._dest_files(ctx, dest, folder_id)
            clash = files.get(entry.name)
            if clash is not None:
                action = DuplicateAction(job.duplicate_action)
                if action == DuplicateAction.SKIP:
                    logger.info(
                        "Job %s: %s already exists in the destination, skipping", job.id, entry.path
                    )
                    ctx.counters.files_skipped += 1
                    return clash
                if action == DuplicateAction.REPLACE:
                    existing_id = clash.id
                else:
                    target_name = _suffixed_name(entry.name, files)
        elif mapping.dest_name and mapping.file_name == entry.name:
            target_name = mapping.dest_name

        self._jobs.ensure_lease(job.id, ctx.worker_id)
        meter = _Meter()
        written = dest.write_file(
            folder_id,
            target_name,
            self._stream(ctx, source.read_file(entry.id), entry.path, meter),
            existing_item_id=existing_id,
        )
        if folder_id in ctx.dest_files:
            ctx.dest_files[folder_id][written.name] = written
        if written.size is not None and written.size != meter.bytes:
            raise TransientProviderError(
                f"{entry.path}: wrote {written.size} bytes, expected {meter.bytes}", ErrorCode.NETWORK
            )
        if written.fingerprint and entry.fingerprint and written.fingerprint != entry.fingerprint:
            raise TransientProviderError(f"{entry.path}: fingerprint mismatch after write", ErrorCode.NETWORK)

        change = self._change_type(job, item, created)
        self._jobs.ensure_lease(job.id, ctx.worker_id)
        self._versions.update_mapping_destination(
            mapping.id,
            written.id,
            written.size,
            written.modified_at,
            entry.name,
            entry.path,
            dest_name=written.name,
        )
        version = self._versions.append_version(
            mapping.id,
            change,
            meter.bytes,
            detail=f"{change.value} {entry.path} ({meter.bytes} bytes) from {job.source_provider}",
            fingerprint=entry.fingerprint,
            source_modified_at=entry.modified_at,
            job_id=job.id,
        )

        ctx.counters.bytes_transferred += meter.bytes
        if change in (ChangeType.CREATED, ChangeType.COPIED, ChangeType.TRANSFERRED):
            ctx.counters.files_new += 1
        elif change == ChangeType.MODIFIED:
            ctx.counters.files_modified += 1

        logger.debug(
            "Job %s: %s %s -> version %d (%d bytes)",
            job.id,
            change.value,
            entry.path,
            version,
            meter.bytes,
        )
        return written

    @staticmethod
    def _dest_files(
        ctx: _Execution, dest: ProviderAdapter, folder_id: str
    ) -> dict[str, ProviderEntry]:
        """Files already in a destination folder, by name (listed once per run)."""
        files = ctx.dest_files.get(folder_id)
        if files is None:
            files = {e.name: e for e in dest.list_children(folder_id) if not e.is_folder}
            ctx.dest_files[folder_id] = files
        return files

    @staticmethod
    def _change_type(job: Job, item: PlannedCopy, created: bool) -> ChangeType:
        if SyncMode(job.mode) != SyncMode.ONE_SHOT_COPY:
            return ChangeType.CREATED if item.verdict == Verdict.NEW else ChangeType.MODIFIED
        if created or item.prior is None:
            if job.source_provider == job.dest_provider:
                return ChangeType.COPIED
            return ChangeType.TRANSFERRED
        return ChangeType.SYNCED


def _suffixed_name(name: str, taken: Collection[str]) -> str:
    """``report.pdf`` -> ``report_copy.pdf`` (then ``report_copy2.pdf``, ...)."""
    stem, ext = posixpath.splitext(name)
    candidate = f"{stem}_copy{ext}"
    n = 2
    while candidate in taken:
        candidate = f"{stem}_copy{n}{ext}"
        n += 1
    return candidate
