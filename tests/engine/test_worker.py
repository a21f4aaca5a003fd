"""Tests for the job worker: end-to-end execution of leased jobs."""

from __future__ import annotations

import errno
from collections.abc import Callable, Iterable
from dataclasses import replace

import pytest

from cloudrelay.core.config import EngineConfig
from cloudrelay.core.errors import PermanentProviderError, TransientProviderError
from cloudrelay.core.types import ChangeType, ErrorCode, JobStatus, RunStatus
from cloudrelay.engine.phases import JobPhase
from cloudrelay.engine.providers import ROOT_ID, MemoryProvider, ProviderEntry, ProviderRegistry
from cloudrelay.engine.worker import JobOutcome, JobWorker
from cloudrelay.server.jobs import JobSpec, JobStore
from cloudrelay.server.versions import VersionRecorder


@pytest.fixture
def worker(
    job_store: JobStore,
    versions: VersionRecorder,
    registry: ProviderRegistry,
    config: EngineConfig,
    clock,
) -> JobWorker:
    """Worker over the memory providers."""
    return JobWorker(job_store, versions, registry, config=config, clock=clock)


@pytest.fixture
def run_job(job_store: JobStore, config: EngineConfig) -> Callable[..., JobOutcome]:
    """Enqueue a spec, lease it and run it with the given worker."""

    def _run(worker: JobWorker, spec: JobSpec) -> JobOutcome:
        job_store.enqueue(spec)
        (lease,) = job_store.claim_next(config.worker_id, 1)
        return worker.run(lease)

    return _run


def _history(versions: VersionRecorder, source_item_id: str, dest_folder_id: str = ROOT_ID) -> list[str]:
    mapping = versions.get_mapping("alice", "drive", source_item_id, "box", dest_folder_id)
    assert mapping is not None
    return [v.change_type for v in versions.history(mapping.id)]


class TestOneShotCopy:
    """Tests for one_shot_copy jobs."""

    def test_single_file_copy(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        job_store: JobStore,
        versions: VersionRecorder,
        drive: MemoryProvider,
        box: MemoryProvider,
    ) -> None:
        """A file is copied, the job completes and one version is recorded."""
        file_id = drive.add_file(ROOT_ID, "report.pdf", b"%PDF-1.7")
        outcome = run_job(worker, make_spec(source_item_id=file_id))

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.phase == JobPhase.COMPLETED
        assert outcome.counters.files_new == 1
        assert outcome.counters.bytes_transferred == 8

        copied = box.find("report.pdf")
        assert copied is not None
        assert box.get_bytes(copied.id) == b"%PDF-1.7"

        job = job_store.get(outcome.job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.progress_pct == 100
        assert job.result_item_id == copied.id
        assert job.result_item_name == "report.pdf"
        assert job.locked_by is None
        assert _history(versions, file_id) == [ChangeType.TRANSFERRED.value]

        run = job_store.latest_run(outcome.job_id)
        assert run is not None
        assert run.status == RunStatus.COMPLETED.value
        assert run.files_new == 1

    def test_same_provider_copy(
        self,
        job_store: JobStore,
        versions: VersionRecorder,
        config: EngineConfig,
        clock,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        drive: MemoryProvider,
    ) -> None:
        """Copies within one provider are recorded as copied."""
        registry = ProviderRegistry()
        registry.register_shared(drive)
        worker = JobWorker(job_store, versions, registry, config=config, clock=clock)
        backup = drive.add_folder(ROOT_ID, "backup")
        file_id = drive.add_file(ROOT_ID, "a.txt", b"a")

        outcome = run_job(worker, make_spec(source_item_id=file_id, dest_provider="drive", dest_folder_id=backup))
        assert outcome.status == JobStatus.COMPLETED
        mapping = versions.get_mapping("alice", "drive", file_id, "drive", backup)
        assert mapping is not None
        assert [v.change_type for v in versions.history(mapping.id)] == [ChangeType.COPIED.value]

    def test_reenqueue_is_idempotent(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        versions: VersionRecorder,
        drive: MemoryProvider,
        box: MemoryProvider,
    ) -> None:
        """Copying the same file twice overwrites the copy and extends the chain."""
        file_id = drive.add_file(ROOT_ID, "a.txt", b"v1")
        run_job(worker, make_spec(source_item_id=file_id))
        drive.update_file(file_id, b"v2")
        outcome = run_job(worker, make_spec(source_item_id=file_id))

        assert outcome.status == JobStatus.COMPLETED
        assert [e.name for e in box.list_children(ROOT_ID)] == ["a.txt"]
        assert box.get_bytes(box.find("a.txt").id) == b"v2"  # type: ignore[union-attr]
        assert _history(versions, file_id) == [ChangeType.SYNCED.value, ChangeType.TRANSFERRED.value]

    def test_folder_copy_recreates_tree(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        job_store: JobStore,
        drive: MemoryProvider,
        box: MemoryProvider,
    ) -> None:
        """A folder copy lands in a same-named folder under the destination."""
        docs = drive.add_folder(ROOT_ID, "docs")
        sub = drive.add_folder(docs, "sub")
        drive.add_file(docs, "a.txt", b"a")
        drive.add_file(sub, "b.txt", b"bb")

        outcome = run_job(worker, make_spec(source_item_id=docs, item_kind="folder"))
        assert outcome.status == JobStatus.COMPLETED
        assert outcome.counters.files_new == 2
        assert outcome.counters.files_processed == 2
        assert box.find("docs/a.txt") is not None
        assert box.get_bytes(box.find("docs/sub/b.txt").id) == b"bb"  # type: ignore[union-attr]

        job = job_store.get(outcome.job_id)
        assert job.result_item_name == "docs"
        assert job.total_items == 2
        assert job.completed_items == 2

    def test_kind_mismatch_is_permanent(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        drive: MemoryProvider,
    ) -> None:
        """A folder enqueued as a file fails without retry."""
        docs = drive.add_folder(ROOT_ID, "docs")
        outcome = run_job(worker, make_spec(source_item_id=docs))
        assert outcome.status == JobStatus.FAILED
        assert outcome.error is not None
        assert outcome.error.code == ErrorCode.UNSUPPORTED


class TestSyncModes:
    """Tests for cumulative_sync and mirror jobs."""

    @pytest.fixture
    def photos(self, drive: MemoryProvider) -> dict[str, str]:
        folder = drive.add_folder(ROOT_ID, "photos")
        return {
            "folder": folder,
            "a": drive.add_file(folder, "a.jpg", b"aaaa"),
            "b": drive.add_file(folder, "b.jpg", b"bbbb"),
        }

    def test_cumulative_diff_counts(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        job_store: JobStore,
        versions: VersionRecorder,
        drive: MemoryProvider,
        photos: dict[str, str],
    ) -> None:
        """Second run: one new, one modified, one unchanged, two versions appended."""
        spec = make_spec(source_item_id=photos["folder"], item_kind="folder", mode="cumulative_sync")
        first = run_job(worker, spec)
        assert first.counters.files_new == 2

        drive.update_file(photos["b"], b"bbbb-edited")
        c_id = drive.add_file(photos["folder"], "c.jpg", b"cc")
        second = run_job(worker, spec)

        assert second.status == JobStatus.COMPLETED
        assert second.counters.files_new == 1
        assert second.counters.files_modified == 1
        assert second.counters.files_skipped == 1
        assert second.counters.files_processed == 2

        assert _history(versions, photos["a"]) == [ChangeType.CREATED.value]
        assert _history(versions, photos["b"]) == [ChangeType.MODIFIED.value, ChangeType.CREATED.value]
        assert _history(versions, c_id) == [ChangeType.CREATED.value]

        run = job_store.latest_run(second.job_id)
        assert run is not None
        assert (run.files_new, run.files_modified, run.files_skipped) == (1, 1, 1)

    def test_cumulative_keeps_destination_only_files(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        box: MemoryProvider,
        photos: dict[str, str],
    ) -> None:
        """Cumulative syncs never delete."""
        extra = box.add_file(ROOT_ID, "extra.txt", b"x")
        outcome = run_job(
            worker, make_spec(source_item_id=photos["folder"], item_kind="folder", mode="cumulative_sync")
        )
        assert outcome.counters.files_deleted == 0
        assert box.exists(extra)

    def test_mirror_deletes_orphans(
        self,
        job_store: JobStore,
        versions: VersionRecorder,
        registry: ProviderRegistry,
        config: EngineConfig,
        clock,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        box: MemoryProvider,
        photos: dict[str, str],
    ) -> None:
        """Without edit preservation, destination-only files are removed last."""
        worker = JobWorker(
            job_store, versions, registry,
            config=replace(config, preserve_destination_edits=False), clock=clock,
        )
        orphan = box.add_file(ROOT_ID, "orphan.txt", b"x")
        keep_folder = box.add_folder(ROOT_ID, "albums")

        outcome = run_job(worker, make_spec(source_item_id=photos["folder"], item_kind="folder", mode="mirror"))
        assert outcome.status == JobStatus.COMPLETED
        assert outcome.counters.files_deleted == 1
        assert not box.exists(orphan)
        assert box.exists(keep_folder)
        assert job_store.get(outcome.job_id).total_items == 3

    def test_mirror_removes_files_deleted_at_source(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        versions: VersionRecorder,
        drive: MemoryProvider,
        box: MemoryProvider,
        photos: dict[str, str],
        clock,
    ) -> None:
        """A file the engine wrote and nobody touched follows its source away."""
        spec = make_spec(source_item_id=photos["folder"], item_kind="folder", mode="mirror")
        run_job(worker, spec)
        copied_a = box.find("a.jpg")
        assert copied_a is not None

        clock.advance(60)
        drive.delete_file(photos["a"])
        outcome = run_job(worker, spec)

        assert outcome.counters.files_deleted == 1
        assert not box.exists(copied_a.id)
        assert box.find("b.jpg") is not None
        assert versions.get_mapping("alice", "drive", photos["a"], "box", ROOT_ID).deleted_at is not None  # type: ignore[union-attr]

    def test_mirror_preserves_destination_edits(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        drive: MemoryProvider,
        box: MemoryProvider,
        photos: dict[str, str],
        clock,
    ) -> None:
        """Files edited on the destination since they were written are kept."""
        spec = make_spec(source_item_id=photos["folder"], item_kind="folder", mode="mirror")
        run_job(worker, spec)
        copied_a = box.find("a.jpg")
        assert copied_a is not None

        clock.advance(60)
        box.update_file(copied_a.id, b"edited on box")
        drive.delete_file(photos["a"])
        stranger = box.add_file(ROOT_ID, "mine.txt", b"mine")
        outcome = run_job(worker, spec)

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.counters.files_deleted == 0
        assert box.get_bytes(copied_a.id) == b"edited on box"
        assert box.exists(stranger)

    def test_mirror_no_deletion_after_failed_copy(
        self,
        job_store: JobStore,
        versions: VersionRecorder,
        registry: ProviderRegistry,
        config: EngineConfig,
        clock,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        box: MemoryProvider,
        photos: dict[str, str],
    ) -> None:
        """A run with a failed copy deletes nothing, and the job fails."""
        worker = JobWorker(
            job_store, versions, registry,
            config=replace(config, preserve_destination_edits=False), clock=clock,
        )
        orphan = box.add_file(ROOT_ID, "orphan.txt", b"x")
        box.inject_failure("b.jpg", PermanentProviderError("quota exceeded", ErrorCode.QUOTA_EXCEEDED))

        outcome = run_job(worker, make_spec(source_item_id=photos["folder"], item_kind="folder", mode="mirror"))
        assert outcome.status == JobStatus.FAILED
        assert outcome.error is not None
        assert outcome.error.code == ErrorCode.ITEMS_FAILED
        assert outcome.counters.files_failed == 1
        assert outcome.counters.files_new == 1
        assert outcome.counters.files_deleted == 0
        assert box.exists(orphan)
        assert box.find("a.jpg") is not None

        job = job_store.get(outcome.job_id)
        assert job.error_code == ErrorCode.ITEMS_FAILED.value
        assert "b.jpg" in (job.error_message or "")
        run = job_store.latest_run(outcome.job_id)
        assert run is not None
        assert run.status == RunStatus.FAILED.value
        assert run.files_failed == 1

    def test_mirror_no_deletion_after_transient_failure(
        self,
        job_store: JobStore,
        versions: VersionRecorder,
        registry: ProviderRegistry,
        config: EngineConfig,
        clock,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        box: MemoryProvider,
        photos: dict[str, str],
    ) -> None:
        """A transient item failure aborts the attempt before any deletion."""
        worker = JobWorker(
            job_store, versions, registry,
            config=replace(config, preserve_destination_edits=False), clock=clock,
        )
        orphan = box.add_file(ROOT_ID, "orphan.txt", b"x")
        box.inject_failure("b.jpg", TransientProviderError("connection reset"))

        outcome = run_job(worker, make_spec(source_item_id=photos["folder"], item_kind="folder", mode="mirror"))
        assert outcome.status == JobStatus.PENDING
        assert box.exists(orphan)
        assert job_store.get(outcome.job_id).attempts == 1


class TestFailures:
    """Tests for error classification and retries."""

    def test_not_found_is_terminal(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        job_store: JobStore,
    ) -> None:
        """A missing source fails the job on the first attempt."""
        outcome = run_job(worker, make_spec(source_item_id="does-not-exist"))
        assert outcome.status == JobStatus.FAILED
        assert outcome.phase == JobPhase.FAILED

        job = job_store.get(outcome.job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.attempts == 1
        assert job.error_code == ErrorCode.NOT_FOUND.value
        assert job_store.claim_next("worker-a", 1) == []

    def test_transient_error_retried(
        self,
        worker: JobWorker,
        make_spec: Callable[..., JobSpec],
        job_store: JobStore,
        config: EngineConfig,
        drive: MemoryProvider,
        box: MemoryProvider,
        clock,
    ) -> None:
        """A transient failure is retried after backoff and then succeeds."""
        file_id = drive.add_file(ROOT_ID, "a.txt", b"a")
        drive.inject_failure(file_id, TransientProviderError("connection reset"))
        job_id = job_store.enqueue(make_spec(source_item_id=file_id))

        (lease,) = job_store.claim_next(config.worker_id, 1)
        outcome = worker.run(lease)
        assert outcome.status == JobStatus.PENDING
        assert outcome.error is not None
        assert job_store.get(job_id).error_code == ErrorCode.NETWORK.value
        assert job_store.claim_next(config.worker_id, 1) == []

        clock.advance(5)
        (lease,) = job_store.claim_next(config.worker_id, 1)
        assert worker.run(lease).status == JobStatus.COMPLETED

        job = job_store.get(job_id)
        assert job.attempts == 1
        assert job.error_code is None
        assert box.find("a.txt") is not None
        assert [r.status for r in job_store.list_runs(job_id)] == [
            RunStatus.COMPLETED.value,
            RunStatus.FAILED.value,
        ]

    def test_retries_exhausted(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        job_store: JobStore,
        drive: MemoryProvider,
    ) -> None:
        """With a single attempt allowed, a transient error is final."""
        file_id = drive.add_file(ROOT_ID, "a.txt", b"a")
        drive.inject_failure(file_id, TransientProviderError("timeout", ErrorCode.TIMEOUT))
        outcome = run_job(worker, make_spec(source_item_id=file_id, max_retries=1))
        assert outcome.status == JobStatus.FAILED
        assert job_store.get(outcome.job_id).error_code == ErrorCode.EXHAUSTED_RETRIES.value

    def test_unexpected_errors_are_retried(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        drive: MemoryProvider,
    ) -> None:
        """Exceptions outside the taxonomy are classified as transient."""
        file_id = drive.add_file(ROOT_ID, "a.txt", b"a")
        drive.inject_failure(file_id, RuntimeError("adapter bug"))
        outcome = run_job(worker, make_spec(source_item_id=file_id))
        assert outcome.status == JobStatus.PENDING
        assert outcome.error is not None
        assert outcome.error.code == ErrorCode.INTERNAL

    def test_size_cap(
        self,
        job_store: JobStore,
        versions: VersionRecorder,
        registry: ProviderRegistry,
        config: EngineConfig,
        clock,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        drive: MemoryProvider,
        box: MemoryProvider,
    ) -> None:
        """Files over max_file_size fail permanently without being written."""
        worker = JobWorker(job_store, versions, registry, config=replace(config, max_file_size=4), clock=clock)
        file_id = drive.add_file(ROOT_ID, "big.bin", b"0123456789")
        outcome = run_job(worker, make_spec(source_item_id=file_id))

        assert outcome.status == JobStatus.FAILED
        job = job_store.get(outcome.job_id)
        assert job.error_code == ErrorCode.FILE_TOO_LARGE.value
        assert job.attempts == 1
        assert box.find("big.bin") is None

    def test_partial_folder_failure(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        versions: VersionRecorder,
        drive: MemoryProvider,
        box: MemoryProvider,
    ) -> None:
        """Items copied before a permanent item failure keep their versions."""
        folder = drive.add_folder(ROOT_ID, "docs")
        a_id = drive.add_file(folder, "a.txt", b"a")
        drive.add_file(folder, "b.txt", b"b")
        c_id = drive.add_file(folder, "c.txt", b"c")
        box.inject_failure("b.txt", PermanentProviderError("denied", ErrorCode.PERMISSION_DENIED))

        outcome = run_job(worker, make_spec(source_item_id=folder, item_kind="folder", mode="cumulative_sync"))
        assert outcome.status == JobStatus.FAILED
        assert outcome.counters.files_failed == 1
        assert outcome.counters.files_new == 2
        assert _history(versions, a_id) == [ChangeType.CREATED.value]
        assert _history(versions, c_id) == [ChangeType.CREATED.value]


class _CancellingProvider(MemoryProvider):
    """Destination that requests cancellation of a job during its first write."""

    def __init__(self, job_store: JobStore, clock) -> None:
        super().__init__("box", clock=clock)
        self.job_store = job_store
        self.job_id: str | None = None
        self.writes = 0

    def write_file(
        self,
        folder_id: str,
        name: str,
        chunks: Iterable[bytes],
        existing_item_id: str | None = None,
    ) -> ProviderEntry:
        self.writes += 1
        if self.writes == 1 and self.job_id:
            self.job_store.request_cancel(self.job_id)
        return super().write_file(folder_id, name, chunks, existing_item_id)


class _TakeoverProvider(MemoryProvider):
    """Destination during whose write the lease expires and another worker takes the job."""

    def __init__(self, job_store: JobStore, clock) -> None:
        super().__init__("box", clock=clock)
        self.job_store = job_store
        self.clock = clock
        self.takeover: list = []

    def write_file(
        self,
        folder_id: str,
        name: str,
        chunks: Iterable[bytes],
        existing_item_id: str | None = None,
    ) -> ProviderEntry:
        if not self.takeover:
            self.clock.advance(61)
            self.takeover.extend(self.job_store.claim_next("worker-b", 1))
        return super().write_file(folder_id, name, chunks, existing_item_id)


class TestCancellationAndLeases:
    """Tests for cancellation, shutdown and lease loss during execution."""

    def test_cancel_between_items(
        self,
        job_store: JobStore,
        versions: VersionRecorder,
        config: EngineConfig,
        clock,
        make_spec: Callable[..., JobSpec],
        drive: MemoryProvider,
    ) -> None:
        """The in-flight item finishes; the next item boundary stops the job."""
        dest = _CancellingProvider(job_store, clock)
        registry = ProviderRegistry()
        registry.register_shared(drive)
        registry.register_shared(dest)
        worker = JobWorker(job_store, versions, registry, config=config, clock=clock)

        folder = drive.add_folder(ROOT_ID, "docs")
        first = drive.add_file(folder, "a.txt", b"a")
        drive.add_file(folder, "b.txt", b"b")
        drive.add_file(folder, "c.txt", b"c")

        job_id = job_store.enqueue(make_spec(source_item_id=folder, item_kind="folder", mode="cumulative_sync"))
        dest.job_id = job_id
        (lease,) = job_store.claim_next(config.worker_id, 1)
        outcome = worker.run(lease)

        assert outcome.status == JobStatus.CANCELLED
        assert outcome.phase == JobPhase.CANCELLED
        assert outcome.counters.files_new == 1
        assert dest.writes == 1
        assert dest.find("a.txt") is not None
        assert dest.find("b.txt") is None
        assert _history(versions, first) == [ChangeType.CREATED.value]

        job = job_store.get(job_id)
        assert job.status == JobStatus.CANCELLED.value
        assert job.completed_items == 1
        assert job.locked_by is None
        run = job_store.latest_run(job_id)
        assert run is not None
        assert run.status == RunStatus.CANCELLED.value

    def test_shutdown_releases_job(
        self,
        job_store: JobStore,
        versions: VersionRecorder,
        registry: ProviderRegistry,
        config: EngineConfig,
        clock,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        drive: MemoryProvider,
    ) -> None:
        """A stopping worker hands the job back without using an attempt."""
        worker = JobWorker(job_store, versions, registry, config=config, clock=clock, should_stop=lambda: True)
        file_id = drive.add_file(ROOT_ID, "a.txt", b"a")
        outcome = run_job(worker, make_spec(source_item_id=file_id))

        assert outcome.status == JobStatus.PENDING
        job = job_store.get(outcome.job_id)
        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 0
        assert job.locked_by is None
        run = job_store.latest_run(outcome.job_id)
        assert run is not None
        assert run.status == RunStatus.ABANDONED.value

    def test_lease_lost_mid_transfer(
        self,
        job_store: JobStore,
        versions: VersionRecorder,
        config: EngineConfig,
        clock,
        make_spec: Callable[..., JobSpec],
        drive: MemoryProvider,
    ) -> None:
        """A worker that lost its lease stops without touching the job again."""
        dest = _TakeoverProvider(job_store, clock)
        registry = ProviderRegistry()
        registry.register_shared(drive)
        registry.register_shared(dest)
        worker = JobWorker(job_store, versions, registry, config=config, clock=clock)

        file_id = drive.add_file(ROOT_ID, "a.txt", b"a")
        job_id = job_store.enqueue(make_spec(source_item_id=file_id))
        (lease,) = job_store.claim_next(config.worker_id, 1)
        outcome = worker.run(lease)

        assert outcome.lease_lost is True
        assert outcome.status is None
        assert len(dest.takeover) == 1

        job = job_store.get(job_id)
        assert job.status == JobStatus.RUNNING.value
        assert job.locked_by == "worker-b"
        assert job.attempts == 0

        mapping = versions.get_mapping("alice", "drive", file_id, "box", ROOT_ID)
        assert mapping is not None
        assert versions.history(mapping.id) == []
        assert job_store.list_runs(job_id)[0].status == RunStatus.ABANDONED.value

    def test_heartbeats_while_walking(
        self,
        job_store: JobStore,
        versions: VersionRecorder,
        config: EngineConfig,
        clock,
        make_spec: Callable[..., JobSpec],
        box: MemoryProvider,
    ) -> None:
        """A long source walk keeps the lease alive."""
        source = _SlowListingProvider(job_store, clock)
        registry = ProviderRegistry()
        registry.register_shared(source)
        registry.register_shared(box)
        worker = JobWorker(job_store, versions, registry, config=config, clock=clock)

        docs = source.add_folder(ROOT_ID, "docs")
        deeper = source.add_folder(source.add_folder(docs, "a"), "b")
        source.add_file(deeper, "deep.txt", b"deep")

        job_store.enqueue(make_spec(source_item_id=docs, item_kind="folder", mode="cumulative_sync"))
        (lease,) = job_store.claim_next(config.worker_id, 1)
        outcome = worker.run(lease)

        assert source.listings == 3
        assert source.takeover == []
        assert outcome.status == JobStatus.COMPLETED
        assert box.find("a/b/deep.txt") is not None


class _SlowListingProvider(MemoryProvider):
    """Source whose folder listings take 30 seconds; a rival worker tries to claim on the third."""

    def __init__(self, job_store: JobStore, clock) -> None:
        super().__init__("drive", clock=clock)
        self.job_store = job_store
        self.clock = clock
        self.listings = 0
        self.takeover: list = []

    def list_children(self, folder_id: str) -> list[ProviderEntry]:
        self.listings += 1
        self.clock.advance(30)
        if self.listings == 3:
            self.takeover.extend(self.job_store.claim_next("worker-b", 1))
        return super().list_children(folder_id)


class TestChainedModes:
    """Jobs of different modes writing into the same destination folder."""

    @pytest.fixture
    def docs(self, drive: MemoryProvider) -> str:
        folder = drive.add_folder(ROOT_ID, "docs")
        drive.add_file(folder, "a.txt", b"a")
        return folder

    def test_one_shot_folder_mappings_follow_the_new_folder(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        versions: VersionRecorder,
        drive: MemoryProvider,
        box: MemoryProvider,
        docs: str,
    ) -> None:
        run_job(worker, make_spec(source_item_id=docs, item_kind="folder"))
        copied_folder = box.find("docs")
        assert copied_folder is not None

        source_a = drive.find("docs/a.txt")
        assert source_a is not None
        assert versions.get_mapping("alice", "drive", source_a.id, "box", ROOT_ID) is None
        assert _history(versions, source_a.id, copied_folder.id) == [ChangeType.TRANSFERRED.value]

    def test_mirror_after_one_shot_folder_copy(
        self,
        job_store: JobStore,
        versions: VersionRecorder,
        registry: ProviderRegistry,
        config: EngineConfig,
        clock,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        box: MemoryProvider,
        docs: str,
    ) -> None:
        """The mirror copies into the folder root before removing the earlier copy."""
        worker = JobWorker(
            job_store, versions, registry,
            config=replace(config, preserve_destination_edits=False), clock=clock,
        )
        run_job(worker, make_spec(source_item_id=docs, item_kind="folder"))
        assert box.find("docs/a.txt") is not None

        outcome = run_job(worker, make_spec(source_item_id=docs, item_kind="folder", mode="mirror"))
        assert outcome.status == JobStatus.COMPLETED
        assert outcome.counters.files_new == 1
        assert outcome.counters.files_skipped == 0
        assert outcome.counters.files_deleted == 1

        mirrored = box.find("a.txt")
        assert mirrored is not None
        assert box.get_bytes(mirrored.id) == b"a"
        assert box.find("docs/a.txt") is None

    def test_cumulative_after_one_shot_folder_copy(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        box: MemoryProvider,
        docs: str,
    ) -> None:
        run_job(worker, make_spec(source_item_id=docs, item_kind="folder"))
        outcome = run_job(worker, make_spec(source_item_id=docs, item_kind="folder", mode="cumulative_sync"))

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.counters.files_new == 1
        assert box.find("a.txt") is not None
        assert box.find("docs/a.txt") is not None


class TestOperatingSystemErrors:
    """OS errors raised by adapters reach the worker unclassified."""

    def test_permission_error_fails_at_once(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        job_store: JobStore,
        drive: MemoryProvider,
    ) -> None:
        file_id = drive.add_file(ROOT_ID, "a.txt", b"a")
        drive.inject_failure(file_id, PermissionError(13, "Permission denied"))
        outcome = run_job(worker, make_spec(source_item_id=file_id))

        assert outcome.status == JobStatus.FAILED
        job = job_store.get(outcome.job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.attempts == 1
        assert job.error_code == ErrorCode.PERMISSION_DENIED.value
        assert job_store.claim_next("worker-a", 1) == []

    def test_missing_file_fails_at_once(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        job_store: JobStore,
        drive: MemoryProvider,
    ) -> None:
        """A FileNotFoundError while resolving the source is a terminal not_found."""
        file_id = drive.add_file(ROOT_ID, "a.txt", b"a")
        drive.inject_failure(file_id, FileNotFoundError(2, "No such file or directory"))
        outcome = run_job(worker, make_spec(source_item_id=file_id))

        assert outcome.status == JobStatus.FAILED
        assert outcome.phase == JobPhase.FAILED
        assert job_store.get(outcome.job_id).error_code == ErrorCode.NOT_FOUND.value

    def test_disk_full_fails_folder_item(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        drive: MemoryProvider,
        box: MemoryProvider,
    ) -> None:
        folder = drive.add_folder(ROOT_ID, "docs")
        drive.add_file(folder, "a.txt", b"a")
        drive.add_file(folder, "b.txt", b"b")
        box.inject_failure("b.txt", OSError(errno.ENOSPC, "No space left on device"))

        outcome = run_job(worker, make_spec(source_item_id=folder, item_kind="folder", mode="cumulative_sync"))
        assert outcome.status == JobStatus.FAILED
        assert outcome.error is not None
        assert outcome.error.code == ErrorCode.ITEMS_FAILED
        assert outcome.counters.files_failed == 1
        assert box.find("a.txt") is not None


class TestDuplicateAction:
    """An unrelated same-named file already in the destination folder."""

    @pytest.fixture
    def source_file(self, drive: MemoryProvider) -> str:
        return drive.add_file(ROOT_ID, "a.txt", b"from drive")

    @pytest.fixture
    def existing(self, box: MemoryProvider) -> str:
        return box.add_file(ROOT_ID, "a.txt", b"already there")

    def test_skip_is_default(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        job_store: JobStore,
        versions: VersionRecorder,
        box: MemoryProvider,
        source_file: str,
        existing: str,
    ) -> None:
        """The existing file is left alone and no version is recorded."""
        outcome = run_job(worker, make_spec(source_item_id=source_file))

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.counters.files_skipped == 1
        assert outcome.counters.files_new == 0
        assert outcome.counters.bytes_transferred == 0
        assert box.get_bytes(existing) == b"already there"
        assert len(box.list_children(ROOT_ID)) == 1
        assert job_store.get(outcome.job_id).result_item_id == existing
        assert _history(versions, source_file) == []

    def test_replace(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        versions: VersionRecorder,
        box: MemoryProvider,
        source_file: str,
        existing: str,
    ) -> None:
        outcome = run_job(worker, make_spec(source_item_id=source_file, duplicate_action="replace"))

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.counters.files_new == 1
        assert box.get_bytes(existing) == b"from drive"
        assert [e.name for e in box.list_children(ROOT_ID)] == ["a.txt"]
        assert _history(versions, source_file) == [ChangeType.TRANSFERRED.value]

    def test_copy_with_suffix(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        versions: VersionRecorder,
        drive: MemoryProvider,
        box: MemoryProvider,
        source_file: str,
        existing: str,
    ) -> None:
        """The copy gets the first free suffix and later runs keep writing to it."""
        box.add_file(ROOT_ID, "a_copy.txt", b"older copy")
        spec = make_spec(source_item_id=source_file, duplicate_action="copy_with_suffix")
        outcome = run_job(worker, spec)

        assert outcome.status == JobStatus.COMPLETED
        copy = box.find("a_copy2.txt")
        assert copy is not None
        assert box.get_bytes(copy.id) == b"from drive"
        assert box.get_bytes(existing) == b"already there"

        drive.update_file(source_file, b"from drive, v2")
        run_job(worker, spec)
        assert sorted(e.name for e in box.list_children(ROOT_ID)) == ["a.txt", "a_copy.txt", "a_copy2.txt"]
        assert box.get_bytes(copy.id) == b"from drive, v2"
        assert _history(versions, source_file) == [ChangeType.SYNCED.value, ChangeType.TRANSFERRED.value]

    def test_files_written_by_earlier_runs_are_not_duplicates(
        self,
        worker: JobWorker,
        run_job: Callable[..., JobOutcome],
        make_spec: Callable[..., JobSpec],
        box: MemoryProvider,
        source_file: str,
    ) -> None:
        run_job(worker, make_spec(source_item_id=source_file))
        outcome = run_job(worker, make_spec(source_item_id=source_file))
        assert outcome.counters.files_skipped == 0
        assert outcome.counters.files_processed == 1
        assert [e.name for e in box.list_children(ROOT_ID)] == ["a.txt"]
