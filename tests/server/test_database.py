"""Tests for the database engine setup."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

from sqlalchemy import func, select

from cloudrelay.server.database import Database
from cloudrelay.server.jobs import JobSpec, JobStore
from cloudrelay.server.models import SyncRun


class TestDatabase:
    """Tests for Database."""

    def test_creates_file_and_parent(self, tmp_path: Path) -> None:
        """The parent directory is created on demand."""
        db = Database(tmp_path / "nested" / "dir" / "relay.db")
        try:
            assert db.path.exists()
        finally:
            db.close()

    def test_wal_and_foreign_keys(self, db: Database) -> None:
        """Connections run in WAL mode with foreign keys enforced."""
        with db.engine.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"
            assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1

    def test_job_delete_cascades_to_runs(
        self, db: Database, job_store: JobStore, make_spec: Callable[..., JobSpec], clock
    ) -> None:
        """Purging a job removes its SyncRuns."""
        job_id = job_store.enqueue(make_spec())
        job_store.claim_next("worker-a", 1)
        job_store.start_run(job_id, "worker-a", "one_shot_copy")
        job_store.release(job_id, "worker-a")
        job_store.request_cancel(job_id)

        clock.advance(hours=48)
        assert job_store.purge_finished(timedelta(hours=24)) == 1
        with db.session() as session:
            assert session.execute(select(func.count()).select_from(SyncRun)).scalar_one() == 0

    def test_reopen_keeps_data(self, tmp_path: Path, make_spec: Callable[..., JobSpec]) -> None:
        db_file = tmp_path / "relay.db"
        db = Database(db_file)
        job_id = JobStore(db).enqueue(make_spec())
        db.close()

        db = Database(db_file)
        try:
            assert JobStore(db).get(job_id).status == "pending"
        finally:
            db.close()
