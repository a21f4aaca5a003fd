"""SQLAlchemy models for the cloudrelay job engine.

This module defines the database schema using SQLAlchemy ORM:
- jobs: copy/sync tasks with leasing, retry and progress state
- sync_runs: one row per execution of a job
- cloud_file_mappings: source item -> destination item links
- file_versions: append-only version chain per mapped file
- sync_schedules: recurring sync triggers
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from cloudrelay.core.types import DuplicateAction, JobStatus, RunStatus


def utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """DateTime stored as naive UTC and read back timezone-aware.

    SQLite has no timezone support, so values are normalized to UTC on the
    way in and tagged with UTC on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: object) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: object) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


class Job(Base):
    """A transfer or sync task."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(
        String(32), primary_key=True, default=lambda: uuid.uuid4().hex
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Routing
    source_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    dest_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    source_item_id: Mapped[str] = mapped_column(Text, nullable=False)
    dest_folder_id: Mapped[str] = mapped_column(Text, nullable=False)
    item_kind: Mapped[str] = mapped_column(String(10), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    duplicate_action: Mapped[str] = mapped_column(
        String(20), default=DuplicateAction.SKIP.value, nullable=False
    )
    schedule_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("sync_schedules.id", ondelete="SET NULL"), nullable=True
    )

    # Scheduling
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Progress
    status: Mapped[str] = mapped_column(
        String(20), default=JobStatus.PENDING.value, nullable=False
    )
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress_pct: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Result
    result_item_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_item_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_item_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Relationships
    runs: Mapped[list[SyncRun]] = relationship(
        "SyncRun", back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )

    # Indexes
    __table_args__ = (
        Index("idx_jobs_claim", "status", "next_run_at"),
        Index("idx_jobs_user_status", "user_id", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        """Whether the job has reached a terminal status."""
        return JobStatus(self.status).is_terminal


class SyncRun(Base):
    """One execution of a job, finalized once and never mutated afterward."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    worker_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=RunStatus.RUNNING.value, nullable=False
    )
    files_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    files_new: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    files_modified: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    files_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    files_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    files_deleted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bytes_transferred: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    job: Mapped[Job] = relationship("Job", back_populates="runs")

    # Indexes
    __table_args__ = (Index("idx_sync_runs_job", "job_id", "started_at"),)


class CloudFileMapping(Base):
    """Links a source provider item to the destination item it was copied to.

    The mapping id is the file id that keys the version chain.
    """

    __tablename__ = "cloud_file_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    source_item_id: Mapped[str] = mapped_column(Text, nullable=False)
    dest_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    dest_folder_id: Mapped[str] = mapped_column(Text, nullable=False)
    dest_item_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    dest_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    dest_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    dest_modified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Relationships
    versions: Mapped[list[FileVersion]] = relationship(
        "FileVersion", back_populates="mapping", order_by="FileVersion.version"
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "source_provider",
            "source_item_id",
            "dest_provider",
            "dest_folder_id",
            name="uq_mapping_source_dest",
        ),
        Index("idx_mappings_dest", "user_id", "dest_provider", "dest_folder_id"),
    )


class FileVersion(Base):
    """Immutable entry in a file's version chain."""

    __tablename__ = "file_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("cloud_file_mappings.id", ondelete="CASCADE"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    change_type: Mapped[str] = mapped_column(String(20), nullable=False)
    size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(128), nullable=True)
    source_modified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    detail: Mapped[str] = mapped_column(Text, default="", nullable=False)
    job_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    # Relationships
    mapping: Mapped[CloudFileMapping] = relationship("CloudFileMapping", back_populates="versions")

    __table_args__ = (UniqueConstraint("file_id", "version", name="uq_file_version"),)


class SyncSchedule(Base):
    """Recurring trigger that enqueues a sync job when due."""

    __tablename__ = "sync_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    source_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    dest_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    source_item_id: Mapped[str] = mapped_column(Text, nullable=False)
    dest_folder_id: Mapped[str] = mapped_column(Text, nullable=False)
    item_kind: Mapped[str] = mapped_column(String(10), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    interval_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hour: Mapped[int] = mapped_column(Integer, default=8, nullable=False)
    minute: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_job_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    total_runs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (Index("idx_schedules_due", "enabled", "next_run_at"),)
