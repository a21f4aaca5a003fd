"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from cloudrelay.server.models import FileVersion, Job, SyncRun, SyncSchedule


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# === Job schemas ===


class JobCreateRequest(BaseModel):
    """Request body for enqueueing a job."""

    source_provider: str
    dest_provider: str
    source_item_id: str
    dest_folder_id: str
    item_kind: str = "file"
    mode: str = "one_shot_copy"
    priority: int = 0
    max_retries: int | None = None
    duplicate_action: str = "skip"


class SyncRunResponse(BaseModel):
    """SyncRun summary in responses."""

    id: int
    job_id: str
    mode: str
    status: str
    worker_id: str
    files_processed: int
    files_new: int
    files_modified: int
    files_skipped: int
    files_failed: int
    files_deleted: int
    bytes_transferred: int
    duration: float | None
    error_message: str | None
    started_at: str
    completed_at: str | None


class JobResponse(BaseModel):
    """Job data in responses."""

    id: str
    user_id: str
    source_provider: str
    dest_provider: str
    source_item_id: str
    dest_folder_id: str
    item_kind: str
    mode: str
    duplicate_action: str
    schedule_id: int | None
    status: str
    priority: int
    attempts: int
    max_retries: int
    next_run_at: str
    locked_by: str | None
    cancel_requested: bool
    total_items: int
    completed_items: int
    progress_pct: int
    error_code: str | None
    error_message: str | None
    duration: float | None
    result_item_id: str | None
    result_item_name: str | None
    result_item_url: str | None
    created_at: str
    updated_at: str
    started_at: str | None
    finished_at: str | None
    latest_run: SyncRunResponse | None = None


# === Version schemas ===


class FileVersionResponse(BaseModel):
    """Single version chain entry."""

    file_id: int
    version: int
    change_type: str
    size: int | None
    fingerprint: str | None
    detail: str
    job_id: str | None
    created_at: str


# === Schedule schemas ===


class ScheduleCreateRequest(BaseModel):
    """Request body for creating a recurring sync."""

    name: str
    source_provider: str
    dest_provider: str
    source_item_id: str
    dest_folder_id: str
    frequency: str
    item_kind: str = "folder"
    mode: str = "cumulative_sync"
    interval_minutes: int | None = None
    hour: int = 8
    minute: int = 0
    day_of_week: int | None = None
    priority: int = 0
    max_retries: int | None = None


class ScheduleResponse(BaseModel):
    """Schedule data in responses."""

    id: int
    name: str
    source_provider: str
    dest_provider: str
    source_item_id: str
    dest_folder_id: str
    item_kind: str
    mode: str
    frequency: str
    interval_minutes: int | None
    hour: int
    minute: int
    day_of_week: int | None
    enabled: bool
    next_run_at: str
    last_run_at: str | None
    last_job_id: str | None
    total_runs: int


# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str


# === Converters ===


def run_to_response(run: SyncRun) -> SyncRunResponse:
    """Convert SyncRun to response model."""
    return SyncRunResponse(
        id=run.id,
        job_id=run.job_id,
        mode=run.mode,
        status=run.status,
        worker_id=run.worker_id,
        files_processed=run.files_processed,
        files_new=run.files_new,
        files_modified=run.files_modified,
        files_skipped=run.files_skipped,
        files_failed=run.files_failed,
        files_deleted=run.files_deleted,
        bytes_transferred=run.bytes_transferred,
        duration=run.duration,
        error_message=run.error_message,
        started_at=run.started_at.isoformat(),
        completed_at=_iso(run.completed_at),
    )


def job_to_response(job: Job, latest_run: SyncRun | None = None) -> JobResponse:
    """Convert Job (plus its latest run) to response model."""
    return JobResponse(
        id=job.id,
        user_id=job.user_id,
        source_provider=job.source_provider,
        dest_provider=job.dest_provider,
        source_item_id=job.source_item_id,
        dest_folder_id=job.dest_folder_id,
        item_kind=job.item_kind,
        mode=job.mode,
        duplicate_action=job.duplicate_action,
        schedule_id=job.schedule_id,
        status=job.status,
        priority=job.priority,
        attempts=job.attempts,
        max_retries=job.max_retries,
        next_run_at=job.next_run_at.isoformat(),
        locked_by=job.locked_by,
        cancel_requested=job.cancel_requested,
        total_items=job.total_items,
        completed_items=job.completed_items,
        progress_pct=job.progress_pct,
        error_code=job.error_code,
        error_message=job.error_message,
        duration=job.duration,
        result_item_id=job.result_item_id,
        result_item_name=job.result_item_name,
        result_item_url=job.result_item_url,
        created_at=job.created_at.isoformat(),
        updated_at=job.updated_at.isoformat(),
        started_at=_iso(job.started_at),
        finished_at=_iso(job.finished_at),
        latest_run=run_to_response(latest_run) if latest_run else None,
    )


def version_to_response(version: FileVersion) -> FileVersionResponse:
    """Convert FileVersion to response model."""
    return FileVersionResponse(
        file_id=version.file_id,
        version=version.version,
        change_type=version.change_type,
        size=version.size,
        fingerprint=version.fingerprint,
        detail=version.detail,
        job_id=version.job_id,
        created_at=version.created_at.isoformat(),
    )


def schedule_to_response(schedule: SyncSchedule) -> ScheduleResponse:
    """Convert SyncSchedule to response model."""
    return ScheduleResponse(
        id=schedule.id,
        name=schedule.name,
        source_provider=schedule.source_provider,
        dest_provider=schedule.dest_provider,
        source_item_id=schedule.source_item_id,
        dest_folder_id=schedule.dest_folder_id,
        item_kind=schedule.item_kind,
        mode=schedule.mode,
        frequency=schedule.frequency,
        interval_minutes=schedule.interval_minutes,
        hour=schedule.hour,
        minute=schedule.minute,
        day_of_week=schedule.day_of_week,
        enabled=schedule.enabled,
        next_run_at=schedule.next_run_at.isoformat(),
        last_run_at=_iso(schedule.last_run_at),
        last_job_id=schedule.last_job_id,
        total_runs=schedule.total_runs,
    )
