"""Job API routes: enqueue, status, runs and cancellation."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from cloudrelay.core.errors import InvalidSpec, JobNotFound
from cloudrelay.core.types import JobStatus
from cloudrelay.server.api.deps import get_jobs, get_user_id
from cloudrelay.server.jobs import JobSpec, JobStore
from cloudrelay.server.schemas import (
    JobCreateRequest,
    JobResponse,
    SyncRunResponse,
    job_to_response,
    run_to_response,
)

router = APIRouter(prefix="/api", tags=["jobs"])


def _not_found(job_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Job not found: {job_id}",
    )


@router.post("/jobs", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def enqueue_job(
    request: JobCreateRequest,
    jobs: JobStore = Depends(get_jobs),
    user_id: str = Depends(get_user_id),
) -> JobResponse:
    """Enqueue a copy or sync job."""
    spec = JobSpec(
        user_id=user_id,
        source_provider=request.source_provider,
        dest_provider=request.dest_provider,
        source_item_id=request.source_item_id,
        dest_folder_id=request.dest_folder_id,
        item_kind=request.item_kind,
        mode=request.mode,
        priority=request.priority,
        max_retries=request.max_retries,
        duplicate_action=request.duplicate_action,
    )
    try:
        job_id = jobs.enqueue(spec)
    except InvalidSpec as e:
        raise HTTPException(
            status_code=422,
            detail=str(e),
        ) from e
    return job_to_response(jobs.get(job_id))


@router.get("/jobs", response_model=list[JobResponse])
def list_jobs(
    jobs: JobStore = Depends(get_jobs),
    user_id: str = Depends(get_user_id),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = 100,
) -> list[JobResponse]:
    """List the caller's jobs, newest first."""
    if status_filter is not None:
        try:
            JobStatus(status_filter)
        except ValueError as e:
            raise HTTPException(
                status_code=422,
                detail=f"Unknown status: {status_filter}",
            ) from e
    return [job_to_response(j) for j in jobs.list_jobs(user_id, status_filter, limit)]


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    jobs: JobStore = Depends(get_jobs),
    user_id: str = Depends(get_user_id),
) -> JobResponse:
    """Get a job with its latest SyncRun summary."""
    try:
        job = jobs.get(job_id, user_id)
    except JobNotFound as e:
        raise _not_found(job_id) from e
    return job_to_response(job, jobs.latest_run(job_id))


@router.get("/jobs/{job_id}/runs", response_model=list[SyncRunResponse])
def list_runs(
    job_id: str,
    jobs: JobStore = Depends(get_jobs),
    user_id: str = Depends(get_user_id),
) -> list[SyncRunResponse]:
    """List every execution of a job, newest first."""
    try:
        jobs.get(job_id, user_id)
    except JobNotFound as e:
        raise _not_found(job_id) from e
    return [run_to_response(r) for r in jobs.list_runs(job_id)]


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
def cancel_job(
    job_id: str,
    jobs: JobStore = Depends(get_jobs),
    user_id: str = Depends(get_user_id),
) -> JobResponse:
    """Request cancellation of a job. Idempotent."""
    try:
        job = jobs.request_cancel(job_id, user_id)
    except JobNotFound as e:
        raise _not_found(job_id) from e
    return job_to_response(job, jobs.latest_run(job_id))
