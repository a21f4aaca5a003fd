"""FastAPI dependencies for API routes."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from cloudrelay.server.jobs import JobStore
from cloudrelay.server.schedules import ScheduleStore
from cloudrelay.server.versions import VersionRecorder


def get_jobs(request: Request) -> JobStore:
    """Get job store from app state."""
    jobs: JobStore = request.app.state.jobs
    return jobs


def get_versions(request: Request) -> VersionRecorder:
    """Get version recorder from app state."""
    versions: VersionRecorder = request.app.state.versions
    return versions


def get_schedules(request: Request) -> ScheduleStore:
    """Get schedule store from app state."""
    schedules: ScheduleStore = request.app.state.schedules
    return schedules


def get_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    """Caller identity, set by the serving layer in front of the API."""
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id.strip()
