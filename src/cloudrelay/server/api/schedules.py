"""Recurring sync schedule API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from cloudrelay.core.errors import InvalidSpec, ScheduleNotFound
from cloudrelay.server.api.deps import get_schedules, get_user_id
from cloudrelay.server.schedules import ScheduleSpec, ScheduleStore
from cloudrelay.server.schemas import (
    ScheduleCreateRequest,
    ScheduleResponse,
    schedule_to_response,
)

router = APIRouter(prefix="/api", tags=["schedules"])


@router.post("/schedules", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
def create_schedule(
    request: ScheduleCreateRequest,
    schedules: ScheduleStore = Depends(get_schedules),
    user_id: str = Depends(get_user_id),
) -> ScheduleResponse:
    """Create a recurring sync."""
    spec = ScheduleSpec(user_id=user_id, **request.model_dump())
    try:
        schedule = schedules.create(spec)
    except InvalidSpec as e:
        raise HTTPException(
            status_code=422,
            detail=str(e),
        ) from e
    return schedule_to_response(schedule)


@router.get("/schedules", response_model=list[ScheduleResponse])
def list_schedules(
    schedules: ScheduleStore = Depends(get_schedules),
    user_id: str = Depends(get_user_id),
) -> list[ScheduleResponse]:
    """List the caller's schedules."""
    return [schedule_to_response(s) for s in schedules.list_schedules(user_id)]


@router.delete("/schedules/{schedule_id}", response_model=ScheduleResponse)
def disable_schedule(
    schedule_id: int,
    schedules: ScheduleStore = Depends(get_schedules),
    user_id: str = Depends(get_user_id),
) -> ScheduleResponse:
    """Disable a schedule."""
    try:
        schedule = schedules.disable(schedule_id, user_id)
    except ScheduleNotFound as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Schedule not found: {schedule_id}",
        ) from e
    return schedule_to_response(schedule)
