"""Main API router that includes all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from cloudrelay.server.api import health, jobs, schedules, versions

router = APIRouter()

# Include all API routers
router.include_router(health.router)
router.include_router(jobs.router)
router.include_router(versions.router)
router.include_router(schedules.router)
