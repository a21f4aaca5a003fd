"""HTTP client for the cloudrelay server API.

This module provides:
- RelayClient: HTTP client for communicating with the server
- Job operations (enqueue, status, list, cancel, runs)
- Version history and recurring schedule operations
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Caller identity missing or rejected."""


class NotFoundError(APIError):
    """Resource not found."""


class ValidationError(APIError):
    """Request rejected as invalid."""


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class RemoteRun:
    """SyncRun summary from server."""

    id: int
    status: str
    mode: str
    files_processed: int
    files_new: int
    files_modified: int
    files_skipped: int
    files_failed: int
    files_deleted: int
    bytes_transferred: int
    duration: float | None
    error_message: str | None
    started_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteRun:
        """Create from API response dictionary."""
        return cls(
            id=data["id"],
            status=data["status"],
            mode=data["mode"],
            files_processed=data["files_processed"],
            files_new=data["files_new"],
            files_modified=data["files_modified"],
            files_skipped=data["files_skipped"],
            files_failed=data["files_failed"],
            files_deleted=data.get("files_deleted", 0),
            bytes_transferred=data["bytes_transferred"],
            duration=data.get("duration"),
            error_message=data.get("error_message"),
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=_dt(data.get("completed_at")),
        )


@dataclass
class RemoteJob:
    """Job status from server."""

    id: str
    status: str
    mode: str
    item_kind: str
    source_provider: str
    dest_provider: str
    source_item_id: str
    dest_folder_id: str
    priority: int
    attempts: int
    max_retries: int
    progress_pct: int
    completed_items: int
    total_items: int
    cancel_requested: bool
    error_code: str | None
    error_message: str | None
    result_item_name: str | None
    result_item_url: str | None
    created_at: datetime
    duplicate_action: str = "skip"
    latest_run: RemoteRun | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteJob:
        """Create from API response dictionary."""
        run = data.get("latest_run")
        return cls(
            id=data["id"],
            status=data["status"],
            mode=data["mode"],
            item_kind=data["item_kind"],
            source_provider=data["source_provider"],
            dest_provider=data["dest_provider"],
            source_item_id=data["source_item_id"],
            dest_folder_id=data["dest_folder_id"],
            priority=data["priority"],
            attempts=data["attempts"],
            max_retries=data["max_retries"],
            progress_pct=data["progress_pct"],
            completed_items=data["completed_items"],
            total_items=data["total_items"],
            cancel_requested=data["cancel_requested"],
            error_code=data.get("error_code"),
            error_message=data.get("error_message"),
            result_item_name=data.get("result_item_name"),
            result_item_url=data.get("result_item_url"),
            created_at=datetime.fromisoformat(data["created_at"]),
            duplicate_action=data.get("duplicate_action", "skip"),
            latest_run=RemoteRun.from_dict(run) if run else None,
        )


@dataclass
class RemoteVersion:
    """Version chain entry from server."""

    version: int
    change_type: str
    size: int | None
    detail: str
    created_at: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteVersion:
        """Create from API response dictionary."""
        return cls(
            version=data["version"],
            change_type=data["change_type"],
            size=data.get("size"),
            detail=data.get("detail", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class RemoteSchedule:
    """Recurring sync from server."""

    id: int
    name: str
    frequency: str
    mode: str
    enabled: bool
    next_run_at: datetime
    last_job_id: str | None
    total_runs: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteSchedule:
        """Create from API response dictionary."""
        return cls(
            id=data["id"],
            name=data["name"],
            frequency=data["frequency"],
            mode=data["mode"],
            enabled=data["enabled"],
            next_run_at=datetime.fromisoformat(data["next_run_at"]),
            last_job_id=data.get("last_job_id"),
            total_runs=data.get("total_runs", 0),
        )


class RelayClient:
    """HTTP client for the cloudrelay server API."""

    def __init__(
        self,
        server_url: str,
        user_id: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            server_url: Base URL of the server.
            user_id: Identity sent in the X-User-Id header.
            timeout: Request timeout in seconds.
            transport: Custom transport (tests).
        """
        self._server_url = server_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self._server_url,
            timeout=timeout,
            headers={USER_HEADER: user_id},
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> RelayClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    @staticmethod
    def _detail(response: httpx.Response, default: str) -> str:
        try:
            detail = response.json().get("detail", default)
        except ValueError:
            return default
        return detail if isinstance(detail, str) else str(detail)

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError(self._detail(response, "Unauthorized"), 401)
        if response.status_code == 404:
            raise NotFoundError(self._detail(response, "Resource not found"), 404)
        if response.status_code == 422:
            raise ValidationError(self._detail(response, "Invalid request"), 422)
        if response.status_code >= 400:
            raise APIError(self._detail(response, "Unknown error"), response.status_code)
        return response

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is healthy."""
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Job operations ===

    def enqueue(
        self,
        source_provider: str,
        dest_provider: str,
        source_item_id: str,
        dest_folder_id: str,
        item_kind: str = "file",
        mode: str = "one_shot_copy",
        priority: int = 0,
        max_retries: int | None = None,
        duplicate_action: str = "skip",
    ) -> RemoteJob:
        """Enqueue a job.

        Raises:
            ValidationError: If the server rejected the job spec.
        """
        payload: dict[str, Any] = {
            "source_provider": source_provider,
            "dest_provider": dest_provider,
            "source_item_id": source_item_id,
            "dest_folder_id": dest_folder_id,
            "item_kind": item_kind,
            "mode": mode,
            "priority": priority,
            "duplicate_action": duplicate_action,
        }
        if max_retries is not None:
            payload["max_retries"] = max_retries
        response = self._handle_response(self._client.post("/api/jobs", json=payload))
        job = RemoteJob.from_dict(response.json())
        logger.debug("Enqueued job %s", job.id)
        return job

    def get_job(self, job_id: str) -> RemoteJob:
        """Get job status with its latest run.

        Raises:
            NotFoundError: If the job does not exist.
        """
        response = self._handle_response(self._client.get(f"/api/jobs/{job_id}"))
        return RemoteJob.from_dict(response.json())

    def list_jobs(self, status: str | None = None, limit: int = 100) -> list[RemoteJob]:
        """List the caller's jobs, newest first."""
        params: dict[str, Any] = {"limit": limit}
        if status:
            params["status"] = status
        response = self._handle_response(self._client.get("/api/jobs", params=params))
        return [RemoteJob.from_dict(j) for j in response.json()]

    def list_runs(self, job_id: str) -> list[RemoteRun]:
        """List the executions of a job, newest first."""
        response = self._handle_response(self._client.get(f"/api/jobs/{job_id}/runs"))
        return [RemoteRun.from_dict(r) for r in response.json()]

    def cancel(self, job_id: str) -> RemoteJob:
        """Request cancellation of a job."""
        response = self._handle_response(self._client.post(f"/api/jobs/{job_id}/cancel"))
        return RemoteJob.from_dict(response.json())

    # === Version history ===

    def file_versions(self, file_id: int) -> list[RemoteVersion]:
        """Version chain of a file, newest first."""
        response = self._handle_response(self._client.get(f"/api/files/{file_id}/versions"))
        return [RemoteVersion.from_dict(v) for v in response.json()]

    # === Schedules ===

    def create_schedule(self, **fields: Any) -> RemoteSchedule:
        """Create a recurring sync. Fields mirror the server's request body."""
        response = self._handle_response(self._client.post("/api/schedules", json=fields))
        return RemoteSchedule.from_dict(response.json())

    def list_schedules(self) -> list[RemoteSchedule]:
        """List the caller's schedules."""
        response = self._handle_response(self._client.get("/api/schedules"))
        return [RemoteSchedule.from_dict(s) for s in response.json()]

    def disable_schedule(self, schedule_id: int) -> RemoteSchedule:
        """Disable a schedule."""
        response = self._handle_response(self._client.delete(f"/api/schedules/{schedule_id}"))
        return RemoteSchedule.from_dict(response.json())
