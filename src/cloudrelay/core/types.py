"""Shared types for cloudrelay.

This module defines the enums used by the job store, the engine and the API.
Values are persisted as plain strings.
"""

from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle status of a job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Terminal jobs are never modified again."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class ItemKind(str, Enum):
    """What a job points at on the source provider."""

    FILE = "file"
    FOLDER = "folder"


class SyncMode(str, Enum):
    """Policy governing which source/destination differences are acted on."""

    CUMULATIVE_SYNC = "cumulative_sync"
    MIRROR = "mirror"
    ONE_SHOT_COPY = "one_shot_copy"


class DuplicateAction(str, Enum):
    """What to do when the destination already holds an unrelated file of the same name."""

    SKIP = "skip"
    REPLACE = "replace"
    COPY_WITH_SUFFIX = "copy_with_suffix"


class RunStatus(str, Enum):
    """Status of a single SyncRun."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


class ChangeType(str, Enum):
    """Kind of change recorded in a file's version chain."""

    CREATED = "created"
    MODIFIED = "modified"
    SYNCED = "synced"
    COPIED = "copied"
    TRANSFERRED = "transferred"


class ErrorCode(str, Enum):
    """Error codes surfaced on failed jobs."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    AUTH_TRANSIENT = "auth_transient"
    UNAVAILABLE = "unavailable"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    AUTH_FAILED = "auth_failed"
    QUOTA_EXCEEDED = "quota_exceeded"
    FILE_TOO_LARGE = "file_too_large"
    UNSUPPORTED = "unsupported"
    ITEMS_FAILED = "items_failed"
    EXHAUSTED_RETRIES = "exhausted_retries"
    INTERNAL = "internal"


class ScheduleFrequency(str, Enum):
    """How often a recurring sync schedule fires."""

    INTERVAL = "interval"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
