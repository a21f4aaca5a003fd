"""Core module - Shared types, errors, clock and configuration."""

from cloudrelay.core.clock import Clock, SystemClock, as_utc
from cloudrelay.core.config import EngineConfig, default_worker_id
from cloudrelay.core.errors import (
    ConcurrentAppend,
    InvalidSpec,
    JobNotFound,
    LeaseLost,
    PermanentProviderError,
    ProviderError,
    ProviderNotFound,
    RelayError,
    ScheduleNotFound,
    TransientProviderError,
    classify_error,
    classify_os_error,
)
from cloudrelay.core.types import (
    TERMINAL_STATUSES,
    ChangeType,
    DuplicateAction,
    ErrorCode,
    ItemKind,
    JobStatus,
    RunStatus,
    ScheduleFrequency,
    SyncMode,
)

__all__ = [
    # Clock
    "Clock",
    "SystemClock",
    "as_utc",
    # Config
    "EngineConfig",
    "default_worker_id",
    # Errors
    "ConcurrentAppend",
    "InvalidSpec",
    "JobNotFound",
    "LeaseLost",
    "PermanentProviderError",
    "ProviderError",
    "ProviderNotFound",
    "RelayError",
    "ScheduleNotFound",
    "TransientProviderError",
    "classify_error",
    "classify_os_error",
    # Types
    "TERMINAL_STATUSES",
    "ChangeType",
    "DuplicateAction",
    "ErrorCode",
    "ItemKind",
    "JobStatus",
    "RunStatus",
    "ScheduleFrequency",
    "SyncMode",
]
