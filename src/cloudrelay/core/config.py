"""Engine configuration.

Operational limits (concurrency caps, size caps, lease and retry timings)
are passed to the engine through EngineConfig. Business rules such as plan
tiers live elsewhere.
"""

from __future__ import annotations

import os
import secrets
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "CLOUDRELAY_"


def default_worker_id() -> str:
    """Build a worker identity unique to this process."""
    return f"{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(4)}"


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


@dataclass
class EngineConfig:
    """Configuration for the job store, scheduler and workers.

    Attributes:
        db_path: SQLite database file.
        log_path: Log file written by setup_logging.
        worker_id: Identity recorded in ``locked_by`` for leases taken by this process.
        poll_interval: Seconds between lease scheduler ticks.
        lease_timeout: Seconds after the last heartbeat before a lease expires.
        heartbeat_interval: Minimum seconds between heartbeats while streaming.
        global_concurrency: Maximum jobs executed at once by this process.
        max_jobs_per_user: Maximum running jobs per user (0 = unlimited).
        base_delay: Base retry delay in seconds.
        max_delay: Cap on the retry delay in seconds.
        default_max_retries: max_retries for jobs that do not specify one.
        max_file_size: Largest file a job may transfer in bytes (0 = unlimited).
        preserve_destination_edits: Keep destination-only files edited since the last run in mirror mode.
        retention_hours: Age after which finished jobs are purged.
        schedule_interval: Seconds between checks for due sync schedules.
        provider_root: Base directory for the local filesystem provider.
    """

    db_path: Path = Path("cloudrelay.db")
    log_path: Path = Path("cloudrelay.log")
    worker_id: str = field(default_factory=default_worker_id)
    poll_interval: float = 2.0
    lease_timeout: float = 300.0
    heartbeat_interval: float = 30.0
    global_concurrency: int = 5
    max_jobs_per_user: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    default_max_retries: int = 5
    max_file_size: int = 0
    preserve_destination_edits: bool = True
    retention_hours: float = 24.0
    schedule_interval: float = 60.0
    provider_root: Path = Path("providers")

    def __post_init__(self) -> None:
        """Normalize paths and validate timings."""
        self.db_path = Path(self.db_path)
        self.log_path = Path(self.log_path)
        self.provider_root = Path(self.provider_root)
        for name in ("poll_interval", "lease_timeout", "heartbeat_interval", "base_delay", "max_delay"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.heartbeat_interval >= self.lease_timeout:
            raise ValueError("heartbeat_interval must be shorter than lease_timeout")
        if self.global_concurrency < 1:
            raise ValueError("global_concurrency must be at least 1")
        if self.default_max_retries < 1:
            raise ValueError("default_max_retries must be at least 1")
        if self.max_jobs_per_user < 0 or self.max_file_size < 0:
            raise ValueError("limits cannot be negative")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        """Load configuration from CLOUDRELAY_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ.

        Returns:
            EngineConfig with defaults for unset variables.

        Raises:
            ValueError: If a variable cannot be parsed or fails validation.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            return env.get(ENV_PREFIX + name)

        kwargs: dict[str, object] = {}
        paths = {"DB_PATH": "db_path", "LOG_PATH": "log_path", "PROVIDER_ROOT": "provider_root"}
        floats = {
            "POLL_INTERVAL": "poll_interval",
            "LEASE_TIMEOUT": "lease_timeout",
            "HEARTBEAT_INTERVAL": "heartbeat_interval",
            "RETRY_BASE_DELAY": "base_delay",
            "RETRY_MAX_DELAY": "max_delay",
            "RETENTION_HOURS": "retention_hours",
            "SCHEDULE_INTERVAL": "schedule_interval",
        }
        ints = {
            "CONCURRENCY": "global_concurrency",
            "MAX_JOBS_PER_USER": "max_jobs_per_user",
            "MAX_RETRIES": "default_max_retries",
            "MAX_FILE_SIZE": "max_file_size",
        }

        for env_name, attr in paths.items():
            value = get(env_name)
            if value:
                kwargs[attr] = Path(value)
        for env_name, attr in floats.items():
            value = get(env_name)
            if value:
                kwargs[attr] = float(value)
        for env_name, attr in ints.items():
            value = get(env_name)
            if value:
                kwargs[attr] = int(value)

        worker_id = get("WORKER_ID")
        if worker_id:
            kwargs["worker_id"] = worker_id
        preserve = get("PRESERVE_DEST_EDITS")
        if preserve:
            kwargs["preserve_destination_edits"] = _parse_bool(preserve)

        return cls(**kwargs)  # type: ignore[arg-type]
