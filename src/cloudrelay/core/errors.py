"""Error taxonomy for the job engine.

Provider and I/O failures are translated into one of these kinds at the
worker boundary before anything touches the job store.
"""

from __future__ import annotations

import errno

from cloudrelay.core.types import ErrorCode

TRANSIENT_CODES = frozenset(
    {
        ErrorCode.NETWORK,
        ErrorCode.TIMEOUT,
        ErrorCode.RATE_LIMITED,
        ErrorCode.AUTH_TRANSIENT,
        ErrorCode.UNAVAILABLE,
    }
)

_QUOTA_ERRNOS = frozenset(
    code for code in (errno.ENOSPC, getattr(errno, "EDQUOT", None)) if code is not None
)


class RelayError(Exception):
    """Base exception for cloudrelay."""


class InvalidSpec(RelayError):
    """Raised when an enqueue request has incomplete routing or unknown values."""


class JobNotFound(RelayError):
    """Raised when a job does not exist or belongs to another user."""


class ScheduleNotFound(RelayError):
    """Raised when a schedule does not exist or belongs to another user."""


class LeaseLost(RelayError):
    """Raised when a worker no longer holds a live lease on its job."""

    def __init__(self, job_id: str, worker_id: str) -> None:
        self.job_id = job_id
        self.worker_id = worker_id
        super().__init__(f"Lease on job {job_id} no longer held by {worker_id}")


class ConcurrentAppend(RelayError):
    """Raised when two writers race on the same version chain."""

    def __init__(self, file_id: int, version: int) -> None:
        self.file_id = file_id
        self.version = version
        super().__init__(f"Concurrent append to file {file_id} at version {version}")


class ProviderError(RelayError):
    """An error reported by (or on behalf of) a provider adapter.

    Attributes:
        code: Error code surfaced on the job record.
        retryable: Whether the job may be retried after this error.
    """

    code: ErrorCode = ErrorCode.INTERNAL
    retryable: bool = True

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        """Error text without the code prefix."""
        return str(self.args[0]) if self.args else ""

    def describe(self) -> str:
        """Human readable message including the code."""
        return f"[{self.code.value}] {self.message}"


class TransientProviderError(ProviderError):
    """Network, timeout, rate limit or a temporary auth hiccup."""

    code = ErrorCode.NETWORK
    retryable = True


class PermanentProviderError(ProviderError):
    """Not found, permission denied, quota exceeded and friends."""

    code = ErrorCode.INTERNAL
    retryable = False


class ProviderNotFound(PermanentProviderError):
    """The requested item does not exist on the provider."""

    code = ErrorCode.NOT_FOUND


def classify_error(exc: BaseException) -> ProviderError:
    """Translate any exception raised while executing a job.

    Args:
        exc: The exception caught at the worker boundary.

    Returns:
        A ProviderError whose ``retryable`` flag drives the retry policy.
    """
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, ConcurrentAppend):
        return PermanentProviderError(str(exc), ErrorCode.INTERNAL)
    if isinstance(exc, OSError):
        return classify_os_error(exc)
    # Unknown failures are retried
    return TransientProviderError(f"{type(exc).__name__}: {exc}", ErrorCode.INTERNAL)


def classify_os_error(exc: OSError) -> ProviderError:
    """Translate an operating system error raised by a provider.

    Missing items, permission problems and full disks are permanent;
    anything else (connection resets included) is retried.
    """
    if isinstance(exc, TimeoutError):
        return TransientProviderError(str(exc) or "Operation timed out", ErrorCode.TIMEOUT)
    if isinstance(exc, ConnectionError):
        return TransientProviderError(str(exc) or "Network error", ErrorCode.NETWORK)
    if isinstance(exc, FileNotFoundError):
        return ProviderNotFound(str(exc) or "Item not found")
    if isinstance(exc, PermissionError) or exc.errno == errno.EROFS:
        return PermanentProviderError(str(exc) or "Permission denied", ErrorCode.PERMISSION_DENIED)
    if exc.errno in _QUOTA_ERRNOS:
        return PermanentProviderError(str(exc) or "No space left", ErrorCode.QUOTA_EXCEEDED)
    return TransientProviderError(str(exc) or "I/O error", ErrorCode.NETWORK)
