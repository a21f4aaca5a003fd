"""Retry/backoff policy for failed jobs.

This module provides:
- backoff_delay: exponential delay with full jitter, capped
- next_run_at: earliest time a failed job may run again
- should_retry: retry decision from error class and attempt count
- is_retryable: error class of an arbitrary exception
- RetryPolicy: the same functions bound to configured delays

All functions are pure apart from the random source, which callers inject.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from cloudrelay.core.errors import ProviderError, classify_error

# Default retry configuration
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 60.0  # seconds
DEFAULT_MAX_RETRIES = 5

# Jitter factor range applied to the computed delay: [0.5, 1.0)
JITTER_MIN = 0.5
JITTER_SPAN = 0.5

# 2**32 seconds already exceeds any sane cap
_MAX_EXPONENT = 32


def backoff_delay(
    attempts: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    rng: random.Random | None = None,
) -> float:
    """Compute the jittered delay before the next attempt.

    Args:
        attempts: Attempts made so far (0 for the first failure).
        base_delay: Delay for attempts=0 before jitter, in seconds.
        max_delay: Cap applied before jitter, in seconds.
        rng: Random source (module random when omitted).

    Returns:
        Delay in seconds: min(base * 2^attempts, max) * U[0.5, 1.0).
    """
    if attempts < 0:
        raise ValueError("attempts cannot be negative")
    exponent = min(attempts, _MAX_EXPONENT)
    delay = min(base_delay * (2**exponent), max_delay)
    source = rng if rng is not None else random
    return delay * (JITTER_MIN + JITTER_SPAN * source.random())


def next_run_at(
    attempts: int,
    now: datetime,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    rng: random.Random | None = None,
) -> datetime:
    """Return now plus the jittered backoff delay for ``attempts``."""
    return now + timedelta(seconds=backoff_delay(attempts, base_delay, max_delay, rng))


def should_retry(error: ProviderError, attempts: int, max_retries: int) -> bool:
    """Decide whether a failed job goes back to pending.

    Args:
        error: Classified failure.
        attempts: Attempts including the one that just failed.
        max_retries: Maximum attempts allowed for the job.
    """
    return error.retryable and attempts < max_retries


@dataclass
class RetryPolicy:
    """Backoff settings bound together for the job store."""

    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    rng: random.Random = field(default_factory=random.Random)

    def delay(self, attempts: int) -> float:
        """Jittered delay in seconds for ``attempts`` prior attempts."""
        return backoff_delay(attempts, self.base_delay, self.max_delay, self.rng)

    def next_run_at(self, attempts: int, now: datetime) -> datetime:
        """Earliest eligible run time after ``attempts`` prior attempts."""
        return now + timedelta(seconds=self.delay(attempts))

    def should_retry(self, error: ProviderError, attempts: int, max_retries: int) -> bool:
        """See should_retry()."""
        return should_retry(error, attempts, max_retries)


def is_retryable(exc: BaseException) -> bool:
    """Whether a failure raised while executing a job may be retried."""
    return classify_error(exc).retryable
