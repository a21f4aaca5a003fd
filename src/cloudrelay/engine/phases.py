"""Job execution state machine.

States:
    RESOLVING -> DIFFING -> TRANSFERRING -> FINALIZING -> COMPLETED
    RESOLVING -> TRANSFERRING (copies skip diffing)
    any non-terminal state -> FAILED | CANCELLED

All state transitions are validated.
"""

from __future__ import annotations

from enum import Enum


class JobPhase(str, Enum):
    """Phase of a job execution."""

    RESOLVING = "resolving"
    DIFFING = "diffing"
    TRANSFERRING = "transferring"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_ENDINGS = {JobPhase.FAILED, JobPhase.CANCELLED}

# Valid state transitions
VALID_TRANSITIONS: dict[JobPhase, set[JobPhase]] = {
    JobPhase.RESOLVING: {JobPhase.DIFFING, JobPhase.TRANSFERRING, *_ENDINGS},
    JobPhase.DIFFING: {JobPhase.TRANSFERRING, *_ENDINGS},
    JobPhase.TRANSFERRING: {JobPhase.FINALIZING, *_ENDINGS},
    JobPhase.FINALIZING: {JobPhase.COMPLETED, *_ENDINGS},
    JobPhase.COMPLETED: set(),  # Terminal
    JobPhase.FAILED: set(),  # Terminal
    JobPhase.CANCELLED: set(),  # Terminal
}


class InvalidTransitionError(Exception):
    """Raised when attempting invalid state transition."""


class PhaseTracker:
    """Current phase of one execution, with the visited history."""

    def __init__(self) -> None:
        self.phase = JobPhase.RESOLVING
        self.history: list[JobPhase] = [JobPhase.RESOLVING]

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self.phase]

    def transition_to(self, new_phase: JobPhase) -> None:
        """Transition to a new phase with validation."""
        if new_phase not in VALID_TRANSITIONS[self.phase]:
            raise InvalidTransitionError(
                f"Cannot transition from {self.phase.name} to {new_phase.name}"
            )
        self.phase = new_phase
        self.history.append(new_phase)
