"""Job system type definitions."""

from enum import Enum


class JobState(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    LEASED = "leased"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if this state is terminal (job won't run again)."""
        return self in (
            JobState.SUCCEEDED,
            JobState.FAILED,
            JobState.DEAD_LETTERED,
            JobState.CANCELLED,
        )

    @property
    def is_active(self) -> bool:
        """Active jobs hold their dedup key."""
        return self in (JobState.PENDING, JobState.LEASED)


class Priority(str, Enum):
    """Priority classes, highest first."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """0 for CRITICAL up to 3 for LOW; lower ranks are served first."""
        return _PRIORITY_RANK[self]

    @classmethod
    def ordered(cls) -> list["Priority"]:
        """All classes, highest first."""
        return [cls.CRITICAL, cls.HIGH, cls.NORMAL, cls.LOW]


_PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


class OutcomeKind(str, Enum):
    """Handler result classification."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


class CancelResult(str, Enum):
    """Result of a cancellation request."""

    OK = "ok"
    NOT_FOUND = "not_found"
    ALREADY_TERMINAL = "already_terminal"
