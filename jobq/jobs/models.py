"""Job system data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union
from uuid import UUID, uuid4

from jobq.jobs.types import JobState, OutcomeKind, Priority


# JSON object, or raw bytes passed through untouched
Payload = Union[dict[str, Any], bytes]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """A job record. Stores hand out copies; mutate only through the store."""

    queue: str
    payload: Payload
    id: UUID = field(default_factory=uuid4)
    priority: Priority = Priority.NORMAL
    state: JobState = JobState.PENDING
    dedup_key: Optional[str] = None

    # Retry handling
    attempts: int = 0
    max_attempts: int = 5
    scheduled_at: datetime = field(default_factory=_utcnow)
    last_error: Optional[str] = None

    # Lease info
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    cancel_requested: bool = False

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    # Set on jobs created by dead-letter replay
    replayed_from: Optional[UUID] = None

    @property
    def sort_key(self) -> tuple[int, datetime, UUID]:
        """Dispatch order: priority class, then scheduled_at, then id."""
        return (self.priority.rank, self.scheduled_at, self.id)


@dataclass(frozen=True)
class Outcome:
    """Handler result: success, retryable error, or permanent error."""

    kind: OutcomeKind
    reason: Optional[str] = None
    result: Optional[dict[str, Any]] = None

    @classmethod
    def success(cls, result: Optional[dict[str, Any]] = None) -> "Outcome":
        return cls(OutcomeKind.SUCCESS, result=result)

    @classmethod
    def retryable(cls, reason: str) -> "Outcome":
        return cls(OutcomeKind.RETRYABLE, reason=reason)

    @classmethod
    def permanent(cls, reason: str) -> "Outcome":
        return cls(OutcomeKind.PERMANENT, reason=reason)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS


@dataclass(frozen=True)
class EnqueueResult:
    """Result of an enqueue call. Duplicates are an outcome, not an error."""

    job_id: Optional[UUID]
    deduplicated: bool = False


@dataclass(frozen=True)
class JobStatusView:
    """Caller-facing job status."""

    job_id: UUID
    queue: str
    priority: Priority
    state: JobState
    attempts: int
    max_attempts: int
    last_error: Optional[str]
    scheduled_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusView":
        return cls(
            job_id=job.id,
            queue=job.queue,
            priority=job.priority,
            state=job.state,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            last_error=job.last_error,
            scheduled_at=job.scheduled_at,
        )
