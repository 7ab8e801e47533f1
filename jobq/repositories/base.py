"""Job store interface consumed by the engine.

Every state transition goes through one of these calls. Implementations
must make ``insert`` (dedup check), ``claim``/``claim_next`` and every
lease-guarded update atomic with respect to concurrent callers, across
processes where the backend is shared.
"""

from datetime import datetime
from typing import Optional, Protocol, Sequence
from uuid import UUID

from jobq.jobs.models import Job
from jobq.jobs.types import CancelResult, JobState, Priority


class JobStore(Protocol):
    async def insert(self, job: Job) -> UUID:
        """Persist a new Pending job.

        Raises:
            DuplicateDedupKeyError: an active job holds (queue, dedup_key)
        """
        ...

    async def get(self, job_id: UUID) -> Optional[Job]:
        ...

    async def list_ready(
        self,
        now: datetime,
        queues: Optional[Sequence[str]] = None,
        limit_per_class: int = 100,
    ) -> list[Job]:
        """Pending jobs due at ``now``; at most ``limit_per_class`` per priority."""
        ...

    async def claim(
        self, job_id: UUID, worker_id: str, lease_duration: float
    ) -> Optional[Job]:
        """Lease one specific ready job. None if another worker won the race."""
        ...

    async def claim_next(
        self,
        queue: str,
        worker_id: str,
        lease_duration: float,
        priority: Optional[Priority] = None,
    ) -> Optional[Job]:
        """Lease the best ready job of ``queue`` (optionally one class)."""
        ...

    async def heartbeat(
        self, job_id: UUID, worker_id: str, lease_expires_at: datetime
    ) -> Job:
        """Extend a held lease. Raises LeaseLostError if not held."""
        ...

    async def complete(
        self,
        job_id: UUID,
        worker_id: str,
        state: JobState,
        last_error: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> Job:
        """Leased -> terminal (succeeded, failed or cancelled)."""
        ...

    async def reschedule(
        self,
        job_id: UUID,
        worker_id: str,
        scheduled_at: datetime,
        attempts: int,
        last_error: Optional[str] = None,
    ) -> Job:
        """Leased -> Pending with a new schedule and attempt count."""
        ...

    async def find_expired_leases(self, now: datetime, limit: int = 100) -> list[Job]:
        ...

    async def recover_expired(
        self,
        job_id: UUID,
        lease_owner: str,
        now: datetime,
        state: JobState,
        attempts: int,
        scheduled_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
    ) -> Optional[Job]:
        """Move a job off an expired lease. None if the lease changed meanwhile."""
        ...

    async def cancel(self, job_id: UUID) -> CancelResult:
        """Pending -> Cancelled now; Leased -> cancel_requested flag."""
        ...

    async def mark_dead_lettered(self, job_id: UUID) -> Optional[Job]:
        """Failed -> DeadLettered. None if the job is not Failed."""
        ...

    async def list_jobs(
        self,
        queue: Optional[str] = None,
        state: Optional[JobState] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        ...

    async def list_failed_before(self, cutoff: datetime, limit: int = 100) -> list[Job]:
        """Failed jobs whose finished_at is at or before ``cutoff``."""
        ...

    async def find_by_dedup_key_since(
        self, queue: str, dedup_key: str, since: datetime
    ) -> Optional[Job]:
        """Most recent job with this key created at or after ``since``, any state."""
        ...

    async def queue_depths(self) -> dict[tuple[str, Priority], int]:
        """Pending job counts per (queue, priority)."""
        ...
