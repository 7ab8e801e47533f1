"""Job engine exceptions."""

from typing import Optional
from uuid import UUID


class JobQueueError(Exception):
    """Base class for engine errors."""


class InvalidJobError(JobQueueError, ValueError):
    """Malformed enqueue input."""


class DuplicateDedupKeyError(JobQueueError):
    """An active job already holds this (queue, dedup_key)."""

    def __init__(self, queue: str, dedup_key: str, existing_id: Optional[UUID] = None):
        self.queue = queue
        self.dedup_key = dedup_key
        self.existing_id = existing_id
        super().__init__(
            f"Active job already exists for queue={queue!r} dedup_key={dedup_key!r}"
        )


class JobNotFoundError(JobQueueError, LookupError):
    """No job with the given id."""

    def __init__(self, job_id: UUID):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class LeaseLostError(JobQueueError):
    """The worker no longer holds the lease on the job."""

    def __init__(self, job_id: UUID, worker_id: str):
        self.job_id = job_id
        self.worker_id = worker_id
        super().__init__(f"Worker {worker_id} does not hold the lease on job {job_id}")


class NotDeadLetteredError(JobQueueError):
    """Replay requested for a job that is not dead-lettered."""


class PermanentJobError(JobQueueError):
    """Raised by handlers for failures that must not be retried."""
