"""In-process job store.

An arena of job records keyed by id. A single asyncio lock serializes every
mutation, which gives the same check-and-set guarantees the Postgres store
gets from row locks, for dispatchers sharing one event loop.
"""

import asyncio
import copy
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional, Sequence
from uuid import UUID

import structlog

from jobq.jobs.clock import Clock, SystemClock
from jobq.jobs.errors import DuplicateDedupKeyError, LeaseLostError
from jobq.jobs.models import Job
from jobq.jobs.types import CancelResult, JobState, Priority

logger = structlog.get_logger(__name__)

_COMPLETION_STATES = (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)


class InMemoryJobStore:
    """JobStore backed by a dict. Suitable for tests and single-process use."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._jobs: dict[UUID, Job] = {}
        self._active_dedup: dict[tuple[str, str], UUID] = {}
        self._lock = asyncio.Lock()

    def _snapshot(self, job: Job) -> Job:
        return copy.deepcopy(job)

    def _release_dedup(self, job: Job) -> None:
        if job.dedup_key is not None:
            key = (job.queue, job.dedup_key)
            if self._active_dedup.get(key) == job.id:
                del self._active_dedup[key]

    def _held(self, job_id: UUID, worker_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None or job.state is not JobState.LEASED or job.lease_owner != worker_id:
            raise LeaseLostError(job_id, worker_id)
        return job

    async def insert(self, job: Job) -> UUID:
        async with self._lock:
            if job.dedup_key is not None:
                key = (job.queue, job.dedup_key)
                existing = self._active_dedup.get(key)
                if existing is not None:
                    raise DuplicateDedupKeyError(job.queue, job.dedup_key, existing)
                self._active_dedup[key] = job.id
            now = self._clock.now()
            stored = replace(
                self._snapshot(job),
                state=JobState.PENDING,
                created_at=now,
                updated_at=now,
            )
            self._jobs[job.id] = stored
        return job.id

    async def get(self, job_id: UUID) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return self._snapshot(job) if job else None

    async def list_ready(
        self,
        now: datetime,
        queues: Optional[Sequence[str]] = None,
        limit_per_class: int = 100,
    ) -> list[Job]:
        per_class: dict[Priority, list[Job]] = {p: [] for p in Priority}
        for job in self._jobs.values():
            if job.state is not JobState.PENDING or job.scheduled_at > now:
                continue
            if queues is not None and job.queue not in queues:
                continue
            per_class[job.priority].append(job)

        ready: list[Job] = []
        for priority in Priority.ordered():
            jobs = sorted(per_class[priority], key=lambda j: j.sort_key)
            ready.extend(self._snapshot(j) for j in jobs[:limit_per_class])
        return ready

    def _lease(self, job: Job, worker_id: str, lease_duration: float) -> Job:
        now = self._clock.now()
        job.state = JobState.LEASED
        job.lease_owner = worker_id
        job.lease_expires_at = now + timedelta(seconds=lease_duration)
        job.updated_at = now
        logger.info(
            "job_claimed", job_id=str(job.id), queue=job.queue, worker_id=worker_id
        )
        return self._snapshot(job)

    async def claim(
        self, job_id: UUID, worker_id: str, lease_duration: float
    ) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if (
                job is None
                or job.state is not JobState.PENDING
                or job.scheduled_at > self._clock.now()
            ):
                return None
            return self._lease(job, worker_id, lease_duration)

    async def claim_next(
        self,
        queue: str,
        worker_id: str,
        lease_duration: float,
        priority: Optional[Priority] = None,
    ) -> Optional[Job]:
        async with self._lock:
            now = self._clock.now()
            candidates = [
                j
                for j in self._jobs.values()
                if j.queue == queue
                and j.state is JobState.PENDING
                and j.scheduled_at <= now
                and (priority is None or j.priority is priority)
            ]
            if not candidates:
                return None
            best = min(candidates, key=lambda j: j.sort_key)
            return self._lease(best, worker_id, lease_duration)

    async def heartbeat(
        self, job_id: UUID, worker_id: str, lease_expires_at: datetime
    ) -> Job:
        async with self._lock:
            job = self._held(job_id, worker_id)
            job.lease_expires_at = lease_expires_at
            job.updated_at = self._clock.now()
            return self._snapshot(job)

    def _finish(self, job: Job, state: JobState, last_error: Optional[str]) -> None:
        now = self._clock.now()
        job.state = state
        job.lease_owner = None
        job.lease_expires_at = None
        job.updated_at = now
        if last_error is not None:
            job.last_error = last_error
        if state.is_terminal:
            job.finished_at = now
            self._release_dedup(job)

    async def complete(
        self,
        job_id: UUID,
        worker_id: str,
        state: JobState,
        last_error: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> Job:
        if state not in _COMPLETION_STATES:
            raise ValueError(f"complete() cannot move a job to {state.value}")
        async with self._lock:
            job = self._held(job_id, worker_id)
            if attempts is not None:
                if attempts > job.max_attempts:
                    raise ValueError("attempts cannot exceed max_attempts")
                job.attempts = attempts
            self._finish(job, state, last_error)
            return self._snapshot(job)

    async def reschedule(
        self,
        job_id: UUID,
        worker_id: str,
        scheduled_at: datetime,
        attempts: int,
        last_error: Optional[str] = None,
    ) -> Job:
        async with self._lock:
            job = self._held(job_id, worker_id)
            if attempts > job.max_attempts:
                raise ValueError("attempts cannot exceed max_attempts")
            self._finish(job, JobState.PENDING, last_error)
            job.attempts = attempts
            job.scheduled_at = max(scheduled_at, job.scheduled_at)
            return self._snapshot(job)

    async def find_expired_leases(self, now: datetime, limit: int = 100) -> list[Job]:
        expired = [
            j
            for j in self._jobs.values()
            if j.state is JobState.LEASED
            and j.lease_expires_at is not None
            and j.lease_expires_at < now
        ]
        expired.sort(key=lambda j: j.lease_expires_at)
        return [self._snapshot(j) for j in expired[:limit]]

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
        async with self._lock:
            job = self._jobs.get(job_id)
            if (
                job is None
                or job.state is not JobState.LEASED
                or job.lease_owner != lease_owner
                or job.lease_expires_at is None
                or job.lease_expires_at >= now
            ):
                return None
            self._finish(job, state, last_error)
            job.attempts = min(attempts, job.max_attempts)
            if scheduled_at is not None:
                job.scheduled_at = max(scheduled_at, job.scheduled_at)
            return self._snapshot(job)

    async def cancel(self, job_id: UUID) -> CancelResult:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return CancelResult.NOT_FOUND
            if job.state.is_terminal:
                return CancelResult.ALREADY_TERMINAL
            if job.state is JobState.PENDING:
                self._finish(job, JobState.CANCELLED, None)
            else:
                job.cancel_requested = True
                job.updated_at = self._clock.now()
            return CancelResult.OK

    async def mark_dead_lettered(self, job_id: UUID) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state is not JobState.FAILED:
                return None
            job.state = JobState.DEAD_LETTERED
            job.updated_at = self._clock.now()
            return self._snapshot(job)

    async def list_jobs(
        self,
        queue: Optional[str] = None,
        state: Optional[JobState] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        jobs = [
            j
            for j in self._jobs.values()
            if (queue is None or j.queue == queue) and (state is None or j.state is state)
        ]
        jobs.sort(key=lambda j: (j.created_at, j.id), reverse=True)
        return [self._snapshot(j) for j in jobs[offset : offset + limit]]

    async def list_failed_before(self, cutoff: datetime, limit: int = 100) -> list[Job]:
        failed = [
            j
            for j in self._jobs.values()
            if j.state is JobState.FAILED
            and j.finished_at is not None
            and j.finished_at <= cutoff
        ]
        failed.sort(key=lambda j: j.finished_at)
        return [self._snapshot(j) for j in failed[:limit]]

    async def find_by_dedup_key_since(
        self, queue: str, dedup_key: str, since: datetime
    ) -> Optional[Job]:
        matches = [
            j
            for j in self._jobs.values()
            if j.queue == queue and j.dedup_key == dedup_key and j.created_at >= since
        ]
        if not matches:
            return None
        return self._snapshot(max(matches, key=lambda j: j.created_at))

    async def queue_depths(self) -> dict[tuple[str, Priority], int]:
        depths: dict[tuple[str, Priority], int] = {}
        for job in self._jobs.values():
            if job.state is JobState.PENDING:
                key = (job.queue, job.priority)
                depths[key] = depths.get(key, 0) + 1
        return depths
