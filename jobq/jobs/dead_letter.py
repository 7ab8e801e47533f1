"""Dead-letter handling for failed jobs."""

from datetime import timedelta
from typing import Literal, Optional
from uuid import UUID

import structlog

from jobq.jobs import metrics as m
from jobq.jobs.clock import Clock, SystemClock
from jobq.jobs.errors import JobNotFoundError, NotDeadLetteredError
from jobq.jobs.metrics import MetricsSink, NullMetricsSink
from jobq.jobs.models import Job
from jobq.jobs.types import JobState
from jobq.repositories.base import JobStore

logger = structlog.get_logger(__name__)

DeadLetterMode = Literal["immediate", "grace", "disabled"]


class DeadLetterSink:
    """
    Moves Failed jobs to DeadLettered and lets operators list and replay them.

    Modes:
    - immediate: on the Failed transition
    - grace: by ``sweep_grace`` once ``grace_seconds`` passed since failure
    - disabled: jobs stay Failed
    """

    def __init__(
        self,
        store: JobStore,
        mode: DeadLetterMode = "immediate",
        grace_seconds: float = 3600.0,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsSink] = None,
    ):
        self._store = store
        self._mode = mode
        self._grace = timedelta(seconds=grace_seconds)
        self._clock = clock or SystemClock()
        self._metrics = metrics or NullMetricsSink()

    @property
    def mode(self) -> DeadLetterMode:
        return self._mode

    async def _move(self, job_id: UUID) -> Optional[Job]:
        job = await self._store.mark_dead_lettered(job_id)
        if job is not None:
            self._metrics.increment(m.JOBS_DEADLETTERED, queue=job.queue)
            logger.warning(
                "job_dead_lettered",
                job_id=str(job.id),
                queue=job.queue,
                attempts=job.attempts,
                last_error=job.last_error,
            )
        return job

    async def on_failed(self, job: Job) -> Optional[Job]:
        """Hook called right after a job reaches Failed."""
        if self._mode != "immediate":
            return None
        return await self._move(job.id)

    async def sweep_grace(self, limit: int = 100) -> int:
        """Dead-letter jobs whose grace window elapsed. Returns count moved."""
        if self._mode != "grace":
            return 0
        cutoff = self._clock.now() - self._grace
        moved = 0
        for job in await self._store.list_failed_before(cutoff, limit=limit):
            if await self._move(job.id) is not None:
                moved += 1
        return moved

    async def list(self, queue: Optional[str] = None, limit: int = 100) -> list[Job]:
        """Dead-lettered jobs, newest first."""
        return await self._store.list_jobs(
            queue=queue, state=JobState.DEAD_LETTERED, limit=limit
        )

    async def replay(self, job_id: UUID) -> Job:
        """Create a fresh Pending copy of a dead-lettered job.

        Raises:
            JobNotFoundError: unknown id
            NotDeadLetteredError: job is not dead-lettered
            DuplicateDedupKeyError: an active job already holds the dedup key
        """
        original = await self._store.get(job_id)
        if original is None:
            raise JobNotFoundError(job_id)
        if original.state is not JobState.DEAD_LETTERED:
            raise NotDeadLetteredError(
                f"Job {job_id} is {original.state.value}, not dead_lettered"
            )

        replay = Job(
            queue=original.queue,
            payload=original.payload,
            priority=original.priority,
            dedup_key=original.dedup_key,
            max_attempts=original.max_attempts,
            scheduled_at=self._clock.now(),
            replayed_from=original.id,
        )
        await self._store.insert(replay)
        self._metrics.increment(m.JOBS_ENQUEUED, queue=replay.queue)
        logger.info(
            "job_replayed", job_id=str(replay.id), replayed_from=str(original.id)
        )
        return await self._store.get(replay.id) or replay
