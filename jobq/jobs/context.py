"""Execution context handed to job handlers."""

import asyncio
from datetime import timedelta
from typing import Optional
from uuid import UUID

import structlog

from jobq.jobs.clock import Clock
from jobq.jobs.models import Job
from jobq.repositories.base import JobStore

logger = structlog.get_logger(__name__)


class JobContext:
    """
    What a handler can see and do while it runs.

    Long-running handlers should call ``heartbeat()`` well within the lease
    and poll ``is_cancelled()``; a missed heartbeat looks exactly like a
    crash and the job will be dispatched again.
    """

    def __init__(
        self,
        jobs: list[Job],
        store: JobStore,
        clock: Clock,
        worker_id: str,
        lease_duration: float,
    ):
        if not jobs:
            raise ValueError("JobContext needs at least one job")
        self.jobs = jobs
        self.worker_id = worker_id
        self.lease_duration = lease_duration
        self._store = store
        self._clock = clock
        self.log = logger.bind(
            job_id=str(jobs[0].id), queue=jobs[0].queue, worker_id=worker_id
        )

    @property
    def job(self) -> Job:
        """The job being run (first job of a batch)."""
        return self.jobs[0]

    @property
    def attempt(self) -> int:
        """1-based number of the current attempt."""
        return self.job.attempts + 1

    async def heartbeat(self) -> None:
        """Extend the lease on every job in this context.

        Raises:
            LeaseLostError: the lease was already recovered by the sweeper
        """
        expires = self._clock.now() + timedelta(seconds=self.lease_duration)
        for job in self.jobs:
            updated = await self._store.heartbeat(job.id, self.worker_id, expires)
            job.lease_expires_at = updated.lease_expires_at

    async def is_cancelled(self, job_id: Optional[UUID] = None) -> bool:
        """Whether cancellation was requested for the job (or any batch job)."""
        ids = [job_id] if job_id is not None else [j.id for j in self.jobs]
        for jid in ids:
            current = await self._store.get(jid)
            if current is None or current.cancel_requested or current.state.is_terminal:
                return True
        return False


class HeartbeatSupervisor:
    """Background task heartbeating a context every lease/3 seconds."""

    def __init__(self, ctx: JobContext):
        self._ctx = ctx
        self._task: Optional[asyncio.Task] = None

    async def _run(self) -> None:
        interval = self._ctx.lease_duration / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await self._ctx.heartbeat()
            except Exception as e:
                self._ctx.log.warning("heartbeat_failed", error=str(e))

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
