"""Lease expiry recovery and periodic housekeeping."""

import asyncio
from typing import Optional

import structlog

from jobq.config import Settings, get_settings
from jobq.jobs import metrics as m
from jobq.jobs.clock import Clock, SystemClock
from jobq.jobs.dead_letter import DeadLetterSink
from jobq.jobs.metrics import MetricsSink, NullMetricsSink
from jobq.jobs.models import Job
from jobq.jobs.retry import RetryPolicy
from jobq.jobs.scheduler import Scheduler
from jobq.jobs.types import JobState, Priority
from jobq.repositories.base import JobStore

logger = structlog.get_logger(__name__)

LEASE_EXPIRED_REASON = "lease expired"


class LeaseSweeper:
    """
    Recovers jobs whose worker stopped heartbeating.

    An expired lease counts as a failed attempt. The job goes back to
    Pending with backoff, or to Failed when attempts are exhausted, or to
    Cancelled if cancellation was requested while it was leased.

    Also moves grace-mode dead letters and publishes queue depth gauges.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        retry_policy: Optional[RetryPolicy] = None,
        dead_letters: Optional[DeadLetterSink] = None,
        scheduler: Optional[Scheduler] = None,
        metrics: Optional[MetricsSink] = None,
        batch_limit: int = 100,
    ):
        self._settings = settings or get_settings()
        self._store = store
        self._clock = clock or SystemClock()
        self._retry = retry_policy or RetryPolicy.from_settings(self._settings)
        self._metrics = metrics or NullMetricsSink()
        self._dead_letters = dead_letters or DeadLetterSink(
            store,
            mode=self._settings.dead_letter_mode,
            grace_seconds=self._settings.dead_letter_grace_s,
            clock=self._clock,
            metrics=self._metrics,
        )
        self._scheduler = scheduler
        self._batch_limit = batch_limit
        self._interval = self._settings.sweep_interval_s
        self._published_depths: set[tuple[str, Priority]] = set()

        self._running = False
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def sweep_once(self) -> list[Job]:
        """Recover every expired lease. Returns the recovered jobs."""
        now = self._clock.now()
        recovered: list[Job] = []

        for job in await self._store.find_expired_leases(now, limit=self._batch_limit):
            attempts = min(job.attempts + 1, job.max_attempts)
            scheduled_at = None
            if job.cancel_requested:
                state = JobState.CANCELLED
            elif attempts >= job.max_attempts:
                state = JobState.FAILED
            else:
                state = JobState.PENDING
                scheduled_at = self._retry.next_run_at(job, attempts, now)

            result = await self._store.recover_expired(
                job.id,
                job.lease_owner,
                now,
                state,
                attempts,
                scheduled_at=scheduled_at,
                last_error=LEASE_EXPIRED_REASON,
            )
            if result is None:
                # Heartbeat or completion landed first
                continue

            recovered.append(result)
            self._metrics.increment(m.JOBS_LEASE_EXPIRED, queue=result.queue)
            logger.warning(
                "lease_expired_recovered",
                job_id=str(result.id),
                queue=result.queue,
                lease_owner=job.lease_owner,
                state=result.state.value,
                attempts=result.attempts,
            )

            if result.state is JobState.FAILED:
                self._metrics.increment(m.JOBS_FAILED, queue=result.queue)
                await self._dead_letters.on_failed(result)
            elif result.state is JobState.CANCELLED:
                self._metrics.increment(m.JOBS_CANCELLED, queue=result.queue)
            elif self._scheduler is not None:
                self._scheduler.track(result)

        return recovered

    async def publish_queue_depths(self) -> None:
        depths = await self._store.queue_depths()
        # Stores only report non-empty classes; zero out the ones that drained
        for key in self._published_depths - depths.keys():
            depths[key] = 0
        for (queue, priority), depth in depths.items():
            self._metrics.set_gauge(
                m.QUEUE_DEPTH, depth, queue=queue, priority=priority.value
            )
        self._published_depths = {key for key, depth in depths.items() if depth}

    async def run_once(self) -> None:
        """One housekeeping pass: leases, grace dead letters, depth gauges."""
        recovered = await self.sweep_once()
        moved = await self._dead_letters.sweep_grace(limit=self._batch_limit)
        await self.publish_queue_depths()
        if recovered or moved:
            logger.info(
                "sweep_complete", recovered=len(recovered), dead_lettered=moved
            )

    async def start(self) -> None:
        """Start the sweep loop in the background."""
        if self._running:
            logger.warning("lease_sweeper_already_running")
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("lease_sweeper_started", interval_s=self._interval)

    async def stop(self) -> None:
        """Stop the sweep loop gracefully."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("lease_sweeper_stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("lease_sweep_failed", error=str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass
