"""Caller-facing job API: enqueue, cancel, status."""

from datetime import timedelta
from typing import Any, Optional, Union
from uuid import UUID

import structlog

from jobq.config import Settings, get_settings
from jobq.jobs import metrics as m
from jobq.jobs.clock import Clock, SystemClock
from jobq.jobs.errors import DuplicateDedupKeyError, InvalidJobError
from jobq.jobs.metrics import MetricsSink, NullMetricsSink
from jobq.jobs.models import EnqueueResult, Job, JobStatusView, Payload
from jobq.jobs.registry import JobRegistry
from jobq.jobs.scheduler import Scheduler
from jobq.jobs.types import CancelResult, Priority
from jobq.repositories.base import JobStore

logger = structlog.get_logger(__name__)


class JobService:
    """Service for enqueueing and managing jobs."""

    def __init__(
        self,
        store: JobStore,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
        metrics: Optional[MetricsSink] = None,
        registry: Optional[JobRegistry] = None,
    ):
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._scheduler = scheduler
        self._metrics = metrics or NullMetricsSink()
        self._registry = registry

    async def enqueue(
        self,
        queue: str,
        payload: Optional[Payload] = None,
        priority: Union[Priority, str] = Priority.NORMAL,
        dedup_key: Optional[str] = None,
        delay: Optional[Union[float, timedelta]] = None,
        max_attempts: Optional[int] = None,
    ) -> EnqueueResult:
        """
        Enqueue a new job with deduplication support.

        Args:
            queue: Logical queue name
            payload: JSON-serializable dict or raw bytes, opaque to the engine
            priority: Priority class
            dedup_key: At most one active job per (queue, dedup_key)
            delay: Seconds (or timedelta) before the job may run
            max_attempts: Attempt ceiling (default from settings)

        Returns:
            EnqueueResult; ``deduplicated=True`` carries the id of the active
            job that already holds the key

        Raises:
            InvalidJobError: malformed input
        """
        if not queue or not queue.strip():
            raise InvalidJobError("queue name is required")
        if payload is None:
            payload = {}
        elif isinstance(payload, (bytes, bytearray, memoryview)):
            payload = bytes(payload)
        elif not isinstance(payload, dict):
            raise InvalidJobError("payload must be a dict or bytes")
        try:
            priority = Priority(priority)
        except ValueError:
            raise InvalidJobError(f"unknown priority {priority!r}") from None
        if isinstance(delay, timedelta):
            delay = delay.total_seconds()
        if delay is not None and delay < 0:
            raise InvalidJobError("delay must be non-negative")
        if max_attempts is None and self._registry is not None:
            if queue in self._registry:
                max_attempts = self._registry.get(queue).max_attempts
        if max_attempts is None:
            max_attempts = self._settings.default_max_attempts
        if max_attempts < 1:
            raise InvalidJobError("max_attempts must be >= 1")
        if dedup_key is not None and not dedup_key:
            raise InvalidJobError("dedup_key must be non-empty when given")

        now = self._clock.now()

        # Optional debounce on top of active-until-terminal uniqueness
        window = self._settings.dedup_window_s
        if dedup_key and window:
            recent = await self._store.find_by_dedup_key_since(
                queue, dedup_key, now - timedelta(seconds=window)
            )
            if recent is not None:
                logger.info(
                    "job_debounced",
                    job_id=str(recent.id),
                    queue=queue,
                    dedup_key=dedup_key,
                )
                return EnqueueResult(job_id=recent.id, deduplicated=True)

        job = Job(
            queue=queue,
            payload=payload,
            priority=priority,
            dedup_key=dedup_key,
            max_attempts=max_attempts,
            scheduled_at=now + timedelta(seconds=delay or 0),
        )

        try:
            job_id = await self._store.insert(job)
        except DuplicateDedupKeyError as e:
            logger.info(
                "job_deduplicated",
                job_id=str(e.existing_id) if e.existing_id else None,
                queue=queue,
                dedup_key=dedup_key,
            )
            return EnqueueResult(job_id=e.existing_id, deduplicated=True)

        self._metrics.increment(m.JOBS_ENQUEUED, queue=queue)
        logger.info(
            "job_enqueued",
            job_id=str(job_id),
            queue=queue,
            priority=priority.value,
            scheduled_at=job.scheduled_at.isoformat(),
        )
        if self._scheduler is not None:
            self._scheduler.track(job)
        return EnqueueResult(job_id=job_id)

    async def cancel(self, job_id: UUID) -> CancelResult:
        """Cancel a job. Leased jobs finish their attempt and are not rescheduled."""
        job = await self._store.get(job_id)
        result = await self._store.cancel(job_id)
        if result is CancelResult.OK and job is not None:
            logger.info("job_cancel_requested", job_id=str(job_id), state=job.state.value)
            current = await self._store.get(job_id)
            if current is not None and current.state.is_terminal:
                self._metrics.increment(m.JOBS_CANCELLED, queue=current.queue)
        return result

    async def get_status(self, job_id: UUID) -> Optional[JobStatusView]:
        job = await self._store.get(job_id)
        return JobStatusView.from_job(job) if job else None

    async def get_job(self, job_id: UUID) -> Optional[Job]:
        return await self._store.get(job_id)
