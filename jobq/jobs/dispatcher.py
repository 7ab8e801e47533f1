"""Dispatcher - claims ready jobs and runs their handlers.

One scheduling pass:
1. fire due recurring occurrences
2. load ready jobs from the store into the PriorityQueue
3. pop jobs in weighted round-robin order; for each, require a free slot
   for its queue and a rate-limit token for its resource, then lease it
4. run the handler in a background task and persist its outcome before
   the slot is released

Every store transition happens before the matching in-memory effect: a job
is Leased in the store before its handler runs, and its outcome is written
before its slot is freed.
"""

import asyncio
import os
import socket
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from jobq import __version__
from jobq.config import Settings, get_settings
from jobq.core.resilience import RetryConfig, calculate_backoff, with_store_retry
from jobq.core.sentry import capture_handler_exception
from jobq.jobs import metrics as m
from jobq.jobs.clock import Clock, SystemClock
from jobq.jobs.context import HeartbeatSupervisor, JobContext
from jobq.jobs.dead_letter import DeadLetterSink
from jobq.jobs.errors import LeaseLostError, PermanentJobError
from jobq.jobs.metrics import MetricsSink, NullMetricsSink
from jobq.jobs.models import Job, Outcome
from jobq.jobs.priority_queue import PriorityQueue
from jobq.jobs.rate_limit import RateLimiter
from jobq.jobs.registry import HandlerRegistration, JobRegistry, default_registry
from jobq.jobs.retry import RetryPolicy
from jobq.jobs.scheduler import Scheduler
from jobq.jobs.types import JobState
from jobq.jobs.worker_pool import WorkerPool
from jobq.repositories.base import JobStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def generate_worker_id() -> str:
    """Generate a unique worker ID: hostname:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class DispatchPassResult:
    """Counters for one scheduling pass."""

    dispatched: int = 0
    batches: int = 0
    rate_limited: int = 0
    no_slot: int = 0
    claim_lost: int = 0


class Dispatcher:
    """Claims and executes jobs for the registered queues."""

    def __init__(
        self,
        store: JobStore,
        registry: Optional[JobRegistry] = None,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        worker_id: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        worker_pool: Optional[WorkerPool] = None,
        priority_queue: Optional[PriorityQueue] = None,
        scheduler: Optional[Scheduler] = None,
        dead_letters: Optional[DeadLetterSink] = None,
        metrics: Optional[MetricsSink] = None,
    ):
        self._settings = settings or get_settings()
        self._store = store
        self._registry = registry or default_registry
        self._clock = clock or SystemClock()
        self._worker_id = worker_id or self._settings.worker_id or generate_worker_id()
        self._retry = retry_policy or RetryPolicy.from_settings(self._settings)
        self._limiter = rate_limiter or RateLimiter()
        self._pool = worker_pool or WorkerPool(self._settings.worker_max_concurrency)
        self._queue = priority_queue or PriorityQueue.from_weight_list(
            self._settings.fairness_weights
        )
        self._scheduler = scheduler or Scheduler(
            self._clock, self._settings.scheduler_tick_s
        )
        self._metrics = metrics or NullMetricsSink()
        self._dead_letters = dead_letters or DeadLetterSink(
            store,
            mode=self._settings.dead_letter_mode,
            grace_seconds=self._settings.dead_letter_grace_s,
            clock=self._clock,
            metrics=self._metrics,
        )
        self._lease_duration = self._settings.lease_duration_s
        self._store_retry = RetryConfig()

        self._tasks: set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # =========================================================================
    # Loop
    # =========================================================================

    async def run(self) -> None:
        """Run scheduling passes until ``stop()`` is called."""
        self._running = True
        logger.info(
            "dispatcher_started",
            worker_id=self._worker_id,
            version=__version__,
            queues=self._registry.queues,
            max_concurrency=self._pool.capacity,
        )

        failures = 0
        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_once()
                    failures = 0
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # Store outages are retried here, never charged to jobs
                    failures += 1
                    delay = calculate_backoff(min(failures - 1, 10), self._store_retry)
                    logger.error(
                        "dispatch_pass_failed",
                        worker_id=self._worker_id,
                        error=str(e),
                        consecutive_failures=failures,
                        retry_in_s=round(delay, 2),
                        traceback=traceback.format_exc(),
                    )
                    try:
                        await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    except asyncio.TimeoutError:
                        pass
                    continue

                await self._scheduler.wait()
        finally:
            await self._drain()
            self._running = False
            logger.info("dispatcher_stopped", worker_id=self._worker_id)

    async def stop(self) -> None:
        """Ask the loop to exit after the current pass."""
        self._stop_event.set()
        self._scheduler.wake()

    async def join(self) -> None:
        """Wait until every in-flight handler has finished and been persisted."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _drain(self, timeout: float = 30.0) -> None:
        if not self._tasks:
            return
        done, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        if pending:
            # Leases of abandoned jobs expire and the sweeper recovers them
            logger.warning(
                "dispatcher_stopped_with_active_jobs",
                worker_id=self._worker_id,
                active_jobs=len(pending),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # Scheduling pass
    # =========================================================================

    async def run_once(self) -> DispatchPassResult:
        """Execute a single scheduling pass. Handlers run in the background."""
        result = DispatchPassResult()
        now = self._clock.now()
        self._scheduler.pop_due(now)
        await self._scheduler.fire_due(now)

        queues = self._registry.queues
        if not queues or self._pool.total_in_use >= self._pool.capacity:
            return result
        # Handlers may be registered after construction
        for queue in queues:
            self._pool.set_limit(queue, self._registry.get(queue).concurrency)

        ready = await self._store.list_ready(
            now, queues=queues, limit_per_class=self._settings.ready_batch_limit
        )
        singles: list[Job] = []
        batched: dict[str, list[Job]] = {}
        for job in ready:
            if self._registry.get(job.queue).is_batch:
                batched.setdefault(job.queue, []).append(job)
            else:
                singles.append(job)

        self._queue.replace(singles)
        await self._dispatch_singles(result)
        await self._dispatch_batches(batched, now, result)

        if result.dispatched or result.rate_limited:
            logger.debug("dispatch_pass", worker_id=self._worker_id, **result.__dict__)
        return result

    async def _admit(self, registration: HandlerRegistration, result: DispatchPassResult) -> bool:
        """Slot + rate-limit gate. On success one slot is held for the queue."""
        queue = registration.queue
        if not self._pool.has_free_slot(queue):
            result.no_slot += 1
            return False
        if not await self._limiter.try_acquire(registration.resource):
            result.rate_limited += 1
            self._metrics.increment(
                m.JOBS_RATE_LIMITED, queue=queue, resource=registration.resource or ""
            )
            logger.info(
                "job_rate_limited", queue=queue, resource=registration.resource
            )
            return False
        return self._pool.try_acquire(queue)

    async def _dispatch_singles(self, result: DispatchPassResult) -> None:
        while self._pool.total_in_use < self._pool.capacity:
            job = self._queue.pop()
            if job is None:
                break
            registration = self._registry.get(job.queue)
            if not await self._admit(registration, result):
                continue

            try:
                claimed = await self._store.claim(
                    job.id, self._worker_id, self._lease_duration
                )
            except BaseException:
                self._pool.release(job.queue)
                raise
            if claimed is None:
                # Another dispatcher leased it first
                self._pool.release(job.queue)
                result.claim_lost += 1
                continue

            self._spawn(self._execute([claimed], registration))
            result.dispatched += 1

    async def _dispatch_batches(
        self,
        batched: dict[str, list[Job]],
        now: datetime,
        result: DispatchPassResult,
    ) -> None:
        for queue, jobs in batched.items():
            registration = self._registry.get(queue)
            first_ready = min(j.scheduled_at for j in jobs)
            waited = (now - first_ready).total_seconds()
            if len(jobs) < registration.batch_size and waited < registration.batch_timeout:
                self._scheduler.track_deadline(
                    first_ready + timedelta(seconds=registration.batch_timeout)
                )
                continue
            if not await self._admit(registration, result):
                continue

            claimed: list[Job] = []
            try:
                while len(claimed) < registration.batch_size:
                    job = await self._store.claim_next(
                        queue, self._worker_id, self._lease_duration
                    )
                    if job is None:
                        break
                    claimed.append(job)
            except Exception as e:
                if not claimed:
                    self._pool.release(queue)
                    raise
                logger.warning("batch_claim_interrupted", queue=queue, error=str(e))

            if not claimed:
                self._pool.release(queue)
                result.claim_lost += 1
                continue

            self._spawn(self._execute(claimed, registration))
            result.batches += 1
            result.dispatched += len(claimed)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _execute(self, jobs: list[Job], registration: HandlerRegistration) -> None:
        """Run the handler, then persist each job's outcome, then free the slot."""
        ctx = JobContext(
            jobs, self._store, self._clock, self._worker_id, self._lease_duration
        )
        try:
            supervisor = HeartbeatSupervisor(ctx) if registration.auto_heartbeat else None
            if supervisor is not None:
                supervisor.start()
            started = self._clock.monotonic()
            try:
                outcomes = await self._invoke(ctx, registration)
            finally:
                if supervisor is not None:
                    await supervisor.stop()
            duration = self._clock.monotonic() - started

            for job, outcome in zip(jobs, outcomes):
                self._metrics.observe(
                    m.JOB_DURATION, duration, queue=job.queue, outcome=outcome.kind.value
                )
                await self._apply_outcome(job, outcome)
        finally:
            self._pool.release(registration.queue)
            self._scheduler.wake()

    async def _invoke(
        self, ctx: JobContext, registration: HandlerRegistration
    ) -> list[Outcome]:
        jobs = ctx.jobs
        log = ctx.log.bind(attempt=ctx.attempt, batch_size=len(jobs))
        log.info("job_executing")
        try:
            if registration.is_batch:
                raw = await registration.handler(ctx, [j.payload for j in jobs])
                if not isinstance(raw, list) or len(raw) != len(jobs):
                    got = len(raw) if isinstance(raw, list) else type(raw).__name__
                    reason = f"batch handler returned {got} outcomes for {len(jobs)} jobs"
                    log.error("batch_outcome_mismatch", error=reason)
                    return [Outcome.retryable(reason) for _ in jobs]
                return [self._normalize(o) for o in raw]
            return [self._normalize(await registration.handler(ctx, jobs[0].payload))]

        except PermanentJobError as e:
            reason = str(e) or type(e).__name__
            log.warning("job_handler_rejected", error=reason)
            return [Outcome.permanent(reason) for _ in jobs]

        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            log.error(
                "job_handler_failed", error=reason, traceback=traceback.format_exc()
            )
            capture_handler_exception(e, jobs[0].id, jobs[0].queue, ctx.attempt)
            return [Outcome.retryable(reason) for _ in jobs]

    @staticmethod
    def _normalize(raw: Any) -> Outcome:
        if isinstance(raw, Outcome):
            return raw
        if raw is None:
            return Outcome.success()
        if isinstance(raw, dict):
            return Outcome.success(result=raw)
        return Outcome.permanent(f"handler returned unsupported {type(raw).__name__}")

    async def _store_call(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_store_retry(operation, self._store_retry)

    async def _apply_outcome(self, job: Job, outcome: Outcome) -> None:
        log = logger.bind(job_id=str(job.id), queue=job.queue, worker_id=self._worker_id)
        try:
            await self._persist_outcome(job, outcome, log)
        except LeaseLostError:
            # Lease expired and was recovered; the job will run again
            log.warning("job_lease_lost", outcome=outcome.kind.value)
        except Exception as e:
            # Still Leased in the store; the lease sweep will recover it
            log.error(
                "job_outcome_persist_failed", outcome=outcome.kind.value, error=str(e)
            )

    async def _persist_outcome(self, job: Job, outcome: Outcome, log) -> None:
        wid = self._worker_id

        if outcome.ok:
            await self._store_call(
                lambda: self._store.complete(job.id, wid, JobState.SUCCEEDED)
            )
            self._metrics.increment(m.JOBS_SUCCEEDED, queue=job.queue)
            log.info("job_succeeded")
            return

        current = await self._store_call(lambda: self._store.get(job.id))
        if current is not None and current.cancel_requested:
            await self._store_call(
                lambda: self._store.complete(
                    job.id, wid, JobState.CANCELLED, last_error=outcome.reason
                )
            )
            self._metrics.increment(m.JOBS_CANCELLED, queue=job.queue)
            log.info("job_cancelled", error=outcome.reason)
            return

        decision = self._retry.decide(job, outcome, self._clock.now())
        if decision.will_retry:
            updated = await self._store_call(
                lambda: self._store.reschedule(
                    job.id,
                    wid,
                    decision.scheduled_at,
                    decision.attempts,
                    last_error=decision.reason,
                )
            )
            self._metrics.increment(m.JOBS_RETRIED, queue=job.queue)
            self._scheduler.track(updated)
            log.info(
                "job_retry_scheduled",
                attempts=updated.attempts,
                scheduled_at=updated.scheduled_at.isoformat(),
                error=decision.reason,
            )
            return

        failed = await self._store_call(
            lambda: self._store.complete(
                job.id,
                wid,
                JobState.FAILED,
                last_error=decision.reason,
                attempts=decision.attempts,
            )
        )
        self._metrics.increment(m.JOBS_FAILED, queue=job.queue)
        log.warning(
            "job_failed",
            attempts=failed.attempts,
            kind=outcome.kind.value,
            error=decision.reason,
        )
        await self._store_call(lambda: self._dead_letters.on_failed(failed))
