"""Deadline tracking and recurring job occurrences.

The dispatcher sleeps on ``Scheduler.wait()``, which returns at the earliest
of: the tick interval, the earliest known job deadline, or an explicit wake-up
(new job enqueued in this process, a worker slot freed). Jobs created by other
processes are picked up on the next tick.
"""

import asyncio
import heapq
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog

from jobq.jobs.clock import Clock, SystemClock
from jobq.jobs.cron import CronSchedule
from jobq.jobs.models import EnqueueResult, Job, Payload
from jobq.jobs.types import Priority

logger = structlog.get_logger(__name__)

# enqueue(queue, payload, priority=..., dedup_key=...) -> EnqueueResult
Enqueuer = Callable[..., Awaitable[EnqueueResult]]

# Upper bound on occurrences skipped when catching up after downtime
_MAX_CATCHUP = 100_000


@dataclass(frozen=True)
class RecurringJob:
    """A job definition that fires on a cron expression or a fixed interval."""

    name: str
    queue: str
    payload: Payload = field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    cron: Optional[str] = None
    interval_s: Optional[float] = None
    max_attempts: Optional[int] = None

    def __post_init__(self):
        if (self.cron is None) == (self.interval_s is None):
            raise ValueError("RecurringJob needs exactly one of cron or interval_s")
        if self.interval_s is not None and self.interval_s <= 0:
            raise ValueError("interval_s must be positive")
        if not self.queue or not self.queue.strip():
            raise ValueError("RecurringJob needs a queue name")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


class _Recurrence:
    """Normalized fire-time function for one RecurringJob."""

    def __init__(self, spec: RecurringJob, anchor: datetime):
        self.spec = spec
        self.anchor = anchor
        self.last_fired: Optional[datetime] = None
        self._cron = CronSchedule.parse(spec.cron) if spec.cron else None

    def next_after(self, ts: datetime) -> datetime:
        if self._cron is not None:
            return self._cron.next_after(ts)
        # Interval grid anchored at registration, so drift never accumulates
        interval = timedelta(seconds=self.spec.interval_s)
        if ts < self.anchor:
            return self.anchor + interval
        steps = (ts - self.anchor) // interval + 1
        return self.anchor + steps * interval

    @property
    def next_fire(self) -> datetime:
        return self.next_after(self.last_fired or self.anchor)

    def latest_due(self, now: datetime) -> Optional[datetime]:
        """Most recent occurrence at or before ``now`` not yet fired."""
        fire = self.next_fire
        if fire > now:
            return None
        for _ in range(_MAX_CATCHUP):
            following = self.next_after(fire)
            if following > now:
                break
            fire = following
        return fire


class Scheduler:
    """Min-heap of pending deadlines plus recurring specs."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        tick_seconds: float = 1.0,
        enqueue: Optional[Enqueuer] = None,
    ):
        self._clock = clock or SystemClock()
        self._tick = tick_seconds
        self._enqueue = enqueue
        self._deadlines: list[tuple[datetime, UUID]] = []
        self._timers: list[datetime] = []
        self._recurring: dict[str, _Recurrence] = {}
        self._wakeup = asyncio.Event()

    def set_enqueuer(self, enqueue: Enqueuer) -> None:
        self._enqueue = enqueue

    # -- deadlines ---------------------------------------------------------

    def track(self, job: Job) -> None:
        """Note a job's due time; wake the dispatcher if it is now earliest."""
        now = self._clock.now()
        if job.scheduled_at <= now:
            self.wake()
            return
        earliest = self.next_deadline()
        heapq.heappush(self._deadlines, (job.scheduled_at, job.id))
        if earliest is None or job.scheduled_at < earliest:
            self.wake()

    def track_deadline(self, when: datetime) -> None:
        """Wake the dispatcher at ``when`` (a held batch reaching its timeout)."""
        if when > self._clock.now() and when not in self._timers:
            heapq.heappush(self._timers, when)

    def next_deadline(self) -> Optional[datetime]:
        return self._deadlines[0][0] if self._deadlines else None

    def pop_due(self, now: datetime) -> list[UUID]:
        """Remove and return ids whose deadline has passed."""
        due = []
        while self._deadlines and self._deadlines[0][0] <= now:
            due.append(heapq.heappop(self._deadlines)[1])
        while self._timers and self._timers[0] <= now:
            heapq.heappop(self._timers)
        return due

    def wake(self) -> None:
        self._wakeup.set()

    def seconds_until_next(self) -> float:
        """How long the dispatcher may sleep before something is due."""
        now = self._clock.now()
        timeout = self._tick
        candidates = [self.next_deadline()]
        if self._timers:
            candidates.append(self._timers[0])
        # An overdue recurrence already had its fire attempt this pass; a
        # failed one waits for the next tick instead of spinning
        candidates.extend(
            when
            for when in (r.next_fire for r in self._recurring.values())
            if when > now
        )
        for when in candidates:
            if when is not None:
                timeout = min(timeout, (when - now).total_seconds())
        return max(timeout, 0.0)

    async def wait(self) -> bool:
        """Sleep until tick, deadline or wake-up. True if woken explicitly."""
        timeout = self.seconds_until_next()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            woken = True
        except asyncio.TimeoutError:
            woken = False
        self._wakeup.clear()
        return woken

    # -- recurring ---------------------------------------------------------

    def register_recurring(self, spec: RecurringJob) -> datetime:
        """Add a recurring job; returns its first fire time."""
        if spec.name in self._recurring:
            raise ValueError(f"recurring job {spec.name!r} already registered")
        recurrence = _Recurrence(spec, anchor=self._clock.now())
        self._recurring[spec.name] = recurrence
        first = recurrence.next_fire
        logger.info(
            "recurring_job_registered",
            name=spec.name,
            queue=spec.queue,
            first_fire=first.isoformat(),
        )
        return first

    def next_fire(self, name: str) -> datetime:
        return self._recurring[name].next_fire

    async def fire_due(self, now: Optional[datetime] = None) -> list[EnqueueResult]:
        """Enqueue every recurring occurrence that is due.

        Missed occurrences are coalesced into the latest one. The occurrence
        timestamp is part of the dedup key, so a second scheduler firing the
        same occurrence while it is active gets a duplicate result.
        """
        if not self._recurring or self._enqueue is None:
            return []
        now = now or self._clock.now()
        results = []
        for recurrence in self._recurring.values():
            fire_at = recurrence.latest_due(now)
            if fire_at is None:
                continue
            spec = recurrence.spec
            try:
                result = await self._enqueue(
                    spec.queue,
                    spec.payload,
                    priority=spec.priority,
                    dedup_key=f"{spec.name}:{fire_at.isoformat()}",
                    max_attempts=spec.max_attempts,
                )
            except Exception as e:
                # Leave last_fired untouched; retried on the next tick
                logger.warning(
                    "recurring_enqueue_failed", name=spec.name, error=str(e)
                )
                continue
            recurrence.last_fired = fire_at
            results.append(result)
            logger.info(
                "recurring_job_fired",
                name=spec.name,
                fire_at=fire_at.isoformat(),
                job_id=str(result.job_id) if result.job_id else None,
                deduplicated=result.deduplicated,
            )
        return results
