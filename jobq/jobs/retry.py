"""Retry policy: backoff delays and failure decisions."""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from jobq.config import Settings
from jobq.jobs.models import Job, Outcome
from jobq.jobs.types import JobState, OutcomeKind


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a job after a failed attempt."""

    state: JobState  # PENDING (retry) or FAILED
    attempts: int
    scheduled_at: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def will_retry(self) -> bool:
        return self.state is JobState.PENDING


class RetryPolicy:
    """
    Exponential backoff: delay(n) = min(base * 2^(n-1), max_delay).

    Jitter removes up to ``jitter_ratio`` of the delay at random, so a jittered
    delay never exceeds the un-jittered one nor goes negative.
    """

    def __init__(
        self,
        base_delay: float = 5.0,
        max_delay: float = 300.0,
        jitter_ratio: float = 0.0,
        rng: Optional[Callable[[], float]] = None,
    ):
        if base_delay < 0 or max_delay < 0:
            raise ValueError("delays must be non-negative")
        if not 0.0 <= jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be within [0, 1]")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.random

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay=settings.retry_base_delay_s,
            max_delay=settings.retry_max_delay_s,
            jitter_ratio=settings.retry_jitter_ratio,
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait before the next try, given failed attempts so far."""
        if attempt < 1:
            return 0.0
        # Cap the exponent; 2**1000 would still be fine but is pointless
        raw = self.base_delay * (2 ** min(attempt - 1, 62))
        delay = min(raw, self.max_delay)
        if self.jitter_ratio:
            delay -= delay * self.jitter_ratio * self._rng()
        return max(delay, 0.0)

    def decide(self, job: Job, outcome: Outcome, now: datetime) -> RetryDecision:
        """Map a failed outcome to reschedule or terminal failure."""
        if outcome.kind is OutcomeKind.SUCCESS:
            raise ValueError("decide() is only defined for failures")

        attempts = min(job.attempts + 1, job.max_attempts)
        if outcome.kind is OutcomeKind.PERMANENT or attempts >= job.max_attempts:
            return RetryDecision(
                state=JobState.FAILED, attempts=attempts, reason=outcome.reason
            )

        return RetryDecision(
            state=JobState.PENDING,
            attempts=attempts,
            scheduled_at=self.next_run_at(job, attempts, now),
            reason=outcome.reason,
        )

    def next_run_at(self, job: Job, attempts: int, now: datetime) -> datetime:
        """Backoff target, clamped so scheduled_at never moves backwards."""
        candidate = now + timedelta(seconds=self.delay(attempts))
        return max(candidate, job.scheduled_at)
