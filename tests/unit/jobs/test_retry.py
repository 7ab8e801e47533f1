"""Tests for retry policy."""

from datetime import datetime, timedelta, timezone

import pytest

from jobq.jobs.models import Job, Outcome
from jobq.jobs.retry import RetryPolicy
from jobq.jobs.types import JobState

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_job(**kwargs) -> Job:
    defaults = dict(queue="q", payload={}, max_attempts=3, scheduled_at=NOW)
    defaults.update(kwargs)
    return Job(**defaults)


class TestDelay:
    def test_exponential_delays(self):
        policy = RetryPolicy(base_delay=5, max_delay=300)
        assert policy.delay(1) == 5
        assert policy.delay(2) == 10
        assert policy.delay(3) == 20
        assert policy.delay(4) == 40

    def test_delay_capped_at_max(self):
        policy = RetryPolicy(base_delay=5, max_delay=60)
        assert policy.delay(10) == 60
        assert policy.delay(500) == 60

    def test_zero_attempts_means_no_delay(self):
        assert RetryPolicy(base_delay=5).delay(0) == 0

    def test_jitter_only_shortens(self):
        policy = RetryPolicy(base_delay=10, max_delay=300, jitter_ratio=0.5, rng=lambda: 1.0)
        assert policy.delay(1) == 5.0

        policy = RetryPolicy(base_delay=10, max_delay=300, jitter_ratio=0.5, rng=lambda: 0.0)
        assert policy.delay(1) == 10.0

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            RetryPolicy(base_delay=-1)
        with pytest.raises(ValueError):
            RetryPolicy(jitter_ratio=1.5)

    def test_from_settings(self, settings):
        policy = RetryPolicy.from_settings(settings)
        assert policy.base_delay == settings.retry_base_delay_s
        assert policy.max_delay == settings.retry_max_delay_s
        assert policy.jitter_ratio == 0.0


class TestDecide:
    def test_retryable_reschedules_with_backoff(self):
        policy = RetryPolicy(base_delay=5)
        decision = policy.decide(make_job(), Outcome.retryable("timeout"), NOW)

        assert decision.will_retry
        assert decision.state is JobState.PENDING
        assert decision.attempts == 1
        assert decision.scheduled_at == NOW + timedelta(seconds=5)
        assert decision.reason == "timeout"

    def test_permanent_fails_immediately(self):
        policy = RetryPolicy(base_delay=5)
        decision = policy.decide(make_job(), Outcome.permanent("bad payload"), NOW)

        assert not decision.will_retry
        assert decision.state is JobState.FAILED
        assert decision.attempts == 1
        assert decision.scheduled_at is None

    def test_exhausted_attempts_fail(self):
        policy = RetryPolicy(base_delay=5)
        decision = policy.decide(make_job(attempts=2), Outcome.retryable("boom"), NOW)

        assert decision.state is JobState.FAILED
        assert decision.attempts == 3

    def test_attempts_never_exceed_max(self):
        policy = RetryPolicy(base_delay=5)
        job = make_job(attempts=3, max_attempts=3)
        decision = policy.decide(job, Outcome.retryable("boom"), NOW)
        assert decision.attempts == 3

    def test_success_is_not_a_decision(self):
        with pytest.raises(ValueError):
            RetryPolicy().decide(make_job(), Outcome.success(), NOW)


class TestNextRunAt:
    def test_never_moves_backwards(self):
        policy = RetryPolicy(base_delay=1)
        later = NOW + timedelta(hours=1)
        job = make_job(scheduled_at=later)
        assert policy.next_run_at(job, 1, NOW) == later

    def test_successive_retries_are_monotonic(self):
        policy = RetryPolicy(base_delay=5, max_delay=300, jitter_ratio=0.9)
        job = make_job(max_attempts=10)
        now = NOW
        previous = job.scheduled_at
        for attempt in range(1, 10):
            scheduled = policy.next_run_at(job, attempt, now)
            assert scheduled >= previous
            job.scheduled_at = previous = scheduled
            now += timedelta(seconds=1)
