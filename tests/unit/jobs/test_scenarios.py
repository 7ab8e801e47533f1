"""End-to-end engine behavior on a manual clock."""

from datetime import timedelta

import pytest

from jobq.jobs.models import Outcome
from jobq.jobs.types import JobState, Priority
from jobq.worker import WorkerRunner


class TestRetryUntilFailed:
    @pytest.mark.asyncio
    async def test_three_attempts_with_exponential_delays(
        self, store, registry, settings, clock, metrics, metrics_registry, dispatch
    ):
        settings = settings.model_copy(update={"dead_letter_mode": "disabled"})
        runner = WorkerRunner(
            store, registry=registry, settings=settings, clock=clock, metrics=metrics
        )
        run_times = []

        @registry.handler("orders")
        async def handle(ctx, payload):
            run_times.append(clock.now())
            return Outcome.retryable("upstream unavailable")

        start = clock.now()
        result = await runner.service.enqueue(
            "orders", {"order": 42}, dedup_key="order-42", max_attempts=3
        )

        await dispatch(runner)
        clock.advance(4)
        await dispatch(runner)
        clock.advance(1)
        await dispatch(runner)
        clock.advance(9)
        await dispatch(runner)
        clock.advance(1)
        await dispatch(runner)
        clock.advance(1000)
        await dispatch(runner)

        assert run_times == [
            start,
            start + timedelta(seconds=5),
            start + timedelta(seconds=15),
        ]
        status = await runner.service.get_status(result.job_id)
        assert status.state is JobState.FAILED
        assert status.attempts == 3
        assert status.last_error == "upstream unavailable"
        assert metrics_registry.get_sample_value(
            "jobq_jobs_failed_total", {"queue": "orders"}
        ) == 1

    @pytest.mark.asyncio
    async def test_exhausted_job_is_dead_lettered_and_replayable(
        self, runner, registry, store, clock, dispatch
    ):
        calls = []

        @registry.handler("orders")
        async def handle(ctx, payload):
            calls.append(ctx.attempt)
            if len(calls) == 1:
                return Outcome.retryable("flaky")
            return Outcome.success()

        result = await runner.service.enqueue("orders", {}, max_attempts=1)
        await dispatch(runner)
        assert (await store.get(result.job_id)).state is JobState.DEAD_LETTERED

        dead = await runner.dead_letters.list("orders")
        assert [j.id for j in dead] == [result.job_id]
        replay = await runner.dead_letters.replay(result.job_id)
        await dispatch(runner)

        assert calls == [1, 1]
        assert (await store.get(replay.id)).state is JobState.SUCCEEDED


class TestDedupLifecycle:
    @pytest.mark.asyncio
    async def test_key_reusable_after_success(self, runner, registry, dispatch):
        @registry.handler("orders")
        async def handle(ctx, payload):
            return Outcome.success()

        first = await runner.service.enqueue("orders", {}, dedup_key="order-42")
        second = await runner.service.enqueue("orders", {}, dedup_key="order-42")
        assert second.deduplicated
        assert second.job_id == first.job_id

        await dispatch(runner)
        status = await runner.service.get_status(first.job_id)
        assert status.state is JobState.SUCCEEDED

        third = await runner.service.enqueue("orders", {}, dedup_key="order-42")
        assert not third.deduplicated
        assert third.job_id != first.job_id


class TestLeaseExpiry:
    @pytest.mark.asyncio
    async def test_expired_lease_recovered_with_new_schedule(
        self, runner, store, clock, metrics_registry
    ):
        result = await runner.service.enqueue("reports", {})
        claimed = await store.claim(result.job_id, "crashed-worker", 30)
        assert claimed.state is JobState.LEASED

        clock.advance(31)
        await runner.sweeper.sweep_once()

        status = await runner.service.get_status(result.job_id)
        assert status.state is JobState.PENDING
        assert status.attempts == 1
        assert status.scheduled_at > claimed.scheduled_at
        assert metrics_registry.get_sample_value(
            "jobq_jobs_lease_expired_total", {"queue": "reports"}
        ) == 1


class TestDelayedJob:
    @pytest.mark.asyncio
    async def test_not_dispatched_before_due(self, runner, registry, clock, dispatch):
        runs = []

        @registry.handler("reminders")
        async def handle(ctx, payload):
            runs.append(clock.now())

        start = clock.now()
        result = await runner.service.enqueue("reminders", {}, delay=5)

        status = await runner.service.get_status(result.job_id)
        assert status.state is JobState.PENDING
        assert status.scheduled_at == start + timedelta(seconds=5)
        # The dispatcher sleeps no longer than one tick
        assert runner.scheduler.seconds_until_next() <= runner.settings.scheduler_tick_s

        await dispatch(runner)
        clock.advance(4.9)
        await dispatch(runner)
        assert runs == []

        clock.advance(0.1)
        await dispatch(runner)
        assert runs == [start + timedelta(seconds=5)]


class TestRateLimited:
    @pytest.mark.asyncio
    async def test_limited_resource_does_not_block_others(
        self, runner, registry, store, metrics_registry, dispatch
    ):
        ran = []

        @registry.handler("crawl", resource="X")
        async def crawl(ctx, payload):
            ran.append("crawl")

        @registry.handler("mail", resource="Y")
        async def mail(ctx, payload):
            ran.append("mail")

        await runner.configure_rate_limit("X", capacity=1, refill_per_second=0)
        assert await runner.rate_limiter.try_acquire("X")

        limited = await runner.service.enqueue("crawl", {})
        free = await runner.service.enqueue("mail", {})
        passed = await dispatch(runner)

        assert passed.rate_limited == 1
        assert ran == ["mail"]
        limited_job = await store.get(limited.job_id)
        assert limited_job.state is JobState.PENDING
        assert limited_job.attempts == 0
        assert (await store.get(free.job_id)).state is JobState.SUCCEEDED
        assert metrics_registry.get_sample_value(
            "jobq_jobs_rate_limited_total", {"queue": "crawl", "resource": "X"}
        ) == 1


class TestFairnessUnderLoad:
    @pytest.mark.asyncio
    async def test_low_backlog_served_despite_high_arrivals(
        self, store, registry, settings, clock, dispatch
    ):
        settings = settings.model_copy(update={"worker_max_concurrency": 1})
        runner = WorkerRunner(store, registry=registry, settings=settings, clock=clock)
        served = []

        @registry.handler("work")
        async def work(ctx, payload):
            served.append(ctx.job.priority)

        @registry.handler("crawl", resource="X")
        async def crawl(ctx, payload):
            served.append("crawl")

        # Denied picks go through the same round-robin
        await runner.configure_rate_limit("X", capacity=1, refill_per_second=0)
        assert await runner.rate_limiter.try_acquire("X")
        for _ in range(5):
            await runner.service.enqueue("crawl", {}, priority=Priority.HIGH)
        for _ in range(20):
            await runner.service.enqueue("work", {}, priority=Priority.LOW)

        for _ in range(45):
            await runner.service.enqueue("work", {}, priority=Priority.HIGH)
            await runner.service.enqueue("work", {}, priority=Priority.HIGH)
            passed = await dispatch(runner)
            assert passed.dispatched == 1

        assert "crawl" not in served
        window = sum(settings.fairness_weights)
        for start in range(len(served) - window + 1):
            assert Priority.LOW in served[start:start + window]
        assert served.count(Priority.LOW) >= len(served) // window


class TestPartialBatch:
    @pytest.mark.asyncio
    async def test_outcomes_applied_per_job(self, runner, registry, store, dispatch):
        @registry.handler("thumbs", batch_size=5, batch_timeout=2)
        async def handle(ctx, payloads):
            return [
                Outcome.success() if p["ok"] else Outcome.retryable("decode error")
                for p in payloads
            ]

        flags = [True, False, True, True, False]
        ids = [
            (await runner.service.enqueue("thumbs", {"ok": ok})).job_id for ok in flags
        ]
        passed = await dispatch(runner)
        assert passed.batches == 1

        states = {}
        for job_id, ok in zip(ids, flags):
            job = await store.get(job_id)
            states[ok] = states.get(ok, []) + [(job.state, job.attempts)]

        assert states[True] == [(JobState.SUCCEEDED, 0)] * 3
        assert states[False] == [(JobState.PENDING, 1)] * 2


class TestNoSilentLoss:
    @pytest.mark.asyncio
    async def test_every_job_visible_until_terminal(
        self, runner, registry, clock, dispatch
    ):
        @registry.handler("mixed")
        async def handle(ctx, payload):
            kind = payload["kind"]
            if kind == "ok":
                return Outcome.success()
            if kind == "bad":
                return Outcome.permanent("rejected")
            raise RuntimeError("crash")

        ids = []
        for kind in ("ok", "bad", "crash") * 3:
            result = await runner.service.enqueue("mixed", {"kind": kind}, max_attempts=2)
            ids.append(result.job_id)

        for _ in range(5):
            await dispatch(runner)
            for job_id in ids:
                status = await runner.service.get_status(job_id)
                assert status is not None
                assert status.attempts <= status.max_attempts
            clock.advance(60)

        for job_id in ids:
            status = await runner.service.get_status(job_id)
            assert status.state.is_terminal
