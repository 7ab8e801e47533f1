"""Tests for the enqueue / cancel / status API."""

from datetime import timedelta
from uuid import uuid4

import pytest

from jobq.jobs.errors import InvalidJobError
from jobq.jobs.scheduler import Scheduler
from jobq.jobs.service import JobService
from jobq.jobs.types import CancelResult, JobState, Priority


@pytest.fixture
def service(store, settings, clock, metrics):
    return JobService(store, settings=settings, clock=clock, metrics=metrics)


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_minimal(self, service, store, clock):
        result = await service.enqueue("emails", {"to": "a@example.com"})

        assert not result.deduplicated
        job = await store.get(result.job_id)
        assert job.state is JobState.PENDING
        assert job.priority is Priority.NORMAL
        assert job.attempts == 0
        assert job.max_attempts == 5
        assert job.scheduled_at == clock.now()
        assert job.payload == {"to": "a@example.com"}

    @pytest.mark.asyncio
    async def test_bytes_payload_passed_through(self, service, store):
        result = await service.enqueue("blobs", bytearray(b"\x00\xffraw"))

        job = await store.get(result.job_id)
        assert job.payload == b"\x00\xffraw"
        assert isinstance(job.payload, bytes)

    @pytest.mark.asyncio
    async def test_empty_bytes_payload_kept(self, service, store):
        result = await service.enqueue("blobs", b"")
        assert (await store.get(result.job_id)).payload == b""

    @pytest.mark.asyncio
    async def test_enqueue_with_delay(self, service, clock):
        result = await service.enqueue("emails", {}, delay=5)
        status = await service.get_status(result.job_id)

        assert status.state is JobState.PENDING
        assert status.scheduled_at == clock.now() + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_priority_accepts_string(self, service, store):
        result = await service.enqueue("emails", {}, priority="critical")
        assert (await store.get(result.job_id)).priority is Priority.CRITICAL

    @pytest.mark.asyncio
    async def test_registry_max_attempts_default(self, store, settings, clock, registry):
        async def handler(ctx, payload):
            return None

        registry.register("reports", handler, max_attempts=2)
        service = JobService(store, settings=settings, clock=clock, registry=registry)

        result = await service.enqueue("reports", {})
        assert (await store.get(result.job_id)).max_attempts == 2
        result = await service.enqueue("reports", {}, max_attempts=7)
        assert (await store.get(result.job_id)).max_attempts == 7

    @pytest.mark.asyncio
    async def test_enqueue_counts_metric(self, service, metrics_registry):
        await service.enqueue("emails", {})
        await service.enqueue("emails", {})
        assert metrics_registry.get_sample_value(
            "jobq_jobs_enqueued_total", {"queue": "emails"}
        ) == 2

    @pytest.mark.asyncio
    async def test_enqueue_tracks_deadline(self, store, settings, clock):
        scheduler = Scheduler(clock, tick_seconds=10)
        service = JobService(store, settings=settings, clock=clock, scheduler=scheduler)
        await service.enqueue("emails", {}, delay=timedelta(seconds=3))
        assert scheduler.next_deadline() == clock.now() + timedelta(seconds=3)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"queue": ""},
            {"queue": "   "},
            {"payload": ["not", "a", "dict"]},
            {"payload": "text"},
            {"priority": "urgent"},
            {"delay": -1},
            {"max_attempts": 0},
            {"dedup_key": ""},
        ],
    )
    async def test_malformed_input_rejected(self, service, store, kwargs):
        args = {"queue": "emails", "payload": {}}
        args.update(kwargs)
        with pytest.raises(InvalidJobError):
            await service.enqueue(**args)
        assert await store.list_jobs() == []


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_duplicate_while_active(self, service):
        first = await service.enqueue("orders", {}, dedup_key="order-42")
        second = await service.enqueue("orders", {}, dedup_key="order-42")

        assert not first.deduplicated
        assert second.deduplicated
        assert second.job_id == first.job_id

    @pytest.mark.asyncio
    async def test_same_key_other_queue_is_independent(self, service):
        first = await service.enqueue("orders", {}, dedup_key="k")
        second = await service.enqueue("refunds", {}, dedup_key="k")
        assert not second.deduplicated
        assert second.job_id != first.job_id

    @pytest.mark.asyncio
    async def test_key_released_on_terminal(self, service):
        first = await service.enqueue("orders", {}, dedup_key="order-42")
        await service.cancel(first.job_id)

        again = await service.enqueue("orders", {}, dedup_key="order-42")
        assert not again.deduplicated
        assert again.job_id != first.job_id

    @pytest.mark.asyncio
    async def test_debounce_window(self, store, settings, clock):
        settings = settings.model_copy(update={"dedup_window_s": 60.0})
        service = JobService(store, settings=settings, clock=clock)

        first = await service.enqueue("orders", {}, dedup_key="k")
        await service.cancel(first.job_id)

        clock.advance(30)
        within = await service.enqueue("orders", {}, dedup_key="k")
        assert within.deduplicated
        assert within.job_id == first.job_id

        clock.advance(31)
        after = await service.enqueue("orders", {}, dedup_key="k")
        assert not after.deduplicated

    @pytest.mark.asyncio
    async def test_no_duplicate_metric(self, service, metrics_registry):
        await service.enqueue("orders", {}, dedup_key="k")
        await service.enqueue("orders", {}, dedup_key="k")
        assert metrics_registry.get_sample_value(
            "jobq_jobs_enqueued_total", {"queue": "orders"}
        ) == 1


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, service, metrics_registry):
        result = await service.enqueue("emails", {})
        assert await service.cancel(result.job_id) is CancelResult.OK

        status = await service.get_status(result.job_id)
        assert status.state is JobState.CANCELLED
        assert metrics_registry.get_sample_value(
            "jobq_jobs_cancelled_total", {"queue": "emails"}
        ) == 1

    @pytest.mark.asyncio
    async def test_cancel_leased_sets_flag(self, service, store):
        result = await service.enqueue("emails", {})
        await store.claim(result.job_id, "w1", 30)

        assert await service.cancel(result.job_id) is CancelResult.OK
        job = await store.get(result.job_id)
        assert job.state is JobState.LEASED
        assert job.cancel_requested

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, service):
        assert await service.cancel(uuid4()) is CancelResult.NOT_FOUND

    @pytest.mark.asyncio
    async def test_cancel_terminal(self, service):
        result = await service.enqueue("emails", {})
        await service.cancel(result.job_id)
        assert await service.cancel(result.job_id) is CancelResult.ALREADY_TERMINAL


class TestStatus:
    @pytest.mark.asyncio
    async def test_unknown_job(self, service):
        assert await service.get_status(uuid4()) is None

    @pytest.mark.asyncio
    async def test_status_fields(self, service):
        result = await service.enqueue("emails", {}, max_attempts=3)
        status = await service.get_status(result.job_id)

        assert status.job_id == result.job_id
        assert status.queue == "emails"
        assert status.attempts == 0
        assert status.max_attempts == 3
        assert status.last_error is None
