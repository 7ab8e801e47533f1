"""Tests for worker process wiring."""

from unittest.mock import AsyncMock, patch

import pytest

from jobq.jobs.rate_limit import InMemoryBucketStore
from jobq.repositories.jobs import PostgresJobStore
from jobq.repositories.memory import InMemoryJobStore
from jobq.repositories.rate_limits import PostgresBucketStore
from jobq.worker import WorkerRunner, build_store, parse_args


def test_parse_args():
    args = parse_args(["--handlers", "app.mail", "app.reports", "--worker-id", "w9"])

    assert args.handlers == ["app.mail", "app.reports"]
    assert args.worker_id == "w9"


def test_parse_args_defaults():
    args = parse_args([])

    assert args.handlers == []
    assert args.worker_id is None


@pytest.mark.asyncio
async def test_build_store_in_memory_without_database(settings):
    store, bucket_store, pool = await build_store(settings)

    assert isinstance(store, InMemoryJobStore)
    assert isinstance(bucket_store, InMemoryBucketStore)
    assert pool is None


@pytest.mark.asyncio
async def test_build_store_postgres(settings):
    settings.database_url = "postgresql://localhost/jobq"
    pool = object()

    with patch("jobq.worker.create_pool", AsyncMock(return_value=pool)) as create:
        store, bucket_store, got_pool = await build_store(settings)

    create.assert_awaited_once()
    assert create.call_args[0][0] == "postgresql://localhost/jobq"
    assert isinstance(store, PostgresJobStore)
    assert isinstance(bucket_store, PostgresBucketStore)
    assert got_pool is pool


class TestWorkerRunner:
    def test_worker_id_from_settings(self, store, registry, settings, clock):
        settings.worker_id = "from-settings"

        runner = WorkerRunner(store, registry=registry, settings=settings, clock=clock)

        assert runner.worker_id == "from-settings"
        assert runner.dispatcher.worker_id == "from-settings"

    @pytest.mark.asyncio
    async def test_start_and_stop(self, store, registry, settings, clock):
        runner = WorkerRunner(
            store, registry=registry, settings=settings, clock=clock, worker_id="w1"
        )

        await runner.start()
        assert runner.is_running

        await runner.stop()
        assert not runner.is_running
