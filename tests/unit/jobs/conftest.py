"""Fixtures wiring a full engine over the in-memory store."""

import pytest

from jobq.worker import WorkerRunner


@pytest.fixture
def runner(store, registry, settings, clock, metrics) -> WorkerRunner:
    return WorkerRunner(
        store,
        registry=registry,
        settings=settings,
        clock=clock,
        metrics=metrics,
        worker_id="w1",
    )


@pytest.fixture
def dispatch():
    """One scheduling pass, then wait for every handler it started."""

    async def _dispatch(runner: WorkerRunner):
        result = await runner.dispatcher.run_once()
        await runner.dispatcher.join()
        return result

    return _dispatch
