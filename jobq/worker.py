"""Worker process: wires the engine together and runs it.

Usage:
    python -m jobq.worker --handlers myapp.handlers

Handler modules register their queues on ``jobq.jobs.registry.default_registry``
at import time.
"""

import argparse
import asyncio
import importlib
import signal
from typing import Optional

import structlog
from prometheus_client import start_http_server

from jobq import __version__
from jobq.config import Settings, get_settings
from jobq.core.logging_config import configure_logging
from jobq.core.sentry import init_sentry
from jobq.jobs.clock import Clock, SystemClock
from jobq.jobs.dead_letter import DeadLetterSink
from jobq.jobs.dispatcher import Dispatcher, generate_worker_id
from jobq.jobs.metrics import MetricsSink, NullMetricsSink, PrometheusMetricsSink
from jobq.jobs.rate_limit import BucketStore, InMemoryBucketStore, RateLimiter
from jobq.jobs.registry import JobRegistry, default_registry
from jobq.jobs.retry import RetryPolicy
from jobq.jobs.scheduler import RecurringJob, Scheduler
from jobq.jobs.service import JobService
from jobq.jobs.sweeper import LeaseSweeper
from jobq.repositories.base import JobStore
from jobq.repositories.jobs import PostgresJobStore, create_pool
from jobq.repositories.memory import InMemoryJobStore
from jobq.repositories.rate_limits import PostgresBucketStore

logger = structlog.get_logger(__name__)


class WorkerRunner:
    """
    One engine instance: API service, dispatcher, scheduler and sweeper
    sharing a store, a clock and a metrics sink.

    Several runners may share a Postgres store; each leases jobs under its
    own worker id.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        registry: Optional[JobRegistry] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        bucket_store: Optional[BucketStore] = None,
        metrics: Optional[MetricsSink] = None,
        worker_id: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.registry = registry or default_registry
        self.clock = clock or SystemClock()
        self.metrics = metrics or NullMetricsSink()
        self.worker_id = worker_id or self.settings.worker_id or generate_worker_id()

        self.scheduler = Scheduler(self.clock, self.settings.scheduler_tick_s)
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self.rate_limiter = RateLimiter(bucket_store or InMemoryBucketStore(self.clock))
        self.dead_letters = DeadLetterSink(
            store,
            mode=self.settings.dead_letter_mode,
            grace_seconds=self.settings.dead_letter_grace_s,
            clock=self.clock,
            metrics=self.metrics,
        )
        self.service = JobService(
            store,
            settings=self.settings,
            clock=self.clock,
            scheduler=self.scheduler,
            metrics=self.metrics,
            registry=self.registry,
        )
        self.scheduler.set_enqueuer(self.service.enqueue)
        self.dispatcher = Dispatcher(
            store,
            self.registry,
            settings=self.settings,
            clock=self.clock,
            worker_id=self.worker_id,
            retry_policy=self.retry_policy,
            rate_limiter=self.rate_limiter,
            scheduler=self.scheduler,
            dead_letters=self.dead_letters,
            metrics=self.metrics,
        )
        self.sweeper = LeaseSweeper(
            store,
            settings=self.settings,
            clock=self.clock,
            retry_policy=self.retry_policy,
            dead_letters=self.dead_letters,
            scheduler=self.scheduler,
            metrics=self.metrics,
        )
        self._dispatch_task: Optional[asyncio.Task] = None

    async def configure_rate_limit(
        self, resource: str, capacity: float, refill_per_second: float
    ) -> None:
        await self.rate_limiter.configure(resource, capacity, refill_per_second)

    def register_recurring(self, spec: RecurringJob) -> None:
        self.scheduler.register_recurring(spec)

    @property
    def is_running(self) -> bool:
        return self._dispatch_task is not None and not self._dispatch_task.done()

    async def start(self) -> None:
        """Start the sweeper and the dispatch loop in the background."""
        if self.is_running:
            logger.warning("worker_already_running", worker_id=self.worker_id)
            return
        await self.sweeper.start()
        self._dispatch_task = asyncio.create_task(self.dispatcher.run())
        logger.info("worker_started", worker_id=self.worker_id, version=__version__)

    async def stop(self) -> None:
        """Stop dispatching, wait for in-flight handlers, stop the sweeper."""
        if self._dispatch_task is not None:
            await self.dispatcher.stop()
            await self._dispatch_task
            self._dispatch_task = None
        await self.sweeper.stop()
        logger.info("worker_stopped", worker_id=self.worker_id)


async def build_store(settings: Settings):
    """Pick the store from settings. Returns (job store, bucket store, pool)."""
    if not settings.database_url:
        logger.warning("using_in_memory_store", reason="DATABASE_URL not set")
        return InMemoryJobStore(), InMemoryBucketStore(), None

    pool = await create_pool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    logger.info("database_pool_created")
    return PostgresJobStore(pool), PostgresBucketStore(pool), pool


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a jobq worker")
    parser.add_argument(
        "--handlers",
        nargs="+",
        default=[],
        help="Modules to import; they register handlers on the default registry",
    )
    parser.add_argument(
        "--worker-id", default=None, help="Worker identity (default: hostname:pid)"
    )
    return parser.parse_args(argv)


async def run_worker(args: argparse.Namespace) -> None:
    settings = get_settings()
    configure_logging(settings)
    init_sentry(settings)

    for module in args.handlers:
        importlib.import_module(module)
    if not default_registry.queues:
        logger.warning("no_handlers_registered")

    metrics: MetricsSink = NullMetricsSink()
    if settings.metrics_port:
        metrics = PrometheusMetricsSink()
        start_http_server(settings.metrics_port)
        logger.info("metrics_server_started", port=settings.metrics_port)

    store, bucket_store, pool = await build_store(settings)
    runner = WorkerRunner(
        store,
        settings=settings,
        bucket_store=bucket_store,
        metrics=metrics,
        worker_id=args.worker_id,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await runner.start()
        await stop_event.wait()
        logger.info("worker_shutdown_requested", worker_id=runner.worker_id)
    finally:
        await runner.stop()
        if pool is not None:
            await pool.close()
            logger.info("database_pool_closed")


def main(argv: Optional[list[str]] = None) -> None:
    asyncio.run(run_worker(parse_args(argv)))


if __name__ == "__main__":
    main()
