"""Root conftest for test suite.

Shared fixtures build an engine on a ManualClock and the in-memory store,
so tests drive time explicitly instead of sleeping.

Slow tests are skipped unless requested with: pytest -m slow
"""

import pytest
from prometheus_client import CollectorRegistry

from jobq.config import Settings
from jobq.core.resilience import reset_circuits
from jobq.jobs.clock import ManualClock
from jobq.jobs.metrics import PrometheusMetricsSink
from jobq.jobs.registry import JobRegistry
from jobq.repositories.memory import InMemoryJobStore


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless explicitly requested."""
    markexpr = config.getoption("-m", default="")
    explicit_slow = "slow" in markexpr

    skip_slow = pytest.mark.skip(
        reason="slow tests skipped by default. Run with: pytest -m slow"
    )
    for item in items:
        if "slow" in item.keywords and not explicit_slow:
            item.add_marker(skip_slow)


@pytest.fixture(autouse=True)
def _reset_store_circuit():
    """The store circuit breaker is module state; isolate it per test."""
    reset_circuits()
    yield
    reset_circuits()


@pytest.fixture
def settings() -> Settings:
    """Deterministic settings: no jitter, no .env file."""
    return Settings(
        _env_file=None,
        retry_base_delay_s=5.0,
        retry_max_delay_s=300.0,
        retry_jitter_ratio=0.0,
        lease_duration_s=30.0,
        worker_max_concurrency=8,
        default_max_attempts=5,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store(clock) -> InMemoryJobStore:
    return InMemoryJobStore(clock)


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def metrics_registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(metrics_registry) -> PrometheusMetricsSink:
    return PrometheusMetricsSink(registry=metrics_registry)
