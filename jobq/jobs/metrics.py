"""Metrics emitted by the engine.

The engine only talks to ``MetricsSink``. ``PrometheusMetricsSink`` is the
production implementation; ``NullMetricsSink`` drops everything.
"""

from typing import Optional, Protocol

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, REGISTRY

# Counters
JOBS_ENQUEUED = "jobs_enqueued"
JOBS_SUCCEEDED = "jobs_succeeded"
JOBS_FAILED = "jobs_failed"
JOBS_DEADLETTERED = "jobs_deadlettered"
JOBS_RATE_LIMITED = "jobs_rate_limited"
JOBS_RETRIED = "jobs_retried"
JOBS_LEASE_EXPIRED = "jobs_lease_expired"
JOBS_CANCELLED = "jobs_cancelled"

# Histogram / gauge
JOB_DURATION = "job_duration"
QUEUE_DEPTH = "queue_depth"


class MetricsSink(Protocol):
    def increment(self, name: str, value: float = 1.0, **labels: str) -> None:
        ...

    def observe(self, name: str, value: float, **labels: str) -> None:
        ...

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        ...


class NullMetricsSink:
    """Discards all metrics."""

    def increment(self, name: str, value: float = 1.0, **labels: str) -> None:
        pass

    def observe(self, name: str, value: float, **labels: str) -> None:
        pass

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        pass


# name -> (description, label names)
_COUNTERS = {
    JOBS_ENQUEUED: ("Jobs accepted by enqueue", ["queue"]),
    JOBS_SUCCEEDED: ("Jobs that reached succeeded", ["queue"]),
    JOBS_FAILED: ("Jobs that reached failed", ["queue"]),
    JOBS_DEADLETTERED: ("Jobs moved to the dead-letter sink", ["queue"]),
    JOBS_RATE_LIMITED: ("Dispatches deferred by a rate limit", ["queue", "resource"]),
    JOBS_RETRIED: ("Attempts rescheduled after a retryable error", ["queue"]),
    JOBS_LEASE_EXPIRED: ("Jobs recovered from an expired lease", ["queue"]),
    JOBS_CANCELLED: ("Jobs cancelled", ["queue"]),
}


class PrometheusMetricsSink:
    """MetricsSink over prometheus_client collectors."""

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        namespace: str = "jobq",
    ):
        registry = registry if registry is not None else REGISTRY
        self._counters: dict[str, Counter] = {
            name: Counter(
                f"{namespace}_{name}_total", doc, labels, registry=registry
            )
            for name, (doc, labels) in _COUNTERS.items()
        }
        self._histograms: dict[str, Histogram] = {
            JOB_DURATION: Histogram(
                f"{namespace}_{JOB_DURATION}_seconds",
                "Handler execution time in seconds",
                ["queue", "outcome"],
                buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0],
                registry=registry,
            ),
        }
        self._gauges: dict[str, Gauge] = {
            QUEUE_DEPTH: Gauge(
                f"{namespace}_{QUEUE_DEPTH}",
                "Pending jobs per queue and priority",
                ["queue", "priority"],
                registry=registry,
            ),
        }

    def increment(self, name: str, value: float = 1.0, **labels: str) -> None:
        self._counters[name].labels(**labels).inc(value)

    def observe(self, name: str, value: float, **labels: str) -> None:
        self._histograms[name].labels(**labels).observe(value)

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        self._gauges[name].labels(**labels).set(value)
