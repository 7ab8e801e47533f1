"""Token-bucket admission control for named downstream resources."""

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

import structlog

from jobq.jobs.clock import Clock, SystemClock

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BucketConfig:
    capacity: float
    refill_per_second: float


class BucketStore(Protocol):
    """Holds bucket state. ``try_take`` must be atomic per resource."""

    async def configure(self, resource: str, config: BucketConfig) -> None:
        ...

    async def try_take(self, resource: str, tokens: float = 1.0) -> bool:
        ...


@dataclass
class _Bucket:
    config: BucketConfig
    tokens: float
    updated: float


class InMemoryBucketStore:
    """Per-process buckets refilled lazily from a monotonic clock."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._buckets: dict[str, _Bucket] = {}
        self._lock = asyncio.Lock()

    async def configure(self, resource: str, config: BucketConfig) -> None:
        async with self._lock:
            existing = self._buckets.get(resource)
            tokens = (
                min(existing.tokens, config.capacity) if existing else config.capacity
            )
            self._buckets[resource] = _Bucket(config, tokens, self._clock.monotonic())

    def _refill(self, bucket: _Bucket) -> None:
        now = self._clock.monotonic()
        elapsed = max(0.0, now - bucket.updated)
        bucket.tokens = min(
            bucket.config.capacity,
            bucket.tokens + elapsed * bucket.config.refill_per_second,
        )
        bucket.updated = now

    async def try_take(self, resource: str, tokens: float = 1.0) -> bool:
        async with self._lock:
            bucket = self._buckets.get(resource)
            if bucket is None:
                return False
            self._refill(bucket)
            if bucket.tokens < tokens:
                return False
            bucket.tokens -= tokens
            return True

    async def available(self, resource: str) -> Optional[float]:
        """Current token count, for inspection and tests."""
        async with self._lock:
            bucket = self._buckets.get(resource)
            if bucket is None:
                return None
            self._refill(bucket)
            return bucket.tokens


class RateLimiter:
    """
    Non-blocking admission per resource name.

    Resources that were never configured are unlimited. Denial never waits;
    the dispatcher moves on to the next ready job.
    """

    def __init__(self, store: Optional[BucketStore] = None):
        self._store = store or InMemoryBucketStore()
        self._configured: dict[str, BucketConfig] = {}

    async def configure(
        self, resource: str, capacity: float, refill_per_second: float
    ) -> None:
        if capacity < 0 or refill_per_second < 0:
            raise ValueError("capacity and refill_per_second must be non-negative")
        config = BucketConfig(capacity=capacity, refill_per_second=refill_per_second)
        await self._store.configure(resource, config)
        self._configured[resource] = config
        logger.info(
            "rate_limit_configured",
            resource=resource,
            capacity=capacity,
            refill_per_second=refill_per_second,
        )

    def is_limited(self, resource: Optional[str]) -> bool:
        return resource is not None and resource in self._configured

    async def try_acquire(self, resource: Optional[str]) -> bool:
        """Take one token for ``resource``; True means the call may proceed."""
        if not self.is_limited(resource):
            return True
        admitted = await self._store.try_take(resource)
        if not admitted:
            logger.debug("rate_limit_denied", resource=resource)
        return admitted
