"""Postgres-backed token buckets shared by every dispatcher process.

Refill and take happen in one UPDATE, so the row lock gives single-writer
semantics per resource and concurrent workers cannot over-admit.
"""

import structlog

from jobq.jobs.rate_limit import BucketConfig

logger = structlog.get_logger(__name__)


class PostgresBucketStore:
    """BucketStore over the ``rate_limit_buckets`` table."""

    def __init__(self, pool):
        self._pool = pool

    async def configure(self, resource: str, config: BucketConfig) -> None:
        query = """
            INSERT INTO rate_limit_buckets (resource, tokens, capacity,
                                            refill_per_second, updated_at)
            VALUES ($1, $2, $2, $3, clock_timestamp())
            ON CONFLICT (resource) DO UPDATE SET
                capacity = EXCLUDED.capacity,
                refill_per_second = EXCLUDED.refill_per_second,
                tokens = LEAST(rate_limit_buckets.tokens, EXCLUDED.capacity)
        """
        async with self._pool.acquire() as conn:
            await conn.execute(
                query, resource, float(config.capacity), float(config.refill_per_second)
            )

    async def try_take(self, resource: str, tokens: float = 1.0) -> bool:
        query = """
            WITH refilled AS (
                SELECT resource, LEAST(
                    capacity,
                    tokens + EXTRACT(EPOCH FROM (clock_timestamp() - updated_at))
                             * refill_per_second
                ) AS available
                FROM rate_limit_buckets
                WHERE resource = $1
                FOR UPDATE
            )
            UPDATE rate_limit_buckets b SET
                tokens = refilled.available - $2,
                updated_at = clock_timestamp()
            FROM refilled
            WHERE b.resource = refilled.resource AND refilled.available >= $2
            RETURNING b.tokens
        """
        async with self._pool.acquire() as conn:
            remaining = await conn.fetchval(query, resource, float(tokens))
        return remaining is not None
