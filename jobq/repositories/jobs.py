"""Postgres job store.

Claims use ``FOR UPDATE SKIP LOCKED`` or a guarded single-row UPDATE, so
racing dispatchers never lease the same job twice. Every lease-guarded
update re-checks ``state = 'leased' AND lease_owner = $worker`` in its
WHERE clause.
"""

import json
from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import UUID

import asyncpg
import structlog

from jobq.jobs.errors import DuplicateDedupKeyError, LeaseLostError
from jobq.jobs.models import Job
from jobq.jobs.types import CancelResult, JobState, Priority

logger = structlog.get_logger(__name__)

_PRIORITY_BY_RANK = {p.rank: p for p in Priority}
_COMPLETION_STATES = (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)


class PostgresJobStore:
    """JobStore over an asyncpg pool."""

    def __init__(self, pool):
        self._pool = pool

    async def insert(self, job: Job) -> UUID:
        """Insert a Pending job; dedup is enforced by the partial unique index."""
        query = """
            INSERT INTO jobs (id, queue, payload, priority, state, dedup_key,
                              attempts, max_attempts, scheduled_at, replayed_from,
                              payload_raw)
            VALUES ($1, $2, $3::jsonb, $4, 'pending', $5, $6, $7, $8, $9, $10)
            ON CONFLICT (queue, dedup_key)
                WHERE dedup_key IS NOT NULL AND state IN ('pending', 'leased')
            DO NOTHING
            RETURNING id
        """
        raw = job.payload if isinstance(job.payload, bytes) else None
        params = (
            job.id,
            job.queue,
            json.dumps({} if raw is not None else job.payload),
            job.priority.rank,
            job.dedup_key,
            job.attempts,
            job.max_attempts,
            job.scheduled_at,
            job.replayed_from,
            raw,
        )
        async with self._pool.acquire() as conn:
            job_id = await conn.fetchval(query, *params)
            if job_id is not None:
                return job_id
            existing = await self._active_dedup_holder(conn, job)
            if existing is None:
                # Holder went terminal between the insert and the lookup
                job_id = await conn.fetchval(query, *params)
                if job_id is not None:
                    return job_id
                existing = await self._active_dedup_holder(conn, job)
        raise DuplicateDedupKeyError(job.queue, job.dedup_key or "", existing)

    async def _active_dedup_holder(self, conn, job: Job) -> Optional[UUID]:
        return await conn.fetchval(
            """
            SELECT id FROM jobs
            WHERE queue = $1 AND dedup_key = $2
              AND state IN ('pending', 'leased')
            """,
            job.queue,
            job.dedup_key,
        )

    async def get(self, job_id: UUID) -> Optional[Job]:
        query = "SELECT * FROM jobs WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id)
        return self._row_to_job(row) if row else None

    async def list_ready(
        self,
        now: datetime,
        queues: Optional[Sequence[str]] = None,
        limit_per_class: int = 100,
    ) -> list[Job]:
        """Due Pending jobs, capped per priority class so no class is hidden."""
        queue_filter = ""
        params: list[Any] = [now, limit_per_class]
        if queues is not None:
            queue_filter = "AND queue = ANY($3)"
            params.append(list(queues))

        query = f"""
            SELECT * FROM (
                SELECT *, row_number() OVER (
                    PARTITION BY priority ORDER BY scheduled_at, id
                ) AS class_rank
                FROM jobs
                WHERE state = 'pending' AND scheduled_at <= $1
                {queue_filter}
            ) ranked
            WHERE class_rank <= $2
            ORDER BY priority, scheduled_at, id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_job(row) for row in rows]

    async def claim(
        self, job_id: UUID, worker_id: str, lease_duration: float
    ) -> Optional[Job]:
        query = """
            UPDATE jobs SET
                state = 'leased',
                lease_owner = $2,
                lease_expires_at = now() + make_interval(secs => $3),
                updated_at = now()
            WHERE id = $1 AND state = 'pending' AND scheduled_at <= now()
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, worker_id, float(lease_duration))
        if row is None:
            return None
        logger.info(
            "job_claimed", job_id=str(job_id), queue=row["queue"], worker_id=worker_id
        )
        return self._row_to_job(row)

    async def claim_next(
        self,
        queue: str,
        worker_id: str,
        lease_duration: float,
        priority: Optional[Priority] = None,
    ) -> Optional[Job]:
        """Claim the next available job using FOR UPDATE SKIP LOCKED."""
        priority_filter = ""
        params: list[Any] = [queue, worker_id, float(lease_duration)]
        if priority is not None:
            priority_filter = "AND priority = $4"
            params.append(priority.rank)

        query = f"""
            WITH cte AS (
                SELECT id FROM jobs
                WHERE queue = $1 AND state = 'pending' AND scheduled_at <= now()
                {priority_filter}
                ORDER BY priority, scheduled_at, id
                FOR UPDATE SKIP LOCKED
                LIMIT 1
            )
            UPDATE jobs j SET
                state = 'leased',
                lease_owner = $2,
                lease_expires_at = now() + make_interval(secs => $3),
                updated_at = now()
            FROM cte
            WHERE j.id = cte.id
            RETURNING j.*
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)

        if row:
            logger.info(
                "job_claimed", job_id=str(row["id"]), queue=queue, worker_id=worker_id
            )
            return self._row_to_job(row)
        return None

    async def heartbeat(
        self, job_id: UUID, worker_id: str, lease_expires_at: datetime
    ) -> Job:
        query = """
            UPDATE jobs SET
                lease_expires_at = $3,
                updated_at = now()
            WHERE id = $1 AND state = 'leased' AND lease_owner = $2
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, worker_id, lease_expires_at)
        if row is None:
            raise LeaseLostError(job_id, worker_id)
        return self._row_to_job(row)

    async def complete(
        self,
        job_id: UUID,
        worker_id: str,
        state: JobState,
        last_error: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> Job:
        """Move a held job to a terminal state."""
        if state not in _COMPLETION_STATES:
            raise ValueError(f"complete() cannot move a job to {state.value}")
        query = """
            UPDATE jobs SET
                state = $3,
                last_error = COALESCE($4, last_error),
                attempts = COALESCE($5, attempts),
                lease_owner = NULL,
                lease_expires_at = NULL,
                finished_at = now(),
                updated_at = now()
            WHERE id = $1 AND state = 'leased' AND lease_owner = $2
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query, job_id, worker_id, state.value, last_error, attempts
            )
        if row is None:
            raise LeaseLostError(job_id, worker_id)
        logger.info("job_completed", job_id=str(job_id), state=state.value)
        return self._row_to_job(row)

    async def reschedule(
        self,
        job_id: UUID,
        worker_id: str,
        scheduled_at: datetime,
        attempts: int,
        last_error: Optional[str] = None,
    ) -> Job:
        """Release a held job back to Pending for retry."""
        query = """
            UPDATE jobs SET
                state = 'pending',
                attempts = $4,
                scheduled_at = GREATEST($3, scheduled_at),
                last_error = COALESCE($5, last_error),
                lease_owner = NULL,
                lease_expires_at = NULL,
                updated_at = now()
            WHERE id = $1 AND state = 'leased' AND lease_owner = $2
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query, job_id, worker_id, scheduled_at, attempts, last_error
            )
        if row is None:
            raise LeaseLostError(job_id, worker_id)
        logger.info(
            "job_rescheduled",
            job_id=str(job_id),
            attempts=attempts,
            scheduled_at=row["scheduled_at"].isoformat(),
        )
        return self._row_to_job(row)

    async def find_expired_leases(self, now: datetime, limit: int = 100) -> list[Job]:
        query = """
            SELECT * FROM jobs
            WHERE state = 'leased' AND lease_expires_at < $1
            ORDER BY lease_expires_at
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, now, limit)
        return [self._row_to_job(row) for row in rows]

    async def recover_expired(
        self,
        job_id: UUID,
        lease_owner: str,
        now: datetime,
        state: JobState,
        attempts: int,
        scheduled_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
    ) -> Optional[Job]:
        """Compare-and-swap off an expired lease."""
        query = """
            UPDATE jobs SET
                state = $4,
                attempts = LEAST($5, max_attempts),
                scheduled_at = GREATEST(COALESCE($6, scheduled_at), scheduled_at),
                last_error = COALESCE($7, last_error),
                lease_owner = NULL,
                lease_expires_at = NULL,
                finished_at = CASE WHEN $4 = 'pending' THEN NULL ELSE now() END,
                updated_at = now()
            WHERE id = $1 AND state = 'leased' AND lease_owner = $2
              AND lease_expires_at < $3
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                job_id,
                lease_owner,
                now,
                state.value,
                attempts,
                scheduled_at,
                last_error,
            )
        return self._row_to_job(row) if row else None

    async def cancel(self, job_id: UUID) -> CancelResult:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                state = await conn.fetchval(
                    "SELECT state FROM jobs WHERE id = $1 FOR UPDATE", job_id
                )
                if state is None:
                    return CancelResult.NOT_FOUND
                if JobState(state).is_terminal:
                    return CancelResult.ALREADY_TERMINAL
                if state == JobState.PENDING.value:
                    await conn.execute(
                        """
                        UPDATE jobs SET
                            state = 'cancelled',
                            finished_at = now(),
                            updated_at = now()
                        WHERE id = $1
                        """,
                        job_id,
                    )
                else:
                    await conn.execute(
                        """
                        UPDATE jobs SET
                            cancel_requested = TRUE,
                            updated_at = now()
                        WHERE id = $1
                        """,
                        job_id,
                    )
        return CancelResult.OK

    async def mark_dead_lettered(self, job_id: UUID) -> Optional[Job]:
        query = """
            UPDATE jobs SET
                state = 'dead_lettered',
                updated_at = now()
            WHERE id = $1 AND state = 'failed'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id)
        return self._row_to_job(row) if row else None

    async def list_jobs(
        self,
        queue: Optional[str] = None,
        state: Optional[JobState] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        """List jobs with filters and pagination, newest first."""
        conditions = []
        params: list[Any] = []
        param_idx = 1

        if queue:
            conditions.append(f"queue = ${param_idx}")
            params.append(queue)
            param_idx += 1

        if state:
            conditions.append(f"state = ${param_idx}")
            params.append(state.value)
            param_idx += 1

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        query = f"""
            SELECT * FROM jobs
            {where_clause}
            ORDER BY created_at DESC, id DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """
        params.extend([limit, offset])

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_job(row) for row in rows]

    async def list_failed_before(self, cutoff: datetime, limit: int = 100) -> list[Job]:
        query = """
            SELECT * FROM jobs
            WHERE state = 'failed' AND finished_at <= $1
            ORDER BY finished_at
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, cutoff, limit)
        return [self._row_to_job(row) for row in rows]

    async def find_by_dedup_key_since(
        self, queue: str, dedup_key: str, since: datetime
    ) -> Optional[Job]:
        query = """
            SELECT * FROM jobs
            WHERE queue = $1 AND dedup_key = $2 AND created_at >= $3
            ORDER BY created_at DESC
            LIMIT 1
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, queue, dedup_key, since)
        return self._row_to_job(row) if row else None

    async def queue_depths(self) -> dict[tuple[str, Priority], int]:
        query = """
            SELECT queue, priority, COUNT(*) AS depth
            FROM jobs
            WHERE state = 'pending'
            GROUP BY queue, priority
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query)
        return {
            (row["queue"], _PRIORITY_BY_RANK[row["priority"]]): row["depth"]
            for row in rows
        }

    def _row_to_job(self, row) -> Job:
        """Convert a database row to a Job model."""
        payload = row.get("payload_raw")
        if payload is None:
            payload = row["payload"]
            if isinstance(payload, (str, bytes)):
                payload = json.loads(payload)
        return Job(
            id=row["id"],
            queue=row["queue"],
            payload=payload,
            priority=_PRIORITY_BY_RANK[row["priority"]],
            state=JobState(row["state"]),
            dedup_key=row["dedup_key"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            scheduled_at=row["scheduled_at"],
            last_error=row["last_error"],
            lease_owner=row["lease_owner"],
            lease_expires_at=row["lease_expires_at"],
            cancel_requested=row["cancel_requested"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            finished_at=row["finished_at"],
            replayed_from=row["replayed_from"],
        )


async def create_pool(database_url: str, min_size: int = 2, max_size: int = 10):
    """Create the asyncpg pool used by the Postgres stores."""
    return await asyncpg.create_pool(
        database_url,
        min_size=min_size,
        max_size=max_size,
        command_timeout=30,
    )
