"""Postgres DDL for the job store and shared rate-limit buckets."""

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id UUID PRIMARY KEY,
    queue TEXT NOT NULL CHECK (queue <> ''),
    payload JSONB NOT NULL DEFAULT '{}',
    payload_raw BYTEA,
    priority SMALLINT NOT NULL DEFAULT 2 CHECK (priority BETWEEN 0 AND 3),
    state TEXT NOT NULL DEFAULT 'pending' CHECK (state IN (
        'pending', 'leased', 'succeeded', 'failed', 'dead_lettered', 'cancelled'
    )),
    dedup_key TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL CHECK (max_attempts >= 1),
    scheduled_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_error TEXT,
    lease_owner TEXT,
    lease_expires_at TIMESTAMPTZ,
    cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    finished_at TIMESTAMPTZ,
    replayed_from UUID REFERENCES jobs(id) ON DELETE SET NULL,
    CHECK (attempts >= 0 AND attempts <= max_attempts),
    CHECK (state <> 'leased' OR (lease_owner IS NOT NULL AND lease_expires_at IS NOT NULL))
);

-- Tables created before bytes payloads were supported
ALTER TABLE jobs ADD COLUMN IF NOT EXISTS payload_raw BYTEA;

-- At most one active job per (queue, dedup_key)
CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_active_dedup
    ON jobs (queue, dedup_key)
    WHERE dedup_key IS NOT NULL AND state IN ('pending', 'leased');

CREATE INDEX IF NOT EXISTS idx_jobs_ready
    ON jobs (queue, priority, scheduled_at, id)
    WHERE state = 'pending';

CREATE INDEX IF NOT EXISTS idx_jobs_lease_expiry
    ON jobs (lease_expires_at)
    WHERE state = 'leased';

CREATE INDEX IF NOT EXISTS idx_jobs_failed_finished
    ON jobs (finished_at)
    WHERE state = 'failed';

CREATE INDEX IF NOT EXISTS idx_jobs_dedup_created
    ON jobs (queue, dedup_key, created_at DESC)
    WHERE dedup_key IS NOT NULL;

CREATE TABLE IF NOT EXISTS rate_limit_buckets (
    resource TEXT PRIMARY KEY,
    tokens DOUBLE PRECISION NOT NULL,
    capacity DOUBLE PRECISION NOT NULL CHECK (capacity >= 0),
    refill_per_second DOUBLE PRECISION NOT NULL CHECK (refill_per_second >= 0),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
);
"""
