#!/usr/bin/env python3
"""Apply the provisioning schema: jobs, slots, deferred queue, rate limits, ledger."""
import asyncio
import asyncpg
import os

MIGRATION = """
CREATE TABLE IF NOT EXISTS verification_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    user_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    campaign_name TEXT NOT NULL,
    can_proceed BOOLEAN NOT NULL,
    account_accessible BOOLEAN NOT NULL DEFAULT FALSE,
    account_suspended BOOLEAN NOT NULL DEFAULT FALSE,
    duplicate_name_exists BOOLEAN,
    at_entity_limit BOOLEAN,
    credential_valid BOOLEAN NOT NULL DEFAULT FALSE,
    warnings JSONB NOT NULL DEFAULT '[]',
    errors JSONB NOT NULL DEFAULT '[]',
    current_entity_count INTEGER,
    entity_limit INTEGER,
    verification_time_ms INTEGER NOT NULL DEFAULT 0,
    details JSONB NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_verification_snapshots_user
    ON verification_snapshots(user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS creation_jobs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    user_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    campaign_name TEXT NOT NULL,
    requested_ad_sets INTEGER NOT NULL CHECK (requested_ad_sets >= 1),
    requested_ads INTEGER NOT NULL CHECK (requested_ads >= 0),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'in_progress', 'completed', 'failed', 'rolled_back')),
    ad_sets_created INTEGER NOT NULL DEFAULT 0,
    ads_created INTEGER NOT NULL DEFAULT 0,
    external_campaign_id TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    retry_budget INTEGER NOT NULL DEFAULT 5,
    last_error TEXT,
    error_history JSONB NOT NULL DEFAULT '[]',
    last_retry_at TIMESTAMPTZ,
    rollback_triggered BOOLEAN NOT NULL DEFAULT FALSE,
    rollback_reason TEXT,
    rollback_at TIMESTAMPTZ,
    cleanup_required BOOLEAN NOT NULL DEFAULT FALSE,
    verification_id UUID REFERENCES verification_snapshots(id) ON DELETE SET NULL,
    request_payload JSONB NOT NULL DEFAULT '{}',
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    CHECK (ad_sets_created <= requested_ad_sets),
    CHECK (ads_created <= requested_ads)
);

CREATE INDEX IF NOT EXISTS idx_creation_jobs_user ON creation_jobs(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_creation_jobs_status ON creation_jobs(status);

CREATE TABLE IF NOT EXISTS creation_slots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    job_id UUID NOT NULL REFERENCES creation_jobs(id) ON DELETE CASCADE,
    slot_number INTEGER NOT NULL CHECK (slot_number >= 1),
    entity_type TEXT NOT NULL CHECK (entity_type IN ('campaign', 'ad_set', 'ad')),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'creating', 'created', 'failed', 'rolled_back')),
    external_id TEXT,
    entity_name TEXT,
    error_message TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    failure_record_id UUID,
    creation_started_at TIMESTAMPTZ,
    creation_completed_at TIMESTAMPTZ,
    UNIQUE (job_id, slot_number, entity_type)
);

CREATE INDEX IF NOT EXISTS idx_creation_slots_job_status ON creation_slots(job_id, status);

CREATE TABLE IF NOT EXISTS deferred_operations (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    user_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    action_type TEXT NOT NULL
        CHECK (action_type IN ('create_campaign', 'create_ad_set', 'create_ad', 'delete_entity')),
    payload JSONB NOT NULL DEFAULT '{}',
    credential_ciphertext TEXT,
    priority INTEGER NOT NULL DEFAULT 5,
    status TEXT NOT NULL DEFAULT 'queued'
        CHECK (status IN ('queued', 'processing', 'completed', 'failed', 'cancelled')),
    not_before TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    job_id UUID REFERENCES creation_jobs(id) ON DELETE CASCADE,
    slot_id UUID REFERENCES creation_slots(id) ON DELETE CASCADE,
    result JSONB,
    error TEXT,
    locked_by TEXT,
    processed_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_deferred_operations_ready
    ON deferred_operations(status, not_before, priority, created_at);
CREATE INDEX IF NOT EXISTS idx_deferred_operations_job ON deferred_operations(job_id);
CREATE INDEX IF NOT EXISTS idx_deferred_operations_user ON deferred_operations(user_id, status);

CREATE TABLE IF NOT EXISTS rate_limit_windows (
    user_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    calls_used DOUBLE PRECISION NOT NULL DEFAULT 0,
    calls_allowed INTEGER NOT NULL DEFAULT 200,
    usage_percentage DOUBLE PRECISION NOT NULL DEFAULT 0,
    window_reset_at TIMESTAMPTZ,
    last_signal JSONB,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (user_id, account_id)
);

-- No foreign key to creation_jobs: ledger rows outlive their jobs
CREATE TABLE IF NOT EXISTS failure_records (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    user_id TEXT NOT NULL,
    job_id UUID,
    slot_id UUID,
    entity_type TEXT NOT NULL CHECK (entity_type IN ('campaign', 'ad_set', 'ad')),
    campaign_id TEXT,
    campaign_name TEXT,
    ad_set_id TEXT,
    ad_set_name TEXT,
    ad_id TEXT,
    ad_name TEXT,
    failure_reason TEXT NOT NULL,
    user_facing_reason TEXT NOT NULL,
    error_code TEXT,
    error_category TEXT NOT NULL
        CHECK (error_category IN ('preflight_fatal', 'rate_limit', 'transient', 'entity_fatal')),
    error_payload JSONB,
    retry_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'failed'
        CHECK (status IN ('failed', 'retrying', 'recovered', 'permanent_failure')),
    strategy_tag TEXT,
    metadata JSONB NOT NULL DEFAULT '{}',
    recovered_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_failure_records_user_status ON failure_records(user_id, status);
CREATE INDEX IF NOT EXISTS idx_failure_records_campaign_status
    ON failure_records(campaign_id, status);
CREATE INDEX IF NOT EXISTS idx_failure_records_job ON failure_records(job_id);

CREATE TABLE IF NOT EXISTS platform_credentials (
    user_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    token_ciphertext TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (user_id, account_id)
);
"""

TABLES = [
    "verification_snapshots",
    "creation_jobs",
    "creation_slots",
    "deferred_operations",
    "rate_limit_windows",
    "failure_records",
    "platform_credentials",
]


async def main():
    conn = await asyncpg.connect(os.environ["DATABASE_URL"], statement_cache_size=0)
    try:
        await conn.execute(MIGRATION)
        print("Provisioning schema applied")

        # Verify
        for table in TABLES:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM information_schema.columns WHERE table_name = $1",
                table,
            )
            print(f"{table}: {count} columns")
    finally:
        await conn.close()

if __name__ == "__main__":
    asyncio.run(main())
