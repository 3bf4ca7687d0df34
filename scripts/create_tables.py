#!/usr/bin/env python3
"""Create campaign event tables and the ingest_campaign_event function."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. campaign_instances
CREATE TABLE IF NOT EXISTS campaign_instances (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    template_id UUID,
    name VARCHAR(255) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'draft'
        CHECK (status IN ('draft', 'active', 'paused', 'completed', 'failed')),
    total_enrolled INTEGER NOT NULL DEFAULT 0 CHECK (total_enrolled >= 0),
    total_sent INTEGER NOT NULL DEFAULT 0 CHECK (total_sent >= 0),
    total_delivered INTEGER NOT NULL DEFAULT 0 CHECK (total_delivered >= 0),
    total_opened INTEGER NOT NULL DEFAULT 0 CHECK (total_opened >= 0),
    total_clicked INTEGER NOT NULL DEFAULT 0 CHECK (total_clicked >= 0),
    total_replied INTEGER NOT NULL DEFAULT 0 CHECK (total_replied >= 0),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 2. campaign_enrollments
CREATE TABLE IF NOT EXISTS campaign_enrollments (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    instance_id UUID NOT NULL REFERENCES campaign_instances(id) ON DELETE CASCADE,
    contact_email VARCHAR(255),
    status VARCHAR(20) NOT NULL DEFAULT 'enrolled'
        CHECK (status IN ('enrolled', 'active', 'paused', 'completed', 'unsubscribed', 'bounced')),
    current_step INTEGER NOT NULL DEFAULT 0,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_campaign_enrollments_instance_id ON campaign_enrollments(instance_id);

-- 3. enrollment_correlation_keys
CREATE TABLE IF NOT EXISTS enrollment_correlation_keys (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    enrollment_id UUID NOT NULL REFERENCES campaign_enrollments(id) ON DELETE CASCADE,
    provider VARCHAR(50) NOT NULL,
    provider_key VARCHAR(512) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(provider, provider_key)
);
CREATE INDEX IF NOT EXISTS idx_correlation_keys_enrollment_id ON enrollment_correlation_keys(enrollment_id);

-- 4. campaign_events (append-only)
CREATE TABLE IF NOT EXISTS campaign_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    enrollment_id UUID NOT NULL REFERENCES campaign_enrollments(id) ON DELETE CASCADE,
    event_type VARCHAR(50) NOT NULL,
    channel VARCHAR(20) NOT NULL,
    step_number INTEGER CHECK (step_number IS NULL OR step_number >= 0),
    "timestamp" TIMESTAMPTZ NOT NULL,
    provider VARCHAR(50) NOT NULL,
    provider_event_id VARCHAR(512) NOT NULL,
    provider_key VARCHAR(512),
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(provider, provider_event_id)
);
CREATE INDEX IF NOT EXISTS idx_campaign_events_enrollment_id ON campaign_events(enrollment_id);
CREATE INDEX IF NOT EXISTS idx_campaign_events_created_at ON campaign_events(created_at);

-- 5. orphaned_events
CREATE TABLE IF NOT EXISTS orphaned_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    provider VARCHAR(50) NOT NULL,
    provider_event_id VARCHAR(512) NOT NULL,
    provider_key VARCHAR(512),
    enrollment_id VARCHAR(255),
    event_type VARCHAR(50),
    channel VARCHAR(20),
    payload JSONB NOT NULL,
    reason VARCHAR(50) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'dead_letter')),
    retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
    last_error TEXT,
    last_attempt_at TIMESTAMPTZ,
    dead_lettered_at TIMESTAMPTZ,
    next_retry_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(provider, provider_event_id)
);
CREATE INDEX IF NOT EXISTS idx_orphaned_events_status_created ON orphaned_events(status, created_at);
CREATE INDEX IF NOT EXISTS idx_orphaned_events_status_next_retry ON orphaned_events(status, next_retry_at);

-- 6. super_admins
CREATE TABLE IF NOT EXISTS super_admins (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email VARCHAR(255) UNIQUE NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 7. observability_metric_snapshots
CREATE TABLE IF NOT EXISTS observability_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source VARCHAR(100) NOT NULL,
    request_id VARCHAR(255),
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

INGEST_FUNCTION = """
CREATE OR REPLACE FUNCTION ingest_campaign_event(
    p_event JSONB,
    p_counter_deltas JSONB DEFAULT '{}'::jsonb,
    p_enrollment_status TEXT DEFAULT NULL,
    p_protected_statuses TEXT[] DEFAULT ARRAY[]::TEXT[],
    p_orphan_id UUID DEFAULT NULL
) RETURNS JSONB
LANGUAGE plpgsql
AS $$
DECLARE
    v_enrollment_id UUID;
    v_instance_id UUID;
    v_event_id UUID;
BEGIN
    BEGIN
        v_enrollment_id := (p_event->>'enrollment_id')::uuid;
    EXCEPTION WHEN invalid_text_representation THEN
        v_enrollment_id := NULL;
    END;

    SELECT instance_id INTO v_instance_id FROM campaign_enrollments WHERE id = v_enrollment_id;
    IF v_instance_id IS NULL THEN
        RETURN jsonb_build_object('outcome', 'enrollment_not_found', 'event_id', NULL, 'instance_id', NULL);
    END IF;

    INSERT INTO campaign_events (
        enrollment_id, event_type, channel, step_number, "timestamp",
        provider, provider_event_id, provider_key, metadata
    ) VALUES (
        v_enrollment_id,
        p_event->>'event_type',
        p_event->>'channel',
        (p_event->>'step_number')::integer,
        (p_event->>'timestamp')::timestamptz,
        p_event->>'provider',
        p_event->>'provider_event_id',
        p_event->>'provider_key',
        COALESCE(p_event->'metadata', '{}'::jsonb)
    )
    ON CONFLICT (provider, provider_event_id) DO NOTHING
    RETURNING id INTO v_event_id;

    -- A stored event never stays parked, whichever path stored it.
    DELETE FROM orphaned_events
    WHERE provider = p_event->>'provider'
      AND provider_event_id = p_event->>'provider_event_id';
    IF p_orphan_id IS NOT NULL THEN
        DELETE FROM orphaned_events WHERE id = p_orphan_id;
    END IF;

    IF v_event_id IS NULL THEN
        SELECT id INTO v_event_id FROM campaign_events
        WHERE provider = p_event->>'provider' AND provider_event_id = p_event->>'provider_event_id';
        RETURN jsonb_build_object('outcome', 'duplicate', 'event_id', v_event_id, 'instance_id', v_instance_id);
    END IF;

    IF p_counter_deltas IS NOT NULL AND p_counter_deltas <> '{}'::jsonb THEN
        UPDATE campaign_instances SET
            total_sent = total_sent + COALESCE((p_counter_deltas->>'total_sent')::integer, 0),
            total_delivered = total_delivered + COALESCE((p_counter_deltas->>'total_delivered')::integer, 0),
            total_opened = total_opened + COALESCE((p_counter_deltas->>'total_opened')::integer, 0),
            total_clicked = total_clicked + COALESCE((p_counter_deltas->>'total_clicked')::integer, 0),
            total_replied = total_replied + COALESCE((p_counter_deltas->>'total_replied')::integer, 0),
            updated_at = NOW()
        WHERE id = v_instance_id;
    END IF;

    IF p_enrollment_status IS NOT NULL THEN
        UPDATE campaign_enrollments
        SET status = p_enrollment_status, updated_at = NOW()
        WHERE id = v_enrollment_id
          AND NOT (status = ANY(COALESCE(p_protected_statuses, ARRAY[]::TEXT[])));
    END IF;

    RETURN jsonb_build_object('outcome', 'created', 'event_id', v_event_id, 'instance_id', v_instance_id);
END;
$$;
"""


def main():
    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    print("Creating ingest_campaign_event function...")
    cur.execute(INGEST_FUNCTION)

    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables: {[t[0] for t in tables]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
