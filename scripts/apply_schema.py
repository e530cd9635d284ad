#!/usr/bin/env python3
"""Apply the conveyor schema: control-plane tables and the job queue."""
import asyncio
import asyncpg
import os

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name TEXT NOT NULL,
    infra_tenant_id TEXT,
    infra_network_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS services (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    port INTEGER NOT NULL DEFAULT 8080,
    environment TEXT,
    instance_id TEXT,
    container_id TEXT,
    floating_ip_id TEXT,
    floating_ip TEXT,
    security_group_id TEXT,
    dns_record_id TEXT,
    subdomain TEXT,
    generated_url TEXT,
    current_image_tag TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS git_connections (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    provider TEXT NOT NULL,
    access_token TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS git_sources (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    service_id UUID NOT NULL UNIQUE REFERENCES services(id) ON DELETE CASCADE,
    git_connection_id UUID REFERENCES git_connections(id) ON DELETE SET NULL,
    provider TEXT NOT NULL DEFAULT 'github.com',
    repo_owner TEXT NOT NULL,
    repo_name TEXT NOT NULL,
    branch TEXT NOT NULL DEFAULT 'main',
    root_dir TEXT NOT NULL DEFAULT '/',
    webhook_id TEXT
);

CREATE TABLE IF NOT EXISTS deployments (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    service_id UUID NOT NULL REFERENCES services(id) ON DELETE CASCADE,
    commit_sha TEXT,
    commit_message TEXT,
    commit_author TEXT,
    status TEXT NOT NULL DEFAULT 'queued' CHECK (status IN (
        'queued', 'building', 'pushing', 'deploying', 'success', 'failed', 'cancelled'
    )),
    image_tag TEXT,
    build_duration INTEGER,
    deploy_duration INTEGER,
    error_message TEXT,
    triggered_by TEXT NOT NULL DEFAULT 'manual',
    rollback_from_id UUID REFERENCES deployments(id) ON DELETE SET NULL,
    started_at TIMESTAMPTZ,
    finished_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_deployments_service ON deployments(service_id, created_at DESC);

CREATE TABLE IF NOT EXISTS deployment_logs (
    id BIGSERIAL PRIMARY KEY,
    deployment_id UUID NOT NULL REFERENCES deployments(id) ON DELETE CASCADE,
    timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    phase TEXT NOT NULL CHECK (phase IN ('clone', 'build', 'push', 'deploy', 'rollback')),
    level TEXT NOT NULL CHECK (level IN ('info', 'warn', 'error')),
    message TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_deployment_logs_deployment
    ON deployment_logs(deployment_id, timestamp);

CREATE TABLE IF NOT EXISTS env_vars (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    service_id UUID NOT NULL REFERENCES services(id) ON DELETE CASCADE,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    UNIQUE (service_id, key)
);

CREATE TABLE IF NOT EXISTS custom_domains (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    service_id UUID NOT NULL REFERENCES services(id) ON DELETE CASCADE,
    domain TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'pending'
);

CREATE TABLE IF NOT EXISTS volumes (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    size_mb INTEGER NOT NULL,
    mount_path TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    volume_type TEXT NOT NULL DEFAULT 'ssd',
    backend TEXT NOT NULL DEFAULT 'infra' CHECK (backend IN ('infra', 'kubernetes')),
    provider_volume_id TEXT,
    attached_to_service_id UUID REFERENCES services(id) ON DELETE SET NULL,
    attached_to_database_id UUID,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK (attached_to_service_id IS NULL OR attached_to_database_id IS NULL)
);

CREATE TABLE IF NOT EXISTS databases (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    service_id UUID REFERENCES services(id) ON DELETE SET NULL,
    name TEXT NOT NULL,
    engine TEXT NOT NULL CHECK (engine IN ('postgresql', 'mysql', 'redis')),
    version TEXT,
    size TEXT NOT NULL DEFAULT 'small',
    volume_id UUID REFERENCES volumes(id) ON DELETE SET NULL,
    volume_size_mb INTEGER NOT NULL DEFAULT 500,
    internal_hostname TEXT,
    internal_ip TEXT,
    port INTEGER,
    username TEXT,
    password TEXT,
    database_name TEXT,
    connection_url TEXT,
    instance_id TEXT,
    security_group_id TEXT,
    dns_record_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS jobs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    type TEXT NOT NULL,
    payload JSONB NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN (
        'pending', 'processing', 'completed', 'failed'
    )),
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    error TEXT,
    run_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    locked_by TEXT,
    locked_until TIMESTAMPTZ,
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_run_at ON jobs(status, run_at);
CREATE INDEX IF NOT EXISTS idx_jobs_locked_until ON jobs(locked_until)
    WHERE status = 'processing';
"""

async def main():
    conn = await asyncpg.connect(os.environ["DATABASE_URL"], statement_cache_size=0)
    try:
        await conn.execute(SCHEMA)
        print("Schema applied")

        count = await conn.fetchval(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = 'public'"
        )
        print(f"Public schema has {count} tables")
    finally:
        await conn.close()

if __name__ == "__main__":
    asyncio.run(main())
