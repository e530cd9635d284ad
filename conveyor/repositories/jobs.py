"""Repository for job queue operations."""

import json
import random
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import structlog

from conveyor.jobs.models import Job
from conveyor.jobs.types import JobType, JobStatus

logger = structlog.get_logger(__name__)


class JobRepository:
    """Repository for job queue operations.

    Every mutation after ``claim`` is guarded by ``locked_by``: a worker that
    lost its lease (reaped, or claimed again elsewhere) cannot overwrite the
    row.
    """

    def __init__(self, pool):
        self._pool = pool

    def _calculate_backoff(self, attempt: int) -> int:
        """Calculate retry backoff: min(300, 2^attempt * 5) + jitter."""
        base = min(300, (2**attempt) * 5)
        jitter = random.randint(0, min(10, base // 2))
        return base + jitter

    async def create(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        max_attempts: int = 3,
        run_at: Optional[datetime] = None,
    ) -> Job:
        """Enqueue a new pending job."""
        query = """
            INSERT INTO jobs (type, payload, status, max_attempts, run_at)
            VALUES ($1, $2::jsonb, 'pending', $3, COALESCE($4, now()))
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                job_type.value,
                json.dumps(payload),
                max_attempts,
                run_at,
            )
        logger.info("job_enqueued", job_id=str(row["id"]), job_type=job_type.value)
        return self._row_to_job(row)

    enqueue = create

    async def claim(
        self,
        worker_id: str,
        lease_seconds: int,
        job_types: Optional[list[JobType]] = None,
    ) -> Optional[Job]:
        """Claim the next eligible job using FOR UPDATE SKIP LOCKED.

        Returns None if no jobs available.
        """
        type_filter = ""
        params: list[Any] = [worker_id, float(lease_seconds)]

        if job_types:
            type_filter = "AND type = ANY($3)"
            params.append([jt.value for jt in job_types])

        query = f"""
            WITH cte AS (
                SELECT id FROM jobs
                WHERE status = 'pending' AND run_at <= now()
                {type_filter}
                ORDER BY run_at, created_at
                FOR UPDATE SKIP LOCKED
                LIMIT 1
            )
            UPDATE jobs j SET
                status = 'processing',
                locked_by = $1,
                locked_until = now() + make_interval(secs => $2),
                started_at = now()
            FROM cte
            WHERE j.id = cte.id
            RETURNING j.*
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)

        if row:
            logger.info(
                "job_claimed",
                job_id=str(row["id"]),
                job_type=row["type"],
                worker_id=worker_id,
            )
            return self._row_to_job(row)
        return None

    async def extend_lease(self, job: Job, lease_seconds: int) -> bool:
        """Push the lease deadline forward. Returns False if the lease was lost."""
        query = """
            UPDATE jobs SET locked_until = now() + make_interval(secs => $3)
            WHERE id = $1 AND locked_by = $2 AND status = 'processing'
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job.id, job.locked_by, float(lease_seconds))
        return row is not None

    async def complete(self, job: Job) -> Optional[Job]:
        """Mark a job as completed."""
        query = """
            UPDATE jobs SET
                status = 'completed',
                error = NULL,
                locked_until = NULL,
                completed_at = now()
            WHERE id = $1 AND locked_by = $2 AND status = 'processing'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job.id, job.locked_by)
        if row is None:
            logger.warning("job_lease_lost", job_id=str(job.id), worker_id=job.locked_by)
            return None
        logger.info("job_completed", job_id=str(job.id))
        return self._row_to_job(row)

    async def fail_transient(self, job: Job, error: str) -> Optional[Job]:
        """Count a failed attempt; requeue with backoff or fail permanently.

        The attempt increment and the requeue/fail decision happen in one
        statement, so concurrent reapers cannot double count.
        """
        backoff = self._calculate_backoff(job.attempts + 1)
        query = """
            UPDATE jobs SET
                attempts = attempts + 1,
                status = CASE WHEN attempts + 1 < max_attempts
                              THEN 'pending' ELSE 'failed' END,
                run_at = CASE WHEN attempts + 1 < max_attempts
                              THEN now() + make_interval(secs => $3) ELSE run_at END,
                completed_at = CASE WHEN attempts + 1 < max_attempts
                                    THEN NULL ELSE now() END,
                error = $4,
                locked_by = NULL,
                locked_until = NULL
            WHERE id = $1 AND locked_by = $2 AND status = 'processing'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job.id, job.locked_by, float(backoff), error)

        if row is None:
            logger.warning("job_lease_lost", job_id=str(job.id), worker_id=job.locked_by)
            return None

        updated = self._row_to_job(row)
        if updated.status == JobStatus.PENDING:
            logger.info(
                "job_retry_scheduled",
                job_id=str(job.id),
                attempts=updated.attempts,
                backoff=backoff,
            )
        else:
            logger.warning(
                "job_failed",
                job_id=str(job.id),
                attempts=updated.attempts,
                error=error,
            )
        return updated

    async def fail_permanent(self, job: Job, error: str) -> Optional[Job]:
        """Fail a job immediately, without consuming the remaining attempts."""
        query = """
            UPDATE jobs SET
                attempts = attempts + 1,
                status = 'failed',
                error = $3,
                locked_by = NULL,
                locked_until = NULL,
                completed_at = now()
            WHERE id = $1 AND locked_by = $2 AND status = 'processing'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job.id, job.locked_by, error)
        if row is None:
            logger.warning("job_lease_lost", job_id=str(job.id), worker_id=job.locked_by)
            return None
        logger.warning("job_failed_permanently", job_id=str(job.id), error=error)
        return self._row_to_job(row)

    async def get(self, job_id: UUID) -> Optional[Job]:
        """Get a job by ID."""
        query = "SELECT * FROM jobs WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id)
        return self._row_to_job(row) if row else None

    async def reap_stale(self) -> int:
        """Return jobs whose lease expired (crashed worker) to the queue.

        An expired lease counts as a failed attempt.
        """
        query = """
            UPDATE jobs SET
                attempts = attempts + 1,
                status = CASE WHEN attempts + 1 < max_attempts
                              THEN 'pending' ELSE 'failed' END,
                completed_at = CASE WHEN attempts + 1 < max_attempts
                                    THEN NULL ELSE now() END,
                error = 'lease expired',
                locked_by = NULL,
                locked_until = NULL
            WHERE status = 'processing' AND locked_until < now()
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query)
        count = len(rows)
        if count > 0:
            logger.warning("stale_jobs_reaped", count=count)
        return count

    async def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs with filters and pagination.

        Args:
            status: Filter by status (pending, processing, completed, failed)
            job_type: Filter by job type
            limit: Max results
            offset: Pagination offset

        Returns:
            Tuple of (jobs list, total count)
        """
        conditions = []
        params: list[Any] = []
        param_idx = 1

        if status:
            conditions.append(f"status = ${param_idx}")
            params.append(status)
            param_idx += 1

        if job_type:
            conditions.append(f"type = ${param_idx}")
            params.append(job_type)
            param_idx += 1

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        query = f"""
            SELECT * FROM jobs
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """
        params.extend([limit, offset])

        count_query = f"""
            SELECT COUNT(*) as total FROM jobs
            {where_clause}
        """

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
            count_row = await conn.fetchrow(count_query, *params[:-2])

        jobs = [self._row_to_job(row) for row in rows]
        total = count_row["total"] if count_row else 0

        return jobs, total

    def _row_to_job(self, row) -> Job:
        """Convert a database row to a Job model."""
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return Job(
            id=row["id"],
            type=_parse_type(row["type"]),
            status=JobStatus(row["status"]),
            payload=payload or {},
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            run_at=row["run_at"],
            error=row["error"],
            locked_by=row["locked_by"],
            locked_until=row["locked_until"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )


def _parse_type(value: str):
    """Map a stored type to JobType; unknown types stay as the raw string."""
    try:
        return JobType(value)
    except ValueError:
        return value
