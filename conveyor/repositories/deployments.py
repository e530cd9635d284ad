"""Repository for deployments and their append-only logs."""

import json
from typing import Any, Optional
from uuid import UUID

import structlog

from conveyor.errors import DeploymentCancelled, InvalidTransitionError
from conveyor.models import (
    Deployment,
    DeploymentLog,
    DeploymentStatus,
    LogLevel,
    LogPhase,
    allowed_predecessors,
)

logger = structlog.get_logger(__name__)

# Columns a status transition may write alongside the status itself
_TRANSITION_FIELDS = {
    "image_tag",
    "build_duration",
    "deploy_duration",
    "error_message",
    "commit_sha",
    "started_at",
    "finished_at",
}


class DeploymentRepository:
    """Repository for deployment rows.

    Status changes go through ``transition``, which only updates the row when
    its current status is a legal predecessor of the target. A concurrent
    cancel therefore wins over any pipeline write that follows it.
    """

    def __init__(self, pool):
        self._pool = pool

    async def get(self, deployment_id: UUID) -> Optional[Deployment]:
        query = "SELECT * FROM deployments WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, deployment_id)
        return self._row_to_deployment(row) if row else None

    async def get_status(self, deployment_id: UUID) -> Optional[DeploymentStatus]:
        query = "SELECT status FROM deployments WHERE id = $1"
        async with self._pool.acquire() as conn:
            status = await conn.fetchval(query, deployment_id)
        return DeploymentStatus(status) if status else None

    async def create(
        self,
        service_id: UUID,
        triggered_by: str,
        commit_sha: Optional[str] = None,
        commit_message: Optional[str] = None,
        commit_author: Optional[str] = None,
        image_tag: Optional[str] = None,
        rollback_from_id: Optional[UUID] = None,
    ) -> Deployment:
        """Insert a new queued deployment."""
        query = """
            INSERT INTO deployments (service_id, status, triggered_by, commit_sha,
                                     commit_message, commit_author, image_tag,
                                     rollback_from_id)
            VALUES ($1, 'queued', $2, $3, $4, $5, $6, $7)
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                service_id,
                triggered_by,
                commit_sha,
                commit_message,
                commit_author,
                image_tag,
                rollback_from_id,
            )
        logger.info(
            "deployment_created",
            deployment_id=str(row["id"]),
            service_id=str(service_id),
            triggered_by=triggered_by,
        )
        return self._row_to_deployment(row)

    async def transition(
        self,
        deployment_id: UUID,
        target: DeploymentStatus,
        **fields: Any,
    ) -> Deployment:
        """Move a deployment to ``target``, writing ``fields`` in the same update.

        Raises:
            DeploymentCancelled: the row was cancelled in the meantime
            InvalidTransitionError: the move is not forward from the current status
        """
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot set deployment fields: {sorted(unknown)}")

        sets = ["status = $2"]
        params: list[Any] = [deployment_id, target.value]
        for name, value in fields.items():
            params.append(value)
            sets.append(f"{name} = ${len(params)}")
        params.append([s.value for s in allowed_predecessors(target)])

        query = f"""
            UPDATE deployments SET {", ".join(sets)}
            WHERE id = $1 AND status = ANY(${len(params)})
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)

        if row is None:
            current = await self.get_status(deployment_id)
            if current == DeploymentStatus.CANCELLED:
                raise DeploymentCancelled(deployment_id)
            raise InvalidTransitionError(
                f"Deployment {deployment_id} cannot move from "
                f"{current.value if current else 'missing'} to {target.value}"
            )

        logger.info(
            "deployment_status_changed",
            deployment_id=str(deployment_id),
            status=target.value,
        )
        return self._row_to_deployment(row)

    async def mark_failed(
        self,
        deployment_id: UUID,
        error_message: str,
        **fields: Any,
    ) -> Optional[Deployment]:
        """Fail a live deployment. A terminal deployment is left untouched."""
        try:
            return await self.transition(
                deployment_id,
                DeploymentStatus.FAILED,
                error_message=error_message,
                **fields,
            )
        except (DeploymentCancelled, InvalidTransitionError) as e:
            logger.info(
                "deployment_fail_skipped",
                deployment_id=str(deployment_id),
                reason=str(e),
            )
            return None

    async def reopen(self, deployment_id: UUID) -> bool:
        """Put a deployment left failed or mid-flight by an earlier job attempt
        back to queued so the retry can drive it again.

        Success and cancelled deployments are never reopened.
        """
        query = """
            UPDATE deployments SET
                status = 'queued',
                error_message = NULL,
                finished_at = NULL
            WHERE id = $1
              AND status IN ('failed', 'building', 'pushing', 'deploying')
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, deployment_id)
        if row is not None:
            logger.info("deployment_reopened", deployment_id=str(deployment_id))
        return row is not None

    async def set_commit_sha(self, deployment_id: UUID, commit_sha: str) -> None:
        query = "UPDATE deployments SET commit_sha = $2 WHERE id = $1 AND commit_sha IS NULL"
        async with self._pool.acquire() as conn:
            await conn.execute(query, deployment_id, commit_sha)

    async def add_log(self, entry: DeploymentLog) -> DeploymentLog:
        """Append one structured log entry."""
        query = """
            INSERT INTO deployment_logs (deployment_id, timestamp, phase, level,
                                         message, metadata)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb)
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            entry.id = await conn.fetchval(
                query,
                entry.deployment_id,
                entry.timestamp,
                entry.phase.value,
                entry.level.value,
                entry.message,
                json.dumps(entry.metadata, default=str),
            )
        return entry

    async def list_logs(self, deployment_id: UUID) -> list[DeploymentLog]:
        query = """
            SELECT * FROM deployment_logs
            WHERE deployment_id = $1
            ORDER BY timestamp, id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, deployment_id)
        return [
            DeploymentLog(
                id=row["id"],
                deployment_id=row["deployment_id"],
                timestamp=row["timestamp"],
                phase=LogPhase(row["phase"]),
                level=LogLevel(row["level"]),
                message=row["message"],
                metadata=_json(row["metadata"]),
            )
            for row in rows
        ]

    def _row_to_deployment(self, row) -> Deployment:
        return Deployment(
            id=row["id"],
            service_id=row["service_id"],
            status=DeploymentStatus(row["status"]),
            commit_sha=row["commit_sha"],
            commit_message=row["commit_message"],
            commit_author=row["commit_author"],
            image_tag=row["image_tag"],
            build_duration=row["build_duration"],
            deploy_duration=row["deploy_duration"],
            error_message=row["error_message"],
            triggered_by=row["triggered_by"],
            rollback_from_id=row["rollback_from_id"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            created_at=row["created_at"],
        )


def _json(value) -> dict[str, Any]:
    if isinstance(value, str):
        return json.loads(value)
    return value or {}
