"""Repository for block-storage volumes."""

from typing import Optional
from uuid import UUID

import structlog

from conveyor.models import Volume, VolumeBackend, VolumeStatus

logger = structlog.get_logger(__name__)


class VolumeRepository:
    """Repository for volumes rows.

    Attachment is exclusive: ``attach`` only succeeds on a volume with no
    current service or database attachment.
    """

    def __init__(self, pool):
        self._pool = pool

    async def get(self, volume_id: UUID) -> Optional[Volume]:
        query = "SELECT * FROM volumes WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, volume_id)
        return self._row_to_volume(row) if row else None

    async def list_by_project(self, project_id: UUID) -> list[Volume]:
        query = "SELECT * FROM volumes WHERE project_id = $1 ORDER BY created_at"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, project_id)
        return [self._row_to_volume(row) for row in rows]

    async def list_for_service(self, service_id: UUID) -> list[Volume]:
        query = "SELECT * FROM volumes WHERE attached_to_service_id = $1"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, service_id)
        return [self._row_to_volume(row) for row in rows]

    async def create(
        self,
        project_id: UUID,
        name: str,
        size_mb: int,
        volume_type: str = "ssd",
    ) -> Volume:
        """Insert a volume row in provisioning state."""
        query = """
            INSERT INTO volumes (project_id, name, size_mb, volume_type, status)
            VALUES ($1, $2, $3, $4, 'provisioning')
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, project_id, name, size_mb, volume_type)
        return self._row_to_volume(row)

    async def set_provider_id(
        self,
        volume_id: UUID,
        provider_volume_id: str,
        backend: VolumeBackend = VolumeBackend.INFRA,
    ) -> None:
        query = """
            UPDATE volumes SET provider_volume_id = $2, backend = $3,
                               status = 'available', error_message = NULL
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, volume_id, provider_volume_id, backend.value)

    async def set_status(
        self,
        volume_id: UUID,
        status: VolumeStatus,
        error_message: Optional[str] = None,
    ) -> None:
        query = "UPDATE volumes SET status = $2, error_message = $3 WHERE id = $1"
        async with self._pool.acquire() as conn:
            await conn.execute(query, volume_id, status.value, error_message)

    async def attach(
        self,
        volume_id: UUID,
        service_id: Optional[UUID] = None,
        database_id: Optional[UUID] = None,
    ) -> Optional[Volume]:
        """Record an attachment. Returns None if the volume is already attached."""
        query = """
            UPDATE volumes SET
                status = 'attached',
                attached_to_service_id = $2,
                attached_to_database_id = $3
            WHERE id = $1
              AND attached_to_service_id IS NULL
              AND attached_to_database_id IS NULL
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, volume_id, service_id, database_id)
        return self._row_to_volume(row) if row else None

    async def detach(self, volume_id: UUID) -> None:
        query = """
            UPDATE volumes SET
                status = 'available',
                attached_to_service_id = NULL,
                attached_to_database_id = NULL
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, volume_id)

    async def set_size(self, volume_id: UUID, size_mb: int) -> None:
        query = "UPDATE volumes SET size_mb = $2 WHERE id = $1"
        async with self._pool.acquire() as conn:
            await conn.execute(query, volume_id, size_mb)

    async def clear_provider_id(self, volume_id: UUID) -> None:
        query = """
            UPDATE volumes SET provider_volume_id = NULL, status = 'deleted'
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, volume_id)

    async def delete(self, volume_id: UUID) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute("DELETE FROM volumes WHERE id = $1", volume_id)
        logger.info("volume_row_deleted", volume_id=str(volume_id))

    def _row_to_volume(self, row) -> Volume:
        return Volume(
            id=row["id"],
            project_id=row["project_id"],
            name=row["name"],
            size_mb=row["size_mb"],
            mount_path=row["mount_path"],
            status=row["status"],
            volume_type=row["volume_type"],
            backend=row["backend"],
            provider_volume_id=row["provider_volume_id"],
            attached_to_service_id=row["attached_to_service_id"],
            attached_to_database_id=row["attached_to_database_id"],
            error_message=row["error_message"],
        )
