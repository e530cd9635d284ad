"""Repository for services."""

from typing import Optional
from uuid import UUID

import structlog

from conveyor.models import Service, ServiceStatus

logger = structlog.get_logger(__name__)

# Provider-side identifiers that only cleanup may clear
_PROVIDER_ID_FIELDS = {
    "instance_id",
    "container_id",
    "floating_ip_id",
    "floating_ip",
    "security_group_id",
    "dns_record_id",
}


class ServiceRepository:
    """Repository for service rows."""

    def __init__(self, pool):
        self._pool = pool

    async def get(self, service_id: UUID) -> Optional[Service]:
        query = "SELECT * FROM services WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, service_id)
        return self._row_to_service(row) if row else None

    async def list_by_project(self, project_id: UUID) -> list[Service]:
        query = "SELECT * FROM services WHERE project_id = $1 ORDER BY created_at"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, project_id)
        return [self._row_to_service(row) for row in rows]

    async def set_current_image_tag(self, service_id: UUID, image_tag: str) -> None:
        query = """
            UPDATE services SET current_image_tag = $2, updated_at = now()
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, service_id, image_tag)

    async def set_status(self, service_id: UUID, status: ServiceStatus) -> None:
        query = "UPDATE services SET status = $2, updated_at = now() WHERE id = $1"
        async with self._pool.acquire() as conn:
            await conn.execute(query, service_id, status.value)

    async def mark_running(self, service_id: UUID, generated_url: str) -> None:
        query = """
            UPDATE services SET
                status = 'running',
                generated_url = $2,
                updated_at = now()
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, service_id, generated_url)
        logger.info("service_running", service_id=str(service_id), url=generated_url)

    async def clear_provider_ids(self, service_id: UUID, names: list[str]) -> None:
        """Forget provider identifiers whose resources cleanup removed."""
        unknown = set(names) - _PROVIDER_ID_FIELDS
        if unknown:
            raise ValueError(f"Not provider id fields: {sorted(unknown)}")
        if not names:
            return
        sets = ", ".join(f"{name} = NULL" for name in sorted(names))
        query = f"""
            UPDATE services SET {sets}, status = 'stopped', updated_at = now()
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, service_id)

    def _row_to_service(self, row) -> Service:
        return Service(
            id=row["id"],
            project_id=row["project_id"],
            name=row["name"],
            status=row["status"],
            port=row["port"],
            environment=row["environment"],
            instance_id=row["instance_id"],
            container_id=row["container_id"],
            floating_ip_id=row["floating_ip_id"],
            floating_ip=row["floating_ip"],
            security_group_id=row["security_group_id"],
            dns_record_id=row["dns_record_id"],
            subdomain=row["subdomain"],
            generated_url=row["generated_url"],
            current_image_tag=row["current_image_tag"],
        )
