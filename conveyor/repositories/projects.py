"""Repository for projects."""

from typing import Optional
from uuid import UUID

from conveyor.models import Project


class ProjectRepository:
    """Repository for project rows."""

    def __init__(self, pool):
        self._pool = pool

    async def get(self, project_id: UUID) -> Optional[Project]:
        query = "SELECT * FROM projects WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, project_id)
        if not row:
            return None
        return Project(
            id=row["id"],
            name=row["name"],
            infra_tenant_id=row["infra_tenant_id"],
            infra_network_id=row["infra_network_id"],
        )
