"""Repository for git sources and the connections holding their credentials."""

from typing import Optional
from uuid import UUID

from conveyor.models import GitConnection, GitSource


class GitSourceRepository:
    """Repository for git_sources and git_connections rows."""

    def __init__(self, pool):
        self._pool = pool

    async def get_for_service(self, service_id: UUID) -> Optional[GitSource]:
        query = "SELECT * FROM git_sources WHERE service_id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, service_id)
        if not row:
            return None
        return GitSource(
            id=row["id"],
            service_id=row["service_id"],
            git_connection_id=row["git_connection_id"],
            provider=row["provider"],
            repo_owner=row["repo_owner"],
            repo_name=row["repo_name"],
            branch=row["branch"],
            root_dir=row["root_dir"],
            webhook_id=row["webhook_id"],
        )

    async def get_connection(self, connection_id: UUID) -> Optional[GitConnection]:
        query = "SELECT * FROM git_connections WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, connection_id)
        if not row:
            return None
        return GitConnection(
            id=row["id"],
            provider=row["provider"],
            access_token=row["access_token"],
        )

    async def clear_webhook(self, source_id: UUID) -> None:
        query = "UPDATE git_sources SET webhook_id = NULL WHERE id = $1"
        async with self._pool.acquire() as conn:
            await conn.execute(query, source_id)
