"""Repository for service environment variables."""

from uuid import UUID


class EnvVarRepository:
    """Repository for env_vars rows."""

    def __init__(self, pool):
        self._pool = pool

    async def get_map(self, service_id: UUID) -> dict[str, str]:
        """All variables for a service as a key -> value map."""
        query = "SELECT key, value FROM env_vars WHERE service_id = $1 ORDER BY key"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, service_id)
        return {row["key"]: row["value"] for row in rows}
