"""Repository for custom domains attached to services."""

from uuid import UUID

from conveyor.models import CustomDomain


class CustomDomainRepository:
    """Repository for custom_domains rows."""

    def __init__(self, pool):
        self._pool = pool

    async def list_active(self, service_id: UUID) -> list[CustomDomain]:
        query = """
            SELECT * FROM custom_domains
            WHERE service_id = $1 AND status = 'active'
            ORDER BY domain
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, service_id)
        return [
            CustomDomain(
                id=row["id"],
                service_id=row["service_id"],
                domain=row["domain"],
                status=row["status"],
            )
            for row in rows
        ]
