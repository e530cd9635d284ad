"""Repository for managed databases."""

from typing import Any, Optional
from uuid import UUID

import structlog

from conveyor.models import Database, DatabaseStatus

logger = structlog.get_logger(__name__)

_PROVIDER_ID_FIELDS = {"instance_id", "security_group_id", "volume_id", "dns_record_id"}

_UPDATABLE_FIELDS = _PROVIDER_ID_FIELDS | {
    "internal_hostname",
    "internal_ip",
    "port",
    "username",
    "password",
    "database_name",
    "connection_url",
    "error_message",
}


class DatabaseRepository:
    """Repository for databases rows.

    Provider identifiers are written as provisioning steps succeed and are
    only cleared through ``clear_provider_ids``.
    """

    def __init__(self, pool):
        self._pool = pool

    async def get(self, database_id: UUID) -> Optional[Database]:
        query = "SELECT * FROM databases WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, database_id)
        return self._row_to_database(row) if row else None

    async def list_by_project(self, project_id: UUID) -> list[Database]:
        query = "SELECT * FROM databases WHERE project_id = $1 ORDER BY created_at"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, project_id)
        return [self._row_to_database(row) for row in rows]

    async def update(
        self,
        database_id: UUID,
        status: Optional[DatabaseStatus] = None,
        **fields: Any,
    ) -> None:
        """Write provisioning facts and optionally a new status."""
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot set database fields: {sorted(unknown)}")

        sets = []
        params: list[Any] = [database_id]
        if status is not None:
            params.append(status.value)
            sets.append(f"status = ${len(params)}")
        for name, value in fields.items():
            params.append(value)
            sets.append(f"{name} = ${len(params)}")
        if not sets:
            return

        query = f"UPDATE databases SET {', '.join(sets)} WHERE id = $1"
        async with self._pool.acquire() as conn:
            await conn.execute(query, *params)

    async def clear_provider_ids(self, database_id: UUID, names: list[str]) -> None:
        unknown = set(names) - _PROVIDER_ID_FIELDS
        if unknown:
            raise ValueError(f"Not provider id fields: {sorted(unknown)}")
        if not names:
            return
        sets = ", ".join(f"{name} = NULL" for name in sorted(names))
        query = f"UPDATE databases SET {sets} WHERE id = $1"
        async with self._pool.acquire() as conn:
            await conn.execute(query, database_id)
        logger.info(
            "database_provider_ids_cleared",
            database_id=str(database_id),
            fields=sorted(names),
        )

    def _row_to_database(self, row) -> Database:
        return Database(
            id=row["id"],
            project_id=row["project_id"],
            name=row["name"],
            engine=row["engine"],
            version=row["version"],
            size=row["size"],
            status=row["status"],
            service_id=row["service_id"],
            volume_id=row["volume_id"],
            volume_size_mb=row["volume_size_mb"],
            internal_hostname=row["internal_hostname"],
            internal_ip=row["internal_ip"],
            port=row["port"],
            username=row["username"],
            password=row["password"],
            database_name=row["database_name"],
            connection_url=row["connection_url"],
            instance_id=row["instance_id"],
            security_group_id=row["security_group_id"],
            dns_record_id=row["dns_record_id"],
            error_message=row["error_message"],
        )
