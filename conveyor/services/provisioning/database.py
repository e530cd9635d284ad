"""Managed database provisioning on the infrastructure API.

Steps run in order: volume, security group, instance, wait for active,
attach volume, credentials, DNS, connection URL, telemetry, active.

Every allocation is persisted on the row as soon as it succeeds and is
skipped on re-execution, so a retried job picks up where the last attempt
stopped. On a hard failure the allocations made by the current attempt are
undone in reverse order and the row is set to ``error``.
"""

import secrets
import string
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog

from conveyor.config import Settings
from conveyor.errors import PermanentJobError
from conveyor.models import Database, DatabaseStatus, Volume
from conveyor.repositories.databases import DatabaseRepository
from conveyor.repositories.projects import ProjectRepository
from conveyor.repositories.volumes import VolumeRepository
from conveyor.services.infra import InfraClients
from conveyor.services.infra.base import (
    CreateDNSRecordRequest,
    CreateInstanceRequest,
    CreateSecurityGroupRequest,
    CreateVolumeRequest,
    InfraClient,
    Instance,
    SecurityGroupRule,
)
from conveyor.services.telemetry import PrometheusTargetManager, cloud_init_script

logger = structlog.get_logger(__name__)

DATA_DEVICE = "/dev/vdb"
INTERNAL_CIDR = "10.0.0.0/8"

ENGINE_PORTS = {
    "postgresql": 5432,
    "mysql": 3306,
    "redis": 6379,
}

DEFAULT_VERSIONS = {
    "postgresql": "14",
    "mysql": "8.0",
    "redis": "7",
}

USERNAME_PREFIXES = {
    "postgresql": "pg",
    "mysql": "mysql",
    "redis": "redis",
}

FLAVORS = ("small", "medium", "large")

PASSWORD_ALPHABET = string.ascii_letters + string.digits


def volume_size_gb(size_mb: int) -> int:
    """Round a MB request up to whole GB, at least 1."""
    return max(1, (size_mb + 1023) // 1024)


def flavor_for(size: Optional[str]) -> str:
    return size if size in FLAVORS else "small"


def image_for(engine: str, version: Optional[str]) -> str:
    return f"{engine}-{version or DEFAULT_VERSIONS[engine]}"


def generate_username(engine: str) -> str:
    return f"{USERNAME_PREFIXES.get(engine, 'db')}{secrets.randbelow(10000)}"


def generate_password(length: int = 16) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def database_name_for(database_id: UUID) -> str:
    return f"db_{str(database_id)[:8]}"


def internal_hostname(database_id: UUID, suffix: str) -> str:
    return f"db{str(database_id)[:8]}.{suffix}"


def connection_url(
    engine: str,
    username: str,
    password: str,
    host: str,
    port: int,
    database_name: str,
) -> str:
    if engine == "redis":
        return f"redis://{username}:{password}@{host}:{port}"
    return f"{engine}://{username}:{password}@{host}:{port}/{database_name}"


UndoFn = Callable[[], Awaitable[None]]


class UndoStack:
    """Compensating actions, run newest first."""

    def __init__(self):
        self._steps: list[tuple[str, UndoFn]] = []

    def push(self, name: str, fn: UndoFn) -> None:
        self._steps.append((name, fn))

    def __len__(self) -> int:
        return len(self._steps)

    async def unwind(self, **log_context) -> list[str]:
        """Run every undo step; returns the names of the ones that failed."""
        failed = []
        while self._steps:
            name, fn = self._steps.pop()
            try:
                await fn()
                logger.info("provisioning_undo", step=name, **log_context)
            except Exception as e:
                failed.append(name)
                logger.warning("provisioning_undo_failed", step=name, error=str(e), **log_context)
        return failed


class DatabaseProvisioner:
    """Provisions a database VM with its data volume, network policy and DNS name."""

    def __init__(
        self,
        databases: DatabaseRepository,
        volumes: VolumeRepository,
        projects: ProjectRepository,
        infra: InfraClients,
        telemetry: PrometheusTargetManager,
        settings: Settings,
    ):
        self.databases = databases
        self.volumes = volumes
        self.projects = projects
        self.infra = infra
        self.telemetry = telemetry
        self.settings = settings

    async def provision(self, database_id: UUID) -> Database:
        db = await self.databases.get(database_id)
        if db is None:
            raise PermanentJobError(f"Database {database_id} not found")
        if db.status == DatabaseStatus.ACTIVE.value:
            logger.info("database_already_active", database_id=str(database_id))
            return db
        if db.status == DatabaseStatus.DELETED.value:
            raise PermanentJobError(f"Database {database_id} has been deleted")
        if db.engine not in ENGINE_PORTS:
            raise PermanentJobError(f"Unsupported database engine: {db.engine}")

        log = logger.bind(database_id=str(database_id), engine=db.engine)
        project = await self.projects.get(db.project_id)
        network_id = (project.infra_network_id if project else None) or self.settings.infra_network_id
        infra = self.infra.for_project(project)

        await self.databases.update(
            database_id, status=DatabaseStatus.PROVISIONING, error_message=None
        )
        log.info("database_provisioning_started")

        undo = UndoStack()
        try:
            volume = await self._ensure_volume(infra, db, undo)
            security_group_id = await self._ensure_security_group(infra, db, undo)
            instance_id = await self._ensure_instance(
                infra, db, security_group_id, network_id, undo
            )
            instance = await infra.wait_for_instance_status(
                instance_id,
                "active",
                timeout=self.settings.instance_ready_timeout_s,
                interval=self.settings.instance_poll_interval_s,
            )
            await self._ensure_attached(infra, db, volume, instance, undo)

            username = db.username or generate_username(db.engine)
            password = db.password or generate_password(16)
            database_name = db.database_name or database_name_for(db.id)
            hostname = internal_hostname(db.id, self.settings.internal_dns_suffix)
            port = ENGINE_PORTS[db.engine]

            await self._ensure_dns(infra, db, hostname, instance, undo)

            await self.databases.update(
                database_id,
                status=DatabaseStatus.ACTIVE,
                internal_hostname=hostname,
                internal_ip=instance.ip_address,
                port=port,
                username=username,
                password=password,
                database_name=database_name,
                connection_url=connection_url(
                    db.engine, username, password, hostname, port, database_name
                ),
                error_message=None,
            )
        except Exception as e:
            failed = await undo.unwind(database_id=str(database_id))
            await self.databases.update(
                database_id, status=DatabaseStatus.ERROR, error_message=str(e)
            )
            log.error("database_provisioning_failed", error=str(e), undo_failed=failed)
            raise

        self._register_telemetry(db, instance)
        log.info("database_provisioned", instance_id=instance.id, hostname=hostname)
        return await self.databases.get(database_id)

    async def _ensure_volume(self, infra: InfraClient, db: Database, undo: UndoStack) -> Volume:
        short = str(db.id)[:8]
        volume = await self.volumes.get(db.volume_id) if db.volume_id else None
        created_row = False
        if volume is None:
            volume = await self.volumes.create(db.project_id, f"db-{short}-data", db.volume_size_mb)
            await self.databases.update(db.id, volume_id=volume.id)
            created_row = True

        if volume.provider_volume_id:
            return volume

        infra_volume = await infra.create_volume(
            CreateVolumeRequest(
                name=f"db-{short}",
                size_gb=volume_size_gb(db.volume_size_mb),
                volume_type="ssd",
            )
        )
        await self.volumes.set_provider_id(volume.id, infra_volume.id)
        volume.provider_volume_id = infra_volume.id

        async def release() -> None:
            await infra.delete_volume(infra_volume.id)
            if created_row:
                await self.databases.clear_provider_ids(db.id, ["volume_id"])
                await self.volumes.delete(volume.id)
            else:
                await self.volumes.clear_provider_id(volume.id)

        undo.push("volume", release)
        return volume

    async def _ensure_security_group(
        self, infra: InfraClient, db: Database, undo: UndoStack
    ) -> str:
        if db.security_group_id:
            return db.security_group_id

        short = str(db.id)[:8]
        port = ENGINE_PORTS[db.engine]
        group = await infra.create_security_group(
            CreateSecurityGroupRequest(
                name=f"db-{short}-sg",
                description=f"Security group for database {short}",
                rules=[
                    SecurityGroupRule(
                        direction="ingress",
                        protocol="tcp",
                        port_min=port,
                        port_max=port,
                        remote_ip=INTERNAL_CIDR,
                    )
                ],
            )
        )
        await self.databases.update(db.id, security_group_id=group.id)

        async def release() -> None:
            await infra.delete_security_group(group.id)
            await self.databases.clear_provider_ids(db.id, ["security_group_id"])

        undo.push("security_group", release)
        return group.id

    async def _ensure_instance(
        self,
        infra: InfraClient,
        db: Database,
        security_group_id: str,
        network_id: Optional[str],
        undo: UndoStack,
    ) -> str:
        if db.instance_id:
            return db.instance_id

        instance = await infra.create_instance(
            CreateInstanceRequest(
                name=f"db-{str(db.id)[:8]}",
                flavor_id=flavor_for(db.size),
                image_id=image_for(db.engine, db.version),
                network_id=network_id,
                security_groups=[security_group_id],
                user_data=cloud_init_script(),
                metadata={"database_id": str(db.id), "engine": db.engine},
            )
        )
        await self.databases.update(db.id, instance_id=instance.id)

        async def release() -> None:
            await infra.delete_instance(instance.id)
            await self.databases.clear_provider_ids(db.id, ["instance_id"])

        undo.push("instance", release)
        return instance.id

    async def _ensure_attached(
        self,
        infra: InfraClient,
        db: Database,
        volume: Volume,
        instance: Instance,
        undo: UndoStack,
    ) -> None:
        if volume.attached_to_database_id == db.id:
            return
        await infra.attach_volume(volume.provider_volume_id, instance.id, DATA_DEVICE)
        await self.volumes.attach(volume.id, database_id=db.id)

        async def release() -> None:
            await infra.detach_volume(volume.provider_volume_id)
            await self.volumes.detach(volume.id)

        undo.push("attachment", release)

    async def _ensure_dns(
        self,
        infra: InfraClient,
        db: Database,
        hostname: str,
        instance: Instance,
        undo: UndoStack,
    ) -> None:
        if db.dns_record_id or not instance.ip_address:
            return
        try:
            record = await infra.create_dns_record(
                CreateDNSRecordRequest(
                    zone_id=self.settings.dns_zone_id,
                    name=hostname,
                    type="A",
                    records=[instance.ip_address],
                    ttl=300,
                )
            )
        except Exception as e:
            logger.warning(
                "database_dns_failed",
                database_id=str(db.id),
                hostname=hostname,
                error=str(e),
            )
            return
        await self.databases.update(db.id, dns_record_id=record.id)

        async def release() -> None:
            await infra.delete_dns_record(record.id)
            await self.databases.clear_provider_ids(db.id, ["dns_record_id"])

        undo.push("dns_record", release)

    def _register_telemetry(self, db: Database, instance: Instance) -> None:
        if not instance.ip_address:
            return
        try:
            self.telemetry.register_database(
                instance.ip_address,
                instance.id,
                str(db.id),
                str(db.project_id),
                db.name,
                db.engine,
            )
        except OSError as e:
            logger.warning("database_telemetry_failed", database_id=str(db.id), error=str(e))
