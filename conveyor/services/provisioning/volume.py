"""Standalone volumes: provision, attach, detach, resize, delete.

A volume lives on one of two backends, recorded on the row once it is
provisioned: a block volume from the infrastructure API attached to a
compute instance, or a persistent volume claim mounted into a service's
workload.
"""

from typing import Optional
from uuid import UUID

import structlog

from conveyor.errors import PermanentJobError
from conveyor.models import Volume, VolumeBackend, VolumeStatus
from conveyor.repositories.databases import DatabaseRepository
from conveyor.repositories.projects import ProjectRepository
from conveyor.repositories.services import ServiceRepository
from conveyor.repositories.volumes import VolumeRepository
from conveyor.services.infra import InfraClients
from conveyor.services.infra.base import CreateVolumeRequest, InfraClient
from conveyor.services.provisioning.claims import ClaimVolumeService
from conveyor.services.provisioning.database import volume_size_gb

logger = structlog.get_logger(__name__)

# /dev/vdb is taken by a database's own data volume
ATTACH_DEVICE = "/dev/vdc"


class VolumeService:
    def __init__(
        self,
        volumes: VolumeRepository,
        services: ServiceRepository,
        databases: DatabaseRepository,
        projects: ProjectRepository,
        infra: InfraClients,
        claims: Optional[ClaimVolumeService] = None,
        backend: str = VolumeBackend.INFRA.value,
    ):
        self.volumes = volumes
        self.services = services
        self.databases = databases
        self.projects = projects
        self.infra = infra
        self.claims = claims
        self.backend = VolumeBackend(backend)

    async def _get(self, volume_id: UUID) -> Volume:
        volume = await self.volumes.get(volume_id)
        if volume is None:
            raise PermanentJobError(f"Volume {volume_id} not found")
        return volume

    async def _infra_for(self, volume: Volume) -> InfraClient:
        return self.infra.for_project(await self.projects.get(volume.project_id))

    def _claims_for(self, volume: Volume) -> Optional[ClaimVolumeService]:
        """The claim service when the volume is claim-backed, else None."""
        if volume.provider_volume_id:
            backend = VolumeBackend(volume.backend)
        else:
            backend = self.backend
        if backend != VolumeBackend.KUBERNETES:
            return None
        if self.claims is None:
            raise PermanentJobError("Claim-backed volumes are not configured")
        return self.claims

    async def provision(self, volume_id: UUID) -> Volume:
        """Allocate the backing volume, persist its id, mark available."""
        volume = await self._get(volume_id)
        if volume.provider_volume_id:
            return volume
        if volume.status == VolumeStatus.DELETED.value:
            raise PermanentJobError(f"Volume {volume_id} has been deleted")

        claims = self._claims_for(volume)
        if claims is not None:
            return await claims.provision(volume)

        try:
            infra = await self._infra_for(volume)
            created = await infra.create_volume(
                CreateVolumeRequest(
                    name=volume.name,
                    size_gb=volume_size_gb(volume.size_mb),
                    volume_type=volume.volume_type,
                )
            )
            await self.volumes.set_provider_id(volume_id, created.id)
        except Exception as e:
            await self.volumes.set_status(volume_id, VolumeStatus.ERROR, str(e))
            logger.error("volume_provision_failed", volume_id=str(volume_id), error=str(e))
            raise

        logger.info("volume_provisioned", volume_id=str(volume_id), provider_volume_id=created.id)
        return await self.volumes.get(volume_id)

    async def resize(self, volume_id: UUID, size_mb: int) -> Volume:
        """Grow a provisioned volume; only claim-backed volumes can be resized."""
        volume = await self._get(volume_id)
        if not volume.provider_volume_id:
            raise PermanentJobError(f"Volume {volume_id} is not provisioned")
        claims = self._claims_for(volume)
        if claims is None:
            raise PermanentJobError(f"Volume {volume_id} does not support resizing")
        return await claims.resize(volume, size_mb)

    async def attach(
        self,
        volume_id: UUID,
        service_id: Optional[UUID] = None,
        database_id: Optional[UUID] = None,
    ) -> Volume:
        """Attach to exactly one service or database.

        The store records the attachment first so two concurrent attach jobs
        cannot both win; the row is released again if the infra call fails.
        """
        volume = await self._get(volume_id)
        if not volume.provider_volume_id:
            raise PermanentJobError(f"Volume {volume_id} is not provisioned")
        if (service_id is not None and volume.attached_to_service_id == service_id) or (
            database_id is not None and volume.attached_to_database_id == database_id
        ):
            return volume
        if volume.is_attached:
            raise PermanentJobError(f"Volume {volume_id} is already attached")

        claims = self._claims_for(volume)
        if claims is not None:
            return await claims.attach(volume, service_id=service_id, database_id=database_id)

        instance_id = await self._instance_for(service_id, database_id)
        infra = await self._infra_for(volume)

        attached = await self.volumes.attach(volume_id, service_id=service_id, database_id=database_id)
        if attached is None:
            raise PermanentJobError(f"Volume {volume_id} is already attached")
        try:
            await infra.attach_volume(volume.provider_volume_id, instance_id, ATTACH_DEVICE)
        except Exception:
            await self.volumes.detach(volume_id)
            raise

        logger.info(
            "volume_attached",
            volume_id=str(volume_id),
            instance_id=instance_id,
            service_id=str(service_id) if service_id else None,
            database_id=str(database_id) if database_id else None,
        )
        return attached

    async def _instance_for(self, service_id: Optional[UUID], database_id: Optional[UUID]) -> str:
        if service_id is not None:
            service = await self.services.get(service_id)
            if service is None:
                raise PermanentJobError(f"Service {service_id} not found")
            instance_id = service.instance_id
        else:
            database = await self.databases.get(database_id)
            if database is None:
                raise PermanentJobError(f"Database {database_id} not found")
            instance_id = database.instance_id
        if not instance_id:
            raise PermanentJobError("Attach target has no compute instance")
        return instance_id

    async def detach(self, volume_id: UUID) -> None:
        volume = await self._get(volume_id)
        if not volume.is_attached:
            return
        claims = self._claims_for(volume)
        if claims is not None:
            await claims.detach(volume)
            return
        if volume.provider_volume_id:
            infra = await self._infra_for(volume)
            await infra.detach_volume(volume.provider_volume_id)
        await self.volumes.detach(volume_id)
        logger.info("volume_detached", volume_id=str(volume_id))

    async def delete(self, volume_id: UUID) -> None:
        """Release the backing volume, then delete the row."""
        volume = await self.volumes.get(volume_id)
        if volume is None:
            return
        if volume.provider_volume_id:
            claims = self._claims_for(volume)
            if claims is not None:
                await claims.release(volume)
            else:
                infra = await self._infra_for(volume)
                if volume.is_attached:
                    await infra.detach_volume(volume.provider_volume_id)
                await infra.delete_volume(volume.provider_volume_id)
        await self.volumes.delete(volume_id)
        logger.info("volume_deleted", volume_id=str(volume_id))
