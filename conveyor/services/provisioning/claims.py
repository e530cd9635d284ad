"""Volumes backed by persistent volume claims in the project namespace."""

import asyncio
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog

from conveyor.errors import DeadlineExceeded, PermanentJobError
from conveyor.models import Volume, VolumeBackend, VolumeStatus
from conveyor.repositories.volumes import VolumeRepository
from conveyor.services.orchestrator.base import (
    LABEL_PREFIX,
    ClaimSpec,
    ClaimStatus,
    Orchestrator,
    claim_name,
    namespace_name,
)

logger = structlog.get_logger(__name__)


def claim_labels(volume: Volume) -> dict[str, str]:
    return {
        f"{LABEL_PREFIX}/volume-id": str(volume.id),
        f"{LABEL_PREFIX}/project-id": str(volume.project_id),
        "app.kubernetes.io/managed-by": "conveyor",
    }


class ClaimVolumeService:
    """Create, bind, resize and release claims.

    Attaching a claim only records the owning service on the row; the next
    deploy of that service mounts it.
    """

    def __init__(
        self,
        volumes: VolumeRepository,
        orchestrator: Orchestrator,
        settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.volumes = volumes
        self.orchestrator = orchestrator
        self.settings = settings
        self._sleep = sleep

    def _namespace(self, volume: Volume) -> str:
        return namespace_name(self.settings.namespace_prefix, volume.project_id)

    async def provision(self, volume: Volume) -> Volume:
        namespace = self._namespace(volume)
        name = claim_name(volume.id)
        try:
            await self.orchestrator.ensure_namespace(namespace)
            await self.orchestrator.create_claim(
                ClaimSpec(
                    namespace=namespace,
                    name=name,
                    size_mb=volume.size_mb,
                    labels=claim_labels(volume),
                    storage_class=self.settings.volume_storage_class,
                )
            )
            await self.wait_bound(namespace, name)
            await self.volumes.set_provider_id(volume.id, name, VolumeBackend.KUBERNETES)
        except Exception as e:
            await self.volumes.set_status(volume.id, VolumeStatus.ERROR, str(e))
            logger.error("claim_provision_failed", volume_id=str(volume.id), error=str(e))
            raise

        logger.info("claim_provisioned", volume_id=str(volume.id), namespace=namespace, claim=name)
        return await self.volumes.get(volume.id)

    async def wait_bound(self, namespace: str, name: str) -> ClaimStatus:
        """Poll the claim until a volume is bound to it.

        Raises:
            DeadlineExceeded: still unbound after ``volume_bind_timeout_s``
        """
        timeout = self.settings.volume_bind_timeout_s
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            status = await self.orchestrator.get_claim_status(namespace, name)
            if status is not None and status.bound:
                return status
            phase = status.phase if status else "Missing"
            if loop.time() >= deadline:
                raise DeadlineExceeded(f"Claim {name} not bound after {timeout:.0f}s ({phase})")
            logger.debug("claim_waiting", claim=name, phase=phase)
            await self._sleep(self.settings.volume_bind_poll_interval_s)

    async def resize(self, volume: Volume, size_mb: int) -> Volume:
        if size_mb == volume.size_mb:
            return volume
        if size_mb < volume.size_mb:
            raise PermanentJobError(
                f"Volume {volume.id} cannot shrink from {volume.size_mb}MB to {size_mb}MB"
            )
        await self.orchestrator.resize_claim(
            self._namespace(volume), volume.provider_volume_id, size_mb
        )
        await self.volumes.set_size(volume.id, size_mb)
        logger.info(
            "claim_resized", volume_id=str(volume.id), old_size_mb=volume.size_mb, size_mb=size_mb
        )
        volume.size_mb = size_mb
        return volume

    async def attach(
        self,
        volume: Volume,
        service_id: Optional[UUID] = None,
        database_id: Optional[UUID] = None,
    ) -> Volume:
        if database_id is not None:
            raise PermanentJobError("Claim-backed volumes can only be attached to services")
        attached = await self.volumes.attach(volume.id, service_id=service_id)
        if attached is None:
            raise PermanentJobError(f"Volume {volume.id} is already attached")
        logger.info("claim_attached", volume_id=str(volume.id), service_id=str(service_id))
        return attached

    async def detach(self, volume: Volume) -> None:
        await self.volumes.detach(volume.id)
        logger.info("claim_detached", volume_id=str(volume.id))

    async def release(self, volume: Volume) -> None:
        await self.orchestrator.delete_claim(self._namespace(volume), volume.provider_volume_id)
