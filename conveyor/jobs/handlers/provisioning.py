"""Database and volume job handlers."""

from typing import Any

from conveyor.jobs.models import (
    AttachVolumePayload,
    Job,
    ProvisionDatabasePayload,
    ProvisionVolumePayload,
    ResizeVolumePayload,
    VolumePayload,
)
from conveyor.jobs.registry import default_registry
from conveyor.jobs.types import JobType


@default_registry.handler(JobType.PROVISION_DATABASE)
async def handle_provision_database(
    job: Job, payload: ProvisionDatabasePayload, ctx: dict[str, Any]
) -> dict[str, Any]:
    database = await ctx["database_provisioner"].provision(payload.database_id)
    return {
        "database_id": str(payload.database_id),
        "status": database.status if database else None,
        "internal_hostname": database.internal_hostname if database else None,
    }


@default_registry.handler(JobType.PROVISION_VOLUME)
async def handle_provision_volume(
    job: Job, payload: ProvisionVolumePayload, ctx: dict[str, Any]
) -> dict[str, Any]:
    volume = await ctx["volumes"].provision(payload.volume_id)
    return {"volume_id": str(payload.volume_id), "provider_volume_id": volume.provider_volume_id}


@default_registry.handler(JobType.ATTACH_VOLUME)
async def handle_attach_volume(
    job: Job, payload: AttachVolumePayload, ctx: dict[str, Any]
) -> dict[str, Any]:
    await ctx["volumes"].attach(
        payload.volume_id, service_id=payload.service_id, database_id=payload.database_id
    )
    return payload.to_dict()


@default_registry.handler(JobType.DETACH_VOLUME)
async def handle_detach_volume(
    job: Job, payload: VolumePayload, ctx: dict[str, Any]
) -> dict[str, Any]:
    await ctx["volumes"].detach(payload.volume_id)
    return {"volume_id": str(payload.volume_id)}


@default_registry.handler(JobType.DELETE_VOLUME)
async def handle_delete_volume(
    job: Job, payload: VolumePayload, ctx: dict[str, Any]
) -> dict[str, Any]:
    await ctx["volumes"].delete(payload.volume_id)
    return {"volume_id": str(payload.volume_id)}


@default_registry.handler(JobType.RESIZE_VOLUME)
async def handle_resize_volume(
    job: Job, payload: ResizeVolumePayload, ctx: dict[str, Any]
) -> dict[str, Any]:
    volume = await ctx["volumes"].resize(payload.volume_id, payload.size_mb)
    return {"volume_id": str(payload.volume_id), "size_mb": volume.size_mb}
