"""Cleanup job handlers. Both always complete; step failures are in the result."""

from typing import Any

from conveyor.jobs.models import CleanupProjectPayload, CleanupServicePayload, Job
from conveyor.jobs.registry import default_registry
from conveyor.jobs.types import JobType


@default_registry.handler(JobType.CLEANUP_SERVICE)
async def handle_cleanup_service(
    job: Job, payload: CleanupServicePayload, ctx: dict[str, Any]
) -> dict[str, Any]:
    report = await ctx["cleanup"].cleanup_service(payload.service_id)
    return report.to_dict()


@default_registry.handler(JobType.CLEANUP_PROJECT)
async def handle_cleanup_project(
    job: Job, payload: CleanupProjectPayload, ctx: dict[str, Any]
) -> dict[str, Any]:
    report = await ctx["cleanup"].cleanup_project(payload.project_id)
    return report.to_dict()
