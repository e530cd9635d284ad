"""Build, deploy and rollback job handlers."""

from typing import Any

from conveyor.jobs.models import BuildPayload, DeployPayload, Job, RollbackPayload
from conveyor.jobs.registry import default_registry
from conveyor.jobs.types import JobType
from conveyor.models import Deployment


def _summary(deployment: Deployment) -> dict[str, Any]:
    return {
        "deployment_id": str(deployment.id),
        "status": deployment.status.value,
        "image_tag": deployment.image_tag,
    }


@default_registry.handler(JobType.BUILD)
async def handle_build(job: Job, payload: BuildPayload, ctx: dict[str, Any]) -> dict[str, Any]:
    """Build and push the image; the deployment ends in success."""
    deployment = await ctx["build"].run(payload.deployment_id, final=True, retry=job.attempts > 0)
    return _summary(deployment)


@default_registry.handler(JobType.DEPLOY)
async def handle_deploy(job: Job, payload: DeployPayload, ctx: dict[str, Any]) -> dict[str, Any]:
    """Build, then deploy the same deployment. A failed build ends the chain.

    A retry starts again from the build step.
    """
    await ctx["build"].run(payload.deployment_id, final=False, retry=job.attempts > 0)
    deployment = await ctx["deploy"].run(payload.deployment_id)
    return _summary(deployment)


@default_registry.handler(JobType.ROLLBACK)
async def handle_rollback(
    job: Job, payload: RollbackPayload, ctx: dict[str, Any]
) -> dict[str, Any]:
    deployment = await ctx["rollback"].run(payload, retry=job.attempts > 0)
    result = _summary(deployment)
    result["rollback_to_deployment_id"] = str(payload.rollback_to_deployment_id)
    return result
