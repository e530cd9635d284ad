"""Rollback: redeploy the image of an earlier successful deployment."""

from typing import Optional
from uuid import UUID

import structlog

from conveyor.errors import PermanentJobError, RollbackTargetError
from conveyor.jobs.models import Job, RollbackPayload
from conveyor.jobs.types import JobType
from conveyor.models import Deployment, DeploymentStatus, LogPhase, TriggeredBy
from conveyor.repositories.deployments import DeploymentRepository
from conveyor.repositories.jobs import JobRepository
from conveyor.services.deploy import DeployPipeline
from conveyor.services.deployment_log import DeploymentLogger

logger = structlog.get_logger(__name__)


def validate_rollback_target(deployment: Optional[Deployment]) -> Deployment:
    """Only a successful deployment with an image can be rolled back to.

    Raises:
        RollbackTargetError: missing, unsuccessful or image-less target
    """
    if deployment is None:
        raise RollbackTargetError("Rollback target deployment not found")
    if deployment.status != DeploymentStatus.SUCCESS:
        raise RollbackTargetError(
            f"Cannot roll back to deployment {deployment.id} in status {deployment.status.value}"
        )
    if not deployment.image_tag:
        raise RollbackTargetError(f"Deployment {deployment.id} has no image to roll back to")
    return deployment


async def request_rollback(
    deployments: DeploymentRepository,
    jobs: JobRepository,
    target_deployment_id: UUID,
    max_attempts: int = 3,
) -> tuple[Deployment, Job]:
    """Validate the target, create the rollback deployment and enqueue its job.

    The new deployment copies the target's commit fields and image tag and
    starts ``queued``; the historical row is left untouched.
    """
    target = validate_rollback_target(await deployments.get(target_deployment_id))

    deployment = await deployments.create(
        service_id=target.service_id,
        triggered_by=TriggeredBy.ROLLBACK.value,
        commit_sha=target.commit_sha,
        commit_message=target.commit_message,
        commit_author=target.commit_author,
        image_tag=target.image_tag,
        rollback_from_id=target.id,
    )
    payload = RollbackPayload(
        deployment_id=deployment.id,
        target_image_tag=target.image_tag,
        rollback_to_deployment_id=target.id,
    )
    job = await jobs.create(JobType.ROLLBACK, payload.to_dict(), max_attempts=max_attempts)
    logger.info(
        "rollback_requested",
        deployment_id=str(deployment.id),
        target_deployment_id=str(target.id),
        image_tag=target.image_tag,
        job_id=str(job.id),
    )
    return deployment, job


class RollbackPipeline:
    """Runs rollback deployments through the deploy sequence, skipping the build."""

    def __init__(
        self,
        deployments: DeploymentRepository,
        jobs: JobRepository,
        deploy: DeployPipeline,
        deploy_log: DeploymentLogger,
    ):
        self.deployments = deployments
        self.jobs = jobs
        self.deploy = deploy
        self.deploy_log = deploy_log

    async def request_rollback(
        self,
        target_deployment_id: UUID,
        max_attempts: int = 3,
    ) -> tuple[Deployment, Job]:
        return await request_rollback(
            self.deployments, self.jobs, target_deployment_id, max_attempts=max_attempts
        )

    async def run(self, payload: RollbackPayload, retry: bool = False) -> Deployment:
        target = validate_rollback_target(
            await self.deployments.get(payload.rollback_to_deployment_id)
        )
        if target.image_tag != payload.target_image_tag:
            raise RollbackTargetError(
                f"Deployment {target.id} image {target.image_tag} does not match "
                f"requested {payload.target_image_tag}"
            )

        deployment = await self.deployments.get(payload.deployment_id)
        if deployment is None:
            raise PermanentJobError(f"Deployment {payload.deployment_id} not found")
        if deployment.service_id != target.service_id:
            raise RollbackTargetError(f"Deployment {target.id} belongs to a different service")
        if deployment.status == DeploymentStatus.SUCCESS:
            return deployment

        await self.deploy_log.info(
            deployment.id,
            LogPhase.ROLLBACK,
            f"Rolling back to image: {payload.target_image_tag}",
            rollback_to_deployment_id=str(target.id),
        )
        logger.info(
            "rollback_started",
            deployment_id=str(deployment.id),
            image_tag=payload.target_image_tag,
        )
        return await self.deploy.run(deployment.id, retry=retry, phase=LogPhase.ROLLBACK)
