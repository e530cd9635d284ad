"""Build pipeline: clone, build, push, record the image on the deployment."""

import os
import shutil
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from uuid import UUID

import structlog

from conveyor.errors import DeploymentCancelled, PermanentJobError
from conveyor.models import Deployment, DeploymentStatus, LogPhase
from conveyor.repositories.deployments import DeploymentRepository
from conveyor.repositories.git_sources import GitSourceRepository
from conveyor.repositories.services import ServiceRepository
from conveyor.services.build.builders import ImageBuilder, select_builder
from conveyor.services.build.git import GitCloner, clone_url
from conveyor.services.build.registry import RegistryClient, image_tag
from conveyor.services.cancellation import CancellationToken
from conveyor.services.deployment_log import DeploymentLogger

logger = structlog.get_logger(__name__)


def context_subdir(root: Path, root_dir: Optional[str]) -> Path:
    """Build context inside the checkout; empty or "/" means the repository root."""
    if not root_dir or root_dir.strip() in ("", "/"):
        return root
    context = (root / root_dir.strip().strip("/")).resolve()
    if root.resolve() not in context.parents and context != root.resolve():
        raise PermanentJobError(f"root_dir escapes the repository: {root_dir}")
    return context


class BuildPipeline:
    """Turns a queued deployment into a pushed image.

    With ``final=True`` the deployment ends in ``success`` and the service's
    ``current_image_tag`` is updated. With ``final=False`` it stops in
    ``pushing`` for the deploy pipeline to continue.
    """

    def __init__(
        self,
        deployments: DeploymentRepository,
        services: ServiceRepository,
        git_sources: GitSourceRepository,
        deploy_log: DeploymentLogger,
        cloner: GitCloner,
        dockerfile_builder: ImageBuilder,
        zero_config_builder: ImageBuilder,
        registry: RegistryClient,
        registry_url: str,
        build_dir: str,
    ):
        self.deployments = deployments
        self.services = services
        self.git_sources = git_sources
        self.deploy_log = deploy_log
        self.cloner = cloner
        self.dockerfile_builder = dockerfile_builder
        self.zero_config_builder = zero_config_builder
        self.registry = registry
        self.registry_url = registry_url
        self.build_dir = build_dir

    async def run(
        self,
        deployment_id: UUID,
        final: bool = True,
        retry: bool = False,
    ) -> Deployment:
        log = logger.bind(deployment_id=str(deployment_id))

        deployment = await self.deployments.get(deployment_id)
        if deployment is None:
            raise PermanentJobError(f"Deployment {deployment_id} not found")
        if deployment.status == DeploymentStatus.SUCCESS:
            log.info("build_skipped_already_succeeded")
            return deployment
        if deployment.status == DeploymentStatus.CANCELLED:
            raise DeploymentCancelled(deployment_id)

        service = await self.services.get(deployment.service_id)
        if service is None:
            raise PermanentJobError(f"Service {deployment.service_id} not found")
        source = await self.git_sources.get_for_service(service.id)
        if source is None:
            raise PermanentJobError(f"No git source configured for service {service.id}")
        if source.git_connection_id is None:
            raise PermanentJobError(f"Git source {source.id} has no git connection")
        connection = await self.git_sources.get_connection(source.git_connection_id)
        if connection is None:
            raise PermanentJobError(f"Git connection {source.git_connection_id} not found")

        if retry:
            await self.deployments.reopen(deployment_id)

        token = CancellationToken(self.deployments, deployment_id)
        await token.check()

        started = time.monotonic()
        await self.deployments.transition(
            deployment_id,
            DeploymentStatus.BUILDING,
            started_at=datetime.now(timezone.utc),
        )
        await self.deploy_log.info(deployment_id, LogPhase.CLONE, "Starting build process")
        log.info("build_started", service_id=str(service.id), repo=source.full_name)

        os.makedirs(self.build_dir, exist_ok=True)
        workspace = Path(tempfile.mkdtemp(prefix=f"{deployment_id}-", dir=self.build_dir))
        phase = LogPhase.CLONE
        try:
            await self.deploy_log.info(
                deployment_id,
                LogPhase.CLONE,
                f"Cloning {source.full_name}",
                branch=source.branch,
                commit=deployment.commit_sha,
            )
            cloned = await self.cloner.clone(
                clone_url(source.provider, source.repo_owner, source.repo_name),
                workspace / "src",
                branch=source.branch,
                commit=deployment.commit_sha,
                token=connection.access_token,
                provider=connection.provider,
            )
            if not deployment.commit_sha:
                await self.deployments.set_commit_sha(deployment_id, cloned.commit_sha)
            await self.deploy_log.info(
                deployment_id,
                LogPhase.CLONE,
                f"Repository cloned at {cloned.commit_sha[:7]}",
                commit_sha=cloned.commit_sha,
            )
            await token.check()

            phase = LogPhase.BUILD
            context_dir = context_subdir(cloned.path, source.root_dir)
            if not context_dir.is_dir():
                raise PermanentJobError(f"Build context {source.root_dir} not found in repository")
            builder = select_builder(context_dir, self.dockerfile_builder, self.zero_config_builder)
            tag = image_tag(self.registry_url, service.name, cloned.commit_sha)
            await self.deploy_log.info(
                deployment_id,
                LogPhase.BUILD,
                f"Building image with {builder.name}",
                image_tag=tag,
                builder=builder.name,
            )
            await builder.build(context_dir, tag)
            await token.check()

        except DeploymentCancelled:
            log.info("build_cancelled")
            raise
        except Exception as e:
            duration = int(time.monotonic() - started)
            await self.deploy_log.error(deployment_id, phase, f"Build failed: {e}")
            await self.deployments.mark_failed(
                deployment_id,
                str(e),
                build_duration=duration,
                finished_at=datetime.now(timezone.utc),
            )
            log.warning("build_failed", phase=phase.value, error=str(e))
            raise
        finally:
            shutil.rmtree(workspace, ignore_errors=True)

        build_duration = int(time.monotonic() - started)
        await self.deployments.transition(
            deployment_id,
            DeploymentStatus.PUSHING,
            image_tag=tag,
            build_duration=build_duration,
        )
        await self.deploy_log.info(
            deployment_id,
            LogPhase.PUSH,
            "Image built, verifying registry",
            image_tag=tag,
            build_duration=build_duration,
        )
        await self._verify_push(deployment_id, tag)

        if not final:
            return await self.deployments.get(deployment_id)

        deployment = await self.deployments.transition(
            deployment_id,
            DeploymentStatus.SUCCESS,
            finished_at=datetime.now(timezone.utc),
        )
        await self.services.set_current_image_tag(service.id, tag)
        await self.deploy_log.info(deployment_id, LogPhase.PUSH, "Build completed", image_tag=tag)
        log.info("build_succeeded", image_tag=tag, build_duration=build_duration)
        return deployment

    async def _verify_push(self, deployment_id: UUID, tag: str) -> None:
        try:
            found = await self.registry.verify_image(tag)
        except Exception as e:
            await self.deploy_log.warn(
                deployment_id, LogPhase.PUSH, f"Registry verification failed: {e}"
            )
            return
        if not found:
            await self.deploy_log.warn(
                deployment_id, LogPhase.PUSH, "Image not visible in registry yet", image_tag=tag
            )
