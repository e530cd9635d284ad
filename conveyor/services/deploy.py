"""Deploy pipeline: roll an image out to the orchestrator and wait for it."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

import structlog

from conveyor.config import Settings
from conveyor.errors import DeadlineExceeded, DeploymentCancelled, PermanentJobError
from conveyor.models import (
    Deployment,
    DeploymentStatus,
    LogPhase,
    Service,
    ServiceStatus,
    VolumeBackend,
)
from conveyor.repositories.custom_domains import CustomDomainRepository
from conveyor.repositories.deployments import DeploymentRepository
from conveyor.repositories.env_vars import EnvVarRepository
from conveyor.repositories.services import ServiceRepository
from conveyor.repositories.volumes import VolumeRepository
from conveyor.services.cancellation import CancellationToken
from conveyor.services.deployment_log import DeploymentLogger
from conveyor.services.orchestrator.base import (
    IngressSpec,
    NetworkServiceSpec,
    Orchestrator,
    VolumeMount,
    WorkloadSpec,
    WorkloadStatus,
    ingress_name,
    namespace_name,
    network_service_name,
    secret_name,
    selector_labels,
    service_hostname,
    service_labels,
    slugify,
    workload_name,
)

logger = structlog.get_logger(__name__)


class DeployPipeline:
    """Applies a service's workload, routing and secrets, then polls readiness.

    The apply step is an upsert throughout, so running it twice for an
    unchanged service leaves the same objects behind.
    """

    def __init__(
        self,
        deployments: DeploymentRepository,
        services: ServiceRepository,
        env_vars: EnvVarRepository,
        custom_domains: CustomDomainRepository,
        orchestrator: Orchestrator,
        deploy_log: DeploymentLogger,
        settings: Settings,
        volumes: Optional[VolumeRepository] = None,
        sleep=asyncio.sleep,
    ):
        self.deployments = deployments
        self.volumes = volumes
        self.services = services
        self.env_vars = env_vars
        self.custom_domains = custom_domains
        self.orchestrator = orchestrator
        self.deploy_log = deploy_log
        self.settings = settings
        self._sleep = sleep

    def hostname(self, service: Service) -> str:
        if service.subdomain:
            return f"{service.subdomain}.{self.settings.base_domain}"
        return service_hostname(
            service.name,
            service.environment or self.settings.default_environment,
            self.settings.base_domain,
        )

    async def run(
        self,
        deployment_id: UUID,
        retry: bool = False,
        phase: LogPhase = LogPhase.DEPLOY,
    ) -> Deployment:
        log = logger.bind(deployment_id=str(deployment_id))

        deployment = await self.deployments.get(deployment_id)
        if deployment is None:
            raise PermanentJobError(f"Deployment {deployment_id} not found")
        if deployment.status == DeploymentStatus.SUCCESS:
            log.info("deploy_skipped_already_succeeded")
            return deployment
        if deployment.status == DeploymentStatus.CANCELLED:
            raise DeploymentCancelled(deployment_id)

        service = await self.services.get(deployment.service_id)
        if service is None:
            raise PermanentJobError(f"Service {deployment.service_id} not found")
        image = deployment.image_tag or service.current_image_tag
        if not image:
            raise PermanentJobError(f"No image to deploy for deployment {deployment_id}")

        if retry:
            await self.deployments.reopen(deployment_id)

        token = CancellationToken(self.deployments, deployment_id)
        await token.check()

        started = time.monotonic()
        fields = {}
        if deployment.started_at is None:
            fields["started_at"] = datetime.now(timezone.utc)
        await self.deployments.transition(deployment_id, DeploymentStatus.DEPLOYING, **fields)
        await self.services.set_status(service.id, ServiceStatus.DEPLOYING)
        await self.deploy_log.info(
            deployment_id, phase, f"Deploying {image}", image_tag=image
        )
        log.info("deploy_started", service_id=str(service.id), image_tag=image)

        try:
            await self.apply(deployment_id, service, image, token, phase)
            status = await self.wait_ready(deployment_id, service, token, phase)
        except DeploymentCancelled:
            await self.services.set_status(service.id, _status_before_deploy(service))
            log.info("deploy_cancelled")
            raise
        except Exception as e:
            duration = int(time.monotonic() - started)
            await self.deploy_log.error(deployment_id, phase, f"Deployment failed: {e}")
            await self.deployments.mark_failed(
                deployment_id,
                str(e),
                deploy_duration=duration,
                finished_at=datetime.now(timezone.utc),
            )
            await self.services.set_status(service.id, ServiceStatus.FAILED)
            log.warning("deploy_failed", error=str(e))
            raise

        duration = int(time.monotonic() - started)
        url = f"https://{self.hostname(service)}"
        deployment = await self.deployments.transition(
            deployment_id,
            DeploymentStatus.SUCCESS,
            image_tag=image,
            deploy_duration=duration,
            finished_at=datetime.now(timezone.utc),
        )
        await self.services.mark_running(service.id, url)
        await self.services.set_current_image_tag(service.id, image)
        await self.deploy_log.info(
            deployment_id,
            phase,
            f"Deployment successful! Service available at {url}",
            url=url,
            ready_replicas=status.ready_replicas,
            deploy_duration=duration,
        )
        log.info("deploy_succeeded", url=url, deploy_duration=duration)
        return deployment

    async def apply(
        self,
        deployment_id: UUID,
        service: Service,
        image: str,
        token: CancellationToken,
        phase: LogPhase = LogPhase.DEPLOY,
    ) -> None:
        """Upsert namespace, env secret, workload, network service and ingress."""
        namespace = namespace_name(self.settings.namespace_prefix, service.project_id)
        labels = service_labels(service.id, service.name, service.project_id)
        selector = selector_labels(service.id)

        await self.orchestrator.ensure_namespace(namespace)
        await token.check()

        env = await self.env_vars.get_map(service.id)
        env_secret: Optional[str] = None
        if env:
            env_secret = secret_name(service.id)
            await self.orchestrator.upsert_secret(namespace, env_secret, env)
            await self.deploy_log.info(
                deployment_id, phase, f"Applied {len(env)} environment variables"
            )

        spec = WorkloadSpec(
            namespace=namespace,
            name=workload_name(service.id),
            container_name=slugify(service.name),
            image=image,
            port=service.port,
            labels=labels,
            selector=selector,
            env_secret=env_secret,
            volume_mounts=await self.volume_mounts(service),
        )
        existing = await self.orchestrator.get_workload_status(namespace, spec.name)
        if existing is None:
            await self.orchestrator.create_workload(spec)
            await self.deploy_log.info(deployment_id, phase, "Created workload")
        else:
            await self.orchestrator.update_workload(spec)
            await self.deploy_log.info(deployment_id, phase, "Updated workload")
        await token.check()

        await self.orchestrator.upsert_network_service(
            NetworkServiceSpec(
                namespace=namespace,
                name=network_service_name(service.id),
                port=80,
                target_port=service.port,
                selector=selector,
                labels=labels,
            )
        )

        hosts = [self.hostname(service)]
        for domain in await self.custom_domains.list_active(service.id):
            if domain.domain not in hosts:
                hosts.append(domain.domain)
        try:
            await self.orchestrator.upsert_ingress(
                IngressSpec(
                    namespace=namespace,
                    name=ingress_name(service.id),
                    hosts=hosts,
                    service_name=network_service_name(service.id),
                    service_port=80,
                    ingress_class=self.settings.ingress_class,
                    cert_issuer=self.settings.cert_issuer,
                    labels=labels,
                )
            )
        except Exception as e:
            await self.deploy_log.warn(
                deployment_id, phase, f"Ingress configuration failed: {e}", hosts=hosts
            )
            logger.warning(
                "ingress_upsert_failed",
                deployment_id=str(deployment_id),
                service_id=str(service.id),
                error=str(e),
            )

    async def volume_mounts(self, service: Service) -> list[VolumeMount]:
        """Claim-backed volumes attached to the service that name a mount path."""
        if self.volumes is None:
            return []
        mounts = []
        for volume in await self.volumes.list_for_service(service.id):
            if (
                volume.backend != VolumeBackend.KUBERNETES.value
                or not volume.provider_volume_id
                or not volume.mount_path
            ):
                continue
            mounts.append(
                VolumeMount(
                    name=volume.provider_volume_id,
                    claim_name=volume.provider_volume_id,
                    mount_path=volume.mount_path,
                )
            )
        return mounts

    async def wait_ready(
        self,
        deployment_id: UUID,
        service: Service,
        token: CancellationToken,
        phase: LogPhase = LogPhase.DEPLOY,
    ) -> WorkloadStatus:
        """Poll the workload until its rollout completes.

        Raises:
            DeadlineExceeded: rollout not complete within ``deploy_ready_timeout_s``
        """
        namespace = namespace_name(self.settings.namespace_prefix, service.project_id)
        name = workload_name(service.id)
        timeout = self.settings.deploy_ready_timeout_s
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            await token.check()
            status = await self.orchestrator.get_workload_status(namespace, name)
            if status is not None and status.available:
                return status
            ready = status.ready_replicas if status else 0
            total = status.replicas if status else 0
            await self.deploy_log.info(
                deployment_id,
                phase,
                f"Waiting for pods... ({ready}/{total} ready)",
                ready_replicas=ready,
                replicas=total,
            )
            if loop.time() >= deadline:
                raise DeadlineExceeded(
                    f"Workload {name} not ready after {timeout:.0f}s ({ready}/{total} ready)"
                )
            await self._sleep(self.settings.deploy_poll_interval_s)


def _status_before_deploy(service: Service) -> ServiceStatus:
    """Status to restore when a deploy is cancelled mid-rollout."""
    status = ServiceStatus(service.status)
    if status != ServiceStatus.DEPLOYING:
        return status
    return ServiceStatus.RUNNING if service.current_image_tag else ServiceStatus.PENDING
