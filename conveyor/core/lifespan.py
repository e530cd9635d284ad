"""Process lifespan: open the store and external clients, wire the pipelines."""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator

import asyncpg
import structlog

from conveyor import __version__
from conveyor.config import Settings
from conveyor.repositories import (
    CustomDomainRepository,
    DatabaseRepository,
    DeploymentRepository,
    EnvVarRepository,
    GitSourceRepository,
    JobRepository,
    ProjectRepository,
    ServiceRepository,
    VolumeRepository,
)
from conveyor.services.build import (
    BuildPipeline,
    DockerfileBuilder,
    GitCloner,
    RailpackBuilder,
    RegistryClient,
)
from conveyor.services.cleanup import CleanupService, GitWebhookRemover
from conveyor.services.deploy import DeployPipeline
from conveyor.services.deployment_log import DeploymentLogger
from conveyor.services.infra import InfraClients
from conveyor.services.orchestrator.kubernetes import KubernetesOrchestrator
from conveyor.services.provisioning import (
    ClaimVolumeService,
    DatabaseProvisioner,
    VolumeService,
)
from conveyor.services.realtime import build_publisher
from conveyor.services.rollback import RollbackPipeline
from conveyor.services.telemetry import PrometheusTargetManager

logger = structlog.get_logger(__name__)


@dataclass
class Resources:
    pool: Any
    jobs: JobRepository
    context: dict[str, Any] = field(default_factory=dict)


async def create_db_pool(settings: Settings):
    pool = await asyncpg.create_pool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=60,
    )
    logger.info(
        "db_pool_initialized",
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    return pool


@asynccontextmanager
async def lifespan(settings: Settings) -> AsyncGenerator[Resources, None]:
    """Open every client, yield the handler context, close in reverse order."""
    logger.info("conveyor_starting", version=__version__)

    pool = await create_db_pool(settings)
    publisher = build_publisher(settings)
    infra = InfraClients.from_settings(settings)
    registry = RegistryClient(
        settings.registry_url,
        username=settings.registry_username,
        password=settings.registry_password,
    )
    webhook_remover = GitWebhookRemover()
    orchestrator = None
    try:
        orchestrator = await KubernetesOrchestrator.from_settings(settings)

        jobs = JobRepository(pool)
        deployments = DeploymentRepository(pool)
        services = ServiceRepository(pool)
        projects = ProjectRepository(pool)
        git_sources = GitSourceRepository(pool)
        databases = DatabaseRepository(pool)
        volumes = VolumeRepository(pool)
        telemetry = PrometheusTargetManager(settings.prometheus_targets_dir)
        deploy_log = DeploymentLogger(deployments, publisher)

        build = BuildPipeline(
            deployments,
            services,
            git_sources,
            deploy_log,
            cloner=GitCloner(settings.git_binary, timeout=settings.build_timeout_s),
            dockerfile_builder=DockerfileBuilder(
                settings.buildkit_address,
                buildctl_binary=settings.buildctl_binary,
                timeout=settings.build_timeout_s,
            ),
            zero_config_builder=RailpackBuilder(
                settings.buildkit_address,
                railpack_binary=settings.railpack_binary,
                buildctl_binary=settings.buildctl_binary,
                timeout=settings.build_timeout_s,
            ),
            registry=registry,
            registry_url=settings.registry_url,
            build_dir=settings.build_dir,
        )
        deploy = DeployPipeline(
            deployments,
            services,
            EnvVarRepository(pool),
            CustomDomainRepository(pool),
            orchestrator,
            deploy_log,
            settings,
            volumes=volumes,
        )
        context = {
            "pool": pool,
            "job_repo": jobs,
            "build": build,
            "deploy": deploy,
            "rollback": RollbackPipeline(deployments, jobs, deploy, deploy_log),
            "cleanup": CleanupService(
                services,
                projects,
                databases,
                volumes,
                git_sources,
                infra,
                orchestrator,
                telemetry,
                namespace_prefix=settings.namespace_prefix,
                webhook_remover=webhook_remover,
            ),
            "database_provisioner": DatabaseProvisioner(
                databases, volumes, projects, infra, telemetry, settings
            ),
            "volumes": VolumeService(
                volumes,
                services,
                databases,
                projects,
                infra,
                claims=ClaimVolumeService(volumes, orchestrator, settings),
                backend=settings.volume_backend,
            ),
        }
        yield Resources(pool=pool, jobs=jobs, context=context)
    finally:
        for name, closer in (
            ("orchestrator", orchestrator.aclose if orchestrator else None),
            ("webhook_remover", webhook_remover.aclose),
            ("registry", registry.aclose),
            ("infra", infra.aclose),
            ("publisher", publisher.aclose),
            ("db_pool", pool.close),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                logger.warning("shutdown_close_failed", resource=name, error=str(e))
        logger.info("conveyor_stopped")
