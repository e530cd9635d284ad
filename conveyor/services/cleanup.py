"""Cascading teardown of a service's or a project's external resources.

Every sub-step runs on its own: a failure is logged at warning, recorded in
the report and the next step still runs. Rows are never deleted here; the
caller removes them, usually through a cascading delete.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol
from urllib.parse import quote
from uuid import UUID

import httpx
import structlog

from conveyor.errors import PermanentJobError
from conveyor.models import (
    Database,
    GitConnection,
    GitSource,
    Service,
    Volume,
    VolumeBackend,
)
from conveyor.repositories.databases import DatabaseRepository
from conveyor.repositories.git_sources import GitSourceRepository
from conveyor.repositories.projects import ProjectRepository
from conveyor.repositories.services import ServiceRepository
from conveyor.repositories.volumes import VolumeRepository
from conveyor.services.infra import InfraClients
from conveyor.services.infra.base import InfraClient
from conveyor.services.orchestrator.base import (
    Orchestrator,
    ingress_name,
    namespace_name,
    network_service_name,
    secret_name,
    workload_name,
)
from conveyor.services.telemetry import PrometheusTargetManager

logger = structlog.get_logger(__name__)


@dataclass
class CleanupReport:
    attempted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def merge(self, other: "CleanupReport") -> None:
        self.attempted.extend(other.attempted)
        self.failed.update(other.failed)

    def to_dict(self) -> dict:
        return {"attempted": list(self.attempted), "failed": dict(self.failed)}


class WebhookRemover(Protocol):
    async def remove_webhook(self, connection: GitConnection, source: GitSource) -> None: ...


class GitWebhookRemover:
    """Deletes push webhooks through the GitHub or GitLab REST API."""

    def __init__(self, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def remove_webhook(self, connection: GitConnection, source: GitSource) -> None:
        if "gitlab" in connection.provider:
            project = quote(source.full_name, safe="")
            url = f"https://{connection.provider}/api/v4/projects/{project}/hooks/{source.webhook_id}"
            headers = {"PRIVATE-TOKEN": connection.access_token}
        else:
            url = f"https://api.github.com/repos/{source.full_name}/hooks/{source.webhook_id}"
            headers = {
                "Authorization": f"Bearer {connection.access_token}",
                "Accept": "application/vnd.github+json",
            }
        response = await self._client.delete(url, headers=headers)
        if response.status_code == 404:
            return
        response.raise_for_status()


class CleanupService:
    def __init__(
        self,
        services: ServiceRepository,
        projects: ProjectRepository,
        databases: DatabaseRepository,
        volumes: VolumeRepository,
        git_sources: GitSourceRepository,
        infra: InfraClients,
        orchestrator: Orchestrator,
        telemetry: PrometheusTargetManager,
        namespace_prefix: str,
        webhook_remover: Optional[WebhookRemover] = None,
    ):
        self.services = services
        self.projects = projects
        self.databases = databases
        self.volumes = volumes
        self.git_sources = git_sources
        self.infra = infra
        self.orchestrator = orchestrator
        self.telemetry = telemetry
        self.namespace_prefix = namespace_prefix
        self.webhook_remover = webhook_remover

    async def _step(
        self,
        report: CleanupReport,
        name: str,
        fn: Callable[[], Awaitable[None]],
        **log_context,
    ) -> bool:
        report.attempted.append(name)
        try:
            await fn()
            return True
        except Exception as e:
            report.failed[name] = str(e)
            logger.warning("cleanup_step_failed", step=name, error=str(e), **log_context)
            return False

    async def cleanup_service(self, service_id: UUID) -> CleanupReport:
        service = await self.services.get(service_id)
        if service is None:
            raise PermanentJobError(f"Service {service_id} not found")
        project = await self.projects.get(service.project_id)
        report = await self._cleanup_service(service, self.infra.for_project(project))
        logger.info(
            "service_cleanup_finished",
            service_id=str(service_id),
            attempted=len(report.attempted),
            failed=sorted(report.failed),
        )
        return report

    async def _cleanup_service(self, service: Service, infra: InfraClient) -> CleanupReport:
        report = CleanupReport()
        ctx = {"service_id": str(service.id)}
        sid = str(service.id)[:8]
        cleared: list[str] = []

        if service.instance_id:
            instance_id = service.instance_id

            async def unregister() -> None:
                self.telemetry.unregister_instance(instance_id)

            await self._step(report, f"telemetry:{instance_id}", unregister, **ctx)

        container_id = service.container_id or service.instance_id
        if container_id:
            await self._step(
                report,
                f"stop_container:{container_id}",
                lambda: infra.stop_container(container_id),
                **ctx,
            )
            if await self._step(
                report,
                f"delete_container:{container_id}",
                lambda: infra.delete_container(container_id),
                **ctx,
            ):
                cleared.append("container_id")

        if service.instance_id:
            if await self._step(
                report,
                f"delete_instance:{service.instance_id}",
                lambda: infra.delete_instance(service.instance_id),
                **ctx,
            ):
                cleared.append("instance_id")

        if service.floating_ip_id:
            if await self._step(
                report,
                f"release_floating_ip:{service.floating_ip_id}",
                lambda: infra.release_floating_ip(service.floating_ip_id),
                **ctx,
            ):
                cleared.extend(["floating_ip_id", "floating_ip"])

        if service.security_group_id:
            if await self._step(
                report,
                f"delete_security_group:{service.security_group_id}",
                lambda: infra.delete_security_group(service.security_group_id),
                **ctx,
            ):
                cleared.append("security_group_id")

        if service.dns_record_id:
            if await self._step(
                report,
                f"delete_dns_record:{service.dns_record_id}",
                lambda: infra.delete_dns_record(service.dns_record_id),
                **ctx,
            ):
                cleared.append("dns_record_id")

        await self._step(report, "delete_webhook", lambda: self._remove_webhook(service), **ctx)

        namespace = namespace_name(self.namespace_prefix, service.project_id)
        await self._step(
            report,
            f"delete_ingress:{sid}",
            lambda: self.orchestrator.delete_ingress(namespace, ingress_name(service.id)),
            **ctx,
        )
        await self._step(
            report,
            f"delete_network_service:{sid}",
            lambda: self.orchestrator.delete_network_service(
                namespace, network_service_name(service.id)
            ),
            **ctx,
        )
        await self._step(
            report,
            f"delete_workload:{sid}",
            lambda: self.orchestrator.delete_workload(namespace, workload_name(service.id)),
            **ctx,
        )
        await self._step(
            report,
            f"delete_secret:{sid}",
            lambda: self.orchestrator.delete_secret(namespace, secret_name(service.id)),
            **ctx,
        )

        volumes: list[Volume] = []

        async def list_volumes() -> None:
            volumes.extend(await self.volumes.list_for_service(service.id))

        await self._step(report, "list_volumes", list_volumes, **ctx)
        for volume in volumes:
            await self._release_volume(report, volume, infra, **ctx)

        if cleared:
            await self._step(
                report,
                "clear_provider_ids",
                lambda: self.services.clear_provider_ids(service.id, cleared),
                **ctx,
            )
        return report

    async def _remove_webhook(self, service: Service) -> None:
        source = await self.git_sources.get_for_service(service.id)
        if source is None or not source.webhook_id:
            return
        if self.webhook_remover is None:
            logger.info(
                "webhook_removal_skipped",
                service_id=str(service.id),
                webhook_id=source.webhook_id,
            )
            return
        if source.git_connection_id is None:
            return
        connection = await self.git_sources.get_connection(source.git_connection_id)
        if connection is None:
            return
        await self.webhook_remover.remove_webhook(connection, source)
        await self.git_sources.clear_webhook(source.id)

    async def _release_volume(
        self, report: CleanupReport, volume: Volume, infra: InfraClient, **ctx
    ) -> bool:
        """Delete the backing volume or claim; True once nothing is left behind."""
        provider_id = volume.provider_volume_id
        if not provider_id:
            return True
        if volume.backend == VolumeBackend.KUBERNETES.value:
            namespace = namespace_name(self.namespace_prefix, volume.project_id)
            released = await self._step(
                report,
                f"delete_claim:{provider_id}",
                lambda: self.orchestrator.delete_claim(namespace, provider_id),
                **ctx,
            )
        else:
            released = await self._release_block_volume(report, provider_id, volume, infra, **ctx)
        if not released:
            return False
        return await self._step(
            report,
            f"mark_volume_deleted:{volume.id}",
            lambda: self.volumes.clear_provider_id(volume.id),
            **ctx,
        )

    async def _release_block_volume(
        self, report: CleanupReport, provider_id: str, volume: Volume, infra: InfraClient, **ctx
    ) -> bool:
        if volume.is_attached:
            await self._step(
                report,
                f"detach_volume:{provider_id}",
                lambda: infra.detach_volume(provider_id),
                **ctx,
            )
        return await self._step(
            report,
            f"delete_volume:{provider_id}",
            lambda: infra.delete_volume(provider_id),
            **ctx,
        )

    async def cleanup_project(self, project_id: UUID) -> CleanupReport:
        project = await self.projects.get(project_id)
        if project is None:
            raise PermanentJobError(f"Project {project_id} not found")

        report = CleanupReport()
        ctx = {"project_id": str(project_id)}
        infra = self.infra.for_project(project)

        services: list[Service] = []
        databases: list[Database] = []

        async def list_services() -> None:
            services.extend(await self.services.list_by_project(project_id))

        async def list_databases() -> None:
            databases.extend(await self.databases.list_by_project(project_id))

        await self._step(report, "list_services", list_services, **ctx)
        for service in services:
            report.merge(await self._cleanup_service(service, infra))

        await self._step(report, "list_databases", list_databases, **ctx)
        for database in databases:
            await self._cleanup_database(report, database, infra)

        volumes: list[Volume] = []

        async def list_volumes() -> None:
            volumes.extend(await self.volumes.list_by_project(project_id))

        await self._step(report, "list_volumes", list_volumes, **ctx)
        for volume in volumes:
            await self._release_volume(report, volume, infra, **ctx)

        await self._step(
            report,
            "delete_namespace",
            lambda: self.orchestrator.delete_namespace(
                namespace_name(self.namespace_prefix, project_id)
            ),
            **ctx,
        )
        logger.info(
            "project_cleanup_finished",
            project_id=str(project_id),
            services=len(services),
            databases=len(databases),
            volumes=len(volumes),
            failed=sorted(report.failed),
        )
        return report

    async def _cleanup_database(
        self, report: CleanupReport, database: Database, infra: InfraClient
    ) -> None:
        ctx = {"database_id": str(database.id)}
        cleared: list[str] = []

        if database.instance_id:

            async def unregister() -> None:
                self.telemetry.unregister_database(str(database.id))

            await self._step(report, f"telemetry:db-{database.id}", unregister, **ctx)

        volume: Optional[Volume] = None
        if database.volume_id:

            async def load_volume() -> None:
                nonlocal volume
                volume = await self.volumes.get(database.volume_id)

            await self._step(report, f"load_volume:{database.volume_id}", load_volume, **ctx)

        if volume is not None and volume.provider_volume_id:
            if await self._release_volume(report, volume, infra, **ctx):
                cleared.append("volume_id")

        if database.instance_id:
            if await self._step(
                report,
                f"delete_instance:{database.instance_id}",
                lambda: infra.delete_instance(database.instance_id),
                **ctx,
            ):
                cleared.append("instance_id")

        if database.dns_record_id:
            if await self._step(
                report,
                f"delete_dns_record:{database.dns_record_id}",
                lambda: infra.delete_dns_record(database.dns_record_id),
                **ctx,
            ):
                cleared.append("dns_record_id")

        if database.security_group_id:
            if await self._step(
                report,
                f"delete_security_group:{database.security_group_id}",
                lambda: infra.delete_security_group(database.security_group_id),
                **ctx,
            ):
                cleared.append("security_group_id")

        if cleared:
            await self._step(
                report,
                f"clear_database_ids:{database.id}",
                lambda: self.databases.clear_provider_ids(database.id, cleared),
                **ctx,
            )
