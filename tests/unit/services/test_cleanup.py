"""Tests for cascading service and project cleanup."""

from types import SimpleNamespace
from uuid import uuid4

import httpx
import pytest

from conveyor.errors import PermanentJobError
from conveyor.models import Database, GitConnection, GitSource, Project, Service, Volume
from conveyor.services.cleanup import CleanupReport, CleanupService, GitWebhookRemover
from conveyor.services.infra import InfraClients
from conveyor.services.infra.base import CreateVolumeRequest
from conveyor.services.infra.mock import MockInfraClient
from conveyor.services.orchestrator.base import (
    ClaimSpec,
    claim_name,
    ingress_name,
    network_service_name,
    secret_name,
    workload_name,
)
from conveyor.services.telemetry import PrometheusTargetManager
from tests.unit.fakes import (
    FakeDatabaseRepository,
    FakeGitSourceRepository,
    FakeProjectRepository,
    FakeServiceRepository,
    FakeVolumeRepository,
    InMemoryOrchestrator,
)


class RecordingRemover:
    def __init__(self, error=None):
        self.removed = []
        self.error = error

    async def remove_webhook(self, connection, source):
        if self.error is not None:
            raise self.error
        self.removed.append((connection.provider, source.full_name, source.webhook_id))


def deployed_service(project_id, **fields):
    defaults = dict(
        instance_id="vm-1",
        container_id="ct-1",
        floating_ip_id="fip-1",
        floating_ip="203.0.113.7",
        security_group_id="sg-1",
        dns_record_id="dns-1",
    )
    defaults.update(fields)
    return Service(id=uuid4(), project_id=project_id, name="api", status="running", **defaults)


def seed_orchestrator(orchestrator, namespace, service):
    orchestrator.namespaces.add(namespace)
    orchestrator.workloads[(namespace, workload_name(service.id))] = "workload"
    orchestrator.network_services[(namespace, network_service_name(service.id))] = "svc"
    orchestrator.ingresses[(namespace, ingress_name(service.id))] = "ingress"
    orchestrator.secrets[(namespace, secret_name(service.id))] = {"KEY": "value"}


async def attached_volume(infra, volumes, project_id, instance_id, **owner):
    backing = await infra.create_volume(CreateVolumeRequest(name="data", size_gb=1))
    await infra.attach_volume(backing.id, instance_id, "/dev/vdc")
    volume = Volume(
        id=uuid4(),
        project_id=project_id,
        name="data",
        size_mb=1024,
        mount_path="/data",
        status="attached",
        provider_volume_id=backing.id,
        **owner,
    )
    volumes.rows[volume.id] = volume
    return volume


def make_env(
    tmp_path,
    services=(),
    databases=(),
    remover=None,
    source=None,
    connection=None,
    tenant_id=None,
):
    project = Project(id=uuid4(), name="shop", infra_tenant_id=tenant_id)
    tenants = []
    env = SimpleNamespace(
        project=project,
        namespace=f"proj-{project.id}",
        services=FakeServiceRepository(*services),
        databases=FakeDatabaseRepository(*databases),
        volumes=FakeVolumeRepository(),
        git_sources=FakeGitSourceRepository(source, connection),
        infra=MockInfraClient(),
        orchestrator=InMemoryOrchestrator(),
        telemetry=PrometheusTargetManager(str(tmp_path)),
        tenants=tenants,
    )

    def build(tenant):
        tenants.append(tenant)
        return env.infra

    env.cleanup = CleanupService(
        env.services,
        FakeProjectRepository(project),
        env.databases,
        env.volumes,
        env.git_sources,
        InfraClients(build, default_tenant_id="tenant-default"),
        env.orchestrator,
        env.telemetry,
        namespace_prefix="proj-",
        webhook_remover=remover,
    )
    return env


class TestCleanupReport:
    def test_merge(self):
        report = CleanupReport(attempted=["a"])
        report.merge(CleanupReport(attempted=["b"], failed={"b": "boom"}))

        assert report.attempted == ["a", "b"]
        assert not report.ok
        assert report.to_dict() == {"attempted": ["a", "b"], "failed": {"b": "boom"}}


class TestServiceCleanup:
    @pytest.mark.asyncio
    async def test_releases_everything(self, tmp_path):
        env = make_env(tmp_path)
        project_id = env.project.id
        service = deployed_service(project_id)
        env.services.rows[service.id] = service
        namespace = env.namespace
        seed_orchestrator(env.orchestrator, namespace, service)
        (tmp_path / "vm-1.json").write_text("[]")
        volume = await attached_volume(
            env.infra, env.volumes, project_id, "vm-1", attached_to_service_id=service.id
        )

        report = await env.cleanup.cleanup_service(service.id)

        assert report.ok
        assert "ct-1" in env.infra.stopped_containers
        assert "ct-1" in env.infra.deleted_containers
        assert env.infra.released_floating_ips == {"fip-1"}
        assert env.infra.called("delete_instance") == [("vm-1",)]
        assert env.infra.called("delete_security_group") == [("sg-1",)]
        assert env.infra.called("delete_dns_record") == [("dns-1",)]
        assert env.infra.volumes == {}
        assert not (tmp_path / "vm-1.json").exists()

        assert env.orchestrator.workloads == {}
        assert env.orchestrator.network_services == {}
        assert env.orchestrator.ingresses == {}
        assert env.orchestrator.secrets == {}
        assert namespace in env.orchestrator.namespaces

        row = env.services.rows[service.id]
        assert row.status == "stopped"
        assert (row.instance_id, row.container_id, row.floating_ip, row.dns_record_id) == (
            None,
            None,
            None,
            None,
        )
        assert env.volumes.rows[volume.id].provider_volume_id is None
        assert env.volumes.rows[volume.id].status == "deleted"

    @pytest.mark.asyncio
    async def test_failed_step_does_not_stop_the_rest(self, tmp_path):
        service = deployed_service(uuid4())
        env = make_env(tmp_path, services=[service])
        env.infra.fail_next("delete_instance")

        report = await env.cleanup.cleanup_service(service.id)

        assert list(report.failed) == ["delete_instance:vm-1"]
        assert env.infra.called("delete_dns_record") == [("dns-1",)]
        assert "delete_workload:" + str(service.id)[:8] in report.attempted

        row = env.services.rows[service.id]
        assert row.instance_id == "vm-1"
        assert row.security_group_id is None
        assert row.floating_ip_id is None

    @pytest.mark.asyncio
    async def test_container_falls_back_to_instance(self, tmp_path):
        service = deployed_service(uuid4(), container_id=None)
        env = make_env(tmp_path, services=[service])

        await env.cleanup.cleanup_service(service.id)

        assert env.infra.deleted_containers == {"vm-1"}

    @pytest.mark.asyncio
    async def test_never_deployed_service(self, tmp_path):
        service = Service(id=uuid4(), project_id=uuid4(), name="api")
        env = make_env(tmp_path, services=[service])

        report = await env.cleanup.cleanup_service(service.id)

        assert report.ok
        assert env.infra.calls == []
        assert env.services.rows[service.id].status == "pending"

    @pytest.mark.asyncio
    async def test_missing_service(self, tmp_path):
        env = make_env(tmp_path)

        with pytest.raises(PermanentJobError):
            await env.cleanup.cleanup_service(uuid4())

    @pytest.mark.asyncio
    async def test_uses_project_tenant(self, tmp_path):
        env = make_env(tmp_path, tenant_id="tenant-shop")
        service = deployed_service(env.project.id)
        env.services.rows[service.id] = service

        await env.cleanup.cleanup_service(service.id)

        assert env.tenants == ["tenant-shop"]

    @pytest.mark.asyncio
    async def test_service_in_unknown_project_uses_default_tenant(self, tmp_path):
        service = deployed_service(uuid4())
        env = make_env(tmp_path, services=[service])

        await env.cleanup.cleanup_service(service.id)

        assert env.tenants == ["tenant-default"]

    @pytest.mark.asyncio
    async def test_releases_claim_backed_volume(self, tmp_path):
        env = make_env(tmp_path)
        service = Service(id=uuid4(), project_id=env.project.id, name="api")
        env.services.rows[service.id] = service
        volume_id = uuid4()
        volume = Volume(
            id=volume_id,
            project_id=env.project.id,
            name="uploads",
            size_mb=1024,
            mount_path="/data",
            status="attached",
            backend="kubernetes",
            provider_volume_id=claim_name(volume_id),
            attached_to_service_id=service.id,
        )
        env.volumes.rows[volume.id] = volume
        env.orchestrator.claims[(env.namespace, volume.provider_volume_id)] = ClaimSpec(
            namespace=env.namespace, name=volume.provider_volume_id, size_mb=1024
        )

        report = await env.cleanup.cleanup_service(service.id)

        assert report.ok
        assert env.orchestrator.claims == {}
        assert f"delete_claim:{claim_name(volume.id)}" in report.attempted
        assert env.infra.called("delete_volume") == []
        assert env.volumes.rows[volume.id].status == "deleted"


def git_fixture(service_id, provider="github.com"):
    connection = GitConnection(id=uuid4(), provider=provider, access_token="tok")
    source = GitSource(
        id=uuid4(),
        service_id=service_id,
        git_connection_id=connection.id,
        provider=provider,
        repo_owner="acme",
        repo_name="api",
        webhook_id="42",
    )
    return source, connection


class TestWebhookRemoval:
    @pytest.mark.asyncio
    async def test_removes_and_clears_webhook(self, tmp_path):
        service = deployed_service(uuid4())
        source, connection = git_fixture(service.id)
        remover = RecordingRemover()
        env = make_env(tmp_path, [service], remover=remover, source=source, connection=connection)

        await env.cleanup.cleanup_service(service.id)

        assert remover.removed == [("github.com", "acme/api", "42")]
        assert source.webhook_id is None

    @pytest.mark.asyncio
    async def test_skipped_without_remover(self, tmp_path):
        service = deployed_service(uuid4())
        source, connection = git_fixture(service.id)
        env = make_env(tmp_path, [service], source=source, connection=connection)

        report = await env.cleanup.cleanup_service(service.id)

        assert "delete_webhook" not in report.failed
        assert source.webhook_id == "42"

    @pytest.mark.asyncio
    async def test_remover_failure_is_reported(self, tmp_path):
        service = deployed_service(uuid4())
        source, connection = git_fixture(service.id)
        remover = RecordingRemover(error=RuntimeError("forbidden"))
        env = make_env(tmp_path, [service], remover=remover, source=source, connection=connection)

        report = await env.cleanup.cleanup_service(service.id)

        assert report.failed == {"delete_webhook": "forbidden"}
        assert source.webhook_id == "42"


class TestGitWebhookRemover:
    @pytest.mark.asyncio
    async def test_github(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        remover = GitWebhookRemover(transport=httpx.MockTransport(handler))
        source, connection = git_fixture(uuid4())

        await remover.remove_webhook(connection, source)
        await remover.aclose()

        (request,) = seen
        assert request.method == "DELETE"
        assert str(request.url) == "https://api.github.com/repos/acme/api/hooks/42"
        assert request.headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_gitlab(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        remover = GitWebhookRemover(transport=httpx.MockTransport(handler))
        source, connection = git_fixture(uuid4(), provider="gitlab.com")

        await remover.remove_webhook(connection, source)

        (request,) = seen
        assert request.url.host == "gitlab.com"
        assert request.url.raw_path == b"/api/v4/projects/acme%2Fapi/hooks/42"
        assert request.headers["PRIVATE-TOKEN"] == "tok"

    @pytest.mark.asyncio
    async def test_missing_hook_is_success(self):
        remover = GitWebhookRemover(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        source, connection = git_fixture(uuid4())

        await remover.remove_webhook(connection, source)

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        remover = GitWebhookRemover(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        source, connection = git_fixture(uuid4())

        with pytest.raises(httpx.HTTPStatusError):
            await remover.remove_webhook(connection, source)


class TestProjectCleanup:
    @pytest.mark.asyncio
    async def test_tears_down_services_databases_and_namespace(self, tmp_path):
        env = make_env(tmp_path)
        project_id = env.project.id
        first = deployed_service(project_id)
        second = deployed_service(project_id, instance_id="vm-2", container_id=None)
        env.services.rows.update({first.id: first, second.id: second})
        for service in (first, second):
            seed_orchestrator(env.orchestrator, env.namespace, service)

        database = Database(
            id=uuid4(),
            project_id=project_id,
            name="orders",
            engine="postgresql",
            instance_id="vm-db",
            security_group_id="sg-db",
            dns_record_id="dns-db",
        )
        volume = await attached_volume(
            env.infra, env.volumes, project_id, "vm-db", attached_to_database_id=database.id
        )
        database.volume_id = volume.id
        env.databases.rows[database.id] = database
        env.telemetry.register_database(
            "10.0.0.9", "vm-db", str(database.id), str(project_id), "orders", "postgresql"
        )

        report = await env.cleanup.cleanup_project(project_id)

        assert report.ok, report.failed
        assert env.namespace not in env.orchestrator.namespaces
        assert env.orchestrator.workloads == {}
        assert sorted(args[0] for args in env.infra.called("delete_instance")) == [
            "vm-1",
            "vm-2",
            "vm-db",
        ]
        assert env.infra.volumes == {}
        assert len(env.infra.called("delete_volume")) == 1
        assert not (tmp_path / f"db-{database.id}.json").exists()

        db_row = env.databases.rows[database.id]
        assert (
            db_row.instance_id,
            db_row.volume_id,
            db_row.security_group_id,
            db_row.dns_record_id,
        ) == (None, None, None, None)
        assert env.volumes.rows[volume.id].status == "deleted"
        assert all(s.status == "stopped" for s in env.services.rows.values())

    @pytest.mark.asyncio
    async def test_missing_project(self, tmp_path):
        env = make_env(tmp_path)

        with pytest.raises(PermanentJobError):
            await env.cleanup.cleanup_project(uuid4())

    @pytest.mark.asyncio
    async def test_failed_volume_delete_keeps_database_volume_id(self, tmp_path):
        env = make_env(tmp_path)
        database = Database(
            id=uuid4(),
            project_id=env.project.id,
            name="orders",
            engine="postgresql",
            instance_id="vm-db",
            security_group_id="sg-db",
        )
        volume = await attached_volume(
            env.infra, env.volumes, env.project.id, "vm-db", attached_to_database_id=database.id
        )
        database.volume_id = volume.id
        env.databases.rows[database.id] = database
        # the database pass and the project volume pass both try the delete
        env.infra.fail_next("delete_volume")
        env.infra.fail_next("delete_volume")

        report = await env.cleanup.cleanup_project(env.project.id)

        assert f"delete_volume:{volume.provider_volume_id}" in report.failed
        db_row = env.databases.rows[database.id]
        assert db_row.volume_id == volume.id
        assert (db_row.instance_id, db_row.security_group_id) == (None, None)
        assert env.volumes.rows[volume.id].provider_volume_id == volume.provider_volume_id

    @pytest.mark.asyncio
    async def test_uses_project_tenant(self, tmp_path):
        env = make_env(tmp_path, tenant_id="tenant-shop")
        service = deployed_service(env.project.id)
        env.services.rows[service.id] = service

        await env.cleanup.cleanup_project(env.project.id)

        assert env.tenants == ["tenant-shop"]
