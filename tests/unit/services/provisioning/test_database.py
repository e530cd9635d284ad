"""Tests for managed database provisioning."""

import json
import string
from types import SimpleNamespace
from uuid import uuid4

import pytest

from conveyor.config import Settings
from conveyor.errors import InfraAPIError, PermanentJobError
from conveyor.models import Database, Project
from conveyor.services.infra import InfraClients
from conveyor.services.infra.mock import MockInfraClient
from conveyor.services.provisioning.database import (
    DatabaseProvisioner,
    UndoStack,
    connection_url,
    flavor_for,
    generate_password,
    generate_username,
    image_for,
    volume_size_gb,
)
from conveyor.services.telemetry import PrometheusTargetManager, cloud_init_script
from tests.unit.fakes import FakeDatabaseRepository, FakeProjectRepository, FakeVolumeRepository


def make_provisioner(tmp_path, network_id="net-project", tenant_id=None, **db_fields):
    project = Project(
        id=uuid4(), name="shop", infra_tenant_id=tenant_id, infra_network_id=network_id
    )
    db = Database(
        id=uuid4(),
        project_id=project.id,
        name="orders",
        engine=db_fields.pop("engine", "postgresql"),
        **db_fields,
    )
    databases = FakeDatabaseRepository(db)
    volumes = FakeVolumeRepository()
    infra = MockInfraClient()
    tenants = []

    def build(tenant_id):
        tenants.append(tenant_id)
        return infra

    settings = Settings(
        infra_tenant_id="tenant-default",
        instance_poll_interval_s=0,
        internal_dns_suffix="internal.example",
        dns_zone_id="zone-1",
        infra_network_id="net-default",
    )
    provisioner = DatabaseProvisioner(
        databases,
        volumes,
        FakeProjectRepository(project),
        InfraClients(build, default_tenant_id=settings.infra_tenant_id),
        PrometheusTargetManager(str(tmp_path)),
        settings,
    )
    return SimpleNamespace(
        provisioner=provisioner,
        db=db,
        databases=databases,
        volumes=volumes,
        infra=infra,
        tenants=tenants,
        short=str(db.id)[:8],
    )


class TestHelpers:
    @pytest.mark.parametrize(
        "size_mb,expected", [(0, 1), (500, 1), (1024, 1), (1025, 2), (10240, 10)]
    )
    def test_volume_size_gb(self, size_mb, expected):
        assert volume_size_gb(size_mb) == expected

    def test_flavor_defaults_to_small(self):
        assert flavor_for("large") == "large"
        assert flavor_for("huge") == "small"
        assert flavor_for(None) == "small"

    def test_image_default_versions(self):
        assert image_for("postgresql", None) == "postgresql-14"
        assert image_for("mysql", None) == "mysql-8.0"
        assert image_for("redis", "6") == "redis-6"

    def test_credentials(self):
        password = generate_password(16)
        assert len(password) == 16
        assert set(password) <= set(string.ascii_letters + string.digits)
        assert generate_username("postgresql").startswith("pg")
        assert generate_username("mysql").startswith("mysql")

    def test_connection_urls(self):
        assert (
            connection_url("postgresql", "pg1", "pw", "db1.internal", 5432, "db_1")
            == "postgresql://pg1:pw@db1.internal:5432/db_1"
        )
        assert connection_url("redis", "redis1", "pw", "db1.internal", 6379, "db_1") == (
            "redis://redis1:pw@db1.internal:6379"
        )


class TestUndoStack:
    @pytest.mark.asyncio
    async def test_unwinds_newest_first_and_reports_failures(self):
        order = []

        def step(name, fail=False):
            async def fn():
                order.append(name)
                if fail:
                    raise RuntimeError(name)

            return fn

        undo = UndoStack()
        undo.push("volume", step("volume"))
        undo.push("group", step("group", fail=True))
        undo.push("instance", step("instance"))

        failed = await undo.unwind()

        assert order == ["instance", "group", "volume"]
        assert failed == ["group"]
        assert len(undo) == 0


class TestProvision:
    @pytest.mark.asyncio
    async def test_success(self, tmp_path):
        env = make_provisioner(tmp_path)

        result = await env.provisioner.provision(env.db.id)

        assert result.status == "active"
        assert env.databases.statuses == ["provisioning", "active"]
        hostname = f"db{env.short}.internal.example"
        assert result.internal_hostname == hostname
        assert result.port == 5432
        assert result.database_name == f"db_{env.short}"
        assert result.connection_url == (
            f"postgresql://{result.username}:{result.password}@{hostname}:5432/db_{env.short}"
        )

        (group_req,) = env.infra.called("create_security_group")
        (rule,) = group_req[0].rules
        assert (rule.direction, rule.protocol, rule.port_min, rule.port_max, rule.remote_ip) == (
            "ingress",
            "tcp",
            5432,
            5432,
            "10.0.0.0/8",
        )

        (instance_req,) = env.infra.called("create_instance")
        req = instance_req[0]
        assert req.network_id == "net-project"
        assert req.flavor_id == "small"
        assert req.image_id == "postgresql-14"
        assert req.security_groups == [result.security_group_id]
        assert req.user_data == cloud_init_script()

        volume = env.volumes.rows[result.volume_id]
        assert volume.name == f"db-{env.short}-data"
        assert volume.attached_to_database_id == env.db.id
        assert env.infra.called("attach_volume") == [
            (volume.provider_volume_id, result.instance_id, "/dev/vdb")
        ]
        (volume_req,) = env.infra.called("create_volume")
        assert volume_req[0].size_gb == 1

        (dns_req,) = env.infra.called("create_dns_record")
        assert dns_req[0].name == hostname
        assert dns_req[0].records == [result.internal_ip]
        assert result.dns_record_id in env.infra.dns_records

        target = json.loads((tmp_path / f"db-{env.db.id}.json").read_text())
        assert target[0]["targets"] == [f"{result.internal_ip}:9100"]
        assert target[0]["labels"]["engine"] == "postgresql"

    @pytest.mark.asyncio
    async def test_falls_back_to_configured_network(self, tmp_path):
        env = make_provisioner(tmp_path, network_id=None)

        await env.provisioner.provision(env.db.id)

        (instance_req,) = env.infra.called("create_instance")
        assert instance_req[0].network_id == "net-default"

    @pytest.mark.asyncio
    async def test_uses_project_tenant(self, tmp_path):
        env = make_provisioner(tmp_path, tenant_id="tenant-shop")

        await env.provisioner.provision(env.db.id)

        assert env.tenants == ["tenant-shop"]

    @pytest.mark.asyncio
    async def test_falls_back_to_configured_tenant(self, tmp_path):
        env = make_provisioner(tmp_path)

        await env.provisioner.provision(env.db.id)

        assert env.tenants == ["tenant-default"]

    @pytest.mark.asyncio
    async def test_attach_failure_unwinds_allocations(self, tmp_path):
        env = make_provisioner(tmp_path)
        env.infra.fail_next("attach_volume", InfraAPIError("bad device", status_code=400))

        with pytest.raises(InfraAPIError, match="bad device"):
            await env.provisioner.provision(env.db.id)

        assert env.infra.instances == {}
        assert env.infra.security_groups == {}
        assert env.infra.volumes == {}
        assert env.volumes.rows == {}

        row = env.databases.rows[env.db.id]
        assert row.status == "error"
        assert row.error_message == "bad device"
        assert (row.instance_id, row.security_group_id, row.volume_id) == (None, None, None)
        assert not list(tmp_path.glob("*.json"))

    @pytest.mark.asyncio
    async def test_dns_failure_does_not_fail_provisioning(self, tmp_path):
        env = make_provisioner(tmp_path)
        env.infra.fail_next("create_dns_record")

        result = await env.provisioner.provision(env.db.id)

        assert result.status == "active"
        assert result.dns_record_id is None

    @pytest.mark.asyncio
    async def test_rerun_reuses_persisted_allocations(self, tmp_path):
        env = make_provisioner(tmp_path)
        group = await env.infra.create_security_group(
            SimpleNamespace(name="db-sg", description="", rules=[])
        )
        env.databases.rows[env.db.id].security_group_id = group.id
        env.databases.rows[env.db.id].status = "provisioning"

        result = await env.provisioner.provision(env.db.id)

        assert result.status == "active"
        assert result.security_group_id == group.id
        assert len(env.infra.called("create_security_group")) == 1

    @pytest.mark.asyncio
    async def test_unwind_keeps_allocations_from_earlier_attempts(self, tmp_path):
        env = make_provisioner(tmp_path)
        group = await env.infra.create_security_group(
            SimpleNamespace(name="db-sg", description="", rules=[])
        )
        env.databases.rows[env.db.id].security_group_id = group.id
        env.infra.fail_next("attach_volume", InfraAPIError("bad device", status_code=400))

        with pytest.raises(InfraAPIError):
            await env.provisioner.provision(env.db.id)

        assert group.id in env.infra.security_groups
        assert env.databases.rows[env.db.id].security_group_id == group.id
        assert env.infra.instances == {}

    @pytest.mark.asyncio
    async def test_active_database_is_noop(self, tmp_path):
        env = make_provisioner(tmp_path, status="active")

        await env.provisioner.provision(env.db.id)

        assert env.infra.calls == []

    @pytest.mark.asyncio
    async def test_unsupported_engine(self, tmp_path):
        env = make_provisioner(tmp_path, engine="oracle")

        with pytest.raises(PermanentJobError, match="Unsupported database engine"):
            await env.provisioner.provision(env.db.id)
        assert env.infra.calls == []

    @pytest.mark.asyncio
    async def test_deleted_database(self, tmp_path):
        env = make_provisioner(tmp_path, status="deleted")

        with pytest.raises(PermanentJobError, match="deleted"):
            await env.provisioner.provision(env.db.id)

    @pytest.mark.asyncio
    async def test_missing_database(self, tmp_path):
        env = make_provisioner(tmp_path)

        with pytest.raises(PermanentJobError, match="not found"):
            await env.provisioner.provision(uuid4())
