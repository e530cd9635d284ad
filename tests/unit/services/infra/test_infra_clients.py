"""Tests for the infrastructure API clients."""

import json
from unittest.mock import AsyncMock
from uuid import uuid4

import httpx
import pytest

from conveyor.config import Settings
from conveyor.core.resilience import RetryConfig
from conveyor.errors import DeadlineExceeded, InfraAPIError
from conveyor.models import Project
from conveyor.services.infra import (
    HTTPInfraClient,
    InfraClients,
    MockInfraClient,
    RetryingInfraClient,
    build_infra_client,
)
from conveyor.services.infra.base import (
    CreateInstanceRequest,
    CreateSecurityGroupRequest,
    CreateVolumeRequest,
    Instance,
    SecurityGroupRule,
)


async def no_sleep(seconds):
    return None


def http_client(handler):
    return HTTPInfraClient(
        "http://infra.local/",
        api_key="key",
        tenant_id="tenant-1",
        transport=httpx.MockTransport(handler),
    )


class TestHTTPInfraClient:
    @pytest.mark.asyncio
    async def test_create_volume(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": "vol-1", "name": "db-1", "size_gb": 1})

        client = http_client(handler)
        volume = await client.create_volume(CreateVolumeRequest(name="db-1", size_gb=1))
        await client.aclose()

        assert volume.id == "vol-1"
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/api/volumes"
        assert seen[0].headers["Authorization"] == "Bearer key"
        assert seen[0].headers["X-Tenant-ID"] == "tenant-1"
        assert json.loads(seen[0].content) == {"name": "db-1", "size_gb": 1, "volume_type": "ssd"}

    @pytest.mark.asyncio
    async def test_security_group_rules_serialized(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "sg-1"})

        client = http_client(handler)
        rule = SecurityGroupRule("ingress", "tcp", 5432, 5432, "10.0.0.0/8")
        group = await client.create_security_group(
            CreateSecurityGroupRequest(name="db-sg", description="d", rules=[rule])
        )

        assert bodies[0]["rules"][0]["port_min"] == 5432
        assert group.rules == [rule]

    @pytest.mark.asyncio
    async def test_delete_missing_resource_is_success(self):
        client = http_client(lambda request: httpx.Response(404))
        await client.delete_instance("vm-gone")
        await client.delete_volume("vol-gone")
        await client.release_floating_ip("fip-gone")

    @pytest.mark.asyncio
    async def test_get_missing_instance_raises(self):
        client = http_client(lambda request: httpx.Response(404, text="not found"))
        with pytest.raises(InfraAPIError) as exc_info:
            await client.get_instance("vm-gone")
        assert exc_info.value.status_code == 404
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_server_errors_are_retryable(self):
        client = http_client(lambda request: httpx.Response(503))
        with pytest.raises(InfraAPIError) as exc_info:
            await client.create_instance(
                CreateInstanceRequest(name="vm", flavor_id="small", image_id="postgresql-14")
            )
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_transport_errors_are_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = http_client(handler)
        with pytest.raises(InfraAPIError) as exc_info:
            await client.get_instance("vm-1")
        assert exc_info.value.retryable


class TestMockInfraClient:
    @pytest.mark.asyncio
    async def test_instances_become_active_on_first_poll(self):
        infra = MockInfraClient()
        instance = await infra.create_instance(
            CreateInstanceRequest(name="vm", flavor_id="small", image_id="redis-7")
        )
        assert instance.status == "building"

        ready = await infra.wait_for_instance_status(instance.id, "active", timeout=1, interval=0)
        assert ready.status == "active"
        assert ready.ip_address.startswith("10.0.0.")

    @pytest.mark.asyncio
    async def test_fail_next_raises_once(self):
        infra = MockInfraClient()
        infra.fail_next("delete_instance")

        with pytest.raises(InfraAPIError):
            await infra.delete_instance("vm-1")
        await infra.delete_instance("vm-1")
        assert infra.called("delete_instance") == [("vm-1",), ("vm-1",)]

    @pytest.mark.asyncio
    async def test_attached_volume_cannot_be_deleted(self):
        infra = MockInfraClient()
        volume = await infra.create_volume(CreateVolumeRequest(name="data", size_gb=1))
        await infra.attach_volume(volume.id, "vm-1", "/dev/vdc")

        with pytest.raises(InfraAPIError):
            await infra.delete_volume(volume.id)
        await infra.detach_volume(volume.id)
        await infra.delete_volume(volume.id)
        assert volume.id not in infra.volumes


class TestWaitForInstanceStatus:
    @pytest.mark.asyncio
    async def test_error_state_raises(self):
        infra = MockInfraClient()
        infra.instances["vm-1"] = Instance(id="vm-1", name="vm", status="error")

        with pytest.raises(InfraAPIError, match="error state"):
            await infra.wait_for_instance_status("vm-1", "active", timeout=1, interval=0)

    @pytest.mark.asyncio
    async def test_deadline(self):
        infra = MockInfraClient()
        infra.instances["vm-1"] = Instance(id="vm-1", name="vm", status="active")

        with pytest.raises(DeadlineExceeded):
            await infra.wait_for_instance_status("vm-1", "shutoff", timeout=0, interval=0)


class TestRetryingInfraClient:
    @pytest.mark.asyncio
    async def test_retries_retryable_failures(self):
        inner = MockInfraClient()
        inner.fail_next("delete_dns_record")
        inner.fail_next("delete_dns_record")
        infra = RetryingInfraClient(inner, config=RetryConfig(max_attempts=3), sleep=no_sleep)

        await infra.delete_dns_record("dns-1")

        assert len(inner.called("delete_dns_record")) == 3

    @pytest.mark.asyncio
    async def test_does_not_retry_client_errors(self):
        inner = MockInfraClient()
        inner.fail_next("create_volume", InfraAPIError("quota exceeded", status_code=403))
        infra = RetryingInfraClient(inner, sleep=no_sleep)

        with pytest.raises(InfraAPIError, match="quota"):
            await infra.create_volume(CreateVolumeRequest(name="data", size_gb=1))
        assert len(inner.called("create_volume")) == 1

    def test_build_infra_client_wraps_mock(self):
        infra = build_infra_client(Settings(use_mock_infra=True, infra_retry_attempts=5))
        assert isinstance(infra, RetryingInfraClient)
        assert isinstance(infra.inner, MockInfraClient)
        assert infra.config.max_attempts == 5

    def test_build_infra_client_scopes_tenant(self):
        settings = Settings(infra_service_url="http://infra.local", infra_tenant_id="tenant-default")

        scoped = build_infra_client(settings, "tenant-shop")
        default = build_infra_client(settings)

        assert scoped.inner._client.headers["X-Tenant-ID"] == "tenant-shop"
        assert default.inner._client.headers["X-Tenant-ID"] == "tenant-default"


class TestInfraClients:
    def test_one_client_per_tenant(self):
        built = []

        def build(tenant_id):
            built.append(tenant_id)
            return MockInfraClient()

        clients = InfraClients(build, default_tenant_id="tenant-default")

        first = clients.for_tenant("tenant-a")
        assert clients.for_tenant("tenant-a") is first
        assert clients.for_tenant("tenant-b") is not first
        assert built == ["tenant-a", "tenant-b"]

    def test_project_without_tenant_uses_default(self):
        built = []
        clients = InfraClients(
            lambda tenant_id: built.append(tenant_id) or MockInfraClient(),
            default_tenant_id="tenant-default",
        )

        clients.for_project(Project(id=uuid4(), name="shop"))
        clients.for_tenant(None)
        clients.for_project(None)

        assert built == ["tenant-default"]

    @pytest.mark.asyncio
    async def test_aclose_closes_each_client_once(self):
        shared = AsyncMock(spec=MockInfraClient)
        clients = InfraClients(lambda tenant_id: shared)
        clients.for_tenant("a")
        clients.for_tenant("b")

        await clients.aclose()

        shared.aclose.assert_awaited_once()
