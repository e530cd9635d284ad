"""Retry and circuit-breaker decorator around an InfraClient."""

from typing import Optional

from conveyor.core.resilience import CircuitState, RetryConfig, with_retry
from conveyor.services.infra.base import (
    CreateDNSRecordRequest,
    CreateInstanceRequest,
    CreateSecurityGroupRequest,
    CreateVolumeRequest,
    DNSRecord,
    InfraClient,
    InfraVolume,
    Instance,
    SecurityGroup,
)


class RetryingInfraClient(InfraClient):
    """Wraps every call of ``inner`` in ``with_retry``.

    Retryable ``InfraAPIError`` and network errors back off and retry;
    anything else propagates on the first attempt. One circuit breaker is
    shared by all calls.
    """

    def __init__(
        self,
        inner: InfraClient,
        config: Optional[RetryConfig] = None,
        circuit: Optional[CircuitState] = None,
        sleep=None,
    ):
        self.inner = inner
        self.config = config or RetryConfig()
        self.circuit = circuit or CircuitState()
        self._sleep = sleep

    async def _call(self, name: str, *args):
        method = getattr(self.inner, name)
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        return await with_retry(
            lambda: method(*args),
            service=f"infra.{name}",
            circuit=self.circuit,
            config=self.config,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self.inner.aclose()

    async def create_volume(self, req: CreateVolumeRequest) -> InfraVolume:
        return await self._call("create_volume", req)

    async def attach_volume(self, volume_id: str, instance_id: str, device: str) -> None:
        await self._call("attach_volume", volume_id, instance_id, device)

    async def detach_volume(self, volume_id: str) -> None:
        await self._call("detach_volume", volume_id)

    async def delete_volume(self, volume_id: str) -> None:
        await self._call("delete_volume", volume_id)

    async def create_security_group(self, req: CreateSecurityGroupRequest) -> SecurityGroup:
        return await self._call("create_security_group", req)

    async def delete_security_group(self, group_id: str) -> None:
        await self._call("delete_security_group", group_id)

    async def create_instance(self, req: CreateInstanceRequest) -> Instance:
        return await self._call("create_instance", req)

    async def get_instance(self, instance_id: str) -> Instance:
        return await self._call("get_instance", instance_id)

    async def delete_instance(self, instance_id: str) -> None:
        await self._call("delete_instance", instance_id)

    async def stop_container(self, container_id: str) -> None:
        await self._call("stop_container", container_id)

    async def delete_container(self, container_id: str) -> None:
        await self._call("delete_container", container_id)

    async def release_floating_ip(self, floating_ip_id: str) -> None:
        await self._call("release_floating_ip", floating_ip_id)

    async def create_dns_record(self, req: CreateDNSRecordRequest) -> DNSRecord:
        return await self._call("create_dns_record", req)

    async def delete_dns_record(self, record_id: str) -> None:
        await self._call("delete_dns_record", record_id)
