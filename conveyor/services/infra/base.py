"""Infrastructure API capability interface and its request/response types."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import structlog

from conveyor.errors import DeadlineExceeded, InfraAPIError

logger = structlog.get_logger(__name__)


@dataclass
class CreateVolumeRequest:
    name: str
    size_gb: int
    volume_type: str = "ssd"


@dataclass
class InfraVolume:
    id: str
    name: str
    size_gb: int
    status: str = "available"  # available, in-use, error
    attached_to: Optional[str] = None
    volume_type: str = "ssd"


@dataclass
class SecurityGroupRule:
    direction: str  # ingress, egress
    protocol: str  # tcp, udp, icmp
    port_min: int
    port_max: int
    remote_ip: str  # CIDR


@dataclass
class CreateSecurityGroupRequest:
    name: str
    description: str
    rules: list[SecurityGroupRule] = field(default_factory=list)


@dataclass
class SecurityGroup:
    id: str
    name: str
    description: str = ""
    rules: list[SecurityGroupRule] = field(default_factory=list)


@dataclass
class CreateInstanceRequest:
    name: str
    flavor_id: str
    image_id: str
    network_id: Optional[str] = None
    security_groups: list[str] = field(default_factory=list)
    user_data: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class Instance:
    id: str
    name: str
    status: str  # building, active, error, deleted
    ip_address: Optional[str] = None
    floating_ip: Optional[str] = None


@dataclass
class CreateDNSRecordRequest:
    zone_id: Optional[str]
    name: str
    type: str  # A, AAAA, CNAME
    records: list[str]
    ttl: int = 300


@dataclass
class DNSRecord:
    id: str
    name: str
    type: str
    records: list[str]
    ttl: int = 300


class InfraClient(ABC):
    """Compute, block storage, network policy and DNS operations.

    Delete operations treat an already-missing resource as success.
    """

    @abstractmethod
    async def create_volume(self, req: CreateVolumeRequest) -> InfraVolume: ...

    @abstractmethod
    async def attach_volume(self, volume_id: str, instance_id: str, device: str) -> None: ...

    @abstractmethod
    async def detach_volume(self, volume_id: str) -> None: ...

    @abstractmethod
    async def delete_volume(self, volume_id: str) -> None: ...

    @abstractmethod
    async def create_security_group(self, req: CreateSecurityGroupRequest) -> SecurityGroup: ...

    @abstractmethod
    async def delete_security_group(self, group_id: str) -> None: ...

    @abstractmethod
    async def create_instance(self, req: CreateInstanceRequest) -> Instance: ...

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Instance: ...

    @abstractmethod
    async def delete_instance(self, instance_id: str) -> None: ...

    @abstractmethod
    async def stop_container(self, container_id: str) -> None: ...

    @abstractmethod
    async def delete_container(self, container_id: str) -> None: ...

    @abstractmethod
    async def release_floating_ip(self, floating_ip_id: str) -> None: ...

    @abstractmethod
    async def create_dns_record(self, req: CreateDNSRecordRequest) -> DNSRecord: ...

    @abstractmethod
    async def delete_dns_record(self, record_id: str) -> None: ...

    async def aclose(self) -> None:
        return None

    async def wait_for_instance_status(
        self,
        instance_id: str,
        status: str,
        timeout: float,
        interval: float = 5.0,
    ) -> Instance:
        """Poll ``get_instance`` until it reports ``status``.

        Raises:
            DeadlineExceeded: status not reached within ``timeout`` seconds
            InfraAPIError: the instance went to ``error``
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            instance = await self.get_instance(instance_id)
            if instance.status == status:
                return instance
            if instance.status == "error":
                raise InfraAPIError(f"Instance {instance_id} entered error state")
            if loop.time() >= deadline:
                raise DeadlineExceeded(
                    f"Instance {instance_id} not {status} after {timeout:.0f}s "
                    f"(last status: {instance.status})"
                )
            logger.debug("instance_wait", instance_id=instance_id, status=instance.status)
            await asyncio.sleep(interval)
