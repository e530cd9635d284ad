"""In-memory infrastructure client for local development and tests."""

import uuid
from dataclasses import replace
from typing import Optional

import structlog

from conveyor.errors import InfraAPIError
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

logger = structlog.get_logger(__name__)


def _id(kind: str) -> str:
    return f"mock-{kind}-{uuid.uuid4().hex[:8]}"


class MockInfraClient(InfraClient):
    """Keeps resources in dicts. Instances turn active on their first poll.

    ``fail_next(method, error)`` makes the next call to ``method`` raise,
    and ``calls`` records every call in order.
    """

    def __init__(self):
        self.volumes: dict[str, InfraVolume] = {}
        self.security_groups: dict[str, SecurityGroup] = {}
        self.instances: dict[str, Instance] = {}
        self.dns_records: dict[str, DNSRecord] = {}
        self.stopped_containers: set[str] = set()
        self.deleted_containers: set[str] = set()
        self.released_floating_ips: set[str] = set()
        self.calls: list[tuple[str, tuple]] = []
        self._failures: dict[str, list[Exception]] = {}
        self._ip_counter = 10

    def fail_next(self, method: str, error: Optional[Exception] = None) -> None:
        self._failures.setdefault(method, []).append(
            error or InfraAPIError(f"mock {method} failure", status_code=500, retryable=True)
        )

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, args))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    async def create_volume(self, req: CreateVolumeRequest) -> InfraVolume:
        self._record("create_volume", req)
        volume = InfraVolume(
            id=_id("vol"), name=req.name, size_gb=req.size_gb, volume_type=req.volume_type
        )
        self.volumes[volume.id] = volume
        return volume

    async def attach_volume(self, volume_id: str, instance_id: str, device: str) -> None:
        self._record("attach_volume", volume_id, instance_id, device)
        volume = self.volumes.get(volume_id)
        if volume is None:
            raise InfraAPIError(f"volume {volume_id} not found", status_code=404)
        if volume.attached_to and volume.attached_to != instance_id:
            raise InfraAPIError(f"volume {volume_id} already in use", status_code=409)
        self.volumes[volume_id] = replace(volume, status="in-use", attached_to=instance_id)

    async def detach_volume(self, volume_id: str) -> None:
        self._record("detach_volume", volume_id)
        volume = self.volumes.get(volume_id)
        if volume is not None:
            self.volumes[volume_id] = replace(volume, status="available", attached_to=None)

    async def delete_volume(self, volume_id: str) -> None:
        self._record("delete_volume", volume_id)
        volume = self.volumes.get(volume_id)
        if volume is not None and volume.attached_to:
            raise InfraAPIError(f"volume {volume_id} is attached", status_code=409)
        self.volumes.pop(volume_id, None)

    async def create_security_group(self, req: CreateSecurityGroupRequest) -> SecurityGroup:
        self._record("create_security_group", req)
        group = SecurityGroup(
            id=_id("sg"), name=req.name, description=req.description, rules=list(req.rules)
        )
        self.security_groups[group.id] = group
        return group

    async def delete_security_group(self, group_id: str) -> None:
        self._record("delete_security_group", group_id)
        self.security_groups.pop(group_id, None)

    async def create_instance(self, req: CreateInstanceRequest) -> Instance:
        self._record("create_instance", req)
        self._ip_counter += 1
        instance = Instance(
            id=_id("vm"),
            name=req.name,
            status="building",
            ip_address=f"10.0.0.{self._ip_counter}",
        )
        self.instances[instance.id] = instance
        return instance

    async def get_instance(self, instance_id: str) -> Instance:
        self._record("get_instance", instance_id)
        instance = self.instances.get(instance_id)
        if instance is None:
            raise InfraAPIError(f"instance {instance_id} not found", status_code=404)
        if instance.status == "building":
            instance = replace(instance, status="active")
            self.instances[instance_id] = instance
        return instance

    async def delete_instance(self, instance_id: str) -> None:
        self._record("delete_instance", instance_id)
        self.instances.pop(instance_id, None)

    async def stop_container(self, container_id: str) -> None:
        self._record("stop_container", container_id)
        self.stopped_containers.add(container_id)

    async def delete_container(self, container_id: str) -> None:
        self._record("delete_container", container_id)
        self.deleted_containers.add(container_id)

    async def release_floating_ip(self, floating_ip_id: str) -> None:
        self._record("release_floating_ip", floating_ip_id)
        self.released_floating_ips.add(floating_ip_id)

    async def create_dns_record(self, req: CreateDNSRecordRequest) -> DNSRecord:
        self._record("create_dns_record", req)
        record = DNSRecord(
            id=_id("dns"), name=req.name, type=req.type, records=list(req.records), ttl=req.ttl
        )
        self.dns_records[record.id] = record
        return record

    async def delete_dns_record(self, record_id: str) -> None:
        self._record("delete_dns_record", record_id)
        self.dns_records.pop(record_id, None)

    def called(self, method: str) -> list[tuple]:
        """Arguments of every call to ``method``."""
        return [args for name, args in self.calls if name == method]
