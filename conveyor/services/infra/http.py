"""HTTP implementation of the infrastructure API client."""

from dataclasses import asdict
from typing import Any, Optional

import httpx
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
    SecurityGroupRule,
)

logger = structlog.get_logger(__name__)


class HTTPInfraClient(InfraClient):
    """Talks JSON over REST to the infrastructure service.

    Transport errors, timeouts, 429 and 5xx become retryable
    ``InfraAPIError``; other 4xx responses are not retryable.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        tenant_id: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if tenant_id:
            headers["X-Tenant-ID"] = tenant_id
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
        missing_ok: bool = False,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TransportError as e:
            raise InfraAPIError(f"{method} {path}: {e}", retryable=True) from e

        if response.status_code == 404 and missing_ok:
            logger.info("infra_resource_already_gone", path=path)
            return {}
        if response.status_code >= 400:
            retryable = response.status_code == 429 or response.status_code >= 500
            raise InfraAPIError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                retryable=retryable,
            )
        if not response.content:
            return {}
        return response.json()

    async def create_volume(self, req: CreateVolumeRequest) -> InfraVolume:
        data = await self._request("POST", "/api/volumes", json=asdict(req))
        return InfraVolume(
            id=data["id"],
            name=data.get("name", req.name),
            size_gb=data.get("size_gb", req.size_gb),
            status=data.get("status", "available"),
            attached_to=data.get("attached_to"),
            volume_type=data.get("volume_type", req.volume_type),
        )

    async def attach_volume(self, volume_id: str, instance_id: str, device: str) -> None:
        await self._request(
            "POST",
            f"/api/volumes/{volume_id}/attach",
            json={"instance_id": instance_id, "device": device},
        )

    async def detach_volume(self, volume_id: str) -> None:
        await self._request("POST", f"/api/volumes/{volume_id}/detach", missing_ok=True)

    async def delete_volume(self, volume_id: str) -> None:
        await self._request("DELETE", f"/api/volumes/{volume_id}", missing_ok=True)

    async def create_security_group(self, req: CreateSecurityGroupRequest) -> SecurityGroup:
        data = await self._request("POST", "/api/security-groups", json=asdict(req))
        return SecurityGroup(
            id=data["id"],
            name=data.get("name", req.name),
            description=data.get("description", req.description),
            rules=[SecurityGroupRule(**r) for r in data.get("rules", [])] or req.rules,
        )

    async def delete_security_group(self, group_id: str) -> None:
        await self._request("DELETE", f"/api/security-groups/{group_id}", missing_ok=True)

    async def create_instance(self, req: CreateInstanceRequest) -> Instance:
        data = await self._request("POST", "/api/instances", json=asdict(req))
        return self._instance(data)

    async def get_instance(self, instance_id: str) -> Instance:
        data = await self._request("GET", f"/api/instances/{instance_id}")
        return self._instance(data)

    async def delete_instance(self, instance_id: str) -> None:
        await self._request("DELETE", f"/api/instances/{instance_id}", missing_ok=True)

    async def stop_container(self, container_id: str) -> None:
        await self._request("POST", f"/api/containers/{container_id}/stop", missing_ok=True)

    async def delete_container(self, container_id: str) -> None:
        await self._request("DELETE", f"/api/containers/{container_id}", missing_ok=True)

    async def release_floating_ip(self, floating_ip_id: str) -> None:
        await self._request("DELETE", f"/api/floating-ips/{floating_ip_id}", missing_ok=True)

    async def create_dns_record(self, req: CreateDNSRecordRequest) -> DNSRecord:
        data = await self._request("POST", "/api/dns/records", json=asdict(req))
        return DNSRecord(
            id=data["id"],
            name=data.get("name", req.name),
            type=data.get("type", req.type),
            records=data.get("records", req.records),
            ttl=data.get("ttl", req.ttl),
        )

    async def delete_dns_record(self, record_id: str) -> None:
        await self._request("DELETE", f"/api/dns/records/{record_id}", missing_ok=True)

    def _instance(self, data: dict[str, Any]) -> Instance:
        return Instance(
            id=data["id"],
            name=data.get("name", ""),
            status=data.get("status", "building"),
            ip_address=data.get("ip_address"),
            floating_ip=data.get("floating_ip"),
        )
