"""Infrastructure API clients: HTTP, in-memory mock, and the retrying decorator."""

from typing import Callable, Optional

import structlog

from conveyor.core.resilience import RetryConfig
from conveyor.models import Project
from conveyor.services.infra.base import InfraClient
from conveyor.services.infra.http import HTTPInfraClient
from conveyor.services.infra.mock import MockInfraClient
from conveyor.services.infra.retrying import RetryingInfraClient

logger = structlog.get_logger(__name__)


def build_infra_client(settings, tenant_id: Optional[str] = None) -> InfraClient:
    """Mock or HTTP client per settings, always behind the retrying decorator.

    ``tenant_id`` scopes the HTTP client; without one the configured default
    tenant is used.
    """
    if settings.use_mock_infra:
        inner: InfraClient = MockInfraClient()
    else:
        inner = HTTPInfraClient(
            settings.infra_service_url,
            api_key=settings.infra_service_api_key,
            tenant_id=tenant_id or settings.infra_tenant_id,
            timeout=settings.infra_timeout_s,
        )
    return RetryingInfraClient(
        inner,
        config=RetryConfig(
            max_attempts=settings.infra_retry_attempts,
            base_delay_seconds=settings.infra_retry_base_delay_s,
            max_delay_seconds=settings.infra_retry_max_delay_s,
        ),
    )


class InfraClients:
    """One infrastructure client per tenant, built on first use.

    A project with its own ``infra_tenant_id`` gets a client scoped to that
    tenant; every other project shares the default tenant's client.
    """

    def __init__(
        self,
        build: Callable[[Optional[str]], InfraClient],
        default_tenant_id: Optional[str] = None,
    ):
        self._build = build
        self.default_tenant_id = default_tenant_id
        self._clients: dict[Optional[str], InfraClient] = {}

    @classmethod
    def from_settings(cls, settings) -> "InfraClients":
        return cls(
            lambda tenant_id: build_infra_client(settings, tenant_id),
            default_tenant_id=settings.infra_tenant_id,
        )

    def for_tenant(self, tenant_id: Optional[str]) -> InfraClient:
        key = tenant_id or self.default_tenant_id
        client = self._clients.get(key)
        if client is None:
            client = self._build(key)
            self._clients[key] = client
            logger.info("infra_client_created", tenant_id=key)
        return client

    def for_project(self, project: Optional[Project]) -> InfraClient:
        return self.for_tenant(project.infra_tenant_id if project else None)

    async def aclose(self) -> None:
        closed = set()
        for client in self._clients.values():
            if id(client) in closed:
                continue
            closed.add(id(client))
            await client.aclose()
        self._clients.clear()


__all__ = [
    "InfraClient",
    "InfraClients",
    "HTTPInfraClient",
    "MockInfraClient",
    "RetryingInfraClient",
    "build_infra_client",
]
