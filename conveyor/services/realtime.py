"""Live progress channel for deployment logs.

Publishing is a convenience for subscribed UIs; the deployment_logs table is
the durable record.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional
from uuid import UUID

import httpx
import structlog

logger = structlog.get_logger(__name__)


class PublishError(Exception):
    """Raised when the realtime server rejects or drops a publish."""


def deployment_channel(deployment_id: UUID) -> str:
    return f"deployment:{deployment_id}"


class Publisher(ABC):
    """Publishes JSON messages to named subscription channels."""

    @abstractmethod
    async def publish(self, channel: str, data: dict[str, Any]) -> None:
        ...

    async def aclose(self) -> None:
        return None


class NullPublisher(Publisher):
    """Publisher used when no realtime server is configured."""

    async def publish(self, channel: str, data: dict[str, Any]) -> None:
        return None


class CentrifugoPublisher(Publisher):
    """Publishes through the Centrifugo HTTP API."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def publish(self, channel: str, data: dict[str, Any]) -> None:
        """
        Publish one message.

        Raises:
            PublishError: On transport failure or non-2xx response
        """
        body = {"method": "publish", "params": {"channel": channel, "data": data}}
        try:
            response = await self._client.post(
                self.api_url,
                json=body,
                headers={"X-API-Key": self.api_key},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise PublishError(f"publish to {channel} failed: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


def build_publisher(settings) -> Publisher:
    """Centrifugo when both URL and key are set, otherwise a no-op."""
    if settings.centrifugo_api_url and settings.centrifugo_api_key:
        logger.info("realtime_publisher_enabled", url=settings.centrifugo_api_url)
        return CentrifugoPublisher(settings.centrifugo_api_url, settings.centrifugo_api_key)
    logger.info("realtime_publisher_disabled")
    return NullPublisher()
