"""Container registry helpers: deterministic image tags and push verification."""

from typing import Optional
from urllib.parse import urlparse

import httpx
import structlog

from conveyor.services.orchestrator.base import slugify

logger = structlog.get_logger(__name__)

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)


def _parse(registry_url: str):
    return urlparse(registry_url if "://" in registry_url else f"https://{registry_url}")


def registry_host(registry_url: str) -> str:
    """Host (and port) of the registry, without any repository namespace."""
    return _parse(registry_url).netloc


def registry_namespace(registry_url: str) -> str:
    """Repository namespace carried in the URL path, e.g. ``team`` in
    ``registry.example.com/team``; empty when there is none."""
    return _parse(registry_url).path.strip("/")


def image_tag(registry_url: str, service_name: str, commit_sha: Optional[str]) -> str:
    """``<registry>[/<namespace>]/<slug>:<slug>-<sha>``; ``latest`` stands in for a missing sha."""
    slug = slugify(service_name)
    repo = "/".join(part for part in (registry_namespace(registry_url), slug) if part)
    return f"{registry_host(registry_url)}/{repo}:{slug}-{commit_sha or 'latest'}"


def split_image_tag(tag: str) -> tuple[str, str, str]:
    """Split ``host/repo:ref`` into (host, repo, ref)."""
    host, _, rest = tag.partition("/")
    repo, _, ref = rest.rpartition(":")
    return host, repo, ref


class RegistryClient:
    """Checks the registry v2 API for a pushed manifest."""

    def __init__(
        self,
        registry_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        parsed = _parse(registry_url)
        # the v2 API lives at the host root whatever namespace the URL names
        self.api_base = f"{parsed.scheme}://{parsed.netloc}"
        auth = (username, password) if username and password else None
        self._client = httpx.AsyncClient(auth=auth, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def verify_image(self, tag: str) -> bool:
        """
        True when the manifest for ``tag`` exists.

        Raises:
            httpx.HTTPError: On transport failure or an unexpected status
        """
        _, repo, ref = split_image_tag(tag)
        url = f"{self.api_base}/v2/{repo}/manifests/{ref}"
        response = await self._client.head(url, headers={"Accept": MANIFEST_ACCEPT})
        if response.status_code == 404:
            return False
        response.raise_for_status()
        logger.info("registry_image_verified", image=tag)
        return True
