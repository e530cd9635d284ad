"""Container orchestrator capability interface, object specs and naming."""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

LABEL_PREFIX = "conveyor.dev"


def namespace_name(prefix: str, project_id: UUID) -> str:
    return f"{prefix}{project_id}"


def _short(service_id: UUID) -> str:
    return str(service_id)[:8]


def workload_name(service_id: UUID) -> str:
    return f"svc-{_short(service_id)}"


def network_service_name(service_id: UUID) -> str:
    return f"svc-{_short(service_id)}"


def secret_name(service_id: UUID) -> str:
    return f"env-{_short(service_id)}"


def ingress_name(service_id: UUID) -> str:
    return f"ing-{_short(service_id)}"


def claim_name(volume_id: UUID) -> str:
    return f"vol-{_short(volume_id)}"


def slugify(name: str) -> str:
    """Lowercase DNS-safe form of a service name."""
    slug = re.sub(r"[\s_]+", "-", name.strip().lower())
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    return re.sub(r"-{2,}", "-", slug).strip("-") or "service"


def service_hostname(name: str, environment: Optional[str], base_domain: str) -> str:
    return f"{slugify(name)}-{environment or 'prod'}.{base_domain}"


def service_labels(service_id: UUID, service_name: str, project_id: UUID) -> dict[str, str]:
    return {
        f"{LABEL_PREFIX}/service-id": str(service_id),
        f"{LABEL_PREFIX}/project-id": str(project_id),
        f"{LABEL_PREFIX}/service-name": slugify(service_name),
        "app.kubernetes.io/managed-by": "conveyor",
    }


def selector_labels(service_id: UUID) -> dict[str, str]:
    return {f"{LABEL_PREFIX}/service-id": str(service_id)}


@dataclass
class VolumeMount:
    """A persistent volume claim mounted into the workload container."""

    name: str
    claim_name: str
    mount_path: str


@dataclass
class WorkloadSpec:
    namespace: str
    name: str
    container_name: str
    image: str
    port: int
    labels: dict[str, str]
    selector: dict[str, str]
    replicas: int = 1
    env_secret: Optional[str] = None
    health_path: Optional[str] = "/health"
    volume_mounts: list[VolumeMount] = field(default_factory=list)


@dataclass
class WorkloadStatus:
    replicas: int
    ready_replicas: int
    available_replicas: int
    updated_replicas: int = 0
    observed_generation: int = 0
    generation: int = 0

    @property
    def available(self) -> bool:
        """Rollout finished: the controller saw the latest spec and every
        desired replica runs the new template and passes readiness."""
        return (
            self.observed_generation >= self.generation
            and self.updated_replicas == self.replicas
            and self.ready_replicas >= self.replicas
        )


@dataclass
class NetworkServiceSpec:
    namespace: str
    name: str
    port: int
    target_port: int
    selector: dict[str, str]
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class IngressSpec:
    namespace: str
    name: str
    hosts: list[str]
    service_name: str
    service_port: int
    ingress_class: str = "nginx"
    cert_issuer: Optional[str] = None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ClaimSpec:
    """A persistent volume claim backing one volume row."""

    namespace: str
    name: str
    size_mb: int
    labels: dict[str, str] = field(default_factory=dict)
    storage_class: str = "longhorn"
    access_mode: str = "ReadWriteOnce"


@dataclass
class ClaimStatus:
    phase: str  # Pending, Bound, Lost
    capacity_mb: int = 0

    @property
    def bound(self) -> bool:
        return self.phase == "Bound"


class Orchestrator(ABC):
    """Namespaces, secrets, workloads, network services, ingress routes and
    persistent volume claims.

    Upserts are idempotent; deletes treat a missing object as success.
    """

    @abstractmethod
    async def ensure_namespace(self, namespace: str) -> None: ...

    @abstractmethod
    async def delete_namespace(self, namespace: str) -> None: ...

    @abstractmethod
    async def upsert_secret(self, namespace: str, name: str, data: dict[str, str]) -> None: ...

    @abstractmethod
    async def delete_secret(self, namespace: str, name: str) -> None: ...

    @abstractmethod
    async def get_workload_status(self, namespace: str, name: str) -> Optional[WorkloadStatus]:
        """Replica counts, or None when the workload does not exist."""

    @abstractmethod
    async def create_workload(self, spec: WorkloadSpec) -> None: ...

    @abstractmethod
    async def update_workload(self, spec: WorkloadSpec) -> None: ...

    @abstractmethod
    async def delete_workload(self, namespace: str, name: str) -> None: ...

    @abstractmethod
    async def upsert_network_service(self, spec: NetworkServiceSpec) -> None: ...

    @abstractmethod
    async def delete_network_service(self, namespace: str, name: str) -> None: ...

    @abstractmethod
    async def upsert_ingress(self, spec: IngressSpec) -> None: ...

    @abstractmethod
    async def delete_ingress(self, namespace: str, name: str) -> None: ...

    @abstractmethod
    async def create_claim(self, spec: ClaimSpec) -> None: ...

    @abstractmethod
    async def get_claim_status(self, namespace: str, name: str) -> Optional[ClaimStatus]:
        """Phase and capacity, or None when the claim does not exist."""

    @abstractmethod
    async def resize_claim(self, namespace: str, name: str, size_mb: int) -> None:
        """Raise the storage request; the storage class must allow expansion."""

    @abstractmethod
    async def delete_claim(self, namespace: str, name: str) -> None: ...

    async def aclose(self) -> None:
        return None
