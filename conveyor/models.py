"""Domain models for the rows the pipelines read and mutate."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID


class DeploymentStatus(str, Enum):
    """Deployment lifecycle statuses."""

    QUEUED = "queued"
    BUILDING = "building"
    PUSHING = "pushing"
    DEPLOYING = "deploying"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            DeploymentStatus.SUCCESS,
            DeploymentStatus.FAILED,
            DeploymentStatus.CANCELLED,
        )

    def can_transition_to(self, target: "DeploymentStatus") -> bool:
        """Forward-only transitions; failed/cancelled from any live state."""
        if self.is_terminal:
            return False
        if target in (DeploymentStatus.FAILED, DeploymentStatus.CANCELLED):
            return True
        return target in _FORWARD[self]


_FORWARD: dict[DeploymentStatus, tuple[DeploymentStatus, ...]] = {
    # queued -> deploying is the rollback path, which skips the build
    DeploymentStatus.QUEUED: (DeploymentStatus.BUILDING, DeploymentStatus.DEPLOYING),
    DeploymentStatus.BUILDING: (DeploymentStatus.PUSHING,),
    DeploymentStatus.PUSHING: (DeploymentStatus.DEPLOYING, DeploymentStatus.SUCCESS),
    DeploymentStatus.DEPLOYING: (DeploymentStatus.SUCCESS,),
}


def allowed_predecessors(target: DeploymentStatus) -> list[DeploymentStatus]:
    """Statuses from which ``target`` may be entered."""
    return [s for s in DeploymentStatus if s.can_transition_to(target)]


class TriggeredBy(str, Enum):
    MANUAL = "manual"
    WEBHOOK = "webhook"
    ROLLBACK = "rollback"
    PENDING_CHANGES = "pending_changes"


class LogPhase(str, Enum):
    CLONE = "clone"
    BUILD = "build"
    PUSH = "push"
    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ServiceStatus(str, Enum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class DatabaseStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    ERROR = "error"
    DELETED = "deleted"


class VolumeStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    AVAILABLE = "available"
    ATTACHED = "attached"
    ERROR = "error"
    DELETED = "deleted"


class VolumeBackend(str, Enum):
    """Where a volume's storage lives: an infrastructure block volume or a
    persistent volume claim in the project namespace."""

    INFRA = "infra"
    KUBERNETES = "kubernetes"


@dataclass
class Project:
    id: UUID
    name: str
    infra_tenant_id: Optional[str] = None
    infra_network_id: Optional[str] = None


@dataclass
class Service:
    id: UUID
    project_id: UUID
    name: str
    status: str = ServiceStatus.PENDING.value
    port: int = 8080
    environment: Optional[str] = None
    instance_id: Optional[str] = None
    container_id: Optional[str] = None
    floating_ip_id: Optional[str] = None
    floating_ip: Optional[str] = None
    security_group_id: Optional[str] = None
    dns_record_id: Optional[str] = None
    subdomain: Optional[str] = None
    generated_url: Optional[str] = None
    current_image_tag: Optional[str] = None


@dataclass
class GitConnection:
    id: UUID
    provider: str  # github.com, gitlab.com
    access_token: str


@dataclass
class GitSource:
    id: UUID
    service_id: UUID
    git_connection_id: Optional[UUID]
    provider: str
    repo_owner: str
    repo_name: str
    branch: str = "main"
    root_dir: str = "/"
    webhook_id: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"


@dataclass
class Deployment:
    id: UUID
    service_id: UUID
    status: DeploymentStatus
    commit_sha: Optional[str] = None
    commit_message: Optional[str] = None
    commit_author: Optional[str] = None
    image_tag: Optional[str] = None
    build_duration: Optional[int] = None
    deploy_duration: Optional[int] = None
    error_message: Optional[str] = None
    triggered_by: str = TriggeredBy.MANUAL.value
    rollback_from_id: Optional[UUID] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DeploymentLog:
    deployment_id: UUID
    phase: LogPhase
    level: LogLevel
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[int] = None

    def to_event(self) -> dict[str, Any]:
        """Shape published on the live channel."""
        return {
            "deployment_id": str(self.deployment_id),
            "timestamp": self.timestamp.isoformat(),
            "phase": self.phase.value,
            "level": self.level.value,
            "message": self.message,
            "metadata": self.metadata,
        }


@dataclass
class CustomDomain:
    id: UUID
    service_id: UUID
    domain: str
    status: str = "pending"


@dataclass
class Database:
    id: UUID
    project_id: UUID
    name: str
    engine: str  # postgresql, mysql, redis
    version: Optional[str] = None
    size: str = "small"
    status: str = DatabaseStatus.PENDING.value
    service_id: Optional[UUID] = None
    volume_id: Optional[UUID] = None
    volume_size_mb: int = 500
    internal_hostname: Optional[str] = None
    internal_ip: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    database_name: Optional[str] = None
    connection_url: Optional[str] = None
    instance_id: Optional[str] = None
    security_group_id: Optional[str] = None
    dns_record_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class Volume:
    id: UUID
    project_id: UUID
    name: str
    size_mb: int
    mount_path: Optional[str] = None
    status: str = VolumeStatus.PENDING.value
    volume_type: str = "ssd"
    backend: str = VolumeBackend.INFRA.value
    provider_volume_id: Optional[str] = None
    attached_to_service_id: Optional[UUID] = None
    attached_to_database_id: Optional[UUID] = None
    error_message: Optional[str] = None

    @property
    def is_attached(self) -> bool:
        return (
            self.attached_to_service_id is not None
            or self.attached_to_database_id is not None
        )
