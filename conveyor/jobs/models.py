"""Job system data models.

Job payloads are stored as JSON objects. Each job type has a typed payload
dataclass; ``decode_payload`` turns the stored map into that dataclass once,
at dispatch time, so handlers never look up raw keys.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union
from uuid import UUID

from conveyor.errors import PermanentJobError
from conveyor.jobs.types import JobType, JobStatus


@dataclass
class Job:
    """A job in the queue."""

    id: UUID
    type: Union[JobType, str]  # raw string when the stored type is unknown
    status: JobStatus
    payload: dict[str, Any]

    # Retry handling
    attempts: int = 0
    max_attempts: int = 3
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None

    # Lease info
    locked_by: Optional[str] = None
    locked_until: Optional[datetime] = None

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


def _uuid(raw: dict[str, Any], key: str, required: bool = True) -> Optional[UUID]:
    value = raw.get(key)
    if value in (None, ""):
        if required:
            raise PermanentJobError(f"payload missing required key: {key}")
        return None
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise PermanentJobError(f"payload key {key} is not a valid UUID: {value!r}")


def _str(raw: dict[str, Any], key: str, required: bool = True) -> Optional[str]:
    value = raw.get(key)
    if value in (None, ""):
        if required:
            raise PermanentJobError(f"payload missing required key: {key}")
        return None
    if not isinstance(value, str):
        raise PermanentJobError(f"payload key {key} must be a string")
    return value


class _Payload:
    """Shared encode helper for payload dataclasses."""

    def to_dict(self) -> dict[str, Any]:
        out = {}
        for k, v in asdict(self).items():  # type: ignore[call-overload]
            if v is None:
                continue
            out[k] = str(v) if isinstance(v, UUID) else v
        return out


@dataclass(frozen=True)
class BuildPayload(_Payload):
    deployment_id: UUID

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "BuildPayload":
        return cls(deployment_id=_uuid(raw, "deployment_id"))


@dataclass(frozen=True)
class DeployPayload(_Payload):
    """Build then deploy, chained."""

    deployment_id: UUID

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "DeployPayload":
        return cls(deployment_id=_uuid(raw, "deployment_id"))


@dataclass(frozen=True)
class RollbackPayload(_Payload):
    deployment_id: UUID
    target_image_tag: str
    rollback_to_deployment_id: UUID

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "RollbackPayload":
        return cls(
            deployment_id=_uuid(raw, "deployment_id"),
            target_image_tag=_str(raw, "target_image_tag"),
            rollback_to_deployment_id=_uuid(raw, "rollback_to_deployment_id"),
        )


@dataclass(frozen=True)
class CleanupServicePayload(_Payload):
    service_id: UUID

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CleanupServicePayload":
        return cls(service_id=_uuid(raw, "service_id"))


@dataclass(frozen=True)
class CleanupProjectPayload(_Payload):
    project_id: UUID

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CleanupProjectPayload":
        return cls(project_id=_uuid(raw, "project_id"))


@dataclass(frozen=True)
class ProvisionDatabasePayload(_Payload):
    database_id: UUID

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ProvisionDatabasePayload":
        return cls(database_id=_uuid(raw, "database_id"))


@dataclass(frozen=True)
class ProvisionVolumePayload(_Payload):
    volume_id: UUID

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ProvisionVolumePayload":
        return cls(volume_id=_uuid(raw, "volume_id"))


@dataclass(frozen=True)
class AttachVolumePayload(_Payload):
    """Attach a volume to exactly one of a service or a database."""

    volume_id: UUID
    service_id: Optional[UUID] = None
    database_id: Optional[UUID] = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "AttachVolumePayload":
        payload = cls(
            volume_id=_uuid(raw, "volume_id"),
            service_id=_uuid(raw, "service_id", required=False),
            database_id=_uuid(raw, "database_id", required=False),
        )
        if (payload.service_id is None) == (payload.database_id is None):
            raise PermanentJobError(
                "attach_volume payload needs exactly one of service_id or database_id"
            )
        return payload


@dataclass(frozen=True)
class VolumePayload(_Payload):
    """Detach or delete a volume."""

    volume_id: UUID

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "VolumePayload":
        return cls(volume_id=_uuid(raw, "volume_id"))


@dataclass(frozen=True)
class ResizeVolumePayload(_Payload):
    volume_id: UUID
    size_mb: int

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ResizeVolumePayload":
        size_mb = raw.get("size_mb")
        if isinstance(size_mb, bool) or not isinstance(size_mb, int) or size_mb <= 0:
            raise PermanentJobError(
                f"payload key size_mb must be a positive integer: {size_mb!r}"
            )
        return cls(volume_id=_uuid(raw, "volume_id"), size_mb=size_mb)


PAYLOAD_TYPES: dict[JobType, type] = {
    JobType.BUILD: BuildPayload,
    JobType.DEPLOY: DeployPayload,
    JobType.ROLLBACK: RollbackPayload,
    JobType.CLEANUP_SERVICE: CleanupServicePayload,
    JobType.CLEANUP_PROJECT: CleanupProjectPayload,
    JobType.PROVISION_DATABASE: ProvisionDatabasePayload,
    JobType.PROVISION_VOLUME: ProvisionVolumePayload,
    JobType.ATTACH_VOLUME: AttachVolumePayload,
    JobType.DETACH_VOLUME: VolumePayload,
    JobType.DELETE_VOLUME: VolumePayload,
    JobType.RESIZE_VOLUME: ResizeVolumePayload,
}


def decode_payload(job_type: JobType, raw: Optional[dict[str, Any]]) -> Any:
    """Decode a stored payload into the dataclass for ``job_type``.

    Raises:
        PermanentJobError: payload is not a map, or a required key is
            missing or malformed
    """
    if not isinstance(raw, dict):
        raise PermanentJobError(f"{job_type.value} payload must be an object")
    payload_cls = PAYLOAD_TYPES.get(job_type)
    if payload_cls is None:
        raise PermanentJobError(f"no payload type for job type: {job_type.value}")
    return payload_cls.from_dict(raw)

