"""Job system type definitions."""

from enum import Enum


class JobType(str, Enum):
    """Job types drained by the worker pool."""

    BUILD = "build"
    DEPLOY = "deploy"
    ROLLBACK = "rollback"
    CLEANUP_SERVICE = "cleanup_service"
    CLEANUP_PROJECT = "cleanup_project"
    PROVISION_DATABASE = "provision_database"
    PROVISION_VOLUME = "provision_volume"
    ATTACH_VOLUME = "attach_volume"
    DETACH_VOLUME = "detach_volume"
    DELETE_VOLUME = "delete_volume"
    RESIZE_VOLUME = "resize_volume"


class JobStatus(str, Enum):
    """Job lifecycle statuses."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (job won't change)."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)
