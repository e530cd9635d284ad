"""Job system package."""

from conveyor.jobs.types import JobType, JobStatus
from conveyor.jobs.models import Job, decode_payload
from conveyor.jobs.registry import JobRegistry, default_registry

__all__ = [
    "JobType",
    "JobStatus",
    "Job",
    "decode_payload",
    "JobRegistry",
    "default_registry",
]
