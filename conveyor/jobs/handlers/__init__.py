"""Job handlers package.

Handlers are registered with the default_registry and called by the worker.

Handler contract:
    async def handle_<job_type>(job: Job, payload, ctx: dict) -> dict:
        - job: the claimed Job; ``job.attempts > 0`` means a retry
        - payload: the decoded payload dataclass for the job type
        - ctx: pipelines and services built at startup (see conveyor.worker)
        - Returns: summary dict, logged on completion
"""

# Import handlers to trigger registration
from conveyor.jobs.handlers import cleanup  # noqa: F401
from conveyor.jobs.handlers import deployments  # noqa: F401
from conveyor.jobs.handlers import provisioning  # noqa: F401

__all__ = ["cleanup", "deployments", "provisioning"]
