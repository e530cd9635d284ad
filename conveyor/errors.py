"""Exception taxonomy shared by the worker pool and pipelines.

PermanentJobError and its subclasses fail a job without retry. Everything
else that escapes a handler counts against the job's attempt budget.
"""

from typing import Optional


class ConveyorError(Exception):
    """Base class for conveyor errors."""


class PermanentJobError(ConveyorError):
    """Missing prerequisite data or invalid input; retrying cannot help."""


class RollbackTargetError(PermanentJobError):
    """Rollback target is not a successful deployment with an image."""


class DeploymentCancelled(PermanentJobError):
    """The deployment was cancelled while a pipeline was running."""

    def __init__(self, deployment_id):
        super().__init__(f"Deployment {deployment_id} was cancelled")
        self.deployment_id = deployment_id


class InfraAPIError(ConveyorError):
    """Infrastructure API call failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class CircuitOpenError(ConveyorError):
    """Circuit breaker is open; the call was not attempted."""


class CloneError(ConveyorError):
    """git clone or checkout failed."""


class BuildError(ConveyorError):
    """Image build or push failed."""


class OrchestratorError(ConveyorError):
    """Container orchestrator API call failed."""


class DeadlineExceeded(ConveyorError):
    """A readiness poll ran past its deadline."""


class InvalidTransitionError(ConveyorError):
    """A deployment status change would move backwards or leave a terminal state."""
