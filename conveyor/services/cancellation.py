"""Cooperative cancellation for deployment pipelines."""

from uuid import UUID

from conveyor.errors import DeploymentCancelled
from conveyor.models import DeploymentStatus
from conveyor.repositories.deployments import DeploymentRepository


class CancellationToken:
    """Re-reads the deployment status; raises once it has been cancelled.

    Pipelines call ``check`` between steps and on every poll tick.
    """

    def __init__(self, deployments: DeploymentRepository, deployment_id: UUID):
        self._deployments = deployments
        self.deployment_id = deployment_id
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def check(self) -> None:
        if not self._cancelled:
            status = await self._deployments.get_status(self.deployment_id)
            self._cancelled = status == DeploymentStatus.CANCELLED
        if self._cancelled:
            raise DeploymentCancelled(self.deployment_id)
