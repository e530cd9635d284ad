"""Per-deployment structured log: persisted, then mirrored to the live channel."""

from typing import Any, Optional
from uuid import UUID

import structlog

from conveyor.models import DeploymentLog, LogLevel, LogPhase
from conveyor.repositories.deployments import DeploymentRepository
from conveyor.services.realtime import Publisher, deployment_channel

logger = structlog.get_logger(__name__)


class DeploymentLogger:
    """Writes deployment_logs rows and best-effort publishes each entry."""

    def __init__(self, deployments: DeploymentRepository, publisher: Publisher):
        self._deployments = deployments
        self._publisher = publisher

    async def log(
        self,
        deployment_id: UUID,
        phase: LogPhase,
        level: LogLevel,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> DeploymentLog:
        entry = DeploymentLog(
            deployment_id=deployment_id,
            phase=phase,
            level=level,
            message=message,
            metadata=metadata or {},
        )
        await self._deployments.add_log(entry)
        try:
            await self._publisher.publish(deployment_channel(deployment_id), entry.to_event())
        except Exception as e:
            logger.debug(
                "deployment_log_publish_failed",
                deployment_id=str(deployment_id),
                error=str(e),
            )
        return entry

    async def info(self, deployment_id: UUID, phase: LogPhase, message: str, **meta: Any):
        return await self.log(deployment_id, phase, LogLevel.INFO, message, meta)

    async def warn(self, deployment_id: UUID, phase: LogPhase, message: str, **meta: Any):
        return await self.log(deployment_id, phase, LogLevel.WARN, message, meta)

    async def error(self, deployment_id: UUID, phase: LogPhase, message: str, **meta: Any):
        return await self.log(deployment_id, phase, LogLevel.ERROR, message, meta)
