"""Tests for rollback requests and the rollback pipeline."""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from conveyor.config import Settings
from conveyor.errors import DeadlineExceeded, RollbackTargetError
from conveyor.jobs.models import RollbackPayload
from conveyor.jobs.types import JobType
from conveyor.models import Deployment, DeploymentStatus, LogPhase, Service, TriggeredBy
from conveyor.services.deploy import DeployPipeline
from conveyor.services.deployment_log import DeploymentLogger
from conveyor.services.rollback import (
    RollbackPipeline,
    request_rollback,
    validate_rollback_target,
)
from tests.unit.fakes import (
    FakeCustomDomainRepository,
    FakeDeploymentRepository,
    FakeEnvVarRepository,
    FakeServiceRepository,
    InMemoryOrchestrator,
    RecordingPublisher,
)

OLD_IMAGE = "registry.example.com/api:api-1111111"
NEW_IMAGE = "registry.example.com/api:api-2222222"


def successful(service_id, image_tag=OLD_IMAGE, **fields):
    return Deployment(
        id=uuid4(),
        service_id=service_id,
        status=DeploymentStatus.SUCCESS,
        image_tag=image_tag,
        commit_sha="1111111aaaa",
        commit_message="Fix checkout",
        commit_author="dev",
        **fields,
    )


def mock_jobs():
    jobs = MagicMock()
    jobs.create = AsyncMock(return_value=MagicMock(id=uuid4()))
    return jobs


class TestValidateRollbackTarget:
    def test_missing(self):
        with pytest.raises(RollbackTargetError, match="not found"):
            validate_rollback_target(None)

    @pytest.mark.parametrize(
        "status",
        [DeploymentStatus.FAILED, DeploymentStatus.BUILDING, DeploymentStatus.CANCELLED],
    )
    def test_unsuccessful(self, status):
        deployment = Deployment(id=uuid4(), service_id=uuid4(), status=status, image_tag=OLD_IMAGE)
        with pytest.raises(RollbackTargetError, match=status.value):
            validate_rollback_target(deployment)

    def test_no_image(self):
        with pytest.raises(RollbackTargetError, match="no image"):
            validate_rollback_target(successful(uuid4(), image_tag=None))

    def test_valid(self):
        target = successful(uuid4())
        assert validate_rollback_target(target) is target


class TestRequestRollback:
    @pytest.mark.asyncio
    async def test_creates_queued_copy_and_enqueues(self):
        target = successful(uuid4())
        deployments = FakeDeploymentRepository(target)
        jobs = mock_jobs()

        deployment, job = await request_rollback(deployments, jobs, target.id, max_attempts=5)

        assert deployment.id != target.id
        assert deployment.status == DeploymentStatus.QUEUED
        assert deployment.image_tag == OLD_IMAGE
        assert deployment.rollback_from_id == target.id
        assert deployment.triggered_by == TriggeredBy.ROLLBACK.value
        assert deployment.commit_sha == target.commit_sha
        assert deployment.commit_message == "Fix checkout"

        jobs.create.assert_awaited_once_with(
            JobType.ROLLBACK,
            {
                "deployment_id": str(deployment.id),
                "target_image_tag": OLD_IMAGE,
                "rollback_to_deployment_id": str(target.id),
            },
            max_attempts=5,
        )
        assert job is jobs.create.return_value
        assert deployments.rows[target.id].status == DeploymentStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_rejected_target_enqueues_nothing(self):
        target = Deployment(
            id=uuid4(), service_id=uuid4(), status=DeploymentStatus.FAILED, image_tag=OLD_IMAGE
        )
        deployments = FakeDeploymentRepository(target)
        jobs = mock_jobs()

        with pytest.raises(RollbackTargetError):
            await request_rollback(deployments, jobs, target.id)

        assert len(deployments.rows) == 1
        jobs.create.assert_not_awaited()


async def no_sleep(seconds):
    return None


class RollbackEnv:
    def __init__(self, ready: bool = True):
        self.service = Service(
            id=uuid4(), project_id=uuid4(), name="api", current_image_tag=NEW_IMAGE
        )
        self.target = successful(self.service.id)
        self.deployments = FakeDeploymentRepository(self.target)
        self.services = FakeServiceRepository(self.service)
        self.orchestrator = InMemoryOrchestrator(ready=ready)
        deploy_log = DeploymentLogger(self.deployments, RecordingPublisher())
        deploy = DeployPipeline(
            self.deployments,
            self.services,
            FakeEnvVarRepository(),
            FakeCustomDomainRepository(),
            self.orchestrator,
            deploy_log,
            Settings(deploy_poll_interval_s=0, deploy_ready_timeout_s=300 if ready else 0),
            sleep=no_sleep,
        )
        self.jobs = mock_jobs()
        self.pipeline = RollbackPipeline(self.deployments, self.jobs, deploy, deploy_log)

    async def request(self) -> RollbackPayload:
        deployment, _ = await self.pipeline.request_rollback(self.target.id)
        _, raw = self.jobs.create.await_args.args
        return RollbackPayload.from_dict(raw)


class TestRollbackPipeline:
    @pytest.mark.asyncio
    async def test_redeploys_target_image(self):
        env = RollbackEnv()
        payload = await env.request()

        result = await env.pipeline.run(payload)

        assert result.status == DeploymentStatus.SUCCESS
        assert env.deployments.history == [DeploymentStatus.DEPLOYING, DeploymentStatus.SUCCESS]
        assert env.services.rows[env.service.id].current_image_tag == OLD_IMAGE
        (workload,) = env.orchestrator.workloads.values()
        assert workload.image == OLD_IMAGE

        first = env.deployments.logs[0]
        assert first.message == f"Rolling back to image: {OLD_IMAGE}"
        assert first.phase == LogPhase.ROLLBACK
        assert {entry.phase for entry in env.deployments.logs} == {LogPhase.ROLLBACK}

    @pytest.mark.asyncio
    async def test_target_left_untouched(self):
        env = RollbackEnv()
        payload = await env.request()

        await env.pipeline.run(payload)

        target = env.deployments.rows[env.target.id]
        assert target.status == DeploymentStatus.SUCCESS
        assert target.finished_at is None

    @pytest.mark.asyncio
    async def test_failed_rollback_keeps_current_image(self):
        env = RollbackEnv(ready=False)
        payload = await env.request()

        with pytest.raises(DeadlineExceeded):
            await env.pipeline.run(payload)

        service = env.services.rows[env.service.id]
        assert service.current_image_tag == NEW_IMAGE
        assert service.status == "failed"
        assert env.deployments.rows[payload.deployment_id].status == DeploymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_image_mismatch_rejected_before_deploy(self):
        env = RollbackEnv()
        payload = await env.request()
        tampered = RollbackPayload(
            deployment_id=payload.deployment_id,
            target_image_tag=NEW_IMAGE,
            rollback_to_deployment_id=payload.rollback_to_deployment_id,
        )

        with pytest.raises(RollbackTargetError, match="does not match"):
            await env.pipeline.run(tampered)

        assert env.orchestrator.calls == []
        assert env.services.rows[env.service.id].current_image_tag == NEW_IMAGE

    @pytest.mark.asyncio
    async def test_target_no_longer_valid(self):
        env = RollbackEnv()
        payload = await env.request()
        env.deployments.rows[env.target.id].status = DeploymentStatus.FAILED

        with pytest.raises(RollbackTargetError):
            await env.pipeline.run(payload)
        assert env.orchestrator.calls == []

    @pytest.mark.asyncio
    async def test_completed_rollback_is_noop(self):
        env = RollbackEnv()
        payload = await env.request()
        await env.pipeline.run(payload)
        calls = list(env.orchestrator.calls)

        await env.pipeline.run(payload)

        assert env.orchestrator.calls == calls
