"""Tests for job models and payload decoding."""

from uuid import uuid4

import pytest

from conveyor.errors import PermanentJobError
from conveyor.jobs.models import (
    AttachVolumePayload,
    BuildPayload,
    Job,
    PAYLOAD_TYPES,
    ResizeVolumePayload,
    RollbackPayload,
    decode_payload,
)
from conveyor.jobs.types import JobStatus, JobType


class TestJob:
    def test_defaults(self):
        job = Job(id=uuid4(), type=JobType.BUILD, status=JobStatus.PENDING, payload={})
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.locked_by is None
        assert job.run_at is not None


class TestDecodePayload:
    def test_build_payload(self):
        deployment_id = uuid4()
        payload = decode_payload(JobType.BUILD, {"deployment_id": str(deployment_id)})
        assert isinstance(payload, BuildPayload)
        assert payload.deployment_id == deployment_id

    def test_missing_required_key_is_permanent(self):
        with pytest.raises(PermanentJobError, match="deployment_id"):
            decode_payload(JobType.DEPLOY, {})

    def test_malformed_uuid_is_permanent(self):
        with pytest.raises(PermanentJobError, match="not a valid UUID"):
            decode_payload(JobType.CLEANUP_SERVICE, {"service_id": "not-a-uuid"})

    def test_non_object_payload_is_permanent(self):
        with pytest.raises(PermanentJobError):
            decode_payload(JobType.BUILD, ["deployment_id"])

    def test_rollback_payload(self):
        raw = {
            "deployment_id": str(uuid4()),
            "target_image_tag": "registry.localhost/api:api-abc",
            "rollback_to_deployment_id": str(uuid4()),
        }
        payload = decode_payload(JobType.ROLLBACK, raw)
        assert isinstance(payload, RollbackPayload)
        assert payload.target_image_tag == "registry.localhost/api:api-abc"
        assert payload.to_dict() == raw

    def test_rollback_requires_image_tag(self):
        raw = {"deployment_id": str(uuid4()), "rollback_to_deployment_id": str(uuid4())}
        with pytest.raises(PermanentJobError, match="target_image_tag"):
            decode_payload(JobType.ROLLBACK, raw)

    def test_attach_needs_exactly_one_target(self):
        volume_id = str(uuid4())
        with pytest.raises(PermanentJobError, match="exactly one"):
            decode_payload(JobType.ATTACH_VOLUME, {"volume_id": volume_id})
        with pytest.raises(PermanentJobError, match="exactly one"):
            decode_payload(
                JobType.ATTACH_VOLUME,
                {"volume_id": volume_id, "service_id": str(uuid4()), "database_id": str(uuid4())},
            )

    def test_attach_to_service(self):
        service_id = uuid4()
        payload = decode_payload(
            JobType.ATTACH_VOLUME, {"volume_id": str(uuid4()), "service_id": str(service_id)}
        )
        assert isinstance(payload, AttachVolumePayload)
        assert payload.service_id == service_id
        assert "database_id" not in payload.to_dict()

    def test_every_job_type_decodes(self):
        assert set(PAYLOAD_TYPES) == set(JobType)

    def test_resize_payload(self):
        volume_id = uuid4()
        payload = decode_payload(
            JobType.RESIZE_VOLUME, {"volume_id": str(volume_id), "size_mb": 4096}
        )
        assert payload == ResizeVolumePayload(volume_id=volume_id, size_mb=4096)
        assert payload.to_dict() == {"volume_id": str(volume_id), "size_mb": 4096}

    @pytest.mark.parametrize("size_mb", [None, 0, -1, "4096", 1.5, True])
    def test_resize_needs_positive_size(self, size_mb):
        with pytest.raises(PermanentJobError, match="size_mb"):
            decode_payload(JobType.RESIZE_VOLUME, {"volume_id": str(uuid4()), "size_mb": size_mb})
