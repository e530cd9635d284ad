"""Tests for the deployment status machine."""

from uuid import uuid4

from conveyor.models import DeploymentStatus, Volume, allowed_predecessors

S = DeploymentStatus


class TestDeploymentStatus:
    def test_forward_path(self):
        assert S.QUEUED.can_transition_to(S.BUILDING)
        assert S.BUILDING.can_transition_to(S.PUSHING)
        assert S.PUSHING.can_transition_to(S.DEPLOYING)
        assert S.PUSHING.can_transition_to(S.SUCCESS)
        assert S.DEPLOYING.can_transition_to(S.SUCCESS)

    def test_rollback_skips_build(self):
        assert S.QUEUED.can_transition_to(S.DEPLOYING)

    def test_no_backward_moves(self):
        assert not S.PUSHING.can_transition_to(S.BUILDING)
        assert not S.DEPLOYING.can_transition_to(S.QUEUED)
        assert not S.QUEUED.can_transition_to(S.SUCCESS)

    def test_terminal_states_are_final(self):
        for terminal in (S.SUCCESS, S.FAILED, S.CANCELLED):
            assert terminal.is_terminal
            assert not any(terminal.can_transition_to(target) for target in S)

    def test_fail_and_cancel_from_any_live_state(self):
        for live in (S.QUEUED, S.BUILDING, S.PUSHING, S.DEPLOYING):
            assert live.can_transition_to(S.FAILED)
            assert live.can_transition_to(S.CANCELLED)

    def test_allowed_predecessors(self):
        assert allowed_predecessors(S.DEPLOYING) == [S.QUEUED, S.PUSHING]
        assert allowed_predecessors(S.SUCCESS) == [S.PUSHING, S.DEPLOYING]


class TestVolume:
    def test_is_attached(self):
        volume = Volume(id=uuid4(), project_id=uuid4(), name="data", size_mb=1024)
        assert not volume.is_attached
        volume.attached_to_database_id = uuid4()
        assert volume.is_attached
