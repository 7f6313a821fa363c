"""Unit tests for the per-domain deployment state machine."""

from __future__ import annotations

import pytest

from fleetdeploy.domain.errors import InvalidStateTransitionError, ReasonCode
from fleetdeploy.domain.models.deployment_state import (
    DeploymentState,
    DeploymentStatus,
    RollbackAction,
    RollbackActionType,
    StateDocument,
    TransitionMetadata,
    VALID_TRANSITIONS,
)


def _state() -> DeploymentState:
    return DeploymentState(domain="acme.example.com", environment="production")


def _advance(state: DeploymentState, *statuses: DeploymentStatus) -> None:
    for status in statuses:
        state.apply_transition(status)


class TestDeploymentState:
    def test_defaults(self) -> None:
        state = _state()
        assert state.status == DeploymentStatus.PENDING
        assert state.deployment_id.startswith("deploy-")
        assert state.audit_trail_ref == state.deployment_id
        assert state.key == "acme.example.com:production"
        assert state.rollback_actions == []

    def test_happy_path(self) -> None:
        state = _state()
        _advance(
            state,
            DeploymentStatus.VALIDATING,
            DeploymentStatus.MIGRATING,
            DeploymentStatus.DEPLOYING,
            DeploymentStatus.DEPLOYED,
        )
        assert state.status == DeploymentStatus.DEPLOYED
        assert state.is_terminal
        assert state.version == 5

    def test_any_in_flight_stage_can_fail(self) -> None:
        for stage in (
            DeploymentStatus.PENDING,
            DeploymentStatus.VALIDATING,
            DeploymentStatus.MIGRATING,
            DeploymentStatus.DEPLOYING,
        ):
            assert DeploymentStatus.FAILED in VALID_TRANSITIONS[stage]

    def test_cannot_skip_stages(self) -> None:
        state = _state()
        with pytest.raises(InvalidStateTransitionError):
            state.apply_transition(DeploymentStatus.DEPLOYED)
        assert state.status == DeploymentStatus.PENDING
        assert state.version == 1

    def test_rolled_back_only_from_failed(self) -> None:
        state = _state()
        _advance(state, DeploymentStatus.VALIDATING)
        with pytest.raises(InvalidStateTransitionError):
            state.apply_transition(DeploymentStatus.ROLLED_BACK)

    def test_terminal_states_never_reenter_a_stage(self) -> None:
        for terminal in (
            DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED, DeploymentStatus.ROLLED_BACK,
        ):
            assert VALID_TRANSITIONS[terminal] <= {
                DeploymentStatus.PENDING, DeploymentStatus.ROLLED_BACK,
            }

    def test_failure_metadata_recorded(self) -> None:
        state = _state()
        _advance(state, DeploymentStatus.VALIDATING)
        state.apply_transition(DeploymentStatus.FAILED, TransitionMetadata(
            error="bad domain",
            reason_code=ReasonCode.VALIDATION_FAILED,
            remediation="fix it",
        ))
        assert state.last_error == "bad domain"
        assert state.reason_code == ReasonCode.VALIDATION_FAILED
        assert state.remediation == "fix it"

    def test_restart_assigns_new_deployment_id(self) -> None:
        state = _state()
        _advance(state, DeploymentStatus.VALIDATING)
        state.apply_transition(DeploymentStatus.FAILED, TransitionMetadata(
            error="boom", reason_code=ReasonCode.UNEXPECTED_ERROR,
        ))
        first_id = state.deployment_id

        state.apply_transition(DeploymentStatus.PENDING)

        assert state.deployment_id != first_id
        assert state.last_error is None
        assert state.reason_code is None
        assert state.rollback_actions == []

    def test_rollback_stack_is_lifo(self) -> None:
        state = _state()
        first = RollbackAction(type=RollbackActionType.DATABASE_RESTORE, description="db")
        second = RollbackAction(type=RollbackActionType.WORKER_ROLLBACK, description="worker")
        _advance(state, DeploymentStatus.VALIDATING, DeploymentStatus.MIGRATING)
        state.apply_transition(
            DeploymentStatus.DEPLOYING, TransitionMetadata(rollback_action=first)
        )
        state.apply_transition(
            DeploymentStatus.FAILED, TransitionMetadata(rollback_action=second)
        )
        assert [a.description for a in state.rollback_stack()] == ["worker", "db"]


class TestStateDocument:
    def test_round_trip_keeps_unknown_fields(self) -> None:
        raw = {
            "schema_version": 1,
            "operator": "ci",
            "domains": {
                "acme.example.com:production": {
                    "domain": "acme.example.com",
                    "environment": "production",
                    "status": "deployed",
                    "deployment_id": "deploy-1",
                    "region": "weur",
                },
            },
        }
        document = StateDocument.model_validate(raw)
        reloaded = StateDocument.model_validate_json(document.model_dump_json())

        state = reloaded.domains["acme.example.com:production"]
        assert state.status == DeploymentStatus.DEPLOYED
        assert state.model_extra == {"region": "weur"}
        assert reloaded.model_extra == {"operator": "ci"}
        assert reloaded.model_dump() == document.model_dump()
