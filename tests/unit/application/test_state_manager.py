"""Unit tests for the state manager."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from fleetdeploy.domain.errors import (
    InvalidStateTransitionError,
    ReasonCode,
    StateNotFoundError,
)
from fleetdeploy.domain.models.deployment_state import (
    DeploymentStatus,
    RollbackAction,
    RollbackActionType,
    TransitionMetadata,
)
from fleetdeploy.domain.models.fleet import Domain
from fleetdeploy.domain.services.state_manager import StateManager
from fleetdeploy.infrastructure.messaging.event_publisher import InMemoryEventPublisher
from fleetdeploy.infrastructure.persistence.repositories import InMemoryStateRepository


class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_creates_pending(
        self,
        state_manager: StateManager,
        state_repo: InMemoryStateRepository,
        make_domain: Callable[..., Domain],
    ) -> None:
        state = await state_manager.register(make_domain())

        assert state.status == DeploymentStatus.PENDING
        assert state_repo.save_count == 1
        assert [e.event for e in state_manager.audit_entries()] == ["domain_registered"]

    @pytest.mark.asyncio
    async def test_register_is_idempotent(
        self, state_manager: StateManager, make_domain: Callable[..., Domain]
    ) -> None:
        first = await state_manager.register(make_domain())
        second = await state_manager.register(make_domain())
        assert first.deployment_id == second.deployment_id
        assert len(state_manager.all_states()) == 1

    def test_unknown_domain(self, state_manager: StateManager) -> None:
        assert state_manager.find_state("nope.example.com:production") is None
        with pytest.raises(StateNotFoundError):
            state_manager.get_state("nope.example.com:production")


class TestTransitions:
    @pytest.mark.asyncio
    async def test_transition_persists_and_audits(
        self,
        state_manager: StateManager,
        state_repo: InMemoryStateRepository,
        event_publisher: InMemoryEventPublisher,
        make_domain: Callable[..., Domain],
    ) -> None:
        domain = make_domain()
        await state_manager.register(domain)
        state = await state_manager.transition(domain, DeploymentStatus.VALIDATING)

        assert state.status == DeploymentStatus.VALIDATING
        assert state_repo.save_count == 2
        entry = state_manager.audit_entries("state_transition")[0]
        assert entry.details == {"from": "pending", "to": "validating"}
        assert entry.deployment_id == state.deployment_id
        events = event_publisher.events_of("deployment.state_transitioned")
        assert events[0]["to_status"] == "validating"

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_state_untouched(
        self,
        state_manager: StateManager,
        state_repo: InMemoryStateRepository,
        make_domain: Callable[..., Domain],
    ) -> None:
        domain = make_domain()
        await state_manager.register(domain)
        with pytest.raises(InvalidStateTransitionError):
            await state_manager.transition(domain, DeploymentStatus.DEPLOYED)

        assert state_manager.get_state(domain).status == DeploymentStatus.PENDING
        assert state_repo.save_count == 1

    @pytest.mark.asyncio
    async def test_returned_state_is_a_copy(
        self, state_manager: StateManager, make_domain: Callable[..., Domain]
    ) -> None:
        domain = make_domain()
        state = await state_manager.register(domain)
        state.status = DeploymentStatus.DEPLOYED
        assert state_manager.get_state(domain).status == DeploymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_transition_unknown_domain(self, state_manager: StateManager) -> None:
        with pytest.raises(StateNotFoundError):
            await state_manager.transition("x.example.com:production", DeploymentStatus.FAILED)

    @pytest.mark.asyncio
    async def test_audit_event_with_details(
        self, state_manager: StateManager, make_domain: Callable[..., Domain]
    ) -> None:
        domain = make_domain()
        await state_manager.register(domain)
        await state_manager.transition(domain, DeploymentStatus.FAILED, TransitionMetadata(
            error="boom",
            reason_code=ReasonCode.UNEXPECTED_ERROR,
            audit_event="custom_event",
            details={"k": "v"},
        ))
        assert state_manager.audit_entries("custom_event")[0].details == {"k": "v"}

    @pytest.mark.asyncio
    async def test_concurrent_transitions_on_one_domain_are_serialized(
        self, state_manager: StateManager, make_domain: Callable[..., Domain]
    ) -> None:
        domain = make_domain()
        await state_manager.register(domain)

        outcomes = await asyncio.gather(
            state_manager.transition(domain, DeploymentStatus.VALIDATING),
            state_manager.transition(domain, DeploymentStatus.VALIDATING),
            return_exceptions=True,
        )

        errors = [o for o in outcomes if isinstance(o, InvalidStateTransitionError)]
        assert len(errors) == 1
        assert state_manager.get_state(domain).version == 2

    @pytest.mark.asyncio
    async def test_audit_sequence_is_monotonic(
        self, state_manager: StateManager, make_domain: Callable[..., Domain]
    ) -> None:
        for name in ("a.example.com", "b.example.com"):
            domain = make_domain(name)
            await state_manager.register(domain)
            await state_manager.transition(domain, DeploymentStatus.VALIDATING)
        sequences = [entry.sequence for entry in state_manager.audit_entries()]
        assert sequences == list(range(1, len(sequences) + 1))


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_ensure_failed_moves_in_flight_domain(
        self, state_manager: StateManager, make_domain: Callable[..., Domain]
    ) -> None:
        domain = make_domain()
        await state_manager.register(domain)
        await state_manager.transition(domain, DeploymentStatus.VALIDATING)

        state = await state_manager.ensure_failed(domain, ReasonCode.TIMEOUT, "too slow")

        assert state.status == DeploymentStatus.FAILED
        assert state.reason_code == ReasonCode.TIMEOUT
        assert state.remediation

    @pytest.mark.asyncio
    async def test_ensure_failed_leaves_terminal_domain(
        self, state_manager: StateManager, make_domain: Callable[..., Domain]
    ) -> None:
        domain = make_domain()
        await state_manager.register(domain)
        await state_manager.transition(domain, DeploymentStatus.FAILED, TransitionMetadata(
            error="first", reason_code=ReasonCode.VALIDATION_FAILED,
        ))

        state = await state_manager.ensure_failed(domain, ReasonCode.TIMEOUT, "second")

        assert state.last_error == "first"
        assert state.reason_code == ReasonCode.VALIDATION_FAILED

    @pytest.mark.asyncio
    async def test_recover_interrupted(
        self, state_manager: StateManager, make_domain: Callable[..., Domain]
    ) -> None:
        migrating = make_domain("a.example.com")
        pending = make_domain("b.example.com")
        for domain in (migrating, pending):
            await state_manager.register(domain)
        await state_manager.transition(migrating, DeploymentStatus.VALIDATING)
        await state_manager.transition(migrating, DeploymentStatus.MIGRATING)

        recovered = await state_manager.recover_interrupted()

        assert recovered == [migrating.key]
        state = state_manager.get_state(migrating)
        assert state.status == DeploymentStatus.FAILED
        assert state.reason_code == ReasonCode.INTERRUPTED
        assert state_manager.get_state(pending).status == DeploymentStatus.PENDING


class TestPersistence:
    @pytest.mark.asyncio
    async def test_round_trip(self, make_domain: Callable[..., Domain]) -> None:
        repo = InMemoryStateRepository()
        writer = StateManager(repo)
        domain = make_domain()
        await writer.register(domain)
        await writer.transition(domain, DeploymentStatus.VALIDATING)
        await writer.transition(domain, DeploymentStatus.MIGRATING)
        await writer.transition(domain, DeploymentStatus.DEPLOYING, TransitionMetadata(
            rollback_action=RollbackAction(
                type=RollbackActionType.DATABASE_RESTORE,
                data={"backup_file": "backups/b.sql"},
            ),
        ))

        reader = StateManager(repo)
        await reader.load()

        assert reader.get_state(domain).model_dump() == writer.get_state(domain).model_dump()
        assert len(reader.audit_entries()) == len(writer.audit_entries())

    @pytest.mark.asyncio
    async def test_load_empty_repository(self) -> None:
        manager = StateManager(InMemoryStateRepository())
        document = await manager.load()
        assert document.domains == {}

    @pytest.mark.asyncio
    async def test_snapshot_is_volatile(
        self,
        state_manager: StateManager,
        state_repo: InMemoryStateRepository,
        make_domain: Callable[..., Domain],
    ) -> None:
        domain = make_domain()
        await state_manager.register(domain)
        snapshot = state_manager.snapshot()

        await snapshot.transition(domain, DeploymentStatus.VALIDATING)

        assert not snapshot.is_durable
        assert state_repo.save_count == 1
        assert state_manager.get_state(domain).status == DeploymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_record_audit_for_unregistered_domain(
        self, state_manager: StateManager
    ) -> None:
        entry = await state_manager.record_audit(
            "BACKUP_CREATED", "x.example.com:production", {"file": "b.sql"}
        )
        assert entry.domain == "x.example.com:production"
        assert entry.deployment_id is None
