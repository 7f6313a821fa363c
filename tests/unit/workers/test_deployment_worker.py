"""Unit tests for the deployment worker pool."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from fleetdeploy.domain.errors import ReasonCode
from fleetdeploy.domain.models.deployment_state import DeploymentStatus
from fleetdeploy.domain.models.fleet import Domain
from fleetdeploy.domain.models.results import CommandResult
from fleetdeploy.domain.models.retry import CancellationToken
from fleetdeploy.domain.models.task import DomainTask, TaskStatus
from fleetdeploy.domain.services.deployment_coordinator import DeploymentCoordinator
from fleetdeploy.domain.services.state_manager import StateManager
from fleetdeploy.workers.deployment_worker import DeploymentWorkerPool


@pytest.fixture
def domain(make_domain: Callable[..., Domain]) -> Domain:
    return make_domain(store=None)


class TestDeploymentWorkerPool:
    @pytest.mark.asyncio
    async def test_deploys_domain(
        self, coordinator: DeploymentCoordinator, domain: Domain
    ) -> None:
        done = await DeploymentWorkerPool(coordinator).run([DomainTask(domain=domain)])

        assert done[0].status == TaskStatus.SUCCEEDED
        assert done[0].result is not None
        assert done[0].result.status == DeploymentStatus.DEPLOYED

    @pytest.mark.asyncio
    async def test_failed_deploy_keeps_result(
        self, coordinator: DeploymentCoordinator, make_domain: Callable[..., Domain]
    ) -> None:
        task = DomainTask(domain=make_domain(name="not_a_domain", store=None))
        done = await DeploymentWorkerPool(coordinator).run([task])

        assert done[0].status == TaskStatus.FAILED
        assert done[0].result is not None
        assert done[0].result.reason_code == ReasonCode.VALIDATION_FAILED

    @pytest.mark.asyncio
    async def test_timeout_marks_domain_failed(
        self,
        coordinator: DeploymentCoordinator,
        state_manager: StateManager,
        deployer: Any,
        domain: Domain,
    ) -> None:
        deployer.delay = 5.0
        task = DomainTask(domain=domain, timeout_seconds=0.05)

        done = await DeploymentWorkerPool(coordinator).run([task])

        assert done[0].status == TaskStatus.TIMED_OUT
        assert done[0].result is not None
        assert done[0].result.reason_code == ReasonCode.TIMEOUT
        state = state_manager.get_state(domain)
        assert state.status == DeploymentStatus.FAILED
        assert state.reason_code == ReasonCode.TIMEOUT

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_domain_failed(
        self,
        coordinator: DeploymentCoordinator,
        state_manager: StateManager,
        deployer: Any,
        domain: Domain,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def explode(target: Domain) -> Any:
            raise KeyError("routing")

        monkeypatch.setattr(deployer, "deploy", explode)

        done = await DeploymentWorkerPool(coordinator).run([DomainTask(domain=domain)])

        assert done[0].status == TaskStatus.FAILED
        assert done[0].result is not None
        assert done[0].result.reason_code == ReasonCode.UNEXPECTED_ERROR
        assert "KeyError" in (done[0].result.error or "")
        assert state_manager.get_state(domain).status == DeploymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancelled_domain_is_skipped(
        self, coordinator: DeploymentCoordinator, deployer: Any, domain: Domain
    ) -> None:
        token = CancellationToken()
        token.cancel("operator abort")

        done = await DeploymentWorkerPool(coordinator).run([DomainTask(domain=domain)], token)

        assert done[0].status == TaskStatus.CANCELLED
        result = done[0].result
        assert result is not None
        assert result.skipped
        assert result.reason_code == ReasonCode.CANCELLED
        assert result.status == DeploymentStatus.PENDING
        assert "operator abort" in (result.error or "")
        assert deployer.deployed == []

    @pytest.mark.asyncio
    async def test_force_is_passed_through(
        self,
        coordinator: DeploymentCoordinator,
        domain: Domain,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        seen: list[tuple[bool, bool]] = []
        original = coordinator.deploy

        async def recording(
            target: Domain, force: bool = False, auto_rollback: bool = True
        ) -> Any:
            seen.append((force, auto_rollback))
            return await original(target, force=force, auto_rollback=auto_rollback)

        monkeypatch.setattr(coordinator, "deploy", recording)
        await DeploymentWorkerPool(coordinator, force=True).run([DomainTask(domain=domain)])
        assert seen == [(True, False)]

    @pytest.mark.asyncio
    async def test_busy_domain_is_left_to_the_owning_run(
        self,
        coordinator: DeploymentCoordinator,
        state_manager: StateManager,
        deployer: Any,
        domain: Domain,
    ) -> None:
        deployer.delay = 0.2
        live = asyncio.create_task(coordinator.deploy(domain))
        await asyncio.sleep(0.05)

        done = await DeploymentWorkerPool(coordinator).run([DomainTask(domain=domain)])

        assert done[0].status == TaskStatus.FAILED
        result = done[0].result
        assert result is not None
        assert result.reason_code == ReasonCode.DOMAIN_BUSY
        assert result.status == DeploymentStatus.DEPLOYING
        state = state_manager.get_state(domain)
        assert state.status == DeploymentStatus.DEPLOYING
        assert state.reason_code is None

        assert (await live).status == DeploymentStatus.DEPLOYED
        assert state_manager.get_state(domain).status == DeploymentStatus.DEPLOYED
        assert deployer.deployed == [domain.name]

    @pytest.mark.asyncio
    async def test_auto_rollback_runs_after_the_timeout(
        self,
        coordinator: DeploymentCoordinator,
        state_manager: StateManager,
        deployer: Any,
        health_checker: Any,
        domain: Domain,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        health_checker.healthy = False
        undone: list[str] = []

        async def slow_rollback(worker_name: str, environment: str, **kwargs: Any) -> Any:
            await asyncio.sleep(0.2)
            undone.append(worker_name)
            return CommandResult(exit_code=0)

        monkeypatch.setattr(deployer, "rollback", slow_rollback)
        task = DomainTask(domain=domain, timeout_seconds=0.1)

        done = await DeploymentWorkerPool(coordinator).run([task])

        assert done[0].status == TaskStatus.FAILED
        result = done[0].result
        assert result is not None
        assert result.rollback is not None
        assert result.status == DeploymentStatus.ROLLED_BACK
        assert undone == [domain.routing.worker_name]
        assert state_manager.get_state(domain).status == DeploymentStatus.ROLLED_BACK
