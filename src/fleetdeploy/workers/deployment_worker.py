"""Worker pool that deploys domains through the deployment coordinator."""

from __future__ import annotations

import structlog

from fleetdeploy.domain.errors import DomainBusyError, ReasonCode, remediation_for
from fleetdeploy.domain.models.deployment_state import DeploymentStatus
from fleetdeploy.domain.models.fleet import Domain
from fleetdeploy.domain.models.results import DomainDeploymentResult
from fleetdeploy.domain.models.task import DomainTask
from fleetdeploy.domain.ports.services import EventPublisher
from fleetdeploy.domain.services.deployment_coordinator import DeploymentCoordinator
from fleetdeploy.workers.pool import WorkerPool


logger = structlog.get_logger(__name__)


class DeploymentWorkerPool(WorkerPool):
    """Runs :meth:`DeploymentCoordinator.deploy` for each task.

    A domain that times out or raises unexpectedly is moved to ``failed`` so
    that one bad domain never leaves state in flight or stops its batch. A
    domain another run is already deploying is reported but left untouched.
    Automatic rollback runs after the per-task timeout, never under it.
    """

    def __init__(
        self,
        coordinator: DeploymentCoordinator,
        force: bool = False,
        event_publisher: EventPublisher | None = None,
        max_concurrent: int = 3,
    ) -> None:
        super().__init__(
            worker_id=None, event_publisher=event_publisher, max_concurrent=max_concurrent
        )
        self._coordinator = coordinator
        self._force = force

    async def execute(self, task: DomainTask) -> DomainDeploymentResult:
        with structlog.contextvars.bound_contextvars(domain=task.domain.key):
            return await self._coordinator.deploy(
                task.domain, force=self._force, auto_rollback=False
            )

    async def on_task_finished(
        self, task: DomainTask, result: DomainDeploymentResult
    ) -> DomainDeploymentResult:
        with structlog.contextvars.bound_contextvars(domain=task.domain.key):
            return await self._coordinator.apply_auto_rollback(task.domain, result)

    async def on_task_timeout(self, task: DomainTask) -> DomainDeploymentResult:
        return await self._mark_failed(
            task.domain,
            ReasonCode.TIMEOUT,
            f"Deployment exceeded {task.timeout_seconds:.0f}s",
        )

    async def on_task_error(self, task: DomainTask, error: Exception) -> DomainDeploymentResult:
        if isinstance(error, DomainBusyError):
            return self._busy(task.domain, error)
        return await self._mark_failed(
            task.domain, ReasonCode.UNEXPECTED_ERROR, f"{type(error).__name__}: {error}"
        )

    async def on_task_cancelled(
        self, task: DomainTask, reason: str | None
    ) -> DomainDeploymentResult:
        state = self._coordinator.state_manager.find_state(task.domain)
        return DomainDeploymentResult(
            domain=task.domain.name,
            environment=task.domain.environment,
            status=state.status if state else DeploymentStatus.PENDING,
            deployment_id=state.deployment_id if state else "",
            skipped=True,
            dry_run=self._coordinator.dry_run,
            error=f"Not started: {reason or 'run cancelled'}",
            reason_code=ReasonCode.CANCELLED,
            remediation=remediation_for(ReasonCode.CANCELLED),
        )

    def _busy(self, domain: Domain, error: DomainBusyError) -> DomainDeploymentResult:
        state = self._coordinator.state_manager.find_state(domain)
        logger.warning(
            "domain_busy", domain=domain.name, environment=domain.environment, error=str(error)
        )
        return DomainDeploymentResult(
            domain=domain.name,
            environment=domain.environment,
            status=state.status if state else DeploymentStatus.PENDING,
            deployment_id=state.deployment_id if state else "",
            dry_run=self._coordinator.dry_run,
            error=str(error),
            reason_code=error.reason_code,
            remediation=error.remediation,
        )

    async def _mark_failed(
        self, domain: Domain, reason_code: ReasonCode, error: str
    ) -> DomainDeploymentResult:
        state_manager = self._coordinator.state_manager
        if state_manager.find_state(domain) is None:
            await state_manager.register(domain)
        state = await state_manager.ensure_failed(domain, reason_code, error)
        logger.error(
            "domain_run_aborted",
            domain=domain.name,
            environment=domain.environment,
            reason_code=reason_code.value,
            error=error,
        )
        return DomainDeploymentResult(
            domain=domain.name,
            environment=domain.environment,
            status=state.status,
            deployment_id=state.deployment_id,
            dry_run=self._coordinator.dry_run,
            error=state.last_error or error,
            reason_code=state.reason_code or reason_code,
            remediation=state.remediation or remediation_for(reason_code),
        )
