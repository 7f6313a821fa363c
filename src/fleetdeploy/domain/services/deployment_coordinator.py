"""Per-domain deployment sequence: validate, migrate, deploy, verify."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from fleetdeploy.config import FeatureFlags
from fleetdeploy.domain.errors import (
    classify_failure,
    DomainBusyError,
    ErrorCategory,
    FleetDeployError,
    InvalidStateTransitionError,
    ReasonCode,
    remediation_for,
    RemoteCommandError,
    TransientRemoteError,
)
from fleetdeploy.domain.events.deployment_events import (
    AssessmentGateBypassed,
    DomainDeploymentCompleted,
    DomainDeploymentFailed,
    DomainRolledBack,
)
from fleetdeploy.domain.models.base import DomainEvent
from fleetdeploy.domain.models.deployment_state import (
    DeploymentStatus,
    RollbackAction,
    RollbackActionType,
    TransitionMetadata,
)
from fleetdeploy.domain.models.fleet import Domain
from fleetdeploy.domain.models.results import (
    DeployOutcome,
    DomainDeploymentResult,
    OperationStatus,
    RollbackReport,
)
from fleetdeploy.domain.models.retry import RetryPolicy
from fleetdeploy.domain.ports.services import EventPublisher, HealthChecker, RemoteDeployer
from fleetdeploy.domain.services.capability_assessment import CapabilityAssessmentEngine
from fleetdeploy.domain.services.database_orchestrator import DatabaseOrchestrator
from fleetdeploy.domain.services.domain_resolver import DomainResolver
from fleetdeploy.domain.services.retry import retry_async, Sleep
from fleetdeploy.domain.services.state_manager import DomainRef, StateManager
from fleetdeploy.infrastructure.observability.metrics import (
    ACTIVE_DEPLOYMENTS,
    DOMAIN_DEPLOYMENT_DURATION,
    DOMAIN_DEPLOYMENTS_TOTAL,
    ROLLBACK_ACTIONS_TOTAL,
)
from fleetdeploy.infrastructure.observability.tracing import get_tracer


logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

RollbackHandler = Callable[[RollbackAction], Awaitable[None]]


class _StageFailed(Exception):
    """Internal signal: a stage has already moved the domain to ``failed``."""


class DeploymentCoordinator:
    """Drives one domain through the deployment state machine.

    Expected failures at any stage move the domain to ``failed`` with a reason
    code and remediation hint; they are reported in the returned result, not
    raised. Side effects that can be undone are recorded as rollback actions on
    the transition that follows them.
    """

    def __init__(
        self,
        state_manager: StateManager,
        resolver: DomainResolver,
        database: DatabaseOrchestrator,
        deployer: RemoteDeployer,
        assessment: CapabilityAssessmentEngine | None = None,
        health_checker: HealthChecker | None = None,
        features: FeatureFlags | None = None,
        credential: str | None = None,
        retry_policy: RetryPolicy | None = None,
        event_publisher: EventPublisher | None = None,
        sleep: Sleep = asyncio.sleep,
        dry_run: bool = False,
    ) -> None:
        self._state = state_manager
        self._resolver = resolver
        self._database = database
        self._deployer = deployer
        self._assessment = assessment
        self._health_checker = health_checker
        self._features = features or FeatureFlags()
        self._credential = credential
        self._policy = retry_policy or RetryPolicy()
        self._event_publisher = event_publisher
        self._sleep = sleep
        self._dry_run = dry_run
        self._rollback_handlers: dict[RollbackActionType, RollbackHandler] = {
            RollbackActionType.DATABASE_RESTORE: self._restore_database,
            RollbackActionType.WORKER_ROLLBACK: self._rollback_worker,
        }

    @property
    def state_manager(self) -> StateManager:
        return self._state

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def dry_run_copy(self) -> DeploymentCoordinator:
        """Coordinator over a volatile state snapshot that performs no remote side effects."""
        return DeploymentCoordinator(
            state_manager=self._state.snapshot(),
            resolver=self._resolver,
            database=self._database.with_dry_run(),
            deployer=self._deployer,
            assessment=self._assessment,
            health_checker=self._health_checker,
            features=self._features,
            credential=self._credential,
            retry_policy=self._policy,
            sleep=self._sleep,
            dry_run=True,
        )

    def register_rollback_handler(
        self, action_type: RollbackActionType, handler: RollbackHandler
    ) -> None:
        self._rollback_handlers[action_type] = handler

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    async def deploy(
        self, domain: Domain, force: bool = False, auto_rollback: bool = True
    ) -> DomainDeploymentResult:
        started = time.monotonic()
        state = await self._state.register(domain)
        if state.is_terminal:
            state = await self._state.transition(domain, DeploymentStatus.PENDING)
        elif state.status != DeploymentStatus.PENDING:
            raise DomainBusyError(
                f"{domain.key} is already {state.status.value}; refusing to start a second run"
            )

        log = logger.bind(
            domain=domain.name, environment=domain.environment, deployment_id=state.deployment_id
        )
        log.info("domain_deployment_started", force=force, dry_run=self._dry_run)
        warnings: list[str] = []
        details: dict[str, Any] = {}
        outcome: DeployOutcome | None = None

        ACTIVE_DEPLOYMENTS.inc()
        try:
            with tracer.start_as_current_span("deploy_domain") as span:
                span.set_attribute("fleetdeploy.domain", domain.name)
                span.set_attribute("fleetdeploy.environment", domain.environment)
                span.set_attribute("fleetdeploy.dry_run", self._dry_run)
                try:
                    await self._validate(domain, force, warnings, details)
                    pending_action = await self._migrate(domain, details)
                    outcome = await self._deploy_and_verify(domain, pending_action)
                except _StageFailed:
                    pass
        finally:
            ACTIVE_DEPLOYMENTS.dec()

        duration = time.monotonic() - started
        final = self._state.get_state(domain)
        DOMAIN_DEPLOYMENTS_TOTAL.labels(
            status=final.status.value, environment=domain.environment
        ).inc()
        DOMAIN_DEPLOYMENT_DURATION.labels(environment=domain.environment).observe(duration)

        if final.status == DeploymentStatus.DEPLOYED:
            log.info("domain_deployment_completed", duration_seconds=round(duration, 3))
            await self._publish(DomainDeploymentCompleted(
                domain=domain.name,
                environment=domain.environment,
                deployment_id=final.deployment_id,
                duration_seconds=duration,
                correlation_id=final.deployment_id,
            ))

        result = DomainDeploymentResult(
            domain=domain.name,
            environment=domain.environment,
            status=final.status,
            deployment_id=final.deployment_id,
            success=final.status == DeploymentStatus.DEPLOYED,
            dry_run=self._dry_run,
            error=final.last_error,
            reason_code=final.reason_code,
            remediation=final.remediation,
            warnings=warnings,
            url=outcome.url if outcome else None,
            duration_seconds=duration,
            details=details,
        )
        if auto_rollback:
            result = await self.apply_auto_rollback(domain, result)
        return result

    async def apply_auto_rollback(
        self, domain: Domain, result: DomainDeploymentResult
    ) -> DomainDeploymentResult:
        """Roll back the failed run behind ``result`` when the feature flag allows it.

        Callers that bound :meth:`deploy` with a timeout pass
        ``auto_rollback=False`` and call this outside the bound.
        """
        state = self._state.find_state(domain)
        if (
            self._dry_run
            or not self._features.rollback_on_failure
            or state is None
            or state.deployment_id != result.deployment_id
            or state.status != DeploymentStatus.FAILED
            or not state.rollback_actions
        ):
            return result
        report = await self.rollback(domain)
        return result.model_copy(update={
            "status": self._state.get_state(domain).status,
            "rollback": report,
        })

    async def _validate(
        self, domain: Domain, force: bool, warnings: list[str], details: dict[str, Any]
    ) -> None:
        await self._state.transition(domain, DeploymentStatus.VALIDATING)

        with tracer.start_as_current_span("validate"):
            if self._features.assessment_gate and self._assessment is not None:
                assessment = await self._assessment.evaluate(domain, self._credential)
                details["confidence"] = assessment.confidence
                details["assessment_cached"] = assessment.cached
                if assessment.degraded:
                    warnings.extend(assessment.degradation_reasons)
                if assessment.blocked:
                    blocked = [gap.capability for gap in assessment.gap_analysis.blocked]
                    permissions = assessment.blocking_permissions()
                    if not force:
                        await self._fail(
                            domain,
                            ReasonCode.ASSESSMENT_BLOCKED,
                            f"Capability assessment blocked deployment: {', '.join(blocked)}",
                            remediation=(
                                f"Grant the API token: {', '.join(permissions)}, "
                                "or re-run with --force to bypass the assessment gate."
                                if permissions else None
                            ),
                            details={"blocked": blocked, "confidence": assessment.confidence},
                        )
                    await self._record_gate_bypass(domain, blocked, permissions)
                    warnings.append(f"Assessment gate bypassed with force: {', '.join(blocked)}")

            validation = await self._resolver.validate_prerequisites(domain)
            warnings.extend(validation.warnings)
            if not validation.valid:
                await self._fail(
                    domain,
                    ReasonCode.VALIDATION_FAILED,
                    "; ".join(validation.errors),
                    details={"errors": validation.errors},
                )

    async def _record_gate_bypass(
        self, domain: Domain, blocked: list[str], permissions: list[str]
    ) -> None:
        entry = await self._state.record_audit(
            "assessment_gate_bypassed",
            domain,
            {"blocked": blocked, "missing_permissions": permissions},
        )
        logger.warning(
            "assessment_gate_bypassed",
            domain=domain.name,
            environment=domain.environment,
            blocked=blocked,
        )
        await self._publish(AssessmentGateBypassed(
            domain=domain.name,
            environment=domain.environment,
            deployment_id=entry.deployment_id or "",
            blocked_capabilities=blocked,
        ))

    async def _migrate(self, domain: Domain, details: dict[str, Any]) -> RollbackAction | None:
        await self._state.transition(domain, DeploymentStatus.MIGRATING)
        store = domain.data_store
        if store is None:
            return None

        pending_action: RollbackAction | None = None
        with tracer.start_as_current_span("migrate"):
            if (
                domain.environment == "production"
                and self._features.backup_before_migration
                and not self._dry_run
            ):
                backup = await self._database.create_backup(store.name, domain.environment)
                if backup.status == OperationStatus.FAILED:
                    await self._fail(
                        domain,
                        backup.reason_code or ReasonCode.MIGRATION_FAILED,
                        f"Backup before migration failed: {backup.error}",
                    )
                pending_action = RollbackAction(
                    type=RollbackActionType.DATABASE_RESTORE,
                    description=f"Restore {store.name} from {backup.backup_file}",
                    data={
                        "store_name": store.name,
                        "environment": domain.environment,
                        "backup_file": backup.backup_file,
                    },
                )

            result = await self._database.apply_migrations(
                store.name, store.binding, domain.environment
            )
            details["migration_status"] = result.status.value
            details["migrations_applied"] = result.migrations_applied
            details["migration_attempts"] = result.attempts
            if result.status == OperationStatus.FAILED:
                await self._fail(
                    domain,
                    result.reason_code or ReasonCode.MIGRATION_FAILED,
                    result.error or "Migration failed",
                    rollback_action=pending_action,
                )
        return pending_action

    async def _deploy_and_verify(
        self, domain: Domain, pending_action: RollbackAction | None
    ) -> DeployOutcome:
        await self._state.transition(
            domain, DeploymentStatus.DEPLOYING, TransitionMetadata(rollback_action=pending_action)
        )

        if self._dry_run:
            outcome = DeployOutcome(success=True, dry_run=True)
            await self._state.transition(
                domain, DeploymentStatus.DEPLOYED, TransitionMetadata(details={"dry_run": True})
            )
            return outcome

        with tracer.start_as_current_span("deploy"):
            try:
                outcome = await self._remote_deploy(domain)
            except RemoteCommandError as e:
                await self._fail(domain, e.reason_code, str(e))
            except TransientRemoteError as e:
                await self._fail(domain, e.reason_code, f"Deploy failed after retries: {e}")

        worker_action = RollbackAction(
            type=RollbackActionType.WORKER_ROLLBACK,
            description=f"Roll back worker {domain.routing.worker_name}",
            data={
                "worker_name": domain.routing.worker_name,
                "environment": domain.environment,
                "deployed_version_id": outcome.version_id,
                "service_path": domain.service_path,
            },
        )

        if self._features.post_deploy_verification and self._health_checker and outcome.url:
            with tracer.start_as_current_span("verify"):
                healthy, message = await self._health_checker.check(outcome.url)
            if not healthy:
                await self._fail(
                    domain,
                    ReasonCode.VERIFICATION_FAILED,
                    f"Post-deploy verification failed for {outcome.url}: {message}",
                    rollback_action=worker_action,
                )

        await self._state.transition(domain, DeploymentStatus.DEPLOYED, TransitionMetadata(
            rollback_action=worker_action,
            details={"url": outcome.url, "version_id": outcome.version_id},
        ))
        return outcome

    async def _remote_deploy(self, domain: Domain) -> DeployOutcome:
        async def attempt(n: int) -> DeployOutcome:
            outcome = await self._deployer.deploy(domain)
            if outcome.success:
                return outcome
            output = "\n".join(part for part in (outcome.stdout, outcome.stderr) if part)
            category = classify_failure(output)
            if category == ErrorCategory.TRANSIENT:
                raise TransientRemoteError(
                    f"Deploy of {domain.routing.worker_name} failed",
                    exit_code=outcome.exit_code,
                    stdout=outcome.stdout,
                    stderr=outcome.stderr,
                )
            raise RemoteCommandError(
                f"Deploy of {domain.routing.worker_name} failed",
                exit_code=outcome.exit_code,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                reason_code=(
                    ReasonCode.PERMISSION_DENIED if category == ErrorCategory.PERMISSION
                    else ReasonCode.DEPLOY_FAILED
                ),
            )

        return await retry_async(attempt, self._policy, operation_name="deploy", sleep=self._sleep)

    async def _fail(
        self,
        domain: Domain,
        reason_code: ReasonCode,
        error: str,
        remediation: str | None = None,
        rollback_action: RollbackAction | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        state = await self._state.transition(domain, DeploymentStatus.FAILED, TransitionMetadata(
            error=error,
            reason_code=reason_code,
            remediation=remediation or remediation_for(reason_code),
            rollback_action=rollback_action,
            details=details or {},
        ))
        logger.error(
            "domain_deployment_failed",
            domain=domain.name,
            environment=domain.environment,
            deployment_id=state.deployment_id,
            reason_code=reason_code.value,
            error=error,
        )
        await self._publish(DomainDeploymentFailed(
            domain=domain.name,
            environment=domain.environment,
            deployment_id=state.deployment_id,
            reason_code=reason_code.value,
            error_message=error,
            correlation_id=state.deployment_id,
        ))
        raise _StageFailed()

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self, domain: DomainRef) -> RollbackReport:
        """Undo a failed deployment's side effects, most recent first.

        Each action is attempted even if an earlier one fails; failures are
        logged and reported but leave the original failure reason untouched.
        """
        state = self._state.get_state(domain)
        if state.status != DeploymentStatus.FAILED:
            raise InvalidStateTransitionError(
                f"{state.key} is {state.status.value}; only failed deployments can be rolled back"
            )

        executed: list[str] = []
        failed: list[str] = []
        with tracer.start_as_current_span("rollback"):
            for action in state.rollback_stack():
                handler = self._rollback_handlers.get(action.type)
                try:
                    if handler is None:
                        raise FleetDeployError(f"No rollback handler for {action.type.value}")
                    await handler(action)
                except Exception as e:
                    failed.append(action.action_id)
                    ROLLBACK_ACTIONS_TOTAL.labels(type=action.type.value, result="failure").inc()
                    logger.error(
                        "rollback_action_failed",
                        domain=state.domain,
                        environment=state.environment,
                        action_type=action.type.value,
                        action_id=action.action_id,
                        error=str(e),
                    )
                    continue
                executed.append(action.action_id)
                ROLLBACK_ACTIONS_TOTAL.labels(type=action.type.value, result="success").inc()

        report = RollbackReport(executed=executed, failed=failed)
        await self._state.transition(domain, DeploymentStatus.ROLLED_BACK, TransitionMetadata(
            audit_event="rollback_completed",
            details={"executed": executed, "failed": failed},
        ))
        logger.info(
            "domain_rolled_back",
            domain=state.domain,
            environment=state.environment,
            executed=len(executed),
            failed=len(failed),
        )
        await self._publish(DomainRolledBack(
            domain=state.domain,
            environment=state.environment,
            deployment_id=state.deployment_id,
            actions_executed=len(executed),
            actions_failed=len(failed),
            correlation_id=state.deployment_id,
        ))
        return report

    async def _restore_database(self, action: RollbackAction) -> None:
        result = await self._database.restore_backup(
            action.data["store_name"], action.data["environment"], action.data["backup_file"]
        )
        if result.status == OperationStatus.FAILED:
            raise FleetDeployError(result.error or "restore failed", reason_code=result.reason_code)

    async def _rollback_worker(self, action: RollbackAction) -> None:
        # Without a target version the platform restores the version that
        # preceded the one this deployment created.
        result = await self._deployer.rollback(
            action.data["worker_name"],
            action.data["environment"],
            service_path=action.data.get("service_path"),
        )
        if not result.succeeded:
            raise RemoteCommandError(
                "Worker rollback failed",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )

    async def _publish(self, event: DomainEvent) -> None:
        if self._event_publisher is not None:
            await self._event_publisher.publish(event.event_type, event.model_dump(mode="json"))
