"""Portfolio deployment: batches of domains run through a bounded worker pool."""

from __future__ import annotations

import asyncio
import time

import structlog

from fleetdeploy.config import OrchestrationSettings
from fleetdeploy.domain.errors import ReasonCode
from fleetdeploy.domain.events.deployment_events import PortfolioCompleted, PortfolioStarted
from fleetdeploy.domain.models.base import DomainEvent, generate_short_id
from fleetdeploy.domain.models.capability import AssessmentResult
from fleetdeploy.domain.models.deployment_state import DeploymentStatus
from fleetdeploy.domain.models.fleet import Domain
from fleetdeploy.domain.models.results import (
    BatchResult,
    DomainDeploymentResult,
    PortfolioResult,
    PortfolioSummary,
)
from fleetdeploy.domain.models.retry import CancellationToken
from fleetdeploy.domain.models.task import DomainTask
from fleetdeploy.domain.ports.services import EventPublisher
from fleetdeploy.domain.services.capability_assessment import CapabilityAssessmentEngine
from fleetdeploy.domain.services.deployment_coordinator import DeploymentCoordinator
from fleetdeploy.domain.services.retry import Sleep
from fleetdeploy.infrastructure.observability.metrics import PORTFOLIO_RUNS_TOTAL
from fleetdeploy.infrastructure.observability.tracing import get_tracer
from fleetdeploy.workers.deployment_worker import DeploymentWorkerPool


logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)


def make_batches(domains: list[Domain], batch_size: int) -> list[list[Domain]]:
    """Split domains into consecutive batches, preserving input order."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [domains[i:i + batch_size] for i in range(0, len(domains), batch_size)]


class MultiDomainOrchestrator:
    """Deploys a portfolio of domains.

    Batches run one after another; within a batch at most ``parallelism``
    domains are in flight. A failing domain never stops the rest of its batch
    or later batches. Cancellation stops new domains from starting and lets
    in-flight ones finish.
    """

    def __init__(
        self,
        coordinator: DeploymentCoordinator,
        assessment: CapabilityAssessmentEngine | None = None,
        settings: OrchestrationSettings | None = None,
        event_publisher: EventPublisher | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._coordinator = coordinator
        self._assessment = assessment
        self._settings = settings or OrchestrationSettings()
        self._event_publisher = event_publisher
        self._sleep = sleep

    async def deploy_domain(
        self, domain: Domain, *, dry_run: bool = False, force: bool = False
    ) -> DomainDeploymentResult:
        coordinator = self._coordinator.dry_run_copy() if dry_run else self._coordinator
        return await coordinator.deploy(domain, force=force)

    async def deploy_portfolio(
        self,
        domains: list[Domain],
        *,
        parallelism: int | None = None,
        batch_size: int | None = None,
        dry_run: bool = False,
        force: bool = False,
        redeploy: bool = False,
        cancellation: CancellationToken | None = None,
    ) -> PortfolioResult:
        parallelism = parallelism or self._settings.parallelism
        batch_size = batch_size or self._settings.batch_size
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")

        seen: set[str] = set()
        for domain in domains:
            if domain.key in seen:
                raise ValueError(f"Domain {domain.key} appears more than once in the portfolio")
            seen.add(domain.key)

        coordinator = self._coordinator.dry_run_copy() if dry_run else self._coordinator
        orchestration_id = generate_short_id("orch")
        batches = make_batches(domains, batch_size)

        with structlog.contextvars.bound_contextvars(orchestration_id=orchestration_id):
            logger.info(
                "portfolio_started",
                domains=len(domains),
                batches=len(batches),
                parallelism=parallelism,
                dry_run=dry_run,
            )
            await self._publish(PortfolioStarted(
                orchestration_id=orchestration_id,
                domain_count=len(domains),
                batch_count=len(batches),
                dry_run=dry_run,
                correlation_id=orchestration_id,
            ))

            results: list[DomainDeploymentResult] = []
            batch_results: list[BatchResult] = []
            with tracer.start_as_current_span("deploy_portfolio") as span:
                span.set_attribute("fleetdeploy.orchestration_id", orchestration_id)
                span.set_attribute("fleetdeploy.domain_count", len(domains))

                pause = self._settings.batch_pause_seconds
                for index, batch in enumerate(batches):
                    if index > 0 and pause and not _cancelled(cancellation):
                        await self._sleep(pause)

                    batch_started = time.monotonic()
                    batch_out = await self._run_batch(
                        coordinator, batch, index, parallelism, force, redeploy, cancellation
                    )
                    results.extend(batch_out)
                    batch_results.append(BatchResult(
                        index=index,
                        domains=[domain.key for domain in batch],
                        succeeded=sum(1 for r in batch_out if r.success),
                        failed=sum(1 for r in batch_out if _is_failure(r)),
                        duration_seconds=time.monotonic() - batch_started,
                    ))
                    logger.info(
                        "batch_completed",
                        batch=index,
                        succeeded=batch_results[-1].succeeded,
                        failed=batch_results[-1].failed,
                    )

            summary = summarize(results, batch_results, cancelled=_cancelled(cancellation))
            PORTFOLIO_RUNS_TOTAL.labels(result=_run_outcome(summary)).inc()
            logger.info(
                "portfolio_completed",
                succeeded=summary.succeeded,
                failed=summary.failed,
                skipped=summary.skipped,
                success_rate=summary.success_rate,
            )
            await self._publish(PortfolioCompleted(
                orchestration_id=orchestration_id,
                succeeded=summary.succeeded,
                failed=summary.failed,
                skipped=summary.skipped,
                success_rate=summary.success_rate,
                correlation_id=orchestration_id,
            ))

        return PortfolioResult(
            orchestration_id=orchestration_id,
            per_domain=results,
            summary=summary,
            dry_run=dry_run,
        )

    async def _run_batch(
        self,
        coordinator: DeploymentCoordinator,
        batch: list[Domain],
        index: int,
        parallelism: int,
        force: bool,
        redeploy: bool,
        cancellation: CancellationToken | None,
    ) -> list[DomainDeploymentResult]:
        results: dict[str, DomainDeploymentResult] = {}
        tasks: list[DomainTask] = []
        for domain in batch:
            state = coordinator.state_manager.find_state(domain)
            if state is not None and state.status == DeploymentStatus.DEPLOYED and not redeploy:
                logger.info("domain_already_deployed", domain=domain.key)
                results[domain.key] = DomainDeploymentResult(
                    domain=domain.name,
                    environment=domain.environment,
                    status=state.status,
                    deployment_id=state.deployment_id,
                    success=True,
                    skipped=True,
                    dry_run=coordinator.dry_run,
                    warnings=["Already deployed; pass redeploy to deploy again"],
                )
                continue
            tasks.append(DomainTask(
                domain=domain,
                batch_index=index,
                timeout_seconds=self._settings.domain_timeout_seconds,
            ))

        pool = DeploymentWorkerPool(
            coordinator,
            force=force,
            event_publisher=self._event_publisher,
            max_concurrent=parallelism,
        )
        for task in await pool.run(tasks, cancellation):
            results[task.domain.key] = task.result or DomainDeploymentResult(
                domain=task.domain.name,
                environment=task.domain.environment,
                status=DeploymentStatus.FAILED,
                error=task.error_message or f"task {task.status.value}",
                reason_code=ReasonCode.UNEXPECTED_ERROR,
            )
        return [results[domain.key] for domain in batch]

    async def assess_portfolio(
        self,
        domains: list[Domain],
        credential: str | None = None,
        *,
        force_refresh: bool = False,
    ) -> dict[str, AssessmentResult]:
        """Assess every domain without deploying anything."""
        if self._assessment is None:
            return {}
        assessments: dict[str, AssessmentResult] = {}
        for domain in domains:
            assessments[domain.key] = await self._assessment.evaluate(
                domain, credential, force_refresh=force_refresh
            )
        return assessments

    async def _publish(self, event: DomainEvent) -> None:
        if self._event_publisher is not None:
            await self._event_publisher.publish(event.event_type, event.model_dump(mode="json"))


def summarize(
    results: list[DomainDeploymentResult],
    batches: list[BatchResult] | None = None,
    cancelled: bool = False,
) -> PortfolioSummary:
    total = len(results)
    succeeded = sum(1 for r in results if r.success)
    failed = sum(1 for r in results if _is_failure(r))
    skipped = sum(1 for r in results if r.skipped)
    ran = [r.duration_seconds for r in results if not r.skipped]
    return PortfolioSummary(
        total=total,
        succeeded=succeeded,
        failed=failed,
        skipped=skipped,
        success_rate=succeeded / total if total else 0.0,
        average_duration_seconds=sum(ran) / len(ran) if ran else 0.0,
        batches=batches or [],
        cancelled=cancelled,
        blocked_by_gate=sum(
            1 for r in results if r.reason_code == ReasonCode.ASSESSMENT_BLOCKED
        ),
    )


def _is_failure(result: DomainDeploymentResult) -> bool:
    return not result.success and not result.skipped


def _cancelled(cancellation: CancellationToken | None) -> bool:
    return cancellation is not None and cancellation.is_cancelled


def _run_outcome(summary: PortfolioSummary) -> str:
    if summary.cancelled:
        return "cancelled"
    if summary.failed == 0:
        return "success"
    if summary.succeeded == 0:
        return "failed"
    return "partial"
