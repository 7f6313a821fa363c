"""Deployment domain events."""

from __future__ import annotations

from fleetdeploy.domain.models.base import DomainEvent


class DomainStateTransitioned(DomainEvent):
    """Emitted on every deployment state transition."""

    domain: str
    environment: str
    deployment_id: str
    from_status: str
    to_status: str
    event_type: str = "deployment.state_transitioned"


class DomainDeploymentCompleted(DomainEvent):
    """Emitted when a domain reaches ``deployed``."""

    domain: str
    environment: str
    deployment_id: str
    duration_seconds: float = 0.0
    event_type: str = "deployment.completed"


class DomainDeploymentFailed(DomainEvent):
    """Emitted when a domain reaches ``failed``."""

    domain: str
    environment: str
    deployment_id: str
    reason_code: str
    error_message: str
    event_type: str = "deployment.failed"


class DomainRolledBack(DomainEvent):
    """Emitted when a failed domain's rollback stack has been consumed."""

    domain: str
    environment: str
    deployment_id: str
    actions_executed: int
    actions_failed: int
    event_type: str = "deployment.rolled_back"


class AssessmentGateBypassed(DomainEvent):
    """Emitted when a blocked assessment is overridden with force."""

    domain: str
    environment: str
    deployment_id: str
    blocked_capabilities: list[str]
    event_type: str = "deployment.assessment_gate_bypassed"


class PortfolioStarted(DomainEvent):
    orchestration_id: str
    domain_count: int
    batch_count: int
    dry_run: bool = False
    event_type: str = "portfolio.started"


class PortfolioCompleted(DomainEvent):
    orchestration_id: str
    succeeded: int
    failed: int
    skipped: int
    success_rate: float
    event_type: str = "portfolio.completed"
