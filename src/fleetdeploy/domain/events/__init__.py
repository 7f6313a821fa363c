"""Domain events package."""

from fleetdeploy.domain.events.deployment_events import (
    AssessmentGateBypassed,
    DomainDeploymentCompleted,
    DomainDeploymentFailed,
    DomainRolledBack,
    DomainStateTransitioned,
    PortfolioCompleted,
    PortfolioStarted,
)


__all__ = [
    "AssessmentGateBypassed",
    "DomainDeploymentCompleted",
    "DomainDeploymentFailed",
    "DomainRolledBack",
    "DomainStateTransitioned",
    "PortfolioCompleted",
    "PortfolioStarted",
]
