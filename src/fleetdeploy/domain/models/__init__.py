"""Domain models package."""

from fleetdeploy.domain.models.base import (
    DomainEntity,
    DomainEvent,
    generate_id,
    generate_short_id,
    utc_now,
    ValueObject,
)
from fleetdeploy.domain.models.capability import (
    ArtifactStatus,
    AssessmentInputs,
    AssessmentResult,
    CapabilityKind,
    CapabilityManifest,
    DiscoveryReport,
    GapAnalysis,
    GapEntry,
    GapPriority,
    PermissionFeasibility,
    Recommendation,
)
from fleetdeploy.domain.models.deployment_state import (
    AuditEntry,
    DeploymentState,
    DeploymentStatus,
    RollbackAction,
    RollbackActionType,
    StateDocument,
    TransitionMetadata,
    VALID_TRANSITIONS,
)
from fleetdeploy.domain.models.fleet import (
    DataStoreRef,
    Domain,
    FleetConfig,
    FleetDefaults,
    RoutingConfig,
    state_key,
)
from fleetdeploy.domain.models.results import (
    BackupResult,
    CleanupResult,
    CommandResult,
    DeployOutcome,
    DomainDeploymentResult,
    HealthResult,
    MigrationResult,
    OperationStatus,
    PortfolioResult,
    PortfolioSummary,
    RestoreResult,
    SchemaSyncResult,
    ValidationResult,
)
from fleetdeploy.domain.models.retry import CancellationToken, RetryPolicy
from fleetdeploy.domain.models.task import DomainTask, TaskStatus


__all__ = [
    "ArtifactStatus",
    "AssessmentInputs",
    "AssessmentResult",
    "AuditEntry",
    "BackupResult",
    "CancellationToken",
    "CapabilityKind",
    "CapabilityManifest",
    "CleanupResult",
    "CommandResult",
    "DataStoreRef",
    "DeployOutcome",
    "DeploymentState",
    "DeploymentStatus",
    "DiscoveryReport",
    "Domain",
    "DomainDeploymentResult",
    "DomainEntity",
    "DomainEvent",
    "DomainTask",
    "FleetConfig",
    "FleetDefaults",
    "GapAnalysis",
    "GapEntry",
    "GapPriority",
    "HealthResult",
    "MigrationResult",
    "OperationStatus",
    "PermissionFeasibility",
    "PortfolioResult",
    "PortfolioSummary",
    "Recommendation",
    "RestoreResult",
    "RetryPolicy",
    "RollbackAction",
    "RollbackActionType",
    "RoutingConfig",
    "SchemaSyncResult",
    "StateDocument",
    "TaskStatus",
    "TransitionMetadata",
    "VALID_TRANSITIONS",
    "ValidationResult",
    "ValueObject",
    "generate_id",
    "generate_short_id",
    "state_key",
    "utc_now",
]
