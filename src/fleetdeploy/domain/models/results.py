"""Structured results returned by resolver, database and coordinator operations."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import Field

from fleetdeploy.domain.errors import ReasonCode
from fleetdeploy.domain.models.base import ValueObject
from fleetdeploy.domain.models.deployment_state import DeploymentStatus


class ValidationResult(ValueObject):
    """Outcome of a prerequisite check; failures are reported, not raised."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class OperationStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    DRY_RUN = "dry-run"
    SKIPPED = "skipped"


class CommandResult(ValueObject):
    """Exit status and verbatim output of a subprocess."""

    command: list[str] = Field(default_factory=list)
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class DatabaseOperationResult(ValueObject):
    """Fields shared by every data-store operation."""

    status: OperationStatus
    store_name: str
    environment: str = ""
    attempts: int = 0
    error: str | None = None
    reason_code: ReasonCode | None = None
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == OperationStatus.SUCCESS

    @property
    def is_dry_run(self) -> bool:
        return self.status == OperationStatus.DRY_RUN


class MigrationResult(DatabaseOperationResult):
    binding: str = "DB"
    migrations_applied: int = 0


class BackupResult(DatabaseOperationResult):
    backup_file: str | None = None
    size_bytes: int = 0


class RestoreResult(DatabaseOperationResult):
    backup_file: str = ""


class HealthResult(DatabaseOperationResult):
    healthy: bool = False
    latency_ms: float = 0.0


class SchemaSyncResult(DatabaseOperationResult):
    """Schema diff between two environments.

    ``intended_changes`` is populated in both modes; ``applied`` is only true
    when the changes were executed.
    """

    source_environment: str = ""
    target_environment: str = ""
    intended_changes: list[str] = Field(default_factory=list)
    applied: bool = False


class CleanupResult(DatabaseOperationResult):
    tables: list[str] = Field(default_factory=list)
    statements: list[str] = Field(default_factory=list)


class EnvironmentMigrationReport(ValueObject):
    """Result of migrating one store across several environments."""

    results: dict[str, MigrationResult] = Field(default_factory=dict)
    stopped_early: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.stopped_early and all(
            r.succeeded or r.is_dry_run for r in self.results.values()
        )


class DeployOutcome(ValueObject):
    """Result of the remote deploy call."""

    success: bool
    url: str | None = None
    version_id: str | None = None
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    dry_run: bool = False


class RollbackReport(ValueObject):
    executed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class DomainDeploymentResult(ValueObject):
    """Outcome of one domain's coordinator run."""

    domain: str
    environment: str
    status: DeploymentStatus
    deployment_id: str = ""
    success: bool = False
    skipped: bool = False
    dry_run: bool = False
    error: str | None = None
    reason_code: ReasonCode | None = None
    remediation: str | None = None
    warnings: list[str] = Field(default_factory=list)
    url: str | None = None
    duration_seconds: float = 0.0
    rollback: RollbackReport | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class BatchResult(ValueObject):
    index: int
    domains: list[str]
    succeeded: int = 0
    failed: int = 0
    duration_seconds: float = 0.0


class PortfolioSummary(ValueObject):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    success_rate: float = 0.0
    average_duration_seconds: float = 0.0
    batches: list[BatchResult] = Field(default_factory=list)
    cancelled: bool = False
    blocked_by_gate: int = 0


class PortfolioResult(ValueObject):
    orchestration_id: str
    per_domain: list[DomainDeploymentResult] = Field(default_factory=list)
    summary: PortfolioSummary = Field(default_factory=PortfolioSummary)
    dry_run: bool = False

    def result_for(self, domain: str) -> DomainDeploymentResult | None:
        for result in self.per_domain:
            if result.domain == domain:
                return result
        return None
