"""Per-domain deployment state with full state machine."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from fleetdeploy.domain.errors import InvalidStateTransitionError, ReasonCode
from fleetdeploy.domain.models.base import (
    DomainEntity,
    generate_id,
    generate_short_id,
    utc_now,
    ValueObject,
)
from fleetdeploy.domain.models.fleet import state_key


class DeploymentStatus(str, Enum):
    """Deployment lifecycle states."""

    PENDING = "pending"
    VALIDATING = "validating"
    MIGRATING = "migrating"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


# State machine transitions. Terminal states only lead back to PENDING, which
# starts a new deployment with a fresh deployment id.
VALID_TRANSITIONS: dict[DeploymentStatus, set[DeploymentStatus]] = {
    DeploymentStatus.PENDING: {DeploymentStatus.VALIDATING, DeploymentStatus.FAILED},
    DeploymentStatus.VALIDATING: {DeploymentStatus.MIGRATING, DeploymentStatus.FAILED},
    DeploymentStatus.MIGRATING: {DeploymentStatus.DEPLOYING, DeploymentStatus.FAILED},
    DeploymentStatus.DEPLOYING: {DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED},
    DeploymentStatus.DEPLOYED: {DeploymentStatus.PENDING},
    DeploymentStatus.FAILED: {DeploymentStatus.ROLLED_BACK, DeploymentStatus.PENDING},
    DeploymentStatus.ROLLED_BACK: {DeploymentStatus.PENDING},
}

TERMINAL_STATUSES: frozenset[DeploymentStatus] = frozenset(
    {DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED, DeploymentStatus.ROLLED_BACK}
)

IN_FLIGHT_STATUSES: frozenset[DeploymentStatus] = frozenset(
    {DeploymentStatus.VALIDATING, DeploymentStatus.MIGRATING, DeploymentStatus.DEPLOYING}
)


class RollbackActionType(str, Enum):
    DATABASE_RESTORE = "database_restore"
    WORKER_ROLLBACK = "worker_rollback"


class RollbackAction(ValueObject):
    """A reversible side effect, recorded when it is performed."""

    action_id: str = Field(default_factory=generate_id)
    type: RollbackActionType
    description: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True, "extra": "allow"}


class AuditEntry(ValueObject):
    """One append-only audit log record."""

    sequence: int
    event: str
    domain: str | None = None
    environment: str | None = None
    deployment_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True, "extra": "allow"}


class TransitionMetadata(ValueObject):
    """Optional context attached to a single transition."""

    error: str | None = None
    reason_code: ReasonCode | None = None
    remediation: str | None = None
    rollback_action: RollbackAction | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    audit_event: str | None = None


class DeploymentState(DomainEntity):
    """Deployment record for one (domain, environment) pair.

    Mutated only through :meth:`apply_transition`; ``version`` counts
    transitions. Unknown fields read from a newer state file are kept.
    """

    domain: str
    environment: str
    status: DeploymentStatus = DeploymentStatus.PENDING
    deployment_id: str = Field(default_factory=lambda: generate_short_id("deploy"))
    last_transition_at: datetime = Field(default_factory=utc_now)
    last_error: str | None = None
    reason_code: ReasonCode | None = None
    remediation: str | None = None
    rollback_actions: list[RollbackAction] = Field(default_factory=list)
    audit_trail_ref: str = ""

    model_config = {"extra": "allow"}

    def model_post_init(self, __context: Any) -> None:
        if not self.audit_trail_ref:
            self.audit_trail_ref = self.deployment_id

    @property
    def key(self) -> str:
        return state_key(self.domain, self.environment)

    def can_transition_to(self, new_status: DeploymentStatus) -> bool:
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def apply_transition(
        self,
        new_status: DeploymentStatus,
        metadata: TransitionMetadata | None = None,
    ) -> DeploymentStatus:
        """Validate and execute a transition; returns the previous status."""
        if not self.can_transition_to(new_status):
            valid = VALID_TRANSITIONS.get(self.status, set())
            raise InvalidStateTransitionError(
                f"{self.key}: cannot transition from {self.status.value} to {new_status.value}. "
                f"Valid transitions: {sorted(s.value for s in valid)}"
            )
        metadata = metadata or TransitionMetadata()
        previous = self.status

        if new_status == DeploymentStatus.PENDING:
            self._start_new_deployment()
        if metadata.error is not None:
            self.last_error = metadata.error
        if metadata.reason_code is not None:
            self.reason_code = metadata.reason_code
            self.remediation = metadata.remediation
        if metadata.rollback_action is not None:
            self.rollback_actions = [*self.rollback_actions, metadata.rollback_action]

        self.status = new_status
        self.last_transition_at = utc_now()
        self.touch()
        return previous

    def _start_new_deployment(self) -> None:
        self.deployment_id = generate_short_id("deploy")
        self.audit_trail_ref = self.deployment_id
        self.last_error = None
        self.reason_code = None
        self.remediation = None
        self.rollback_actions = []

    def rollback_stack(self) -> list[RollbackAction]:
        """Rollback actions in execution order (most recent first)."""
        return list(reversed(self.rollback_actions))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES


class StateDocument(BaseModel):
    """Top-level shape of the persisted state file."""

    schema_version: int = 1
    domains: dict[str, DeploymentState] = Field(default_factory=dict)
    audit_log: list[AuditEntry] = Field(default_factory=list)
    saved_at: datetime | None = None

    model_config = {"extra": "allow"}
