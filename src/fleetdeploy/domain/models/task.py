"""Domain task model: one domain's run inside a portfolio batch."""

from __future__ import annotations

from enum import Enum

from pydantic import Field

from fleetdeploy.domain.models.base import DomainEntity, generate_id, utc_now
from fleetdeploy.domain.models.fleet import Domain
from fleetdeploy.domain.models.results import DomainDeploymentResult


class TaskStatus(str, Enum):
    """Worker-pool execution states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TASK_VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.CANCELLED},
    TaskStatus.RUNNING: {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.TIMED_OUT},
    TaskStatus.SUCCEEDED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.CANCELLED: set(),
    TaskStatus.TIMED_OUT: set(),
}


class DomainTask(DomainEntity):
    """Execution task for a single domain, carried through the worker pool."""

    id: str = Field(default_factory=generate_id)
    domain: Domain
    batch_index: int = 0
    status: TaskStatus = TaskStatus.PENDING
    timeout_seconds: float = 900.0
    result: DomainDeploymentResult | None = None
    error_message: str = ""
    started_at: str | None = None
    completed_at: str | None = None

    def _transition_to(self, new_status: TaskStatus) -> None:
        valid = TASK_VALID_TRANSITIONS.get(self.status, set())
        if new_status not in valid:
            raise InvalidTaskTransitionError(
                f"Task cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.touch()

    def start(self) -> None:
        self._transition_to(TaskStatus.RUNNING)
        self.started_at = utc_now().isoformat()

    def succeed(self, result: DomainDeploymentResult) -> None:
        self.result = result
        self._transition_to(TaskStatus.SUCCEEDED)
        self.completed_at = utc_now().isoformat()

    def fail(self, error_message: str, result: DomainDeploymentResult | None = None) -> None:
        self.error_message = error_message
        self.result = result
        self._transition_to(TaskStatus.FAILED)
        self.completed_at = utc_now().isoformat()

    def timeout(self, result: DomainDeploymentResult | None = None) -> None:
        self.result = result
        self._transition_to(TaskStatus.TIMED_OUT)
        self.completed_at = utc_now().isoformat()

    def cancel(self, result: DomainDeploymentResult | None = None) -> None:
        self.result = result
        self._transition_to(TaskStatus.CANCELLED)
        self.completed_at = utc_now().isoformat()

    @property
    def is_terminal(self) -> bool:
        return not TASK_VALID_TRANSITIONS[self.status]


class InvalidTaskTransitionError(Exception):
    """Raised when an invalid task state transition is attempted."""
