"""Single source of truth for per-domain deployment state."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from fleetdeploy.domain.errors import ReasonCode, remediation_for, StateNotFoundError
from fleetdeploy.domain.events.deployment_events import DomainStateTransitioned
from fleetdeploy.domain.models.base import DomainEvent, utc_now
from fleetdeploy.domain.models.deployment_state import (
    AuditEntry,
    DeploymentState,
    DeploymentStatus,
    StateDocument,
    TransitionMetadata,
)
from fleetdeploy.domain.models.fleet import Domain
from fleetdeploy.domain.ports.repositories import StateRepository
from fleetdeploy.domain.ports.services import EventPublisher
from fleetdeploy.infrastructure.observability.metrics import STATE_TRANSITIONS_TOTAL


logger = structlog.get_logger(__name__)

DomainRef = Domain | str


def _key_of(domain: DomainRef) -> str:
    return domain.key if isinstance(domain, Domain) else domain


class StateManager:
    """Owns every :class:`DeploymentState` and the audit log.

    Transitions are the only mutation path. Each one is serialized per domain,
    appended to the audit log and persisted before it returns, so a crashed
    process can resume from the state file. Callers only ever receive copies.

    With ``repository=None`` the manager is volatile: nothing is persisted.
    Dry runs use such a snapshot so the durable state is never touched.
    """

    def __init__(
        self,
        repository: StateRepository | None,
        event_publisher: EventPublisher | None = None,
        document: StateDocument | None = None,
    ) -> None:
        self._repository = repository
        self._event_publisher = event_publisher
        self._document = document or StateDocument()
        self._domain_locks: dict[str, asyncio.Lock] = {}
        self._write_lock = asyncio.Lock()

    @property
    def is_durable(self) -> bool:
        return self._repository is not None

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._domain_locks.get(key)
        if lock is None:
            lock = self._domain_locks[key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> StateDocument:
        """Replace in-memory state with what the repository holds."""
        if self._repository is not None:
            self._document = await self._repository.load() or StateDocument()
        logger.info("state_loaded", domains=len(self._document.domains))
        return self._document.model_copy(deep=True)

    async def persist(self) -> None:
        if self._repository is None:
            return
        async with self._write_lock:
            self._document.saved_at = utc_now()
            await self._repository.save(self._document)

    def snapshot(self) -> StateManager:
        """Volatile copy of the current state, for dry runs."""
        return StateManager(None, document=self._document.model_copy(deep=True))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_state(self, domain: DomainRef) -> DeploymentState | None:
        state = self._document.domains.get(_key_of(domain))
        return state.model_copy(deep=True) if state else None

    def get_state(self, domain: DomainRef) -> DeploymentState:
        state = self.find_state(domain)
        if state is None:
            raise StateNotFoundError(f"No deployment state recorded for {_key_of(domain)}")
        return state

    def all_states(self) -> list[DeploymentState]:
        return [state.model_copy(deep=True) for state in self._document.domains.values()]

    def audit_entries(
        self, event: str | None = None, domain: str | None = None
    ) -> list[AuditEntry]:
        return [
            entry for entry in self._document.audit_log
            if (event is None or entry.event == event)
            and (domain is None or entry.domain == domain)
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def register(self, domain: Domain) -> DeploymentState:
        """Create a ``pending`` record for a domain seen for the first time."""
        async with self._lock_for(domain.key):
            state = self._document.domains.get(domain.key)
            if state is None:
                state = DeploymentState(domain=domain.name, environment=domain.environment)
                self._document.domains[domain.key] = state
                self._append_audit(
                    "domain_registered", state, {"deployment_id": state.deployment_id}
                )
                await self.persist()
            return state.model_copy(deep=True)

    async def transition(
        self,
        domain: DomainRef,
        new_status: DeploymentStatus,
        metadata: TransitionMetadata | None = None,
    ) -> DeploymentState:
        key = _key_of(domain)
        metadata = metadata or TransitionMetadata()
        async with self._lock_for(key):
            state = self._document.domains.get(key)
            if state is None:
                raise StateNotFoundError(f"No deployment state recorded for {key}")

            previous = state.apply_transition(new_status, metadata)

            details: dict[str, Any] = {"from": previous.value, "to": new_status.value}
            if metadata.reason_code is not None:
                details["reason_code"] = metadata.reason_code.value
            if metadata.error is not None:
                details["error"] = metadata.error
            if metadata.rollback_action is not None:
                details["rollback_action"] = metadata.rollback_action.type.value
            self._append_audit("state_transition", state, details)
            if metadata.audit_event:
                self._append_audit(metadata.audit_event, state, dict(metadata.details))

            await self.persist()
            result = state.model_copy(deep=True)

        STATE_TRANSITIONS_TOTAL.labels(
            from_status=previous.value, to_status=new_status.value
        ).inc()
        logger.info(
            "state_transitioned",
            domain=state.domain,
            environment=state.environment,
            deployment_id=state.deployment_id,
            from_status=previous.value,
            to_status=new_status.value,
            version=state.version,
        )
        await self._publish(DomainStateTransitioned(
            domain=state.domain,
            environment=state.environment,
            deployment_id=state.deployment_id,
            from_status=previous.value,
            to_status=new_status.value,
            correlation_id=state.deployment_id,
        ))
        return result

    async def ensure_failed(
        self,
        domain: DomainRef,
        reason_code: ReasonCode,
        error: str,
        details: dict[str, Any] | None = None,
    ) -> DeploymentState:
        """Move a non-terminal domain to ``failed``; terminal domains are left alone."""
        state = self.find_state(domain)
        if state is None:
            raise StateNotFoundError(f"No deployment state recorded for {_key_of(domain)}")
        if state.is_terminal:
            return state
        return await self.transition(domain, DeploymentStatus.FAILED, TransitionMetadata(
            error=error,
            reason_code=reason_code,
            remediation=remediation_for(reason_code),
            details=details or {},
        ))

    async def recover_interrupted(self) -> list[str]:
        """Fail every domain a previous process left mid-transition."""
        recovered = []
        for key, state in list(self._document.domains.items()):
            if state.is_in_flight:
                await self.ensure_failed(
                    key,
                    ReasonCode.INTERRUPTED,
                    f"Run interrupted while {state.status.value}",
                    {"interrupted_status": state.status.value},
                )
                recovered.append(key)
        if recovered:
            logger.warning("interrupted_runs_recovered", domains=recovered)
        return recovered

    async def record_audit(
        self,
        event: str,
        domain: DomainRef | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        state = self._document.domains.get(_key_of(domain)) if domain is not None else None
        if state is None and domain is not None:
            entry = self._append_entry(event, _key_of(domain), None, None, details or {})
        else:
            entry = self._append_audit(event, state, details or {})
        await self.persist()
        return entry

    def _append_audit(
        self, event: str, state: DeploymentState | None, details: dict[str, Any]
    ) -> AuditEntry:
        if state is None:
            return self._append_entry(event, None, None, None, details)
        return self._append_entry(
            event, state.domain, state.environment, state.deployment_id, details
        )

    def _append_entry(
        self,
        event: str,
        domain: str | None,
        environment: str | None,
        deployment_id: str | None,
        details: dict[str, Any],
    ) -> AuditEntry:
        entry = AuditEntry(
            sequence=len(self._document.audit_log) + 1,
            event=event,
            domain=domain,
            environment=environment,
            deployment_id=deployment_id,
            details=details,
        )
        self._document.audit_log.append(entry)
        return entry

    async def _publish(self, event: DomainEvent) -> None:
        if self._event_publisher is not None:
            await self._event_publisher.publish(event.event_type, event.model_dump(mode="json"))
