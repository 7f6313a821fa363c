"""In-memory state repository for development and testing."""

from __future__ import annotations

from fleetdeploy.domain.models.deployment_state import StateDocument
from fleetdeploy.domain.ports.repositories import StateRepository


class InMemoryStateRepository(StateRepository):
    """Keeps the serialized document in memory.

    The document is stored as JSON text, not as the live object, so tests see
    exactly what a file-backed repository would round-trip.
    """

    def __init__(self, initial: StateDocument | None = None) -> None:
        self._payload: str | None = initial.model_dump_json() if initial else None
        self.save_count = 0

    @property
    def location(self) -> str:
        return "memory"

    async def exists(self) -> bool:
        return self._payload is not None

    async def load(self) -> StateDocument | None:
        if self._payload is None:
            return None
        return StateDocument.model_validate_json(self._payload)

    async def save(self, document: StateDocument) -> None:
        self._payload = document.model_dump_json()
        self.save_count += 1

    def clear(self) -> None:
        self._payload = None
        self.save_count = 0
