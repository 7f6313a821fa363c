"""Repository port interfaces (hexagonal architecture)."""

from __future__ import annotations

from abc import ABC, abstractmethod

from fleetdeploy.domain.models.deployment_state import StateDocument


class StateRepository(ABC):
    """Port for durable deployment-state storage."""

    @abstractmethod
    async def load(self) -> StateDocument | None:
        """Read the stored document; ``None`` when nothing was stored yet."""

    @abstractmethod
    async def save(self, document: StateDocument) -> None:
        """Replace the stored document atomically."""

    @abstractmethod
    async def exists(self) -> bool:
        """Check whether a document has been stored."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable location of the store, for logs and CLI output."""
