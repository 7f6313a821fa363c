"""Service port interfaces (hexagonal architecture)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from fleetdeploy.domain.models.capability import DiscoveryReport
from fleetdeploy.domain.models.fleet import Domain
from fleetdeploy.domain.models.results import CommandResult, DeployOutcome


class PermissionInspector(ABC):
    """Port for credential introspection on the remote platform."""

    @abstractmethod
    async def get_permission_scopes(self, credential: str) -> list[str]:
        """Return the flat list of permission scopes granted to a credential."""


class DiscoveryProvider(ABC):
    """Port for the artifact-discovery collaborator."""

    @abstractmethod
    async def discover(self, domain: Domain) -> DiscoveryReport:
        """Inspect a domain's local service artifacts."""


class CommandRunner(ABC):
    """Port for running an external command."""

    @abstractmethod
    async def run(
        self,
        args: list[str],
        cwd: str | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """Run a command to completion. Non-zero exits are returned, not raised."""


class DataStoreClient(ABC):
    """Port for the managed data store's command surface."""

    @abstractmethod
    async def store_exists(self, store_name: str, environment: str) -> bool:
        """Existence probe for a data store."""

    @abstractmethod
    async def apply_migrations(
        self, store_name: str, environment: str, remote: bool
    ) -> CommandResult:
        """Apply pending migrations."""

    @abstractmethod
    async def export(
        self, store_name: str, environment: str, remote: bool, output_file: str
    ) -> CommandResult:
        """Export the store's contents to a SQL file."""

    @abstractmethod
    async def execute_file(
        self, store_name: str, environment: str, remote: bool, sql_file: str
    ) -> CommandResult:
        """Execute a SQL file against the store."""

    @abstractmethod
    async def execute(
        self, store_name: str, environment: str, remote: bool, sql: str
    ) -> CommandResult:
        """Execute a SQL statement against the store."""

    @abstractmethod
    async def table_schemas(
        self, store_name: str, environment: str, remote: bool
    ) -> dict[str, str]:
        """Map of table name to its CREATE statement."""


class RemoteDeployer(ABC):
    """Port for the remote platform's deploy tool."""

    @abstractmethod
    async def deploy(self, domain: Domain) -> DeployOutcome:
        """Deploy a domain's worker. Failures are returned with verbatim output."""

    @abstractmethod
    async def rollback(
        self,
        worker_name: str,
        environment: str,
        version_id: str | None = None,
        service_path: str | None = None,
    ) -> CommandResult:
        """Roll a worker back to its previous (or the given) version."""


class HealthChecker(ABC):
    """Port for health checking a deployed worker."""

    @abstractmethod
    async def check(self, url: str) -> tuple[bool, str]:
        """Check a deployed URL. Returns (healthy, message)."""


class ReachabilityProbe(ABC):
    """Port for the lightweight pre-flight reachability probe."""

    @abstractmethod
    async def probe(self, hostname: str) -> tuple[bool, str]:
        """Returns (reachable, message)."""


class EventPublisher(ABC):
    """Port for publishing domain events."""

    @abstractmethod
    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        """Publish an event."""

    @abstractmethod
    async def publish_batch(self, events: list[tuple[str, dict[str, Any]]]) -> None:
        """Publish a batch of events."""


class CacheService(ABC):
    """Port for caching."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Get a value from cache."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int = 300) -> None:
        """Set a value in cache."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a value from cache."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a key exists in cache."""

    @abstractmethod
    async def clear(self, prefix: str = "") -> int:
        """Delete every key with the given prefix; returns the count removed."""
