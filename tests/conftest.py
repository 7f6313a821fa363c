"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import fnmatch
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from structlog.testing import capture_logs

from fleetdeploy.config import FeatureFlags, OrchestrationSettings, Settings
from fleetdeploy.domain.models.fleet import DataStoreRef, Domain, RoutingConfig
from fleetdeploy.domain.models.results import CommandResult, DeployOutcome
from fleetdeploy.domain.models.retry import RetryPolicy
from fleetdeploy.domain.ports.services import (
    CommandRunner,
    DataStoreClient,
    HealthChecker,
    RemoteDeployer,
)
from fleetdeploy.domain.services.database_orchestrator import DatabaseOrchestrator
from fleetdeploy.domain.services.deployment_coordinator import DeploymentCoordinator
from fleetdeploy.domain.services.domain_resolver import DomainResolver
from fleetdeploy.domain.services.state_manager import StateManager
from fleetdeploy.infrastructure.messaging.event_publisher import InMemoryEventPublisher
from fleetdeploy.infrastructure.persistence.repositories import InMemoryStateRepository


class FakeDataStoreClient(DataStoreClient):
    """Scriptable data store: queued results are consumed first, then defaults apply."""

    def __init__(self, missing: set[str] | None = None) -> None:
        self.missing = missing or set()
        self.migration_results: list[CommandResult] = []
        self.export_results: list[CommandResult] = []
        self.execute_results: list[CommandResult] = []
        self.schemas: dict[str, dict[str, str]] = {}
        self.calls: list[tuple[str, ...]] = []

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    async def store_exists(self, store_name: str, environment: str) -> bool:
        self.calls.append(("store_exists", store_name, environment))
        return store_name not in self.missing

    async def apply_migrations(
        self, store_name: str, environment: str, remote: bool
    ) -> CommandResult:
        self.calls.append(("apply_migrations", store_name, environment))
        if self.migration_results:
            return self.migration_results.pop(0)
        return CommandResult(exit_code=0, stdout="Applied 2 migrations")

    async def export(
        self, store_name: str, environment: str, remote: bool, output_file: str
    ) -> CommandResult:
        self.calls.append(("export", store_name, environment, output_file))
        if self.export_results:
            return self.export_results.pop(0)
        with open(output_file, "w", encoding="utf-8") as f:
            f.write("CREATE TABLE users (id INTEGER);\n")
        return CommandResult(exit_code=0)

    async def execute_file(
        self, store_name: str, environment: str, remote: bool, sql_file: str
    ) -> CommandResult:
        self.calls.append(("execute_file", store_name, environment, sql_file))
        return CommandResult(exit_code=0)

    async def execute(
        self, store_name: str, environment: str, remote: bool, sql: str
    ) -> CommandResult:
        self.calls.append(("execute", store_name, environment, sql))
        if self.execute_results:
            return self.execute_results.pop(0)
        return CommandResult(exit_code=0, stdout="[]")

    async def table_schemas(
        self, store_name: str, environment: str, remote: bool
    ) -> dict[str, str]:
        self.calls.append(("table_schemas", store_name, environment))
        return dict(self.schemas.get(environment, {}))


class FakeDeployer(RemoteDeployer):
    """Deploys succeed unless the domain is listed in ``failing``."""

    def __init__(self) -> None:
        self.outcomes: list[DeployOutcome] = []
        self.failing: dict[str, DeployOutcome] = {}
        self.rollback_result = CommandResult(exit_code=0)
        self.delay = 0.0
        self.deployed: list[str] = []
        self.rollbacks: list[dict[str, Any]] = []

    async def deploy(self, domain: Domain) -> DeployOutcome:
        self.deployed.append(domain.name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if domain.name in self.failing:
            return self.failing[domain.name]
        if self.outcomes:
            return self.outcomes.pop(0)
        return DeployOutcome(
            success=True,
            url=f"https://{domain.routing.worker_name}.acme.workers.dev",
            version_id="7f3e2a10-0000-4000-8000-000000000001",
        )

    async def rollback(
        self,
        worker_name: str,
        environment: str,
        version_id: str | None = None,
        service_path: str | None = None,
    ) -> CommandResult:
        self.rollbacks.append({
            "worker_name": worker_name,
            "environment": environment,
            "version_id": version_id,
        })
        return self.rollback_result


class FakeHealthChecker(HealthChecker):
    def __init__(self, healthy: bool = True) -> None:
        self.healthy = healthy
        self.checked: list[str] = []

    async def check(self, url: str) -> tuple[bool, str]:
        self.checked.append(url)
        return self.healthy, "HTTP 200 in 12ms" if self.healthy else "HTTP 503 in 12ms"


class FakeCommandRunner(CommandRunner):
    """Records invocations and replays queued results."""

    def __init__(self, results: list[CommandResult] | None = None) -> None:
        self.results = list(results or [])
        self.calls: list[dict[str, Any]] = []

    async def run(
        self,
        args: list[str],
        cwd: str | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        self.calls.append({"args": args, "cwd": cwd, "timeout": timeout, "env": env or {}})
        if self.results:
            return self.results.pop(0)
        return CommandResult(command=args, exit_code=0)


class FakeRedis:
    """Dictionary-backed stand-in for the subset of ``redis.asyncio.Redis`` in use."""

    def __init__(self, fail: bool = False) -> None:
        self.data: dict[str, Any] = {}
        self.ttls: dict[str, int] = {}
        self.fail = fail

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")

    async def get(self, key: str) -> Any:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: Any) -> bool:
        self._check()
        self.data[key] = value.encode("utf-8") if isinstance(value, str) else value
        return True

    async def setex(self, key: str, ttl: int, value: Any) -> bool:
        self.ttls[key] = ttl
        return await self.set(key, value)

    async def delete(self, *keys: Any) -> int:
        self._check()
        removed = 0
        for key in keys:
            name = key.decode("utf-8") if isinstance(key, bytes) else key
            if self.data.pop(name, None) is not None:
                removed += 1
        return removed

    async def exists(self, key: str) -> int:
        self._check()
        return int(key in self.data)

    async def scan_iter(self, match: str = "*") -> AsyncIterator[bytes]:
        for key in list(self.data):
            if fnmatch.fnmatch(key, match):
                yield key.encode("utf-8")


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that returns immediately."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def captured_logs() -> Any:
    """Keep structlog output out of command output and expose it to tests."""
    with capture_logs() as logs:
        yield logs


@pytest.fixture
def settings(tmp_path: Any) -> Settings:
    return Settings(
        state={"state_file": str(tmp_path / "state.json"), "backup_dir": str(tmp_path / "bk")},
        retry={"max_attempts": 3, "base_delay": 0.0, "jitter": 0.0},
        orchestration=OrchestrationSettings(batch_size=2, parallelism=2),
    )


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.5, jitter=0.0)


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_domain() -> Callable[..., Domain]:
    def factory(
        name: str = "acme.example.com",
        environment: str = "production",
        *,
        store: str | None = "acme-example-com-auth-db",
        **overrides: Any,
    ) -> Domain:
        clean = name.replace(".", "-")
        data: dict[str, Any] = {
            "name": name,
            "environment": environment,
            "data_store": DataStoreRef(name=store) if store else None,
            "routing": RoutingConfig(worker_name=f"{clean}-data-service"),
        }
        data.update(overrides)
        return Domain(**data)

    return factory


@pytest.fixture
def event_publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def state_repo() -> InMemoryStateRepository:
    return InMemoryStateRepository()


@pytest.fixture
def state_manager(
    state_repo: InMemoryStateRepository, event_publisher: InMemoryEventPublisher
) -> StateManager:
    return StateManager(state_repo, event_publisher)


@pytest.fixture
def data_client() -> FakeDataStoreClient:
    return FakeDataStoreClient()


@pytest.fixture
def deployer() -> FakeDeployer:
    return FakeDeployer()


@pytest.fixture
def health_checker() -> FakeHealthChecker:
    return FakeHealthChecker()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def command_runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def database(
    data_client: FakeDataStoreClient,
    retry_policy: RetryPolicy,
    no_sleep: RecordingSleep,
    tmp_path: Any,
) -> DatabaseOrchestrator:
    return DatabaseOrchestrator(
        data_client,
        retry_policy=retry_policy,
        backup_dir=str(tmp_path / "backups"),
        sleep=no_sleep,
    )


@pytest.fixture
def build_coordinator(
    state_manager: StateManager,
    database: DatabaseOrchestrator,
    deployer: FakeDeployer,
    health_checker: FakeHealthChecker,
    event_publisher: InMemoryEventPublisher,
    retry_policy: RetryPolicy,
    no_sleep: RecordingSleep,
) -> Callable[..., DeploymentCoordinator]:
    def factory(**overrides: Any) -> DeploymentCoordinator:
        kwargs: dict[str, Any] = {
            "state_manager": state_manager,
            "resolver": DomainResolver(),
            "database": database,
            "deployer": deployer,
            "health_checker": health_checker,
            "features": FeatureFlags(),
            "retry_policy": retry_policy,
            "event_publisher": event_publisher,
            "sleep": no_sleep,
        }
        kwargs.update(overrides)
        return DeploymentCoordinator(**kwargs)

    return factory


@pytest.fixture
def coordinator(build_coordinator: Callable[..., DeploymentCoordinator]) -> DeploymentCoordinator:
    return build_coordinator()
