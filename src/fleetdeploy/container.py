"""Composition root: wires settings to adapters and services."""

from __future__ import annotations

from fleetdeploy.config import Settings
from fleetdeploy.domain.ports.repositories import StateRepository
from fleetdeploy.domain.ports.services import (
    CacheService,
    CommandRunner,
    DiscoveryProvider,
    HealthChecker,
    PermissionInspector,
)
from fleetdeploy.domain.services.capability_assessment import CapabilityAssessmentEngine
from fleetdeploy.domain.services.database_orchestrator import DatabaseOrchestrator
from fleetdeploy.domain.services.deployment_coordinator import DeploymentCoordinator
from fleetdeploy.domain.services.domain_resolver import DomainResolver
from fleetdeploy.domain.services.multi_domain_orchestrator import MultiDomainOrchestrator
from fleetdeploy.domain.services.state_manager import StateManager
from fleetdeploy.infrastructure.cache.memory_cache import InMemoryCacheService
from fleetdeploy.infrastructure.cache.redis_cache import create_redis_client, RedisCacheService
from fleetdeploy.infrastructure.discovery.static import (
    DeclaredDiscoveryProvider,
    StaticDiscoveryProvider,
)
from fleetdeploy.infrastructure.messaging.event_publisher import InMemoryEventPublisher
from fleetdeploy.infrastructure.persistence.repositories import (
    JsonFileStateRepository,
    RedisStateRepository,
)
from fleetdeploy.infrastructure.platform.command_runner import AsyncSubprocessRunner
from fleetdeploy.infrastructure.platform.health_checker import HttpHealthChecker
from fleetdeploy.infrastructure.platform.permission_inspector import HttpPermissionInspector
from fleetdeploy.infrastructure.platform.reachability import DnsReachabilityProbe
from fleetdeploy.infrastructure.platform.wrangler import WranglerD1Client, WranglerDeployer


class ServiceContainer:
    """Assembles one run's object graph.

    Implements the Composition Root pattern. Collaborators can be passed in to
    replace the default adapters, which is how tests run the real services
    without a subprocess or network.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        state_file: str | None = None,
        discovery_file: str | None = None,
        runner: CommandRunner | None = None,
        repository: StateRepository | None = None,
        cache: CacheService | None = None,
        discovery: DiscoveryProvider | None = None,
        permission_inspector: PermissionInspector | None = None,
        health_checker: HealthChecker | None = None,
    ) -> None:
        self._settings = settings
        self.event_publisher = InMemoryEventPublisher()

        runner = runner or AsyncSubprocessRunner(
            default_timeout=settings.platform.deploy_timeout_seconds
        )
        self.repository = repository or self._build_repository(state_file)
        self.state_manager = StateManager(self.repository, self.event_publisher)

        self.resolver = DomainResolver(
            platform=settings.platform,
            reachability_probe=(
                DnsReachabilityProbe() if settings.features.reachability_probe else None
            ),
        )

        if discovery is None:
            discovery = (
                StaticDiscoveryProvider.from_file(discovery_file)
                if discovery_file else DeclaredDiscoveryProvider()
            )
        if permission_inspector is None and settings.platform.api_token:
            permission_inspector = HttpPermissionInspector(
                settings.platform,
                retry_policy=settings.retry.to_policy(),
                cache_ttl_seconds=settings.assessment.cache_ttl_seconds,
            )
        self.assessment = CapabilityAssessmentEngine(
            cache=cache or self._build_cache(),
            discovery=discovery,
            permission_inspector=permission_inspector,
            cache_ttl_seconds=settings.assessment.cache_ttl_seconds,
            cache_enabled=settings.features.assessment_cache,
        )

        self.database = DatabaseOrchestrator(
            WranglerD1Client(runner, settings.platform),
            retry_policy=settings.retry.to_policy(),
            backup_dir=settings.state.backup_dir,
            audit=self._audit_database,
        )
        self.coordinator = DeploymentCoordinator(
            state_manager=self.state_manager,
            resolver=self.resolver,
            database=self.database,
            deployer=WranglerDeployer(runner, settings.platform),
            assessment=self.assessment,
            health_checker=health_checker or HttpHealthChecker(
                timeout=settings.platform.api_timeout_seconds
            ),
            features=settings.features,
            credential=settings.platform.api_token or None,
            retry_policy=settings.retry.to_policy(),
            event_publisher=self.event_publisher,
        )
        self.orchestrator = MultiDomainOrchestrator(
            self.coordinator,
            assessment=self.assessment,
            settings=settings.orchestration,
            event_publisher=self.event_publisher,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    def _build_repository(self, state_file: str | None) -> StateRepository:
        if self._settings.state.backend == "redis":
            return RedisStateRepository(
                create_redis_client(self._settings.redis), key=self._settings.state.redis_key
            )
        return JsonFileStateRepository(state_file or self._settings.state.state_file)

    def _build_cache(self) -> CacheService:
        if self._settings.assessment.cache_backend == "redis":
            return RedisCacheService(create_redis_client(self._settings.redis))
        return InMemoryCacheService(max_entries=self._settings.assessment.cache_max_entries)

    async def _audit_database(self, event: str, details: dict[str, object]) -> None:
        await self.state_manager.record_audit(event, None, details)

    async def start(self) -> list[str]:
        """Load durable state and fail runs a previous process left in flight."""
        await self.state_manager.load()
        return await self.state_manager.recover_interrupted()
