"""Application configuration using pydantic-settings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings

from fleetdeploy.domain.models.retry import RetryPolicy


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


KNOWN_ENVIRONMENTS: frozenset[str] = frozenset(e.value for e in Environment)

# Environments whose data stores live on the remote platform.
REMOTE_ENVIRONMENTS: frozenset[str] = frozenset(
    {Environment.STAGING.value, Environment.PRODUCTION.value}
)


class RetrySettings(BaseSettings):
    """Retry policy for blocking remote operations."""

    max_attempts: int = Field(default=3, ge=1, alias="RETRY_MAX_ATTEMPTS")
    base_delay: float = Field(default=1.0, ge=0, alias="RETRY_BASE_DELAY")
    max_delay: float = Field(default=30.0, ge=0, alias="RETRY_MAX_DELAY")
    multiplier: float = Field(default=2.0, ge=1, alias="RETRY_MULTIPLIER")
    jitter: float = Field(default=0.1, ge=0, le=1, alias="RETRY_JITTER")

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
            jitter=self.jitter,
        )

    model_config = {"env_prefix": "RETRY_", "extra": "ignore", "populate_by_name": True}


class OrchestrationSettings(BaseSettings):
    """Portfolio batching and concurrency."""

    batch_size: int = Field(default=3, ge=1, alias="ORCH_BATCH_SIZE")
    parallelism: int = Field(default=3, ge=1, alias="ORCH_PARALLELISM")
    batch_pause_seconds: float = Field(default=0.0, ge=0, alias="ORCH_BATCH_PAUSE_SECONDS")
    domain_timeout_seconds: float = Field(default=900.0, gt=0, alias="ORCH_DOMAIN_TIMEOUT_SECONDS")

    model_config = {"env_prefix": "ORCH_", "extra": "ignore", "populate_by_name": True}


class PlatformSettings(BaseSettings):
    """Remote serverless platform access."""

    api_token: str = Field(default="", alias="PLATFORM_API_TOKEN")
    account_id: str = Field(default="", alias="PLATFORM_ACCOUNT_ID")
    api_base_url: str = Field(
        default="https://api.cloudflare.com/client/v4", alias="PLATFORM_API_BASE_URL"
    )
    wrangler_command: str = Field(default="npx wrangler", alias="PLATFORM_WRANGLER_COMMAND")
    service_path: str = Field(default=".", alias="PLATFORM_SERVICE_PATH")
    deploy_timeout_seconds: float = Field(default=120.0, gt=0, alias="PLATFORM_DEPLOY_TIMEOUT")
    migration_timeout_seconds: float = Field(
        default=120.0, gt=0, alias="PLATFORM_MIGRATION_TIMEOUT"
    )
    backup_timeout_seconds: float = Field(default=300.0, gt=0, alias="PLATFORM_BACKUP_TIMEOUT")
    api_timeout_seconds: float = Field(default=10.0, gt=0, alias="PLATFORM_API_TIMEOUT")

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_token and self.account_id)

    model_config = {"env_prefix": "PLATFORM_", "extra": "ignore", "populate_by_name": True}


class StateSettings(BaseSettings):
    """Durable state store location."""

    backend: str = Field(default="file", alias="STATE_BACKEND")
    state_file: str = Field(default=".fleetdeploy/state.json", alias="STATE_FILE")
    redis_key: str = Field(default="fleetdeploy:state", alias="STATE_REDIS_KEY")
    backup_dir: str = Field(default="backups/database", alias="STATE_BACKUP_DIR")

    model_config = {"env_prefix": "STATE_", "extra": "ignore", "populate_by_name": True}


class AssessmentSettings(BaseSettings):
    """Capability assessment cache."""

    cache_ttl_seconds: int = Field(default=300, ge=0, alias="ASSESSMENT_CACHE_TTL")
    cache_max_entries: int = Field(default=50, ge=1, alias="ASSESSMENT_CACHE_MAX_ENTRIES")
    cache_backend: str = Field(default="memory", alias="ASSESSMENT_CACHE_BACKEND")

    model_config = {"env_prefix": "ASSESSMENT_", "extra": "ignore", "populate_by_name": True}


class FeatureFlags(BaseSettings):
    """Optional behaviour, passed explicitly to the components that need it."""

    assessment_gate: bool = Field(default=True, alias="FEATURE_ASSESSMENT_GATE")
    rollback_on_failure: bool = Field(default=True, alias="FEATURE_ROLLBACK_ON_FAILURE")
    post_deploy_verification: bool = Field(default=True, alias="FEATURE_POST_DEPLOY_VERIFICATION")
    backup_before_migration: bool = Field(default=True, alias="FEATURE_BACKUP_BEFORE_MIGRATION")
    assessment_cache: bool = Field(default=True, alias="FEATURE_ASSESSMENT_CACHE")
    reachability_probe: bool = Field(default=False, alias="FEATURE_REACHABILITY_PROBE")

    model_config = {"env_prefix": "FEATURE_", "extra": "ignore", "populate_by_name": True}


class RedisSettings(BaseSettings):
    """Redis configuration for the shared assessment cache."""

    host: str = Field(default="localhost", alias="REDIS_HOST")
    port: int = Field(default=6379, alias="REDIS_PORT")
    password: str = Field(default="", alias="REDIS_PASSWORD")
    db: int = Field(default=0, alias="REDIS_DB")

    @property
    def url(self) -> str:
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"

    model_config = {"env_prefix": "REDIS_", "extra": "ignore", "populate_by_name": True}


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    otlp_endpoint: str = Field(default="http://localhost:4317", alias="OTLP_ENDPOINT")
    service_name: str = Field(default="fleetdeploy", alias="SERVICE_NAME")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")
    tracing_enabled: bool = Field(default=False, alias="TRACING_ENABLED")

    model_config = {"env_prefix": "OBS_", "extra": "ignore", "populate_by_name": True}


class Settings(BaseSettings):
    """Main application settings."""

    environment: Environment = Field(default=Environment.PRODUCTION, alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    retry: RetrySettings = Field(default_factory=RetrySettings)
    orchestration: OrchestrationSettings = Field(default_factory=OrchestrationSettings)
    platform: PlatformSettings = Field(default_factory=PlatformSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    assessment: AssessmentSettings = Field(default_factory=AssessmentSettings)
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    model_config = {"env_prefix": "", "extra": "ignore", "populate_by_name": True}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
