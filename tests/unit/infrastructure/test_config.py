"""Unit tests for application configuration."""

from __future__ import annotations

import pytest

from fleetdeploy.config import (
    AssessmentSettings,
    Environment,
    FeatureFlags,
    KNOWN_ENVIRONMENTS,
    ObservabilitySettings,
    OrchestrationSettings,
    PlatformSettings,
    RedisSettings,
    RetrySettings,
    Settings,
    StateSettings,
)


class TestRetrySettings:
    def test_defaults(self) -> None:
        settings = RetrySettings()
        assert settings.max_attempts == 3
        assert settings.base_delay == 1.0

    def test_to_policy(self) -> None:
        policy = RetrySettings(max_attempts=5, base_delay=0.25, jitter=0.0).to_policy()
        assert policy.max_attempts == 5
        assert policy.delay_for(2) == 0.5

    def test_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "7")
        assert RetrySettings().max_attempts == 7


class TestOrchestrationSettings:
    def test_defaults(self) -> None:
        settings = OrchestrationSettings()
        assert settings.batch_size == 3
        assert settings.parallelism == 3
        assert settings.batch_pause_seconds == 0.0

    def test_rejects_zero_batch(self) -> None:
        with pytest.raises(ValueError):
            OrchestrationSettings(batch_size=0)

    def test_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ORCH_PARALLELISM", "8")
        assert OrchestrationSettings().parallelism == 8


class TestPlatformSettings:
    def test_credentials(self) -> None:
        assert not PlatformSettings(api_token="", account_id="").has_credentials
        assert PlatformSettings(api_token="t", account_id="a").has_credentials

    def test_default_command(self) -> None:
        assert PlatformSettings().wrangler_command == "npx wrangler"


class TestStateSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("STATE_BACKEND", raising=False)
        settings = StateSettings()
        assert settings.backend == "file"
        assert settings.state_file.endswith("state.json")


class TestFeatureFlags:
    def test_defaults(self) -> None:
        flags = FeatureFlags()
        assert flags.assessment_gate is True
        assert flags.rollback_on_failure is True
        assert flags.reachability_probe is False

    def test_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FEATURE_ASSESSMENT_GATE", "false")
        assert FeatureFlags().assessment_gate is False


class TestRedisSettings:
    def test_url_without_password(self) -> None:
        settings = RedisSettings(host="redis", port=6379, password="", db=0)
        assert settings.url == "redis://redis:6379/0"

    def test_url_with_password(self) -> None:
        settings = RedisSettings(host="redis", port=6379, password="secret", db=1)
        assert settings.url == "redis://:secret@redis:6379/1"


class TestObservabilitySettings:
    def test_defaults(self) -> None:
        settings = ObservabilitySettings()
        assert settings.log_level == "INFO"
        assert settings.metrics_enabled is True
        assert settings.tracing_enabled is False


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("ENVIRONMENT", raising=False)
        settings = Settings()
        assert settings.environment == Environment.PRODUCTION
        assert settings.debug is False

    def test_nested_settings(self) -> None:
        settings = Settings()
        assert isinstance(settings.orchestration, OrchestrationSettings)
        assert isinstance(settings.assessment, AssessmentSettings)
        assert isinstance(settings.state, StateSettings)

    def test_nested_from_mapping(self) -> None:
        settings = Settings(state={"state_file": "/tmp/s.json"}, retry={"max_attempts": 2})
        assert settings.state.state_file == "/tmp/s.json"
        assert settings.retry.max_attempts == 2


class TestEnvironment:
    def test_values(self) -> None:
        assert Environment.DEVELOPMENT == "development"
        assert Environment.STAGING == "staging"
        assert Environment.PRODUCTION == "production"

    def test_known_environments(self) -> None:
        assert KNOWN_ENVIRONMENTS == {"development", "staging", "production"}
