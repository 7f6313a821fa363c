"""Unit tests for the domain resolver."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from fleetdeploy.config import PlatformSettings
from fleetdeploy.domain.errors import ConfigurationError
from fleetdeploy.domain.models.fleet import DataStoreRef, Domain, FleetConfig, RoutingConfig
from fleetdeploy.domain.ports.services import ReachabilityProbe
from fleetdeploy.domain.services.domain_resolver import (
    clean_name,
    DomainResolver,
    is_valid_domain_format,
)


class UnreachableProbe(ReachabilityProbe):
    def __init__(self) -> None:
        self.probed: list[str] = []

    async def probe(self, hostname: str) -> tuple[bool, str]:
        self.probed.append(hostname)
        return False, "NXDOMAIN"


class TestHelpers:
    def test_clean_name(self) -> None:
        assert clean_name("api.acme.com") == "api-acme-com"

    @pytest.mark.parametrize(
        "name", ["acme.example.com", "a.io", "my-service.example.co.uk"]
    )
    def test_valid_domains(self, name: str) -> None:
        assert is_valid_domain_format(name)

    @pytest.mark.parametrize(
        "name", ["localhost", "-acme.com", "acme..com", "acme_example.com", ""]
    )
    def test_invalid_domains(self, name: str) -> None:
        assert not is_valid_domain_format(name)


class TestDeriveConfig:
    def test_production_defaults(self) -> None:
        domain = DomainResolver().derive_config("acme.example.com")
        assert domain.routing.worker_name == "acme-example-com-data-service"
        assert domain.routing.custom_domain == "acme.example.com"
        assert domain.data_store is None

    def test_environment_prefixes_hostname(self) -> None:
        resolver = DomainResolver()
        assert resolver.derive_config("acme.com", "staging").routing.custom_domain == (
            "staging.acme.com"
        )
        assert resolver.derive_config("acme.com", "development").routing.custom_domain == (
            "dev.acme.com"
        )

    def test_data_features_derive_store(self) -> None:
        domain = DomainResolver().derive_config(
            "acme.example.com", overrides={"features": ["d1-database"]}
        )
        assert domain.data_store == DataStoreRef(name="acme-example-com-auth-db")

    def test_overrides_win(self) -> None:
        domain = DomainResolver().derive_config(
            "acme.example.com",
            overrides={
                "routing": {"worker_name": "acme-api"},
                "data_store": {"name": "acme-db", "binding": "ACME_DB"},
            },
        )
        assert domain.routing.worker_name == "acme-api"
        assert domain.data_store == DataStoreRef(name="acme-db", binding="ACME_DB")


class TestBuildFleet:
    def test_applies_defaults(self) -> None:
        config = FleetConfig.model_validate({
            "defaults": {"environment": "staging", "features": ["observability"]},
            "domains": [
                {"name": "a.example.com"},
                {"name": "b.example.com", "environment": "production", "features": ["kv"]},
            ],
        })
        domains = DomainResolver().build_fleet(config)
        assert [d.key for d in domains] == ["a.example.com:staging", "b.example.com:production"]
        assert domains[1].features == frozenset({"kv", "observability"})

    def test_filter(self) -> None:
        config = FleetConfig.model_validate({
            "domains": [{"name": "a.example.com"}, {"name": "b.example.com"}],
        })
        domains = DomainResolver().build_fleet(config, only={"b.example.com"})
        assert [d.name for d in domains] == ["b.example.com"]

    def test_duplicate_rejected(self) -> None:
        config = FleetConfig.model_validate({
            "domains": [{"name": "a.example.com"}, {"name": "a.example.com"}],
        })
        with pytest.raises(ConfigurationError, match="Duplicate"):
            DomainResolver().build_fleet(config)

    def test_invalid_entry_is_configuration_error(self) -> None:
        config = FleetConfig.model_validate({
            "domains": [{"name": "a.example.com", "routing": {"routes": "not-a-list"}}],
        })
        with pytest.raises(ConfigurationError, match="Invalid fleet entry #0"):
            DomainResolver().build_fleet(config)


class TestValidatePrerequisites:
    @pytest.mark.asyncio
    async def test_valid_domain(self, make_domain: Callable[..., Domain]) -> None:
        result = await DomainResolver().validate_prerequisites(make_domain())
        assert result.valid
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_reports_every_problem(self) -> None:
        domain = Domain(
            name="not a domain",
            environment="qa",
            features=frozenset({"database"}),
            routing=RoutingConfig(worker_name=" "),
        )
        result = await DomainResolver().validate_prerequisites(domain)
        assert not result.valid
        joined = " | ".join(result.errors)
        assert "Invalid domain format" in joined
        assert "Unknown environment 'qa'" in joined
        assert "Worker name is required" in joined
        assert "no data store is configured" in joined

    @pytest.mark.asyncio
    async def test_empty_name(self, make_domain: Callable[..., Domain]) -> None:
        result = await DomainResolver().validate_prerequisites(make_domain(name=""))
        assert "Domain name is required" in result.errors

    @pytest.mark.asyncio
    async def test_invalid_binding(self, make_domain: Callable[..., Domain]) -> None:
        domain = make_domain(data_store=DataStoreRef(name="acme-db", binding="1-bad"))
        result = await DomainResolver().validate_prerequisites(domain)
        assert not result.valid
        assert any("binding" in error for error in result.errors)

    @pytest.mark.asyncio
    async def test_missing_credentials_are_warnings(
        self, make_domain: Callable[..., Domain]
    ) -> None:
        resolver = DomainResolver(platform=PlatformSettings(api_token="", account_id=""))
        result = await resolver.validate_prerequisites(make_domain())
        assert result.valid
        assert len(result.warnings) == 2

    @pytest.mark.asyncio
    async def test_unreachable_host_is_a_warning(
        self, make_domain: Callable[..., Domain]
    ) -> None:
        probe = UnreachableProbe()
        domain = make_domain(
            routing=RoutingConfig(worker_name="acme-api", custom_domain="api.acme.example.com")
        )
        result = await DomainResolver(reachability_probe=probe).validate_prerequisites(domain)
        assert result.valid
        assert probe.probed == ["api.acme.example.com"]
        assert "NXDOMAIN" in result.warnings[0]

    @pytest.mark.asyncio
    async def test_probe_skipped_for_invalid_domain(self) -> None:
        probe = UnreachableProbe()
        domain = Domain(name="bad", routing=RoutingConfig(worker_name="w"))
        await DomainResolver(reachability_probe=probe).validate_prerequisites(domain)
        assert probe.probed == []
