"""Domain configuration derivation and prerequisite validation."""

from __future__ import annotations

import re
from typing import Any

import structlog
from pydantic import ValidationError

from fleetdeploy.config import KNOWN_ENVIRONMENTS, PlatformSettings
from fleetdeploy.domain.errors import ConfigurationError
from fleetdeploy.domain.models.fleet import (
    DATA_FEATURES,
    DataStoreRef,
    Domain,
    FleetConfig,
    RoutingConfig,
)
from fleetdeploy.domain.models.results import ValidationResult
from fleetdeploy.domain.ports.services import ReachabilityProbe


logger = structlog.get_logger(__name__)

DOMAIN_PATTERN = re.compile(
    r"^(?=.{1,253}$)[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)
BINDING_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
LOCAL_HOSTS = ("localhost", "127.0.0.1")

ENVIRONMENT_HOST_PREFIXES: dict[str, str] = {
    "production": "",
    "staging": "staging.",
    "development": "dev.",
}


def clean_name(domain_name: str) -> str:
    """``api.acme.com`` -> ``api-acme-com``."""
    return re.sub(r"[^a-zA-Z0-9-]", "", domain_name.replace(".", "-"))


def is_valid_domain_format(domain_name: str) -> bool:
    return bool(DOMAIN_PATTERN.match(domain_name))


class DomainResolver:
    """Builds fleet domains from configuration and checks their prerequisites.

    Validation never raises and never mutates anything: every problem is
    reported in the returned :class:`ValidationResult` and the caller decides
    whether it blocks.
    """

    def __init__(
        self,
        platform: PlatformSettings | None = None,
        known_environments: frozenset[str] = KNOWN_ENVIRONMENTS,
        reachability_probe: ReachabilityProbe | None = None,
    ) -> None:
        self._platform = platform
        self._known_environments = known_environments
        self._probe = reachability_probe

    def derive_config(
        self,
        name: str,
        environment: str = "production",
        overrides: dict[str, Any] | None = None,
    ) -> Domain:
        """Fill in worker, store and hostname names for a bare domain name."""
        overrides = dict(overrides or {})
        clean = clean_name(name)
        features = frozenset(overrides.pop("features", ()) or ())
        service_type = overrides.pop("service_type", None)

        routing_data = dict(overrides.pop("routing", None) or {})
        routing_data.setdefault("worker_name", f"{clean}-data-service")
        routing_data.setdefault(
            "custom_domain", f"{ENVIRONMENT_HOST_PREFIXES.get(environment, '')}{name}"
        )

        data_store = overrides.pop("data_store", None)
        if data_store is None and (features & DATA_FEATURES or service_type == "data-service"):
            data_store = {"name": f"{clean}-auth-db"}
        elif isinstance(data_store, dict) and not data_store.get("name"):
            data_store = {**data_store, "name": f"{clean}-auth-db"}

        return Domain(
            name=name,
            environment=environment,
            service_type=service_type,
            features=features,
            data_store=DataStoreRef.model_validate(data_store) if data_store else None,
            routing=RoutingConfig.model_validate(routing_data),
            **overrides,
        )

    def build_fleet(self, config: FleetConfig, only: set[str] | None = None) -> list[Domain]:
        """Turn fleet-file entries into domains, applying shared defaults."""
        domains: list[Domain] = []
        seen: set[str] = set()
        for index, entry in enumerate(config.domains):
            name = str(entry.get("name", "")).strip()
            if only and name not in only:
                continue
            data = dict(entry)
            data.pop("name", None)
            environment = str(data.pop("environment", None) or config.defaults.environment)
            data.setdefault("service_type", config.defaults.service_type)
            data["features"] = set(data.get("features") or ()) | set(config.defaults.features)
            if config.defaults.service_path and not data.get("service_path"):
                data["service_path"] = config.defaults.service_path
            try:
                domain = self.derive_config(name, environment, data)
            except (ValidationError, TypeError) as e:
                raise ConfigurationError(
                    f"Invalid fleet entry #{index} ({name or '?'}): {e}"
                ) from e
            if domain.key in seen:
                raise ConfigurationError(f"Duplicate fleet entry for {domain.key}")
            seen.add(domain.key)
            domains.append(domain)
        return domains

    async def validate_prerequisites(self, domain: Domain) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        try:
            self._check_shape(domain, errors)
            self._check_credentials(warnings)
            if any(host in domain.name for host in LOCAL_HOSTS):
                warnings.append("Using local domain - may not be accessible externally")
            if self._probe is not None and not errors:
                hostname = domain.routing.custom_domain or domain.name
                reachable, message = await self._probe.probe(hostname)
                if not reachable:
                    warnings.append(f"Reachability probe failed for {hostname}: {message}")
        except Exception as e:
            errors.append(f"Validation error: {e}")

        result = ValidationResult(valid=not errors, errors=errors, warnings=warnings)
        logger.info(
            "domain_prerequisites_validated",
            domain=domain.name,
            environment=domain.environment,
            valid=result.valid,
            errors=len(errors),
            warnings=len(warnings),
        )
        return result

    def _check_shape(self, domain: Domain, errors: list[str]) -> None:
        if not domain.name:
            errors.append("Domain name is required")
        elif not is_valid_domain_format(domain.name):
            errors.append(f"Invalid domain format: {domain.name}")

        if domain.environment not in self._known_environments:
            errors.append(
                f"Unknown environment '{domain.environment}'; "
                f"expected one of {sorted(self._known_environments)}"
            )

        if not domain.routing.worker_name.strip():
            errors.append("Worker name is required")

        if domain.declares_data_store:
            store = domain.data_store
            if store is None:
                errors.append("Domain declares data features but no data store is configured")
            else:
                if not store.name.strip():
                    errors.append("Data store name is required")
                if not BINDING_PATTERN.match(store.binding):
                    errors.append(f"Invalid data store binding: {store.binding!r}")

    def _check_credentials(self, warnings: list[str]) -> None:
        if self._platform is None:
            return
        if not self._platform.api_token:
            warnings.append("PLATFORM_API_TOKEN not configured; remote operations will fail")
        if not self._platform.account_id:
            warnings.append("PLATFORM_ACCOUNT_ID not configured; remote operations will fail")
