"""Discovery providers that need no access to the service's source tree."""

from __future__ import annotations

import json
from typing import Any

import structlog

from fleetdeploy.domain.errors import ConfigurationError
from fleetdeploy.domain.models.capability import DiscoveryReport
from fleetdeploy.domain.models.fleet import Domain
from fleetdeploy.domain.ports.services import DiscoveryProvider
from fleetdeploy.domain.services.capability_table import capability_spec


logger = structlog.get_logger(__name__)


class StaticDiscoveryProvider(DiscoveryProvider):
    """Serves pre-computed discovery reports keyed by domain name.

    Reports are validated leniently (see :class:`DiscoveryReport`); domains
    without an entry get ``default`` or an empty report.
    """

    def __init__(
        self,
        reports: dict[str, dict[str, Any]] | None = None,
        default: dict[str, Any] | None = None,
    ) -> None:
        self._reports = reports or {}
        self._default = default

    @classmethod
    def from_file(cls, path: str) -> StaticDiscoveryProvider:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read discovery file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Discovery file {path} must contain a JSON object")
        default = data.pop("*", None)
        return cls(reports=data, default=default)

    async def discover(self, domain: Domain) -> DiscoveryReport:
        raw = self._reports.get(domain.name, self._default)
        if raw is None:
            return DiscoveryReport()
        return DiscoveryReport.model_validate(raw)


class DeclaredDiscoveryProvider(DiscoveryProvider):
    """Builds a report from what the fleet file declares for a domain.

    Every declared feature marks its surfaces configured; a declared data
    store configures the ``database`` surface with the ``d1`` provider.
    """

    async def discover(self, domain: Domain) -> DiscoveryReport:
        artifacts: dict[str, dict[str, Any]] = {}
        if domain.routing.worker_name:
            artifacts["deployment"] = {
                "configured": True,
                "details": {"worker_name": domain.routing.worker_name},
            }
        if domain.data_store is not None:
            artifacts["database"] = {
                "configured": True,
                "provider": "d1",
                "details": {"name": domain.data_store.name, "binding": domain.data_store.binding},
            }
        for feature in sorted(domain.features):
            for surface in capability_spec(feature).surfaces:
                artifacts.setdefault(surface, {"configured": True})

        total = len(domain.features) + 1
        found = sum(1 for name in [*domain.features, "deployment"] if _declared(name, artifacts))
        report = DiscoveryReport.model_validate({
            "artifacts": artifacts,
            "assessment": {
                "completeness": 100.0 * found / total,
                "service_type": domain.service_type,
            },
        })
        logger.debug("declared_discovery", domain=domain.name, surfaces=sorted(artifacts))
        return report


def _declared(capability: str, artifacts: dict[str, dict[str, Any]]) -> bool:
    return any(surface in artifacts for surface in capability_spec(capability).surfaces)
