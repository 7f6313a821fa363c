"""Fleet domain models: deployment targets and the fleet file."""

from __future__ import annotations

from pydantic import Field, field_validator

from fleetdeploy.domain.models.base import ValueObject


# Features that imply the domain owns a managed data store.
DATA_FEATURES: frozenset[str] = frozenset({"database", "d1-database", "crud-operations"})


class DataStoreRef(ValueObject):
    """Reference to a domain's managed data store."""

    name: str
    binding: str = "DB"


class RoutingConfig(ValueObject):
    """Remote routing configuration for a domain's worker."""

    worker_name: str = ""
    zone_id: str | None = None
    zone_name: str | None = None
    custom_domain: str | None = None
    routes: list[str] = Field(default_factory=list)


class Domain(ValueObject):
    """A named deployment target; immutable for the duration of a run."""

    name: str
    environment: str = "production"
    service_type: str | None = None
    features: frozenset[str] = Field(default_factory=frozenset)
    data_store: DataStoreRef | None = None
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    service_path: str | None = None

    @field_validator("name", "environment", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @property
    def key(self) -> str:
        """State key for this (domain, environment) pair."""
        return state_key(self.name, self.environment)

    @property
    def declares_data_store(self) -> bool:
        return self.data_store is not None or bool(self.features & DATA_FEATURES)


def state_key(name: str, environment: str) -> str:
    return f"{name}:{environment}"


class FleetDefaults(ValueObject):
    """Values applied to every domain that does not set them itself."""

    environment: str = "production"
    service_type: str | None = None
    features: frozenset[str] = Field(default_factory=frozenset)
    service_path: str | None = None


class FleetConfig(ValueObject):
    """Contents of a fleet file."""

    defaults: FleetDefaults = Field(default_factory=FleetDefaults)
    domains: list[dict[str, object]] = Field(default_factory=list)
