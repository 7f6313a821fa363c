"""Capability assessment domain models."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from fleetdeploy.domain.models.base import utc_now, ValueObject


class GapPriority(str, Enum):
    """Priority of a missing capability."""

    BLOCKED = "blocked"
    HIGH = "high"
    MEDIUM = "medium"
    WARNING = "warning"
    LOW = "low"


PRIORITY_ORDER: dict[GapPriority, int] = {
    GapPriority.BLOCKED: 0,
    GapPriority.HIGH: 1,
    GapPriority.MEDIUM: 2,
    GapPriority.WARNING: 3,
    GapPriority.LOW: 4,
}


class CapabilityKind(str, Enum):
    REQUIRED = "required"
    OPTIONAL = "optional"
    INFRASTRUCTURE = "infrastructure"
    # A pre-flight check that could not be completed (discovery, permissions).
    CHECK = "check"


class ArtifactStatus(BaseModel):
    """What discovery found for one surface (database, storage, framework, ...)."""

    configured: bool = False
    partial: bool = False
    provider: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow", "frozen": True}


class DiscoverySummary(BaseModel):
    completeness: float = 0.0
    service_type: str | None = None

    @field_validator("completeness", mode="before")
    @classmethod
    def _clamp(cls, value: object) -> float:
        try:
            number = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 0.0
        return max(0.0, min(number, 100.0))

    model_config = {"extra": "allow", "frozen": True}


class DiscoveryReport(BaseModel):
    """Best-effort report produced by the artifact-discovery collaborator.

    The report is untrusted: surfaces that do not parse as an
    :class:`ArtifactStatus` are dropped instead of failing the whole report.
    """

    artifacts: dict[str, ArtifactStatus] = Field(default_factory=dict)
    assessment: DiscoverySummary = Field(default_factory=DiscoverySummary)
    values: dict[str, Any] = Field(default_factory=dict)

    @field_validator("artifacts", mode="before")
    @classmethod
    def _lenient_artifacts(cls, value: object) -> dict[str, Any]:
        if not isinstance(value, dict):
            return {}
        cleaned: dict[str, Any] = {}
        for surface, status in value.items():
            if isinstance(status, ArtifactStatus):
                cleaned[str(surface)] = status
            elif isinstance(status, dict):
                cleaned[str(surface)] = status
            elif isinstance(status, bool):
                cleaned[str(surface)] = {"configured": status}
        return cleaned

    @field_validator("assessment", mode="before")
    @classmethod
    def _lenient_assessment(cls, value: object) -> object:
        return value if isinstance(value, (dict, DiscoverySummary)) else {}

    def surface(self, name: str) -> ArtifactStatus:
        return self.artifacts.get(name) or ArtifactStatus()

    model_config = {"extra": "ignore", "frozen": True}


class AssessmentInputs(ValueObject):
    """Explicit caller-supplied inputs; the highest-precedence tier."""

    service_type: str | None = None
    service_name: str | None = None
    domain_name: str | None = None
    environment: str | None = None
    database_name: str | None = None
    credential: str | None = Field(default=None, repr=False)
    required_capabilities: list[str] | None = None
    optional_capabilities: list[str] | None = None

    def normalized(self) -> dict[str, Any]:
        """Deterministic, secret-free view used for cache keys."""
        data = self.model_dump(exclude={"credential"})
        data["credential"] = "present" if self.credential else None
        for field in ("required_capabilities", "optional_capabilities"):
            if data[field] is not None:
                data[field] = sorted(set(data[field]))
        return data


class PermissionFeasibility(ValueObject):
    """Whether the credential can ever satisfy a capability."""

    capability: str
    possible: bool
    required_permissions: list[str] = Field(default_factory=list)
    missing_permissions: list[str] = Field(default_factory=list)
    verified: bool = True
    reason: str = ""


class CapabilityManifest(ValueObject):
    """What a domain's service needs in order to run."""

    service_type: str = "generic"
    service_name: str | None = None
    domain_name: str | None = None
    environment: str | None = None
    database_name: str | None = None
    required_capabilities: list[str] = Field(default_factory=list)
    optional_capabilities: list[str] = Field(default_factory=list)
    infrastructure: list[str] = Field(default_factory=list)
    permission_feasibility: dict[str, PermissionFeasibility] = Field(default_factory=dict)
    input_sources: dict[str, str] = Field(default_factory=dict)
    service_permissions: list[str] = Field(default_factory=list)


class GapEntry(ValueObject):
    capability: str
    kind: CapabilityKind = CapabilityKind.REQUIRED
    priority: GapPriority | None = None
    reason: str = ""
    provider: str | None = None
    deployable: bool = True
    missing_permissions: list[str] = Field(default_factory=list)


class GapAnalysis(ValueObject):
    """Three disjoint classifications of the manifest's capabilities."""

    fully_configured: list[GapEntry] = Field(default_factory=list)
    partially_configured: list[GapEntry] = Field(default_factory=list)
    missing: list[GapEntry] = Field(default_factory=list)

    def missing_with(self, priority: GapPriority) -> list[GapEntry]:
        return [gap for gap in self.missing if gap.priority == priority]

    @property
    def blocked(self) -> list[GapEntry]:
        return self.missing_with(GapPriority.BLOCKED)

    @property
    def has_blocking_gaps(self) -> bool:
        return bool(self.blocked)

    def classification_of(self, capability: str) -> list[str]:
        """Names of the lists a capability appears in (normally exactly one)."""
        found = []
        for label, entries in (
            ("fully_configured", self.fully_configured),
            ("partially_configured", self.partially_configured),
            ("missing", self.missing),
        ):
            if any(entry.capability == capability for entry in entries):
                found.append(label)
        return found


class Recommendation(ValueObject):
    type: str
    priority: GapPriority
    reason: str
    action: str
    capability: str | None = None
    effort: str = "medium"


class AssessmentResult(BaseModel):
    """Outcome of one capability assessment."""

    manifest: CapabilityManifest
    gap_analysis: GapAnalysis
    confidence: int = Field(ge=0, le=100)
    recommendations: list[Recommendation] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    cached: bool = False
    cache_key: str = ""
    degraded: bool = False
    degradation_reasons: list[str] = Field(default_factory=list)
    assessed_at: str = Field(default_factory=lambda: utc_now().isoformat())

    @property
    def blocked(self) -> bool:
        return self.gap_analysis.has_blocking_gaps

    def blocking_permissions(self) -> list[str]:
        permissions: list[str] = []
        for gap in self.gap_analysis.blocked:
            for permission in gap.missing_permissions:
                if permission not in permissions:
                    permissions.append(permission)
        return permissions
