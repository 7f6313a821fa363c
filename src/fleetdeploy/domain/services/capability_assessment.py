"""Capability assessment: manifest building, gap analysis and confidence scoring."""

from __future__ import annotations

import hashlib
import json
from typing import Any

import structlog

from fleetdeploy.domain.models.base import ValueObject
from fleetdeploy.domain.models.capability import (
    ArtifactStatus,
    AssessmentInputs,
    AssessmentResult,
    CapabilityKind,
    CapabilityManifest,
    DiscoveryReport,
    GapAnalysis,
    GapEntry,
    GapPriority,
    PermissionFeasibility,
    PRIORITY_ORDER,
    Recommendation,
)
from fleetdeploy.domain.models.fleet import Domain
from fleetdeploy.domain.ports.services import CacheService, DiscoveryProvider, PermissionInspector
from fleetdeploy.domain.services.capability_table import (
    BASE_INFRASTRUCTURE,
    capability_spec,
    service_profile,
)
from fleetdeploy.infrastructure.observability.metrics import (
    ASSESSMENT_CONFIDENCE,
    ASSESSMENTS_TOTAL,
)


logger = structlog.get_logger(__name__)

CACHE_PREFIX = "assessment:"


class ConfidenceWeights(ValueObject):
    """Tunable scoring constants.

    Only the bounds are fixed: scores stay within [0, 100] and any blocked
    gap caps the score at ``blocked_ceiling``.
    """

    completeness_weight: float = 0.6
    input_bonus: int = 5
    input_bonus_cap: int = 20
    configured_bonus: int = 2
    configured_bonus_cap: int = 20
    blocked_penalty: int = 40
    high_penalty: int = 10
    partial_penalty: int = 5
    warning_penalty: int = 2
    unverified_penalty: int = 10
    blocked_ceiling: int = 40


def compute_confidence(
    inputs: AssessmentInputs,
    discovery: DiscoveryReport | None,
    gap_analysis: GapAnalysis,
    manifest: CapabilityManifest,
    permissions_verified: bool,
    weights: ConfidenceWeights | None = None,
) -> int:
    w = weights or ConfidenceWeights()
    completeness = discovery.assessment.completeness if discovery else 0.0
    score = completeness * w.completeness_weight

    supplied = [inputs.service_type, inputs.domain_name, inputs.environment, inputs.credential]
    score += min(sum(w.input_bonus for value in supplied if value), w.input_bonus_cap)
    score += min(len(gap_analysis.fully_configured) * w.configured_bonus, w.configured_bonus_cap)

    score -= len(gap_analysis.blocked) * w.blocked_penalty
    score -= len(gap_analysis.missing_with(GapPriority.HIGH)) * w.high_penalty
    score -= len(gap_analysis.partially_configured) * w.partial_penalty
    score -= len(gap_analysis.missing_with(GapPriority.WARNING)) * w.warning_penalty
    if not permissions_verified:
        score -= w.unverified_penalty

    missing_required = {
        gap.capability for gap in gap_analysis.missing if gap.kind == CapabilityKind.REQUIRED
    }
    all_required_missing = bool(manifest.required_capabilities) and missing_required >= set(
        manifest.required_capabilities
    )
    if gap_analysis.has_blocking_gaps or all_required_missing:
        score = min(score, w.blocked_ceiling)

    return int(max(0.0, min(score, 100.0)))


def resolve_feasibility(capability: str, scopes: list[str] | None) -> PermissionFeasibility:
    """Can the credential behind ``scopes`` ever provision ``capability``?

    ``scopes=None`` means the credential could not be inspected; the capability
    is then assumed feasible but marked unverified.
    """
    required = list(capability_spec(capability).permissions)
    if scopes is None:
        return PermissionFeasibility(
            capability=capability,
            possible=True,
            required_permissions=required,
            verified=False,
            reason="No credential analysis available",
        )
    granted = {scope.lower() for scope in scopes}
    missing = [permission for permission in required if permission.lower() not in granted]
    if missing:
        return PermissionFeasibility(
            capability=capability,
            possible=False,
            required_permissions=required,
            missing_permissions=missing,
            reason=f"Missing required API permissions: {', '.join(missing)}",
        )
    return PermissionFeasibility(
        capability=capability,
        possible=True,
        required_permissions=required,
        reason="All required permissions available",
    )


def discovered_status(capability: str, discovery: DiscoveryReport | None) -> ArtifactStatus:
    """Best discovery status across the surfaces that satisfy a capability."""
    if discovery is None:
        return ArtifactStatus()
    spec = capability_spec(capability)
    partial: ArtifactStatus | None = None
    for surface in spec.surfaces:
        status = discovery.surface(surface)
        if spec.provider and status.provider != spec.provider:
            continue
        if status.configured and not status.partial:
            if len(spec.surfaces) > 1:
                return ArtifactStatus(configured=True, provider="inferred")
            return status
        if status.partial and partial is None:
            partial = status
    return partial or ArtifactStatus()


def _unique(values: list[str], exclude: set[str] | None = None) -> list[str]:
    seen = set(exclude or ())
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class CapabilityAssessmentEngine:
    """Merges inputs, discovery and permission scopes into an assessment.

    The engine is advisory: collaborator failures (discovery, permission
    inspection) degrade the result instead of raising. The coordinator decides
    whether a blocked gap stops a deployment.
    """

    def __init__(
        self,
        cache: CacheService | None = None,
        discovery: DiscoveryProvider | None = None,
        permission_inspector: PermissionInspector | None = None,
        cache_ttl_seconds: int = 300,
        cache_enabled: bool = True,
        weights: ConfidenceWeights | None = None,
    ) -> None:
        self._cache = cache
        self._discovery = discovery
        self._permission_inspector = permission_inspector
        self._cache_ttl = cache_ttl_seconds
        self._cache_enabled = cache_enabled and cache is not None
        self._weights = weights or ConfidenceWeights()
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        domain: Domain,
        credential: str | None = None,
        *,
        force_refresh: bool = False,
    ) -> AssessmentResult:
        """Assess a fleet domain, gathering discovery and scopes from the ports."""
        reasons: list[str] = []

        discovery: DiscoveryReport | None = None
        if self._discovery is not None:
            try:
                discovery = await self._discovery.discover(domain)
            except Exception as e:
                logger.warning("discovery_failed", domain=domain.name, error=str(e))
                reasons.append(f"discovery failed: {e}")

        scopes: list[str] | None = None
        if credential and self._permission_inspector is not None:
            try:
                scopes = await self._permission_inspector.get_permission_scopes(credential)
            except Exception as e:
                logger.warning("permission_inspection_failed", domain=domain.name, error=str(e))
                reasons.append(f"permission inspection failed: {e}")

        inputs = AssessmentInputs(
            service_type=domain.service_type,
            domain_name=domain.name,
            environment=domain.environment,
            database_name=domain.data_store.name if domain.data_store else None,
            credential=credential,
            service_name=domain.routing.worker_name or None,
        )
        return await self.assess(
            inputs, discovery, scopes, force_refresh=force_refresh, degradation_reasons=reasons
        )

    async def assess(
        self,
        inputs: AssessmentInputs,
        discovery: DiscoveryReport | None,
        permission_scopes: list[str] | None,
        *,
        force_refresh: bool = False,
        degradation_reasons: list[str] | None = None,
    ) -> AssessmentResult:
        reasons = list(degradation_reasons or [])
        key = self.cache_key(inputs, discovery, permission_scopes, reasons)

        if self._cache_enabled and not force_refresh:
            cached = await self._read_cache(key)
            if cached is not None:
                return cached

        result = self._compute(inputs, discovery, permission_scopes, reasons, key)

        if self._cache_enabled and not result.degraded:
            await self._write_cache(key, result)
        return result

    async def force_refresh(
        self,
        inputs: AssessmentInputs,
        discovery: DiscoveryReport | None,
        permission_scopes: list[str] | None,
    ) -> AssessmentResult:
        return await self.assess(inputs, discovery, permission_scopes, force_refresh=True)

    # ------------------------------------------------------------------
    # Computation
    # ------------------------------------------------------------------

    def _compute(
        self,
        inputs: AssessmentInputs,
        discovery: DiscoveryReport | None,
        scopes: list[str] | None,
        reasons: list[str],
        key: str,
    ) -> AssessmentResult:
        if discovery is None and not any(r.startswith("discovery") for r in reasons):
            reasons.append("discovery unavailable")

        manifest = self.build_manifest(inputs, discovery, scopes)
        gap_analysis = self.analyze_gaps(manifest, discovery, reasons)
        confidence = compute_confidence(
            inputs,
            discovery,
            gap_analysis,
            manifest,
            permissions_verified=scopes is not None,
            weights=self._weights,
        )
        recommendations = self.recommend(gap_analysis, discovery)
        result = AssessmentResult(
            manifest=manifest,
            gap_analysis=gap_analysis,
            confidence=confidence,
            recommendations=recommendations,
            next_steps=self.next_steps(gap_analysis, recommendations, confidence),
            cache_key=key,
            degraded=bool(reasons),
            degradation_reasons=reasons,
        )

        ASSESSMENTS_TOTAL.labels(source="degraded" if result.degraded else "fresh").inc()
        ASSESSMENT_CONFIDENCE.observe(confidence)
        logger.info(
            "capability_assessment_completed",
            domain=inputs.domain_name,
            service_type=manifest.service_type,
            confidence=confidence,
            missing=len(gap_analysis.missing),
            blocked=[gap.capability for gap in gap_analysis.blocked],
            degraded=result.degraded,
        )
        return result

    def build_manifest(
        self,
        inputs: AssessmentInputs,
        discovery: DiscoveryReport | None,
        scopes: list[str] | None,
    ) -> CapabilityManifest:
        """Merge explicit inputs, discovered values and service-type defaults."""
        discovered: dict[str, Any] = dict(discovery.values) if discovery else {}
        if discovery and discovery.assessment.service_type not in (None, "", "unknown"):
            discovered.setdefault("service_type", discovery.assessment.service_type)

        sources: dict[str, str] = {}

        def pick(field: str, default: Any = None) -> Any:
            explicit = getattr(inputs, field)
            if explicit:
                sources[field] = "explicit"
                return explicit
            if discovered.get(field):
                sources[field] = "discovered"
                return discovered[field]
            sources[field] = "default"
            return default

        service_type = pick("service_type", "generic")
        profile = service_profile(service_type)
        service_name = pick("service_name")
        required = _unique(list(pick("required_capabilities", list(profile.required))))
        optional = _unique(
            list(pick("optional_capabilities", list(profile.optional))), exclude=set(required)
        )
        infrastructure = _unique(
            [*BASE_INFRASTRUCTURE, *profile.infrastructure], exclude=set(required)
        )
        database_name = pick("database_name")
        if database_name is None and "database" in required:
            database_name = f"{service_name or 'service'}-db"

        feasibility = {
            capability: resolve_feasibility(capability, scopes)
            for capability in [*required, *infrastructure]
        }

        return CapabilityManifest(
            service_type=service_type,
            service_name=service_name,
            domain_name=pick("domain_name"),
            environment=pick("environment"),
            database_name=database_name,
            required_capabilities=required,
            optional_capabilities=optional,
            infrastructure=infrastructure,
            permission_feasibility=feasibility,
            input_sources=sources,
            service_permissions=list(profile.permissions),
        )

    def analyze_gaps(
        self,
        manifest: CapabilityManifest,
        discovery: DiscoveryReport | None,
        degradation_reasons: list[str] | None = None,
    ) -> GapAnalysis:
        fully: list[GapEntry] = []
        partial: list[GapEntry] = []
        missing: list[GapEntry] = []

        def classify(capability: str, kind: CapabilityKind, absent_reason: str) -> None:
            feasibility = manifest.permission_feasibility[capability]
            status = discovered_status(capability, discovery)
            if not feasibility.possible:
                missing.append(GapEntry(
                    capability=capability,
                    kind=kind,
                    priority=GapPriority.BLOCKED,
                    reason=feasibility.reason,
                    deployable=False,
                    missing_permissions=feasibility.missing_permissions,
                ))
            elif status.partial:
                partial.append(GapEntry(
                    capability=capability,
                    kind=kind,
                    priority=GapPriority.MEDIUM,
                    reason="Partially configured, may need completion",
                    provider=status.provider,
                ))
            elif not status.configured:
                missing.append(GapEntry(
                    capability=capability,
                    kind=kind,
                    priority=GapPriority.HIGH,
                    reason=absent_reason,
                ))
            else:
                fully.append(GapEntry(capability=capability, kind=kind, provider=status.provider))

        for capability in manifest.required_capabilities:
            classify(capability, CapabilityKind.REQUIRED, "Required for service functionality")

        for capability in manifest.infrastructure:
            classify(capability, CapabilityKind.INFRASTRUCTURE, "Required infrastructure component")

        for capability in manifest.optional_capabilities:
            status = discovered_status(capability, discovery)
            if status.configured and not status.partial:
                fully.append(GapEntry(
                    capability=capability,
                    kind=CapabilityKind.OPTIONAL,
                    provider=status.provider,
                    reason="Optional capability detected and configured",
                ))

        for reason in degradation_reasons or []:
            missing.append(GapEntry(
                capability=reason.split(" ", 1)[0],
                kind=CapabilityKind.CHECK,
                priority=GapPriority.WARNING,
                reason=f"Could not complete check: {reason}",
            ))

        return GapAnalysis(fully_configured=fully, partially_configured=partial, missing=missing)

    def recommend(
        self, gap_analysis: GapAnalysis, discovery: DiscoveryReport | None
    ) -> list[Recommendation]:
        recommendations: list[Recommendation] = []

        for gap in gap_analysis.missing:
            if gap.kind == CapabilityKind.CHECK:
                recommendations.append(Recommendation(
                    type="retry-check",
                    capability=gap.capability,
                    priority=GapPriority.WARNING,
                    reason=gap.reason,
                    action=f"Re-run the assessment once {gap.capability} is available",
                    effort="low",
                ))
                continue
            spec = capability_spec(gap.capability)
            if gap.priority == GapPriority.BLOCKED:
                recommendations.append(Recommendation(
                    type="grant-permission",
                    capability=gap.capability,
                    priority=GapPriority.BLOCKED,
                    reason=gap.reason,
                    action=f"Grant the API token: {', '.join(gap.missing_permissions)}",
                    effort="low",
                ))
            recommendations.append(Recommendation(
                type="add-capability",
                capability=gap.capability,
                priority=gap.priority or GapPriority.HIGH,
                reason=gap.reason,
                action=spec.action or f"Configure {gap.capability} capability",
                effort=spec.effort,
            ))

        for gap in gap_analysis.partially_configured:
            recommendations.append(Recommendation(
                type="complete-configuration",
                capability=gap.capability,
                priority=GapPriority.MEDIUM,
                reason=gap.reason,
                action="Review and complete configuration",
                effort="low",
            ))

        if len(gap_analysis.fully_configured) > 5:
            recommendations.append(Recommendation(
                type="optimization",
                priority=GapPriority.LOW,
                reason="Service has many capabilities; consider if all are needed",
                action="Review capability usage and consider selective deployment",
                effort="medium",
            ))

        return sorted(recommendations, key=lambda r: PRIORITY_ORDER[r.priority])

    @staticmethod
    def next_steps(
        gap_analysis: GapAnalysis, recommendations: list[Recommendation], confidence: int
    ) -> list[str]:
        steps = []
        if gap_analysis.has_blocking_gaps:
            steps.append("Grant the missing API permissions before deploying")
        if gap_analysis.missing:
            steps.append("Address missing capabilities to ensure service functionality")
        if recommendations:
            steps.append("Review recommendations for service optimization")
        if confidence < 70:
            steps.append("Provide additional inputs to improve assessment accuracy")
        if not steps:
            steps.append("Service appears well-configured, ready for deployment")
        return steps

    @staticmethod
    def quick_summary(result: AssessmentResult) -> dict[str, Any]:
        """Compact view for command-line output."""
        return {
            "service_type": result.manifest.service_type,
            "confidence": result.confidence,
            "blocked": result.blocked,
            "gaps": {
                "missing": len(result.gap_analysis.missing),
                "partial": len(result.gap_analysis.partially_configured),
            },
            "top_recommendations": [r.model_dump(mode="json") for r in result.recommendations[:3]],
            "next_steps": result.next_steps,
            "cached": result.cached,
        }

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    @staticmethod
    def cache_key(
        inputs: AssessmentInputs,
        discovery: DiscoveryReport | None,
        scopes: list[str] | None,
        degradation_reasons: list[str] | None = None,
    ) -> str:
        material = {
            "inputs": inputs.normalized(),
            "discovery": discovery.model_dump(mode="json") if discovery else None,
            "scopes": sorted({s.lower() for s in scopes}) if scopes is not None else None,
            "degraded": sorted(degradation_reasons or []),
        }
        digest = hashlib.sha256(
            json.dumps(material, sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()
        return f"{CACHE_PREFIX}{digest}"

    async def _read_cache(self, key: str) -> AssessmentResult | None:
        assert self._cache is not None
        raw = await self._cache.get(key)
        if raw is None:
            self._misses += 1
            return None
        self._hits += 1
        ASSESSMENTS_TOTAL.labels(source="cached").inc()
        logger.debug("assessment_cache_hit", cache_key=key)
        return AssessmentResult.model_validate(raw).model_copy(update={"cached": True})

    async def _write_cache(self, key: str, result: AssessmentResult) -> None:
        assert self._cache is not None
        await self._cache.set(key, result.model_dump(mode="json"), ttl_seconds=self._cache_ttl)

    def cache_stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "enabled": self._cache_enabled,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups, 3) if lookups else 0.0,
            "ttl_seconds": self._cache_ttl,
        }

    async def clear_cache(self) -> int:
        if self._cache is None:
            return 0
        removed = await self._cache.clear(CACHE_PREFIX)
        self._hits = 0
        self._misses = 0
        logger.info("assessment_cache_cleared", removed=removed)
        return removed
