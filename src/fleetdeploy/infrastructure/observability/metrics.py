"""Prometheus metrics configuration."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
)


# Application info
APP_INFO = Info("fleetdeploy", "Fleet deployment orchestrator info")
APP_INFO.info({
    "version": "1.0.0",
    "service": "fleetdeploy",
})

# Domain deployment metrics
DOMAIN_DEPLOYMENTS_TOTAL = Counter(
    "fleetdeploy_domain_deployments_total",
    "Total number of domain deployment runs by final status",
    ["status", "environment"],
)

DOMAIN_DEPLOYMENT_DURATION = Histogram(
    "fleetdeploy_domain_deployment_duration_seconds",
    "Time taken for one domain's deployment run",
    ["environment"],
    buckets=[1, 5, 10, 30, 60, 120, 300, 900],
)

ACTIVE_DEPLOYMENTS = Gauge(
    "fleetdeploy_active_deployments",
    "Number of domain runs currently in flight",
)

STATE_TRANSITIONS_TOTAL = Counter(
    "fleetdeploy_state_transitions_total",
    "Total number of deployment state transitions",
    ["from_status", "to_status"],
)

# Remote operation metrics
RETRY_ATTEMPTS = Counter(
    "fleetdeploy_retry_attempts_total",
    "Total number of retries of remote operations",
    ["operation"],
)

DATABASE_OPERATIONS_TOTAL = Counter(
    "fleetdeploy_database_operations_total",
    "Total data-store operations",
    ["operation", "status"],
)

ROLLBACK_ACTIONS_TOTAL = Counter(
    "fleetdeploy_rollback_actions_total",
    "Total rollback actions executed",
    ["type", "result"],  # result: success/failure
)

# Assessment metrics
ASSESSMENTS_TOTAL = Counter(
    "fleetdeploy_assessments_total",
    "Total capability assessments",
    ["source"],  # "fresh", "cached", "degraded"
)

ASSESSMENT_CONFIDENCE = Histogram(
    "fleetdeploy_assessment_confidence",
    "Confidence score of fresh assessments",
    buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
)

# Portfolio metrics
PORTFOLIO_RUNS_TOTAL = Counter(
    "fleetdeploy_portfolio_runs_total",
    "Total portfolio runs",
    ["result"],  # "success", "partial", "failed", "cancelled"
)

PERMISSION_LOOKUPS_TOTAL = Counter(
    "fleetdeploy_permission_lookups_total",
    "Credential introspection calls",
    ["result"],  # "hit", "miss", "error"
)
