"""Capability lookup tables.

Each capability name maps to the discovery surfaces that satisfy it and the
permission scopes a credential needs to provision it. Several names may share
one surface (``crud-operations`` and ``database`` both read ``database``).
Adding a capability is a table edit.
"""

from __future__ import annotations

from typing import NamedTuple


D1_EDIT = "D1:Edit"
KV_EDIT = "Workers KV Storage:Edit"
R2_EDIT = "Workers R2 Storage:Edit"
SCRIPTS_EDIT = "Workers Scripts:Edit"
ROUTES_EDIT = "Workers Routes:Edit"
OBSERVABILITY_EDIT = "Workers Observability:Edit"
PAGES_EDIT = "Cloudflare Pages:Edit"
AI_EDIT = "Workers Agents Configuration:Edit"
ZONE_READ = "Zone:Read"
DNS_EDIT = "DNS:Edit"


class CapabilitySpec(NamedTuple):
    surfaces: tuple[str, ...]
    permissions: tuple[str, ...] = ()
    action: str = ""
    effort: str = "medium"
    # When set, the surface only counts if discovery names this provider.
    provider: str | None = None


CAPABILITY_TABLE: dict[str, CapabilitySpec] = {
    # Data
    "database": CapabilitySpec(
        ("database",), (D1_EDIT,),
        "Configure a D1 database binding in wrangler.toml and add migration scripts", "high",
    ),
    "d1-database": CapabilitySpec(
        ("database",), (D1_EDIT,), "Add D1 database configuration to wrangler.toml",
        "medium", provider="d1",
    ),
    "crud-operations": CapabilitySpec(
        ("database",), (), "Implement Create, Read, Update, Delete operations", "medium",
    ),
    "data-validation": CapabilitySpec(
        ("database",), (), "Add input validation and data sanitization", "low",
    ),
    "backup-restore": CapabilitySpec(("database",), (D1_EDIT,), "Schedule database exports"),
    "data-export": CapabilitySpec(("database",), (), "Add an export endpoint", "low"),
    # Storage
    "storage": CapabilitySpec(
        ("storage",), (R2_EDIT,), "Configure an R2 bucket or KV namespace in wrangler.toml",
    ),
    "r2-storage": CapabilitySpec(
        ("storage",), (R2_EDIT,), "Configure an R2 bucket binding in wrangler.toml",
    ),
    "r2-bucket": CapabilitySpec(("storage",), (R2_EDIT,), "Create the R2 bucket", "low"),
    "file-uploads": CapabilitySpec(("storage",), (), "Add multipart upload handling"),
    "file-downloads": CapabilitySpec(("storage",), (), "Add signed download URLs", "low"),
    "kv": CapabilitySpec(("kv",), (KV_EDIT,), "Configure a KV namespace in wrangler.toml"),
    "kv-storage": CapabilitySpec(
        ("kv",), (KV_EDIT,), "Configure a KV namespace binding in wrangler.toml",
    ),
    "kv-namespace": CapabilitySpec(("kv",), (KV_EDIT,), "Create the KV namespace", "low"),
    "cache-management": CapabilitySpec(("kv",), (), "Add cache read/write helpers", "low"),
    "key-value-operations": CapabilitySpec(("kv",), (), "Add key-value endpoints", "low"),
    # Platform
    "deployment": CapabilitySpec(
        ("deployment",), (SCRIPTS_EDIT, ROUTES_EDIT),
        "Set up wrangler.toml with the worker name, entry point and routes", "low",
    ),
    "observability": CapabilitySpec(
        ("observability",), (OBSERVABILITY_EDIT,), "Enable worker observability", "low",
    ),
    "monitoring": CapabilitySpec(
        ("observability",), (OBSERVABILITY_EDIT,), "Enable worker observability", "low",
    ),
    "health-checks": CapabilitySpec(
        ("monitoring",), (), "Add a /health endpoint for service monitoring", "low",
    ),
    "pages": CapabilitySpec(("pages",), (PAGES_EDIT,), "Create the Pages project"),
    "ai": CapabilitySpec(("ai",), (AI_EDIT,), "Add a Workers AI binding"),
    "workers-ai": CapabilitySpec(("ai",), (AI_EDIT,), "Add a Workers AI binding"),
    "zone": CapabilitySpec(("zone",), (ZONE_READ,), "Add the zone to the account", "low"),
    "dns": CapabilitySpec(("dns",), (DNS_EDIT,), "Create the DNS records for the worker", "low"),
    # Application
    "basic-api": CapabilitySpec(
        ("framework",), (), "Create basic API endpoints with proper routing", "low",
    ),
    "routing": CapabilitySpec(("framework",), (), "Add a request router", "low"),
    "request-handling": CapabilitySpec(("framework",), (), "Add request parsing", "low"),
    "authentication": CapabilitySpec(
        ("authentication",), (), "Add JWT token validation and user authentication logic", "high",
    ),
    "user-management": CapabilitySpec(
        ("authentication",), (), "Implement user registration, login and profiles", "high",
    ),
    "token-validation": CapabilitySpec(
        ("authentication",), (), "Add JWT token parsing and validation middleware",
    ),
    "session-handling": CapabilitySpec(
        ("authentication",), (), "Implement session management and cookies",
    ),
    "queues": CapabilitySpec(
        ("messaging",), (), "Configure Cloudflare Queues for async processing", provider="queues",
    ),
    "content-processing": CapabilitySpec(
        ("messaging", "storage"), (), "Add content parsing and processing logic",
    ),
}


def capability_spec(capability: str) -> CapabilitySpec:
    """Spec for a capability; unknown names have no surface and need no permissions."""
    return CAPABILITY_TABLE.get(capability, CapabilitySpec(surfaces=()))


class ServiceProfile(NamedTuple):
    required: tuple[str, ...]
    optional: tuple[str, ...] = ()
    infrastructure: tuple[str, ...] = ()
    # Coarse service-level scopes, reported for operators.
    permissions: tuple[str, ...] = ("workers:edit", "account:read")


# Every profile also depends on the "deployment" infrastructure.
BASE_INFRASTRUCTURE: tuple[str, ...] = ("deployment",)

SERVICE_TYPE_PROFILES: dict[str, ServiceProfile] = {
    "data-service": ServiceProfile(
        required=("database", "data-validation", "crud-operations"),
        optional=("caching", "data-export", "backup-restore"),
        infrastructure=("d1-database",),
        permissions=("d1:read", "d1:write", "workers:edit", "account:read"),
    ),
    "api-service": ServiceProfile(
        required=("basic-api", "routing", "request-handling"),
        optional=("authentication", "rate-limiting", "cors"),
        permissions=("zone:read", "dns:edit", "workers:edit", "account:read"),
    ),
    "cache-service": ServiceProfile(
        required=("kv-storage", "cache-management", "key-value-operations"),
        optional=("cache-invalidation", "ttl-management", "cache-analytics"),
        infrastructure=("kv-namespace",),
        permissions=("kv:read", "kv:write", "workers:edit", "account:read"),
    ),
    "file-service": ServiceProfile(
        required=("r2-storage", "file-uploads", "file-downloads"),
        optional=("cdn-delivery", "image-processing", "file-versioning"),
        infrastructure=("r2-bucket",),
        permissions=("r2:read", "r2:write", "workers:edit", "account:read"),
    ),
    "auth-service": ServiceProfile(
        required=("user-management", "token-validation", "session-handling"),
        optional=("social-login", "multi-factor-auth", "user-profiles"),
    ),
    "content-service": ServiceProfile(
        required=("content-processing", "api-integration", "scheduled-tasks"),
        optional=("content-filtering", "notification-system", "content-storage"),
        infrastructure=("queues",),
    ),
    "generic": ServiceProfile(required=("basic-api",)),
}


def service_profile(service_type: str | None) -> ServiceProfile:
    return SERVICE_TYPE_PROFILES.get(service_type or "generic", SERVICE_TYPE_PROFILES["generic"])
