"""Credential permission lookup against the platform API."""

from __future__ import annotations

import hashlib
import time
from collections.abc import Callable
from typing import Any

import httpx
import structlog

from fleetdeploy.config import PlatformSettings
from fleetdeploy.domain.errors import PermissionDeniedError, TransientRemoteError
from fleetdeploy.domain.models.retry import RetryPolicy
from fleetdeploy.domain.ports.services import PermissionInspector
from fleetdeploy.domain.services.retry import retry_async
from fleetdeploy.infrastructure.observability.metrics import PERMISSION_LOOKUPS_TOTAL


logger = structlog.get_logger(__name__)

ACCESS_LEVELS = ("Edit", "Write", "Read")


def normalize_permission(name: str) -> str:
    """``"Workers Scripts Write"`` becomes ``"Workers Scripts:Write"``.

    Names that already carry a level pass through unchanged.
    """
    name = name.strip()
    if ":" in name:
        return name
    head, _, level = name.rpartition(" ")
    if head and level in ACCESS_LEVELS:
        return f"{head}:{level}"
    return name


def _fingerprint(credential: str) -> str:
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


class HttpPermissionInspector(PermissionInspector):
    """Reads a token's permission groups from the platform REST API.

    The token is verified first; its policies are then fetched and flattened
    into ``"Group:Level"`` scope strings. Lookups are cached per credential
    fingerprint so a portfolio run asks once per token.
    """

    def __init__(
        self,
        settings: PlatformSettings,
        client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        cache_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._client = client
        self._policy = retry_policy or RetryPolicy()
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[float, list[str]]] = {}

    async def get_permission_scopes(self, credential: str) -> list[str]:
        key = _fingerprint(credential)
        cached = self._cache.get(key)
        if cached and cached[0] > self._clock():
            PERMISSION_LOOKUPS_TOTAL.labels(result="cached").inc()
            return list(cached[1])

        try:
            scopes = await retry_async(
                lambda attempt: self._lookup(credential),
                self._policy,
                operation_name="permission_lookup",
            )
        except PermissionDeniedError:
            PERMISSION_LOOKUPS_TOTAL.labels(result="denied").inc()
            raise
        except TransientRemoteError:
            PERMISSION_LOOKUPS_TOTAL.labels(result="error").inc()
            raise

        PERMISSION_LOOKUPS_TOTAL.labels(result="success").inc()
        self._cache[key] = (self._clock() + self._cache_ttl, scopes)
        logger.info("permission_scopes_loaded", scope_count=len(scopes))
        return list(scopes)

    async def _lookup(self, credential: str) -> list[str]:
        if self._client is not None:
            return await self._lookup_with(self._client, credential)
        async with httpx.AsyncClient(timeout=self._settings.api_timeout_seconds) as client:
            return await self._lookup_with(client, credential)

    async def _lookup_with(self, client: httpx.AsyncClient, credential: str) -> list[str]:
        headers = {"Authorization": f"Bearer {credential}"}
        verify = await self._get(client, "/user/tokens/verify", headers)
        result = verify.get("result") or {}

        # Some token types report their permissions inline.
        if isinstance(result.get("permissions"), list):
            return sorted({normalize_permission(p) for p in result["permissions"]})

        token_id = result.get("id")
        if not token_id:
            raise PermissionDeniedError("Token verification returned no token id")
        details = await self._get(client, f"/user/tokens/{token_id}", headers)
        scopes: set[str] = set()
        for policy in (details.get("result") or {}).get("policies", []):
            if policy.get("effect", "allow") != "allow":
                continue
            for group in policy.get("permission_groups", []):
                if group.get("name"):
                    scopes.add(normalize_permission(group["name"]))
        return sorted(scopes)

    async def _get(
        self, client: httpx.AsyncClient, path: str, headers: dict[str, str]
    ) -> dict[str, Any]:
        url = f"{self._settings.api_base_url.rstrip('/')}{path}"
        try:
            response = await client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientRemoteError(f"Permission lookup timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientRemoteError(f"Permission lookup failed: {e}") from e

        if response.status_code in (401, 403):
            raise PermissionDeniedError(
                f"Platform rejected the API token ({response.status_code})"
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRemoteError(
                f"Platform API returned {response.status_code} for {path}"
            )
        response.raise_for_status()
        return response.json()

    def clear_cache(self) -> None:
        self._cache.clear()


class StaticPermissionInspector(PermissionInspector):
    """Fixed scopes per credential, for offline runs and tests."""

    def __init__(
        self,
        scopes: list[str] | None = None,
        per_credential: dict[str, list[str]] | None = None,
    ) -> None:
        self._scopes = scopes or []
        self._per_credential = per_credential or {}
        self.calls = 0

    async def get_permission_scopes(self, credential: str) -> list[str]:
        self.calls += 1
        return list(self._per_credential.get(credential, self._scopes))
