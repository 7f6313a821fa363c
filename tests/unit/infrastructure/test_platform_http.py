"""Unit tests for the HTTP-backed platform adapters."""

from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest

from fleetdeploy.config import PlatformSettings
from fleetdeploy.domain.errors import PermissionDeniedError, TransientRemoteError
from fleetdeploy.domain.models.retry import RetryPolicy
from fleetdeploy.infrastructure.platform.health_checker import HttpHealthChecker
from fleetdeploy.infrastructure.platform.permission_inspector import (
    HttpPermissionInspector,
    normalize_permission,
    StaticPermissionInspector,
)
from fleetdeploy.infrastructure.platform.reachability import DnsReachabilityProbe


API = "https://api.example.test/client/v4"

Handler = Callable[[httpx.Request], httpx.Response]


def _inspector(handler: Handler, requests: list[httpx.Request]) -> HttpPermissionInspector:
    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    return HttpPermissionInspector(
        PlatformSettings(api_base_url=API),
        client=client,
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0.0, jitter=0.0),
    )


def _token_api(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/user/tokens/verify"):
        return httpx.Response(200, json={"result": {"id": "tok-1", "status": "active"}})
    if request.url.path.endswith("/user/tokens/tok-1"):
        return httpx.Response(200, json={"result": {"policies": [
            {
                "effect": "allow",
                "permission_groups": [
                    {"name": "Workers Scripts Write"},
                    {"name": "D1 Edit"},
                ],
            },
            {"effect": "deny", "permission_groups": [{"name": "Zone DNS Edit"}]},
        ]}})
    return httpx.Response(404)


class TestNormalizePermission:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Workers Scripts Write", "Workers Scripts:Write"),
            ("D1 Edit", "D1:Edit"),
            ("D1:Edit", "D1:Edit"),
            ("Account Settings", "Account Settings"),
        ],
    )
    def test_normalize(self, raw: str, expected: str) -> None:
        assert normalize_permission(raw) == expected


class TestHttpPermissionInspector:
    @pytest.mark.asyncio
    async def test_reads_policies(self) -> None:
        requests: list[httpx.Request] = []
        scopes = await _inspector(_token_api, requests).get_permission_scopes("secret")

        assert scopes == ["D1:Edit", "Workers Scripts:Write"]
        assert requests[0].headers["Authorization"] == "Bearer secret"
        assert str(requests[0].url) == f"{API}/user/tokens/verify"

    @pytest.mark.asyncio
    async def test_inline_permissions(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"result": {"permissions": ["D1 Edit", "D1 Edit"]}})

        requests: list[httpx.Request] = []
        scopes = await _inspector(handler, requests).get_permission_scopes("secret")
        assert scopes == ["D1:Edit"]
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_lookup_cached_per_credential(self) -> None:
        requests: list[httpx.Request] = []
        inspector = _inspector(_token_api, requests)

        await inspector.get_permission_scopes("secret")
        await inspector.get_permission_scopes("secret")
        assert len(requests) == 2

        await inspector.get_permission_scopes("other")
        assert len(requests) == 4

        inspector.clear_cache()
        await inspector.get_permission_scopes("secret")
        assert len(requests) == 6

    @pytest.mark.asyncio
    async def test_rejected_token(self) -> None:
        requests: list[httpx.Request] = []
        inspector = _inspector(lambda request: httpx.Response(401), requests)
        with pytest.raises(PermissionDeniedError):
            await inspector.get_permission_scopes("bad")
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_server_errors_retried_then_raised(self) -> None:
        requests: list[httpx.Request] = []
        inspector = _inspector(lambda request: httpx.Response(503), requests)
        with pytest.raises(TransientRemoteError):
            await inspector.get_permission_scopes("secret")
        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientRemoteError):
            await _inspector(handler, []).get_permission_scopes("secret")

    @pytest.mark.asyncio
    async def test_missing_token_id(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"result": {}})

        with pytest.raises(PermissionDeniedError, match="no token id"):
            await _inspector(handler, []).get_permission_scopes("secret")


class TestStaticPermissionInspector:
    @pytest.mark.asyncio
    async def test_per_credential(self) -> None:
        inspector = StaticPermissionInspector(
            scopes=["D1:Read"], per_credential={"admin": ["D1:Edit"]}
        )
        assert await inspector.get_permission_scopes("admin") == ["D1:Edit"]
        assert await inspector.get_permission_scopes("anyone") == ["D1:Read"]
        assert inspector.calls == 2


class TestHttpHealthChecker:
    @staticmethod
    def _checker(status: int, seen: list[str]) -> HttpHealthChecker:
        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(status)

        return HttpHealthChecker(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    @pytest.mark.asyncio
    async def test_healthy(self) -> None:
        seen: list[str] = []
        healthy, message = await self._checker(200, seen).check("https://acme.workers.dev/")

        assert healthy
        assert message.startswith("HTTP 200 in ")
        assert seen == ["https://acme.workers.dev/health"]

    @pytest.mark.asyncio
    async def test_unhealthy_status(self) -> None:
        healthy, message = await self._checker(503, []).check("https://acme.workers.dev")
        assert not healthy
        assert "HTTP 503" in message

    @pytest.mark.asyncio
    async def test_connection_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no route to host", request=request)

        checker = HttpHealthChecker(
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        healthy, message = await checker.check("https://acme.workers.dev")
        assert not healthy
        assert message.startswith("ConnectError")


class TestDnsReachabilityProbe:
    @pytest.mark.asyncio
    async def test_localhost_resolves(self) -> None:
        reachable, message = await DnsReachabilityProbe().probe("localhost")
        assert reachable
        assert message.startswith("localhost resolves to")

    @pytest.mark.asyncio
    async def test_reserved_name_does_not_resolve(self) -> None:
        reachable, _ = await DnsReachabilityProbe(timeout=2.0).probe("fleetdeploy.invalid")
        assert not reachable
