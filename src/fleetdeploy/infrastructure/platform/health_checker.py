"""Post-deploy HTTP health check."""

from __future__ import annotations

import time

import httpx
import structlog

from fleetdeploy.domain.ports.services import HealthChecker


logger = structlog.get_logger(__name__)


class HttpHealthChecker(HealthChecker):
    """GETs ``<url>/health`` and treats any 2xx answer as healthy."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        path: str = "/health",
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._path = path

    async def check(self, url: str) -> tuple[bool, str]:
        target = f"{url.rstrip('/')}{self._path}"
        start = time.monotonic()
        try:
            if self._client is not None:
                response = await self._client.get(target, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(target)
        except httpx.HTTPError as e:
            logger.warning("health_check_failed", url=target, error=str(e))
            return False, f"{type(e).__name__}: {e}"

        latency_ms = (time.monotonic() - start) * 1000
        healthy = response.is_success
        logger.info(
            "health_check_completed",
            url=target,
            status_code=response.status_code,
            latency_ms=round(latency_ms, 1),
        )
        return healthy, f"HTTP {response.status_code} in {latency_ms:.0f}ms"
