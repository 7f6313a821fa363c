"""DNS-based pre-flight reachability probe."""

from __future__ import annotations

import asyncio
import socket

from fleetdeploy.domain.ports.services import ReachabilityProbe


class DnsReachabilityProbe(ReachabilityProbe):
    """Considers a host reachable when its name resolves."""

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout

    async def probe(self, hostname: str) -> tuple[bool, str]:
        loop = asyncio.get_running_loop()
        try:
            infos = await asyncio.wait_for(
                loop.getaddrinfo(hostname, 443, type=socket.SOCK_STREAM),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return False, f"DNS lookup for {hostname} timed out"
        except OSError as e:
            return False, f"{hostname} does not resolve: {e}"
        addresses = sorted({info[4][0] for info in infos})
        return True, f"{hostname} resolves to {', '.join(addresses[:3])}"
