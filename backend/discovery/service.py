"""
HTTP-based LAN discovery service.

Finds controllers by probing every host of the local /24 subnet for
``GET /api/discover``. All probes run concurrently on the event loop, each
bounded by its own timeout, so a scan of an empty subnet takes about one
probe timeout rather than 254 of them.
"""

import asyncio
import logging
import socket

import httpx

from config import P2P_PORT, PROBE_TIMEOUT, SCAN_HOSTS
from discovery.models import DiscoveredController, DiscoverResponse

logger = logging.getLogger(__name__)


class DiscoveryError(RuntimeError):
    """Raised when a scan cannot start (no usable local address)."""


def _is_lan_ipv4(ip: str) -> bool:
    parts = ip.split(".")
    return len(parts) == 4 and not ip.startswith("127.") and not ip.startswith("0.")


def _resolve_local_address() -> str:
    # A UDP "connect" picks the outbound interface without sending anything
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("10.255.255.255", 1))
        ip = sock.getsockname()[0]
        if _is_lan_ipv4(ip):
            return ip
    except OSError as e:
        logger.debug(f"UDP route lookup failed: {e}")
    finally:
        sock.close()

    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        for ip in ips:
            if _is_lan_ipv4(ip):
                return ip
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")

    raise DiscoveryError("Could not determine a LAN IPv4 address")


class DiscoveryService:
    """Scans the local subnet for controllers."""

    def __init__(
        self,
        port: int = P2P_PORT,
        probe_timeout: float = PROBE_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        local_address=None,
    ) -> None:
        self.port = port
        self.probe_timeout = probe_timeout
        self._transport = transport  # injectable for tests
        self._local_address = local_address  # optional fn() -> str override
        self._probe_tasks: list[asyncio.Task] | None = None
        self.discovered: list[DiscoveredController] = []

    @property
    def is_scanning(self) -> bool:
        return self._probe_tasks is not None

    async def get_local_address(self) -> str:
        """Return this host's LAN-facing IPv4 address."""
        if self._local_address is not None:
            return self._local_address()
        return await asyncio.to_thread(_resolve_local_address)

    async def scan(self) -> list[DiscoveredController]:
        """
        Probe every host of the local /24 subnet.

        Returns the controllers that answered, in no particular order. If a
        scan is already running this returns an empty list immediately.

        Raises:
            DiscoveryError: the local address could not be determined.
        """
        if self._probe_tasks is not None:
            logger.warning("Scan already in progress")
            return []

        # Claim the scan before the first await
        tasks: list[asyncio.Task] = []
        self._probe_tasks = tasks

        try:
            local_ip = await self.get_local_address()
            subnet = ".".join(local_ip.split(".")[:3])
            logger.info(f"Scanning subnet {subnet}.0/24 on port {self.port}")

            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(self.probe_timeout),
                limits=httpx.Limits(max_connections=len(SCAN_HOSTS) + 1),
            ) as client:
                if self._probe_tasks is tasks:
                    tasks.extend(
                        asyncio.create_task(self._probe(client, f"{subnet}.{host}"))
                        for host in SCAN_HOSTS
                    )
                results = await asyncio.gather(*tasks, return_exceptions=True)

            discovered = [r for r in results if isinstance(r, DiscoveredController)]
            self.discovered = discovered
            logger.info(f"Found {len(discovered)} controller(s)")
            return discovered
        finally:
            if self._probe_tasks is tasks:
                self._probe_tasks = None

    def stop_scan(self) -> None:
        """Abort every in-flight probe of the running scan."""
        tasks = self._probe_tasks
        self._probe_tasks = None
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        logger.info("Scan cancelled")

    async def _probe(self, client: httpx.AsyncClient, ip: str) -> DiscoveredController | None:
        """Check a single host. Any failure means "no controller here"."""
        url = f"http://{ip}:{self.port}/api/discover"
        try:
            response = await asyncio.wait_for(
                client.get(url, headers={"Accept": "application/json"}),
                timeout=self.probe_timeout,
            )
            if response.status_code != 200:
                return None
            info = DiscoverResponse.model_validate(response.json())
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError):
            # Timeout, refusal, bad body: expected for most of the subnet
            return None

        if info.role != "controller":
            return None

        return DiscoveredController(
            device_id=info.device_id,
            device_name=info.device_name,
            ip=ip,
            port=info.port or self.port,
            version=info.version,
        )
