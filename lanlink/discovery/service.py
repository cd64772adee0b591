"""
mDNS-based LAN discovery service.

Advertises this node once at startup and browses for other LAN Link
nodes. Resolved advertisements are handed to the device registry as
``ServiceRecord``s; the mDNS wire format never leaves this module.
"""

import asyncio
import logging
import socket

from zeroconf import ServiceListener, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from lanlink.config import SERVICE_TYPE
from lanlink.discovery.models import ServiceRecord
from lanlink.discovery.registry import DeviceRegistry

logger = logging.getLogger(__name__)

RESOLVE_TIMEOUT_MS = 3000


def get_local_ip() -> str:
    """Best-effort LAN IPv4 address without generating external traffic."""
    try:
        local_ip = socket.gethostbyname(socket.gethostname())
        if local_ip and not local_ip.startswith("127."):
            return local_ip
    except OSError as e:
        logger.debug(f"gethostbyname failed: {e}")

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            # Multicast route lookup; no packet is sent
            s.connect(("224.0.0.1", 1))
            local_ip = s.getsockname()[0]
            if local_ip and not local_ip.startswith("127."):
                return local_ip
    except OSError as e:
        logger.debug(f"Multicast route probe failed: {e}")

    logger.warning("Could not determine local IP, using loopback")
    return "127.0.0.1"


def parse_service_info(info: AsyncServiceInfo) -> ServiceRecord | None:
    addresses = [a for a in info.parsed_addresses() if "." in a]
    if not addresses or info.port is None:
        return None
    txt = {}
    for key, value in (info.properties or {}).items():
        if value is None:
            continue
        txt[key.decode("utf-8")] = value.decode("utf-8")
    name = info.name.removesuffix(f".{info.type}")
    return ServiceRecord(name=name, address=addresses[0], port=info.port, txt=txt)


class DiscoveryListener(ServiceListener):
    """Resolves browse events asynchronously and forwards them to the service."""

    def __init__(self, service: "DiscoveryService") -> None:
        self.service = service

    def add_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self.service.schedule_resolve(type_, name)

    def update_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self.service.schedule_resolve(type_, name)

    def remove_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        logger.debug(f"Service removed: {name}")


class DiscoveryService:
    """Advertises this node and feeds discovered nodes into the registry."""

    def __init__(self, registry: DeviceRegistry, service_type: str = SERVICE_TYPE) -> None:
        self.registry = registry
        self._service_type = service_type
        self._zeroconf: AsyncZeroconf | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._info: AsyncServiceInfo | None = None
        self._tasks: set[asyncio.Task] = set()

    async def advertise(self, service_name: str, port: int, txt: dict[str, str]) -> None:
        """Publish this node once; call before ``start``."""
        if self._zeroconf is None:
            self._zeroconf = AsyncZeroconf()

        local_ip = get_local_ip()
        self._info = AsyncServiceInfo(
            self._service_type,
            f"{service_name}.{self._service_type}",
            addresses=[socket.inet_aton(local_ip)],
            port=port,
            properties={k: str(v) for k, v in txt.items()},
            server=f"{socket.gethostname()}.local.",
        )
        await self._zeroconf.async_register_service(self._info)
        logger.info(f"Advertising {service_name} at {local_ip}:{port}")

    async def start(self) -> None:
        if self._zeroconf is None:
            self._zeroconf = AsyncZeroconf()
        self._browser = AsyncServiceBrowser(
            self._zeroconf.zeroconf,
            self._service_type,
            listener=DiscoveryListener(self),
        )
        await self.registry.start()
        logger.info("Discovery service started")

    async def stop(self) -> None:
        await self.registry.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._browser:
            await self._browser.async_cancel()
            self._browser = None
        if self._zeroconf:
            if self._info:
                await self._zeroconf.async_unregister_service(self._info)
                self._info = None
            await self._zeroconf.async_close()
            self._zeroconf = None
        logger.info("Discovery service stopped")

    def schedule_resolve(self, type_: str, name: str) -> None:
        task = asyncio.ensure_future(self._resolve(type_, name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resolve(self, type_: str, name: str) -> None:
        if self._zeroconf is None:
            return
        info = AsyncServiceInfo(type_, name)
        if not await info.async_request(self._zeroconf.zeroconf, RESOLVE_TIMEOUT_MS):
            logger.debug(f"Could not resolve {name}")
            return
        record = parse_service_info(info)
        if record:
            self.registry.on_discovered(record)
