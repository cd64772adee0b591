"""
Device registry.

Merges discovery events into a de-duplicated cache keyed by device name.
The first advertisement seen for a name wins; re-transmissions are
ignored so a flaky advertiser cannot flap the device entry. Consumers
read a working list that is replaced from the cache on a fixed period
instead of on every event.
"""

import asyncio
import logging

from lanlink.config import APP_VERSION, DEVICE_REFRESH_INTERVAL
from lanlink.discovery.models import Device, ServiceRecord

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Owns the device cache and the periodically refreshed device list."""

    def __init__(self, refresh_interval: float = DEVICE_REFRESH_INTERVAL) -> None:
        self._cache: dict[str, Device] = {}
        self._devices: list[Device] = []
        self._refresh_interval = refresh_interval
        self._refresh_task: asyncio.Task | None = None

    def on_discovered(self, record: ServiceRecord) -> None:
        if record.name in self._cache:
            return

        device = Device(
            name=record.name,
            address=record.address,
            port=record.port,
            advertised_version=record.txt.get("version") or APP_VERSION,
            transfer_port=int(record.txt.get("transfer_port") or 0),
        )
        self._cache[device.name] = device
        # New names are visible right away; the periodic refresh keeps
        # the list aligned with the cache afterwards.
        self._devices.append(device)
        logger.info(f"Discovered device: {device.name} ({device.address}:{device.port})")

    def snapshot(self) -> list[Device]:
        return list(self._devices)

    def refresh(self) -> None:
        """Replace the working list with the cache contents."""
        self._devices = list(self._cache.values())

    def find_by_address(self, address: str) -> Device | None:
        return next((d for d in self._cache.values() if d.address == address), None)

    async def start(self) -> None:
        self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        if self._refresh_task:
            self._refresh_task.cancel()
            self._refresh_task = None

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            self.refresh()
