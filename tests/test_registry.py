"""Tests for the device registry."""

import asyncio

import pytest

from lanlink.discovery.models import ServiceRecord
from lanlink.discovery.registry import DeviceRegistry
from lanlink.discovery.service import parse_service_info


def record(name="NODE-a", address="10.0.0.2", port=8000, **txt):
    return ServiceRecord(name=name, address=address, port=port, txt=txt)


class TestDeviceRegistry:

    def test_first_seen_wins(self):
        registry = DeviceRegistry()
        registry.on_discovered(record(address="10.0.0.2", version="1.0.0"))
        registry.on_discovered(record(address="10.0.0.99", version="9.9.9"))

        devices = registry.snapshot()
        assert len(devices) == 1
        assert devices[0].address == "10.0.0.2"
        assert devices[0].advertised_version == "1.0.0"

    def test_refresh_replaces_list_from_cache(self):
        registry = DeviceRegistry()
        registry.on_discovered(record(name="a"))
        registry.on_discovered(record(name="b", address="10.0.0.3"))
        registry.refresh()

        assert [d.name for d in registry.snapshot()] == ["a", "b"]

    def test_snapshot_is_a_copy(self):
        registry = DeviceRegistry()
        registry.on_discovered(record())
        registry.snapshot().clear()
        assert len(registry.snapshot()) == 1

    def test_transfer_port_from_txt(self):
        registry = DeviceRegistry()
        registry.on_discovered(record(transfer_port="51234"))
        assert registry.find_by_address("10.0.0.2").transfer_port == 51234
        assert registry.find_by_address("10.9.9.9") is None

    @pytest.mark.asyncio
    async def test_refresh_loop_runs(self):
        registry = DeviceRegistry(refresh_interval=0.01)
        registry.on_discovered(record())
        registry._devices = []
        await registry.start()
        await asyncio.sleep(0.05)
        await registry.stop()
        assert len(registry.snapshot()) == 1


class FakeServiceInfo:
    type = "_lanlink._tcp.local."

    def __init__(self, addresses, port=8000, properties=None):
        self.name = f"NODE-b.{self.type}"
        self._addresses = addresses
        self.port = port
        self.properties = properties or {}

    def parsed_addresses(self):
        return self._addresses


class TestParseServiceInfo:

    def test_ipv4_record(self):
        info = FakeServiceInfo(
            ["fe80::1", "10.0.0.5"], properties={b"version": b"1.2.0", b"empty": None}
        )
        parsed = parse_service_info(info)
        assert parsed.name == "NODE-b"
        assert parsed.address == "10.0.0.5"
        assert parsed.txt == {"version": "1.2.0"}

    def test_without_ipv4(self):
        assert parse_service_info(FakeServiceInfo(["fe80::1"])) is None
