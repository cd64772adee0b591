"""Tests for the session gateway and session arena."""

import pytest

from conftest import ALICE, BOB, FakeConnection
from lanlink.presence.models import PeerStatus, ProfileFields
from lanlink.relay.envelope import ChatEnvelope, parse_envelope
from lanlink.relay.sessions import SessionRegistry
from lanlink.security.crypto import open_frame


def decode(relay_key, frame):
    return parse_envelope(open_frame(relay_key, frame))


class TestSessionRegistry:

    def test_stale_id_does_not_resolve_to_new_session(self):
        registry = SessionRegistry()
        first = registry.add(ALICE, "all", FakeConnection())
        registry.remove(first.id)
        second = registry.add(BOB, "all", FakeConnection())

        assert second.id.slot == first.id.slot
        assert registry.get(first.id) is None
        assert registry.get(second.id) is second
        assert registry.remove(first.id) is None
        assert len(registry) == 1

    def test_removed_session_is_closed(self):
        registry = SessionRegistry()
        session = registry.add(ALICE, "all", FakeConnection())
        registry.remove(session.id)
        assert session.closed


class TestSessionGateway:

    @pytest.mark.asyncio
    async def test_anonymous_connection_refused(self, gateway):
        conn = FakeConnection()
        assert await gateway.connect(conn, None, None) is None
        assert conn.closed_with == 1008
        assert len(gateway.sessions) == 0

    @pytest.mark.asyncio
    async def test_group_defaults_to_wildcard(self, gateway):
        session = await gateway.connect(FakeConnection(), ALICE, None)
        assert session.group == "all"

    @pytest.mark.asyncio
    async def test_connect_marks_known_profile_online(self, gateway, presence):
        await presence.upsert_profile(ALICE, ProfileFields(nickname="a", status=PeerStatus.OFFLINE))
        await gateway.connect(FakeConnection(), ALICE, "all")
        assert (await presence.get_profile(ALICE)).status == PeerStatus.ONLINE

    @pytest.mark.asyncio
    async def test_disconnect_leaves_status_alone(self, gateway, presence):
        await presence.upsert_profile(ALICE, ProfileFields(nickname="a"))
        session = await gateway.connect(FakeConnection(), ALICE, "all")

        await gateway.disconnect(session.id)

        assert len(gateway.sessions) == 0
        assert (await presence.get_profile(ALICE)).status == PeerStatus.ONLINE

    @pytest.mark.asyncio
    async def test_connect_without_profile_creates_none(self, gateway, presence):
        await gateway.connect(FakeConnection(), ALICE, "all")
        assert await presence.get_profile(ALICE) is None

    @pytest.mark.asyncio
    async def test_missed_heartbeats_close_and_mark_offline(self, gateway, presence, relay_key):
        await presence.upsert_profile(ALICE, ProfileFields(nickname="a"))
        conn = FakeConnection()
        await gateway.connect(conn, ALICE, "all")

        await gateway.heartbeat_tick()
        assert decode(relay_key, conn.sent[-1]).type == "heartbeat"
        assert conn.closed_with is None

        await gateway.heartbeat_tick()
        assert conn.closed_with == 1001
        assert len(gateway.sessions) == 0
        assert (await presence.get_profile(ALICE)).status == PeerStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_acknowledged_session_survives(self, gateway):
        conn = FakeConnection()
        session = await gateway.connect(conn, ALICE, "all")

        for _ in range(3):
            await gateway.heartbeat_tick()
            gateway.acknowledge(session)

        assert conn.closed_with is None
        assert gateway.is_connected(ALICE)

    @pytest.mark.asyncio
    async def test_failed_send_drops_session(self, gateway):
        session = await gateway.connect(FakeConnection(fail=True), ALICE, "all")
        assert await gateway.send(session, ChatEnvelope(body="hi")) is False
        assert not gateway.is_connected(ALICE)

    @pytest.mark.asyncio
    async def test_broadcast_respects_group(self, gateway, relay_key):
        red = FakeConnection()
        blue = FakeConnection()
        await gateway.connect(red, ALICE, "red")
        await gateway.connect(blue, BOB, "blue")

        assert await gateway.broadcast("red", ChatEnvelope(body="hi")) == 1
        assert len(red.sent) == 1 and not blue.sent

        assert await gateway.broadcast("all", ChatEnvelope(body="everyone")) == 2
        assert decode(relay_key, blue.sent[-1]).body == "everyone"
