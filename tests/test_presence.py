"""Tests for the presence store."""

import asyncio

import pytest

from conftest import ALICE, BOB
from lanlink.errors import NotFound
from lanlink.presence.models import PeerStatus, ProfileFields


class TestPresenceStore:

    @pytest.mark.asyncio
    async def test_upsert_keeps_identity(self, presence):
        first = await presence.upsert_profile(ALICE, ProfileFields(nickname="alice"))
        second = await presence.upsert_profile(ALICE, ProfileFields(nickname="alice2"))

        assert first == second
        profile = await presence.get_profile(ALICE)
        assert profile.nickname == "alice2"
        assert profile.status == PeerStatus.ONLINE
        assert "alice2" in profile.avatar

    @pytest.mark.asyncio
    async def test_distinct_addresses_get_distinct_ids(self, presence):
        a = await presence.upsert_profile(ALICE, ProfileFields(nickname="a"))
        b = await presence.upsert_profile(BOB, ProfileFields(nickname="b"))
        assert a != b

    @pytest.mark.asyncio
    async def test_persisted_across_instances(self, presence, tmp_path):
        from lanlink.presence.store import PresenceStore

        identity = await presence.upsert_profile(ALICE, ProfileFields(nickname="alice"))
        reopened = PresenceStore(tmp_path / "profiles.json")
        assert (await reopened.get_profile(ALICE)).identity_id == identity

    @pytest.mark.asyncio
    async def test_set_status_unknown_address(self, presence):
        with pytest.raises(NotFound):
            await presence.set_status(ALICE, PeerStatus.IDLE)
        with pytest.raises(NotFound):
            await presence.set_auto_accept(ALICE, True, [BOB])

    @pytest.mark.asyncio
    async def test_set_auto_accept(self, presence):
        await presence.upsert_profile(ALICE, ProfileFields(nickname="alice"))
        profile = await presence.set_auto_accept(ALICE, True, [BOB])
        assert profile.auto_accept is True
        assert profile.auto_accept_allowlist == [BOB]

    @pytest.mark.asyncio
    async def test_concurrent_mutations_are_not_lost(self, presence):
        await presence.upsert_profile(ALICE, ProfileFields(nickname="alice"))
        await presence.upsert_profile(BOB, ProfileFields(nickname="bob"))

        await asyncio.gather(
            presence.set_status(ALICE, PeerStatus.IDLE),
            presence.set_auto_accept(BOB, True, [ALICE]),
            presence.set_version(ALICE, "2.0.0"),
        )

        alice = await presence.get_profile(ALICE)
        bob = await presence.get_profile(BOB)
        assert alice.status == PeerStatus.IDLE
        assert alice.version == "2.0.0"
        assert bob.auto_accept is True

    @pytest.mark.asyncio
    async def test_is_offline(self, presence):
        assert await presence.is_offline(ALICE) is False
        await presence.upsert_profile(ALICE, ProfileFields(nickname="a", status=PeerStatus.OFFLINE))
        assert await presence.is_offline(ALICE) is True
