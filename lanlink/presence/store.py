"""
Presence store: per-address peer profiles persisted as one JSON record.

Every mutation is a read-modify-write of the whole record. Mutations are
funnelled through a single lock that is held across the read, the
(threaded) write and everything in between, so two handlers can never
interleave on the same record and lose an update.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Callable

from lanlink.config import APP_VERSION, PROFILES_PATH
from lanlink.errors import NotFound
from lanlink.presence.models import PeerProfile, PeerStatus, ProfileFields, default_avatar
from lanlink.storage.json_store import JsonRecord

logger = logging.getLogger(__name__)


class PresenceStore:
    """Owns peer profiles keyed by network address."""

    def __init__(self, path: Path = PROFILES_PATH) -> None:
        self._record = JsonRecord(path)
        self._lock = asyncio.Lock()

    async def _mutate(self, fn: Callable[[dict[str, dict]], object]):
        async with self._lock:
            return await asyncio.to_thread(self._mutate_sync, fn)

    def _mutate_sync(self, fn: Callable[[dict[str, dict]], object]):
        profiles = self._record.load()
        result = fn(profiles)
        self._record.save(profiles)
        return result

    async def get_profile(self, address: str) -> PeerProfile | None:
        profiles = await asyncio.to_thread(self._record.load)
        data = profiles.get(address)
        return PeerProfile(**data) if data else None

    async def all_profiles(self) -> dict[str, PeerProfile]:
        profiles = await asyncio.to_thread(self._record.load)
        return {address: PeerProfile(**data) for address, data in profiles.items()}

    async def is_offline(self, address: str) -> bool:
        profile = await self.get_profile(address)
        return profile is not None and profile.status == PeerStatus.OFFLINE

    async def upsert_profile(self, address: str, fields: ProfileFields) -> str:
        """Replace the profile for ``address``, keeping its identity id."""

        def apply(profiles: dict[str, dict]) -> str:
            existing = profiles.get(address) or {}
            identity_id = existing.get("identity_id") or str(uuid.uuid4())
            profile = PeerProfile(
                identity_id=identity_id,
                nickname=fields.nickname,
                avatar=fields.avatar or default_avatar(fields.nickname),
                status=fields.status or PeerStatus.ONLINE,
                auto_accept=bool(fields.auto_accept),
                auto_accept_allowlist=fields.auto_accept_allowlist or [],
                version=fields.version or APP_VERSION,
                network_id=fields.network_id,
                invite_code=fields.invite_code,
            )
            profiles[address] = profile.model_dump(mode="json")
            return identity_id

        identity_id = await self._mutate(apply)
        logger.info(f"Profile updated: {address} ({fields.nickname})")
        return identity_id

    async def _update_existing(self, address: str, **changes) -> PeerProfile:
        def apply(profiles: dict[str, dict]) -> PeerProfile | None:
            if address not in profiles:
                return None
            profile = PeerProfile(**profiles[address]).model_copy(update=changes)
            profiles[address] = profile.model_dump(mode="json")
            return profile

        profile = await self._mutate(apply)
        if profile is None:
            raise NotFound(f"No profile for {address}")
        return profile

    async def set_status(self, address: str, status: PeerStatus) -> PeerProfile:
        profile = await self._update_existing(address, status=PeerStatus(status))
        logger.info(f"Status of {address} -> {profile.status.value}")
        return profile

    async def set_auto_accept(
        self, address: str, enabled: bool, allowlist: list[str] | None = None
    ) -> PeerProfile:
        changes: dict = {"auto_accept": enabled}
        if allowlist is not None:
            changes["auto_accept_allowlist"] = list(allowlist)
        return await self._update_existing(address, **changes)

    async def set_version(self, address: str, version: str) -> PeerProfile:
        return await self._update_existing(address, version=version)

    async def set_status_if_present(self, address: str, status: PeerStatus) -> bool:
        """Liveness transitions only touch peers that already have a profile."""
        try:
            await self.set_status(address, status)
        except NotFound:
            return False
        return True

    async def mark_online_or_create(self, address: str) -> PeerProfile:
        def apply(profiles: dict[str, dict]) -> PeerProfile:
            data = profiles.get(address) or {"identity_id": str(uuid.uuid4())}
            profile = PeerProfile(**data).model_copy(update={"status": PeerStatus.ONLINE})
            profiles[address] = profile.model_dump(mode="json")
            return profile

        return await self._mutate(apply)
