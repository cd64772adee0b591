"""
Session gateway.

Accepts relay connections, tracks their liveness with a periodic
heartbeat and owns the encrypted send path. Presence transitions caused
by connections (connect -> online, missed heartbeat -> offline) happen
here and nowhere else.
"""

import asyncio
import logging
import time

from lanlink.config import HEARTBEAT_INTERVAL, WILDCARD_GROUP
from lanlink.presence.models import PeerStatus
from lanlink.presence.store import PresenceStore
from lanlink.relay.envelope import BaseEnvelope, HeartbeatEnvelope, dump_envelope
from lanlink.relay.sessions import Connection, Session, SessionId, SessionRegistry
from lanlink.security.crypto import open_frame, seal_frame

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008
GOING_AWAY = 1001


class SessionGateway:
    """Owns live sessions and their encrypted transport."""

    def __init__(
        self,
        presence: PresenceStore,
        relay_key: bytes,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self.presence = presence
        self.sessions = SessionRegistry()
        self._key = relay_key
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat_task: asyncio.Task | None = None

    # --- Connection lifecycle ---

    async def connect(
        self, connection: Connection, address: str | None, group: str | None
    ) -> Session | None:
        """Register a connection. Returns None if it was refused."""
        if not address and not group:
            logger.warning("Refusing anonymous relay connection (no address, no group)")
            await connection.close(code=POLICY_VIOLATION, reason="address or group required")
            return None

        session = self.sessions.add(address or None, group or WILDCARD_GROUP, connection)
        logger.info(
            f"Relay session {session.id.slot}.{session.id.generation} connected: "
            f"address={session.address} group={session.group}. Total: {len(self.sessions)}"
        )
        if session.address:
            await self.presence.set_status_if_present(session.address, PeerStatus.ONLINE)
        return session

    async def disconnect(self, session_id: SessionId) -> None:
        session = self.sessions.remove(session_id)
        if session:
            logger.info(f"Relay session for {session.address} disconnected. Total: {len(self.sessions)}")

    def acknowledge(self, session: Session) -> None:
        session.acknowledged = True
        session.last_heartbeat_ack = time.monotonic()

    # --- Encrypted transport ---

    def open(self, frame: str | bytes) -> str:
        return open_frame(self._key, frame)

    def seal(self, envelope: BaseEnvelope) -> str:
        return seal_frame(self._key, dump_envelope(envelope))

    async def send(self, session: Session, envelope: BaseEnvelope) -> bool:
        if session.closed:
            return False
        try:
            await session.connection.send_text(self.seal(envelope))
            return True
        except Exception as e:
            logger.warning(f"Send to {session.address} failed, dropping session: {e}")
            await self.disconnect(session.id)
            return False

    async def send_to_address(self, address: str, envelope: BaseEnvelope) -> int:
        delivered = 0
        for session in self.sessions.by_address(address):
            if await self.send(session, envelope):
                delivered += 1
        if not delivered:
            logger.debug(f"No live session for {address}; {envelope.type} dropped")
        return delivered

    async def broadcast(self, group: str, envelope: BaseEnvelope) -> int:
        delivered = 0
        for session in self.sessions.by_group(group):
            if await self.send(session, envelope):
                delivered += 1
        return delivered

    def is_connected(self, address: str) -> bool:
        return bool(self.sessions.by_address(address))

    # --- Liveness ---

    async def heartbeat_tick(self) -> None:
        """Close sessions that missed the last heartbeat, ping the rest."""
        for session in self.sessions.snapshot():
            if not session.acknowledged:
                await self._expire(session)
                continue
            session.acknowledged = False
            await self.send(session, HeartbeatEnvelope())

    async def _expire(self, session: Session) -> None:
        logger.info(f"Heartbeat timeout for {session.address}; closing session")
        self.sessions.remove(session.id)
        try:
            await session.connection.close(code=GOING_AWAY, reason="heartbeat timeout")
        except Exception as e:
            logger.debug(f"Close after heartbeat timeout failed: {e}")
        if session.address and not self.is_connected(session.address):
            await self.presence.set_status_if_present(session.address, PeerStatus.OFFLINE)

    async def start(self) -> None:
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        for session in self.sessions.snapshot():
            self.sessions.remove(session.id)
            try:
                await session.connection.close(code=GOING_AWAY, reason="relay shutting down")
            except Exception:
                logger.debug("Close during shutdown failed", exc_info=True)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self.heartbeat_tick()
            except Exception as e:
                logger.error(f"Heartbeat tick failed: {e}", exc_info=True)
