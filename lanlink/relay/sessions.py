"""
Live relay sessions.

Sessions are stored in an arena of slots. A ``SessionId`` pairs the slot
with the generation that filled it, so a handle kept by a finished
handler can never resolve to a newer session that reused the slot.
Iteration always works on a snapshot, so removing a session during a
broadcast is safe.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import NamedTuple, Protocol

from lanlink.config import WILDCARD_GROUP

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Transport side of a session (a websocket in production)."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class SessionId(NamedTuple):
    slot: int
    generation: int


@dataclass
class Session:
    id: SessionId
    address: str | None
    group: str
    connection: Connection
    last_heartbeat_ack: float = field(default_factory=time.monotonic)
    acknowledged: bool = True
    closed: bool = False

    def matches_group(self, group: str) -> bool:
        return group == WILDCARD_GROUP or self.group == group


class SessionRegistry:
    """Arena of live sessions."""

    def __init__(self) -> None:
        self._slots: list[Session | None] = []
        self._generations: list[int] = []
        self._free: list[int] = []

    def add(self, address: str | None, group: str, connection: Connection) -> Session:
        if self._free:
            slot = self._free.pop()
            self._generations[slot] += 1
        else:
            slot = len(self._slots)
            self._slots.append(None)
            self._generations.append(0)
        session = Session(
            id=SessionId(slot, self._generations[slot]),
            address=address,
            group=group,
            connection=connection,
        )
        self._slots[slot] = session
        return session

    def get(self, session_id: SessionId) -> Session | None:
        if session_id.slot >= len(self._slots):
            return None
        session = self._slots[session_id.slot]
        if session is None or session.id != session_id:
            return None
        return session

    def remove(self, session_id: SessionId) -> Session | None:
        session = self.get(session_id)
        if session is None:
            return None
        self._slots[session_id.slot] = None
        self._free.append(session_id.slot)
        session.closed = True
        return session

    def snapshot(self) -> list[Session]:
        return [s for s in self._slots if s is not None]

    def by_address(self, address: str) -> list[Session]:
        return [s for s in self.snapshot() if s.address == address]

    def by_group(self, group: str) -> list[Session]:
        return [s for s in self.snapshot() if s.matches_group(group)]

    def __len__(self) -> int:
        return len(self._slots) - len(self._free)
