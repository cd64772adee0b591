"""Pydantic models for peer presence."""

from enum import Enum

from pydantic import BaseModel, Field

from lanlink.config import APP_VERSION


class PeerStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    IDLE = "idle"
    DO_NOT_DISTURB = "dnd"


def default_avatar(nickname: str) -> str:
    return f"https://api.dicebear.com/9.x/initials/svg?seed={nickname}"


class PeerProfile(BaseModel):
    """Per-address profile. ``identity_id`` is minted once and kept forever."""
    identity_id: str
    nickname: str = ""
    avatar: str | None = None
    status: PeerStatus = PeerStatus.ONLINE
    auto_accept: bool = False
    auto_accept_allowlist: list[str] = Field(default_factory=list)
    version: str = APP_VERSION
    network_id: str | None = None
    invite_code: str | None = None


class ProfileFields(BaseModel):
    """Writable profile fields as sent by a peer or the control surface."""
    nickname: str = ""
    avatar: str | None = None
    status: PeerStatus | None = None
    auto_accept: bool | None = None
    auto_accept_allowlist: list[str] | None = None
    version: str | None = None
    network_id: str | None = None
    invite_code: str | None = None
