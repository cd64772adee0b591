"""
Relay envelope kinds.

Every message on the relay is one of the models below, selected by the
``type`` tag. ``EnvelopeType`` is the closed list of tags; the relay
checks at construction that each inbound tag has a handler.
"""

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from lanlink.presence.models import ProfileFields


class EnvelopeType(str, Enum):
    CHAT = "chat"
    TYPING = "typing"
    PEER_SIGNAL = "peer-signal"
    PROFILE = "profile"
    FILE_REQUEST = "file-request"
    FILE_ACCEPTED = "file-accepted"
    FILE_AUTO_ACCEPTED = "file-auto-accepted"
    FILE_REJECTED = "file-rejected"
    UPDATE_REQUEST = "update-request"
    UPDATE_RESPONSE = "update-response"
    INVITE_REQUEST = "invite-request"
    INVITE_ACCEPTED = "invite-accepted"
    HEARTBEAT = "heartbeat"
    HEARTBEAT_ACK = "heartbeat-ack"


# Kinds only the relay emits; a session sending one is handled like any
# other inbound envelope of that kind.
OUTBOUND_ONLY = frozenset({
    EnvelopeType.FILE_AUTO_ACCEPTED,
    EnvelopeType.INVITE_ACCEPTED,
    EnvelopeType.HEARTBEAT,
})


class BaseEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    group: str | None = None
    target_address: str | None = None
    sender_address: str | None = None


class ChatEnvelope(BaseEnvelope):
    type: Literal["chat"] = "chat"
    body: str
    timestamp: str | None = None


class TypingEnvelope(BaseEnvelope):
    type: Literal["typing"] = "typing"


class PeerSignalEnvelope(BaseEnvelope):
    """Opaque connection-negotiation payload; never interpreted by the relay."""
    type: Literal["peer-signal"] = "peer-signal"
    target_address: str
    payload: Any = None


class ProfileEnvelope(BaseEnvelope, ProfileFields):
    type: Literal["profile"] = "profile"


class FileEnvelope(BaseEnvelope):
    filename: str
    receiver_address: str | None = None
    transfer_port: int | None = None


class FileRequestEnvelope(FileEnvelope):
    type: Literal["file-request"] = "file-request"


class FileAcceptedEnvelope(FileEnvelope):
    type: Literal["file-accepted"] = "file-accepted"


class FileAutoAcceptedEnvelope(FileEnvelope):
    type: Literal["file-auto-accepted"] = "file-auto-accepted"


class FileRejectedEnvelope(FileEnvelope):
    type: Literal["file-rejected"] = "file-rejected"
    reason: str | None = None


class UpdateRequestEnvelope(BaseEnvelope):
    type: Literal["update-request"] = "update-request"
    version: str


class UpdateResponseEnvelope(BaseEnvelope):
    type: Literal["update-response"] = "update-response"
    metadata: dict[str, Any]


class InviteRequestEnvelope(BaseEnvelope):
    type: Literal["invite-request"] = "invite-request"
    code: str
    target_address: str


class InviteAcceptedEnvelope(BaseEnvelope):
    type: Literal["invite-accepted"] = "invite-accepted"
    receiver_address: str


class HeartbeatEnvelope(BaseEnvelope):
    type: Literal["heartbeat"] = "heartbeat"


class HeartbeatAckEnvelope(BaseEnvelope):
    type: Literal["heartbeat-ack"] = "heartbeat-ack"


Envelope = Annotated[
    Union[
        ChatEnvelope,
        TypingEnvelope,
        PeerSignalEnvelope,
        ProfileEnvelope,
        FileRequestEnvelope,
        FileAcceptedEnvelope,
        FileAutoAcceptedEnvelope,
        FileRejectedEnvelope,
        UpdateRequestEnvelope,
        UpdateResponseEnvelope,
        InviteRequestEnvelope,
        InviteAcceptedEnvelope,
        HeartbeatEnvelope,
        HeartbeatAckEnvelope,
    ],
    Field(discriminator="type"),
]

_adapter: TypeAdapter = TypeAdapter(Envelope)


class UnknownEnvelopeType(ValueError):
    def __init__(self, type_: object) -> None:
        super().__init__(f"unknown envelope type: {type_!r}")
        self.type = type_


def parse_envelope(body: str) -> BaseEnvelope:
    """Decode a decrypted frame body.

    Raises ``UnknownEnvelopeType`` for tags outside ``EnvelopeType`` and
    ``ValueError`` (including pydantic's ``ValidationError``) for
    malformed bodies.
    """
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("envelope must be a JSON object")
    type_ = data.get("type")
    if type_ not in {t.value for t in EnvelopeType}:
        raise UnknownEnvelopeType(type_)
    return _adapter.validate_python(data)


def dump_envelope(envelope: BaseEnvelope) -> str:
    return envelope.model_dump_json(exclude_none=True)


def envelope_type(envelope: BaseEnvelope) -> EnvelopeType:
    return EnvelopeType(envelope.type)
