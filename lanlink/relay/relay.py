"""
Encrypted relay.

Decrypts each inbound frame, dispatches it on its envelope type and
re-encrypts whatever it forwards. Every envelope is handled in
isolation: a bad frame or a failing handler is logged and the session
keeps going.
"""

import logging
from typing import Awaitable, Callable

from pydantic import BaseModel

from lanlink.errors import InvalidInput, LanLinkError, NotFound
from lanlink.presence.models import ProfileFields
from lanlink.presence.store import PresenceStore
from lanlink.relay.envelope import (
    OUTBOUND_ONLY,
    BaseEnvelope,
    ChatEnvelope,
    EnvelopeType,
    FileEnvelope,
    FileRequestEnvelope,
    InviteAcceptedEnvelope,
    InviteRequestEnvelope,
    PeerSignalEnvelope,
    ProfileEnvelope,
    UnknownEnvelopeType,
    UpdateRequestEnvelope,
    envelope_type,
    parse_envelope,
)
from lanlink.relay.gateway import SessionGateway
from lanlink.relay.sessions import Session
from lanlink.security.crypto import FrameError
from lanlink.storage.json_store import ActivityLog, JsonLog, utc_now
from lanlink.transfer.manager import FileTransferCoordinator
from lanlink.updates.distributor import UpdateDistributor

logger = logging.getLogger(__name__)

Handler = Callable[[Session, BaseEnvelope], Awaitable[None]]


class ChatRecord(BaseModel):
    body: str
    sender_address: str | None = None
    group: str
    timestamp: str


class Relay:
    """Routes envelopes between the sessions of one gateway."""

    def __init__(
        self,
        gateway: SessionGateway,
        presence: PresenceStore,
        coordinator: FileTransferCoordinator,
        distributor: UpdateDistributor,
        chat_log: JsonLog,
        activity: ActivityLog,
    ) -> None:
        self.gateway = gateway
        self.presence = presence
        self.coordinator = coordinator
        self.distributor = distributor
        self.chat_log = chat_log
        self._activity = activity

        self._handlers: dict[EnvelopeType, Handler] = {
            EnvelopeType.CHAT: self._on_chat,
            EnvelopeType.TYPING: self.route,
            EnvelopeType.PEER_SIGNAL: self._on_peer_signal,
            EnvelopeType.PROFILE: self._on_profile,
            EnvelopeType.FILE_REQUEST: self._on_file_request,
            EnvelopeType.FILE_ACCEPTED: self._on_file_decision,
            EnvelopeType.FILE_REJECTED: self._on_file_decision,
            EnvelopeType.UPDATE_REQUEST: self._on_update_request,
            EnvelopeType.UPDATE_RESPONSE: self.route,
            EnvelopeType.INVITE_REQUEST: self._on_invite_request,
            EnvelopeType.HEARTBEAT_ACK: self._on_heartbeat_ack,
        }
        for kind in OUTBOUND_ONLY:
            self._handlers[kind] = self._drop
        missing = set(EnvelopeType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No relay handler for: {sorted(m.value for m in missing)}")

    # --- Inbound ---

    async def handle_frame(self, session: Session, frame: str | bytes) -> None:
        """Process one inbound frame; never raises."""
        self.gateway.acknowledge(session)
        try:
            envelope = parse_envelope(self.gateway.open(frame))
        except FrameError as e:
            logger.warning(f"Dropping undecryptable frame from {session.address}: {e}")
            return
        except UnknownEnvelopeType as e:
            logger.warning(f"Dropping envelope from {session.address}: {e}")
            return
        except ValueError as e:
            logger.warning(f"Dropping malformed envelope from {session.address}: {e}")
            return

        if session.address:
            envelope.sender_address = session.address
        kind = envelope_type(envelope)
        try:
            await self._handlers[kind](session, envelope)
        except LanLinkError as e:
            logger.warning(f"{kind.value} from {session.address} refused: {e.message}")
        except Exception as e:
            logger.error(f"{kind.value} from {session.address} failed: {e}", exc_info=True)

    # --- Routing ---

    async def route(self, session: Session, envelope: BaseEnvelope) -> int:
        """Deliver by target address if set, otherwise to the group."""
        if envelope.target_address:
            return await self.gateway.send_to_address(envelope.target_address, envelope)
        return await self.gateway.broadcast(envelope.group or session.group, envelope)

    # --- Handlers ---

    async def _on_chat(self, session: Session, envelope: ChatEnvelope) -> None:
        group = envelope.group or session.group
        envelope.timestamp = utc_now()
        record = ChatRecord(
            body=envelope.body,
            sender_address=session.address,
            group=group,
            timestamp=envelope.timestamp,
        )
        await self.chat_log.append(record.model_dump())
        await self._activity.record("chat_message", f"message: {envelope.body}, group: {group}")
        await self.route(session, envelope)

    async def _on_peer_signal(self, session: Session, envelope: PeerSignalEnvelope) -> None:
        await self.gateway.send_to_address(envelope.target_address, envelope)

    async def _on_profile(self, session: Session, envelope: ProfileEnvelope) -> None:
        if not session.address:
            raise InvalidInput("Profile updates need a session address")
        fields = ProfileFields(**envelope.model_dump(include=set(ProfileFields.model_fields)))
        await self.presence.upsert_profile(session.address, fields)
        await self._activity.record(
            "profile_update",
            f"address: {session.address}, nickname: {fields.nickname}, network: {fields.network_id}",
        )

    async def _on_file_request(self, session: Session, envelope: FileRequestEnvelope) -> None:
        if not envelope.sender_address or not envelope.receiver_address:
            raise InvalidInput("file-request needs a sender and a receiver address")
        await self.coordinator.request(
            envelope.filename, envelope.sender_address, envelope.receiver_address
        )

    async def _on_file_decision(self, session: Session, envelope: FileEnvelope) -> None:
        # Sent by the receiver; target_address names the original sender.
        if not envelope.target_address or not session.address:
            raise InvalidInput(f"{envelope.type} needs the original sender as target_address")
        await self.coordinator.respond(
            envelope.filename,
            sender=envelope.target_address,
            receiver=session.address,
            accept=envelope.type == EnvelopeType.FILE_ACCEPTED.value,
        )

    async def _on_update_request(self, session: Session, envelope: UpdateRequestEnvelope) -> None:
        if not session.address:
            raise InvalidInput("update-request needs a session address")
        await self.distributor.handle_update_request(envelope.version, session.address)

    async def _on_invite_request(self, session: Session, envelope: InviteRequestEnvelope) -> None:
        if not session.address:
            raise InvalidInput("invite-request needs a session address")
        target = await self.presence.get_profile(envelope.target_address)
        if target is None:
            raise NotFound(f"No profile for {envelope.target_address}")
        if not target.invite_code or target.invite_code != envelope.code:
            logger.info(f"Invite code from {session.address} does not match {envelope.target_address}")
            return

        await self.presence.mark_online_or_create(session.address)
        await self.gateway.send_to_address(
            session.address,
            InviteAcceptedEnvelope(
                receiver_address=envelope.target_address, target_address=session.address
            ),
        )
        await self._activity.record(
            "invite_accepted", f"address: {session.address}, target: {envelope.target_address}"
        )

    async def _on_heartbeat_ack(self, session: Session, envelope: BaseEnvelope) -> None:
        logger.debug(f"Heartbeat ack from {session.address}")

    async def _drop(self, session: Session, envelope: BaseEnvelope) -> None:
        logger.info(f"Ignoring relay-only envelope {envelope.type} from {session.address}")
