"""Pydantic models for file transfer."""

from enum import Enum
from typing import NamedTuple

from pydantic import BaseModel


class TransferState(str, Enum):
    """All possible states for a file transfer."""
    REQUESTED = "requested"
    AWAITING_DECISION = "awaiting_decision"
    AUTO_ACCEPTED = "auto_accepted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TRANSFERRING = "transferring"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"


ACCEPTED_STATES = (TransferState.AUTO_ACCEPTED, TransferState.ACCEPTED)
FINAL_STATES = (
    TransferState.REJECTED,
    TransferState.COMPLETE,
    TransferState.CANCELLED,
    TransferState.FAILED,
)


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class TransferMethod(str, Enum):
    UPLOAD = "upload"  # bulk upload into the received/shared tree
    PUSH = "push"  # chunked delivery over a peer channel


class TransferKey(NamedTuple):
    filename: str
    sender_address: str
    receiver_address: str


class TransferInfo(BaseModel):
    """Full state of a single file transfer."""
    transfer_id: str
    file_name: str
    sender_address: str
    receiver_address: str
    direction: TransferDirection = TransferDirection.RECEIVING
    method: TransferMethod | None = None
    state: TransferState = TransferState.REQUESTED
    file_size: int = 0
    transferred_bytes: int = 0
    progress_percent: float = 0.0
    speed_bps: float = 0.0
    stored_as: str | None = None
    folder: str | None = None
    error_message: str | None = None

    @property
    def key(self) -> TransferKey:
        return TransferKey(self.file_name, self.sender_address, self.receiver_address)


class RequestOutcome(BaseModel):
    transfer_id: str
    state: TransferState
    auto_accepted: bool


# --- Peer channel wire protocol message types ---

class MessageType:
    HANDSHAKE_PUBKEY = 0x01
    METADATA = 0x02
    ACCEPT = 0x03
    REJECT = 0x04
    DATA_CHUNK = 0x06
    CANCEL = 0x09
    TRANSFER_COMPLETE = 0x0A


class FileMetadata(BaseModel):
    """Metadata sent before file data on a peer channel."""
    transfer_id: str
    file_name: str
    file_size: int
    sender_address: str
    receiver_address: str
