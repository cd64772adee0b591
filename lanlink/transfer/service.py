"""
TCP peer-channel file delivery.

Handles the wire protocol for pushing a file directly to a peer:
ECDH handshake, encrypted chunked transfer, cancellation, and a final
byte-count check before completion is reported.
"""

import asyncio
import json
import logging
import struct
import time
from pathlib import Path
from typing import Awaitable, Callable

from lanlink.config import CHUNK_SIZE, CONNECT_TIMEOUT
from lanlink.errors import LanLinkError, TransportError
from lanlink.security.crypto import (
    decrypt_chunk,
    derive_shared_key,
    encrypt_chunk,
    generate_keypair,
)
from lanlink.transfer.files import FileSink, open_sink, validate_filename
from lanlink.transfer.models import (
    FileMetadata,
    MessageType,
    TransferInfo,
    TransferState,
)

logger = logging.getLogger(__name__)

StateCallback = Callable[[TransferInfo], Awaitable[None]]

# --- Wire protocol helpers ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)


async def send_message(
    writer: asyncio.StreamWriter, msg_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload message."""
    header = struct.pack(HEADER_FORMAT, msg_type, len(payload))
    writer.write(header + payload)
    await writer.drain()


async def recv_message(
    reader: asyncio.StreamReader,
) -> tuple[int, bytes]:
    """Receive a type-length-payload message. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    msg_type, length = struct.unpack(HEADER_FORMAT, header)
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return msg_type, payload


async def perform_handshake_sender(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
) -> bytes:
    """
    Perform ECDH handshake as the sender (initiator).
    Returns the derived AES session key.
    """
    private_key, pub_bytes = generate_keypair()
    await send_message(writer, MessageType.HANDSHAKE_PUBKEY, pub_bytes)

    msg_type, peer_pub_bytes = await recv_message(reader)
    if msg_type != MessageType.HANDSHAKE_PUBKEY:
        raise TransportError(f"Expected HANDSHAKE_PUBKEY, got {msg_type:#x}")

    return derive_shared_key(private_key, peer_pub_bytes)


async def perform_handshake_receiver(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
) -> bytes:
    """
    Perform ECDH handshake as the receiver.
    Returns the derived AES session key.
    """
    private_key, pub_bytes = generate_keypair()

    msg_type, peer_pub_bytes = await recv_message(reader)
    if msg_type != MessageType.HANDSHAKE_PUBKEY:
        raise TransportError(f"Expected HANDSHAKE_PUBKEY, got {msg_type:#x}")

    await send_message(writer, MessageType.HANDSHAKE_PUBKEY, pub_bytes)
    return derive_shared_key(private_key, peer_pub_bytes)


class SpeedTracker:
    """Rolling average speed calculator."""

    def __init__(self, window: float = 2.0):
        self._window = window
        self._samples: list[tuple[float, int]] = []

    def record(self, byte_count: int) -> None:
        now = time.monotonic()
        self._samples.append((now, byte_count))
        cutoff = now - self._window
        self._samples = [(t, b) for t, b in self._samples if t >= cutoff]

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        total_bytes = sum(b for _, b in self._samples[1:])
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed


def _update_progress(info: TransferInfo, tracker: SpeedTracker) -> None:
    info.speed_bps = tracker.get_speed()
    info.progress_percent = (
        info.transferred_bytes / info.file_size * 100 if info.file_size > 0 else 100.0
    )


async def _close(writer: asyncio.StreamWriter | None) -> None:
    if writer is None:
        return
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


async def send_file(
    peer_ip: str,
    peer_port: int,
    file_path: str,
    transfer_info: TransferInfo,
    progress_callback: StateCallback,
    state_callback: StateCallback,
    chunk_size: int = CHUNK_SIZE,
    connect_timeout: float = CONNECT_TIMEOUT,
) -> None:
    """
    Push a single file to a peer channel listener.

    Args:
        peer_ip: Address of the receiving node.
        peer_port: TCP port of its peer-channel listener.
        file_path: Local path of the file to send.
        transfer_info: TransferInfo object (mutated in-place for progress).
        progress_callback: async fn(transfer_info) called on progress.
        state_callback: async fn(transfer_info) called on state change.
    """
    writer: asyncio.StreamWriter | None = None

    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(peer_ip, peer_port), timeout=connect_timeout
        )

        session_key = await perform_handshake_sender(reader, writer)

        metadata = FileMetadata(
            transfer_id=transfer_info.transfer_id,
            file_name=transfer_info.file_name,
            file_size=transfer_info.file_size,
            sender_address=transfer_info.sender_address,
            receiver_address=transfer_info.receiver_address,
        )
        await send_message(
            writer,
            MessageType.METADATA,
            encrypt_chunk(session_key, metadata.model_dump_json().encode("utf-8")),
        )

        msg_type, _ = await recv_message(reader)
        if msg_type == MessageType.REJECT:
            transfer_info.state = TransferState.REJECTED
            await state_callback(transfer_info)
            return
        if msg_type != MessageType.ACCEPT:
            raise TransportError(f"Expected ACCEPT/REJECT, got {msg_type:#x}")

        transfer_info.state = TransferState.TRANSFERRING
        transfer_info.transferred_bytes = 0
        await state_callback(transfer_info)

        tracker = SpeedTracker()
        last_progress_time = time.monotonic()

        try:
            with open(file_path, "rb") as f:
                while True:
                    chunk = await asyncio.to_thread(f.read, chunk_size)
                    if not chunk:
                        break

                    encrypted = await asyncio.to_thread(encrypt_chunk, session_key, chunk)
                    await send_message(writer, MessageType.DATA_CHUNK, encrypted)

                    transfer_info.transferred_bytes += len(chunk)
                    tracker.record(len(chunk))

                    # Update progress at most every 200ms
                    now = time.monotonic()
                    if now - last_progress_time >= 0.2:
                        _update_progress(transfer_info, tracker)
                        await progress_callback(transfer_info)
                        last_progress_time = now
        except asyncio.CancelledError:
            await send_message(writer, MessageType.CANCEL)
            raise

        if transfer_info.transferred_bytes != transfer_info.file_size:
            raise TransportError(
                f"Sent {transfer_info.transferred_bytes} of {transfer_info.file_size} bytes"
            )

        await send_message(writer, MessageType.TRANSFER_COMPLETE)

        # The receiver confirms once its byte count matches and the file is closed
        msg_type, _ = await recv_message(reader)
        if msg_type != MessageType.TRANSFER_COMPLETE:
            raise TransportError(f"Receiver did not confirm completion (got {msg_type:#x})")

        transfer_info.state = TransferState.COMPLETE
        transfer_info.progress_percent = 100.0
        transfer_info.speed_bps = 0
        await state_callback(transfer_info)

    except asyncio.CancelledError:
        if transfer_info.state != TransferState.CANCELLED:
            transfer_info.state = TransferState.CANCELLED
            await state_callback(transfer_info)
    except (LanLinkError, OSError, asyncio.IncompleteReadError, asyncio.TimeoutError) as e:
        logger.error(f"Send error for {transfer_info.file_name}: {e}")
        transfer_info.state = TransferState.FAILED
        transfer_info.error_message = str(e) or e.__class__.__name__
        await state_callback(transfer_info)
    finally:
        await _close(writer)


async def receive_file(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    accept_callback: Callable[[FileMetadata], Awaitable[tuple[TransferInfo, Path] | None]],
    progress_callback: StateCallback,
    state_callback: StateCallback,
) -> TransferInfo | None:
    """
    Handle an incoming peer-channel connection.

    Args:
        reader, writer: The TCP connection streams.
        accept_callback: async fn(metadata) -> (transfer_info, target_dir)
            when the transfer may proceed, None to reject.
        progress_callback: async fn(transfer_info) called on progress.
        state_callback: async fn(transfer_info) called on state change.

    Returns:
        The TransferInfo of the transfer, or None if it was rejected
        before any state existed.
    """
    transfer_info: TransferInfo | None = None
    sink: FileSink | None = None

    try:
        session_key = await perform_handshake_receiver(reader, writer)

        msg_type, metadata_raw = await recv_message(reader)
        if msg_type != MessageType.METADATA:
            raise TransportError(f"Expected METADATA, got {msg_type:#x}")

        metadata = FileMetadata(**json.loads(decrypt_chunk(session_key, metadata_raw)))
        validate_filename(metadata.file_name)

        decision = await accept_callback(metadata)
        if decision is None:
            await send_message(writer, MessageType.REJECT)
            return None
        transfer_info, target_dir = decision

        sink = await asyncio.to_thread(open_sink, target_dir, metadata.file_name)
        transfer_info.stored_as = sink.path.name
        await send_message(writer, MessageType.ACCEPT)

        transfer_info.state = TransferState.TRANSFERRING
        transfer_info.file_size = metadata.file_size
        transfer_info.transferred_bytes = 0
        await state_callback(transfer_info)

        tracker = SpeedTracker()
        last_progress_time = time.monotonic()

        while True:
            msg_type, payload = await recv_message(reader)

            if msg_type == MessageType.TRANSFER_COMPLETE:
                break
            elif msg_type == MessageType.CANCEL:
                await asyncio.to_thread(sink.discard)
                transfer_info.state = TransferState.CANCELLED
                await state_callback(transfer_info)
                return transfer_info
            elif msg_type == MessageType.DATA_CHUNK:
                decrypted = await asyncio.to_thread(decrypt_chunk, session_key, payload)
                await asyncio.to_thread(sink.write, decrypted)

                transfer_info.transferred_bytes += len(decrypted)
                tracker.record(len(decrypted))

                now = time.monotonic()
                if now - last_progress_time >= 0.2:
                    _update_progress(transfer_info, tracker)
                    await progress_callback(transfer_info)
                    last_progress_time = now
            else:
                logger.warning(f"Unexpected message type during receive: {msg_type:#x}")

        if transfer_info.transferred_bytes != transfer_info.file_size:
            raise TransportError(
                f"Received {transfer_info.transferred_bytes} of {transfer_info.file_size} bytes"
            )

        await asyncio.to_thread(sink.close)
        sink = None
        await send_message(writer, MessageType.TRANSFER_COMPLETE)
        transfer_info.state = TransferState.COMPLETE
        transfer_info.progress_percent = 100.0
        transfer_info.speed_bps = 0
        await state_callback(transfer_info)
        return transfer_info

    except asyncio.CancelledError:
        if sink:
            await asyncio.to_thread(sink.discard)
        if transfer_info and transfer_info.state != TransferState.COMPLETE:
            transfer_info.state = TransferState.CANCELLED
            await state_callback(transfer_info)
        raise
    except Exception as e:
        logger.error(f"Receive error: {e}")
        if sink:
            await asyncio.to_thread(sink.discard)
        if transfer_info:
            transfer_info.state = TransferState.FAILED
            transfer_info.error_message = str(e) or e.__class__.__name__
            await state_callback(transfer_info)
        else:
            try:
                await send_message(writer, MessageType.REJECT)
            except (ConnectionError, OSError):
                pass
    finally:
        await _close(writer)

    return transfer_info
