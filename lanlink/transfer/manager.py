"""
File Transfer Coordinator.

Runs the request -> accept/reject -> transfer handshake for every
(filename, sender, receiver) tuple, signalling over the relay, and
moves the bytes either as a bulk upload into the received/shared tree
or as a chunked push over a peer channel.
"""

import asyncio
import logging
import os
import random
import uuid
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

from lanlink.config import (
    DECISION_TIMEOUT,
    RECEIVED_DIR,
    RISKY_EXTENSIONS,
    SHARED_DIR,
    TRANSFER_PORT_MAX,
    TRANSFER_PORT_MIN,
)
from lanlink.errors import (
    InvalidInput,
    NotAccepted,
    NotFound,
    Offline,
    TransferCancelled,
    TransportError,
)
from lanlink.presence.store import PresenceStore
from lanlink.relay.envelope import (
    BaseEnvelope,
    FileAcceptedEnvelope,
    FileAutoAcceptedEnvelope,
    FileRejectedEnvelope,
    FileRequestEnvelope,
)
from lanlink.storage.json_store import ActivityLog
from lanlink.transfer.files import FileSink, open_sink, validate_filename, validate_folder
from lanlink.transfer.models import (
    ACCEPTED_STATES,
    FINAL_STATES,
    FileMetadata,
    RequestOutcome,
    TransferDirection,
    TransferInfo,
    TransferKey,
    TransferMethod,
    TransferState,
)
from lanlink.transfer.service import receive_file, send_file

logger = logging.getLogger(__name__)

Notify = Callable[[str, BaseEnvelope], Awaitable[int]]
EventCallback = Callable[[str, dict], Awaitable[None]]


class FileTransferCoordinator:
    """Manages all file-transfer handshakes and transfers of this node."""

    def __init__(
        self,
        presence: PresenceStore,
        notify: Notify,
        activity: ActivityLog,
        local_address: str,
        received_dir: Path = RECEIVED_DIR,
        shared_dir: Path = SHARED_DIR,
        risky_extensions=RISKY_EXTENSIONS,
        decision_timeout: float = DECISION_TIMEOUT,
    ) -> None:
        self.presence = presence
        self._notify = notify
        self._activity = activity
        self.local_address = local_address
        self.received_dir = Path(received_dir)
        self.shared_dir = Path(shared_dir)
        self._risky_extensions = risky_extensions
        self._decision_timeout = decision_timeout

        self._transfers: dict[str, TransferInfo] = {}
        self._by_key: dict[TransferKey, str] = {}
        self._decisions: dict[str, asyncio.Future] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_requested: set[str] = set()
        self._receiver_server: asyncio.Server | None = None
        self._receiver_port = 0
        self._event_callbacks: list[EventCallback] = []

    # --- Peer channel listener ---

    async def start(self, port: int | None = None) -> None:
        """Start the peer-channel listener, on a random port unless given."""
        candidate = port or random.randint(TRANSFER_PORT_MIN, TRANSFER_PORT_MAX)

        # Try a few ports if the first one is busy
        for attempt in range(10):
            try:
                self._receiver_server = await asyncio.start_server(
                    self._handle_incoming_connection,
                    "0.0.0.0",
                    candidate,
                )
                self._receiver_port = candidate
                logger.info(f"Peer channel listening on port {candidate}")
                return
            except OSError:
                if port:
                    raise
                candidate = random.randint(TRANSFER_PORT_MIN, TRANSFER_PORT_MAX)

        raise RuntimeError("Could not bind to any transfer port")

    @property
    def receiver_port(self) -> int:
        return self._receiver_port

    async def stop(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        self._tasks.clear()
        for future in self._decisions.values():
            if not future.done():
                future.cancel()
        if self._receiver_server:
            self._receiver_server.close()
            await self._receiver_server.wait_closed()
            self._receiver_server = None
        logger.info("Transfer coordinator stopped")

    # --- Lookup ---

    def get_transfers(self) -> list[TransferInfo]:
        return list(self._transfers.values())

    def get(self, transfer_id: str) -> TransferInfo:
        info = self._transfers.get(transfer_id)
        if info is None:
            raise NotFound(f"Unknown transfer {transfer_id}")
        return info

    def find(self, filename: str, sender: str, receiver: str) -> TransferInfo | None:
        """Latest transfer for the tuple that has not reached a final state."""
        transfer_id = self._by_key.get(TransferKey(filename, sender, receiver))
        info = self._transfers.get(transfer_id) if transfer_id else None
        if info is None or info.state in FINAL_STATES:
            return None
        return info

    def _register(self, info: TransferInfo) -> None:
        self._transfers[info.transfer_id] = info
        self._by_key[info.key] = info.transfer_id

    # --- Handshake ---

    async def request(self, filename: str, sender: str, receiver: str) -> RequestOutcome:
        """Handle a file-request from ``sender`` addressed to ``receiver``."""
        validate_filename(filename)
        if await self.presence.is_offline(receiver):
            raise Offline(f"{receiver} is offline; file requests are refused")

        existing = self.find(filename, sender, receiver)
        if existing:
            return RequestOutcome(
                transfer_id=existing.transfer_id,
                state=existing.state,
                auto_accepted=existing.state == TransferState.AUTO_ACCEPTED,
            )

        info = TransferInfo(
            transfer_id=str(uuid.uuid4()),
            file_name=filename,
            sender_address=sender,
            receiver_address=receiver,
            direction=(
                TransferDirection.SENDING if sender == self.local_address
                else TransferDirection.RECEIVING
            ),
        )
        self._register(info)

        profile = await self.presence.get_profile(receiver)
        if profile and profile.auto_accept and sender in profile.auto_accept_allowlist:
            info.state = TransferState.AUTO_ACCEPTED
            await self._on_state_change(info)
            notice = FileAutoAcceptedEnvelope(
                filename=filename,
                sender_address=sender,
                receiver_address=receiver,
                transfer_port=self._receiver_port or None,
            )
            await self._notify(receiver, notice)
            await self._notify(sender, notice)
        else:
            info.state = TransferState.AWAITING_DECISION
            self._decisions[info.transfer_id] = asyncio.get_running_loop().create_future()
            await self._on_state_change(info)
            await self._notify(
                receiver,
                FileRequestEnvelope(filename=filename, sender_address=sender, receiver_address=receiver),
            )

        await self._activity.record(
            "file_request", f"file: {filename}, sender: {sender}, receiver: {receiver}, state: {info.state.value}"
        )
        return RequestOutcome(
            transfer_id=info.transfer_id,
            state=info.state,
            auto_accepted=info.state == TransferState.AUTO_ACCEPTED,
        )

    async def respond(self, filename: str, sender: str, receiver: str, accept: bool) -> TransferInfo:
        """Resolve a pending decision and tell the sender."""
        validate_filename(filename)
        info = self.find(filename, sender, receiver)
        if info is None or info.state != TransferState.AWAITING_DECISION:
            raise NotFound(f"No pending request for {filename} from {sender}")

        info.state = TransferState.ACCEPTED if accept else TransferState.REJECTED
        future = self._decisions.pop(info.transfer_id, None)
        if future and not future.done():
            future.set_result(accept)
        await self._on_state_change(info)

        if accept:
            notice: BaseEnvelope = FileAcceptedEnvelope(
                filename=filename,
                sender_address=sender,
                receiver_address=receiver,
                transfer_port=self._receiver_port or None,
            )
        else:
            notice = FileRejectedEnvelope(
                filename=filename, sender_address=sender, receiver_address=receiver
            )
        await self._notify(sender, notice)
        await self._activity.record(
            "file_accept" if accept else "file_reject", f"file: {filename}, sender: {sender}"
        )
        return info

    async def _await_decision(self, info: TransferInfo) -> bool:
        """Wait for an explicit accept/reject on a pending request."""
        future = self._decisions.get(info.transfer_id)
        if future is None:
            return info.state in ACCEPTED_STATES
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self._decision_timeout)
        except asyncio.TimeoutError:
            logger.info(f"Transfer {info.transfer_id} timed out waiting for a decision")
            return False

    async def _ensure_accepted(self, filename: str, sender: str, receiver: str) -> TransferInfo:
        info = self.find(filename, sender, receiver)
        if info is None:
            await self.request(filename, sender, receiver)
            info = self.find(filename, sender, receiver)
        if info is None or info.state not in ACCEPTED_STATES:
            raise NotAccepted(f"Transfer of {filename} from {sender} has not been accepted")
        return info

    # --- Shared tree ---

    def target_dir(self, folder: str | None) -> Path:
        if folder:
            return self.shared_dir / validate_folder(folder)
        return self.received_dir

    async def create_shared_folder(self, folder: str) -> Path:
        path = self.target_dir(validate_folder(folder))
        await asyncio.to_thread(os.makedirs, path, exist_ok=True)
        await self._activity.record("share_folder", f"folder: {folder}")
        return path

    # --- Bulk upload ---

    async def store_upload(
        self,
        chunks: AsyncIterator[bytes],
        filename: str,
        sender: str,
        receiver: str,
        folder: str | None = None,
        expected_size: int | None = None,
    ) -> TransferInfo:
        """Stream an uploaded body to disk once its handshake is accepted."""
        validate_filename(filename)
        target = self.target_dir(folder)
        if await self.presence.is_offline(receiver):
            raise Offline(f"{receiver} is offline; uploads are refused")

        info = await self._ensure_accepted(filename, sender, receiver)
        info.method = TransferMethod.UPLOAD
        info.folder = folder
        info.file_size = expected_size or 0
        info.state = TransferState.TRANSFERRING
        await self._on_state_change(info)

        sink: FileSink | None = None
        try:
            sink = await asyncio.to_thread(open_sink, target, filename, self._risky_extensions)
            info.stored_as = sink.path.name
            async for chunk in chunks:
                if info.transfer_id in self._cancel_requested:
                    raise TransferCancelled(filename)
                if chunk:
                    await asyncio.to_thread(sink.write, chunk)
                    info.transferred_bytes += len(chunk)
            if info.transfer_id in self._cancel_requested:
                raise TransferCancelled(filename)
            if expected_size is not None and info.transferred_bytes != expected_size:
                raise TransportError(
                    f"Received {info.transferred_bytes} of {expected_size} bytes for {filename}"
                )
            await asyncio.to_thread(sink.close)
        except (asyncio.CancelledError, TransferCancelled):
            if sink is not None:
                await asyncio.to_thread(sink.discard)
            if info.state != TransferState.CANCELLED:
                info.state = TransferState.CANCELLED
                await self._on_state_change(info)
            raise
        except Exception as e:
            if sink is not None:
                await asyncio.to_thread(sink.discard)
            info.state = TransferState.FAILED
            info.error_message = str(e) or e.__class__.__name__
            await self._on_state_change(info)
            if isinstance(e, TransportError):
                raise
            raise TransportError(f"Upload of {filename} failed: {info.error_message}") from e
        finally:
            self._cancel_requested.discard(info.transfer_id)

        info.file_size = info.transferred_bytes
        info.progress_percent = 100.0
        info.state = TransferState.COMPLETE
        await self._on_state_change(info)
        await self._activity.record(
            "file_upload",
            f"file: {info.stored_as}, size: {info.transferred_bytes} bytes, "
            f"folder: {folder or '-'}, sender: {sender}",
        )
        return info

    # --- Peer-channel push ---

    async def push_file(
        self, peer_ip: str, peer_port: int, file_path: str, receiver: str
    ) -> TransferInfo:
        """Queue a chunked push of a local file to a peer's channel listener."""
        if not os.path.isfile(file_path):
            raise InvalidInput(f"Not a file: {file_path}")
        file_name = validate_filename(os.path.basename(file_path))
        if await self.presence.is_offline(receiver):
            raise Offline(f"{receiver} is offline; transfers are refused")

        info = TransferInfo(
            transfer_id=str(uuid.uuid4()),
            file_name=file_name,
            sender_address=self.local_address,
            receiver_address=receiver,
            direction=TransferDirection.SENDING,
            method=TransferMethod.PUSH,
            file_size=os.path.getsize(file_path),
        )
        self._register(info)
        await self._on_state_change(info)

        task = asyncio.create_task(self._send_file_task(peer_ip, peer_port, file_path, info))
        self._tasks[info.transfer_id] = task
        return info

    async def _send_file_task(
        self, peer_ip: str, peer_port: int, file_path: str, info: TransferInfo
    ) -> None:
        """Task wrapper for sending a single file."""
        await send_file(
            peer_ip=peer_ip,
            peer_port=peer_port,
            file_path=file_path,
            transfer_info=info,
            progress_callback=self._on_progress,
            state_callback=self._on_state_change,
        )
        self._tasks.pop(info.transfer_id, None)

    async def _handle_incoming_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a new incoming peer-channel connection."""
        task = asyncio.current_task()
        result = await receive_file(
            reader=reader,
            writer=writer,
            accept_callback=lambda metadata: self._decide_incoming(metadata, task),
            progress_callback=self._on_progress,
            state_callback=self._on_state_change,
        )
        if result:
            self._tasks.pop(result.transfer_id, None)

    async def _decide_incoming(
        self, metadata: FileMetadata, task: asyncio.Task | None
    ) -> tuple[TransferInfo, Path] | None:
        key = (metadata.file_name, metadata.sender_address, metadata.receiver_address)
        try:
            info = self.find(*key)
            if info is None:
                await self.request(*key)
                info = self.find(*key)
            if info is None:
                return None
            if info.state == TransferState.AWAITING_DECISION:
                if not await self._await_decision(info):
                    return None
            elif info.state not in ACCEPTED_STATES:
                return None
        except (InvalidInput, Offline) as e:
            logger.info(f"Refusing pushed file {metadata.file_name}: {e}")
            return None

        info.method = TransferMethod.PUSH
        info.direction = TransferDirection.RECEIVING
        if task:
            self._tasks[info.transfer_id] = task
        return info, self.received_dir

    # --- Cancellation ---

    async def cancel(self, transfer_id: str) -> TransferInfo:
        """Cancel a transfer that has not completed; partial files are discarded."""
        info = self.get(transfer_id)
        if info.state in FINAL_STATES:
            return info

        future = self._decisions.pop(transfer_id, None)
        if future and not future.done():
            future.set_result(False)

        if info.method == TransferMethod.UPLOAD and info.state == TransferState.TRANSFERRING:
            # The upload loop discards its partial file at the next chunk
            self._cancel_requested.add(transfer_id)

        task = self._tasks.pop(transfer_id, None)
        if task and task is not asyncio.current_task():
            task.cancel()
        if info.state != TransferState.CANCELLED:
            info.state = TransferState.CANCELLED
            await self._on_state_change(info)
        return info

    # --- Events ---

    def on_event(self, callback: EventCallback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def _on_progress(self, info: TransferInfo) -> None:
        await self._emit("transfer_progress", info.model_dump(mode="json"))

    async def _on_state_change(self, info: TransferInfo) -> None:
        self._transfers[info.transfer_id] = info
        logger.info(
            f"Transfer {info.file_name} ({info.sender_address} -> {info.receiver_address}): "
            f"{info.state.value}"
        )
        await self._emit("transfer_state", info.model_dump(mode="json"))

        notification = None
        if info.state == TransferState.COMPLETE:
            direction = "sent" if info.direction == TransferDirection.SENDING else "received"
            notification = {"type": "success", "message": f"'{info.file_name}' {direction} successfully!"}
        elif info.state == TransferState.FAILED:
            logger.warning(f"Transfer of '{info.file_name}' failed: {info.error_message}")
            notification = {
                "type": "error",
                "message": f"Transfer of '{info.file_name}' failed: {info.error_message}",
            }
        elif info.state == TransferState.CANCELLED:
            notification = {"type": "info", "message": f"Transfer of '{info.file_name}' cancelled."}
        elif info.state == TransferState.REJECTED:
            notification = {"type": "warning", "message": f"Transfer of '{info.file_name}' was rejected."}

        if notification:
            await self._emit("notification", notification)
