"""
Relay client: one persistent, reconnecting session against a node's relay.

This is the public client API for peers and tools that talk to a LAN Link
relay; the node's own server side is ``relay/gateway.py``.
"""

import asyncio
import logging
from typing import Awaitable, Callable
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

from lanlink.config import (
    CONNECT_TIMEOUT,
    RECONNECT_BASE_DELAY,
    RECONNECT_MAX_DELAY,
    WILDCARD_GROUP,
)
from lanlink.errors import TransportError
from lanlink.relay.envelope import (
    BaseEnvelope,
    EnvelopeType,
    HeartbeatAckEnvelope,
    dump_envelope,
    envelope_type,
    parse_envelope,
)
from lanlink.security.crypto import open_frame, seal_frame

logger = logging.getLogger(__name__)

EnvelopeCallback = Callable[[BaseEnvelope], Awaitable[None]]


def backoff_delay(attempt: int, base: float = RECONNECT_BASE_DELAY, cap: float = RECONNECT_MAX_DELAY) -> float:
    return min(base * (2 ** attempt), cap)


class RelayClient:
    """Encrypts outgoing envelopes, answers heartbeats and reconnects with backoff."""

    def __init__(
        self,
        relay_url: str,
        relay_key: bytes,
        address: str | None,
        group: str = WILDCARD_GROUP,
        on_envelope: EnvelopeCallback | None = None,
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        params = {k: v for k, v in (("address", address), ("group", group)) if v}
        self.uri = f"{relay_url}?{urlencode(params)}"
        self._key = relay_key
        self._on_envelope = on_envelope
        self._connect_timeout = connect_timeout
        self._ws = None
        self._task: asyncio.Task | None = None
        self._stopping = False
        self._attempt = 0
        self.connected = asyncio.Event()

    async def send(self, envelope: BaseEnvelope) -> None:
        if self._ws is None:
            raise TransportError("Relay connection is not open")
        try:
            await self._ws.send(seal_frame(self._key, dump_envelope(envelope)))
        except WebSocketException as e:
            raise TransportError(f"Relay send failed: {e}") from e

    async def _handle_frame(self, frame: str | bytes) -> None:
        try:
            envelope = parse_envelope(open_frame(self._key, frame))
        except ValueError as e:
            logger.warning(f"Dropping frame from relay: {e}")
            return
        if envelope_type(envelope) == EnvelopeType.HEARTBEAT:
            await self.send(HeartbeatAckEnvelope())
            return
        if self._on_envelope:
            try:
                await self._on_envelope(envelope)
            except Exception as e:
                logger.error(f"Envelope callback error: {e}", exc_info=True)

    async def _session(self) -> None:
        try:
            async with websockets.connect(self.uri, open_timeout=self._connect_timeout) as ws:
                self._ws = ws
                self._attempt = 0
                self.connected.set()
                logger.info(f"Connected to relay {self.uri}")
                async for frame in ws:
                    await self._handle_frame(frame)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(f"Relay connection lost: {e}") from e
        finally:
            self._ws = None
            self.connected.clear()

    async def run(self) -> None:
        """Keep a session open until ``stop()``."""
        while not self._stopping:
            try:
                await self._session()
                logger.info("Relay closed the connection")
            except TransportError as e:
                logger.warning(f"{e.message}")
            if self._stopping:
                break
            delay = backoff_delay(self._attempt)
            self._attempt += 1
            logger.info(f"Reconnecting to relay in {delay:.0f}s")
            await asyncio.sleep(delay)

    def start(self) -> None:
        self._stopping = False
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._stopping = True
        if self._ws is not None:
            await self._ws.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
