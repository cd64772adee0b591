"""WebSocket handlers: the encrypted relay and the local event feed."""

import asyncio
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from lanlink.relay.gateway import SessionGateway
from lanlink.relay.relay import Relay

logger = logging.getLogger(__name__)


async def serve_relay_session(
    websocket: WebSocket,
    gateway: SessionGateway,
    relay: Relay,
    address: str | None,
    group: str | None,
) -> None:
    """Run one relay session; frames are handled in receipt order."""
    await websocket.accept()
    session = await gateway.connect(websocket, address, group)
    if session is None:
        return
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            # text and binary frames both carry a sealed envelope
            frame = message.get("text") or message.get("bytes")
            if frame is None:
                continue
            await relay.handle_frame(session, frame)
    except WebSocketDisconnect:
        pass
    finally:
        await gateway.disconnect(session.id)


class ConnectionManager:
    """Pushes transfer events to local UI clients."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"Event client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"Event client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, event: str, data: dict) -> None:
        """Broadcast an event to all connected WebSocket clients."""
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Event handler compatible with FileTransferCoordinator.on_event()."""
        await self.broadcast(event_type, data)
