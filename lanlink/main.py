"""
LAN Link FastAPI application entry point.

Starts discovery, the relay gateway, the file transfer coordinator and
the update distributor on startup, and serves the REST API plus the
relay and event WebSocket endpoints.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from lanlink.api.errors import register_error_handlers
from lanlink.api.routes import init_routes, router
from lanlink.api.websocket import ConnectionManager, serve_relay_session
from lanlink.config import (
    ACTIVITY_LOG_PATH,
    API_HOST,
    API_PORT,
    APP_VERSION,
    CHAT_HISTORY_PATH,
    DEVICE_NAME,
    PUBLISHER_KEY_PATH,
    ensure_dirs,
    load_shared_secret,
)
from lanlink.discovery.registry import DeviceRegistry
from lanlink.discovery.service import DiscoveryService, get_local_ip
from lanlink.presence.store import PresenceStore
from lanlink.relay.gateway import SessionGateway
from lanlink.relay.relay import Relay
from lanlink.security.crypto import derive_relay_key
from lanlink.storage.json_store import ActivityLog, JsonLog
from lanlink.transfer.manager import FileTransferCoordinator
from lanlink.updates.distributor import UpdateDistributor
from lanlink.updates.signing import load_public_key

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ensure_dirs()
LOCAL_ADDRESS = get_local_ip()

# --- Service singletons ---
activity_log = ActivityLog(ACTIVITY_LOG_PATH)
chat_log = JsonLog(CHAT_HISTORY_PATH)
presence_store = PresenceStore()
device_registry = DeviceRegistry()
discovery_service = DiscoveryService(device_registry)
gateway = SessionGateway(presence_store, derive_relay_key(load_shared_secret()))
coordinator = FileTransferCoordinator(
    presence_store, gateway.send_to_address, activity_log, LOCAL_ADDRESS
)
distributor = UpdateDistributor(
    presence_store,
    gateway.send_to_address,
    activity_log,
    LOCAL_ADDRESS,
    load_public_key(PUBLISHER_KEY_PATH),
)
relay = Relay(gateway, presence_store, coordinator, distributor, chat_log, activity_log)
ws_manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting LAN Link services...")

    try:
        coordinator.on_event(ws_manager.handle_event)

        await gateway.start()
        await coordinator.start()

        # Advertise the peer channel port alongside the version
        await discovery_service.advertise(
            DEVICE_NAME,
            API_PORT,
            {"version": APP_VERSION, "transfer_port": str(coordinator.receiver_port)},
        )
        await discovery_service.start()

        logger.info(
            f"LAN Link ready: "
            f"API: {API_HOST}:{API_PORT}, "
            f"address: {LOCAL_ADDRESS}, "
            f"peer channel port: {coordinator.receiver_port}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down LAN Link services...")
        await discovery_service.stop()
        await coordinator.stop()
        await gateway.stop()


# --- FastAPI app ---
app = FastAPI(
    title="LAN Link",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Inject services into routes
init_routes(device_registry, presence_store, coordinator, distributor, chat_log, activity_log)
app.include_router(router)


@app.websocket("/ws")
async def relay_endpoint(websocket: WebSocket, address: str | None = None, group: str | None = None):
    await serve_relay_session(websocket, gateway, relay, address, group)


@app.websocket("/ws/events")
async def events_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
