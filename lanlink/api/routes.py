"""REST API routes for LAN Link."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from lanlink.config import APP_VERSION
from lanlink.errors import InvalidInput, NotFound
from lanlink.presence.models import PeerStatus, ProfileFields
from lanlink.security.auth import require_auth
from lanlink.transfer.files import validate_filename, validate_folder
from lanlink.updates.client import fetch_peer_update
from lanlink.updates.models import backup_name, validate_version

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_registry = None
_presence = None
_coordinator = None
_distributor = None
_chat_log = None
_activity = None


def init_routes(registry, presence, coordinator, distributor, chat_log, activity) -> None:
    """Inject service dependencies into the routes module."""
    global _registry, _presence, _coordinator, _distributor, _chat_log, _activity
    _registry = registry
    _presence = presence
    _coordinator = coordinator
    _distributor = distributor
    _chat_log = chat_log
    _activity = activity


# --- Presence ---

class ProfileBody(ProfileFields):
    address: str


class StatusBody(BaseModel):
    address: str
    status: PeerStatus


class AutoAcceptBody(BaseModel):
    address: str
    enabled: bool
    allowlist: list[str] | None = None


@router.post("/profile", dependencies=[Depends(require_auth)])
async def upsert_profile(body: ProfileBody):
    fields = ProfileFields(**body.model_dump(exclude={"address"}))
    identity_id = await _presence.upsert_profile(body.address, fields)
    await _activity.record("profile_update", f"address: {body.address}, nickname: {body.nickname}")
    return {"identity_id": identity_id}


@router.post("/status", dependencies=[Depends(require_auth)])
async def set_status(body: StatusBody):
    profile = await _presence.set_status(body.address, body.status)
    await _activity.record("status_update", f"address: {body.address}, status: {body.status.value}")
    return {"status": profile.status.value}


@router.post("/auto-accept", dependencies=[Depends(require_auth)])
async def set_auto_accept(body: AutoAcceptBody):
    profile = await _presence.set_auto_accept(body.address, body.enabled, body.allowlist)
    await _activity.record(
        "auto_accept_update", f"address: {body.address}, enabled: {body.enabled}"
    )
    return {
        "auto_accept": profile.auto_accept,
        "auto_accept_allowlist": profile.auto_accept_allowlist,
    }


# --- Device Discovery ---

@router.get("/devices")
async def list_devices():
    """Discovered devices, with status taken from their presence profile."""
    profiles = await _presence.all_profiles()
    devices = []
    for device in _registry.snapshot():
        profile = profiles.get(device.address)
        data = device.model_dump()
        if profile:
            data["status"] = profile.status.value
        devices.append(data)
    return {"devices": devices}


# --- File handshake ---

class FileKeyBody(BaseModel):
    filename: str
    sender: str
    receiver: str


@router.post("/upload-request", dependencies=[Depends(require_auth)])
async def upload_request(body: FileKeyBody):
    outcome = await _coordinator.request(body.filename, body.sender, body.receiver)
    return outcome.model_dump(mode="json")


@router.post("/accept-file", dependencies=[Depends(require_auth)])
async def accept_file(body: FileKeyBody):
    info = await _coordinator.respond(body.filename, body.sender, body.receiver, accept=True)
    return {"status": info.state.value, "transfer_id": info.transfer_id}


@router.post("/reject-file", dependencies=[Depends(require_auth)])
async def reject_file(body: FileKeyBody):
    info = await _coordinator.respond(body.filename, body.sender, body.receiver, accept=False)
    return {"status": info.state.value, "transfer_id": info.transfer_id}


@router.post("/upload", dependencies=[Depends(require_auth)])
async def upload_file(
    request: Request,
    filename: str,
    sender: str,
    receiver: str,
    folder: str | None = None,
):
    """Stream the request body into received/ or shared/<folder>/."""
    validate_filename(filename)
    if folder:
        validate_folder(folder)
    length = request.headers.get("content-length")
    expected_size = int(length) if length and length.isdigit() else None

    info = await _coordinator.store_upload(
        request.stream(),
        filename=filename,
        sender=sender,
        receiver=receiver,
        folder=folder,
        expected_size=expected_size,
    )
    return {
        "message": "File uploaded",
        "stored_as": info.stored_as,
        "size": info.transferred_bytes,
        "transfer_id": info.transfer_id,
    }


# --- Transfers ---

class CreateTransferBody(BaseModel):
    address: str
    file_path: str


@router.get("/transfers")
async def list_transfers():
    """Return all transfers (active + completed)."""
    transfers = _coordinator.get_transfers()
    return {"transfers": [t.model_dump(mode="json") for t in transfers]}


@router.post("/transfers", dependencies=[Depends(require_auth)])
async def create_transfer(body: CreateTransferBody):
    """Push a local file to a discovered device over the peer channel."""
    device = _registry.find_by_address(body.address)
    if device is None:
        raise NotFound(f"Device {body.address} not found")
    if not device.transfer_port:
        raise InvalidInput(f"Device {device.name} does not advertise a transfer port")

    info = await _coordinator.push_file(
        peer_ip=device.address,
        peer_port=device.transfer_port,
        file_path=body.file_path,
        receiver=device.address,
    )
    return {"transfer": info.model_dump(mode="json"), "message": f"Queued {info.file_name}"}


@router.post("/transfers/{transfer_id}/cancel", dependencies=[Depends(require_auth)])
async def cancel_transfer(transfer_id: str):
    info = await _coordinator.cancel(transfer_id)
    return {"status": info.state.value}


class ShareFolderBody(BaseModel):
    folder: str


@router.post("/share-folder", dependencies=[Depends(require_auth)])
async def share_folder(body: ShareFolderBody):
    path = await _coordinator.create_shared_folder(body.folder)
    return {"message": "Folder created", "folder": path.name}


# --- Updates ---

class PeerUpdateBody(BaseModel):
    requester: str
    target: str
    version: str


class InstallBody(BaseModel):
    version: str
    allow_unverified: bool = Field(default=False)


@router.post("/request-peer-update", dependencies=[Depends(require_auth)])
async def request_peer_update(body: PeerUpdateBody):
    metadata = await _distributor.request_peer_update(body.requester, body.target, body.version)
    return {"message": "Update request sent", "metadata": metadata.model_dump(mode="json")}


class FetchUpdateBody(BaseModel):
    base_url: str
    token: str


@router.post("/fetch-update", dependencies=[Depends(require_auth)])
async def fetch_update(body: FetchUpdateBody):
    """Pull a newer update from a peer node and publish it locally."""
    profile = await _presence.get_profile(_distributor.local_address)
    current_version = profile.version if profile else APP_VERSION
    ticket = await fetch_peer_update(body.base_url, _distributor, current_version, body.token)
    if ticket is None:
        return {"updated": False, "current_version": current_version}
    return {
        "updated": True,
        "metadata": ticket.metadata.model_dump(mode="json"),
        "verified": ticket.verified,
    }


@router.get("/check-update")
async def check_update():
    metadata = await _distributor.require_current()
    return {"metadata": metadata.model_dump(mode="json")}


@router.get("/download-update", dependencies=[Depends(require_auth)])
async def download_update(address: str | None = None):
    """Serve the bytes that were verified and backed up, not a fresh read."""
    ticket = await _distributor.prepare_download(address)
    return Response(
        content=ticket.data,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{ticket.metadata.artifact_name}"',
            "X-Update-Version": ticket.metadata.version,
            "X-Update-Kind": ticket.metadata.kind.value,
            "X-Update-Verified": "true" if ticket.verified else "false",
        },
    )


@router.post("/install-update", dependencies=[Depends(require_auth)])
async def install_update(body: InstallBody):
    metadata = await _distributor.install(body.version, allow_unverified=body.allow_unverified)
    return {"message": "Update installed, restarting", "version": metadata.version}


@router.get("/rollback", dependencies=[Depends(require_auth)])
async def rollback(version: str):
    data = await _distributor.rollback(validate_version(version))
    return Response(
        content=data,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{backup_name(version)}"'},
    )


# --- Logs ---

@router.get("/logs")
async def activity_log():
    return {"logs": await _activity.entries()}


@router.get("/chat-history")
async def chat_history():
    return {"messages": await _chat_log.entries()}
