"""Control surface tests through FastAPI's TestClient."""

import io
import json
import zipfile

import httpx
import pytest
from fastapi import FastAPI, WebSocket
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import ALICE, BOB, LOCAL
from lanlink.api import routes
from lanlink.api.errors import register_error_handlers
from lanlink.api.routes import init_routes, router
from lanlink.api.websocket import serve_relay_session
from lanlink.discovery.models import ServiceRecord
from lanlink.discovery.registry import DeviceRegistry
from lanlink.relay.envelope import parse_envelope
from lanlink.relay.relay import Relay
from lanlink.security.crypto import open_frame, seal_frame
from lanlink.updates.packager import build_update

AUTH = {"Authorization": "Bearer device-token"}


@pytest.fixture
def registry():
    return DeviceRegistry()


@pytest.fixture
def client(registry, presence, gateway, coordinator, distributor, chat_log, activity):
    relay = Relay(gateway, presence, coordinator, distributor, chat_log, activity)
    app = FastAPI()
    register_error_handlers(app)
    init_routes(registry, presence, coordinator, distributor, chat_log, activity)
    app.include_router(router)

    @app.websocket("/ws")
    async def relay_endpoint(websocket: WebSocket, address: str | None = None, group: str | None = None):
        await serve_relay_session(websocket, gateway, relay, address, group)

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def published(distributor, publisher_key, tmp_path):
    source = tmp_path / "src"
    source.mkdir()
    (source / "app.txt").write_text("v2")
    return build_update(source, tmp_path / "updates", "2.0.0", private_key=publisher_key)


def profile(client, address, **fields):
    return client.post("/api/profile", json={"address": address, "nickname": "n", **fields}, headers=AUTH)


class TestAuth:

    def test_missing_credential(self, client):
        response = client.post("/api/profile", json={"address": ALICE, "nickname": "a"})
        assert response.status_code == 401
        assert response.json()["error"] is True

    def test_unknown_credential(self, client):
        response = client.post(
            "/api/status", json={"address": ALICE, "status": "idle"},
            headers={"Authorization": "Bearer nope"},
        )
        assert response.status_code == 401

    def test_raw_token_accepted(self, client):
        response = client.post(
            "/api/profile", json={"address": ALICE, "nickname": "a"},
            headers={"Authorization": "device-token"},
        )
        assert response.status_code == 200


class TestPresenceRoutes:

    def test_profile_identity_is_stable(self, client):
        first = profile(client, ALICE).json()["identity_id"]
        second = profile(client, ALICE, nickname="renamed").json()["identity_id"]
        assert first == second

    def test_status_for_unknown_address(self, client):
        response = client.post("/api/status", json={"address": ALICE, "status": "idle"}, headers=AUTH)
        assert response.status_code == 404

    def test_status_and_auto_accept(self, client):
        profile(client, ALICE)
        assert client.post(
            "/api/status", json={"address": ALICE, "status": "dnd"}, headers=AUTH
        ).json() == {"status": "dnd"}
        response = client.post(
            "/api/auto-accept", json={"address": ALICE, "enabled": True, "allowlist": [BOB]},
            headers=AUTH,
        )
        assert response.json()["auto_accept_allowlist"] == [BOB]

    def test_devices_merge_presence_status(self, client, registry):
        registry.on_discovered(ServiceRecord(name="alice", address=ALICE, port=8000))
        registry.on_discovered(ServiceRecord(name="bob", address=BOB, port=8000))
        profile(client, ALICE)

        devices = {d["name"]: d for d in client.get("/api/devices").json()["devices"]}
        assert devices["alice"]["status"] == "online"
        assert devices["bob"]["status"] == "offline"


class TestFileRoutes:

    def test_upload_bad_name(self, client, tmp_path):
        response = client.post(
            "/api/upload", params={"filename": "bad<name>.txt", "sender": ALICE, "receiver": BOB},
            content=b"x", headers=AUTH,
        )
        assert response.status_code == 400
        assert not (tmp_path / "received").exists() or not any((tmp_path / "received").iterdir())

    def test_upload_without_handshake(self, client):
        response = client.post(
            "/api/upload", params={"filename": "a.txt", "sender": ALICE, "receiver": BOB},
            content=b"x", headers=AUTH,
        )
        assert response.status_code == 409

    def test_auto_accepted_risky_upload(self, client, tmp_path):
        profile(client, BOB, auto_accept=True, auto_accept_allowlist=[ALICE])

        response = client.post(
            "/api/upload", params={"filename": "tool.exe", "sender": ALICE, "receiver": BOB},
            content=b"MZ-binary", headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json()["stored_as"] == "tool.exe.zip"
        with zipfile.ZipFile(tmp_path / "received" / "tool.exe.zip") as zf:
            assert zf.read("tool.exe") == b"MZ-binary"

    def test_upload_to_offline_receiver(self, client):
        profile(client, BOB, status="offline")
        response = client.post(
            "/api/upload-request", json={"filename": "a.txt", "sender": ALICE, "receiver": BOB},
            headers=AUTH,
        )
        assert response.status_code == 403

    def test_request_accept_upload(self, client, tmp_path):
        key = {"filename": "notes.txt", "sender": ALICE, "receiver": BOB}
        outcome = client.post("/api/upload-request", json=key, headers=AUTH).json()
        assert outcome["state"] == "awaiting_decision"

        assert client.post("/api/accept-file", json=key, headers=AUTH).json()["status"] == "accepted"
        response = client.post(
            "/api/upload", params={**key, "folder": "team"}, content=b"hello", headers=AUTH
        )

        assert response.status_code == 200
        assert (tmp_path / "shared" / "team" / "notes.txt").read_bytes() == b"hello"
        states = {t["file_name"]: t["state"] for t in client.get("/api/transfers").json()["transfers"]}
        assert states["notes.txt"] == "complete"

    def test_reject_unknown(self, client):
        response = client.post(
            "/api/reject-file", json={"filename": "a.txt", "sender": ALICE, "receiver": BOB},
            headers=AUTH,
        )
        assert response.status_code == 404

    def test_share_folder(self, client, tmp_path):
        assert client.post("/api/share-folder", json={"folder": "proj"}, headers=AUTH).status_code == 200
        assert (tmp_path / "shared" / "proj").is_dir()
        assert client.post("/api/share-folder", json={"folder": "../x"}, headers=AUTH).status_code == 400

    def test_push_to_unknown_device(self, client, tmp_path):
        response = client.post(
            "/api/transfers", json={"address": "10.9.9.9", "file_path": str(tmp_path)}, headers=AUTH
        )
        assert response.status_code == 404

    def test_cancel_unknown_transfer(self, client):
        assert client.post("/api/transfers/nope/cancel", headers=AUTH).status_code == 404


class TestUpdateRoutes:

    def test_check_update(self, client, published):
        assert client.get("/api/check-update").json()["metadata"]["version"] == "2.0.0"

    def test_check_update_missing(self, client):
        assert client.get("/api/check-update").status_code == 404

    def test_download_writes_backup(self, client, published, tmp_path):
        response = client.get("/api/download-update", params={"address": ALICE}, headers=AUTH)

        assert response.status_code == 200
        assert response.headers["x-update-verified"] == "true"
        artifact = (tmp_path / "updates" / published.artifact_name).read_bytes()
        assert response.content == artifact
        assert (tmp_path / "updates" / "backups" / "backup-2.0.0.zip").read_bytes() == artifact

    def test_download_serves_the_verified_bytes(self, client, published, distributor, monkeypatch, tmp_path):
        artifact = tmp_path / "updates" / published.artifact_name
        original = artifact.read_bytes()
        prepare = distributor.prepare_download

        async def prepare_then_replace(address=None):
            ticket = await prepare(address)
            artifact.write_bytes(b"swapped after verification")
            return ticket

        monkeypatch.setattr(distributor, "prepare_download", prepare_then_replace)
        response = client.get("/api/download-update", headers=AUTH)

        assert response.status_code == 200
        assert response.content == original
        assert published.artifact_name in response.headers["content-disposition"]

    def test_tampered_download_refused(self, client, published, tmp_path):
        artifact = tmp_path / "updates" / published.artifact_name
        artifact.write_bytes(artifact.read_bytes() + b"!")

        response = client.get("/api/download-update", headers=AUTH)

        assert response.status_code == 403
        assert not (tmp_path / "updates" / "backups" / "backup-2.0.0.zip").exists()

    def test_rollback(self, client, published):
        assert client.get("/api/rollback", params={"version": "2.0.0"}, headers=AUTH).status_code == 404
        assert client.get("/api/rollback", params={"version": "nope"}, headers=AUTH).status_code == 400

        downloaded = client.get("/api/download-update", headers=AUTH).content
        response = client.get("/api/rollback", params={"version": "2.0.0"}, headers=AUTH)
        assert response.content == downloaded
        with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
            assert zf.read("app.txt") == b"v2"

    def test_install(self, client, published, presence, terminations, tmp_path):
        profile(client, LOCAL)
        response = client.post("/api/install-update", json={"version": "2.0.0"}, headers=AUTH)

        assert response.status_code == 200
        assert (tmp_path / "app" / "app.txt").read_text() == "v2"
        assert client.get("/api/logs").json()["logs"][-1]["action"] == "update_install"

    def test_request_peer_update(self, client, published, outbox):
        response = client.post(
            "/api/request-peer-update",
            json={"requester": ALICE, "target": LOCAL, "version": "2.0.0"},
            headers=AUTH,
        )
        assert response.status_code == 200
        assert outbox.of_type("update-response")

    @staticmethod
    def peer_transport(monkeypatch, handler):
        fetch = routes.fetch_peer_update

        async def fetch_with_transport(*args, **kwargs):
            return await fetch(*args, transport=httpx.MockTransport(handler), **kwargs)

        monkeypatch.setattr(routes, "fetch_peer_update", fetch_with_transport)

    def test_fetch_update_from_peer(self, client, monkeypatch, publisher_key, tmp_path):
        peer_source = tmp_path / "peer-src"
        peer_source.mkdir()
        (peer_source / "app.txt").write_text("v3")
        metadata = build_update(peer_source, tmp_path / "peer", "3.0.0", private_key=publisher_key)
        data = (tmp_path / "peer" / metadata.artifact_name).read_bytes()

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["authorization"] == "Bearer peer-token"
            if request.url.path == "/api/check-update":
                return httpx.Response(200, json={"metadata": metadata.model_dump(mode="json")})
            return httpx.Response(200, content=data)

        self.peer_transport(monkeypatch, handler)
        profile(client, LOCAL, version="1.0.0")
        response = client.post(
            "/api/fetch-update",
            json={"base_url": "http://peer:8000", "token": "peer-token"},
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json()["updated"] is True
        assert response.json()["verified"] is True
        assert client.get("/api/check-update").json()["metadata"]["version"] == "3.0.0"
        assert (tmp_path / "updates" / "backups" / "backup-3.0.0.zip").read_bytes() == data

    def test_fetch_update_nothing_newer(self, client, monkeypatch):
        self.peer_transport(monkeypatch, lambda request: httpx.Response(404))
        profile(client, LOCAL, version="1.0.0")

        response = client.post(
            "/api/fetch-update",
            json={"base_url": "http://peer:8000", "token": "peer-token"},
            headers=AUTH,
        )

        assert response.json() == {"updated": False, "current_version": "1.0.0"}

    def test_fetch_update_unreachable_peer(self, client, monkeypatch):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        self.peer_transport(monkeypatch, handler)
        response = client.post(
            "/api/fetch-update",
            json={"base_url": "http://peer:8000", "token": "peer-token"},
            headers=AUTH,
        )

        assert response.status_code == 502

    def test_fetch_update_requires_credential(self, client):
        response = client.post("/api/fetch-update", json={"base_url": "http://peer:8000", "token": "t"})
        assert response.status_code == 401


class TestRelaySocket:

    def test_anonymous_socket_closed(self, client):
        with client.websocket_connect("/ws") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_text()
        assert exc.value.code == 1008

    def test_chat_roundtrip(self, client, relay_key):
        with client.websocket_connect(f"/ws?address={ALICE}&group=all") as ws:
            ws.send_text(seal_frame(relay_key, json.dumps({"type": "chat", "body": "hi all"})))
            envelope = parse_envelope(open_frame(relay_key, ws.receive_text()))

        assert envelope.body == "hi all"
        assert envelope.sender_address == ALICE
        [message] = client.get("/api/chat-history").json()["messages"]
        assert message["sender_address"] == ALICE
        assert any(e["action"] == "chat_message" for e in client.get("/api/logs").json()["logs"])

    def test_binary_frames_do_not_end_the_session(self, client, relay_key):
        with client.websocket_connect(f"/ws?address={ALICE}&group=all") as ws:
            ws.send_bytes(b"\x00garbage")
            ws.send_bytes(seal_frame(relay_key, json.dumps({"type": "chat", "body": "as bytes"})).encode())
            first = parse_envelope(open_frame(relay_key, ws.receive_text()))
            ws.send_text(seal_frame(relay_key, json.dumps({"type": "chat", "body": "as text"})))
            second = parse_envelope(open_frame(relay_key, ws.receive_text()))

        assert first.body == "as bytes"
        assert second.body == "as text"
        assert len(client.get("/api/chat-history").json()["messages"]) == 2
