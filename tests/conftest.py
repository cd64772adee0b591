"""Shared fixtures: services wired against tmp_path and fake transports."""

import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519

from lanlink.presence.store import PresenceStore
from lanlink.relay.gateway import SessionGateway
from lanlink.security.crypto import derive_relay_key
from lanlink.storage.json_store import ActivityLog, JsonLog
from lanlink.transfer.manager import FileTransferCoordinator
from lanlink.updates.distributor import UpdateDistributor

LOCAL = "10.0.0.1"
ALICE = "10.0.0.2"
BOB = "10.0.0.3"


class FakeConnection:
    """Stands in for a websocket: records frames and close calls."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[str] = []
        self.closed_with: int | None = None
        self.fail = fail

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionError("peer went away")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed_with = code


class Outbox:
    """Records envelopes handed to ``notify`` instead of sending them."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, object]] = []

    async def __call__(self, address, envelope) -> int:
        self.calls.append((address, envelope))
        return 1

    def of_type(self, type_: str) -> list[tuple[str, object]]:
        return [(a, e) for a, e in self.calls if e.type == type_]


@pytest.fixture
def relay_key():
    return derive_relay_key(b"test-shared-secret")


@pytest.fixture
def activity(tmp_path):
    return ActivityLog(tmp_path / "activity-log.json")


@pytest.fixture
def chat_log(tmp_path):
    return JsonLog(tmp_path / "chat-history.json")


@pytest.fixture
def presence(tmp_path):
    return PresenceStore(tmp_path / "profiles.json")


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def gateway(presence, relay_key):
    return SessionGateway(presence, relay_key, heartbeat_interval=30)


@pytest.fixture
def coordinator(presence, outbox, activity, tmp_path):
    return FileTransferCoordinator(
        presence,
        outbox,
        activity,
        LOCAL,
        received_dir=tmp_path / "received",
        shared_dir=tmp_path / "shared",
        decision_timeout=2.0,
    )


@pytest.fixture
def publisher_key():
    return ed25519.Ed25519PrivateKey.generate()


@pytest.fixture
def terminations():
    return []


@pytest.fixture
def distributor(presence, outbox, activity, publisher_key, terminations, tmp_path):
    return UpdateDistributor(
        presence,
        outbox,
        activity,
        LOCAL,
        publisher_key.public_key(),
        updates_dir=tmp_path / "updates",
        backups_dir=tmp_path / "updates" / "backups",
        metadata_path=tmp_path / "updates" / "update-metadata.json",
        app_dir=tmp_path / "app",
        terminate=lambda: terminations.append(True),
        restart_delay=0,
    )
