"""Application-wide configuration constants.

Every value can be overridden with a ``LANLINK_*`` environment variable.
"""

import os
import platform
import secrets
from pathlib import Path


def _env(name: str, default: str) -> str:
    return os.environ.get(f"LANLINK_{name}", default)


# --- Identity ---
APP_VERSION = _env("APP_VERSION", "1.0.0")
DEVICE_NAME = _env("DEVICE_NAME", f"LANLINK-{platform.node()}")
SERVICE_TYPE = "_lanlink._tcp.local."

# --- Storage ---
DATA_DIR = Path(_env("DATA_DIR", str(Path.home() / ".lanlink")))
PROFILES_PATH = DATA_DIR / "profiles.json"
CHAT_HISTORY_PATH = DATA_DIR / "chat-history.json"
ACTIVITY_LOG_PATH = DATA_DIR / "activity-log.json"
RECEIVED_DIR = DATA_DIR / "received"
UPDATES_DIR = DATA_DIR / "updates"
BACKUPS_DIR = UPDATES_DIR / "backups"
SHARED_DIR = UPDATES_DIR / "shared"
METADATA_PATH = UPDATES_DIR / "update-metadata.json"
APP_DIR = Path(_env("APP_DIR", str(DATA_DIR / "app")))

# --- Networking ---
API_HOST = _env("API_HOST", "0.0.0.0")
API_PORT = int(_env("API_PORT", "8000"))
TRANSFER_PORT_MIN = 50000
TRANSFER_PORT_MAX = 65000
CONNECT_TIMEOUT = float(_env("CONNECT_TIMEOUT", "10"))  # seconds
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0

# --- Presence / liveness ---
HEARTBEAT_INTERVAL = float(_env("HEARTBEAT_INTERVAL", "30"))  # seconds
DEVICE_REFRESH_INTERVAL = float(_env("DEVICE_REFRESH_INTERVAL", "15"))  # seconds
WILDCARD_GROUP = "all"

# --- Transfer ---
CHUNK_SIZE = 64 * 1024
DECISION_TIMEOUT = 60.0  # seconds to wait for a manual accept/reject
FORBIDDEN_NAME_CHARS = frozenset("<>|")
RISKY_EXTENSIONS = frozenset(
    ext.strip().lower()
    for ext in _env("RISKY_EXTENSIONS", ".exe,.bat,.cmd,.com,.msi,.sh,.ps1").split(",")
    if ext.strip()
)
QUARANTINE_SUFFIX = ".zip"

# --- Security ---
# Bearer tokens accepted on the control surface
AUTHORIZED_TOKENS = frozenset(
    t.strip() for t in _env("API_TOKENS", "device-token").split(",") if t.strip()
)
PUBLISHER_KEY_PATH = Path(_env("PUBLISHER_KEY", str(DATA_DIR / "publisher.pub")))
_SECRET_FILE = DATA_DIR / ".shared_secret"


def load_shared_secret() -> bytes:
    """Return the relay secret, minting and persisting one on first use."""
    env_secret = os.environ.get("LANLINK_SHARED_SECRET")
    if env_secret:
        return env_secret.encode("utf-8")
    if _SECRET_FILE.exists():
        return bytes.fromhex(_SECRET_FILE.read_text().strip())
    secret = secrets.token_bytes(32)
    _SECRET_FILE.parent.mkdir(parents=True, exist_ok=True)
    _SECRET_FILE.write_text(secret.hex())
    return secret


def ensure_dirs() -> None:
    for path in (DATA_DIR, RECEIVED_DIR, UPDATES_DIR, BACKUPS_DIR, SHARED_DIR, APP_DIR):
        os.makedirs(path, exist_ok=True)
