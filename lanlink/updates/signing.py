"""
Publisher signatures for update artifacts (Ed25519 over the exact bytes).
"""

import logging
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

logger = logging.getLogger(__name__)


def load_public_key(path: Path) -> ed25519.Ed25519PublicKey | None:
    """Load the trusted publisher key; None if it is not installed."""
    path = Path(path)
    if not path.exists():
        logger.warning(f"No trusted publisher key at {path}; primary updates will be refused")
        return None
    key = serialization.load_pem_public_key(path.read_bytes())
    if not isinstance(key, ed25519.Ed25519PublicKey):
        raise ValueError(f"Publisher key at {path} is not an Ed25519 key")
    return key


def load_private_key(path: Path) -> ed25519.Ed25519PrivateKey:
    key = serialization.load_pem_private_key(Path(path).read_bytes(), password=None)
    if not isinstance(key, ed25519.Ed25519PrivateKey):
        raise ValueError(f"Signing key at {path} is not an Ed25519 key")
    return key


def generate_publisher_keys(private_path: Path, public_path: Path) -> ed25519.Ed25519PrivateKey:
    """Create a publisher keypair and write both halves as PEM."""
    private_key = ed25519.Ed25519PrivateKey.generate()
    Path(private_path).write_bytes(
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    Path(public_path).write_bytes(
        private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    return private_key


def sign_artifact(private_key: ed25519.Ed25519PrivateKey, data: bytes) -> str:
    return private_key.sign(data).hex()


def verify_artifact(
    public_key: ed25519.Ed25519PublicKey | None, data: bytes, signature_hex: str
) -> bool:
    if public_key is None or not signature_hex:
        return False
    try:
        public_key.verify(bytes.fromhex(signature_hex), data)
        return True
    except (ValueError, InvalidSignature):
        return False
