"""
Security module: relay frame encryption, ECDH peer-channel keys, AES-256-GCM.

Relay keys are derived from the out-of-band shared secret. Peer-channel
keys are ephemeral (per-transfer) and never persisted.
"""

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

logger = logging.getLogger(__name__)

# AES-256-GCM nonce size (12 bytes recommended)
NONCE_SIZE = 12
# AES-256 key size
KEY_SIZE = 32

RELAY_KEY_INFO = b"lanlink-v1-relay-key"
CHANNEL_KEY_INFO = b"lanlink-v1-channel-key"


class FrameError(ValueError):
    """A relay frame could not be decoded or authenticated."""


def generate_keypair() -> tuple[X25519PrivateKey, bytes]:
    """
    Generate an ephemeral X25519 keypair.

    Returns:
        (private_key, public_key_bytes) where public_key_bytes
        is 32 bytes suitable for transmission.
    """
    private_key = X25519PrivateKey.generate()
    public_bytes = private_key.public_key().public_bytes(
        encoding=Encoding.Raw,
        format=PublicFormat.Raw,
    )
    return private_key, public_bytes


def _hkdf(material: bytes, info: bytes) -> bytes:
    return HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=info,
    ).derive(material)


def derive_shared_key(
    private_key: X25519PrivateKey,
    peer_public_bytes: bytes,
) -> bytes:
    """Derive a 32-byte AES-256 channel key from an ECDH exchange."""
    peer_public_key = X25519PublicKey.from_public_bytes(peer_public_bytes)
    return _hkdf(private_key.exchange(peer_public_key), CHANNEL_KEY_INFO)


def derive_relay_key(shared_secret: bytes) -> bytes:
    """Derive the relay envelope key from the out-of-band shared secret."""
    return _hkdf(shared_secret, RELAY_KEY_INFO)


def encrypt_chunk(key: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt a data chunk using AES-256-GCM.

    Returns: nonce (12 bytes) || ciphertext || tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, None)
    return nonce + ciphertext


def decrypt_chunk(key: bytes, data: bytes) -> bytes:
    """
    Decrypt a data chunk encrypted with AES-256-GCM.

    Expects: nonce (12 bytes) || ciphertext || tag (16 bytes)
    """
    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(nonce, ciphertext, None)


def seal_frame(key: bytes, body: str) -> str:
    """Encrypt a relay envelope body into a text frame."""
    return base64.b64encode(encrypt_chunk(key, body.encode("utf-8"))).decode("ascii")


def open_frame(key: bytes, frame: str | bytes) -> str:
    """Decrypt a text frame produced by ``seal_frame``."""
    try:
        raw = base64.b64decode(frame, validate=True)
        if len(raw) <= NONCE_SIZE:
            raise FrameError("frame too short")
        return decrypt_chunk(key, raw).decode("utf-8")
    except (binascii.Error, InvalidTag, UnicodeDecodeError) as e:
        raise FrameError(f"undecryptable frame: {e.__class__.__name__}") from e
