from __future__ import annotations

import base64
import binascii
import os
from uuid import UUID

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import get_settings

NONCE_BYTES = 12
KEY_BYTES = 32


class EncryptionKeyError(RuntimeError):
    pass


def _cipher() -> AESGCM:
    encoded = get_settings().ENCRYPTION_KEY_BASE64
    try:
        key = base64.b64decode(encoded, validate=True)
    except binascii.Error as e:
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 is not base64") from e
    if len(key) != KEY_BYTES:
        raise EncryptionKeyError(f"ENCRYPTION_KEY_BASE64 must hold {KEY_BYTES} bytes, got {len(key)}")
    return AESGCM(key)


def channel_token_aad(*, workspace_id: UUID, connection_id: UUID, kind: str) -> bytes:
    # Binds a ciphertext to its row so tokens cannot be swapped between connections.
    return f"channel_connections:{workspace_id}:{connection_id}:{kind}".encode()


def encrypt_bytes(*, plaintext: bytes, aad: bytes) -> bytes:
    """Seal `plaintext` with AES-256-GCM; the random nonce is prepended to the result."""
    nonce = os.urandom(NONCE_BYTES)
    return nonce + _cipher().encrypt(nonce, plaintext, aad)


def decrypt_bytes(*, blob: bytes, aad: bytes) -> bytes:
    if len(blob) <= NONCE_BYTES:
        raise ValueError("sealed token is shorter than its nonce")
    return _cipher().decrypt(blob[:NONCE_BYTES], blob[NONCE_BYTES:], aad)
