"""Authenticated encryption of OAuth tokens at rest.

Tokens are sealed with AES-256-GCM.  The stored form is
``v1.<urlsafe-base64(nonce || ciphertext+tag)>``; associated data binds each
ciphertext to the owning user and the column it was written to, so a
ciphertext copied into another row or field fails to decrypt.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from timeblock_sync.config import ConfigError
from timeblock_sync.errors import CredentialDecryptionError

_VERSION_PREFIX = "v1."
_NONCE_BYTES = 12
_KEY_BYTES = 32

FIELD_ACCESS_TOKEN = "access_token"
FIELD_REFRESH_TOKEN = "refresh_token"


def generate_key() -> str:
    """Return a new urlsafe-base64 encoded 256-bit key."""
    return base64.urlsafe_b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


def _decode_key(encoded: str) -> bytes:
    try:
        raw = base64.urlsafe_b64decode(encoded.strip().encode("ascii"))
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise ConfigError("Token encryption key is not valid urlsafe base64") from exc
    if len(raw) != _KEY_BYTES:
        raise ConfigError(
            f"Token encryption key must decode to {_KEY_BYTES} bytes, got {len(raw)}"
        )
    return raw


class TokenCipher:
    """Encrypts and decrypts per-user OAuth tokens."""

    def __init__(self, key: str | bytes) -> None:
        raw_key = key if isinstance(key, bytes) else _decode_key(key)
        if len(raw_key) != _KEY_BYTES:
            raise ConfigError(f"Token encryption key must be {_KEY_BYTES} bytes")
        self._aead = AESGCM(raw_key)

    @classmethod
    def from_settings(cls, key: str | None) -> TokenCipher:
        if not key:
            raise ConfigError(
                "Token encryption key is not configured "
                "(set sync.token_encryption_key or TIMEBLOCK_TOKEN_KEY)."
            )
        return cls(key)

    @staticmethod
    def _associated_data(user_id: str, field: str) -> bytes:
        return f"{user_id}\x00{field}".encode()

    def encrypt(self, plaintext: str, *, user_id: str, field: str) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aead.encrypt(
            nonce, plaintext.encode("utf-8"), self._associated_data(user_id, field)
        )
        return _VERSION_PREFIX + base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str, *, user_id: str, field: str) -> str:
        if not token.startswith(_VERSION_PREFIX):
            raise CredentialDecryptionError(f"Stored {field} has an unknown format")
        try:
            blob = base64.urlsafe_b64decode(token[len(_VERSION_PREFIX) :].encode("ascii"))
        except (binascii.Error, ValueError) as exc:
            raise CredentialDecryptionError(f"Stored {field} is not valid base64") from exc
        if len(blob) <= _NONCE_BYTES:
            raise CredentialDecryptionError(f"Stored {field} is truncated")

        nonce, sealed = blob[:_NONCE_BYTES], blob[_NONCE_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, self._associated_data(user_id, field))
        except InvalidTag as exc:
            raise CredentialDecryptionError(
                f"Stored {field} failed authentication; reconnect required"
            ) from exc
        return plaintext.decode("utf-8")
