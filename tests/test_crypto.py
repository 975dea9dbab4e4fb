"""Tests for timeblock_sync.crypto.TokenCipher."""

from __future__ import annotations

import base64

import pytest

from timeblock_sync.config import ConfigError
from timeblock_sync.crypto import (
    FIELD_ACCESS_TOKEN,
    FIELD_REFRESH_TOKEN,
    TokenCipher,
    generate_key,
)
from timeblock_sync.errors import CredentialDecryptionError

pytestmark = pytest.mark.unit


class TestRoundTrip:
    def test_decrypts_what_it_encrypts(self, cipher: TokenCipher) -> None:
        sealed = cipher.encrypt("ya29.secret", user_id="user-1", field=FIELD_ACCESS_TOKEN)
        assert sealed.startswith("v1.")
        assert "ya29.secret" not in sealed
        assert cipher.decrypt(sealed, user_id="user-1", field=FIELD_ACCESS_TOKEN) == "ya29.secret"

    def test_nonce_makes_each_ciphertext_unique(self, cipher: TokenCipher) -> None:
        first = cipher.encrypt("same", user_id="user-1", field=FIELD_ACCESS_TOKEN)
        second = cipher.encrypt("same", user_id="user-1", field=FIELD_ACCESS_TOKEN)
        assert first != second

    def test_generated_key_is_usable(self) -> None:
        cipher = TokenCipher(generate_key())
        sealed = cipher.encrypt("token", user_id="u", field=FIELD_REFRESH_TOKEN)
        assert cipher.decrypt(sealed, user_id="u", field=FIELD_REFRESH_TOKEN) == "token"


class TestBinding:
    def test_other_user_cannot_decrypt(self, cipher: TokenCipher) -> None:
        sealed = cipher.encrypt("token", user_id="user-1", field=FIELD_REFRESH_TOKEN)
        with pytest.raises(CredentialDecryptionError, match="reconnect required"):
            cipher.decrypt(sealed, user_id="user-2", field=FIELD_REFRESH_TOKEN)

    def test_other_field_cannot_decrypt(self, cipher: TokenCipher) -> None:
        sealed = cipher.encrypt("token", user_id="user-1", field=FIELD_REFRESH_TOKEN)
        with pytest.raises(CredentialDecryptionError):
            cipher.decrypt(sealed, user_id="user-1", field=FIELD_ACCESS_TOKEN)

    def test_other_key_cannot_decrypt(self, cipher: TokenCipher) -> None:
        sealed = cipher.encrypt("token", user_id="user-1", field=FIELD_ACCESS_TOKEN)
        with pytest.raises(CredentialDecryptionError):
            TokenCipher(generate_key()).decrypt(sealed, user_id="user-1", field=FIELD_ACCESS_TOKEN)


class TestMalformedInput:
    def test_unknown_prefix(self, cipher: TokenCipher) -> None:
        with pytest.raises(CredentialDecryptionError, match="unknown format"):
            cipher.decrypt("plaintext-token", user_id="u", field=FIELD_ACCESS_TOKEN)

    def test_truncated_blob(self, cipher: TokenCipher) -> None:
        short = "v1." + base64.urlsafe_b64encode(b"\x00" * 8).decode()
        with pytest.raises(CredentialDecryptionError, match="truncated"):
            cipher.decrypt(short, user_id="u", field=FIELD_ACCESS_TOKEN)

    def test_tampered_ciphertext(self, cipher: TokenCipher) -> None:
        sealed = cipher.encrypt("token", user_id="u", field=FIELD_ACCESS_TOKEN)
        raw = bytearray(base64.urlsafe_b64decode(sealed[3:]))
        raw[-1] ^= 0x01
        tampered = "v1." + base64.urlsafe_b64encode(bytes(raw)).decode()
        with pytest.raises(CredentialDecryptionError):
            cipher.decrypt(tampered, user_id="u", field=FIELD_ACCESS_TOKEN)


class TestKeys:
    def test_missing_key_is_a_config_error(self) -> None:
        with pytest.raises(ConfigError, match="not configured"):
            TokenCipher.from_settings(None)

    def test_wrong_length_key(self) -> None:
        with pytest.raises(ConfigError, match="32 bytes"):
            TokenCipher(base64.urlsafe_b64encode(b"short").decode())

    def test_non_base64_key(self) -> None:
        with pytest.raises(ConfigError):
            TokenCipher("not base64 at all!")
