"""
Tests for AES-256-GCM credential encryption.
"""

import base64

import pytest

from marketplace_auth.credentials.encryption import (
    CredentialCipher,
    CredentialEncryptionError,
    KEY_SIZE,
    decode_key_string,
)
from marketplace_auth.platform.errors import ConfigError


class TestCredentialCipher:
    """Tests for CredentialCipher."""

    @pytest.fixture
    def cipher(self) -> CredentialCipher:
        return CredentialCipher(b"0" * KEY_SIZE)

    def test_text_round_trip(self, cipher):
        blob = cipher.encrypt_text("v^1.1#refresh-token")

        assert blob.startswith("v1:")
        assert "refresh-token" not in blob
        assert cipher.decrypt_text(blob) == "v^1.1#refresh-token"

    def test_nonce_is_random(self, cipher):
        assert cipher.encrypt_text("same") != cipher.encrypt_text("same")

    def test_json_round_trip(self, cipher):
        data = {"kind": "ebay", "fields": {"app_id": "a", "cert_id": "c"}}

        assert cipher.decrypt_json(cipher.encrypt_json(data, b"aad"), b"aad") == data

    def test_wrong_associated_data_fails(self, cipher):
        blob = cipher.encrypt_text("secret", b"1:ebay:production:user")

        with pytest.raises(CredentialEncryptionError):
            cipher.decrypt_text(blob, b"2:ebay:production:user")

    def test_wrong_key_fails(self, cipher):
        blob = cipher.encrypt_text("secret")

        with pytest.raises(CredentialEncryptionError):
            CredentialCipher(b"1" * KEY_SIZE).decrypt_text(blob)

    def test_tampered_blob_fails(self, cipher):
        raw = bytearray(base64.b64decode(cipher.encrypt_text("secret")[3:]))
        raw[-1] ^= 0x01
        tampered = "v1:" + base64.b64encode(bytes(raw)).decode()

        with pytest.raises(CredentialEncryptionError):
            cipher.decrypt_text(tampered)

    @pytest.mark.parametrize("blob", ["", "plaintext", "v1:not-base64!!", "v1:" + base64.b64encode(b"short").decode()])
    def test_malformed_blob_fails(self, cipher, blob):
        with pytest.raises(CredentialEncryptionError):
            cipher.decrypt_text(blob)

    def test_wrong_key_size_rejected(self):
        with pytest.raises(ConfigError):
            CredentialCipher(b"short")


class TestKeyLoading:
    """Key decoding from the environment."""

    def test_generated_key_is_usable(self, monkeypatch):
        monkeypatch.setenv("CREDENTIAL_ENCRYPTION_KEY", CredentialCipher.generate_key_string())

        cipher = CredentialCipher.from_env()

        assert cipher.decrypt_text(cipher.encrypt_text("x")) == "x"

    def test_hex_key(self):
        assert decode_key_string(("ab" * KEY_SIZE)) == bytes.fromhex("ab" * KEY_SIZE)

    def test_missing_key_raises(self, monkeypatch):
        monkeypatch.delenv("CREDENTIAL_ENCRYPTION_KEY", raising=False)

        with pytest.raises(ConfigError):
            CredentialCipher.from_env()

    def test_bad_key_raises(self):
        with pytest.raises(ConfigError):
            decode_key_string("too-short")
