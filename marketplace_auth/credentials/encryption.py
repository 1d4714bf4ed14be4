"""
AES-256-GCM encryption of credential secret material and tokens at rest.

SECURITY:
- Each encryption uses a fresh random 96-bit nonce
- The credential key is bound as associated data, so an encrypted blob
  copied onto another row fails to decrypt
- Key comes from CREDENTIAL_ENCRYPTION_KEY (base64, hex or raw 32 bytes)

Stored format:
    "v1:" + base64(nonce || ciphertext || tag)

Usage:
    cipher = CredentialCipher.from_env()
    blob = cipher.encrypt_json({"app_id": "..."}, associated_data=b"1:ebay:production:user")
    data = cipher.decrypt_json(blob, associated_data=b"1:ebay:production:user")
"""

import base64
import binascii
import json
import os
import secrets
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from fastapi import status

from marketplace_auth.platform.errors import AppError, ConfigError

ENCRYPTION_KEY_ENV_VAR = "CREDENTIAL_ENCRYPTION_KEY"
FORMAT_PREFIX = "v1:"
NONCE_SIZE = 12  # 96 bits, recommended for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256


class CredentialEncryptionError(AppError):
    """Encrypting or decrypting credential material failed."""

    def __init__(self, message: str, operation: str):
        super().__init__(
            code="CREDENTIAL_ENCRYPTION_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"operation": operation},
        )
        self.operation = operation


def decode_key_string(key_string: str) -> bytes:
    """
    Decode a 32-byte key from base64, hex or raw UTF-8.

    Raises:
        ConfigError: If no encoding yields exactly 32 bytes
    """
    candidates = []
    try:
        candidates.append(base64.b64decode(key_string, validate=True))
    except (binascii.Error, ValueError):
        pass
    try:
        candidates.append(bytes.fromhex(key_string))
    except ValueError:
        pass
    candidates.append(key_string.encode("utf-8"))

    for candidate in candidates:
        if len(candidate) == KEY_SIZE:
            return candidate

    raise ConfigError(
        f"Encryption key must decode to {KEY_SIZE} bytes",
        details={"env_var": ENCRYPTION_KEY_ENV_VAR},
    )


class CredentialCipher:
    """AES-256-GCM cipher for credential blobs."""

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ConfigError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_env(cls, env_var: str = ENCRYPTION_KEY_ENV_VAR) -> "CredentialCipher":
        """
        Build a cipher from the environment.

        Raises:
            ConfigError: If the variable is unset or malformed
        """
        key_string = os.getenv(env_var)
        if not key_string:
            raise ConfigError(
                "Credential encryption key is not configured",
                details={"env_var": env_var},
            )
        return cls(decode_key_string(key_string))

    @staticmethod
    def generate_key_string() -> str:
        """Generate a new random key as a base64 string."""
        return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("utf-8")

    def encrypt_text(self, plaintext: str, associated_data: Optional[bytes] = None) -> str:
        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), associated_data)
        return FORMAT_PREFIX + base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt_text(self, blob: str, associated_data: Optional[bytes] = None) -> str:
        """
        Raises:
            CredentialEncryptionError: On a malformed blob, wrong key or tampering
        """
        if not blob or not blob.startswith(FORMAT_PREFIX):
            raise CredentialEncryptionError("Unrecognized encrypted format", operation="decrypt")
        try:
            raw = base64.b64decode(blob[len(FORMAT_PREFIX):], validate=True)
        except (binascii.Error, ValueError) as e:
            raise CredentialEncryptionError("Encrypted value is not valid base64", operation="decrypt") from e
        if len(raw) <= NONCE_SIZE:
            raise CredentialEncryptionError("Encrypted value is truncated", operation="decrypt")

        nonce, ciphertext = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            return self._aesgcm.decrypt(nonce, ciphertext, associated_data).decode("utf-8")
        except InvalidTag as e:
            # Wrong key, wrong associated data or tampered ciphertext
            raise CredentialEncryptionError("Decryption failed", operation="decrypt") from e

    def encrypt_json(self, data: Dict[str, Any], associated_data: Optional[bytes] = None) -> str:
        return self.encrypt_text(json.dumps(data, sort_keys=True), associated_data)

    def decrypt_json(self, blob: str, associated_data: Optional[bytes] = None) -> Dict[str, Any]:
        text = self.decrypt_text(blob, associated_data)
        try:
            data = json.loads(text)
        except ValueError as e:
            raise CredentialEncryptionError("Decrypted value is not JSON", operation="decrypt") from e
        if not isinstance(data, dict):
            raise CredentialEncryptionError("Decrypted value is not an object", operation="decrypt")
        return data
