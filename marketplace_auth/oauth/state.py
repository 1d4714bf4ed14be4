"""
Signed, time-boxed OAuth state tokens.

Compact format (all marketplaces):

    base64url(payload_json) "." base64url(HMAC-SHA256(secret, payload_json))

    payload_json = {"iat": <epoch ms>, "mkt": "<marketplace>", "uid": <user id>}
                   serialized with sorted keys and no whitespace

Legacy format (marketplaces with legacy_state_format=True):

    base64url("uid|mkt|ts|nonce|b64url(redirect_uri)|env[|expires_ms]|hex_sig")

    hex_sig = HMAC-SHA256(secret, every field before it joined by "|").
    The 7-field form has no expiry and relies on the signature only.

SECURITY:
- Signatures are compared in constant time
- A missing or placeholder secret is never replaced by a default
- Tokens are not single-use: replay inside the TTL re-triggers a harmless
  code exchange, so no revocation store is consulted

Usage:
    signer = OAuthStateSigner()
    state = signer.sign(user_id=1, marketplace_id="ebay")
    result = signer.verify(state, marketplace_id="ebay")
    if not result.ok:
        redirect_with_error(result.reason)
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional

from marketplace_auth.config import get_marketplace_config, get_state_token_config
from marketplace_auth.models.enums import (
    Environment,
    EnvironmentLike,
    MarketplaceLike,
    marketplace_value,
)
from marketplace_auth.platform.errors import ConfigError, StateVerificationError
from marketplace_auth.platform.secrets import get_signing_secret, is_placeholder_secret

logger = logging.getLogger(__name__)

_BASE64URL_RE = re.compile(r"^[A-Za-z0-9_-]+$")
LEGACY_FIELD_COUNTS = (7, 8)


class StateFailureReason(str, Enum):
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_FORMAT = "invalid_format"
    PARSE_ERROR = "parse_error"
    MISSING_SECRET = "missing_secret"
    MARKETPLACE_MISMATCH = "marketplace_mismatch"


@dataclass(frozen=True)
class StateVerification:
    """Outcome of verify(). On failure only `reason` is set."""
    ok: bool
    user_id: Optional[int] = None
    marketplace_id: Optional[str] = None
    reason: Optional[StateFailureReason] = None
    issued_at_ms: Optional[int] = None
    expires_at_ms: Optional[int] = None
    # Legacy tokens also carry these
    environment: Optional[str] = None
    redirect_uri: Optional[str] = None
    legacy: bool = False

    @classmethod
    def failure(cls, reason: StateFailureReason) -> "StateVerification":
        return cls(ok=False, reason=reason)


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    """Strict base64url decode without padding; raises ValueError."""
    if not _BASE64URL_RE.match(text):
        raise ValueError("not base64url")
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True)
    except binascii.Error as e:
        raise ValueError(str(e)) from e


def _validate_user_id(user_id: int) -> int:
    if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id < 0:
        raise ValueError("user_id must be a non-negative integer")
    return user_id


class OAuthStateSigner:
    """Issues and verifies OAuth state tokens."""

    def __init__(
        self,
        *,
        secret_provider: Callable[[], str] = get_signing_secret,
        ttl: Optional[timedelta] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            secret_provider: Returns the signing secret; may raise ConfigError
            ttl: Token lifetime (defaults to OAUTH_STATE_TTL_SECONDS or 10 minutes)
            clock: Seconds since the epoch
        """
        self._secret_provider = secret_provider
        self._ttl = ttl if ttl is not None else timedelta(seconds=get_state_token_config().ttl_seconds)
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def _now_ms(self) -> int:
        return int(round(self._clock() * 1000))

    def _ttl_ms(self) -> int:
        return int(self._ttl.total_seconds() * 1000)

    def _secret(self) -> bytes:
        secret = self._secret_provider()
        if not secret or is_placeholder_secret(secret):
            raise ConfigError("Signing secret is not configured or is a placeholder")
        return secret.encode("utf-8")

    # =========================================================================
    # Compact tokens
    # =========================================================================

    def sign(self, user_id: int, marketplace_id: MarketplaceLike) -> str:
        """
        Issue a compact state token.

        Raises:
            ConfigError: If no usable signing secret is configured
            ValueError: If user_id or marketplace_id is invalid
        """
        _validate_user_id(user_id)
        marketplace = marketplace_value(marketplace_id)
        if not marketplace:
            raise ValueError("marketplace_id is required")

        secret = self._secret()
        payload = json.dumps(
            {"iat": self._now_ms(), "mkt": marketplace, "uid": user_id},
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")
        signature = hmac.new(secret, payload, hashlib.sha256).digest()
        return f"{_b64encode(payload)}.{_b64encode(signature)}"

    def verify(self, token: str, marketplace_id: MarketplaceLike) -> StateVerification:
        """
        Verify a state token for the callback route of `marketplace_id`.

        Never raises; failures are reported through StateVerification.reason.
        """
        expected_marketplace = marketplace_value(marketplace_id)
        if not isinstance(token, str) or not token.strip():
            return self._fail(StateFailureReason.INVALID_FORMAT, expected_marketplace)
        token = token.strip()

        if "." not in token:
            if self._accepts_legacy(expected_marketplace):
                return self._verify_legacy(token, expected_marketplace)
            return self._fail(StateFailureReason.INVALID_FORMAT, expected_marketplace)

        parts = token.split(".")
        if len(parts) != 2 or not all(parts):
            return self._fail(StateFailureReason.INVALID_FORMAT, expected_marketplace)

        try:
            payload_bytes = _b64decode(parts[0])
            signature = _b64decode(parts[1])
        except ValueError:
            return self._fail(StateFailureReason.INVALID_FORMAT, expected_marketplace)

        try:
            payload = json.loads(payload_bytes.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return self._fail(StateFailureReason.PARSE_ERROR, expected_marketplace)

        if not isinstance(payload, dict):
            return self._fail(StateFailureReason.PARSE_ERROR, expected_marketplace)
        user_id = payload.get("uid")
        marketplace = payload.get("mkt")
        issued_at = payload.get("iat")
        if (
            isinstance(user_id, bool) or not isinstance(user_id, int)
            or not isinstance(marketplace, str)
            or isinstance(issued_at, bool) or not isinstance(issued_at, int)
        ):
            return self._fail(StateFailureReason.PARSE_ERROR, expected_marketplace)

        try:
            secret = self._secret()
        except ConfigError:
            return self._fail(StateFailureReason.MISSING_SECRET, expected_marketplace)

        expected = hmac.new(secret, payload_bytes, hashlib.sha256).digest()
        if not hmac.compare_digest(expected, signature):
            return self._fail(StateFailureReason.INVALID_SIGNATURE, expected_marketplace)

        expires_at = issued_at + self._ttl_ms()
        if self._now_ms() > expires_at:
            return self._fail(StateFailureReason.EXPIRED, expected_marketplace)

        if marketplace != expected_marketplace:
            return self._fail(StateFailureReason.MARKETPLACE_MISMATCH, expected_marketplace)

        return StateVerification(
            ok=True,
            user_id=user_id,
            marketplace_id=marketplace,
            issued_at_ms=issued_at,
            expires_at_ms=expires_at,
        )

    def verify_or_raise(self, token: str, marketplace_id: MarketplaceLike) -> StateVerification:
        """
        Like verify(), but raise on failure.

        Raises:
            StateVerificationError: carrying the failure reason
        """
        result = self.verify(token, marketplace_id)
        if not result.ok:
            reason = result.reason or StateFailureReason.INVALID_FORMAT
            raise StateVerificationError(reason.value, marketplace_value(marketplace_id))
        return result

    # =========================================================================
    # Legacy pipe-delimited tokens
    # =========================================================================

    def sign_legacy(
        self,
        user_id: int,
        marketplace_id: MarketplaceLike,
        redirect_uri: str,
        environment: EnvironmentLike,
        *,
        include_expiry: bool = True,
    ) -> str:
        """
        Issue a legacy pipe-delimited state token.

        The 8-field form (include_expiry=True) carries an absolute expiry of
        now + TTL; the 7-field form carries none.
        """
        _validate_user_id(user_id)
        secret = self._secret()
        now_ms = self._now_ms()
        fields = [
            str(user_id),
            marketplace_value(marketplace_id),
            str(now_ms),
            secrets.token_hex(16),
            _b64encode(redirect_uri.encode("utf-8")),
            Environment(environment).value,
        ]
        if include_expiry:
            fields.append(str(now_ms + self._ttl_ms()))
        signature = hmac.new(secret, "|".join(fields).encode("utf-8"), hashlib.sha256).hexdigest()
        return _b64encode("|".join(fields + [signature]).encode("utf-8"))

    def _accepts_legacy(self, marketplace: str) -> bool:
        try:
            return get_marketplace_config(marketplace).legacy_state_format
        except ConfigError:
            return False

    def _verify_legacy(self, token: str, expected_marketplace: str) -> StateVerification:
        try:
            decoded = _b64decode(token).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return self._fail(StateFailureReason.INVALID_FORMAT, expected_marketplace)

        parts = decoded.split("|")
        if len(parts) not in LEGACY_FIELD_COUNTS:
            return self._fail(StateFailureReason.INVALID_FORMAT, expected_marketplace)

        fields, signature = parts[:-1], parts[-1]
        user_raw, marketplace, _timestamp, _nonce, redirect_b64, environment = fields[:6]
        expires_raw = fields[6] if len(fields) == 7 else None

        try:
            user_id = int(user_raw)
            issued_at = int(_timestamp)
            expires_at = int(expires_raw) if expires_raw is not None else None
            redirect_uri = _b64decode(redirect_b64).decode("utf-8") if redirect_b64 else None
        except (ValueError, UnicodeDecodeError):
            return self._fail(StateFailureReason.PARSE_ERROR, expected_marketplace)

        try:
            secret = self._secret()
        except ConfigError:
            return self._fail(StateFailureReason.MISSING_SECRET, expected_marketplace)

        expected = hmac.new(secret, "|".join(fields).encode("utf-8"), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
            return self._fail(StateFailureReason.INVALID_SIGNATURE, expected_marketplace)

        if expires_at is not None and expires_at < self._now_ms():
            return self._fail(StateFailureReason.EXPIRED, expected_marketplace)

        if marketplace != expected_marketplace:
            return self._fail(StateFailureReason.MARKETPLACE_MISMATCH, expected_marketplace)

        return StateVerification(
            ok=True,
            user_id=user_id,
            marketplace_id=marketplace,
            issued_at_ms=issued_at,
            expires_at_ms=expires_at,
            environment=environment,
            redirect_uri=redirect_uri,
            legacy=True,
        )

    @staticmethod
    def _fail(reason: StateFailureReason, marketplace: str) -> StateVerification:
        logger.warning(
            "OAuth state verification failed",
            extra={"reason": reason.value, "marketplace_id": marketplace},
        )
        return StateVerification.failure(reason)
