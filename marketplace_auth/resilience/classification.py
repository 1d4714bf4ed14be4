"""
Error classification for outbound marketplace calls.

Maps raised errors and HTTP responses onto a small taxonomy that drives the
retry decision:

    NETWORK, TIMEOUT, SERVER_ERROR, RATE_LIMIT  -> retryable
    AUTH                                        -> fatal (caller refreshes the token)
    VALIDATION, UNKNOWN                         -> fatal
"""

import asyncio
import socket
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx

from marketplace_auth.models.enums import MarketplaceLike, marketplace_value
from marketplace_auth.platform.errors import (
    AuthError,
    MarketplaceCallError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from marketplace_auth.platform.secrets import redact_value

MAX_ERROR_MESSAGE_LENGTH = 500

# Low-level error codes that indicate a transient network failure.
NETWORK_ERROR_CODES = (
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "ECONNREFUSED",
    "EAI_AGAIN",
    "EPIPE",
)

# Marketplace error codes meaning the token is invalid or expired.
AUTH_ERROR_CODES = frozenset({
    "invalid_token",
    "expired_token",
    "invalid_grant",
    "invalid_client",
    "unauthorized_client",
    "unauthorized",
    "Unauthorized",
    "IllegalAccessToken",
    "InvalidInput.AccessToken",
    "1001",  # eBay: invalid access token
})


class ErrorCategory(str, Enum):
    """Classified failure type."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class RetryDecision(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.SERVER_ERROR,
    ErrorCategory.RATE_LIMIT,
})


def categorize_status_code(status_code: int) -> ErrorCategory:
    """Categorize an HTTP status code."""
    if status_code == 429:
        return ErrorCategory.RATE_LIMIT
    if status_code in (401, 403):
        return ErrorCategory.AUTH
    if status_code == 408:
        return ErrorCategory.TIMEOUT
    if status_code >= 500:
        return ErrorCategory.SERVER_ERROR
    if 400 <= status_code < 500:
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


def categorize_error(error: BaseException) -> ErrorCategory:
    """Categorize a raised error."""
    if isinstance(error, RateLimitError):
        return ErrorCategory.RATE_LIMIT
    if isinstance(error, AuthError):
        return ErrorCategory.AUTH
    if isinstance(error, ValidationError):
        return ErrorCategory.VALIDATION
    if isinstance(error, NetworkError):
        if error.upstream_status is not None and error.upstream_status >= 500:
            return ErrorCategory.SERVER_ERROR
        return ErrorCategory.NETWORK

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, httpx.HTTPStatusError):
        return categorize_status_code(error.response.status_code)
    if isinstance(error, (httpx.TransportError, ConnectionError, socket.gaierror)):
        return ErrorCategory.NETWORK

    text = str(error)
    if any(code in text for code in NETWORK_ERROR_CODES):
        return ErrorCategory.NETWORK
    return ErrorCategory.UNKNOWN


def classify_error(error: BaseException) -> RetryDecision:
    """Default classify function for RetryPolicy."""
    if categorize_error(error) in RETRYABLE_CATEGORIES:
        return RetryDecision.RETRYABLE
    return RetryDecision.FATAL


# ============================================================================
# HTTP response mapping
# ============================================================================

def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header (seconds or HTTP date)."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _extract_error_fields(body: Any) -> tuple[Optional[str], Optional[str]]:
    """Pull (code, message) out of the marketplace error shapes we know."""
    if not isinstance(body, dict):
        return None, None

    # {"errors": [{"errorId": 1001, "message": "..."}]}  eBay / Amazon
    errors = body.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        first = errors[0]
        code = first.get("errorId", first.get("code"))
        message = first.get("message") or first.get("longMessage")
        return (str(code) if code is not None else None), message

    # {"error_response": {"code": "...", "msg": "..."}}  AliExpress
    nested = body.get("error_response")
    if isinstance(nested, dict):
        code = nested.get("code")
        return (str(code) if code is not None else None), nested.get("msg") or nested.get("sub_msg")

    code = body.get("error") or body.get("code")
    message = body.get("error_description") or body.get("message") or body.get("msg")
    if isinstance(code, dict):
        code = code.get("code")
    return (str(code) if code is not None else None), message


def error_from_response(
    response: httpx.Response,
    marketplace_id: Optional[MarketplaceLike] = None,
    quota_error_codes: Optional[frozenset] = None,
) -> MarketplaceCallError:
    """
    Turn a failed marketplace response into a typed error.

    Token values are never part of the message; messages are redacted and
    truncated before they leave this function.
    """
    try:
        body = response.json()
    except ValueError:
        body = None

    code, message = _extract_error_fields(body)
    status_code = response.status_code
    marketplace = marketplace_value(marketplace_id) if marketplace_id else None
    text = redact_value(str(message or response.reason_phrase or f"HTTP {status_code}"))
    text = text[:MAX_ERROR_MESSAGE_LENGTH]

    if status_code == 429 or (code and quota_error_codes and code in quota_error_codes):
        return RateLimitError(
            message=text,
            marketplace_id=marketplace,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            upstream_status=status_code,
            marketplace_code=code,
        )

    if status_code in (401, 403) or (code and code in AUTH_ERROR_CODES):
        return AuthError(
            message=text,
            marketplace_id=marketplace,
            upstream_status=status_code,
            marketplace_code=code,
        )

    if status_code >= 500:
        return NetworkError(
            message=text,
            marketplace_id=marketplace,
            upstream_status=status_code,
            marketplace_code=code,
        )

    return ValidationError(
        message=text,
        marketplace_id=marketplace,
        upstream_status=status_code,
        marketplace_code=code,
    )
