"""
Error taxonomy for marketplace authentication and outbound invocation.

All errors raised by this package derive from AppError so the web layer can
render them with a single handler. Secrets are NEVER placed in messages or
details.

Standard HTTP status codes:
- 400: Bad Request (validation errors, rejected OAuth state)
- 401: Unauthorized (marketplace rejected the token, refresh failed)
- 429: Too Many Requests (marketplace quota exceeded)
- 500: Internal Server Error (configuration and signing errors)
- 503: Service Unavailable (network failures talking to a marketplace)
"""

from typing import Any, Optional

from fastapi import status


class AppError(Exception):
    """
    Base application error with consistent error shape.

    All custom errors should inherit from this class.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to API error response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ConfigError(AppError):
    """Missing or placeholder configuration (500). Fails fast."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="CONFIG_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


# User-facing text for each state verification failure reason.
STATE_FAILURE_MESSAGES = {
    "expired": "The authorization link has expired. Please start the connection again.",
    "invalid_signature": "The authorization request could not be verified.",
    "invalid_format": "The authorization request is malformed.",
    "parse_error": "The authorization request could not be read.",
    "missing_secret": "Authorization is temporarily unavailable. Please contact support.",
    "marketplace_mismatch": "The authorization request does not belong to this marketplace.",
}


class StateVerificationError(AppError):
    """OAuth state token rejected (400). Carries a redirect-worthy reason."""

    def __init__(self, reason: str, marketplace_id: Optional[str] = None):
        message = STATE_FAILURE_MESSAGES.get(reason, "The authorization request is invalid.")
        details: dict[str, Any] = {"reason": reason}
        if marketplace_id:
            details["marketplace_id"] = marketplace_id
        super().__init__(
            code="STATE_VERIFICATION_FAILED",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )
        self.reason = reason


class SigningError(AppError):
    """Malformed input to a request signer (500). Never retried."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="SIGNING_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


# ============================================================================
# Marketplace call errors
# ============================================================================

class MarketplaceCallError(AppError):
    """
    Base class for failures returned by a marketplace API.

    upstream_status is the HTTP status the marketplace answered with, if any.
    marketplace_code is the marketplace-specific error code, if any.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int,
        marketplace_id: Optional[str] = None,
        upstream_status: Optional[int] = None,
        marketplace_code: Optional[str] = None,
    ):
        details: dict[str, Any] = {}
        if marketplace_id:
            details["marketplace_id"] = marketplace_id
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        if marketplace_code:
            details["marketplace_code"] = marketplace_code
        super().__init__(code=code, message=message, status_code=status_code, details=details)
        self.marketplace_id = marketplace_id
        self.upstream_status = upstream_status
        self.marketplace_code = marketplace_code


class NetworkError(MarketplaceCallError):
    """Connection reset, timeout, DNS failure or 5xx answer (503)."""

    def __init__(
        self,
        message: str = "Marketplace is unreachable",
        marketplace_id: Optional[str] = None,
        upstream_status: Optional[int] = None,
        marketplace_code: Optional[str] = None,
    ):
        super().__init__(
            code="MARKETPLACE_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            marketplace_id=marketplace_id,
            upstream_status=upstream_status,
            marketplace_code=marketplace_code,
        )


class RateLimitError(MarketplaceCallError):
    """Marketplace quota exceeded (429)."""

    def __init__(
        self,
        message: str = "Marketplace rate limit exceeded",
        marketplace_id: Optional[str] = None,
        retry_after: Optional[float] = None,
        upstream_status: Optional[int] = None,
        marketplace_code: Optional[str] = None,
    ):
        super().__init__(
            code="RATE_LIMIT_EXCEEDED",
            message=message,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            marketplace_id=marketplace_id,
            upstream_status=upstream_status,
            marketplace_code=marketplace_code,
        )
        self.retry_after = retry_after
        if retry_after is not None:
            self.details["retry_after"] = retry_after


class AuthError(MarketplaceCallError):
    """Marketplace rejected the credentials or token (401)."""

    def __init__(
        self,
        message: str = "Marketplace rejected the credentials",
        marketplace_id: Optional[str] = None,
        upstream_status: Optional[int] = None,
        marketplace_code: Optional[str] = None,
    ):
        super().__init__(
            code="MARKETPLACE_AUTH_FAILED",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            marketplace_id=marketplace_id,
            upstream_status=upstream_status,
            marketplace_code=marketplace_code,
        )


class ValidationError(MarketplaceCallError):
    """Request rejected by the marketplace or by local validation (400)."""

    def __init__(
        self,
        message: str,
        marketplace_id: Optional[str] = None,
        upstream_status: Optional[int] = None,
        marketplace_code: Optional[str] = None,
    ):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            marketplace_id=marketplace_id,
            upstream_status=upstream_status,
            marketplace_code=marketplace_code,
        )


class RefreshFailure(AppError):
    """A new access token could not be obtained (401). Never masked."""

    def __init__(
        self,
        message: str,
        marketplace_id: Optional[str] = None,
        user_id: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        details: dict[str, Any] = {}
        if marketplace_id:
            details["marketplace_id"] = marketplace_id
        if user_id is not None:
            details["user_id"] = user_id
        if cause is not None:
            details["cause"] = type(cause).__name__
        super().__init__(
            code="TOKEN_REFRESH_FAILED",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )
        self.marketplace_id = marketplace_id
        self.user_id = user_id
        self.cause = cause
