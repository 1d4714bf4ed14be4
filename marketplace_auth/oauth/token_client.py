"""
OAuth token endpoint client (authorization-code exchange and refresh grant).

Client authentication per marketplace:
- eBay: HTTP Basic (app_id:cert_id), form body
- MercadoLibre, Amazon (Login with Amazon): client_id/client_secret in the form body
- AliExpress: signed system-interface parameters (/auth/token/create, /auth/token/refresh)

SECURITY:
- Tokens and client secrets are never logged
- Upstream error messages are redacted before they are raised

Usage:
    async with OAuthTokenClient() as client:
        grant = await client.refresh(credential)
"""

import base64
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from marketplace_auth.config import MarketplaceConfig, get_marketplace_config
from marketplace_auth.models.credential import Credential
from marketplace_auth.models.enums import MarketplaceId
from marketplace_auth.platform.errors import (
    NetworkError,
    RefreshFailure,
    ValidationError,
)
from marketplace_auth.resilience.classification import error_from_response
from marketplace_auth.signing.aliexpress import sign_aliexpress_params

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
ALIEXPRESS_CREATE_PATH = "/auth/token/create"
ALIEXPRESS_REFRESH_PATH = "/auth/token/refresh"


class TokenGrant(BaseModel):
    """
    Token endpoint response.

    SECURITY: repr hides token values.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    access_token: str = Field(repr=False, min_length=1)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_in: Optional[int] = None
    refresh_token_expires_in: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("refresh_token_expires_in", "refresh_expires_in"),
    )
    token_type: Optional[str] = None
    # MercadoLibre user_id / AliExpress seller_id
    seller_user_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("seller_user_id", "user_id", "seller_id"),
    )

    @field_validator("seller_user_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        return str(value)

    def access_token_expires_at(self, now: datetime) -> Optional[datetime]:
        if self.expires_in is None:
            return None
        return now + timedelta(seconds=self.expires_in)

    def refresh_token_expires_at(self, now: datetime) -> Optional[datetime]:
        if self.refresh_token_expires_in is None:
            return None
        return now + timedelta(seconds=self.refresh_token_expires_in)


class OAuthTokenClient:
    """Talks to marketplace token endpoints over httpx."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            http_client: Shared client; one is created (and owned) if omitted
            timeout: Request timeout for an owned client
            clock: Seconds since the epoch, used for AliExpress timestamps
        """
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._clock = clock

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "OAuthTokenClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Grants
    # =========================================================================

    async def exchange_code(
        self,
        credential: Credential,
        code: str,
        redirect_uri: Optional[str] = None,
    ) -> TokenGrant:
        """
        Exchange an authorization code for tokens.

        Raises:
            ValidationError: Marketplace has no OAuth flow, or rejected the request
            AuthError: Client credentials rejected
            RateLimitError / NetworkError: Transient failures
        """
        config = self._oauth_config(credential)
        if not code:
            raise ValidationError("Authorization code is required", marketplace_id=config.marketplace_id.value)

        if config.token_auth_style == "signed":
            params = {"code": code}
            return await self._post_signed(config, credential, ALIEXPRESS_CREATE_PATH, params, refresh=False)

        form = {"grant_type": "authorization_code", "code": code}
        if redirect_uri:
            form["redirect_uri"] = redirect_uri
        return await self._post_form(config, credential, form, refresh=False)

    async def refresh(self, credential: Credential) -> TokenGrant:
        """
        Run the refresh grant for a credential.

        Raises:
            RefreshFailure: The credential carries no refresh token
            AuthError: Refresh token or client credentials rejected
            RateLimitError / NetworkError: Transient failures
        """
        config = self._oauth_config(credential)
        if not credential.refresh_token:
            raise RefreshFailure(
                f"{config.display_name} credential has no refresh token",
                marketplace_id=config.marketplace_id.value,
                user_id=credential.user_id,
            )

        if config.token_auth_style == "signed":
            params = {"refresh_token": credential.refresh_token}
            return await self._post_signed(config, credential, ALIEXPRESS_REFRESH_PATH, params, refresh=True)

        form = {"grant_type": "refresh_token", "refresh_token": credential.refresh_token}
        if config.marketplace_id == MarketplaceId.EBAY and config.scopes:
            form["scope"] = " ".join(config.scopes)
        return await self._post_form(config, credential, form, refresh=True)

    # =========================================================================
    # Transport
    # =========================================================================

    @staticmethod
    def _oauth_config(credential: Credential) -> MarketplaceConfig:
        config = get_marketplace_config(credential.marketplace_id)
        if not config.supports_oauth:
            raise ValidationError(
                f"{config.display_name} does not use OAuth tokens",
                marketplace_id=config.marketplace_id.value,
            )
        return config

    async def _post_form(
        self,
        config: MarketplaceConfig,
        credential: Credential,
        form: Dict[str, str],
        refresh: bool,
    ) -> TokenGrant:
        endpoints = config.endpoints_for(credential.environment)
        url = endpoints.effective_refresh_url if refresh else endpoints.token_url
        payload = credential.payload
        headers = {"Accept": "application/json"}

        if config.token_auth_style == "basic":
            basic = f"{payload.oauth_client_id}:{payload.oauth_client_secret}".encode("utf-8")
            headers["Authorization"] = "Basic " + base64.b64encode(basic).decode("ascii")
        else:
            form = {
                **form,
                "client_id": payload.oauth_client_id,
                "client_secret": payload.oauth_client_secret,
            }

        return await self._send(config, credential, url, refresh, data=form, headers=headers)

    async def _post_signed(
        self,
        config: MarketplaceConfig,
        credential: Credential,
        api_path: str,
        params: Dict[str, str],
        refresh: bool,
    ) -> TokenGrant:
        endpoints = config.endpoints_for(credential.environment)
        url = endpoints.effective_refresh_url if refresh else endpoints.token_url
        payload = credential.payload
        signed = sign_aliexpress_params(
            api_path,
            params,
            payload.oauth_client_id,
            payload.oauth_client_secret,
            clock=self._clock,
        )
        return await self._send(
            config, credential, url, refresh, data=signed, headers={"Accept": "application/json"},
        )

    async def _send(
        self,
        config: MarketplaceConfig,
        credential: Credential,
        url: Optional[str],
        refresh: bool,
        **request_kwargs: Any,
    ) -> TokenGrant:
        marketplace = config.marketplace_id.value
        grant_type = "refresh_token" if refresh else "authorization_code"
        if not url:
            raise ValidationError(
                f"{config.display_name} has no token endpoint", marketplace_id=marketplace,
            )

        try:
            response = await self._client.post(url, **request_kwargs)
        except httpx.TransportError as e:
            logger.warning(
                "Token endpoint request failed",
                extra={
                    "marketplace_id": marketplace,
                    "grant_type": grant_type,
                    "error_type": type(e).__name__,
                },
            )
            raise NetworkError(
                f"{config.display_name} token endpoint is unreachable",
                marketplace_id=marketplace,
            ) from e

        quota_codes = frozenset(config.quota_error_codes)
        if response.status_code >= 400:
            error = error_from_response(response, marketplace, quota_codes)
            logger.warning(
                "Token endpoint rejected request",
                extra={
                    "marketplace_id": marketplace,
                    "grant_type": grant_type,
                    "status_code": response.status_code,
                    "error_type": type(error).__name__,
                    "marketplace_code": error.marketplace_code,
                },
            )
            raise error

        try:
            body = response.json()
        except ValueError:
            raise ValidationError(
                f"{config.display_name} token endpoint returned a non-JSON body",
                marketplace_id=marketplace,
                upstream_status=response.status_code,
            ) from None

        # AliExpress reports failures inside a 200 body
        if not isinstance(body, dict) or not body.get("access_token"):
            raise error_from_response(response, marketplace, quota_codes)

        grant = TokenGrant.model_validate(body)
        logger.info(
            "Token grant succeeded",
            extra={
                "marketplace_id": marketplace,
                "grant_type": grant_type,
                "user_id": credential.user_id,
                "environment": credential.environment.value,
                "expires_in": grant.expires_in,
                "has_refresh_token": grant.refresh_token is not None,
            },
        )
        return grant
