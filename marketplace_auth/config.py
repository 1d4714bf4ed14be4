"""
Static per-marketplace configuration: endpoints, scopes, required fields and
retry tuning.

Environment variables:
- MARKETPLACE_DEFAULT_ENVIRONMENT: sandbox | production (default production)
- OAUTH_STATE_TTL_SECONDS: lifetime of OAuth state tokens (default 600)
"""

import os
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from marketplace_auth.models.enums import Environment, MarketplaceId, MarketplaceLike
from marketplace_auth.platform.errors import ConfigError

DEFAULT_ENVIRONMENT_ENV_VAR = "MARKETPLACE_DEFAULT_ENVIRONMENT"
STATE_TTL_ENV_VAR = "OAUTH_STATE_TTL_SECONDS"
DEFAULT_STATE_TTL_SECONDS = 600


class EndpointSet(BaseModel):
    """URLs for one environment of one marketplace."""
    consent_url: Optional[str] = None
    token_url: Optional[str] = None
    refresh_url: Optional[str] = None  # Defaults to token_url
    api_base: str

    @property
    def effective_refresh_url(self) -> Optional[str]:
        return self.refresh_url or self.token_url


class RetryTuning(BaseModel):
    """Default RetryPolicy knobs for a marketplace. Durations in seconds."""
    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    per_attempt_timeout: Optional[float] = Field(default=None, gt=0)
    rate_limit_initial_delay: float = Field(default=5.0, ge=0)
    rate_limit_max_delay: float = Field(default=60.0, ge=0)


class MarketplaceConfig(BaseModel):
    """Everything this package needs to know about one marketplace."""
    marketplace_id: MarketplaceId
    display_name: str
    endpoints: Dict[Environment, EndpointSet]
    scopes: List[str] = Field(default_factory=list)
    required_fields: List[str] = Field(default_factory=list)
    supports_oauth: bool = True
    # How client credentials are presented to the token endpoint
    token_auth_style: Literal["basic", "body", "signed"] = "body"
    # Extra header carrying the access token next to Authorization: Bearer
    token_header_name: Optional[str] = None
    # Callback accepts the pipe-delimited state format in addition to the compact one
    legacy_state_format: bool = False
    # Marketplace error codes meaning "quota exceeded"
    quota_error_codes: List[str] = Field(default_factory=list)
    retry: RetryTuning = Field(default_factory=RetryTuning)

    def endpoints_for(self, environment: Environment) -> EndpointSet:
        try:
            return self.endpoints[Environment(environment)]
        except KeyError:
            raise ConfigError(
                f"{self.display_name} has no endpoints for {environment}",
                details={"marketplace_id": self.marketplace_id.value},
            ) from None


class StateTokenConfig(BaseModel):
    """Configuration for OAuth state tokens."""
    ttl_seconds: int = Field(default=DEFAULT_STATE_TTL_SECONDS, gt=0)


EBAY_SCOPES = [
    "https://api.ebay.com/oauth/api_scope",
    "https://api.ebay.com/oauth/api_scope/sell.inventory",
    "https://api.ebay.com/oauth/api_scope/sell.inventory.readonly",
    "https://api.ebay.com/oauth/api_scope/sell.account",
    "https://api.ebay.com/oauth/api_scope/sell.account.readonly",
    "https://api.ebay.com/oauth/api_scope/sell.fulfillment",
    "https://api.ebay.com/oauth/api_scope/sell.marketing",
]


MARKETPLACE_CONFIGS: Dict[MarketplaceId, MarketplaceConfig] = {
    MarketplaceId.EBAY: MarketplaceConfig(
        marketplace_id=MarketplaceId.EBAY,
        display_name="eBay",
        endpoints={
            Environment.SANDBOX: EndpointSet(
                consent_url="https://auth.sandbox.ebay.com/oauth2/authorize",
                token_url="https://api.sandbox.ebay.com/identity/v1/oauth2/token",
                api_base="https://api.sandbox.ebay.com",
            ),
            Environment.PRODUCTION: EndpointSet(
                consent_url="https://auth.ebay.com/oauth2/authorize",
                token_url="https://api.ebay.com/identity/v1/oauth2/token",
                api_base="https://api.ebay.com",
            ),
        },
        scopes=EBAY_SCOPES,
        required_fields=["app_id", "dev_id", "cert_id"],
        token_auth_style="basic",
        quota_error_codes=["218050", "RateLimiter"],
        retry=RetryTuning(max_attempts=3, initial_delay=2.0, max_delay=30.0, per_attempt_timeout=10.0),
    ),
    MarketplaceId.MERCADOLIBRE: MarketplaceConfig(
        marketplace_id=MarketplaceId.MERCADOLIBRE,
        display_name="MercadoLibre",
        endpoints={
            # MercadoLibre has no separate sandbox host; test users share production
            Environment.SANDBOX: EndpointSet(
                consent_url="https://auth.mercadolibre.com.mx/authorization",
                token_url="https://api.mercadolibre.com/oauth/token",
                api_base="https://api.mercadolibre.com",
            ),
            Environment.PRODUCTION: EndpointSet(
                consent_url="https://auth.mercadolibre.com.mx/authorization",
                token_url="https://api.mercadolibre.com/oauth/token",
                api_base="https://api.mercadolibre.com",
            ),
        },
        required_fields=["client_id", "client_secret"],
        token_auth_style="body",
        legacy_state_format=True,
        quota_error_codes=["local_rate_limited", "too_many_requests"],
        retry=RetryTuning(max_attempts=3, initial_delay=1.5, max_delay=30.0, per_attempt_timeout=10.0),
    ),
    MarketplaceId.AMAZON: MarketplaceConfig(
        marketplace_id=MarketplaceId.AMAZON,
        display_name="Amazon SP-API",
        endpoints={
            Environment.SANDBOX: EndpointSet(
                consent_url="https://sellercentral.amazon.com/apps/authorize/consent",
                token_url="https://api.amazon.com/auth/o2/token",
                api_base="https://sandbox.sellingpartnerapi-na.amazon.com",
            ),
            Environment.PRODUCTION: EndpointSet(
                consent_url="https://sellercentral.amazon.com/apps/authorize/consent",
                token_url="https://api.amazon.com/auth/o2/token",
                api_base="https://sellingpartnerapi-na.amazon.com",
            ),
        },
        required_fields=[
            "seller_id", "client_id", "client_secret",
            "aws_access_key_id", "aws_secret_access_key",
        ],
        token_auth_style="body",
        token_header_name="x-amz-access-token",
        quota_error_codes=["QuotaExceeded"],
        retry=RetryTuning(max_attempts=4, initial_delay=2.0, max_delay=45.0, per_attempt_timeout=15.0),
    ),
    MarketplaceId.ALIEXPRESS_DROPSHIPPING: MarketplaceConfig(
        marketplace_id=MarketplaceId.ALIEXPRESS_DROPSHIPPING,
        display_name="AliExpress Dropshipping",
        endpoints={
            Environment.SANDBOX: EndpointSet(
                consent_url="https://api-sg.aliexpress.com/oauth/authorize",
                token_url="https://api-sg.aliexpress.com/rest/auth/token/create",
                refresh_url="https://api-sg.aliexpress.com/rest/auth/token/refresh",
                api_base="https://api-sg.aliexpress.com/sync",
            ),
            Environment.PRODUCTION: EndpointSet(
                consent_url="https://api-sg.aliexpress.com/oauth/authorize",
                token_url="https://api-sg.aliexpress.com/rest/auth/token/create",
                refresh_url="https://api-sg.aliexpress.com/rest/auth/token/refresh",
                api_base="https://api-sg.aliexpress.com/sync",
            ),
        },
        required_fields=["app_key", "app_secret"],
        token_auth_style="signed",
        quota_error_codes=["ApiCallLimit", "AppCallLimit"],
        retry=RetryTuning(max_attempts=3, initial_delay=1.0, max_delay=30.0, per_attempt_timeout=15.0),
    ),
    MarketplaceId.ALIEXPRESS_AFFILIATE: MarketplaceConfig(
        marketplace_id=MarketplaceId.ALIEXPRESS_AFFILIATE,
        display_name="AliExpress Affiliate",
        endpoints={
            Environment.SANDBOX: EndpointSet(api_base="https://api-sg.aliexpress.com/sync"),
            Environment.PRODUCTION: EndpointSet(api_base="https://api-sg.aliexpress.com/sync"),
        },
        required_fields=["api_key", "api_secret"],
        supports_oauth=False,
        quota_error_codes=["ApiCallLimit", "AppCallLimit"],
        retry=RetryTuning(max_attempts=3, initial_delay=1.0, max_delay=30.0, per_attempt_timeout=15.0),
    ),
}


def get_marketplace_config(marketplace_id: MarketplaceLike) -> MarketplaceConfig:
    """
    Look up static configuration for a marketplace.

    Raises:
        ConfigError: If the marketplace is unknown
    """
    try:
        return MARKETPLACE_CONFIGS[MarketplaceId(marketplace_id)]
    except (KeyError, ValueError):
        raise ConfigError(
            f"Unknown marketplace: {marketplace_id}",
            details={"marketplace_id": str(marketplace_id)},
        ) from None


def get_default_environment() -> Environment:
    """System default environment used when nothing better is known."""
    raw = os.getenv(DEFAULT_ENVIRONMENT_ENV_VAR, Environment.PRODUCTION.value).strip().lower()
    try:
        return Environment(raw)
    except ValueError:
        raise ConfigError(
            f"{DEFAULT_ENVIRONMENT_ENV_VAR} must be 'sandbox' or 'production'",
            details={"value": raw},
        ) from None


def get_state_token_config() -> StateTokenConfig:
    raw = os.getenv(STATE_TTL_ENV_VAR)
    if raw is None or not raw.strip():
        return StateTokenConfig()
    try:
        return StateTokenConfig(ttl_seconds=int(raw))
    except ValueError:
        raise ConfigError(
            f"{STATE_TTL_ENV_VAR} must be a positive integer",
            details={"value": raw},
        ) from None
