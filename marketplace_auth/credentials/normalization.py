"""
Per-marketplace normalization of raw credential field maps.

Raw maps arrive in many shapes (camelCase from the UI, snake_case from the
API, env-style names from imports). Each marketplace has exactly one
normalizer that maps its aliases onto its payload variant; assess_credential
then reports blocking issues and non-blocking warnings.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from marketplace_auth.config import get_marketplace_config
from marketplace_auth.models.credential import CredentialIssue, CredentialWarning
from marketplace_auth.models.enums import MarketplaceId, MarketplaceLike
from marketplace_auth.models.payloads import (
    AliExpressPayload,
    AmazonPayload,
    ApiKeyPayload,
    CredentialPayload,
    EbayPayload,
    MercadoLibrePayload,
)

ACCESS_TOKEN_ALIASES = ("accessToken", "access_token", "token", "authToken", "auth_token")
REFRESH_TOKEN_ALIASES = ("refreshToken", "refresh_token")
ACCESS_EXPIRY_ALIASES = ("accessTokenExpiresAt", "access_token_expires_at", "expiresAt", "expires_at")
REFRESH_EXPIRY_ALIASES = ("refreshTokenExpiresAt", "refresh_token_expires_at")


@dataclass(frozen=True)
class NormalizedCredential:
    """Canonical shape of a raw field map, before persistence."""

    payload: CredentialPayload
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    issues: Tuple[CredentialIssue, ...] = ()
    warnings: Tuple[CredentialWarning, ...] = ()


def _pick(raw: Mapping[str, Any], *names: str) -> Optional[str]:
    """First non-empty string value among `names`."""
    for name in names:
        value = raw.get(name)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch milliseconds or seconds
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return _to_datetime(int(text))
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported timestamp value: {type(value).__name__}")


def _pick_datetime(
    raw: Mapping[str, Any],
    names: Tuple[str, ...],
    relative_names: Tuple[str, ...],
    now: datetime,
) -> Optional[datetime]:
    for name in names:
        if raw.get(name) not in (None, ""):
            return _to_datetime(raw[name])
    for name in relative_names:
        value = raw.get(name)
        if value not in (None, ""):
            return now + timedelta(seconds=int(value))
    return None


def _extract_tokens(raw: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
    return {
        "access_token": _pick(raw, *ACCESS_TOKEN_ALIASES),
        "refresh_token": _pick(raw, *REFRESH_TOKEN_ALIASES),
        "access_token_expires_at": _pick_datetime(
            raw, ACCESS_EXPIRY_ALIASES, ("expiresIn", "expires_in"), now
        ),
        "refresh_token_expires_at": _pick_datetime(
            raw, REFRESH_EXPIRY_ALIASES, ("refreshTokenExpiresIn", "refresh_token_expires_in"), now
        ),
    }


# ============================================================================
# One normalizer per payload variant
# ============================================================================

def _normalize_ebay(raw: Mapping[str, Any]) -> EbayPayload:
    return EbayPayload(
        app_id=_pick(raw, "appId", "app_id", "clientId", "client_id", "EBAY_APP_ID") or "",
        dev_id=_pick(raw, "devId", "dev_id", "EBAY_DEV_ID") or "",
        cert_id=_pick(raw, "certId", "cert_id", "clientSecret", "client_secret", "EBAY_CERT_ID") or "",
        redirect_uri=_pick(raw, "redirectUri", "redirect_uri", "ruName", "RuName", "runame", "EBAY_RUNAME"),
    )


def _normalize_amazon(raw: Mapping[str, Any]) -> AmazonPayload:
    return AmazonPayload(
        seller_id=_pick(raw, "sellerId", "seller_id", "merchantId") or "",
        client_id=_pick(raw, "clientId", "client_id", "lwaClientId") or "",
        client_secret=_pick(raw, "clientSecret", "client_secret", "lwaClientSecret") or "",
        aws_access_key_id=_pick(raw, "awsAccessKeyId", "aws_access_key_id", "accessKeyId", "AWS_ACCESS_KEY_ID") or "",
        aws_secret_access_key=_pick(
            raw, "awsSecretAccessKey", "aws_secret_access_key", "secretAccessKey", "AWS_SECRET_ACCESS_KEY"
        ) or "",
        aws_session_token=_pick(raw, "awsSessionToken", "aws_session_token", "sessionToken"),
        region=_pick(raw, "region", "awsRegion", "aws_region") or "us-east-1",
        amazon_marketplace_id=_pick(raw, "amazonMarketplaceId", "amazon_marketplace_id", "marketplaceId"),
        application_id=_pick(raw, "applicationId", "application_id", "solutionId"),
    )


def _normalize_mercadolibre(raw: Mapping[str, Any]) -> MercadoLibrePayload:
    return MercadoLibrePayload(
        client_id=_pick(raw, "clientId", "client_id", "appId", "app_id") or "",
        client_secret=_pick(raw, "clientSecret", "client_secret", "secretKey") or "",
        redirect_uri=_pick(raw, "redirectUri", "redirect_uri"),
        site_id=_pick(raw, "siteId", "site_id") or "MLM",
        seller_user_id=_pick(raw, "userId", "user_id", "sellerUserId", "seller_user_id"),
    )


def _normalize_aliexpress(raw: Mapping[str, Any]) -> AliExpressPayload:
    return AliExpressPayload(
        app_key=_pick(raw, "appKey", "app_key", "clientId", "client_id") or "",
        app_secret=_pick(raw, "appSecret", "app_secret", "clientSecret", "client_secret") or "",
        redirect_uri=_pick(raw, "redirectUri", "redirect_uri"),
        tracking_id=_pick(raw, "trackingId", "tracking_id"),
    )


def _normalize_api_key(raw: Mapping[str, Any]) -> ApiKeyPayload:
    return ApiKeyPayload(
        api_key=_pick(raw, "apiKey", "api_key", "appKey", "app_key") or "",
        api_secret=_pick(raw, "apiSecret", "api_secret", "appSecret", "app_secret") or "",
        tracking_id=_pick(raw, "trackingId", "tracking_id"),
    )


_NORMALIZERS: Dict[MarketplaceId, Callable[[Mapping[str, Any]], CredentialPayload]] = {
    MarketplaceId.EBAY: _normalize_ebay,
    MarketplaceId.AMAZON: _normalize_amazon,
    MarketplaceId.MERCADOLIBRE: _normalize_mercadolibre,
    MarketplaceId.ALIEXPRESS_DROPSHIPPING: _normalize_aliexpress,
    MarketplaceId.ALIEXPRESS_AFFILIATE: _normalize_api_key,
}


def assess_credential(
    marketplace_id: MarketplaceLike,
    payload: CredentialPayload,
    access_token: Optional[str],
    refresh_token: Optional[str],
    access_token_expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Tuple[Tuple[CredentialIssue, ...], Tuple[CredentialWarning, ...]]:
    """Report blocking issues and non-blocking warnings for a credential."""
    config = get_marketplace_config(marketplace_id)
    now = now or datetime.now(timezone.utc)
    issues = []
    warnings = []

    for field_name in config.required_fields:
        if not getattr(payload, field_name, None):
            issues.append(CredentialIssue(
                code="missing_field",
                message=f"{config.display_name} credentials require '{field_name}'",
                field=field_name,
            ))

    if (
        config.marketplace_id == MarketplaceId.ALIEXPRESS_DROPSHIPPING
        and access_token and refresh_token and access_token == refresh_token
    ):
        issues.append(CredentialIssue(
            code="token_mismatch",
            message="Access token and refresh token must differ; re-run the authorization flow",
            field="refresh_token",
        ))

    if config.supports_oauth and not issues:
        # Amazon access tokens are minted from the LWA refresh token on demand
        needs_refresh_token = config.marketplace_id == MarketplaceId.AMAZON
        missing = not refresh_token if needs_refresh_token else not (access_token or refresh_token)
        if missing:
            warnings.append(CredentialWarning(
                code="missing_authorization",
                message=(
                    f"{config.display_name} base credentials are present but OAuth "
                    "authorization is missing; complete the authorization flow"
                ),
            ))
        elif (
            access_token and not refresh_token
            and access_token_expires_at is not None and access_token_expires_at <= now
        ):
            warnings.append(CredentialWarning(
                code="access_token_expired",
                message=f"{config.display_name} access token has expired and cannot be refreshed",
            ))

    return tuple(issues), tuple(warnings)


def normalize_credential(
    marketplace_id: MarketplaceLike,
    raw: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> NormalizedCredential:
    """
    Map a raw field map onto the marketplace's payload variant.

    Raises:
        ConfigError: If the marketplace is unknown
        ValueError: If a timestamp field cannot be parsed
    """
    config = get_marketplace_config(marketplace_id)
    now = now or datetime.now(timezone.utc)
    payload = _NORMALIZERS[config.marketplace_id](raw)
    tokens = _extract_tokens(raw, now)
    issues, warnings = assess_credential(
        config.marketplace_id,
        payload,
        tokens["access_token"],
        tokens["refresh_token"],
        tokens["access_token_expires_at"],
        now,
    )
    return NormalizedCredential(payload=payload, issues=issues, warnings=warnings, **tokens)
