from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Literal, Mapping, Optional, Union

PayloadKind = Literal["ebay", "amazon", "mercadolibre", "aliexpress", "api_key"]


class _PayloadMixin:
    """Shared behaviour of every credential payload variant."""

    kind: str
    # Fields holding secret material; defaults such as region do not count.
    secret_fields: tuple = ()

    def to_storage(self) -> Dict[str, Any]:
        data = asdict(self)  # type: ignore[call-overload]
        data.pop("kind", None)
        return {key: value for key, value in data.items() if value not in (None, "")}

    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in self.secret_fields)

    @property
    def oauth_client_id(self) -> str:
        return ""

    @property
    def oauth_client_secret(self) -> str:
        return ""


@dataclass(frozen=True)
class EbayPayload(_PayloadMixin):
    """Static eBay application keys. The RuName doubles as redirect_uri."""

    app_id: str = ""
    dev_id: str = ""
    cert_id: str = ""
    redirect_uri: Optional[str] = None
    kind: Literal["ebay"] = "ebay"

    secret_fields = ("app_id", "dev_id", "cert_id")

    @property
    def oauth_client_id(self) -> str:
        return self.app_id

    @property
    def oauth_client_secret(self) -> str:
        return self.cert_id


@dataclass(frozen=True)
class AmazonPayload(_PayloadMixin):
    """Login with Amazon client plus the IAM keys used for SigV4."""

    seller_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_session_token: Optional[str] = None
    region: str = "us-east-1"
    amazon_marketplace_id: Optional[str] = None
    # SP-API application id used on the consent page
    application_id: Optional[str] = None
    kind: Literal["amazon"] = "amazon"

    secret_fields = ("client_id", "client_secret", "aws_access_key_id", "aws_secret_access_key")

    @property
    def oauth_client_id(self) -> str:
        return self.client_id

    @property
    def oauth_client_secret(self) -> str:
        return self.client_secret


@dataclass(frozen=True)
class MercadoLibrePayload(_PayloadMixin):
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: Optional[str] = None
    site_id: str = "MLM"
    seller_user_id: Optional[str] = None
    kind: Literal["mercadolibre"] = "mercadolibre"

    secret_fields = ("client_id", "client_secret")

    @property
    def oauth_client_id(self) -> str:
        return self.client_id

    @property
    def oauth_client_secret(self) -> str:
        return self.client_secret


@dataclass(frozen=True)
class AliExpressPayload(_PayloadMixin):
    """Open platform application key pair (dropshipping OAuth app)."""

    app_key: str = ""
    app_secret: str = ""
    redirect_uri: Optional[str] = None
    tracking_id: Optional[str] = None
    kind: Literal["aliexpress"] = "aliexpress"

    secret_fields = ("app_key", "app_secret")

    @property
    def oauth_client_id(self) -> str:
        return self.app_key

    @property
    def oauth_client_secret(self) -> str:
        return self.app_secret


@dataclass(frozen=True)
class ApiKeyPayload(_PayloadMixin):
    """Long-lived key/secret pair without an OAuth flow."""

    api_key: str = ""
    api_secret: str = ""
    tracking_id: Optional[str] = None
    kind: Literal["api_key"] = "api_key"

    secret_fields = ("api_key", "api_secret")


CredentialPayload = Union[
    EbayPayload,
    AmazonPayload,
    MercadoLibrePayload,
    AliExpressPayload,
    ApiKeyPayload,
]

PAYLOAD_TYPES: Dict[str, type] = {
    "ebay": EbayPayload,
    "amazon": AmazonPayload,
    "mercadolibre": MercadoLibrePayload,
    "aliexpress": AliExpressPayload,
    "api_key": ApiKeyPayload,
}


def payload_from_storage(kind: str, data: Mapping[str, Any]) -> CredentialPayload:
    """Rebuild a payload from its stored form, ignoring unknown keys."""
    try:
        payload_type = PAYLOAD_TYPES[kind]
    except KeyError:
        raise ValueError(f"Unknown credential payload kind: {kind}") from None
    known = {f.name for f in fields(payload_type) if f.name != "kind"}
    return payload_type(**{key: value for key, value in data.items() if key in known})


def payload_to_storage(payload: CredentialPayload) -> Dict[str, Any]:
    return {"kind": payload.kind, "fields": payload.to_storage()}
