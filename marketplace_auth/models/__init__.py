from .credential import (
    GLOBAL_OWNER_ID,
    Credential,
    CredentialIssue,
    CredentialKey,
    CredentialWarning,
)
from .enums import CredentialScope, Environment, MarketplaceId
from .payloads import (
    AliExpressPayload,
    AmazonPayload,
    ApiKeyPayload,
    CredentialPayload,
    EbayPayload,
    MercadoLibrePayload,
)

__all__ = [
    "GLOBAL_OWNER_ID",
    "Credential",
    "CredentialIssue",
    "CredentialKey",
    "CredentialWarning",
    "CredentialScope",
    "Environment",
    "MarketplaceId",
    "AliExpressPayload",
    "AmazonPayload",
    "ApiKeyPayload",
    "CredentialPayload",
    "EbayPayload",
    "MercadoLibrePayload",
]
