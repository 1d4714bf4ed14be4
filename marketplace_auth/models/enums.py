"""Enumerations shared by credential models, configuration and signers."""

import enum
from typing import Union


class MarketplaceId(str, enum.Enum):
    """Supported marketplaces."""
    EBAY = "ebay"
    AMAZON = "amazon"
    MERCADOLIBRE = "mercadolibre"
    ALIEXPRESS_DROPSHIPPING = "aliexpress_dropshipping"
    ALIEXPRESS_AFFILIATE = "aliexpress_affiliate"


class Environment(str, enum.Enum):
    """Marketplace API surface a credential is valid for."""
    SANDBOX = "sandbox"
    PRODUCTION = "production"

    def other(self) -> "Environment":
        return Environment.SANDBOX if self is Environment.PRODUCTION else Environment.PRODUCTION


class CredentialScope(str, enum.Enum):
    """Who a credential belongs to."""
    USER = "user"
    GLOBAL = "global"  # Shared fallback set by an administrator


MarketplaceLike = Union[MarketplaceId, str]
EnvironmentLike = Union[Environment, str]


def marketplace_value(marketplace_id: MarketplaceLike) -> str:
    """Return the plain string id for a marketplace enum or string."""
    if isinstance(marketplace_id, MarketplaceId):
        return marketplace_id.value
    return str(marketplace_id).strip().lower()
