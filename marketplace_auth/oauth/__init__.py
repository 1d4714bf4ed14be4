"""OAuth state tokens, token endpoint client and the authorization-code flow."""

from marketplace_auth.oauth.state import (
    OAuthStateSigner,
    StateFailureReason,
    StateVerification,
)
from marketplace_auth.oauth.token_client import OAuthTokenClient, TokenGrant
from marketplace_auth.oauth.authorize import OAuthAuthorizationService

__all__ = [
    "OAuthStateSigner",
    "StateFailureReason",
    "StateVerification",
    "OAuthTokenClient",
    "TokenGrant",
    "OAuthAuthorizationService",
]
