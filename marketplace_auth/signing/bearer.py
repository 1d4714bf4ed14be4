"""Bearer-token header attachment for OAuth marketplaces."""

from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from marketplace_auth.config import get_marketplace_config
from marketplace_auth.models.credential import Credential
from marketplace_auth.platform.errors import SigningError
from marketplace_auth.signing.aws_sigv4 import HttpRequest


@dataclass(frozen=True)
class BearerCredentials:
    access_token: str = field(repr=False)
    # Marketplace-specific header that repeats the token (e.g. x-amz-access-token)
    token_header_name: Optional[str] = None

    @classmethod
    def from_credential(cls, credential: Credential) -> "BearerCredentials":
        config = get_marketplace_config(credential.marketplace_id)
        return cls(
            access_token=credential.access_token or "",
            token_header_name=config.token_header_name,
        )


def sign_bearer(
    request: HttpRequest,
    credentials: Union[BearerCredentials, Credential],
) -> Dict[str, str]:
    """
    Return the request headers plus Authorization: Bearer <token>.

    Raises:
        SigningError: If there is no access token
    """
    if isinstance(credentials, Credential):
        credentials = BearerCredentials.from_credential(credentials)

    token = (credentials.access_token or "").strip()
    if not token:
        raise SigningError("Access token is required for bearer signing")

    headers = {
        name: value for name, value in request.headers.items()
        if name.lower() != "authorization"
    }
    headers["Authorization"] = f"Bearer {token}"
    if credentials.token_header_name:
        headers[credentials.token_header_name] = token
    return headers
