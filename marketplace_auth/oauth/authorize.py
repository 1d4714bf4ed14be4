"""
OAuth authorization-code flow: consent URL construction and callback handling.

Flow:
1. build_authorize_url() - requires saved base credentials, embeds a signed state
2. Marketplace redirects back with ?code=...&state=...
3. complete_authorization() - verifies state, exchanges the code, saves tokens

Tokens obtained here always belong to the authorizing user: when the base
credentials came from a shared global entry, the authorized credential is
saved under the user's own scope.
"""

import dataclasses
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional
from urllib.parse import quote, urlencode

from marketplace_auth.config import get_marketplace_config
from marketplace_auth.credentials.vault import CredentialVault
from marketplace_auth.models.credential import Credential
from marketplace_auth.models.enums import (
    CredentialScope,
    Environment,
    EnvironmentLike,
    MarketplaceId,
    MarketplaceLike,
)
from marketplace_auth.oauth.state import OAuthStateSigner
from marketplace_auth.oauth.token_client import OAuthTokenClient
from marketplace_auth.platform.errors import ValidationError
from marketplace_auth.resilience.retry import ResilientInvoker, policy_for_marketplace

logger = logging.getLogger(__name__)


class OAuthAuthorizationService:
    """Starts and completes marketplace OAuth authorizations."""

    def __init__(
        self,
        vault: CredentialVault,
        token_client: OAuthTokenClient,
        state_signer: Optional[OAuthStateSigner] = None,
        invoker: Optional[ResilientInvoker] = None,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._vault = vault
        self._token_client = token_client
        self._state_signer = state_signer or OAuthStateSigner()
        self._invoker = invoker or ResilientInvoker()
        self._clock = clock

    async def _base_credential(
        self,
        user_id: int,
        marketplace: MarketplaceId,
        environment: Optional[Environment],
    ) -> Credential:
        config = get_marketplace_config(marketplace)
        if not config.supports_oauth:
            raise ValidationError(
                f"{config.display_name} does not use OAuth authorization",
                marketplace_id=marketplace.value,
            )

        credential = await self._vault.get(user_id, marketplace, environment)
        if credential is None:
            raise ValidationError(
                f"Save your {config.display_name} application credentials before authorizing",
                marketplace_id=marketplace.value,
            )
        missing = [issue.field for issue in credential.issues if issue.code == "missing_field"]
        if missing:
            raise ValidationError(
                f"{config.display_name} credentials are incomplete: missing {', '.join(missing)}",
                marketplace_id=marketplace.value,
            )
        return credential

    async def build_authorize_url(
        self,
        user_id: int,
        marketplace_id: MarketplaceLike,
        redirect_uri: Optional[str] = None,
        environment: Optional[EnvironmentLike] = None,
    ) -> str:
        """
        Build the marketplace consent URL for a user.

        Args:
            user_id: User starting the authorization
            marketplace_id: Marketplace identifier
            redirect_uri: Callback URL (eBay: RuName); defaults to the saved one
            environment: Preferred environment

        Returns:
            Consent page URL carrying a signed state token

        Raises:
            ValidationError: Base credentials are missing or incomplete
            ConfigError: No usable state signing secret
        """
        config = get_marketplace_config(marketplace_id)
        marketplace = config.marketplace_id
        credential = await self._base_credential(
            user_id, marketplace, Environment(environment) if environment else None
        )
        payload = credential.payload
        redirect = redirect_uri or getattr(payload, "redirect_uri", None)
        if not redirect:
            raise ValidationError(
                f"A redirect URI is required to authorize {config.display_name}",
                marketplace_id=marketplace.value,
            )

        if config.legacy_state_format:
            state = self._state_signer.sign_legacy(user_id, marketplace, redirect, credential.environment)
        else:
            state = self._state_signer.sign(user_id, marketplace)

        params: Dict[str, str]
        if marketplace == MarketplaceId.AMAZON:
            params = {
                "application_id": payload.application_id or payload.client_id,
                "state": state,
                "redirect_uri": redirect,
            }
            if credential.environment == Environment.SANDBOX:
                params["version"] = "beta"
        elif marketplace == MarketplaceId.EBAY:
            params = {
                "client_id": payload.oauth_client_id,
                "redirect_uri": redirect,
                "response_type": "code",
                "scope": " ".join(config.scopes),
                "state": state,
            }
        elif marketplace == MarketplaceId.ALIEXPRESS_DROPSHIPPING:
            params = {
                "response_type": "code",
                "force_auth": "true",
                "client_id": payload.oauth_client_id,
                "redirect_uri": redirect,
                "state": state,
            }
        else:
            params = {
                "response_type": "code",
                "client_id": payload.oauth_client_id,
                "redirect_uri": redirect,
                "state": state,
            }

        consent_url = config.endpoints_for(credential.environment).consent_url
        logger.info(
            "Built authorization URL",
            extra={
                "user_id": user_id,
                "marketplace_id": marketplace.value,
                "environment": credential.environment.value,
                "legacy_state": config.legacy_state_format,
            },
        )
        return f"{consent_url}?{urlencode(params, quote_via=quote)}"

    async def complete_authorization(
        self,
        marketplace_id: MarketplaceLike,
        code: str,
        state: str,
        redirect_uri: Optional[str] = None,
    ) -> Credential:
        """
        Handle the OAuth callback.

        Returns:
            The saved credential carrying the new tokens

        Raises:
            StateVerificationError: State token rejected (reason attached)
            ValidationError: Base credentials missing, or code rejected
            AuthError / NetworkError / RateLimitError: Token endpoint failures
        """
        config = get_marketplace_config(marketplace_id)
        marketplace = config.marketplace_id
        verification = self._state_signer.verify_or_raise(state, marketplace)
        user_id = verification.user_id
        environment = Environment(verification.environment) if verification.environment else None

        credential = await self._base_credential(user_id, marketplace, environment)
        redirect = (
            redirect_uri
            or verification.redirect_uri
            or getattr(credential.payload, "redirect_uri", None)
        )

        grant = await self._invoker.execute_or_raise(
            lambda: self._token_client.exchange_code(credential, code, redirect),
            policy_for_marketplace(marketplace),
            operation_name="token_exchange",
            marketplace_id=marketplace,
        )

        payload = credential.payload
        if marketplace == MarketplaceId.MERCADOLIBRE and grant.seller_user_id:
            payload = dataclasses.replace(payload, seller_user_id=grant.seller_user_id)

        authorized = dataclasses.replace(
            credential,
            payload=payload,
            scope=CredentialScope.USER,
            shared_by_user_id=None,
        )
        now = self._clock()
        authorized = authorized.with_tokens(
            grant.access_token,
            grant.refresh_token,
            grant.access_token_expires_at(now),
            grant.refresh_token_expires_at(now),
        )
        saved = await self._vault.save(
            user_id, marketplace, authorized, credential.environment, scope=CredentialScope.USER,
        )

        logger.info(
            "Authorization completed",
            extra={
                "user_id": user_id,
                "marketplace_id": marketplace.value,
                "environment": saved.environment.value,
                "legacy_state": verification.legacy,
            },
        )
        return saved
