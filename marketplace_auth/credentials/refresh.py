"""
Token refresh coordination for OAuth credentials.

On-demand refresh with a single-flight guard: however many tasks ask for a
fresh token for the same credential at once, one refresh grant reaches the
marketplace and every caller receives its result.

SECURITY REQUIREMENTS:
- Tokens are written back only through CredentialVault (encrypted at rest)
- No plaintext tokens in logs
- Audit events for all refresh operations

Usage:
    coordinator = TokenRefreshCoordinator(vault, token_client)
    credential = await coordinator.ensure_fresh_token(user_id, "ebay", "production")

    # Run a call and recover once from a rejected token
    orders = await coordinator.call_with_fresh_token(
        user_id, "ebay", "production", lambda cred: api.list_orders(cred),
    )
"""

import asyncio
import dataclasses
import functools
import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from marketplace_auth.config import get_marketplace_config
from marketplace_auth.credentials.redaction import AuditEventType, CredentialAuditLogger
from marketplace_auth.credentials.vault import CredentialVault
from marketplace_auth.models.credential import Credential, CredentialKey
from marketplace_auth.models.enums import (
    CredentialScope,
    Environment,
    EnvironmentLike,
    MarketplaceId,
    MarketplaceLike,
)
from marketplace_auth.oauth.token_client import OAuthTokenClient
from marketplace_auth.platform.errors import AuthError, RefreshFailure
from marketplace_auth.resilience.retry import (
    ResilientInvoker,
    RetryPolicy,
    policy_for_marketplace,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SAFETY_MARGIN = timedelta(seconds=60)

# Called with the refreshed credential; may be sync or async
UpdateObserver = Callable[[Credential], Any]


class TokenRefreshCoordinator:
    """
    Keeps access tokens fresh.

    The in-flight map is keyed by the credential's persistence key, so users
    sharing a global credential also share its refresh.
    """

    def __init__(
        self,
        vault: CredentialVault,
        token_client: OAuthTokenClient,
        invoker: Optional[ResilientInvoker] = None,
        *,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        audit: Optional[CredentialAuditLogger] = None,
    ):
        self._vault = vault
        self._token_client = token_client
        self._invoker = invoker or ResilientInvoker()
        self._safety_margin = safety_margin
        self._clock = clock
        self._audit = audit or CredentialAuditLogger()
        self._inflight: Dict[CredentialKey, "asyncio.Task[Credential]"] = {}
        self._observers: List[UpdateObserver] = []

    def register_on_update(self, observer: UpdateObserver) -> Callable[[], None]:
        """
        Register an observer for refreshed credentials.

        Observers receive the credential as stored, so a refreshed global
        credential arrives with user_id set to its owner key rather than to
        the user whose call triggered the refresh.

        Returns:
            A function that unregisters the observer
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def ensure_fresh_token(
        self,
        user_id: int,
        marketplace_id: MarketplaceLike,
        environment: Optional[EnvironmentLike] = None,
        force: bool = False,
        rejected_token: Optional[str] = None,
    ) -> Credential:
        """
        Return a credential whose access token outlives the safety margin.

        Args:
            user_id: User the credential is resolved for
            marketplace_id: Marketplace identifier
            environment: Preferred environment (resolved by the vault if None)
            force: Refresh even if the current token looks fresh
            rejected_token: Access token the marketplace just rejected; if the
                stored token has already moved on, it is returned as is

        Raises:
            RefreshFailure: No credential, no usable refresh token, or the
                refresh grant failed
        """
        marketplace = get_marketplace_config(marketplace_id).marketplace_id
        requested = Environment(environment) if environment else None

        credential = await self._vault.get(user_id, marketplace, requested)
        if credential is None:
            raise RefreshFailure(
                f"No {marketplace.value} credential configured",
                marketplace_id=marketplace.value,
                user_id=user_id,
            )
        if _replaced(credential, rejected_token):
            return credential
        if not force and credential.has_fresh_access_token(self._clock(), self._safety_margin):
            return credential

        key = credential.key
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._refresh(user_id, marketplace, credential.environment, force, rejected_token)
            )
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._on_refresh_done, key))
        else:
            logger.debug(
                "Joining in-flight token refresh",
                extra={"user_id": user_id, "marketplace_id": marketplace.value},
            )

        # A cancelled caller must not cancel the refresh other callers wait on
        refreshed = await asyncio.shield(task)
        if refreshed.scope != CredentialScope.GLOBAL:
            return refreshed

        # Each caller of a shared refresh gets the credential resolved for itself
        resolved = await self._vault.get(user_id, marketplace, requested)
        return resolved or dataclasses.replace(refreshed, user_id=user_id)

    def _on_refresh_done(self, key: CredentialKey, task: "asyncio.Task[Credential]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark retrieved even when every waiter was cancelled
            task.exception()

    async def _refresh(
        self,
        user_id: int,
        marketplace: MarketplaceId,
        environment: Environment,
        force: bool,
        rejected_token: Optional[str] = None,
    ) -> Credential:
        config = get_marketplace_config(marketplace)

        # Re-read: a refresh that finished just before this one started wins
        credential = await self._vault.get(user_id, marketplace, environment)
        now = self._clock()
        if credential is None:
            raise RefreshFailure(
                f"No {config.display_name} credential configured",
                marketplace_id=marketplace.value,
                user_id=user_id,
            )
        if _replaced(credential, rejected_token):
            logger.info(
                "Rejected token already replaced; skipping refresh",
                extra={"user_id": user_id, "marketplace_id": marketplace.value},
            )
            return credential
        if not force and credential.has_fresh_access_token(now, self._safety_margin):
            return credential

        if not credential.refresh_token:
            self._log_not_possible(credential, "no_refresh_token")
            raise RefreshFailure(
                f"{config.display_name} credential has no refresh token; authorization is required",
                marketplace_id=marketplace.value,
                user_id=user_id,
            )
        if credential.refresh_token_expired(now):
            self._log_not_possible(credential, "refresh_token_expired")
            raise RefreshFailure(
                f"{config.display_name} refresh token has expired; authorization is required",
                marketplace_id=marketplace.value,
                user_id=user_id,
            )

        outcome = await self._invoker.execute(
            lambda: self._token_client.refresh(credential),
            policy_for_marketplace(marketplace),
            operation_name="token_refresh",
            marketplace_id=marketplace,
        )
        if not outcome.success:
            error = outcome.error
            logger.error(
                "Token refresh failed",
                extra={
                    "user_id": user_id,
                    "marketplace_id": marketplace.value,
                    "environment": environment.value,
                    "attempts": outcome.attempts,
                    "error_type": type(error).__name__,
                },
            )
            self._audit.log_error(
                user_id=user_id,
                marketplace_id=marketplace.value,
                error=f"Token refresh failed: {type(error).__name__}",
                environment=environment.value,
            )
            if isinstance(error, RefreshFailure):
                raise error
            raise RefreshFailure(
                f"{config.display_name} token refresh failed",
                marketplace_id=marketplace.value,
                user_id=user_id,
                cause=error,
            ) from error

        grant = outcome.value
        issued_at = self._clock()
        refreshed = credential.with_tokens(
            grant.access_token,
            grant.refresh_token,
            grant.access_token_expires_at(issued_at),
            grant.refresh_token_expires_at(issued_at),
        )
        saved = await self._vault.save(
            user_id,
            marketplace,
            refreshed,
            credential.environment,
            scope=credential.scope,
            shared_by_user_id=credential.shared_by_user_id,
        )

        new_expires_at = saved.access_token_expires_at
        self._audit.log(
            event_type=AuditEventType.CREDENTIAL_REFRESHED,
            user_id=user_id,
            marketplace_id=marketplace.value,
            environment=saved.environment.value,
            scope=saved.scope.value,
            metadata={
                "new_expires_at": new_expires_at.isoformat() if new_expires_at else None,
                "attempts": outcome.attempts,
            },
        )
        logger.info(
            "Credential refreshed successfully",
            extra={
                "user_id": user_id,
                "marketplace_id": marketplace.value,
                "environment": saved.environment.value,
                "new_expires_at": new_expires_at.isoformat() if new_expires_at else None,
            },
        )

        await self._notify(dataclasses.replace(saved, user_id=saved.key.user_id))
        return saved

    async def _notify(self, credential: Credential) -> None:
        for observer in list(self._observers):
            try:
                result = observer(credential)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Credential update observer failed",
                    extra={
                        "user_id": credential.user_id,
                        "marketplace_id": credential.marketplace_id.value,
                    },
                )

    @staticmethod
    def _log_not_possible(credential: Credential, reason: str) -> None:
        logger.warning(
            "Cannot refresh credential",
            extra={
                "user_id": credential.user_id,
                "marketplace_id": credential.marketplace_id.value,
                "environment": credential.environment.value,
                "reason": reason,
            },
        )

    async def call_with_fresh_token(
        self,
        user_id: int,
        marketplace_id: MarketplaceLike,
        environment: Optional[EnvironmentLike],
        operation: Callable[[Credential], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
    ) -> T:
        """
        Run `operation(credential)` with a fresh token under the retry policy.

        If the marketplace rejects the token (AuthError), one forced refresh
        is made and the whole operation is retried once.

        Raises:
            RefreshFailure: If no fresh token can be obtained
            MarketplaceCallError: The operation's final error
        """
        marketplace = get_marketplace_config(marketplace_id).marketplace_id
        policy = policy or policy_for_marketplace(marketplace)

        credential = await self.ensure_fresh_token(user_id, marketplace, environment)
        outcome = await self._invoker.execute(
            functools.partial(operation, credential),
            policy,
            operation_name="marketplace_call",
            marketplace_id=marketplace,
        )
        if outcome.success:
            return outcome.value
        if not isinstance(outcome.error, AuthError):
            raise outcome.error

        logger.info(
            "Marketplace rejected access token; forcing refresh",
            extra={"user_id": user_id, "marketplace_id": marketplace.value},
        )
        credential = await self.ensure_fresh_token(
            user_id,
            marketplace,
            credential.environment,
            force=True,
            rejected_token=credential.access_token,
        )
        return await self._invoker.execute_or_raise(
            functools.partial(operation, credential),
            policy,
            operation_name="marketplace_call",
            marketplace_id=marketplace,
        )


def _replaced(credential: Credential, rejected_token: Optional[str]) -> bool:
    return (
        rejected_token is not None
        and bool(credential.access_token)
        and credential.access_token != rejected_token
    )
