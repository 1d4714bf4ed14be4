from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from .enums import CredentialScope, Environment, MarketplaceId
from .payloads import CredentialPayload

# Owner id under which global (shared) credentials are filed.
GLOBAL_OWNER_ID = 0


@dataclass(frozen=True)
class CredentialKey:
    """Persistence key: (user_id, marketplace_id, environment, scope)."""

    user_id: int
    marketplace_id: MarketplaceId
    environment: Environment
    scope: CredentialScope

    @classmethod
    def for_scope(
        cls,
        user_id: int,
        marketplace_id: MarketplaceId,
        environment: Environment,
        scope: CredentialScope,
    ) -> "CredentialKey":
        owner = GLOBAL_OWNER_ID if scope == CredentialScope.GLOBAL else user_id
        return cls(
            user_id=owner,
            marketplace_id=MarketplaceId(marketplace_id),
            environment=Environment(environment),
            scope=CredentialScope(scope),
        )


@dataclass(frozen=True)
class CredentialIssue:
    """Blocking problem: the credential cannot be used as-is."""

    code: str
    message: str
    field: Optional[str] = None


@dataclass(frozen=True)
class CredentialWarning:
    """Non-blocking problem: the credential is usable but degraded."""

    code: str
    message: str


@dataclass(frozen=True)
class Credential:
    """
    Decrypted credential for one user, marketplace and environment.

    SECURITY: repr never includes secret material or tokens.
    """

    user_id: int
    marketplace_id: MarketplaceId
    environment: Environment
    payload: CredentialPayload = field(repr=False)
    scope: CredentialScope = CredentialScope.USER
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    is_active: bool = True
    shared_by_user_id: Optional[int] = None
    updated_at: Optional[datetime] = None
    issues: Tuple[CredentialIssue, ...] = ()
    warnings: Tuple[CredentialWarning, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "marketplace_id", MarketplaceId(self.marketplace_id))
        object.__setattr__(self, "environment", Environment(self.environment))
        object.__setattr__(self, "scope", CredentialScope(self.scope))
        for name in ("access_token_expires_at", "refresh_token_expires_at", "updated_at"):
            value = getattr(self, name)
            if value is not None and value.tzinfo is None:
                raise ValueError(f"{name} must be timezone-aware")
        object.__setattr__(self, "issues", tuple(self.issues))
        object.__setattr__(self, "warnings", tuple(self.warnings))

    @property
    def key(self) -> CredentialKey:
        return CredentialKey.for_scope(
            self.user_id, self.marketplace_id, self.environment, self.scope
        )

    @property
    def is_usable(self) -> bool:
        return self.is_active and not self.issues and not self.payload.is_empty()

    def has_fresh_access_token(
        self,
        now: Optional[datetime] = None,
        safety_margin: timedelta = timedelta(seconds=60),
    ) -> bool:
        """True when an access token exists and will not expire within the margin."""
        if not self.access_token:
            return False
        if self.access_token_expires_at is None:
            # No expiry reported by the marketplace; treat as long-lived.
            return True
        compare_at = now or datetime.now(timezone.utc)
        return compare_at < self.access_token_expires_at - safety_margin

    def refresh_token_expired(self, now: Optional[datetime] = None) -> bool:
        if self.refresh_token_expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.refresh_token_expires_at

    def with_tokens(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        access_token_expires_at: Optional[datetime] = None,
        refresh_token_expires_at: Optional[datetime] = None,
    ) -> "Credential":
        """Return a copy carrying new tokens; the refresh token is kept if not rotated."""
        return dataclasses.replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            access_token_expires_at=access_token_expires_at,
            refresh_token_expires_at=(
                refresh_token_expires_at
                if refresh_token_expires_at is not None
                else self.refresh_token_expires_at
            ),
            issues=(),
            warnings=(),
        )
