"""
CredentialVault - resolves, normalizes, validates and persists marketplace
credentials.

Resolution order for get(user_id, marketplace_id, environment=None):

    preferred environment = explicit argument
                          | environment of the user's most recent credential
                          | MARKETPLACE_DEFAULT_ENVIRONMENT
    for environment in (preferred, other):
        for scope in (user, global):
            first active entry with non-empty secret material wins

Fallbacks are reported as warnings, missing mandatory fields as issues;
neither is raised.

SECURITY:
- Secret material and tokens are encrypted before they reach the repository
- Decrypted values live only in process memory (and the in-process cache)
- Audit events are logged for every write

Usage:
    vault = CredentialVault(repository, CredentialCipher.from_env())
    await vault.save(1, "ebay", {"appId": "...", "devId": "...", "certId": "..."}, "production")
    credential = await vault.get(1, "ebay")
    for warning in credential.warnings:
        ...
"""

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from marketplace_auth.config import get_default_environment, get_marketplace_config
from marketplace_auth.credentials.cache import CredentialCache
from marketplace_auth.credentials.encryption import CredentialCipher, CredentialEncryptionError
from marketplace_auth.credentials.normalization import assess_credential, normalize_credential
from marketplace_auth.credentials.redaction import AuditEventType, CredentialAuditLogger
from marketplace_auth.credentials.repository import (
    CredentialFilter,
    CredentialRepository,
    StoredCredential,
)
from marketplace_auth.models.credential import (
    GLOBAL_OWNER_ID,
    Credential,
    CredentialKey,
    CredentialWarning,
)
from marketplace_auth.models.enums import (
    CredentialScope,
    Environment,
    EnvironmentLike,
    MarketplaceId,
    MarketplaceLike,
)
from marketplace_auth.models.payloads import payload_from_storage, payload_to_storage
from marketplace_auth.platform.errors import ValidationError

logger = logging.getLogger(__name__)

RawCredential = Mapping[str, Any]


@dataclass(frozen=True)
class CredentialSummary:
    """
    Credential metadata for listings.

    SECURITY: Does NOT include secret material or tokens.
    """
    marketplace_id: MarketplaceId
    environment: Environment
    scope: CredentialScope
    is_active: bool
    has_access_token: bool
    has_refresh_token: bool
    access_token_expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    shared_by_user_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "marketplace_id": self.marketplace_id.value,
            "environment": self.environment.value,
            "scope": self.scope.value,
            "is_active": self.is_active,
            "has_access_token": self.has_access_token,
            "has_refresh_token": self.has_refresh_token,
            "access_token_expires_at": (
                self.access_token_expires_at.isoformat() if self.access_token_expires_at else None
            ),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def _associated_data(key: CredentialKey) -> bytes:
    """Binds ciphertext to its row so blobs cannot be swapped between keys."""
    return (
        f"{key.user_id}:{key.marketplace_id.value}:{key.environment.value}:{key.scope.value}"
    ).encode("utf-8")


class CredentialVault:
    """Per-user, per-environment, per-scope credential store with fallback resolution."""

    def __init__(
        self,
        repository: CredentialRepository,
        cipher: CredentialCipher,
        *,
        cache: Optional[CredentialCache] = None,
        default_environment: Optional[EnvironmentLike] = None,
        audit: Optional[CredentialAuditLogger] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._repository = repository
        self._cipher = cipher
        self._cache = cache or CredentialCache()
        self._default_environment = Environment(default_environment) if default_environment else None
        self._audit = audit or CredentialAuditLogger()
        self._clock = clock

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(
        self,
        user_id: int,
        marketplace_id: MarketplaceLike,
        environment: Optional[EnvironmentLike] = None,
    ) -> Optional[Credential]:
        """
        Resolve the credential a user should use for a marketplace.

        Returns:
            Credential with issues/warnings attached, or None if nothing usable exists
        """
        marketplace = get_marketplace_config(marketplace_id).marketplace_id
        requested = Environment(environment) if environment else None

        cached = self._cache.get(user_id, marketplace, requested)
        if cached is not None:
            return cached

        generation = self._cache.generation
        credential = self._resolve(user_id, marketplace, requested)
        if credential is not None:
            self._cache.set(user_id, marketplace, requested, credential, generation=generation)
        return credential

    def _preferred_environment(self, user_id: int, marketplace: MarketplaceId) -> Environment:
        existing = self._repository.list_credentials(CredentialFilter(
            user_id=user_id,
            marketplace_id=marketplace,
            scope=CredentialScope.USER,
            active_only=True,
        ))
        if existing:
            return existing[0].key.environment
        return self._default_environment or get_default_environment()

    def _resolve(
        self,
        user_id: int,
        marketplace: MarketplaceId,
        requested: Optional[Environment],
    ) -> Optional[Credential]:
        preferred = requested or self._preferred_environment(user_id, marketplace)
        display_name = get_marketplace_config(marketplace).display_name

        for environment in (preferred, preferred.other()):
            for scope in (CredentialScope.USER, CredentialScope.GLOBAL):
                key = CredentialKey.for_scope(user_id, marketplace, environment, scope)
                stored = self._repository.load_credential(key)
                if stored is None or not stored.is_active:
                    continue

                credential = self._decrypt(stored, user_id)
                if credential is None or credential.payload.is_empty():
                    continue

                warnings = list(credential.warnings)
                if environment != preferred:
                    warnings.append(CredentialWarning(
                        code="environment_fallback",
                        message=(
                            f"No usable {preferred.value} credentials for {display_name}; "
                            f"using {environment.value} credentials instead"
                        ),
                    ))
                if scope == CredentialScope.GLOBAL:
                    warnings.append(CredentialWarning(
                        code="global_credential",
                        message=(
                            f"Using shared global {display_name} credentials; "
                            "configure your own for full control"
                        ),
                    ))

                logger.debug(
                    "Resolved credential",
                    extra={
                        "user_id": user_id,
                        "marketplace_id": marketplace.value,
                        "environment": environment.value,
                        "scope": scope.value,
                        "preferred_environment": preferred.value,
                    },
                )
                return dataclasses.replace(credential, warnings=tuple(warnings))

        return None

    def _decrypt(self, stored: StoredCredential, user_id: int) -> Optional[Credential]:
        """Decrypt a stored row; undecryptable rows are skipped, not fatal."""
        key = stored.key
        aad = _associated_data(key)
        try:
            material = self._cipher.decrypt_json(stored.secret_material_encrypted, aad)
            payload = payload_from_storage(material["kind"], material.get("fields", {}))
            access_token = (
                self._cipher.decrypt_text(stored.access_token_encrypted, aad)
                if stored.access_token_encrypted else None
            )
            refresh_token = (
                self._cipher.decrypt_text(stored.refresh_token_encrypted, aad)
                if stored.refresh_token_encrypted else None
            )
        except (CredentialEncryptionError, KeyError, ValueError, TypeError) as e:
            logger.warning(
                "Skipping credential that could not be decrypted",
                extra={
                    "user_id": key.user_id,
                    "marketplace_id": key.marketplace_id.value,
                    "environment": key.environment.value,
                    "scope": key.scope.value,
                    "error_type": type(e).__name__,
                },
            )
            return None

        issues, warnings = assess_credential(
            key.marketplace_id,
            payload,
            access_token,
            refresh_token,
            stored.access_token_expires_at,
            self._clock(),
        )
        return Credential(
            user_id=user_id,
            marketplace_id=key.marketplace_id,
            environment=key.environment,
            scope=key.scope,
            payload=payload,
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=stored.access_token_expires_at,
            refresh_token_expires_at=stored.refresh_token_expires_at,
            is_active=stored.is_active,
            shared_by_user_id=stored.shared_by_user_id,
            updated_at=stored.updated_at,
            issues=issues,
            warnings=warnings,
        )

    async def list_configured(self, user_id: int) -> List[CredentialSummary]:
        """
        Active credentials visible to a user; own entries shadow global ones.

        SECURITY: summaries carry no secret material.
        """
        own = self._repository.list_credentials(CredentialFilter(
            user_id=user_id, scope=CredentialScope.USER, active_only=True,
        ))
        shared = self._repository.list_credentials(CredentialFilter(
            user_id=GLOBAL_OWNER_ID, scope=CredentialScope.GLOBAL, active_only=True,
        ))

        seen: Dict[Tuple[MarketplaceId, Environment], CredentialSummary] = {}
        for stored in own + shared:
            slot = (stored.key.marketplace_id, stored.key.environment)
            if slot in seen:
                continue
            seen[slot] = CredentialSummary(
                marketplace_id=stored.key.marketplace_id,
                environment=stored.key.environment,
                scope=stored.key.scope,
                is_active=stored.is_active,
                has_access_token=bool(stored.access_token_encrypted),
                has_refresh_token=bool(stored.refresh_token_encrypted),
                access_token_expires_at=stored.access_token_expires_at,
                updated_at=stored.updated_at,
                shared_by_user_id=stored.shared_by_user_id,
            )
        return sorted(seen.values(), key=lambda s: (s.marketplace_id.value, s.environment.value))

    # =========================================================================
    # Writes
    # =========================================================================

    async def save(
        self,
        user_id: int,
        marketplace_id: MarketplaceLike,
        credential: Union[Credential, RawCredential],
        environment: EnvironmentLike,
        scope: Union[CredentialScope, str] = CredentialScope.USER,
        shared_by_user_id: Optional[int] = None,
    ) -> Credential:
        """
        Write a credential through to the repository.

        Cache entries for both environments of (user_id, marketplace_id) are
        invalidated before this returns; for global scope every user's entries
        for the marketplace are dropped.

        Args:
            user_id: Owner (or, for global scope, the administrator sharing it)
            marketplace_id: Marketplace identifier
            credential: Credential value or raw field map to normalize
            environment: Environment to file the credential under
            scope: user or global
            shared_by_user_id: Administrator recorded on global credentials

        Returns:
            The saved credential with issues/warnings attached

        Raises:
            ValidationError: If the secret material is empty
        """
        config = get_marketplace_config(marketplace_id)
        marketplace = config.marketplace_id
        environment = Environment(environment)
        scope = CredentialScope(scope)

        if isinstance(credential, Credential):
            if credential.marketplace_id != marketplace:
                raise ValueError(
                    f"Credential for {credential.marketplace_id.value} cannot be saved under {marketplace.value}"
                )
            payload = credential.payload
            access_token = credential.access_token
            refresh_token = credential.refresh_token
            access_expires = credential.access_token_expires_at
            refresh_expires = credential.refresh_token_expires_at
        else:
            normalized = normalize_credential(marketplace, credential, now=self._clock())
            payload = normalized.payload
            access_token = normalized.access_token
            refresh_token = normalized.refresh_token
            access_expires = normalized.access_token_expires_at
            refresh_expires = normalized.refresh_token_expires_at

        if payload.is_empty():
            raise ValidationError(
                f"{config.display_name} credential has no secret material",
                marketplace_id=marketplace.value,
            )

        key = CredentialKey.for_scope(user_id, marketplace, environment, scope)
        aad = _associated_data(key)
        shared_by = None
        if scope == CredentialScope.GLOBAL:
            shared_by = shared_by_user_id if shared_by_user_id is not None else user_id

        stored = StoredCredential(
            key=key,
            secret_material_encrypted=self._cipher.encrypt_json(payload_to_storage(payload), aad),
            access_token_encrypted=self._cipher.encrypt_text(access_token, aad) if access_token else None,
            refresh_token_encrypted=self._cipher.encrypt_text(refresh_token, aad) if refresh_token else None,
            access_token_expires_at=access_expires,
            refresh_token_expires_at=refresh_expires,
            is_active=True,
            shared_by_user_id=shared_by,
        )
        self._repository.store_credential(key, stored)
        self._invalidate(user_id, marketplace, scope)

        self._audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            user_id=user_id,
            marketplace_id=marketplace.value,
            environment=environment.value,
            scope=scope.value,
            metadata={
                "has_access_token": bool(access_token),
                "has_refresh_token": bool(refresh_token),
                "access_token_expires_at": access_expires.isoformat() if access_expires else None,
            },
        )

        issues, warnings = assess_credential(
            marketplace, payload, access_token, refresh_token, access_expires, self._clock()
        )
        return Credential(
            user_id=user_id,
            marketplace_id=marketplace,
            environment=environment,
            scope=scope,
            payload=payload,
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=access_expires,
            refresh_token_expires_at=refresh_expires,
            shared_by_user_id=shared_by,
            updated_at=self._clock(),
            issues=issues,
            warnings=warnings,
        )

    async def deactivate(
        self,
        user_id: int,
        marketplace_id: MarketplaceLike,
        environment: EnvironmentLike,
        scope: Union[CredentialScope, str] = CredentialScope.USER,
    ) -> bool:
        """
        Mark a credential inactive. The row is kept for audit history.

        Returns:
            True if a credential was deactivated
        """
        marketplace = get_marketplace_config(marketplace_id).marketplace_id
        environment = Environment(environment)
        scope = CredentialScope(scope)
        key = CredentialKey.for_scope(user_id, marketplace, environment, scope)

        stored = self._repository.load_credential(key)
        if stored is None or not stored.is_active:
            return False

        self._repository.store_credential(key, dataclasses.replace(stored, is_active=False))
        self._invalidate(user_id, marketplace, scope)

        self._audit.log(
            event_type=AuditEventType.CREDENTIAL_DEACTIVATED,
            user_id=user_id,
            marketplace_id=marketplace.value,
            environment=environment.value,
            scope=scope.value,
        )
        return True

    def _invalidate(self, user_id: int, marketplace: MarketplaceId, scope: CredentialScope) -> None:
        if scope == CredentialScope.GLOBAL:
            self._cache.invalidate_marketplace(marketplace)
        else:
            self._cache.invalidate(user_id, marketplace)
