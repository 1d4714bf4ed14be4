"""
Credentials module for secure marketplace credential management.

This module provides:
- Encrypted storage for application keys and OAuth tokens
- Environment and scope fallback resolution with warnings
- Single-flight token refresh (on-demand)
- Audit logging with automatic redaction

SECURITY:
- Secret material and tokens are encrypted at rest using CREDENTIAL_ENCRYPTION_KEY
- No plaintext secrets outside process memory
- Tokens NEVER appear in logs or API responses
- Allowed in logs: user_id, marketplace_id, environment, scope

Usage:
    from marketplace_auth.credentials import CredentialVault, TokenRefreshCoordinator

    vault = CredentialVault(repository, CredentialCipher.from_env())
    await vault.save(user_id, "mercadolibre", {"clientId": "...", "clientSecret": "..."}, "production")

    coordinator = TokenRefreshCoordinator(vault, OAuthTokenClient())
    credential = await coordinator.ensure_fresh_token(user_id, "mercadolibre")
"""

from marketplace_auth.credentials.encryption import (
    CredentialCipher,
    CredentialEncryptionError,
)
from marketplace_auth.credentials.repository import (
    CredentialFilter,
    CredentialRepository,
    CredentialStoreError,
    InMemoryCredentialRepository,
    SqlAlchemyCredentialRepository,
    StoredCredential,
)
from marketplace_auth.credentials.cache import CredentialCache
from marketplace_auth.credentials.normalization import (
    NormalizedCredential,
    assess_credential,
    normalize_credential,
)
from marketplace_auth.credentials.redaction import (
    AuditEventType,
    CredentialAuditLogger,
    CredentialLoggingFilter,
    redact_credential_data,
    setup_credential_logging,
)
from marketplace_auth.credentials.vault import CredentialSummary, CredentialVault
from marketplace_auth.credentials.refresh import TokenRefreshCoordinator

__all__ = [
    # Encryption
    "CredentialCipher",
    "CredentialEncryptionError",
    # Persistence
    "CredentialFilter",
    "CredentialRepository",
    "CredentialStoreError",
    "InMemoryCredentialRepository",
    "SqlAlchemyCredentialRepository",
    "StoredCredential",
    "CredentialCache",
    # Normalization
    "NormalizedCredential",
    "assess_credential",
    "normalize_credential",
    # Redaction & Audit
    "AuditEventType",
    "CredentialAuditLogger",
    "CredentialLoggingFilter",
    "redact_credential_data",
    "setup_credential_logging",
    # Vault & Refresh
    "CredentialSummary",
    "CredentialVault",
    "TokenRefreshCoordinator",
]
