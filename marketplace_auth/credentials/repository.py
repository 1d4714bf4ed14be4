"""
Persistence collaborator for credentials.

The vault only sees opaque encrypted blobs through this interface:

    load_credential(key) -> StoredCredential | None
    store_credential(key, value) -> None   (upsert)
    list_credentials(filter) -> [StoredCredential]  (most recently updated first)

Two implementations ship here: SQLAlchemy (production) and in-memory
(tests and single-process tools).
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol

from fastapi import status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace_auth.models.credential import CredentialKey
from marketplace_auth.models.enums import CredentialScope, Environment, MarketplaceId
from marketplace_auth.models.record import MarketplaceCredentialRecord
from marketplace_auth.platform.errors import AppError

logger = logging.getLogger(__name__)


class CredentialStoreError(AppError):
    """Persistence failed."""

    def __init__(self, message: str, operation: str):
        super().__init__(
            code="CREDENTIAL_STORE_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"operation": operation},
        )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class StoredCredential:
    """
    Credential as persisted.

    SECURITY: all secret fields are ciphertext; repr omits them anyway.
    """
    key: CredentialKey
    secret_material_encrypted: str = field(repr=False)
    access_token_encrypted: Optional[str] = field(default=None, repr=False)
    refresh_token_encrypted: Optional[str] = field(default=None, repr=False)
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    is_active: bool = True
    shared_by_user_id: Optional[int] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class CredentialFilter:
    """Criteria for list_credentials; None means "any"."""
    user_id: Optional[int] = None
    marketplace_id: Optional[MarketplaceId] = None
    environment: Optional[Environment] = None
    scope: Optional[CredentialScope] = None
    active_only: bool = False

    def matches(self, value: StoredCredential) -> bool:
        key = value.key
        return (
            (self.user_id is None or key.user_id == self.user_id)
            and (self.marketplace_id is None or key.marketplace_id == self.marketplace_id)
            and (self.environment is None or key.environment == self.environment)
            and (self.scope is None or key.scope == self.scope)
            and (not self.active_only or value.is_active)
        )


class CredentialRepository(Protocol):
    def load_credential(self, key: CredentialKey) -> Optional[StoredCredential]:
        ...

    def store_credential(self, key: CredentialKey, value: StoredCredential) -> None:
        ...

    def list_credentials(self, criteria: CredentialFilter) -> List[StoredCredential]:
        ...


class InMemoryCredentialRepository:
    """Dictionary-backed repository."""

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._rows: Dict[CredentialKey, StoredCredential] = {}
        self._lock = threading.RLock()
        self._clock = clock

    def load_credential(self, key: CredentialKey) -> Optional[StoredCredential]:
        with self._lock:
            return self._rows.get(key)

    def store_credential(self, key: CredentialKey, value: StoredCredential) -> None:
        with self._lock:
            self._rows[key] = dataclasses.replace(value, key=key, updated_at=self._clock())

    def list_credentials(self, criteria: CredentialFilter) -> List[StoredCredential]:
        with self._lock:
            rows = [row for row in self._rows.values() if criteria.matches(row)]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(rows, key=lambda row: row.updated_at or epoch, reverse=True)


class SqlAlchemyCredentialRepository:
    """
    Repository over the marketplace_credentials table.

    Each call runs in its own session from `session_factory` and commits
    before returning, so a store is visible to the next load.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @staticmethod
    def _key_filter(query, key: CredentialKey):
        return query.filter(
            MarketplaceCredentialRecord.user_id == key.user_id,
            MarketplaceCredentialRecord.marketplace_id == key.marketplace_id,
            MarketplaceCredentialRecord.environment == key.environment,
            MarketplaceCredentialRecord.scope == key.scope,
        )

    @staticmethod
    def _to_stored(row: MarketplaceCredentialRecord) -> StoredCredential:
        return StoredCredential(
            key=CredentialKey(
                user_id=row.user_id,
                marketplace_id=MarketplaceId(row.marketplace_id),
                environment=Environment(row.environment),
                scope=CredentialScope(row.scope),
            ),
            secret_material_encrypted=row.secret_material_encrypted,
            access_token_encrypted=row.access_token_encrypted,
            refresh_token_encrypted=row.refresh_token_encrypted,
            access_token_expires_at=_as_utc(row.access_token_expires_at),
            refresh_token_expires_at=_as_utc(row.refresh_token_expires_at),
            is_active=bool(row.is_active),
            shared_by_user_id=row.shared_by_user_id,
            updated_at=_as_utc(row.updated_at),
        )

    def load_credential(self, key: CredentialKey) -> Optional[StoredCredential]:
        try:
            with self._session_factory() as session:
                row = self._key_filter(session.query(MarketplaceCredentialRecord), key).first()
                return self._to_stored(row) if row is not None else None
        except SQLAlchemyError as e:
            logger.error(
                "Failed to load credential",
                extra={"marketplace_id": key.marketplace_id.value, "user_id": key.user_id, "error": str(e)},
            )
            raise CredentialStoreError("Failed to load credential", operation="load") from e

    def store_credential(self, key: CredentialKey, value: StoredCredential) -> None:
        try:
            with self._session_factory() as session:
                row = self._key_filter(session.query(MarketplaceCredentialRecord), key).first()
                if row is None:
                    row = MarketplaceCredentialRecord(
                        user_id=key.user_id,
                        marketplace_id=key.marketplace_id,
                        environment=key.environment,
                        scope=key.scope,
                    )
                    session.add(row)
                row.secret_material_encrypted = value.secret_material_encrypted
                row.access_token_encrypted = value.access_token_encrypted
                row.refresh_token_encrypted = value.refresh_token_encrypted
                row.access_token_expires_at = value.access_token_expires_at
                row.refresh_token_expires_at = value.refresh_token_expires_at
                row.is_active = value.is_active
                row.shared_by_user_id = value.shared_by_user_id
                row.updated_at = datetime.now(timezone.utc)
                session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to store credential",
                extra={"marketplace_id": key.marketplace_id.value, "user_id": key.user_id, "error": str(e)},
            )
            raise CredentialStoreError("Failed to store credential", operation="store") from e

    def list_credentials(self, criteria: CredentialFilter) -> List[StoredCredential]:
        try:
            with self._session_factory() as session:
                query = session.query(MarketplaceCredentialRecord)
                if criteria.user_id is not None:
                    query = query.filter(MarketplaceCredentialRecord.user_id == criteria.user_id)
                if criteria.marketplace_id is not None:
                    query = query.filter(MarketplaceCredentialRecord.marketplace_id == criteria.marketplace_id)
                if criteria.environment is not None:
                    query = query.filter(MarketplaceCredentialRecord.environment == criteria.environment)
                if criteria.scope is not None:
                    query = query.filter(MarketplaceCredentialRecord.scope == criteria.scope)
                if criteria.active_only:
                    query = query.filter(MarketplaceCredentialRecord.is_active.is_(True))
                rows = query.order_by(MarketplaceCredentialRecord.updated_at.desc()).all()
                return [self._to_stored(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error("Failed to list credentials", extra={"error": str(e)})
            raise CredentialStoreError("Failed to list credentials", operation="list") from e
