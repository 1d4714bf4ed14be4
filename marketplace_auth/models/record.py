"""
MarketplaceCredentialRecord - encrypted at-rest storage for marketplace credentials.

SECURITY REQUIREMENTS:
- Secret material and tokens are encrypted before they reach this table
- No plaintext secrets outside process memory
- Rows are deactivated, never deleted, to keep audit history
"""

import uuid

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, Index, Integer, String, Text, UniqueConstraint,
)

from .base import Base, TimestampMixin
from .enums import CredentialScope, Environment, MarketplaceId


class MarketplaceCredentialRecord(Base, TimestampMixin):
    """
    One row per (user_id, marketplace_id, environment, scope).

    Global credentials are stored under GLOBAL_OWNER_ID with
    shared_by_user_id naming the administrator who published them.
    """

    __tablename__ = "marketplace_credentials"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )
    user_id = Column(Integer, nullable=False, comment="Owning user (0 for global)")
    marketplace_id = Column(
        Enum(MarketplaceId, native_enum=False, length=40),
        nullable=False,
        comment="Marketplace identifier"
    )
    environment = Column(
        Enum(Environment, native_enum=False, length=20),
        nullable=False,
        comment="sandbox or production"
    )
    scope = Column(
        Enum(CredentialScope, native_enum=False, length=20),
        nullable=False,
        default=CredentialScope.USER,
        comment="user or global"
    )

    # Encrypted blobs - NEVER log these values
    secret_material_encrypted = Column(
        Text,
        nullable=False,
        comment="Encrypted payload (kind + static identifiers)"
    )
    access_token_encrypted = Column(Text, nullable=True, comment="Encrypted access token")
    refresh_token_encrypted = Column(Text, nullable=True, comment="Encrypted refresh token")

    # Token metadata (safe to log)
    access_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    refresh_token_expires_at = Column(DateTime(timezone=True), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    shared_by_user_id = Column(Integer, nullable=True, comment="Administrator who shared a global credential")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "marketplace_id", "environment", "scope",
            name="uq_marketplace_credentials_owner_env_scope",
        ),
        Index("ix_marketplace_credentials_marketplace_scope", "marketplace_id", "scope"),
    )

    def __repr__(self) -> str:
        return (
            f"<MarketplaceCredentialRecord(id={self.id}, user_id={self.user_id}, "
            f"marketplace={self.marketplace_id}, environment={self.environment}, "
            f"scope={self.scope}, active={self.is_active})>"
        )
