"""Declarative base and shared column mixins."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """created_at / updated_at maintained on insert and update."""

    created_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        comment="Row creation time",
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
        comment="Last modification time",
    )
