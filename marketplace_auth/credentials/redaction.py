"""
Credential audit logging and log redaction.

SECURITY REQUIREMENTS:
- Tokens, client secrets and AWS keys NEVER appear in logs
- Identifiers (user_id, marketplace_id, environment, scope) are allowed
- Every credential write is logged as an audit event

Audit Events:
- credential.stored
- credential.refreshed
- credential.deactivated
- credential.error

Usage:
    audit = CredentialAuditLogger()
    audit.log(
        event_type=AuditEventType.CREDENTIAL_STORED,
        user_id=1,
        marketplace_id="ebay",
        environment="production",
        scope="user",
    )
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from marketplace_auth.platform.secrets import (
    REDACTED_VALUE,
    is_secret_key,
    redact_secrets,
    redact_value,
)

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "marketplace_auth.audit"

# Loggers that can carry credential data; setup_credential_logging filters each
CREDENTIAL_LOGGERS = (
    "marketplace_auth",
    "marketplace_auth.credentials.redaction",
    "marketplace_auth.credentials.refresh",
    "marketplace_auth.credentials.repository",
    "marketplace_auth.credentials.vault",
    "marketplace_auth.oauth.authorize",
    "marketplace_auth.oauth.state",
    "marketplace_auth.oauth.token_client",
    "marketplace_auth.resilience.retry",
    AUDIT_LOGGER_NAME,
)

# Identifier keys that look secret-ish by name but are safe to log
_SAFE_KEYS = frozenset({
    "token_type",
    "access_token_expires_at",
    "refresh_token_expires_at",
    "new_expires_at",
    "has_access_token",
    "has_refresh_token",
})


class AuditEventType(str, Enum):
    """Credential audit event types."""
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_REFRESHED = "credential.refreshed"
    CREDENTIAL_DEACTIVATED = "credential.deactivated"
    CREDENTIAL_ERROR = "credential.error"


def is_credential_secret_key(key: str) -> bool:
    """Key names whose values must be redacted."""
    if key in _SAFE_KEYS:
        return False
    return is_secret_key(key)


def redact_credential_data(data: Any) -> Any:
    """Recursively redact credential secrets; safe identifier keys pass through."""
    if isinstance(data, dict):
        return {
            key: (
                REDACTED_VALUE if is_credential_secret_key(key)
                else redact_credential_data(value)
            )
            for key, value in data.items()
        }
    return redact_secrets(data)


class CredentialAuditLogger:
    """
    Structured audit logger for credential operations.

    SECURITY:
    - metadata is redacted before logging
    - Tokens must NEVER be passed in metadata
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def log(
        self,
        event_type: AuditEventType,
        user_id: int,
        marketplace_id: str,
        environment: Optional[str] = None,
        scope: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        safe_metadata = redact_credential_data(metadata) if metadata else {}

        audit_record = {
            "event_type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "user_id": user_id,
            "marketplace_id": marketplace_id,
            "environment": environment,
            "scope": scope,
            **safe_metadata,
        }

        self.logger.info(
            f"Credential audit: {event_type.value}",
            extra=audit_record
        )

    def log_error(
        self,
        user_id: int,
        marketplace_id: str,
        error: str,
        environment: Optional[str] = None,
    ) -> None:
        self.log(
            event_type=AuditEventType.CREDENTIAL_ERROR,
            user_id=user_id,
            marketplace_id=marketplace_id,
            environment=environment,
            metadata={"error": redact_value(error)},
        )


class CredentialLoggingFilter(logging.Filter):
    """
    Logging filter that redacts credential secrets from log records.

    Usage:
        setup_credential_logging()

        # or, to cover every logger routed through a handler:
        handler.addFilter(CredentialLoggingFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_value(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_credential_data(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    redact_value(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        for key in list(record.__dict__.keys()):
            if key in ("msg", "args"):
                continue
            value = record.__dict__[key]
            if is_credential_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            elif isinstance(value, str):
                setattr(record, key, redact_value(value))

        return True


def setup_credential_logging() -> None:
    """
    Configure credential-safe logging.

    Call this during application startup. Logger filters only see records
    created on their own logger, so every module logger is listed.
    """
    redaction_filter = CredentialLoggingFilter()
    for logger_name in CREDENTIAL_LOGGERS:
        logging.getLogger(logger_name).addFilter(redaction_filter)
    logger.info("Credential logging configured with redaction filter")
