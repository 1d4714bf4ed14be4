"""
Secret sources and secret redaction.

SECURITY REQUIREMENTS:
- Signing secrets come from the environment only
- Placeholder secrets are rejected, never silently used
- Secret values NEVER appear in logs or error messages

Usage:
    from marketplace_auth.platform.secrets import get_signing_secret, redact_secrets

    secret = get_signing_secret()          # raises ConfigError if unusable
    safe = redact_secrets({"client_secret": "abc", "user_id": 1})
"""

import os
import re
from typing import Any, Iterable, Optional

from marketplace_auth.platform.errors import ConfigError

REDACTED_VALUE = "[REDACTED]"

# Environment variables consulted for the OAuth state signing secret, in order.
SIGNING_SECRET_ENV_VARS = ("OAUTH_STATE_SECRET", "ENCRYPTION_KEY")

# Values shipped in templates and examples that must never sign anything.
PLACEHOLDER_SECRETS = frozenset({
    "default-key",
    "default-secret",
    "default-encryption-key",
    "changeme",
    "change-me",
    "change_me",
    "secret",
    "your-secret-here",
    "your-secret-key",
    "replace-me",
    "xxx",
})

# Key names whose values are secrets.
SECRET_PATTERNS = [
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
    re.compile(r"api[_-]?key", re.IGNORECASE),
    re.compile(r"app[_-]?key", re.IGNORECASE),
    re.compile(r"cert[_-]?id", re.IGNORECASE),
    re.compile(r"private[_-]?key", re.IGNORECASE),
    re.compile(r"^authorization$", re.IGNORECASE),
    re.compile(r"signature", re.IGNORECASE),
]

# Values that look like secrets wherever they appear.
SECRET_VALUE_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+"),
    re.compile(r"AWS4-HMAC-SHA256\s+Credential=[^\s,]+"),
    re.compile(r"\bAtza\|[A-Za-z0-9._~+/=|-]+"),  # Login with Amazon tokens
    re.compile(r"\bv\^1\.1#[A-Za-z0-9._~+/=#^-]+"),  # eBay user tokens
    re.compile(r"\bAPP_USR-[A-Za-z0-9-]+"),  # MercadoLibre tokens
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),  # AWS access key ids
]


def is_secret_key(key: str) -> bool:
    """Return True if a key name indicates its value is a secret."""
    return any(pattern.search(key) for pattern in SECRET_PATTERNS)


def redact_value(value: str) -> str:
    """Replace secret-looking substrings in a string."""
    result = value
    for pattern in SECRET_VALUE_PATTERNS:
        result = pattern.sub(REDACTED_VALUE, result)
    return result


def redact_secrets(data: Any, _depth: int = 0) -> Any:
    """
    Recursively redact secrets from a data structure.

    Returns a copy; the input is never modified.
    """
    if _depth > 10:
        return data

    if isinstance(data, dict):
        return {
            key: REDACTED_VALUE if isinstance(key, str) and is_secret_key(key)
            else redact_secrets(value, _depth + 1)
            for key, value in data.items()
        }

    if isinstance(data, (list, tuple)):
        return [redact_secrets(item, _depth + 1) for item in data]

    if isinstance(data, str):
        return redact_value(data)

    return data


def is_placeholder_secret(value: str) -> bool:
    """Return True for empty or known placeholder secrets."""
    normalized = value.strip().lower()
    return not normalized or normalized in PLACEHOLDER_SECRETS


def get_signing_secret(env_vars: Iterable[str] = SIGNING_SECRET_ENV_VARS) -> str:
    """
    Read the OAuth state signing secret from the environment.

    Raises:
        ConfigError: If no variable is set or the value is a placeholder
    """
    checked = []
    for name in env_vars:
        checked.append(name)
        value: Optional[str] = os.getenv(name)
        if value is None or not value.strip():
            continue
        if is_placeholder_secret(value):
            raise ConfigError(
                "Signing secret is a placeholder value",
                details={"env_var": name},
            )
        return value

    raise ConfigError(
        "Signing secret is not configured",
        details={"env_vars": checked},
    )
