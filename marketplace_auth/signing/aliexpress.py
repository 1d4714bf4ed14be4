"""
AliExpress open platform parameter signing (sign_method=sha256).

sign = upper(hex(HMAC-SHA256(app_secret, [api_path] + k1 + v1 + k2 + v2 ...)))

Parameters are sorted by key; `sign` itself and empty values are excluded.
System interfaces (paths such as /auth/token/create) prefix the API path.
"""

import hashlib
import hmac
import time
from typing import Any, Callable, Dict, Mapping, Optional

from marketplace_auth.platform.errors import SigningError

SIGN_METHOD = "sha256"


def aliexpress_signature(
    params: Mapping[str, Any],
    app_secret: str,
    api_path: Optional[str] = None,
) -> str:
    """Compute the uppercase hex signature for a parameter map."""
    if not app_secret:
        raise SigningError("app_secret is required for AliExpress signing")

    parts = [api_path] if api_path else []
    for key in sorted(params):
        value = params[key]
        if key == "sign" or value is None or value == "":
            continue
        parts.append(f"{key}{value}")

    message = "".join(parts).encode("utf-8")
    return hmac.new(app_secret.encode("utf-8"), message, hashlib.sha256).hexdigest().upper()


def sign_aliexpress_params(
    api_path: Optional[str],
    params: Mapping[str, Any],
    app_key: str,
    app_secret: str,
    *,
    clock: Callable[[], float] = time.time,
) -> Dict[str, str]:
    """
    Return `params` plus app_key, timestamp, sign_method and sign.

    Args:
        api_path: System interface path, or None for business methods
        params: Request parameters
        app_key: Application key
        app_secret: Application secret (never included in the output)
        clock: Seconds since the epoch
    """
    if not app_key:
        raise SigningError("app_key is required for AliExpress signing")

    signed: Dict[str, str] = {
        str(key): str(value) for key, value in params.items() if value is not None
    }
    signed["app_key"] = app_key
    signed["sign_method"] = SIGN_METHOD
    signed.setdefault("timestamp", str(int(clock() * 1000)))
    signed["sign"] = aliexpress_signature(signed, app_secret, api_path)
    return signed
