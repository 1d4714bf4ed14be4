"""
AWS Signature Version 4 request signing (Amazon SP-API and other AWS APIs).

Steps:
1. Canonical request: method, URI-encoded path, sorted RFC3986 query string,
   sorted lowercase headers, signed header list, payload hash
2. String to sign: algorithm, timestamp, credential scope, hash of (1)
3. Signing key: HMAC chain over date, region, service and "aws4_request"
4. Authorization header assembled from scope, signed headers and signature

Every step is byte-exact; any deviation is rejected by AWS with a 403.

Usage:
    request = HttpRequest.from_url("GET", "https://sellingpartnerapi-na.amazon.com/orders/v0/orders",
                                   query={"MarketplaceIds": "ATVPDKIKX0DER"})
    signed = sign_aws(request, AwsSigningCredentials(access_key_id=..., secret_access_key=...,
                                                     region="us-east-1"))
    httpx.get(request.url, headers=signed.headers)
"""

import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, quote, urlsplit

from marketplace_auth.models.payloads import AmazonPayload
from marketplace_auth.platform.errors import SigningError

ALGORITHM = "AWS4-HMAC-SHA256"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
SCOPE_TERMINATOR = "aws4_request"
DEFAULT_SERVICE = "execute-api"

QueryValue = Union[str, int, float, bool, None, Iterable[Union[str, int, float, bool]]]


def rfc3986_encode(value: str) -> str:
    """Percent-encode everything except unreserved characters (A-Z a-z 0-9 - _ . ~)."""
    return quote(value, safe="-_.~")


@dataclass(frozen=True)
class HttpRequest:
    """Outbound request as seen by the signers."""
    method: str
    host: str
    path: str = "/"
    query: Mapping[str, QueryValue] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[Union[bytes, str]] = None
    scheme: str = "https"

    @classmethod
    def from_url(
        cls,
        method: str,
        url: str,
        query: Optional[Mapping[str, QueryValue]] = None,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[Union[bytes, str]] = None,
    ) -> "HttpRequest":
        """Build a request from a URL; query parameters in the URL are merged with `query`."""
        parts = urlsplit(url)
        if not parts.netloc:
            raise SigningError("URL must be absolute", details={"url": url})
        merged: Dict[str, Any] = {}
        for key, value in parse_qsl(parts.query, keep_blank_values=True):
            merged.setdefault(key, []).append(value)
        merged = {key: values[0] if len(values) == 1 else values for key, values in merged.items()}
        merged.update(query or {})
        return cls(
            method=method,
            host=parts.netloc,
            path=parts.path or "/",
            query=merged,
            headers=dict(headers or {}),
            body=body,
            scheme=parts.scheme or "https",
        )

    @property
    def url(self) -> str:
        query = canonical_query_string(self.query)
        return f"{self.scheme}://{self.host}{self.path}" + (f"?{query}" if query else "")

    def body_bytes(self) -> bytes:
        if self.body is None:
            return b""
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return self.body


@dataclass(frozen=True)
class AwsSigningCredentials:
    access_key_id: str
    secret_access_key: str = field(repr=False)
    region: str = "us-east-1"
    service: str = DEFAULT_SERVICE
    session_token: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_payload(cls, payload: AmazonPayload, service: str = DEFAULT_SERVICE) -> "AwsSigningCredentials":
        return cls(
            access_key_id=payload.aws_access_key_id,
            secret_access_key=payload.aws_secret_access_key,
            region=payload.region,
            service=service,
            session_token=payload.aws_session_token,
        )


@dataclass(frozen=True)
class SignedRequest:
    """Result of sign_aws. Consumed immediately by the HTTP call; never persisted."""
    method: str
    canonical_path: str
    canonical_query_string: str
    signed_header_names: Tuple[str, ...]
    signature_hex: str
    timestamp: str
    authorization: str
    headers: Dict[str, str] = field(repr=False)
    canonical_request: str = field(repr=False, default="")
    string_to_sign: str = field(repr=False, default="")


def canonical_query_string(query: Mapping[str, QueryValue]) -> str:
    """Sorted key=value pairs, RFC3986 encoded; None values are dropped."""
    pairs: List[Tuple[str, str]] = []
    for key, value in query.items():
        if value is None:
            continue
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            if item is None:
                continue
            if isinstance(item, bool):
                item = "true" if item else "false"
            pairs.append((rfc3986_encode(str(key)), rfc3986_encode(str(item))))
    pairs.sort()
    return "&".join(f"{key}={value}" for key, value in pairs)


def canonical_path(path: str) -> str:
    if not path:
        return "/"
    if not path.startswith("/"):
        raise SigningError("Request path must start with '/'", details={"path": path})
    return quote(path, safe="/-_.~")


def _normalize_header_value(value: Any) -> str:
    return " ".join(str(value).split())


def _hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(secret_access_key: str, date_stamp: str, region: str, service: str) -> bytes:
    """kSigning = HMAC(HMAC(HMAC(HMAC("AWS4" + secret, date), region), service), "aws4_request")."""
    k_date = _hmac_sha256(f"AWS4{secret_access_key}".encode("utf-8"), date_stamp)
    k_region = _hmac_sha256(k_date, region)
    k_service = _hmac_sha256(k_region, service)
    return _hmac_sha256(k_service, SCOPE_TERMINATOR)


def _validate(request: HttpRequest, credentials: AwsSigningCredentials) -> None:
    missing = [
        name for name, value in (
            ("method", request.method),
            ("host", request.host),
            ("access_key_id", credentials.access_key_id),
            ("secret_access_key", credentials.secret_access_key),
            ("region", credentials.region),
            ("service", credentials.service),
        )
        if not value or not str(value).strip()
    ]
    if missing:
        raise SigningError("Missing signing input", details={"missing": missing})


def sign_aws(
    request: HttpRequest,
    credentials: AwsSigningCredentials,
    *,
    now: Optional[datetime] = None,
    sign_payload: bool = False,
    payload_hash: Optional[str] = None,
) -> SignedRequest:
    """
    Compute SigV4 headers for a request.

    Args:
        request: Request to sign
        credentials: AWS key pair, region, service and optional session token
        now: Signing time (defaults to current UTC time)
        sign_payload: Hash the body instead of sending UNSIGNED-PAYLOAD
        payload_hash: Precomputed payload hash; overrides sign_payload

    Returns:
        SignedRequest whose headers include Authorization, x-amz-date and
        x-amz-content-sha256

    Raises:
        SigningError: If required input is missing or malformed
    """
    _validate(request, credentials)

    timestamp = now or datetime.now(timezone.utc)
    if timestamp.tzinfo is None:
        raise SigningError("Signing time must be timezone-aware")
    timestamp = timestamp.astimezone(timezone.utc)
    amz_date = timestamp.strftime("%Y%m%dT%H%M%SZ")
    date_stamp = amz_date[:8]

    method = request.method.upper()
    path = canonical_path(request.path)
    query = canonical_query_string(request.query)

    if payload_hash is None:
        if sign_payload:
            payload_hash = hashlib.sha256(request.body_bytes()).hexdigest()
        else:
            payload_hash = UNSIGNED_PAYLOAD

    signing_headers: Dict[str, str] = {}
    for name, value in request.headers.items():
        lowered = name.strip().lower()
        if lowered == "authorization":
            continue
        signing_headers[lowered] = _normalize_header_value(value)
    signing_headers.setdefault("host", request.host.strip().lower())
    signing_headers["x-amz-date"] = amz_date
    if credentials.session_token:
        signing_headers["x-amz-security-token"] = credentials.session_token.strip()

    signed_names = tuple(sorted(signing_headers))
    canonical_headers = "".join(f"{name}:{signing_headers[name]}\n" for name in signed_names)
    signed_headers = ";".join(signed_names)

    canonical_request = "\n".join([
        method,
        path,
        query,
        canonical_headers,
        signed_headers,
        payload_hash,
    ])

    credential_scope = f"{date_stamp}/{credentials.region}/{credentials.service}/{SCOPE_TERMINATOR}"
    string_to_sign = "\n".join([
        ALGORITHM,
        amz_date,
        credential_scope,
        hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
    ])

    signing_key = derive_signing_key(
        credentials.secret_access_key, date_stamp, credentials.region, credentials.service
    )
    signature = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    authorization = (
        f"{ALGORITHM} Credential={credentials.access_key_id}/{credential_scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )

    headers = {name: str(value) for name, value in request.headers.items()}
    if not any(name.lower() == "host" for name in headers):
        headers["host"] = signing_headers["host"]
    headers["x-amz-date"] = amz_date
    headers["x-amz-content-sha256"] = payload_hash
    if credentials.session_token:
        headers["x-amz-security-token"] = signing_headers["x-amz-security-token"]
    headers["Authorization"] = authorization

    return SignedRequest(
        method=method,
        canonical_path=path,
        canonical_query_string=query,
        signed_header_names=signed_names,
        signature_hex=signature,
        timestamp=amz_date,
        authorization=authorization,
        headers=headers,
        canonical_request=canonical_request,
        string_to_sign=string_to_sign,
    )
