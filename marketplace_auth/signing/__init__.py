"""
Request signers. Pure functions: no I/O, no shared state.

- sign_aws: AWS Signature Version 4 (Amazon SP-API)
- sign_bearer: Authorization: Bearer plus marketplace token header
- sign_aliexpress_params: AliExpress open platform parameter signature
"""

from .aliexpress import aliexpress_signature, sign_aliexpress_params
from .aws_sigv4 import (
    AwsSigningCredentials,
    HttpRequest,
    SignedRequest,
    canonical_query_string,
    derive_signing_key,
    rfc3986_encode,
    sign_aws,
)
from .bearer import BearerCredentials, sign_bearer

__all__ = [
    "aliexpress_signature",
    "sign_aliexpress_params",
    "AwsSigningCredentials",
    "HttpRequest",
    "SignedRequest",
    "canonical_query_string",
    "derive_signing_key",
    "rfc3986_encode",
    "sign_aws",
    "BearerCredentials",
    "sign_bearer",
]
