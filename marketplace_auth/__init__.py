"""
Marketplace authentication and resilient invocation.

- oauth: signed OAuth state tokens and the authorization-code flow
- credentials: encrypted credential vault and single-flight token refresh
- signing: AWS SigV4, bearer and AliExpress request signers
- resilience: error classification and retry with backoff
"""

__version__ = "0.1.0"
