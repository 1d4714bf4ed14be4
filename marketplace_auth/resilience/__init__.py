from .classification import (
    ErrorCategory,
    RetryDecision,
    categorize_error,
    categorize_status_code,
    classify_error,
    error_from_response,
)
from .retry import (
    ResilientInvoker,
    RetryOutcome,
    RetryPolicy,
    RetryState,
    calculate_backoff,
    policy_for_marketplace,
)

__all__ = [
    "ErrorCategory",
    "RetryDecision",
    "categorize_error",
    "categorize_status_code",
    "classify_error",
    "error_from_response",
    "ResilientInvoker",
    "RetryOutcome",
    "RetryPolicy",
    "RetryState",
    "calculate_backoff",
    "policy_for_marketplace",
]
