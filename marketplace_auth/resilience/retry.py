"""
Retry-with-backoff executor for outbound marketplace calls.

The executor is a small state machine:

    ATTEMPTING -> SUCCESS
    ATTEMPTING -> RETRYING -> ATTEMPTING
    ATTEMPTING -> FAILED

Backoff is a pure function of the policy and the attempt number. Sleep and
clock are injected so tests never wait on real time.

Usage:
    invoker = ResilientInvoker()
    outcome = await invoker.execute(
        lambda: client.get(url),
        policy_for_marketplace("ebay"),
    )
    if not outcome.success:
        raise outcome.error
"""

import asyncio
import dataclasses
import inspect
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from marketplace_auth.config import get_marketplace_config
from marketplace_auth.models.enums import MarketplaceLike, marketplace_value
from marketplace_auth.resilience.classification import (
    ErrorCategory,
    RetryDecision,
    categorize_error,
    classify_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]
ClockFunc = Callable[[], float]
# (attempt_number, error, delay_seconds); may be sync or async
OnRetryHook = Callable[[int, BaseException, float], Any]
ClassifyFunc = Callable[[BaseException], RetryDecision]


class RetryState(str, Enum):
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration for one call site. Durations are in seconds.

    Rate-limit failures back off from rate_limit_initial_delay instead of
    initial_delay and honour a server supplied Retry-After.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True
    max_jitter: float = 1.0
    per_attempt_timeout: Optional[float] = None
    rate_limit_initial_delay: float = 5.0
    rate_limit_max_delay: float = 60.0
    classify: ClassifyFunc = field(default=classify_error, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_multiplier <= 1:
            raise ValueError("backoff_multiplier must be greater than 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.max_jitter < 0:
            raise ValueError("max_jitter must not be negative")
        if self.per_attempt_timeout is not None and self.per_attempt_timeout <= 0:
            raise ValueError("per_attempt_timeout must be positive")

    def with_overrides(self, **overrides: Any) -> "RetryPolicy":
        return dataclasses.replace(self, **overrides)


def policy_for_marketplace(marketplace_id: MarketplaceLike, **overrides: Any) -> RetryPolicy:
    """Build the default RetryPolicy for a marketplace, with optional overrides."""
    tuning = get_marketplace_config(marketplace_id).retry
    policy = RetryPolicy(
        max_attempts=tuning.max_attempts,
        initial_delay=tuning.initial_delay,
        max_delay=tuning.max_delay,
        per_attempt_timeout=tuning.per_attempt_timeout,
        rate_limit_initial_delay=tuning.rate_limit_initial_delay,
        rate_limit_max_delay=tuning.rate_limit_max_delay,
    )
    return policy.with_overrides(**overrides) if overrides else policy


def calculate_backoff(
    policy: RetryPolicy,
    attempt: int,
    category: Optional[ErrorCategory] = None,
    retry_after: Optional[float] = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay before the attempt following a failed `attempt` (0-based).

    delay = min(initial * multiplier ** attempt, max_delay) [+ jitter]
    """
    if category == ErrorCategory.RATE_LIMIT:
        base, cap = policy.rate_limit_initial_delay, policy.rate_limit_max_delay
    else:
        base, cap = policy.initial_delay, policy.max_delay

    delay = min(base * (policy.backoff_multiplier ** attempt), cap)
    if retry_after is not None:
        delay = max(delay, min(retry_after, cap))
    if policy.jitter_enabled and policy.max_jitter > 0:
        delay += rng() * policy.max_jitter
    return delay


@dataclass
class RetryOutcome(Generic[T]):
    """Result of ResilientInvoker.execute. Never raises on its own."""
    success: bool
    attempts: int
    total_elapsed: float
    state: RetryState
    value: Optional[T] = None
    error: Optional[BaseException] = None
    error_category: Optional[ErrorCategory] = None

    def unwrap(self) -> T:
        """Return the value, or raise the final error."""
        if self.success:
            return self.value  # type: ignore[return-value]
        if self.error is None:
            raise RuntimeError("Failed outcome carries no error")
        raise self.error

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "attempts": self.attempts,
            "total_elapsed": round(self.total_elapsed, 3),
            "state": self.state.value,
            "error_type": type(self.error).__name__ if self.error else None,
            "error_category": self.error_category.value if self.error_category else None,
        }


class ResilientInvoker:
    """
    Executes async operations under a RetryPolicy.

    Backoff sleeps suspend only the calling task. Cancelling that task during
    a sleep stops the loop; no further attempt is started.
    """

    def __init__(
        self,
        *,
        sleep: Optional[SleepFunc] = None,
        clock: Optional[ClockFunc] = None,
        rng: Optional[Callable[[], float]] = None,
        on_retry: Optional[OnRetryHook] = None,
    ) -> None:
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._rng = rng or random.random
        self._on_retry = on_retry

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        *,
        on_retry: Optional[OnRetryHook] = None,
        operation_name: str = "marketplace_call",
        marketplace_id: Optional[MarketplaceLike] = None,
    ) -> RetryOutcome[T]:
        """
        Run `operation` until it succeeds, fails fatally or attempts run out.

        Args:
            operation: Zero-argument callable returning an awaitable
            policy: Retry policy (defaults to RetryPolicy())
            on_retry: Hook called as on_retry(attempt_number, error, delay)
                before each backoff sleep; attempt_number is 1-based
            operation_name: Label used in logs
            marketplace_id: Label used in logs

        Returns:
            RetryOutcome with the value or the final error
        """
        policy = policy or RetryPolicy()
        hooks = [hook for hook in (self._on_retry, on_retry) if hook is not None]
        log_context = {
            "operation": operation_name,
            "marketplace_id": marketplace_value(marketplace_id) if marketplace_id else None,
        }

        started = self._clock()
        attempt = 0
        state = RetryState.ATTEMPTING

        while True:
            try:
                value = await self._run_attempt(operation, policy)
            except Exception as exc:
                error: BaseException = exc
            else:
                state = RetryState.SUCCESS
                if attempt > 0:
                    logger.info(
                        "Operation succeeded after retry",
                        extra={**log_context, "attempts": attempt + 1},
                    )
                return RetryOutcome(
                    success=True,
                    value=value,
                    attempts=attempt + 1,
                    total_elapsed=self._clock() - started,
                    state=state,
                )

            attempts_made = attempt + 1
            category = categorize_error(error)
            decision = policy.classify(error)

            if decision == RetryDecision.FATAL or attempts_made >= policy.max_attempts:
                state = RetryState.FAILED
                logger.warning(
                    "Operation failed",
                    extra={
                        **log_context,
                        "attempts": attempts_made,
                        "error_type": type(error).__name__,
                        "error_category": category.value,
                        "decision": decision.value,
                    },
                )
                return RetryOutcome(
                    success=False,
                    error=error,
                    error_category=category,
                    attempts=attempts_made,
                    total_elapsed=self._clock() - started,
                    state=state,
                )

            state = RetryState.RETRYING
            delay = calculate_backoff(
                policy,
                attempt,
                category=category,
                retry_after=getattr(error, "retry_after", None),
                rng=self._rng,
            )
            logger.info(
                "Retrying operation",
                extra={
                    **log_context,
                    "attempt": attempts_made,
                    "max_attempts": policy.max_attempts,
                    "delay_seconds": round(delay, 3),
                    "error_type": type(error).__name__,
                    "error_category": category.value,
                },
            )
            for hook in hooks:
                result = hook(attempts_made, error, delay)
                if inspect.isawaitable(result):
                    await result

            await self._sleep(delay)
            attempt += 1
            state = RetryState.ATTEMPTING

    async def execute_or_raise(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        **kwargs: Any,
    ) -> T:
        """Like execute(), but return the value or raise the final error."""
        outcome = await self.execute(operation, policy, **kwargs)
        return outcome.unwrap()

    @staticmethod
    async def _run_attempt(operation: Callable[[], Awaitable[T]], policy: RetryPolicy) -> T:
        if policy.per_attempt_timeout is None:
            return await operation()
        return await asyncio.wait_for(operation(), timeout=policy.per_attempt_timeout)
