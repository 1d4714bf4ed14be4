"""
Tests for the token refresh coordinator.

Covers the single-flight guard, refresh preconditions, failure mapping,
observers and the one-shot recovery in call_with_fresh_token.
"""

import asyncio
from datetime import timedelta
from typing import List, Optional

import pytest

from marketplace_auth.credentials.refresh import TokenRefreshCoordinator
from marketplace_auth.models.credential import GLOBAL_OWNER_ID, Credential
from marketplace_auth.models.payloads import EbayPayload
from marketplace_auth.oauth.token_client import TokenGrant
from marketplace_auth.platform.errors import (
    AuthError,
    NetworkError,
    RefreshFailure,
    ValidationError,
)
from marketplace_auth.resilience.retry import ResilientInvoker, RetryPolicy

EBAY = EbayPayload(app_id="app-1", dev_id="dev-1", cert_id="cert-1", redirect_uri="Ru-Name")


class FakeTokenClient:
    """Stands in for OAuthTokenClient.refresh; yields once so callers can pile up."""

    def __init__(self, errors: Optional[List[BaseException]] = None, gate: Optional[asyncio.Event] = None):
        self.calls: List[Credential] = []
        self.errors = list(errors or [])
        self.gate = gate

    async def refresh(self, credential: Credential) -> TokenGrant:
        self.calls.append(credential)
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if self.errors:
            raise self.errors.pop(0)
        return TokenGrant(access_token="new-access", refresh_token="new-refresh", expires_in=3600)


@pytest.fixture
def invoker(recording_sleep) -> ResilientInvoker:
    return ResilientInvoker(sleep=recording_sleep, rng=lambda: 0.0)


@pytest.fixture
def token_client() -> FakeTokenClient:
    return FakeTokenClient()


@pytest.fixture
def coordinator(vault, token_client, invoker, clock) -> TokenRefreshCoordinator:
    return TokenRefreshCoordinator(vault, token_client, invoker, clock=clock)


async def _save(
    vault,
    clock,
    user_id: int = 1,
    scope: str = "user",
    expires_in: timedelta = timedelta(minutes=-5),
    refresh_token: Optional[str] = "refresh-1",
    refresh_expires_in: Optional[timedelta] = None,
) -> Credential:
    credential = Credential(
        user_id=user_id,
        marketplace_id="ebay",
        environment="production",
        payload=EBAY,
        access_token="access-1",
        refresh_token=refresh_token,
        access_token_expires_at=clock() + expires_in,
        refresh_token_expires_at=clock() + refresh_expires_in if refresh_expires_in else None,
    )
    return await vault.save(user_id, "ebay", credential, "production", scope=scope)


# ============================================================================
# SINGLE-FLIGHT
# ============================================================================

class TestSingleFlight:
    """Concurrent callers share one refresh grant."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_trigger_one_refresh(self, coordinator, token_client, vault, clock):
        await _save(vault, clock)

        results = await asyncio.gather(*[
            coordinator.ensure_fresh_token(1, "ebay", "production") for _ in range(10)
        ])

        assert len(token_client.calls) == 1
        assert {credential.access_token for credential in results} == {"new-access"}
        assert coordinator.inflight_count == 0

    @pytest.mark.asyncio
    async def test_users_sharing_global_credential_share_refresh(self, coordinator, token_client, vault, clock):
        await _save(vault, clock, user_id=99, scope="global")

        first, second = await asyncio.gather(
            coordinator.ensure_fresh_token(1, "ebay", "production"),
            coordinator.ensure_fresh_token(2, "ebay", "production"),
        )

        assert len(token_client.calls) == 1
        assert first.access_token == second.access_token == "new-access"
        shared = await vault.get(2, "ebay", "production")
        assert shared.access_token == "new-access"
        assert shared.shared_by_user_id == 99

    @pytest.mark.asyncio
    async def test_global_refresh_is_resolved_for_each_caller(self, coordinator, token_client, vault, clock):
        await _save(vault, clock, user_id=99, scope="global")

        first, second = await asyncio.gather(
            coordinator.ensure_fresh_token(1, "ebay", "production"),
            coordinator.ensure_fresh_token(2, "ebay", "production"),
        )

        assert len(token_client.calls) == 1
        assert (first.user_id, second.user_id) == (1, 2)
        for credential in (first, second):
            assert "global_credential" in [warning.code for warning in credential.warnings]

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_refresh(self, vault, invoker, clock):
        gate = asyncio.Event()
        token_client = FakeTokenClient(gate=gate)
        coordinator = TokenRefreshCoordinator(vault, token_client, invoker, clock=clock)
        await _save(vault, clock)

        cancelled = asyncio.ensure_future(coordinator.ensure_fresh_token(1, "ebay", "production"))
        waiting = asyncio.ensure_future(coordinator.ensure_fresh_token(1, "ebay", "production"))
        for _ in range(3):
            await asyncio.sleep(0)

        cancelled.cancel()
        gate.set()

        credential = await waiting
        assert credential.access_token == "new-access"
        with pytest.raises(asyncio.CancelledError):
            await cancelled
        assert len(token_client.calls) == 1

    @pytest.mark.asyncio
    async def test_sequential_refreshes_do_not_reuse_finished_task(self, coordinator, token_client, vault, clock):
        await _save(vault, clock)

        await coordinator.ensure_fresh_token(1, "ebay", "production")
        clock.advance(hours=2)
        refreshed = await coordinator.ensure_fresh_token(1, "ebay", "production")

        assert len(token_client.calls) == 2
        assert token_client.calls[1].refresh_token == "new-refresh"
        assert refreshed.access_token_expires_at == clock() + timedelta(seconds=3600)


# ============================================================================
# PRECONDITIONS
# ============================================================================

class TestEnsureFreshToken:
    """When a refresh happens and what it writes back."""

    @pytest.mark.asyncio
    async def test_fresh_token_is_returned_unchanged(self, coordinator, token_client, vault, clock):
        await _save(vault, clock, expires_in=timedelta(hours=1))

        credential = await coordinator.ensure_fresh_token(1, "ebay")

        assert credential.access_token == "access-1"
        assert token_client.calls == []

    @pytest.mark.asyncio
    async def test_token_inside_safety_margin_is_refreshed(self, coordinator, token_client, vault, clock):
        await _save(vault, clock, expires_in=timedelta(seconds=30))

        credential = await coordinator.ensure_fresh_token(1, "ebay", "production")

        assert credential.access_token == "new-access"
        assert len(token_client.calls) == 1

    @pytest.mark.asyncio
    async def test_force_refreshes_fresh_token(self, coordinator, token_client, vault, clock):
        await _save(vault, clock, expires_in=timedelta(hours=1))

        credential = await coordinator.ensure_fresh_token(1, "ebay", "production", force=True)

        assert credential.access_token == "new-access"

    @pytest.mark.asyncio
    async def test_refreshed_tokens_are_persisted(self, coordinator, vault, clock):
        await _save(vault, clock)

        await coordinator.ensure_fresh_token(1, "ebay", "production")

        stored = await vault.get(1, "ebay", "production")
        assert stored.access_token == "new-access"
        assert stored.refresh_token == "new-refresh"
        assert stored.access_token_expires_at == clock() + timedelta(seconds=3600)
        assert stored.payload == EBAY

    @pytest.mark.asyncio
    async def test_missing_credential(self, coordinator):
        with pytest.raises(RefreshFailure) as exc_info:
            await coordinator.ensure_fresh_token(1, "ebay", "production")

        assert exc_info.value.user_id == 1

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, coordinator, token_client, vault, clock):
        await _save(vault, clock, refresh_token=None)

        with pytest.raises(RefreshFailure):
            await coordinator.ensure_fresh_token(1, "ebay", "production")

        assert token_client.calls == []
        assert coordinator.inflight_count == 0

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, coordinator, token_client, vault, clock):
        await _save(vault, clock, refresh_expires_in=timedelta(days=1))
        clock.advance(days=2)

        with pytest.raises(RefreshFailure):
            await coordinator.ensure_fresh_token(1, "ebay", "production")

        assert token_client.calls == []


# ============================================================================
# FAILURES
# ============================================================================

class TestRefreshFailures:
    """Failed grants surface as RefreshFailure with the cause attached."""

    @pytest.mark.asyncio
    async def test_rejected_refresh_token_is_not_retried(self, vault, invoker, clock):
        rejection = AuthError("invalid_grant", marketplace_id="ebay")
        token_client = FakeTokenClient(errors=[rejection])
        coordinator = TokenRefreshCoordinator(vault, token_client, invoker, clock=clock)
        await _save(vault, clock)

        with pytest.raises(RefreshFailure) as exc_info:
            await coordinator.ensure_fresh_token(1, "ebay", "production")

        assert exc_info.value.cause is rejection
        assert len(token_client.calls) == 1
        assert coordinator.inflight_count == 0

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, vault, invoker, clock, recording_sleep):
        token_client = FakeTokenClient(errors=[NetworkError("connection reset", marketplace_id="ebay")])
        coordinator = TokenRefreshCoordinator(vault, token_client, invoker, clock=clock)
        await _save(vault, clock)

        credential = await coordinator.ensure_fresh_token(1, "ebay", "production")

        assert credential.access_token == "new-access"
        assert len(token_client.calls) == 2
        assert recording_sleep.delays == [2.0]

    @pytest.mark.asyncio
    async def test_all_waiters_see_the_failure(self, vault, invoker, clock):
        token_client = FakeTokenClient(errors=[AuthError("revoked", marketplace_id="ebay")])
        coordinator = TokenRefreshCoordinator(vault, token_client, invoker, clock=clock)
        await _save(vault, clock)

        results = await asyncio.gather(
            *[coordinator.ensure_fresh_token(1, "ebay", "production") for _ in range(3)],
            return_exceptions=True,
        )

        assert all(isinstance(result, RefreshFailure) for result in results)
        assert len(token_client.calls) == 1

    @pytest.mark.asyncio
    async def test_failure_leaves_stored_tokens_alone(self, vault, invoker, clock):
        token_client = FakeTokenClient(errors=[AuthError("revoked", marketplace_id="ebay")])
        coordinator = TokenRefreshCoordinator(vault, token_client, invoker, clock=clock)
        await _save(vault, clock)

        with pytest.raises(RefreshFailure):
            await coordinator.ensure_fresh_token(1, "ebay", "production")

        stored = await vault.get(1, "ebay", "production")
        assert stored.access_token == "access-1"
        assert stored.refresh_token == "refresh-1"


# ============================================================================
# OBSERVERS
# ============================================================================

class TestObservers:
    """Observers hear about every successful refresh."""

    @pytest.mark.asyncio
    async def test_sync_and_async_observers(self, coordinator, vault, clock):
        seen = []

        async def async_observer(credential):
            seen.append(("async", credential.access_token))

        coordinator.register_on_update(lambda credential: seen.append(("sync", credential.access_token)))
        coordinator.register_on_update(async_observer)
        await _save(vault, clock)

        await coordinator.ensure_fresh_token(1, "ebay", "production")

        assert seen == [("sync", "new-access"), ("async", "new-access")]

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_fail_refresh(self, coordinator, vault, clock):
        seen = []

        def broken(credential):
            raise RuntimeError("observer bug")

        coordinator.register_on_update(broken)
        coordinator.register_on_update(seen.append)
        await _save(vault, clock)

        credential = await coordinator.ensure_fresh_token(1, "ebay", "production")

        assert credential.access_token == "new-access"
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, coordinator, vault, clock):
        seen = []
        unsubscribe = coordinator.register_on_update(seen.append)
        unsubscribe()
        unsubscribe()
        await _save(vault, clock)

        await coordinator.ensure_fresh_token(1, "ebay", "production")

        assert seen == []

    @pytest.mark.asyncio
    async def test_global_refresh_reported_under_owner_key(self, coordinator, vault, clock):
        seen = []
        coordinator.register_on_update(seen.append)
        await _save(vault, clock, user_id=99, scope="global")

        await coordinator.ensure_fresh_token(7, "ebay", "production")

        assert [credential.user_id for credential in seen] == [GLOBAL_OWNER_ID]
        assert seen[0].scope.value == "global"


# ============================================================================
# CALL WITH FRESH TOKEN
# ============================================================================

class TestCallWithFreshToken:
    """Operations run with a fresh token and recover once from a rejection."""

    @pytest.mark.asyncio
    async def test_token_replaced_by_another_caller_is_not_refreshed_again(
        self, coordinator, token_client, vault, clock
    ):
        await _save(vault, clock, expires_in=timedelta(hours=1))
        policy = RetryPolicy(max_attempts=1)
        slow_started = asyncio.Event()
        release_slow = asyncio.Event()
        slow_tokens = []
        fast_tokens = []

        async def slow_operation(credential):
            slow_tokens.append(credential.access_token)
            if len(slow_tokens) == 1:
                slow_started.set()
                await release_slow.wait()
                raise AuthError("token revoked", marketplace_id="ebay", upstream_status=401)
            return "slow"

        async def fast_operation(credential):
            fast_tokens.append(credential.access_token)
            if len(fast_tokens) == 1:
                raise AuthError("token revoked", marketplace_id="ebay", upstream_status=401)
            return "fast"

        slow = asyncio.ensure_future(
            coordinator.call_with_fresh_token(1, "ebay", "production", slow_operation, policy=policy)
        )
        await slow_started.wait()

        fast_result = await coordinator.call_with_fresh_token(
            1, "ebay", "production", fast_operation, policy=policy,
        )
        release_slow.set()
        slow_result = await slow

        assert (fast_result, slow_result) == ("fast", "slow")
        assert len(token_client.calls) == 1
        assert slow_tokens == ["access-1", "new-access"]
        assert token_client.calls[0].refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_token_without_expiry_is_refreshed_after_rejection(self, coordinator, token_client, vault, clock):
        await vault.save(1, "ebay", Credential(
            user_id=1,
            marketplace_id="ebay",
            environment="production",
            payload=EBAY,
            access_token="access-1",
            refresh_token="refresh-1",
        ), "production")
        tokens_used = []

        async def operation(credential):
            tokens_used.append(credential.access_token)
            if len(tokens_used) == 1:
                raise AuthError("token expired", marketplace_id="ebay", upstream_status=401)
            return "orders"

        result = await coordinator.call_with_fresh_token(1, "ebay", "production", operation)

        assert result == "orders"
        assert tokens_used == ["access-1", "new-access"]
        assert len(token_client.calls) == 1

    @pytest.mark.asyncio
    async def test_rejected_token_forces_one_refresh(self, coordinator, token_client, vault, clock):
        await _save(vault, clock, expires_in=timedelta(hours=1))
        tokens_used = []

        async def operation(credential):
            tokens_used.append(credential.access_token)
            if len(tokens_used) == 1:
                raise AuthError("token revoked", marketplace_id="ebay", upstream_status=401)
            return "orders"

        result = await coordinator.call_with_fresh_token(1, "ebay", "production", operation)

        assert result == "orders"
        assert tokens_used == ["access-1", "new-access"]
        assert len(token_client.calls) == 1

    @pytest.mark.asyncio
    async def test_second_rejection_is_raised(self, coordinator, vault, clock):
        await _save(vault, clock, expires_in=timedelta(hours=1))
        attempts = []

        async def operation(credential):
            attempts.append(credential.access_token)
            raise AuthError("still rejected", marketplace_id="ebay", upstream_status=401)

        with pytest.raises(AuthError):
            await coordinator.call_with_fresh_token(1, "ebay", "production", operation)

        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_other_errors_do_not_trigger_refresh(self, coordinator, token_client, vault, clock):
        await _save(vault, clock, expires_in=timedelta(hours=1))

        async def operation(credential):
            raise ValidationError("bad sku", marketplace_id="ebay", upstream_status=400)

        with pytest.raises(ValidationError):
            await coordinator.call_with_fresh_token(1, "ebay", "production", operation)

        assert token_client.calls == []

    @pytest.mark.asyncio
    async def test_custom_policy_retries_transient_errors(self, coordinator, vault, clock, recording_sleep):
        await _save(vault, clock, expires_in=timedelta(hours=1))
        calls = []

        async def operation(credential):
            calls.append(credential)
            if len(calls) < 3:
                raise NetworkError("bad gateway", marketplace_id="ebay", upstream_status=502)
            return "ok"

        policy = RetryPolicy(max_attempts=3, initial_delay=0.5, jitter_enabled=False)
        result = await coordinator.call_with_fresh_token(1, "ebay", "production", operation, policy=policy)

        assert result == "ok"
        assert recording_sleep.delays == [0.5, 1.0]
