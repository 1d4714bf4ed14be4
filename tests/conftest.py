"""
Shared pytest fixtures.

Time and sleep are always injected; no test waits on the wall clock.
"""

from datetime import datetime, timedelta, timezone

import pytest

from marketplace_auth.credentials.cache import CredentialCache
from marketplace_auth.credentials.encryption import CredentialCipher
from marketplace_auth.credentials.repository import InMemoryCredentialRepository
from marketplace_auth.credentials.vault import CredentialVault

TEST_SIGNING_SECRET = "test-oauth-state-signing-secret-0123456789"


# ============================================================================
# CLOCKS
# ============================================================================

class FakeClock:
    """Manually advanced clock; returns epoch seconds or aware datetimes."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def seconds(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def signing_secret(monkeypatch):
    """Configure a usable OAuth state signing secret."""
    monkeypatch.setenv("OAUTH_STATE_SECRET", TEST_SIGNING_SECRET)
    monkeypatch.delenv("ENCRYPTION_KEY", raising=False)
    return TEST_SIGNING_SECRET


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(b"k" * 32)


@pytest.fixture
def repository(clock) -> InMemoryCredentialRepository:
    return InMemoryCredentialRepository(clock=clock)


@pytest.fixture
def vault(repository, cipher, clock, monkeypatch) -> CredentialVault:
    monkeypatch.delenv("MARKETPLACE_DEFAULT_ENVIRONMENT", raising=False)
    return CredentialVault(repository, cipher, cache=CredentialCache(), clock=clock)
