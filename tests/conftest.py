# tests/conftest.py
"""
Shared fixtures for the storefront core tests.

Everything runs against the in-memory collaborators and a manually
advanced clock, so no test depends on wall time or a network.
"""

from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock

from shopguard.core.auth_session import AuthSessionController
from shopguard.core.config import Settings
from shopguard.core.events import ChangeBus
from shopguard.core.retry import RetryPolicy
from shopguard.core.security.csrf import CSRFTokenManager
from shopguard.core.security.monitor import SecurityMonitor
from shopguard.core.security.rate_limiter import RateLimiter
from shopguard.services.auth_provider import InMemoryAuthProvider
from shopguard.services.remote_store import PRODUCTS, InMemoryRemoteStore

USER_EMAIL = "anna@example.com"
USER_PASSWORD = "Corr3ct!Horse"


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider(clock):
    """In-memory auth provider with one registered user"""
    p = InMemoryAuthProvider(clock=clock, session_ttl=timedelta(hours=1))
    p.add_user(USER_EMAIL, USER_PASSWORD, user_id="user-anna")
    return p


@pytest.fixture
def store():
    s = InMemoryRemoteStore()
    s.seed(PRODUCTS, [
        {"id": "p-1", "name": "Diver 300", "brand": "Oceanic", "price": 249.5, "images": ["d300.jpg"]},
        {"id": "p-2", "name": "Field Watch", "brand": "Trail", "price": 120.0, "images": []},
    ])
    return s


@pytest.fixture
def monitor(clock):
    return SecurityMonitor(clock=clock)


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


@pytest.fixture
def csrf(clock):
    return CSRFTokenManager(clock=clock)


@pytest.fixture
def bus(clock):
    return ChangeBus(clock=clock)


@pytest.fixture
def no_sleep():
    """Awaitable sleep replacement so retries do not wait"""
    return AsyncMock()


@pytest.fixture
def controller(provider, store, limiter, csrf, bus, monitor, clock, no_sleep):
    return AuthSessionController(
        provider=provider,
        store=store,
        rate_limiter=limiter,
        csrf=csrf,
        bus=bus,
        monitor=monitor,
        clock=clock,
        sleep=no_sleep,
        profile_retry=RetryPolicy(max_attempts=3, delay=1.0),
        remote_timeout=2.0,
    )


@pytest.fixture
def test_settings():
    """Settings independent of the environment and any .env file"""
    return Settings(_env_file=None, SUPABASE_URL=None, SUPABASE_ANON_KEY=None)
