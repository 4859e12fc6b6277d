# tests/services/test_secure_gateway.py

import asyncio
from datetime import timedelta

import pytest

from shopguard.core.exceptions import AuthError, RateLimitError, RemoteTimeoutError
from shopguard.core.security.monitor import ThreatType
from shopguard.core.security.rate_limiter import RateLimitPolicy, RateLimiter
from shopguard.services.secure_gateway import SecureGateway


async def echo(session):
    return session.user_id


@pytest.mark.unit
class TestGuard:

    def test_requires_session(self, gateway):
        with pytest.raises(AuthError) as exc_info:
            gateway.guard("CART_ADD")

        assert exc_info.value.reason == "unauthenticated"
        assert gateway.get_metrics()["rejected"] == 1

    async def test_valid_csrf_token(self, gateway, csrf, signed_in):
        token = csrf.current().value

        session = gateway.guard("CART_ADD", csrf_token=token)

        assert session.user_id == signed_in.user_id

    async def test_wrong_csrf_token_is_rejected_and_reported(self, gateway, csrf, monitor, signed_in):
        csrf.current()

        with pytest.raises(AuthError) as exc_info:
            gateway.guard("CART_ADD", csrf_token="forged")

        assert exc_info.value.reason == "csrf"
        assert monitor.threats_by_type(ThreatType.CSRF)

    async def test_reads_skip_csrf(self, gateway, signed_in):
        assert gateway.guard("CART_LOAD", csrf_token="anything", mutation=False)

    async def test_rate_limited_operation(self, controller, csrf, clock, signed_in):
        limiter = RateLimiter(
            policies={"CART_ADD": RateLimitPolicy(max_attempts=1, window=timedelta(minutes=1))},
            clock=clock,
        )
        gateway = SecureGateway(controller, limiter, csrf)

        gateway.guard("CART_ADD")
        with pytest.raises(RateLimitError) as exc_info:
            gateway.guard("CART_ADD")

        assert exc_info.value.operation == "CART_ADD"


@pytest.mark.unit
class TestExecute:

    async def test_runs_call_with_session(self, gateway, signed_in):
        result = await gateway.execute("CART_ADD", echo)

        assert result == signed_in.user_id
        assert gateway.get_metrics()["executed"] == 1

    async def test_call_not_run_when_guard_fails(self, gateway):
        calls = []

        async def call(session):
            calls.append(session)

        with pytest.raises(AuthError):
            await gateway.execute("CART_ADD", call)

        assert calls == []

    async def test_timeout(self, controller, limiter, csrf, signed_in):
        gateway = SecureGateway(controller, limiter, csrf, timeout=0.01)

        async def slow(session):
            await asyncio.sleep(1)

        with pytest.raises(RemoteTimeoutError):
            await gateway.execute("CART_ADD", slow)

    async def test_rotates_token_close_to_expiry(self, gateway, csrf, clock, signed_in):
        old = csrf.current().value
        clock.advance(minutes=26)

        await gateway.execute("CART_ADD", echo, csrf_token=old)

        assert csrf.current().value != old
