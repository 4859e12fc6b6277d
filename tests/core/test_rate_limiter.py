# tests/core/test_rate_limiter.py
"""Sliding-window limiter: budget, block, expiry, exemptions and sweeping"""

from datetime import timedelta

import pytest

from shopguard.core.security.rate_limiter import (
    ExemptionPolicy,
    RateLimitPolicy,
    RateLimiter,
    make_key,
    split_key,
)


@pytest.mark.unit
class TestBudget:

    def test_five_attempts_allowed_sixth_denied(self, limiter):
        decisions = [limiter.check("LOGIN", "anna@example.com") for _ in range(6)]

        assert [d.allowed for d in decisions] == [True] * 5 + [False]
        assert decisions[-1].retry_after == pytest.approx(30 * 60)

    def test_keys_are_independent(self, limiter):
        for _ in range(6):
            limiter.check("LOGIN", "a@example.com")

        assert limiter.check("LOGIN", "b@example.com").allowed
        assert limiter.check("CART_ADD", "a@example.com").allowed

    def test_window_resets_after_elapsing(self, limiter, clock):
        for _ in range(5):
            limiter.check("LOGIN", "anna")

        clock.advance(minutes=16)

        decision = limiter.check("LOGIN", "anna")
        assert decision.allowed
        assert limiter.get_entry(make_key("LOGIN", "anna")).count == 1

    def test_blocked_key_stays_blocked_and_frozen(self, limiter, clock):
        for _ in range(6):
            limiter.check("LOGIN", "anna")
        key = make_key("LOGIN", "anna")
        count = limiter.get_entry(key).count

        clock.advance(minutes=10)
        assert not limiter.check("LOGIN", "anna").allowed
        assert limiter.get_entry(key).count == count

    def test_block_expires_after_duration(self, limiter, clock):
        for _ in range(6):
            limiter.check("LOGIN", "anna")
        key = make_key("LOGIN", "anna")
        assert limiter.is_limited(key)

        clock.advance(minutes=30, seconds=1)

        assert not limiter.is_limited(key)
        assert limiter.get_entry(key) is None
        assert limiter.check("LOGIN", "anna").allowed

    def test_retry_after_counts_down(self, limiter, clock):
        for _ in range(6):
            limiter.check("LOGIN", "anna")
        key = make_key("LOGIN", "anna")

        clock.advance(minutes=20)

        assert limiter.retry_after(key) == pytest.approx(10 * 60)
        assert limiter.retry_after(make_key("LOGIN", "nobody")) is None

    def test_per_operation_policy(self, clock):
        limiter = RateLimiter(
            policies={"CART_ADD": RateLimitPolicy(max_attempts=2, window=timedelta(minutes=1),
                                                  block_duration=timedelta(minutes=5))},
            clock=clock,
        )

        results = [limiter.check("CART_ADD", "u1").allowed for _ in range(3)]

        assert results == [True, True, False]
        assert limiter.retry_after(make_key("CART_ADD", "u1")) == pytest.approx(300)


@pytest.mark.unit
class TestExemptions:

    def test_exact_and_prefix_exemptions(self, clock):
        limiter = RateLimiter(
            exemption=ExemptionPolicy.from_lists(["UPDATE_ADMIN_SETTINGS"], ["HERO_"]),
            clock=clock,
        )

        for _ in range(20):
            assert limiter.check("UPDATE_ADMIN_SETTINGS", "admin").exempt
            assert limiter.check("HERO_UPDATE", "admin").allowed

        assert limiter.get_metrics()["tracked_keys"] == 0
        assert not limiter.is_exempt("LOGIN")


@pytest.mark.unit
class TestHousekeeping:

    def test_reset_drops_entry(self, limiter):
        limiter.check("LOGIN", "anna")
        limiter.reset(make_key("LOGIN", "anna"))

        assert limiter.get_entry(make_key("LOGIN", "anna")) is None

    def test_clear_identity_across_operations(self, limiter):
        limiter.check("LOGIN", "u1")
        limiter.check("CART_ADD", "u1")
        limiter.check("CART_ADD", "u2")

        assert limiter.clear_identity("u1") == 2
        assert limiter.get_entry(make_key("CART_ADD", "u2")) is not None

    def test_sweep_removes_only_stale_entries(self, limiter, clock):
        limiter.check("CART_ADD", "idle")
        for _ in range(6):
            limiter.check("LOGIN", "blocked")

        clock.advance(minutes=16)
        limiter.check("CART_ADD", "fresh")

        assert limiter.sweep() == 1
        assert limiter.get_entry(make_key("LOGIN", "blocked")) is not None
        assert limiter.get_entry(make_key("CART_ADD", "fresh")) is not None

        clock.advance(minutes=16)
        assert limiter.sweep() == 2
        assert limiter.get_metrics()["tracked_keys"] == 0

    def test_on_block_called_once_per_block(self, clock):
        blocked = []
        limiter = RateLimiter(clock=clock, on_block=lambda entry: blocked.append(entry.key))

        for _ in range(8):
            limiter.check("LOGIN", "anna")

        assert blocked == ["LOGIN:anna"]

    def test_failing_block_listener_is_isolated(self, clock):
        def explode(entry):
            raise RuntimeError("listener down")

        limiter = RateLimiter(clock=clock, on_block=explode)
        for _ in range(5):
            limiter.check("LOGIN", "anna")

        assert not limiter.check("LOGIN", "anna").allowed

    def test_metrics(self, limiter):
        for _ in range(7):
            limiter.check("LOGIN", "anna")

        metrics = limiter.get_metrics()
        assert metrics["blocked_keys"] == 1
        assert metrics["total_blocks"] == 1
        assert metrics["denied"] == 2

    def test_key_helpers(self):
        assert make_key("LOGIN", "a:b") == "LOGIN:a:b"
        assert split_key("LOGIN:a:b") == ("LOGIN", "a:b")
