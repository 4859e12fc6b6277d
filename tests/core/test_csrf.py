# tests/core/test_csrf.py

from datetime import timedelta

import pytest

from shopguard.core.security.csrf import CSRFTokenManager


@pytest.mark.unit
class TestCSRFTokenManager:
    """Token issue, validation, rotation and expiry"""

    def test_current_issues_lazily(self, csrf):
        assert csrf.peek() is None

        token = csrf.current()

        assert csrf.peek() == token
        assert csrf.current().value == token.value
        assert len(token.value) >= 32

    def test_validate_accepts_current_token(self, csrf):
        token = csrf.generate()

        assert csrf.validate(token.value)

    @pytest.mark.parametrize("candidate", [None, "", "wrong-token", 42, "tökén", "\udcff"])
    def test_validate_rejects_bad_candidates(self, csrf, candidate):
        csrf.generate()

        assert not csrf.validate(candidate)

    def test_generate_invalidates_previous_token(self, csrf):
        old = csrf.generate()
        new = csrf.generate()

        assert old.value != new.value
        assert not csrf.validate(old.value)
        assert csrf.validate(new.value)

    def test_expired_token_is_renewed_on_read(self, csrf, clock):
        old = csrf.generate()
        clock.advance(minutes=31)

        assert not csrf.validate(old.value)
        renewed = csrf.peek()
        assert renewed is not None and renewed.value != old.value

    def test_should_refresh_near_expiry(self, clock):
        manager = CSRFTokenManager(
            lifetime=timedelta(minutes=30),
            refresh_threshold=timedelta(minutes=5),
            clock=clock,
        )
        assert manager.should_refresh()

        manager.generate()
        assert not manager.should_refresh()

        clock.advance(minutes=26)
        assert manager.should_refresh()

    def test_rotate_and_clear(self, csrf):
        first = csrf.generate()
        rotated = csrf.rotate()

        assert rotated.value != first.value
        csrf.clear()
        assert csrf.peek() is None

    def test_purge_expired(self, csrf, clock):
        csrf.generate()
        assert not csrf.purge_expired()

        clock.advance(minutes=30)

        assert csrf.purge_expired()
        assert csrf.peek() is None

    def test_metrics(self, csrf):
        csrf.generate()
        csrf.validate("nope")

        metrics = csrf.get_metrics()
        assert metrics["tokens_generated"] == 1
        assert metrics["validation_failures"] == 1
        assert metrics["has_token"] == 1

    def test_token_value_hidden_from_repr(self, csrf):
        token = csrf.generate()

        assert token.value not in repr(token)
