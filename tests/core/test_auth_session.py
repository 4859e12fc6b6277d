# tests/core/test_auth_session.py
"""
Tests for the auth session controller.

Covers the transition table, session validation (age, expiry, integrity),
profile resolution with retries, sign-in rate limiting and the single
sign-out cleanup path.
"""

import asyncio
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock

from shopguard.core.auth_session import LOGIN_OPERATION, AuthSessionController
from shopguard.core.exceptions import (
    AuthError,
    IntegrityError,
    NetworkError,
    RateLimitError,
    RecordNotFoundError,
    RemoteTimeoutError,
    StoreConflictError,
    ValidationError,
)
from shopguard.core.events import ChangeTopic
from shopguard.core.security.monitor import ThreatType
from shopguard.core.security.rate_limiter import make_key
from shopguard.models.session import AuthEventPayload, AuthEventType, AuthState, Role
from shopguard.services.auth_provider import InMemoryAuthProvider
from shopguard.services.remote_store import LOGIN_ATTEMPTS, PROFILES

USER_EMAIL = "anna@example.com"
USER_PASSWORD = "Corr3ct!Horse"


def payload_for(clock, user_id="user-anna", email=USER_EMAIL, age=timedelta(0), ttl=timedelta(hours=1)):
    now = clock()
    return AuthEventPayload(
        user_id=user_id,
        email=email,
        last_sign_in_at=now - age,
        expires_at=now + ttl,
        access_token="access",
        refresh_token="refresh",
    )


@pytest.fixture
def reasons(bus):
    """Reasons of every session change notification, in order"""
    seen = []
    bus.subscribe(ChangeTopic.SESSION, lambda event: seen.append(event.reason))
    return seen


# =============================================================================
# TRANSITION TABLE
# =============================================================================

@pytest.mark.unit
class TestTransitionTable:

    def test_table_has_no_issues(self, controller):
        assert controller.validate_fsm() == []

    def test_sign_out_accepted_from_every_state(self, controller):
        for state in AuthState:
            assert controller.can_handle(state, AuthEventType.SIGNED_OUT)

    def test_periodic_check_only_when_authenticated(self, controller):
        assert controller.can_handle(AuthState.AUTHENTICATED, AuthEventType.PERIODIC_CHECK)
        assert not controller.can_handle(AuthState.UNINITIALIZED, AuthEventType.PERIODIC_CHECK)

    async def test_unhandled_event_is_ignored(self, controller):
        state = await controller.process_event(AuthEventType.USER_UPDATED)

        assert state == AuthState.UNINITIALIZED

    def test_table_is_inspectable(self, controller):
        table = controller.get_transition_table()

        assert any(
            row["from"] == "authenticated" and row["event"] == "TOKEN_REFRESHED"
            and row["handler"] == "_handle_token_refreshed"
            for row in table
        )


# =============================================================================
# INITIALIZATION
# =============================================================================

@pytest.mark.unit
class TestInitialize:

    async def test_no_session_means_unauthenticated(self, controller, reasons):
        state = await controller.initialize()

        assert state == AuthState.UNAUTHENTICATED
        assert controller.current_session() is None
        assert reasons == ["initialized"]

    async def test_existing_session_is_validated(self, controller, provider, clock, store):
        provider.set_session(payload_for(clock))

        state = await controller.initialize()

        assert state == AuthState.AUTHENTICATED
        session = controller.current_session()
        assert session.user_id == "user-anna"
        assert session.valid
        assert store.rows(PROFILES, {"id": "user-anna"})[0]["role"] == "user"

    async def test_session_older_than_24h_is_rejected(self, controller, provider, clock):
        provider.set_session(payload_for(clock, age=timedelta(hours=25)))

        state = await controller.initialize()

        assert state == AuthState.UNAUTHENTICATED
        assert controller.current_session() is None
        assert provider.calls["sign_out"] == 1

    async def test_already_expired_provider_session(self, controller, provider, clock):
        provider.set_session(payload_for(clock, ttl=timedelta(seconds=-1)))

        assert await controller.initialize() == AuthState.UNAUTHENTICATED

    async def test_provider_unreachable_means_error(self, controller, provider):
        provider.fail_next("get_session", NetworkError("down"))

        with pytest.raises(NetworkError):
            await controller.initialize()

        assert controller.state == AuthState.ERROR

    async def test_can_initialize_again_after_error(self, controller, provider):
        provider.fail_next("get_session", NetworkError("down"))
        with pytest.raises(NetworkError):
            await controller.initialize()

        assert await controller.initialize() == AuthState.UNAUTHENTICATED


# =============================================================================
# SIGN-IN AND RATE LIMITING
# =============================================================================

@pytest.mark.unit
class TestSignIn:

    async def test_successful_sign_in(self, controller, store, reasons):
        session = await controller.sign_in("  Anna@Example.com ", USER_PASSWORD)

        assert session.user_id == "user-anna"
        assert session.email == USER_EMAIL
        assert session.role == Role.USER
        assert controller.state == AuthState.AUTHENTICATED
        assert controller.session_epoch == 1
        assert reasons == ["signed_in"]

        attempts = store.rows(LOGIN_ATTEMPTS)
        assert len(attempts) == 1
        assert attempts[0]["email"] == USER_EMAIL
        assert attempts[0]["success"] is True

    async def test_profile_created_once(self, controller, store):
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        profiles = store.rows(PROFILES)
        assert len(profiles) == 1
        assert profiles[0] == {"id": "user-anna", "full_name": USER_EMAIL, "role": "user"}
        assert controller.profile.full_name == USER_EMAIL

    async def test_admin_profile(self, controller, store):
        store.seed(PROFILES, [{"id": "user-anna", "full_name": "Anna", "role": "admin"}])

        await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        assert controller.is_admin()

    async def test_invalid_email_never_reaches_provider(self, controller, provider):
        with pytest.raises(ValidationError):
            await controller.sign_in("not-an-email", USER_PASSWORD)

        assert "sign_in" not in provider.calls

    async def test_wrong_password(self, controller, store):
        with pytest.raises(AuthError) as exc_info:
            await controller.sign_in(USER_EMAIL, "wrong")

        assert exc_info.value.reason == "credentials"
        assert controller.current_session() is None
        assert store.rows(LOGIN_ATTEMPTS)[0]["success"] is False

    async def test_sixth_attempt_is_rate_limited(self, controller, provider, monitor, store):
        for _ in range(5):
            with pytest.raises(AuthError):
                await controller.sign_in(USER_EMAIL, "wrong")

        with pytest.raises(RateLimitError) as exc_info:
            await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        assert provider.calls["sign_in"] == 5
        assert exc_info.value.retry_after == pytest.approx(30 * 60)
        assert monitor.threats_by_type(ThreatType.BRUTE_FORCE)
        assert len(store.rows(LOGIN_ATTEMPTS)) == 5

    async def test_block_lifts_after_block_duration(self, controller, clock):
        for _ in range(5):
            with pytest.raises(AuthError):
                await controller.sign_in(USER_EMAIL, "wrong")
        with pytest.raises(RateLimitError):
            await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        clock.advance(minutes=31)

        session = await controller.sign_in(USER_EMAIL, USER_PASSWORD)
        assert session.user_id == "user-anna"

    async def test_success_resets_login_counter(self, controller, limiter):
        for _ in range(3):
            with pytest.raises(AuthError):
                await controller.sign_in(USER_EMAIL, "wrong")

        await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        assert limiter.get_entry(make_key(LOGIN_OPERATION, USER_EMAIL)) is None

    async def test_login_audit_failure_does_not_block_sign_in(self, controller, store):
        store.fail_next("insert", LOGIN_ATTEMPTS, NetworkError("audit down"))

        session = await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        assert session is not None

    async def test_provider_timeout(self, store, limiter, csrf, clock, no_sleep):
        slow = InMemoryAuthProvider(clock=clock, latency=0.5)
        slow.add_user(USER_EMAIL, USER_PASSWORD)
        controller = AuthSessionController(
            slow, store, limiter, csrf, clock=clock, sleep=no_sleep, remote_timeout=0.05
        )

        with pytest.raises(RemoteTimeoutError):
            await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        assert controller.current_session() is None


@pytest.mark.unit
class TestSignUp:

    async def test_sign_up_creates_profile_with_name(self, controller, store):
        session = await controller.sign_up("new@example.com", "Sm0ke!Test#2024", "  Neue <b>Kundin</b> ")

        assert session.email == "new@example.com"
        profile = store.rows(PROFILES, {"id": session.user_id})[0]
        assert profile["full_name"] == "Neue Kundin"

    async def test_weak_password_rejected_before_provider(self, controller, provider):
        with pytest.raises(ValidationError) as exc_info:
            await controller.sign_up("new@example.com", "weak")

        assert exc_info.value.field == "password"
        assert "sign_up" not in provider.calls

    async def test_existing_account(self, controller):
        with pytest.raises(AuthError) as exc_info:
            await controller.sign_up(USER_EMAIL, "Sm0ke!Test#2024")

        assert exc_info.value.reason == "exists"

    async def test_confirmation_pending_returns_none(self, controller, provider):
        provider.sign_up = AsyncMock(return_value=None)

        assert await controller.sign_up("new@example.com", "Sm0ke!Test#2024") is None
        assert controller.state == AuthState.UNINITIALIZED


# =============================================================================
# PROFILE RESOLUTION
# =============================================================================

@pytest.mark.unit
class TestProfileResolution:

    async def test_transient_failure_is_retried(self, controller, store, no_sleep):
        store.seed(PROFILES, [{"id": "user-anna", "full_name": "Anna", "role": "user"}])
        store.fail_next("select_one", PROFILES, NetworkError("blip"))

        session = await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        assert session is not None
        assert store.call_count("select_one", PROFILES) == 2
        no_sleep.assert_awaited_once_with(1.0)

    async def test_retry_exhaustion_leaves_error_state(self, controller, store, no_sleep):
        store.select_one = AsyncMock(side_effect=NetworkError("store down"))

        with pytest.raises(NetworkError):
            await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        assert store.select_one.await_count == 3
        assert no_sleep.await_count == 2
        assert controller.state == AuthState.ERROR
        assert controller.current_session() is None

    async def test_creation_conflict_reads_winner(self, controller, store):
        store.select_one = AsyncMock(side_effect=[
            RecordNotFoundError("none yet"),
            {"id": "user-anna", "full_name": "Anna", "role": "admin"},
        ])
        store.fail_next("insert", PROFILES, StoreConflictError("duplicate"))

        await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        assert controller.is_admin()

    async def test_user_updated_refreshes_role(self, controller, store):
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)
        await store.update(PROFILES, {"id": "user-anna"}, {"role": "admin"})

        await controller.process_event(
            AuthEventType.USER_UPDATED,
            AuthEventPayload(user_id="user-anna", email=USER_EMAIL),
        )

        assert controller.is_admin()
        assert controller.current_session().role == Role.ADMIN


# =============================================================================
# INTEGRITY
# =============================================================================

@pytest.mark.unit
class TestIntegrity:

    async def test_incomplete_payload(self, controller, clock, monitor, csrf):
        csrf.generate()
        incomplete = AuthEventPayload(user_id="user-anna", expires_at=clock() + timedelta(hours=1))

        with pytest.raises(IntegrityError) as exc_info:
            await controller.process_event(AuthEventType.SIGNED_IN, incomplete)

        assert exc_info.value.missing_fields == ["email"]
        assert controller.state == AuthState.ERROR
        assert csrf.peek() is None
        assert monitor.threats_by_type(ThreatType.INTEGRITY)

    async def test_refresh_for_other_user(self, controller, clock):
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        with pytest.raises(IntegrityError):
            await controller.process_event(
                AuthEventType.TOKEN_REFRESHED, payload_for(clock, user_id="user-mallory")
            )

        assert controller.state == AuthState.ERROR
        assert controller.current_session() is None

    async def test_recovers_from_error_with_sign_in(self, controller, clock):
        with pytest.raises(IntegrityError):
            await controller.process_event(AuthEventType.SIGNED_IN, None)

        session = await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        assert session is not None
        assert controller.state == AuthState.AUTHENTICATED


# =============================================================================
# SESSION CHANGES
# =============================================================================

@pytest.mark.unit
class TestSessionChanges:

    async def test_duplicate_signed_in_only_moves_expiry(self, controller, clock):
        first = await controller.sign_in(USER_EMAIL, USER_PASSWORD)
        epoch = controller.session_epoch

        clock.advance(minutes=10)
        await controller.process_event(AuthEventType.SIGNED_IN, payload_for(clock))

        session = controller.current_session()
        assert controller.session_epoch == epoch
        assert session.expires_at > first.expires_at
        assert session.issued_at == first.issued_at

    async def test_different_user_replaces_session(self, controller, clock, limiter, store):
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)
        limiter.check("CART_ADD", "user-anna")
        epoch = controller.session_epoch

        await controller.process_event(
            AuthEventType.SIGNED_IN, payload_for(clock, user_id="user-bob", email="bob@example.com")
        )

        assert controller.current_session().user_id == "user-bob"
        assert controller.session_epoch > epoch + 1
        assert limiter.get_entry(make_key("CART_ADD", "user-anna")) is None

    async def test_concurrent_validations_share_one_run(self, controller, clock, store):
        payload = payload_for(clock)

        await asyncio.gather(
            controller.process_event(AuthEventType.SIGNED_IN, payload),
            controller.process_event(AuthEventType.SIGNED_IN, payload),
        )

        assert controller.state == AuthState.AUTHENTICATED
        assert store.call_count("insert", PROFILES) == 1
        assert controller.get_metrics()["validations"]["joined"] == 1

    async def test_token_refresh_extends_expiry(self, controller, clock):
        first = await controller.sign_in(USER_EMAIL, USER_PASSWORD)
        clock.advance(minutes=50)

        refreshed = await controller.refresh()

        assert refreshed.expires_at > first.expires_at
        assert refreshed.user_id == first.user_id

    async def test_sign_out_clears_security_state(self, controller, csrf, limiter, reasons, provider):
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)
        csrf.current()
        limiter.check("CART_ADD", "user-anna")

        await controller.sign_out()

        assert controller.state == AuthState.UNAUTHENTICATED
        assert controller.current_session() is None
        assert controller.profile is None
        assert csrf.peek() is None
        assert limiter.get_metrics()["tracked_keys"] == 0
        assert reasons[-1] == "signed_out"
        assert provider.calls["sign_out"] == 1

    async def test_sign_out_survives_provider_failure(self, controller, provider):
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)
        provider.fail_next("sign_out", NetworkError("down"))

        await controller.sign_out()

        assert controller.current_session() is None


# =============================================================================
# EXPIRY, AGE AND REVOCATION
# =============================================================================

@pytest.mark.unit
class TestSessionChecks:

    async def test_expired_session_is_torn_down_on_read(self, controller, clock, csrf):
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)
        csrf.current()

        clock.advance(minutes=61)

        assert controller.current_session() is None
        assert controller.state == AuthState.UNAUTHENTICATED
        assert csrf.peek() is None

    async def test_expiry_on_read_clears_rate_limit_identity(self, controller, clock, limiter):
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)
        limiter.check("CART_ADD", "user-anna")

        clock.advance(minutes=61)

        assert controller.current_session() is None
        assert limiter.get_entry(make_key("CART_ADD", "user-anna")) is None

    async def test_periodic_check_enforces_max_age(self, controller, provider, clock):
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        clock.advance(hours=24)
        state = await controller.check_session()

        assert state == AuthState.UNAUTHENTICATED
        assert provider.calls["sign_out"] == 1

    async def test_periodic_check_detects_revocation(self, controller, provider, reasons):
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)
        provider.revoke()

        state = await controller.check_session()

        assert state == AuthState.UNAUTHENTICATED
        assert reasons[-1] == "revoked"

    async def test_periodic_check_tolerates_unreachable_provider(self, controller, provider):
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)
        provider.fail_next("get_session", NetworkError("down"))

        state = await controller.check_session()

        assert state == AuthState.AUTHENTICATED

    async def test_healthy_session_survives_check(self, controller, clock):
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)
        clock.advance(minutes=30)

        assert await controller.check_session() == AuthState.AUTHENTICATED


# =============================================================================
# PROVIDER SUBSCRIPTION
# =============================================================================

@pytest.mark.integration
class TestProviderEvents:

    async def test_sign_in_with_subscription_validates_once(self, controller, store):
        controller.attach()

        await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        assert controller.state == AuthState.AUTHENTICATED
        assert store.call_count("insert", PROFILES) == 1

    async def test_provider_sign_out_event(self, controller, provider):
        controller.attach()
        await controller.sign_in(USER_EMAIL, USER_PASSWORD)

        await provider.emit(AuthEventType.SIGNED_OUT)

        assert controller.state == AuthState.UNAUTHENTICATED

    async def test_bad_provider_event_is_logged_not_raised(self, controller, provider):
        controller.attach()

        await provider.emit(AuthEventType.SIGNED_IN, AuthEventPayload(user_id="x"))

        assert controller.state == AuthState.ERROR

    async def test_stop_detaches(self, controller, provider):
        controller.start()
        await controller.stop()

        await provider.emit(AuthEventType.SIGNED_OUT)

        assert controller.state == AuthState.UNINITIALIZED
