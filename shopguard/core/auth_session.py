# shopguard/core/auth_session.py
"""
Auth session controller - FSM that turns auth provider events into a
validated Session.

The transition table is explicit data: every (state, event) pair that
does something is registered in ``_setup_transitions`` and can be listed
without a live provider. Pairs missing from the table are logged and
ignored, since provider events arrive in any order and may repeat.

This controller is the only writer of Session and Profile. The sign-out
path is the only place that clears cross-cutting security state (CSRF
token, rate-limit entries); expiry and integrity failures route through
it.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from shopguard.core.events import ChangeBus, ChangeTopic, Subscriber, Unsubscribe
from shopguard.core.exceptions import (
    AuthError,
    IntegrityError,
    NetworkError,
    RecordNotFoundError,
    StoreConflictError,
    StorefrontError,
    ValidationError,
    rate_limit_error,
)
from shopguard.core.retry import RetryPolicy, Sleep, call_with_timeout, retry_async
from shopguard.core.security.csrf import CSRFTokenManager
from shopguard.core.security.monitor import SecurityMonitor, Severity, ThreatType
from shopguard.core.security.password_policy import ensure_strong_password
from shopguard.core.security.rate_limiter import RateLimiter, make_key
from shopguard.core.security.sanitizer import sanitize_email, sanitize_optional
from shopguard.core.single_flight import SharedFlight
from shopguard.core.timeutils import Clock, utcnow
from shopguard.models.session import (
    AuthEventPayload,
    AuthEventType,
    AuthState,
    Profile,
    Role,
    Session,
)
from shopguard.services.auth_provider import AuthProvider
from shopguard.services.remote_store import LOGIN_ATTEMPTS, PROFILES, RemoteStore

logger = logging.getLogger(__name__)

LOGIN_OPERATION = "LOGIN"
SIGN_UP_OPERATION = "SIGN_UP"

TransitionHandler = Callable[[Optional[AuthEventPayload]], Awaitable[AuthState]]


@dataclass
class Transition:
    """Represents a state transition"""
    from_state: AuthState
    event: AuthEventType
    targets: Tuple[AuthState, ...]
    handler: TransitionHandler
    description: str = ""


class AuthSessionController:
    """
    Session state machine.

    States: UNINITIALIZED -> VALIDATING -> {AUTHENTICATED, UNAUTHENTICATED} -> ERROR
    Inputs: provider events (SIGNED_IN, SIGNED_OUT, TOKEN_REFRESHED,
    USER_UPDATED) and local events (INITIALIZE, PERIODIC_CHECK).
    """

    def __init__(
        self,
        provider: AuthProvider,
        store: RemoteStore,
        rate_limiter: RateLimiter,
        csrf: CSRFTokenManager,
        bus: Optional[ChangeBus] = None,
        monitor: Optional[SecurityMonitor] = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
        max_session_age: timedelta = timedelta(hours=24),
        check_interval: float = 300.0,
        profile_retry: RetryPolicy = RetryPolicy(max_attempts=3, delay=1.0),
        remote_timeout: Optional[float] = 8.0
    ):
        """
        Initialize the controller.

        Args:
            provider: External auth collaborator
            store: Remote store holding `profiles` and `login_attempts`
            rate_limiter: Guards sign-in and sign-up
            csrf: Token manager, cleared on sign-out
            bus: Change bus for session notifications
            monitor: Optional threat sink
            clock: Time source
            sleep: Awaitable sleep used between profile fetch retries
            max_session_age: Maximum time since last sign-in
            check_interval: Seconds between periodic re-checks
            profile_retry: Attempt budget for profile resolution
            remote_timeout: Time budget per remote call
        """
        self.provider = provider
        self.store = store
        self.rate_limiter = rate_limiter
        self.csrf = csrf
        self.bus = bus or ChangeBus(clock=clock)
        self.monitor = monitor
        self._clock = clock
        self._sleep = sleep
        self.max_session_age = max_session_age
        self.check_interval = check_interval
        self.profile_retry = profile_retry
        self.remote_timeout = remote_timeout

        self._state = AuthState.UNINITIALIZED
        self._session: Optional[Session] = None
        self._profile: Optional[Profile] = None
        self._epoch = 0
        self._validating_user: Optional[str] = None
        self._sign_in_pending: Optional[str] = None
        self._profile_hints: Dict[str, str] = {}

        self._validations = SharedFlight("session-validation")
        self._unsubscribe_provider: Optional[Callable[[], None]] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

        self.transitions: List[Transition] = []
        self._transition_map: Dict[Tuple[AuthState, AuthEventType], Transition] = {}
        self._setup_transitions()
        self._build_transition_map()

    # ===========================================
    # TRANSITION TABLE
    # ===========================================

    def _setup_transitions(self) -> None:
        """Define all state transitions with their handlers"""
        all_states = list(AuthState)
        settled = [AuthState.UNAUTHENTICATED, AuthState.ERROR, AuthState.UNINITIALIZED]

        # Initialization
        for state in [AuthState.UNINITIALIZED, AuthState.UNAUTHENTICATED, AuthState.ERROR]:
            self.add_transition(
                state, AuthEventType.INITIALIZE,
                (AuthState.AUTHENTICATED, AuthState.UNAUTHENTICATED, AuthState.ERROR),
                self._handle_initialize,
                f"Load provider session from {state.value}"
            )

        # Sign-in is accepted from every state; duplicates are idempotent
        for state in all_states:
            self.add_transition(
                state, AuthEventType.SIGNED_IN,
                (AuthState.AUTHENTICATED, AuthState.UNAUTHENTICATED, AuthState.ERROR),
                self._handle_signed_in,
                f"Validate sign-in from {state.value}"
            )

        # Sign-out clears everything, from every state
        for state in all_states:
            self.add_transition(
                state, AuthEventType.SIGNED_OUT,
                (AuthState.UNAUTHENTICATED,),
                self._handle_signed_out,
                f"Full local cleanup from {state.value}"
            )

        # Token refresh
        self.add_transition(
            AuthState.AUTHENTICATED, AuthEventType.TOKEN_REFRESHED,
            (AuthState.AUTHENTICATED, AuthState.ERROR),
            self._handle_token_refreshed,
            "Extend expiry for the same user, integrity failure otherwise"
        )
        for state in settled + [AuthState.VALIDATING]:
            self.add_transition(
                state, AuthEventType.TOKEN_REFRESHED,
                (AuthState.AUTHENTICATED, AuthState.UNAUTHENTICATED, AuthState.ERROR),
                self._handle_signed_in,
                f"Refresh without local session from {state.value} -> treated as sign-in"
            )

        # Profile changes
        self.add_transition(
            AuthState.AUTHENTICATED, AuthEventType.USER_UPDATED,
            (AuthState.AUTHENTICATED, AuthState.ERROR),
            self._handle_user_updated,
            "Re-resolve profile (role may change)"
        )

        # Periodic re-check
        self.add_transition(
            AuthState.AUTHENTICATED, AuthEventType.PERIODIC_CHECK,
            (AuthState.AUTHENTICATED, AuthState.UNAUTHENTICATED),
            self._handle_periodic_check,
            "Detect remote revocation, expiry and session age"
        )

    def add_transition(
        self,
        from_state: AuthState,
        event: AuthEventType,
        targets: Tuple[AuthState, ...],
        handler: TransitionHandler,
        description: str = ""
    ) -> None:
        """Add a new transition to the FSM"""
        self.transitions.append(Transition(
            from_state=from_state,
            event=event,
            targets=targets,
            handler=handler,
            description=description
        ))

    def _build_transition_map(self) -> None:
        """Build fast lookup map for transitions"""
        self._transition_map.clear()
        for transition in self.transitions:
            key = (transition.from_state, transition.event)
            if key in self._transition_map:
                logger.warning(
                    f"Duplicate transition for {transition.from_state.value} + "
                    f"{transition.event.value}, last one wins"
                )
            self._transition_map[key] = transition

    def can_handle(self, state: AuthState, event: AuthEventType) -> bool:
        return (state, event) in self._transition_map

    def get_transition_table(self) -> List[Dict[str, Any]]:
        """Transition table for inspection and debugging"""
        return [
            {
                "from": t.from_state.value,
                "event": t.event.value,
                "targets": [s.value for s in t.targets],
                "handler": t.handler.__name__,
                "description": t.description,
            }
            for t in self.transitions
        ]

    def validate_fsm(self) -> List[str]:
        """Check the table for unreachable states and dead ends"""
        issues = []
        reachable = {AuthState.UNINITIALIZED}
        changed = True
        while changed:
            changed = False
            for t in self.transitions:
                if t.from_state in reachable:
                    new = set(t.targets) - reachable
                    if new:
                        reachable |= new
                        changed = True
        # VALIDATING is entered inside handlers, not as a table target
        unreachable = set(AuthState) - reachable - {AuthState.VALIDATING}
        if unreachable:
            issues.append(f"Unreachable states: {sorted(s.value for s in unreachable)}")

        for state in AuthState:
            if not any(t.from_state == state for t in self.transitions):
                issues.append(f"No transitions out of {state.value}")
        return issues

    # ===========================================
    # EVENT PROCESSING
    # ===========================================

    async def process_event(
        self,
        event: AuthEventType,
        payload: Optional[AuthEventPayload] = None
    ) -> AuthState:
        """
        Dispatch an event through the transition table.

        Returns:
            The state after handling

        Raises:
            Whatever the handler surfaces (IntegrityError, AuthError,
            NetworkError); internal state is consistent either way.
        """
        state = self._state
        transition = self._transition_map.get((state, event))
        if transition is None:
            logger.info(f"⏭️ Ignoring {event.value} in state {state.value}")
            return state

        logger.debug(f"Processing {event.value} from {state.value}")
        return await transition.handler(payload)

    async def _on_provider_event(
        self,
        event: AuthEventType,
        payload: Optional[AuthEventPayload]
    ) -> None:
        """Subscription entry point; errors are logged, never raised"""
        if (
            event == AuthEventType.SIGNED_IN
            and self._sign_in_pending is not None
            and payload is not None
            and payload.email == self._sign_in_pending
        ):
            logger.debug("SIGNED_IN for an active sign_in call, handled there")
            return

        logger.info(f"🔔 Auth event: {event.value}")
        try:
            await self.process_event(event, payload)
        except StorefrontError as e:
            logger.error(f"❌ Auth event {event.value} failed: {e}")

    # ===========================================
    # HANDLERS
    # ===========================================

    async def _handle_initialize(self, payload: Optional[AuthEventPayload]) -> AuthState:
        self._set_state(AuthState.VALIDATING)
        try:
            current = await call_with_timeout(
                self.provider.get_session(), self.remote_timeout, "get session"
            )
        except NetworkError:
            self._set_state(AuthState.ERROR)
            await self._notify("initialize_failed")
            raise

        if current is None:
            self._set_state(AuthState.UNAUTHENTICATED)
            await self._notify("initialized")
            return self._state

        return await self._handle_signed_in(current)

    async def _handle_signed_in(self, payload: Optional[AuthEventPayload]) -> AuthState:
        if payload is None or payload.missing_fields():
            missing = payload.missing_fields() if payload else list(AuthEventPayload.REQUIRED_FIELDS)
            await self._integrity_failure("Session payload is incomplete", missing_fields=missing)

        # Duplicate for the user we already hold: only the expiry moves
        if (
            self._state == AuthState.AUTHENTICATED
            and self._session is not None
            and self._session.user_id == payload.user_id
        ):
            self._apply_refresh(payload)
            logger.debug("Duplicate SIGNED_IN for current user, expiry refreshed")
            return self._state

        current_user = self._session.user_id if self._session else self._validating_user
        if current_user is not None and current_user != payload.user_id:
            logger.info("👥 Sign-in for a different user, clearing previous session first")
            await self._sign_out_locally("user_switched")

        return await self._validations.run(payload.user_id, lambda: self._validate(payload))

    async def _handle_signed_out(self, payload: Optional[AuthEventPayload]) -> AuthState:
        await self._sign_out_locally("signed_out")
        return self._state

    async def _handle_token_refreshed(self, payload: Optional[AuthEventPayload]) -> AuthState:
        if payload is None or payload.missing_fields():
            missing = payload.missing_fields() if payload else list(AuthEventPayload.REQUIRED_FIELDS)
            await self._integrity_failure("Refreshed session is incomplete", missing_fields=missing)

        if self._session is None or payload.user_id != self._session.user_id:
            await self._integrity_failure(
                "Refreshed session belongs to a different user",
                details={"reason": "user_mismatch"}
            )

        self._apply_refresh(payload)
        logger.info("🔄 Session token refreshed")
        await self._notify("token_refreshed")
        return self._state

    async def _handle_user_updated(self, payload: Optional[AuthEventPayload]) -> AuthState:
        session = self._session
        if session is None:
            return self._state
        if payload is not None and payload.user_id and payload.user_id != session.user_id:
            await self._integrity_failure(
                "Updated user does not match the session",
                details={"reason": "user_mismatch"}
            )

        epoch = self._epoch
        try:
            profile = await self._resolve_profile(
                payload if payload and payload.user_id else AuthEventPayload(
                    user_id=session.user_id, email=session.email
                )
            )
        except StorefrontError as e:
            logger.warning(f"⚠️ Profile refresh failed, keeping cached profile: {e}")
            return self._state

        if epoch != self._epoch or self._session is None:
            return self._state

        self._profile = profile
        if payload is not None and payload.email:
            self._session = self._session.model_copy(update={"email": payload.email})
        if self._session.role != profile.role:
            logger.info(f"🔑 Role changed to {profile.role.value}")
        self._session = self._session.model_copy(update={"role": profile.role})
        await self._notify("user_updated")
        return self._state

    async def _handle_periodic_check(self, payload: Optional[AuthEventPayload]) -> AuthState:
        session = self._session
        if session is None:
            return self._state

        now = self._clock()
        if session.last_sign_in_at and now - session.last_sign_in_at >= self.max_session_age:
            logger.warning("⏰ Session exceeded maximum age, forcing sign-out")
            await self._force_sign_out("session_too_old")
            return self._state

        if session.is_expired(now):
            logger.info("⏰ Session expired")
            await self._sign_out_locally("expired")
            return self._state

        try:
            remote = await call_with_timeout(
                self.provider.get_session(), self.remote_timeout, "get session"
            )
        except NetworkError as e:
            logger.warning(f"⚠️ Periodic session check could not reach provider: {e}")
            return self._state

        if remote is None and self._state == AuthState.AUTHENTICATED:
            logger.warning("🚪 Session revoked elsewhere, signing out locally")
            await self._sign_out_locally("revoked")
        return self._state

    # ===========================================
    # VALIDATION & PROFILE RESOLUTION
    # ===========================================

    async def _validate(self, payload: AuthEventPayload) -> AuthState:
        epoch = self._epoch
        self._validating_user = payload.user_id
        self._set_state(AuthState.VALIDATING)

        try:
            now = self._clock()
            last_sign_in = payload.last_sign_in_at or now
            if now - last_sign_in >= self.max_session_age:
                logger.warning("⏰ Session older than maximum age, forcing sign-out")
                await self._force_sign_out("session_too_old")
                return self._state

            if payload.expires_at <= now:
                logger.info("⏰ Provider session already expired")
                await self._sign_out_locally("expired")
                return self._state

            try:
                profile = await self._resolve_profile(payload)
            except StorefrontError:
                if epoch == self._epoch:
                    self._drop_session()
                    self._set_state(AuthState.ERROR)
                    await self._notify("validation_failed")
                raise

            if epoch != self._epoch:
                logger.info("🗑️ Discarding stale validation result")
                return self._state

            self._epoch += 1
            self._profile = profile
            self._session = Session(
                user_id=payload.user_id,
                email=payload.email,
                role=profile.role,
                issued_at=now,
                expires_at=payload.expires_at,
                last_sign_in_at=payload.last_sign_in_at,
                valid=True,
                access_token=payload.access_token,
                refresh_token=payload.refresh_token,
            )
            self._set_state(AuthState.AUTHENTICATED)
            logger.info(f"✅ User validated ({payload.user_id[:8]}..., role={profile.role.value})")
            await self._notify("signed_in")
            return self._state
        finally:
            if self._validating_user == payload.user_id:
                self._validating_user = None

    async def _resolve_profile(self, payload: AuthEventPayload) -> Profile:
        """
        Fetch the profile with bounded retries.

        "Row not found" is not retried; it short-circuits into creation.
        Transient failures exhaust the retry budget and surface.
        """
        async def fetch() -> Profile:
            record = await call_with_timeout(
                self.store.select_one(PROFILES, {"id": payload.user_id}),
                self.remote_timeout,
                "fetch profile"
            )
            return Profile.from_record(record)

        try:
            return await retry_async(
                fetch,
                policy=self.profile_retry,
                retry_on=(NetworkError,),
                give_up_on=(RecordNotFoundError,),
                sleep=self._sleep,
                operation_name="profile fetch"
            )
        except RecordNotFoundError:
            logger.info("👤 No profile found, creating one")
            return await self._create_profile(payload)

    async def _create_profile(self, payload: AuthEventPayload) -> Profile:
        full_name = self._profile_hints.pop(payload.user_id, None) or payload.email
        record = {"id": payload.user_id, "full_name": full_name, "role": Role.USER.value}
        try:
            created = await call_with_timeout(
                self.store.insert(PROFILES, record), self.remote_timeout, "create profile"
            )
        except StoreConflictError:
            # Another client created it first
            try:
                created = await call_with_timeout(
                    self.store.select_one(PROFILES, {"id": payload.user_id}),
                    self.remote_timeout,
                    "fetch profile"
                )
            except StorefrontError as e:
                raise AuthError("Could not resolve user profile", reason="profile") from e
        except StorefrontError as e:
            logger.error(f"❌ Profile creation failed: {e}")
            raise AuthError("Could not create user profile", reason="profile") from e

        logger.info("👤 Profile created automatically")
        return Profile.from_record(created)

    # ===========================================
    # CLEANUP PATHS
    # ===========================================

    def _apply_refresh(self, payload: AuthEventPayload) -> None:
        update: Dict[str, Any] = {"expires_at": payload.expires_at}
        if payload.last_sign_in_at:
            update["last_sign_in_at"] = payload.last_sign_in_at
        if payload.access_token:
            update["access_token"] = payload.access_token
        if payload.refresh_token:
            update["refresh_token"] = payload.refresh_token
        self._session = self._session.model_copy(update=update)

    def _drop_session(self) -> Optional[Session]:
        previous = self._session
        self._session = None
        self._profile = None
        self._epoch += 1
        return previous

    def _clear_security_state(self, previous: Optional[Session]) -> None:
        self.csrf.clear()
        if previous is not None:
            self.rate_limiter.clear_identity(previous.user_id)
            self.rate_limiter.clear_identity(previous.email)

    def _teardown_locally(self, reason: str) -> None:
        """The one path that clears session and cross-cutting security state"""
        previous = self._drop_session()
        self._clear_security_state(previous)
        self._set_state(AuthState.UNAUTHENTICATED)
        logger.info(f"🚪 Signed out ({reason})")

    async def _sign_out_locally(self, reason: str) -> None:
        self._teardown_locally(reason)
        await self._notify(reason)

    async def _force_sign_out(self, reason: str) -> None:
        try:
            await call_with_timeout(self.provider.sign_out(), self.remote_timeout, "sign out")
        except StorefrontError as e:
            logger.warning(f"⚠️ Provider sign-out failed during forced sign-out: {e}")
        await self._sign_out_locally(reason)

    async def _integrity_failure(
        self,
        message: str,
        missing_fields: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        logger.error(f"🚨 Session integrity failure: {message}")
        if self.monitor:
            self.monitor.report_threat(
                ThreatType.INTEGRITY, Severity.HIGH, message,
                {"missing_fields": missing_fields or [], **(details or {})}
            )
        await self._sign_out_locally("integrity_failure")
        self._set_state(AuthState.ERROR)
        raise IntegrityError(message, missing_fields=missing_fields, details=details)

    # ===========================================
    # PUBLIC CONTRACT
    # ===========================================

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def profile(self) -> Optional[Profile]:
        return self._profile if self.current_session() else None

    @property
    def session_epoch(self) -> int:
        return self._epoch

    def current_session(self) -> Optional[Session]:
        """The validated session, or None. Expired sessions are torn down here."""
        session = self._session
        if session is None or self._state != AuthState.AUTHENTICATED:
            return None
        if session.is_expired(self._clock()):
            logger.info("⏰ Session expired on read, tearing down")
            self._teardown_locally("expired")
            self._schedule_notify("expired")
            return None
        return session

    def is_admin(self) -> bool:
        session = self.current_session()
        return bool(session and session.role == Role.ADMIN)

    def on_change(self, callback: Subscriber) -> Unsubscribe:
        return self.bus.subscribe(ChangeTopic.SESSION, callback)

    async def initialize(self) -> AuthState:
        return await self.process_event(AuthEventType.INITIALIZE)

    async def check_session(self) -> AuthState:
        return await self.process_event(AuthEventType.PERIODIC_CHECK)

    async def sign_in(self, email: str, password: str) -> Session:
        """
        Password sign-in.

        Raises:
            ValidationError: malformed e-mail address
            RateLimitError: too many attempts; the provider is not contacted
            AuthError: invalid credentials or session could not be established
        """
        clean_email = sanitize_email(email)
        if not clean_email:
            raise ValidationError("Invalid email address", field="email")

        decision = self.rate_limiter.check(LOGIN_OPERATION, clean_email)
        if not decision.allowed:
            if self.monitor:
                self.monitor.report_threat(
                    ThreatType.BRUTE_FORCE, Severity.HIGH,
                    "Repeated failed sign-in attempts",
                    {"email": clean_email[:3] + "***"}
                )
            raise rate_limit_error(LOGIN_OPERATION, decision.retry_after)

        self._sign_in_pending = clean_email
        try:
            payload = await call_with_timeout(
                self.provider.sign_in_with_password(clean_email, password),
                self.remote_timeout,
                "sign in"
            )
        except AuthError:
            await self._log_login_attempt(clean_email, success=False)
            logger.warning("🔒 Sign-in rejected: invalid credentials")
            raise
        finally:
            self._sign_in_pending = None

        self.rate_limiter.reset(make_key(LOGIN_OPERATION, clean_email))
        await self._log_login_attempt(clean_email, success=True)
        return await self._establish(payload)

    async def sign_up(self, email: str, password: str, full_name: Optional[str] = None) -> Optional[Session]:
        """
        Register a new account.

        Returns the session when the provider signs the user in right away,
        None when e-mail confirmation is pending.
        """
        clean_email = sanitize_email(email)
        if not clean_email:
            raise ValidationError("Invalid email address", field="email")
        ensure_strong_password(password)

        decision = self.rate_limiter.check(SIGN_UP_OPERATION, clean_email)
        if not decision.allowed:
            raise rate_limit_error(SIGN_UP_OPERATION, decision.retry_after)

        self._sign_in_pending = clean_email
        try:
            payload = await call_with_timeout(
                self.provider.sign_up(clean_email, password, full_name),
                self.remote_timeout,
                "sign up"
            )
        finally:
            self._sign_in_pending = None

        if payload is None:
            logger.info("📧 Sign-up pending e-mail confirmation")
            return None

        clean_name = sanitize_optional(full_name, "full_name")
        if clean_name and payload.user_id:
            self._profile_hints[payload.user_id] = clean_name
        return await self._establish(payload)

    async def _establish(self, payload: AuthEventPayload) -> Session:
        state = await self.process_event(AuthEventType.SIGNED_IN, payload)
        session = self.current_session()
        if state != AuthState.AUTHENTICATED or session is None:
            raise AuthError("Session could not be established", reason="session")
        return session

    async def sign_out(self) -> None:
        """Sign out at the provider (best effort) and clear all local state"""
        try:
            await call_with_timeout(self.provider.sign_out(), self.remote_timeout, "sign out")
        except StorefrontError as e:
            logger.warning(f"⚠️ Provider sign-out failed, clearing locally anyway: {e}")
        await self.process_event(AuthEventType.SIGNED_OUT)

    async def refresh(self) -> Session:
        """Ask the provider for a fresh token and apply it"""
        payload = await call_with_timeout(
            self.provider.refresh_session(), self.remote_timeout, "refresh session"
        )
        await self.process_event(AuthEventType.TOKEN_REFRESHED, payload)
        session = self.current_session()
        if session is None:
            raise AuthError("Session refresh did not produce a session", reason="expired")
        return session

    # ===========================================
    # LIFECYCLE
    # ===========================================

    def attach(self) -> None:
        """Subscribe to provider events (idempotent)"""
        if self._unsubscribe_provider is None:
            self._unsubscribe_provider = self.provider.subscribe(self._on_provider_event)

    def start(self) -> None:
        """Subscribe and start the periodic re-check"""
        self.attach()
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.create_task(self._periodic_loop())
            logger.info(f"⏲️ Periodic session check every {self.check_interval}s")

    async def stop(self) -> None:
        if self._unsubscribe_provider is not None:
            self._unsubscribe_provider()
            self._unsubscribe_provider = None
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None
        for task in list(self._background):
            task.cancel()

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            try:
                await self.check_session()
            except StorefrontError as e:
                logger.error(f"❌ Periodic session check failed: {e}")

    # ===========================================
    # INTERNALS
    # ===========================================

    def _set_state(self, new_state: AuthState) -> None:
        if new_state != self._state:
            logger.info(f"Auth state: {self._state.value} -> {new_state.value}")
            self._state = new_state

    async def _notify(self, reason: str) -> None:
        session = self._session
        await self.bus.publish(ChangeTopic.SESSION, reason, {
            "state": self._state.value,
            "user_id": session.user_id if session else None,
            "role": session.role.value if session else None,
        })

    def _schedule_notify(self, reason: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._notify(reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _log_login_attempt(self, email: str, success: bool) -> None:
        """Best-effort audit row; failures are logged, never raised"""
        try:
            await call_with_timeout(
                self.store.insert(LOGIN_ATTEMPTS, {
                    "email": email,
                    "success": success,
                    "attempt_time": self._clock().isoformat(),
                }),
                self.remote_timeout,
                "log login attempt"
            )
        except StorefrontError as e:
            logger.warning(f"⚠️ Could not record login attempt: {e}")

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "authenticated": self._session is not None,
            "epoch": self._epoch,
            "validations": self._validations.get_metrics(),
        }
