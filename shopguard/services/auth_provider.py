# shopguard/services/auth_provider.py
"""
Auth provider collaborator.

The provider owns credentials, password hashing and token signing. This
module only defines what the session controller needs from it, plus an
in-memory implementation used for tests and local development.
"""

import asyncio
import inspect
import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from shopguard.core.exceptions import AuthError, credentials_error
from shopguard.core.timeutils import Clock, utcnow
from shopguard.models.session import AuthEventPayload, AuthEventType

logger = logging.getLogger(__name__)

AuthListener = Callable[[AuthEventType, Optional[AuthEventPayload]], Any]
Unsubscribe = Callable[[], None]


class AuthProvider(ABC):
    """
    Interface of the external auth collaborator.

    Events are delivered to subscribers as ``(event_type, payload)``; a
    subscriber may be a plain function or a coroutine function. Events
    can arrive in any order and more than once.
    """

    def __init__(self):
        self._listeners: List[AuthListener] = []

    def subscribe(self, callback: AuthListener) -> Unsubscribe:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _emit(self, event: AuthEventType, payload: Optional[AuthEventPayload]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event, payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Auth listener failed on {event.value}: {e}", exc_info=True)

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> AuthEventPayload:
        """Raises AuthError(reason='credentials') on bad credentials"""

    @abstractmethod
    async def sign_up(
        self,
        email: str,
        password: str,
        full_name: Optional[str] = None
    ) -> Optional[AuthEventPayload]:
        """Returns None when the provider requires e-mail confirmation first"""

    @abstractmethod
    async def sign_out(self) -> None:
        ...

    @abstractmethod
    async def get_session(self) -> Optional[AuthEventPayload]:
        ...

    @abstractmethod
    async def refresh_session(self) -> AuthEventPayload:
        ...

    async def close(self) -> None:
        """Release transport resources"""


class InMemoryAuthProvider(AuthProvider):
    """
    Auth provider kept entirely in process.

    Used when no backend is configured and by the test-suite. ``emit``,
    ``revoke`` and ``fail_next`` let tests drive the collaborator.
    """

    def __init__(
        self,
        clock: Clock = utcnow,
        session_ttl: timedelta = timedelta(hours=1),
        latency: float = 0.0
    ):
        super().__init__()
        self._clock = clock
        self.session_ttl = session_ttl
        self.latency = latency
        self._users: Dict[str, Tuple[str, str]] = {}  # email -> (user_id, password)
        self._session: Optional[AuthEventPayload] = None
        self._failures: Dict[str, Exception] = {}
        self.calls: Dict[str, int] = {}

    # Test helpers

    def add_user(self, email: str, password: str, user_id: Optional[str] = None) -> str:
        user_id = user_id or str(uuid.uuid4())
        self._users[email.lower()] = (user_id, password)
        return user_id

    def fail_next(self, operation: str, error: Exception) -> None:
        self._failures[operation] = error

    def revoke(self) -> None:
        """Drop the session without emitting, as if revoked elsewhere"""
        self._session = None

    def set_session(self, payload: Optional[AuthEventPayload]) -> None:
        self._session = payload

    async def emit(self, event: AuthEventType, payload: Optional[AuthEventPayload] = None) -> None:
        await self._emit(event, payload)

    # Provider interface

    async def _enter(self, operation: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        await asyncio.sleep(self.latency)
        error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    def _issue(self, user_id: str, email: str) -> AuthEventPayload:
        now = self._clock()
        return AuthEventPayload(
            user_id=user_id,
            email=email,
            last_sign_in_at=now,
            expires_at=now + self.session_ttl,
            access_token=secrets.token_urlsafe(24),
            refresh_token=secrets.token_urlsafe(24),
        )

    async def sign_in_with_password(self, email: str, password: str) -> AuthEventPayload:
        await self._enter("sign_in")
        record = self._users.get(email.lower())
        if record is None or not secrets.compare_digest(record[1], password):
            raise credentials_error()

        self._session = self._issue(record[0], email.lower())
        await self._emit(AuthEventType.SIGNED_IN, self._session)
        return self._session

    async def sign_up(
        self,
        email: str,
        password: str,
        full_name: Optional[str] = None
    ) -> Optional[AuthEventPayload]:
        await self._enter("sign_up")
        if email.lower() in self._users:
            raise AuthError("User already registered", reason="exists")
        user_id = self.add_user(email, password)
        self._session = self._issue(user_id, email.lower())
        await self._emit(AuthEventType.SIGNED_IN, self._session)
        return self._session

    async def sign_out(self) -> None:
        await self._enter("sign_out")
        self._session = None
        await self._emit(AuthEventType.SIGNED_OUT, None)

    async def get_session(self) -> Optional[AuthEventPayload]:
        await self._enter("get_session")
        return self._session

    async def refresh_session(self) -> AuthEventPayload:
        await self._enter("refresh_session")
        if self._session is None:
            raise AuthError("No session to refresh", reason="expired")
        now = self._clock()
        self._session = self._session.model_copy(update={
            "expires_at": now + self.session_ttl,
            "access_token": secrets.token_urlsafe(24),
        })
        await self._emit(AuthEventType.TOKEN_REFRESHED, self._session)
        return self._session

