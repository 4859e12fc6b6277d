# shopguard/services/secure_gateway.py
"""
Guards in front of every remote mutation.

Order: authenticated session -> rate limit (unless exempt) -> CSRF for
mutations -> the call itself under a time budget. Limiter and CSRF
manager return decisions; this is where a deny becomes an exception.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from shopguard.core.auth_session import AuthSessionController
from shopguard.core.exceptions import (
    csrf_error,
    not_authenticated_error,
    rate_limit_error,
)
from shopguard.core.retry import call_with_timeout
from shopguard.core.security.csrf import CSRFTokenManager
from shopguard.core.security.monitor import SecurityMonitor, Severity, ThreatType
from shopguard.core.security.rate_limiter import RateLimiter
from shopguard.models.session import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SecureGateway:
    """Runs remote operations behind the auth, rate-limit and CSRF guards"""

    def __init__(
        self,
        auth: AuthSessionController,
        rate_limiter: RateLimiter,
        csrf: CSRFTokenManager,
        monitor: Optional[SecurityMonitor] = None,
        timeout: Optional[float] = 8.0
    ):
        self.auth = auth
        self.rate_limiter = rate_limiter
        self.csrf = csrf
        self.monitor = monitor
        self.timeout = timeout
        self._executed = 0
        self._rejected = 0

    def guard(
        self,
        operation: str,
        csrf_token: Optional[str] = None,
        mutation: bool = True,
        identity: Optional[str] = None
    ) -> Session:
        """
        Check every precondition for ``operation``.

        Args:
            operation: Operation type, e.g. "CART_ADD"
            csrf_token: Token presented by the caller; in-process callers
                may omit it and the current token is used
            mutation: Whether the operation writes remote state
            identity: Rate-limit identity, defaults to the session user

        Returns:
            The current session

        Raises:
            AuthError: not authenticated or CSRF mismatch
            RateLimitError: operation denied by the limiter
        """
        session = self.auth.current_session()
        if session is None:
            self._rejected += 1
            raise not_authenticated_error(operation)

        decision = self.rate_limiter.check(operation, identity or session.user_id)
        if not decision.allowed:
            self._rejected += 1
            logger.warning(f"🚫 {operation} denied by rate limiter")
            raise rate_limit_error(operation, decision.retry_after)

        if mutation:
            candidate = csrf_token if csrf_token is not None else self.csrf.current().value
            if not self.csrf.validate(candidate):
                self._rejected += 1
                if self.monitor:
                    self.monitor.report_threat(
                        ThreatType.CSRF, Severity.HIGH,
                        "CSRF token rejected",
                        {"operation": operation}
                    )
                raise csrf_error(operation)

        return session

    async def execute(
        self,
        operation: str,
        call: Callable[[Session], Awaitable[T]],
        csrf_token: Optional[str] = None,
        mutation: bool = True,
        identity: Optional[str] = None
    ) -> T:
        """Guard, then run ``call(session)`` under the time budget"""
        session = self.guard(operation, csrf_token=csrf_token, mutation=mutation, identity=identity)
        try:
            result = await call_with_timeout(call(session), self.timeout, operation)
        except Exception as e:
            logger.error(f"❌ Operation {operation} failed: {e}")
            raise

        self._executed += 1
        logger.info(f"✅ Operation {operation} succeeded")

        if mutation and self.csrf.should_refresh():
            self.csrf.rotate()
            logger.info("🔄 CSRF token rotated before expiry")
        return result

    def get_metrics(self) -> Dict[str, Any]:
        return {"executed": self._executed, "rejected": self._rejected}
