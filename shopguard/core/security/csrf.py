# shopguard/core/security/csrf.py
"""
CSRF token lifecycle.

Exactly one token is authoritative per manager: generating or rotating
replaces the previous value, which stops validating immediately. Reading
an expired token renews it transparently.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Dict, Optional

from pydantic import BaseModel, Field

from shopguard.core.timeutils import Clock, utcnow

logger = logging.getLogger(__name__)

CSRF_HEADER = "X-CSRF-Token"


class CSRFToken(BaseModel):
    value: str = Field(repr=False)
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class CSRFTokenManager:
    """
    Per-client anti-forgery token store.

    Constructed per client context; there is no module-level instance.
    """

    def __init__(
        self,
        lifetime: timedelta = timedelta(minutes=30),
        refresh_threshold: timedelta = timedelta(minutes=5),
        clock: Clock = utcnow
    ):
        self.lifetime = lifetime
        self.refresh_threshold = refresh_threshold
        self._clock = clock
        self._token: Optional[CSRFToken] = None

        # Metrics for monitoring
        self._generated = 0
        self._validation_failures = 0

    def generate(self) -> CSRFToken:
        """Issue a new token, invalidating any previous one"""
        now = self._clock()
        self._token = CSRFToken(
            value=secrets.token_urlsafe(32),
            issued_at=now,
            expires_at=now + self.lifetime
        )
        self._generated += 1
        logger.info("🔐 New CSRF token generated")
        return self._token

    def current(self) -> CSRFToken:
        """Stored token if still valid, else a freshly generated one"""
        if self._token is None:
            return self.generate()
        if self._token.is_expired(self._clock()):
            logger.info("⏰ CSRF token expired, generating a new one")
            return self.generate()
        return self._token

    def peek(self) -> Optional[CSRFToken]:
        """Stored token without lazy renewal"""
        return self._token

    def validate(self, candidate: Optional[str]) -> bool:
        """Constant-time check of ``candidate`` against the current token"""
        token = self.current()
        valid = (
            isinstance(candidate, str)
            and bool(candidate)
            and secrets.compare_digest(token.value.encode(), candidate.encode("utf-8", "surrogatepass"))
            and self._clock() < token.expires_at
        )
        if not valid:
            self._validation_failures += 1
            logger.warning(
                f"🚫 CSRF validation failed (token supplied: {bool(candidate)}, "
                f"length: {len(candidate) if isinstance(candidate, str) else 0})"
            )
        return valid

    def should_refresh(self) -> bool:
        """True when less than the refresh threshold remains"""
        if self._token is None:
            return True
        return self._token.expires_at - self._clock() < self.refresh_threshold

    def rotate(self) -> CSRFToken:
        self.clear()
        return self.generate()

    def clear(self) -> None:
        if self._token is not None:
            logger.info("🗑️ CSRF token cleared")
        self._token = None

    def purge_expired(self) -> bool:
        """Drop the stored token if it has expired; returns True if dropped"""
        if self._token is not None and self._token.is_expired(self._clock()):
            self._token = None
            logger.info("🧹 Purged expired CSRF token")
            return True
        return False

    def get_metrics(self) -> Dict[str, int]:
        return {
            "tokens_generated": self._generated,
            "validation_failures": self._validation_failures,
            "has_token": int(self._token is not None),
        }
