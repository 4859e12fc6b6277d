# shopguard/core/security/cleanup.py
"""
Periodic security sweep.

Runs once shortly after start and then on a fixed interval. Each sweep
drops an expired CSRF token, purges rate-limit entries whose window and
block have both elapsed, re-checks the session (refreshing it when it is
about to expire) and lets the monitor look for suspicious bursts.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from shopguard.core.auth_session import AuthSessionController
from shopguard.core.events import ChangeBus, ChangeTopic
from shopguard.core.exceptions import StorefrontError
from shopguard.core.security.csrf import CSRFTokenManager
from shopguard.core.security.monitor import SecurityMonitor
from shopguard.core.security.rate_limiter import RateLimiter
from shopguard.core.timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class SecurityCleanup:
    """Background sweeper for expired security state"""

    def __init__(
        self,
        auth: AuthSessionController,
        rate_limiter: RateLimiter,
        csrf: CSRFTokenManager,
        monitor: SecurityMonitor,
        bus: Optional[ChangeBus] = None,
        interval: timedelta = timedelta(minutes=30),
        initial_delay: float = 30.0,
        refresh_threshold: timedelta = timedelta(minutes=5),
        clock: Clock = utcnow
    ):
        self.auth = auth
        self.rate_limiter = rate_limiter
        self.csrf = csrf
        self.monitor = monitor
        self.bus = bus
        self.interval = interval
        self.initial_delay = initial_delay
        self.refresh_threshold = refresh_threshold
        self._clock = clock

        self._task: Optional[asyncio.Task] = None
        self._sweeps = 0
        self._last_result: Dict[str, Any] = {}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"🧽 Security cleanup scheduled: first run in {self.initial_delay}s, "
            f"then every {int(self.interval.total_seconds() // 60)} min"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("🛑 Security cleanup stopped")

    async def _loop(self) -> None:
        await asyncio.sleep(self.initial_delay)
        while True:
            try:
                await self.run_once()
            except StorefrontError as e:
                logger.error(f"❌ Security sweep failed: {e}")
            await asyncio.sleep(self.interval.total_seconds())

    async def run_once(self) -> Dict[str, Any]:
        """Run a single sweep and return what it did"""
        csrf_purged = self.csrf.purge_expired()
        limiter_purged = self.rate_limiter.sweep()

        await self.auth.check_session()
        refreshed = await self._refresh_if_expiring()

        threat = self.monitor.run_check()

        self._sweeps += 1
        self._last_result = {
            "csrf_purged": csrf_purged,
            "rate_limit_entries_purged": limiter_purged,
            "session_refreshed": refreshed,
            "suspicious_activity": threat is not None,
            "authenticated": self.auth.current_session() is not None,
        }
        logger.info(
            f"🧽 Sweep #{self._sweeps}: {limiter_purged} limiter entries purged, "
            f"csrf purged={csrf_purged}, refreshed={refreshed}"
        )

        if self.bus is not None:
            await self.bus.publish(ChangeTopic.SECURITY, "sweep", dict(self._last_result))
        return dict(self._last_result)

    async def _refresh_if_expiring(self) -> bool:
        session = self.auth.current_session()
        if session is None:
            return False
        remaining = session.seconds_until_expiry(self._clock())
        if remaining > self.refresh_threshold.total_seconds():
            return False

        logger.info(f"🔄 Session expires in {int(remaining)}s, refreshing")
        try:
            await self.auth.refresh()
        except StorefrontError as e:
            logger.warning(f"⚠️ Session refresh failed, signing out: {e}")
            await self.auth.sign_out()
            return False
        return True

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "sweeps": self._sweeps,
            "last_result": dict(self._last_result),
        }
