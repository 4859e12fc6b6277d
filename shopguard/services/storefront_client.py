# shopguard/services/storefront_client.py
"""
Composition root and UI boundary.

Builds one client context: rate limiter, CSRF manager, monitor, change
bus, session controller, gateway, sync engines and the periodic sweep.
Nothing here is a module-level singleton; the HTTP app owns exactly one
StorefrontClient for its lifetime and tests build their own.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from shopguard.core.auth_session import LOGIN_OPERATION, AuthSessionController
from shopguard.core.config import Settings, settings as default_settings
from shopguard.core.events import ChangeBus, ChangeTopic, Subscriber, Unsubscribe
from shopguard.core.retry import RetryPolicy, Sleep
from shopguard.core.security.cleanup import SecurityCleanup
from shopguard.core.security.csrf import CSRFToken, CSRFTokenManager
from shopguard.core.security.monitor import SecurityMonitor, Severity, ThreatType
from shopguard.core.security.rate_limiter import (
    ExemptionPolicy,
    RateLimitEntry,
    RateLimitPolicy,
    RateLimiter,
    split_key,
)
from shopguard.core.security.sanitizer import Sanitizer
from shopguard.core.service_base import ServiceConfig
from shopguard.core.timeutils import Clock, utcnow
from shopguard.models.commerce import CartItem, FavoriteEntry
from shopguard.models.session import Session
from shopguard.services.auth_provider import AuthProvider, InMemoryAuthProvider
from shopguard.services.cart_sync import CART_OPERATIONS, CartSyncEngine
from shopguard.services.favorites_sync import FAVORITES_TOGGLE, FavoritesSyncEngine
from shopguard.services.remote_store import InMemoryRemoteStore, RemoteStore
from shopguard.services.secure_gateway import SecureGateway
from shopguard.services.supabase_auth import SupabaseAuthProvider
from shopguard.services.supabase_store import SupabaseRemoteStore

logger = logging.getLogger(__name__)


def build_rate_limiter(
    config: Settings,
    clock: Clock = utcnow,
    monitor: Optional[SecurityMonitor] = None
) -> RateLimiter:
    """Limiter with the default policy plus the collection-write budget"""
    default_policy = RateLimitPolicy(
        max_attempts=config.RATE_LIMIT_MAX_ATTEMPTS,
        window=timedelta(minutes=config.RATE_LIMIT_WINDOW_MINUTES),
        block_duration=timedelta(minutes=config.RATE_LIMIT_BLOCK_MINUTES),
    )
    collection_policy = RateLimitPolicy(
        max_attempts=config.COLLECTION_WRITE_MAX_ATTEMPTS,
        window=timedelta(minutes=config.COLLECTION_WRITE_WINDOW_MINUTES),
        block_duration=timedelta(minutes=config.COLLECTION_WRITE_BLOCK_MINUTES),
    )
    policies = {op: collection_policy for op in (*CART_OPERATIONS, FAVORITES_TOGGLE)}

    def on_block(entry: RateLimitEntry) -> None:
        if monitor is None:
            return
        operation, _ = split_key(entry.key)
        threat_type = ThreatType.BRUTE_FORCE if operation == LOGIN_OPERATION else ThreatType.RATE_LIMIT
        monitor.report_threat(
            threat_type, Severity.MEDIUM,
            f"Rate limit block on {operation}",
            {"operation": operation, "attempts": entry.count}
        )

    return RateLimiter(
        default_policy=default_policy,
        policies=policies,
        exemption=ExemptionPolicy.from_lists(
            config.RATE_LIMIT_EXEMPT_OPERATIONS, config.RATE_LIMIT_EXEMPT_PREFIXES
        ),
        clock=clock,
        on_block=on_block,
    )


class StorefrontClient:
    """Everything the UI talks to, wired for one client context"""

    def __init__(
        self,
        config: Optional[Settings] = None,
        provider: Optional[AuthProvider] = None,
        store: Optional[RemoteStore] = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
        auto_load: bool = True
    ):
        self.config = config or default_settings
        self.clock = clock

        if provider is None or store is None:
            default_provider, default_store = self._default_collaborators()
            provider = provider or default_provider
            store = store or default_store
        self.provider = provider
        self.store = store

        self.monitor = SecurityMonitor(clock=clock)
        self.bus = ChangeBus(clock=clock)
        self.sanitizer = Sanitizer(on_threat=self._report_input_threat)
        self.rate_limiter = build_rate_limiter(self.config, clock=clock, monitor=self.monitor)
        self.csrf = CSRFTokenManager(
            lifetime=timedelta(minutes=self.config.CSRF_TOKEN_LIFETIME_MINUTES),
            refresh_threshold=timedelta(minutes=self.config.CSRF_REFRESH_THRESHOLD_MINUTES),
            clock=clock,
        )

        timeout = self.config.REMOTE_TIMEOUT_SECONDS
        self.auth = AuthSessionController(
            provider=provider,
            store=store,
            rate_limiter=self.rate_limiter,
            csrf=self.csrf,
            bus=self.bus,
            monitor=self.monitor,
            clock=clock,
            sleep=sleep,
            max_session_age=timedelta(hours=self.config.SESSION_MAX_AGE_HOURS),
            check_interval=self.config.SESSION_CHECK_INTERVAL_SECONDS,
            profile_retry=RetryPolicy(
                max_attempts=self.config.PROFILE_FETCH_ATTEMPTS,
                delay=self.config.PROFILE_RETRY_DELAY_SECONDS,
            ),
            remote_timeout=timeout,
        )
        self.gateway = SecureGateway(
            self.auth, self.rate_limiter, self.csrf, monitor=self.monitor, timeout=timeout
        )
        self.cart = CartSyncEngine(
            self.auth, store, self.gateway, self.bus, timeout=timeout, auto_load=auto_load
        )
        self.favorites = FavoritesSyncEngine(
            self.auth, store, self.gateway, self.bus, timeout=timeout, auto_load=auto_load
        )
        self.cleanup = SecurityCleanup(
            self.auth, self.rate_limiter, self.csrf, self.monitor,
            bus=self.bus,
            interval=timedelta(minutes=self.config.CLEANUP_INTERVAL_MINUTES),
            initial_delay=self.config.CLEANUP_INITIAL_DELAY_SECONDS,
            refresh_threshold=timedelta(seconds=self.config.SESSION_REFRESH_THRESHOLD_SECONDS),
            clock=clock,
        )
        self._started = False

    def _default_collaborators(self):
        if self.config.supabase_configured:
            service_config = ServiceConfig.from_settings(self.config)
            provider = SupabaseAuthProvider(service_config, clock=self.clock)
            store = SupabaseRemoteStore(service_config, access_token=lambda: provider.access_token)
            logger.info("🔌 Using hosted backend collaborators")
            return provider, store

        logger.warning("⚠️ Backend not configured - using in-memory collaborators")
        return InMemoryAuthProvider(clock=self.clock), InMemoryRemoteStore()

    def _report_input_threat(self, description: str, details: Dict[str, Any]) -> None:
        self.monitor.report_threat(ThreatType.INJECTION, Severity.MEDIUM, description, details)

    # ===========================================
    # LIFECYCLE
    # ===========================================

    async def start(self, background: bool = True) -> None:
        """Attach to the provider, resolve any existing session and start timers"""
        if self._started:
            return
        self.auth.attach()
        await self.auth.initialize()
        if background:
            self.auth.start()
            self.cleanup.start()
        self._started = True
        logger.info(f"✅ Storefront client ready (state={self.auth.state.value})")

    async def shutdown(self) -> None:
        await self.cleanup.stop()
        await self.auth.stop()
        self.cart.close()
        self.favorites.close()
        await self.provider.close()
        await self.store.close()
        self._started = False
        logger.info("👋 Storefront client shut down")

    # ===========================================
    # SUBSCRIPTIONS
    # ===========================================

    def on_session_change(self, callback: Subscriber) -> Unsubscribe:
        return self.auth.on_change(callback)

    def on_cart_change(self, callback: Subscriber) -> Unsubscribe:
        return self.bus.subscribe(ChangeTopic.CART, callback)

    def on_favorites_change(self, callback: Subscriber) -> Unsubscribe:
        return self.bus.subscribe(ChangeTopic.FAVORITES, callback)

    # ===========================================
    # SESSION
    # ===========================================

    async def sign_in(self, email: str, password: str) -> Session:
        return await self.auth.sign_in(email, password)

    async def sign_up(self, email: str, password: str, full_name: Optional[str] = None) -> Optional[Session]:
        return await self.auth.sign_up(email, password, self.sanitizer.optional(full_name, "full_name"))

    async def sign_out(self) -> None:
        await self.auth.sign_out()

    def current_session(self) -> Optional[Session]:
        return self.auth.current_session()

    def csrf_token(self) -> CSRFToken:
        """Current CSRF token, issued lazily"""
        return self.csrf.current()

    # ===========================================
    # CART
    # ===========================================

    async def load_cart(self) -> List[CartItem]:
        return await self.cart.load()

    async def add_to_cart(
        self,
        product_id: Any,
        quantity: Any = 1,
        color: Optional[str] = None,
        size: Optional[str] = None,
        csrf_token: Optional[str] = None
    ) -> Optional[CartItem]:
        return await self.cart.add_to_cart(
            self.sanitizer.text(product_id, field="product_id"),
            self.sanitizer.quantity(quantity),
            color=self.sanitizer.optional(color, "selected_color"),
            size=self.sanitizer.optional(size, "selected_size"),
            csrf_token=csrf_token
        )

    async def update_cart_quantity(self, item_id: str, quantity: Any, csrf_token: Optional[str] = None) -> Optional[CartItem]:
        return await self.cart.update_quantity(item_id, quantity, csrf_token=csrf_token)

    async def remove_from_cart(self, item_id: str, csrf_token: Optional[str] = None) -> bool:
        return await self.cart.remove_item(item_id, csrf_token=csrf_token)

    async def clear_cart(self, csrf_token: Optional[str] = None) -> int:
        return await self.cart.clear_cart(csrf_token=csrf_token)

    # ===========================================
    # FAVORITES
    # ===========================================

    async def load_favorites(self) -> List[FavoriteEntry]:
        return await self.favorites.load()

    async def toggle_favorite(self, product_id: Any, csrf_token: Optional[str] = None) -> bool:
        return await self.favorites.toggle_favorite(
            self.sanitizer.text(product_id, field="product_id"), csrf_token=csrf_token
        )

    # ===========================================
    # MONITORING
    # ===========================================

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "auth": self.auth.get_metrics(),
            "rate_limiter": self.rate_limiter.get_metrics(),
            "csrf": self.csrf.get_metrics(),
            "gateway": self.gateway.get_metrics(),
            "cart": self.cart.get_metrics(),
            "favorites": self.favorites.get_metrics(),
            "bus": self.bus.get_metrics(),
            "cleanup": self.cleanup.get_metrics(),
            "security": self.monitor.metrics(),
            "sanitizer_flagged": self.sanitizer.flagged_count,
        }
