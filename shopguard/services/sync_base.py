# shopguard/services/sync_base.py
"""
Shared shape of the per-user collection sync engines.

An engine is the only writer of its local cache. It reads through the
remote store, writes through the secure gateway, and applies a change
locally only after the remote side confirmed it. After each successful
load or mutation it publishes on the change bus so independent
observers can re-read.

Single-flight: at most one load per (entity, user) and one mutation per
entity key is in flight; further calls are suppressed, not queued.
Late responses are dropped when the engine was unmounted or the session
changed while the call was out.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Dict, Generic, Hashable, Iterable, List, Optional, TypeVar

from shopguard.core.auth_session import AuthSessionController
from shopguard.core.events import ChangeBus, ChangeEvent, ChangeTopic, Subscriber, Unsubscribe
from shopguard.core.exceptions import StorefrontError, ValidationError
from shopguard.core.retry import call_with_timeout
from shopguard.core.security.sanitizer import sanitize_text
from shopguard.core.single_flight import InFlightRegistry, Lifetime
from shopguard.models.commerce import ProductSnapshot
from shopguard.models.session import Session
from shopguard.services.remote_store import PRODUCTS, Record, RemoteStore
from shopguard.services.secure_gateway import SecureGateway

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")

PRODUCT_ID_MAX_LENGTH = 64


class SyncEngine(ABC, Generic[ItemT]):
    """Concurrency-guarded reader/writer for one per-user collection"""

    entity: str = "collection"
    topic: ChangeTopic = ChangeTopic.CART

    def __init__(
        self,
        auth: AuthSessionController,
        store: RemoteStore,
        gateway: SecureGateway,
        bus: ChangeBus,
        timeout: Optional[float] = 8.0,
        auto_load: bool = True
    ):
        self.auth = auth
        self.store = store
        self.gateway = gateway
        self.bus = bus
        self.timeout = timeout
        self.auto_load = auto_load

        self.lifetime = Lifetime(mounted=True)
        self._loads = InFlightRegistry(f"{self.entity}-load")
        self._mutations = InFlightRegistry(f"{self.entity}-mutation")

        self._items: List[ItemT] = []
        self._loaded_for: Optional[str] = None
        self.initialized = False
        self.last_error: Optional[StorefrontError] = None
        self._remote_loads = 0

        self._unsubscribe_session = auth.on_change(self._on_session_change)

    # ===========================================
    # SUBCLASS HOOKS
    # ===========================================

    @abstractmethod
    async def _fetch_rows(self, user_id: str) -> List[Record]:
        """Membership rows for the user"""

    @abstractmethod
    def _build_items(self, rows: List[Record], products: Dict[str, ProductSnapshot], user_id: str) -> List[ItemT]:
        """Turn rows plus product copies into local items"""

    # ===========================================
    # LIFETIME
    # ===========================================

    def mount(self) -> None:
        self.lifetime.mount()

    def unmount(self) -> None:
        """Stop accepting results; in-flight responses will be discarded"""
        self.lifetime.unmount()
        logger.debug(f"{self.entity} engine unmounted")

    def close(self) -> None:
        self.unmount()
        self._unsubscribe_session()

    # ===========================================
    # READS
    # ===========================================

    @property
    def items(self) -> List[ItemT]:
        return list(self._items)

    def is_loading(self) -> bool:
        return bool(self._loads.active_keys())

    def on_change(self, callback: Subscriber) -> Unsubscribe:
        return self.bus.subscribe(self.topic, callback)

    async def load(self) -> List[ItemT]:
        """
        Fetch the collection for the current user.

        A call while a load is in flight returns the current cache
        without touching the remote store. A call after unmount never
        writes local state.

        Raises:
            RemoteTimeoutError: fetch exceeded its budget; previous state kept
            NetworkError/StoreError: fetch failed; previous state kept
        """
        if not self.lifetime.mounted:
            logger.debug(f"{self.entity} load after unmount ignored")
            return self.items

        session = self.auth.current_session()
        if session is None:
            await self._reset_local("signed_out")
            return []

        key = (self.entity, session.user_id)
        async with self._loads.claim(key) as acquired:
            if not acquired:
                return self.items

            token = self.lifetime.token()
            epoch = self.auth.session_epoch
            self._remote_loads += 1
            try:
                rows = await self._remote(self._fetch_rows(session.user_id), "fetch rows")
                product_ids = self._product_ids(rows)
                products = await self._fetch_products(product_ids) if product_ids else {}
            except StorefrontError as e:
                self.last_error = e
                logger.warning(f"⚠️ {self.entity} load failed, keeping previous state: {e}")
                raise

            if not self._is_current(token, epoch, session.user_id):
                logger.info(f"🗑️ Discarding late {self.entity} response")
                return self.items

            self._items = self._build_items(rows, products, session.user_id)
            self._loaded_for = session.user_id
            self.initialized = True
            self.last_error = None

        logger.info(f"✅ {self.entity} loaded: {len(self._items)} items")
        await self._publish("loaded")
        return self.items

    # ===========================================
    # HELPERS
    # ===========================================

    async def _remote(self, awaitable: Awaitable[Any], name: str) -> Any:
        return await call_with_timeout(awaitable, self.timeout, f"{self.entity} {name}")

    @staticmethod
    def _product_ids(rows: Iterable[Record]) -> List[str]:
        seen: Dict[str, None] = {}
        for row in rows:
            if row.get("product_id") is not None:
                seen[str(row["product_id"])] = None
        return list(seen)

    async def _fetch_products(self, product_ids: List[str]) -> Dict[str, ProductSnapshot]:
        records = await self._remote(
            self.store.select_in(PRODUCTS, "id", product_ids), "fetch products"
        )
        return {str(r["id"]): ProductSnapshot.from_record(r) for r in records}

    async def _product_snapshot(self, product_id: str) -> Optional[ProductSnapshot]:
        """
        Display copy for a product after a committed write.

        Best effort: the write already happened remotely, so a failed
        read must not fail the mutation. Returns None when the product
        is unknown or could not be read.
        """
        try:
            products = await self._fetch_products([product_id])
        except StorefrontError as e:
            logger.warning(f"⚠️ Product {product_id} display data unavailable after write: {e}")
            return None
        return products.get(product_id)

    def _clean_product_id(self, product_id: Any) -> str:
        cleaned = sanitize_text(product_id, max_length=PRODUCT_ID_MAX_LENGTH)
        if not cleaned:
            raise ValidationError("Invalid product id", field="product_id")
        return cleaned

    def _is_current(self, token: int, epoch: int, user_id: str) -> bool:
        session = self.auth.current_session()
        return (
            self.lifetime.is_current(token)
            and self.auth.session_epoch == epoch
            and session is not None
            and session.user_id == user_id
        )

    def _mutation_key(self, session: Session, *parts: Hashable) -> tuple:
        return (self.entity, session.user_id) + parts

    async def _reset_local(self, reason: str) -> None:
        had_state = bool(self._items) or self._loaded_for is not None
        self._items = []
        self._loaded_for = None
        self.initialized = True
        if had_state:
            logger.info(f"🧹 {self.entity} cleared ({reason})")
        await self._publish(reason)

    async def _publish(self, reason: str, extra: Optional[Dict[str, Any]] = None) -> None:
        payload = {"count": len(self._items)}
        payload.update(extra or {})
        await self.bus.publish(self.topic, reason, payload)

    async def _on_session_change(self, event: ChangeEvent) -> None:
        session = self.auth.current_session()
        if session is None:
            self.lifetime.advance()
            if self._items or self._loaded_for is not None:
                await self._reset_local("signed_out")
            return

        if session.user_id != self._loaded_for:
            self.lifetime.advance()
            self._items = []
            self._loaded_for = None
            if self.auto_load and self.lifetime.mounted:
                try:
                    await self.load()
                except StorefrontError as e:
                    logger.warning(f"⚠️ {self.entity} reload after session change failed: {e}")

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "items": len(self._items),
            "remote_loads": self._remote_loads,
            "loads": self._loads.get_metrics(),
            "mutations": self._mutations.get_metrics(),
        }
