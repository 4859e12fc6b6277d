# shopguard/services/cart_sync.py
"""
Cart sync engine.

Row uniqueness key is (user_id, product_id, selected_color, selected_size).
Adding an item that already exists updates its quantity instead of
inserting a second row; an insert that loses a race against another
client re-reads the winner and updates it.
"""

import logging
from typing import Any, Dict, List, Optional

from shopguard.core.events import ChangeTopic
from shopguard.core.exceptions import (
    RecordNotFoundError,
    StoreConflictError,
    not_authenticated_error,
)
from shopguard.core.security.sanitizer import coerce_quantity, sanitize_optional
from shopguard.models.commerce import CartItem, ProductSnapshot
from shopguard.models.session import Session
from shopguard.services.remote_store import CART_ITEMS, Record
from shopguard.services.sync_base import SyncEngine

logger = logging.getLogger(__name__)

CART_ADD = "CART_ADD"
CART_UPDATE = "CART_UPDATE"
CART_REMOVE = "CART_REMOVE"
CART_CLEAR = "CART_CLEAR"

CART_OPERATIONS = (CART_ADD, CART_UPDATE, CART_REMOVE, CART_CLEAR)


class CartSyncEngine(SyncEngine[CartItem]):
    """Per-user cart, reconciled against `cart_items`"""

    entity = "cart"
    topic = ChangeTopic.CART

    async def _fetch_rows(self, user_id: str) -> List[Record]:
        return await self.store.select(CART_ITEMS, {"user_id": user_id})

    def _build_items(
        self,
        rows: List[Record],
        products: Dict[str, ProductSnapshot],
        user_id: str
    ) -> List[CartItem]:
        return [CartItem.from_records(row, products.get(str(row["product_id"]))) for row in rows]

    # ===========================================
    # QUERIES
    # ===========================================

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self._items)

    @property
    def total_price(self) -> float:
        return round(sum(item.line_total for item in self._items), 2)

    def find(
        self,
        product_id: str,
        color: Optional[str] = None,
        size: Optional[str] = None
    ) -> Optional[CartItem]:
        for item in self._items:
            if item.key() == (product_id, color, size):
                return item
        return None

    # ===========================================
    # MUTATIONS
    # ===========================================

    def _session_or_raise(self, operation: str) -> Session:
        session = self.auth.current_session()
        if session is None:
            raise not_authenticated_error(operation)
        return session

    async def add_to_cart(
        self,
        product_id: Any,
        quantity: Any = 1,
        color: Optional[str] = None,
        size: Optional[str] = None,
        csrf_token: Optional[str] = None
    ) -> Optional[CartItem]:
        """
        Add ``quantity`` of a product variant.

        Returns the resulting cart line, or None when an identical add
        was already in flight and this call was suppressed.
        """
        pid = self._clean_product_id(product_id)
        qty = coerce_quantity(quantity)
        color = sanitize_optional(color, "selected_color")
        size = sanitize_optional(size, "selected_size")

        session = self._session_or_raise(CART_ADD)
        key = self._mutation_key(session, pid, color, size)
        token, epoch = self.lifetime.token(), self.auth.session_epoch

        async with self._mutations.claim(key) as acquired:
            if not acquired:
                logger.info("⏸️ Identical cart add already in flight, suppressed")
                return None

            async def write(s: Session) -> Record:
                return await self._upsert_line(s.user_id, pid, qty, color, size)

            row = await self.gateway.execute(CART_ADD, write, csrf_token=csrf_token)
            product = await self._product_snapshot(pid)

        item = CartItem.from_records(row, product)
        if self._is_current(token, epoch, session.user_id):
            self._items = [i for i in self._items if i.id != item.id] + [item]
            logger.info(f"➕ Cart line {item.product_id} now x{item.quantity}")
            await self._publish("item_added", {"product_id": pid})
        return item

    async def _upsert_line(
        self,
        user_id: str,
        product_id: str,
        quantity: int,
        color: Optional[str],
        size: Optional[str]
    ) -> Record:
        match = {
            "user_id": user_id,
            "product_id": product_id,
            "selected_color": color,
            "selected_size": size,
        }
        existing = await self.store.select(CART_ITEMS, match)
        if existing:
            return await self._bump(existing[0], user_id, quantity)

        try:
            return await self.store.insert(CART_ITEMS, {**match, "quantity": quantity})
        except StoreConflictError:
            logger.info("🔁 Cart insert lost a race, updating the existing line")
            existing = await self.store.select(CART_ITEMS, match)
            if not existing:
                raise
            return await self._bump(existing[0], user_id, quantity)

    async def _bump(self, row: Record, user_id: str, quantity: int) -> Record:
        new_quantity = coerce_quantity(int(row.get("quantity") or 0) + quantity)
        updated = await self.store.update(
            CART_ITEMS, {"id": row["id"], "user_id": user_id}, {"quantity": new_quantity}
        )
        if not updated:
            raise RecordNotFoundError("Cart item disappeared during update", collection=CART_ITEMS)
        return updated[0]

    async def update_quantity(
        self,
        item_id: str,
        quantity: Any,
        csrf_token: Optional[str] = None
    ) -> Optional[CartItem]:
        """Set a line's quantity; zero or less removes the line"""
        try:
            requested = int(quantity)
        except (TypeError, ValueError):
            requested = 1
        if requested <= 0:
            await self.remove_item(item_id, csrf_token=csrf_token)
            return None

        new_quantity = coerce_quantity(requested)
        session = self._session_or_raise(CART_UPDATE)
        token, epoch = self.lifetime.token(), self.auth.session_epoch

        async with self._mutations.claim(self._mutation_key(session, "line", item_id)) as acquired:
            if not acquired:
                return self._by_id(item_id)

            async def write(s: Session) -> List[Record]:
                return await self.store.update(
                    CART_ITEMS, {"id": item_id, "user_id": s.user_id}, {"quantity": new_quantity}
                )

            updated = await self.gateway.execute(CART_UPDATE, write, csrf_token=csrf_token)

        if not updated:
            raise RecordNotFoundError("Cart item not found", collection=CART_ITEMS)

        if self._is_current(token, epoch, session.user_id):
            self._items = [
                i.model_copy(update={"quantity": new_quantity}) if i.id == item_id else i
                for i in self._items
            ]
            await self._publish("quantity_updated", {"item_id": item_id})
        return self._by_id(item_id)

    async def remove_item(self, item_id: str, csrf_token: Optional[str] = None) -> bool:
        session = self._session_or_raise(CART_REMOVE)
        token, epoch = self.lifetime.token(), self.auth.session_epoch

        async with self._mutations.claim(self._mutation_key(session, "line", item_id)) as acquired:
            if not acquired:
                return False

            async def write(s: Session) -> int:
                return await self.store.delete(CART_ITEMS, {"id": item_id, "user_id": s.user_id})

            removed = await self.gateway.execute(CART_REMOVE, write, csrf_token=csrf_token)

        if self._is_current(token, epoch, session.user_id):
            self._items = [i for i in self._items if i.id != item_id]
            await self._publish("item_removed", {"item_id": item_id})
        return removed > 0

    async def clear_cart(self, csrf_token: Optional[str] = None) -> int:
        session = self._session_or_raise(CART_CLEAR)
        token, epoch = self.lifetime.token(), self.auth.session_epoch

        async with self._mutations.claim(self._mutation_key(session, "all")) as acquired:
            if not acquired:
                return 0

            async def write(s: Session) -> int:
                return await self.store.delete(CART_ITEMS, {"user_id": s.user_id})

            removed = await self.gateway.execute(CART_CLEAR, write, csrf_token=csrf_token)

        if self._is_current(token, epoch, session.user_id):
            self._items = []
            await self._publish("cleared")
        return removed

    # ===========================================
    # HELPERS
    # ===========================================

    def _by_id(self, item_id: str) -> Optional[CartItem]:
        return next((i for i in self._items if i.id == item_id), None)
