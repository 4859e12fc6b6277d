# shopguard/services/favorites_sync.py
"""
Favorites sync engine.

A favorite is a (user_id, product_id) membership. Toggling reads the
current membership from the remote store and deletes or upserts, so two
rapid toggles from different clients never leave a duplicate row.
"""

import logging
from typing import Any, Dict, List, Optional

from shopguard.core.events import ChangeTopic
from shopguard.core.exceptions import not_authenticated_error
from shopguard.models.commerce import FavoriteEntry, ProductSnapshot
from shopguard.models.session import Session
from shopguard.services.remote_store import FAVORITES, Record
from shopguard.services.sync_base import SyncEngine

logger = logging.getLogger(__name__)

FAVORITES_TOGGLE = "FAVORITES_TOGGLE"


class FavoritesSyncEngine(SyncEngine[FavoriteEntry]):

    entity = "favorites"
    topic = ChangeTopic.FAVORITES

    async def _fetch_rows(self, user_id: str) -> List[Record]:
        return await self.store.select(FAVORITES, {"user_id": user_id}, columns="product_id")

    def _build_items(
        self,
        rows: List[Record],
        products: Dict[str, ProductSnapshot],
        user_id: str
    ) -> List[FavoriteEntry]:
        entries: Dict[str, FavoriteEntry] = {}
        for row in rows:
            pid = str(row["product_id"])
            entries[pid] = FavoriteEntry(user_id=user_id, product_id=pid, product=products.get(pid))
        return list(entries.values())

    @property
    def favorites(self) -> List[FavoriteEntry]:
        return self.items

    @property
    def count(self) -> int:
        return len(self._items)

    def is_favorite(self, product_id: str) -> bool:
        return any(entry.product_id == product_id for entry in self._items)

    async def toggle_favorite(self, product_id: Any, csrf_token: Optional[str] = None) -> bool:
        """
        Flip membership of ``product_id``.

        Returns:
            True when the product is a favorite afterwards. When an
            identical toggle is already in flight this call is
            suppressed and returns the current local membership.

        Raises:
            ValidationError: product id empty after sanitizing
            AuthError: no session or CSRF mismatch
            RateLimitError: limiter denied FAVORITES_TOGGLE
        """
        pid = self._clean_product_id(product_id)

        session = self.auth.current_session()
        if session is None:
            raise not_authenticated_error(FAVORITES_TOGGLE)

        token, epoch = self.lifetime.token(), self.auth.session_epoch

        async with self._mutations.claim(self._mutation_key(session, pid)) as acquired:
            if not acquired:
                logger.info("⏸️ Favorite toggle already in flight, suppressed")
                return self.is_favorite(pid)

            async def write(s: Session) -> bool:
                membership = {"user_id": s.user_id, "product_id": pid}
                existing = await self.store.select(FAVORITES, membership)
                if existing:
                    await self.store.delete(FAVORITES, membership)
                    return False
                await self.store.upsert(FAVORITES, membership, on_conflict=("user_id", "product_id"))
                return True

            added = await self.gateway.execute(FAVORITES_TOGGLE, write, csrf_token=csrf_token)
            product: Optional[ProductSnapshot] = None
            if added:
                product = await self._product_snapshot(pid) or ProductSnapshot.missing(pid)

        if self._is_current(token, epoch, session.user_id):
            remaining = [e for e in self._items if e.product_id != pid]
            if added:
                remaining.append(FavoriteEntry(user_id=session.user_id, product_id=pid, product=product))
            self._items = remaining
            logger.info(f"{'💛' if added else '🤍'} Favorite {pid} {'added' if added else 'removed'}")
            await self._publish("added" if added else "removed", {"product_id": pid})
        return added
