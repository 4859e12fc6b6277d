# tests/services/test_favorites_sync.py

import asyncio

import pytest

from shopguard.core.events import ChangeTopic
from shopguard.core.exceptions import AuthError, NetworkError, ValidationError
from shopguard.services.remote_store import FAVORITES, PRODUCTS

USER_ID = "user-anna"


@pytest.mark.unit
class TestFavoritesLoad:

    async def test_load_dedupes_rows(self, favorites, store, signed_in):
        store.seed(FAVORITES, [
            {"user_id": USER_ID, "product_id": "p-1"},
            {"user_id": USER_ID, "product_id": "p-1"},
            {"user_id": USER_ID, "product_id": "p-2"},
            {"user_id": "user-bob", "product_id": "p-2"},
        ])

        entries = await favorites.load()

        assert [e.product_id for e in entries] == ["p-1", "p-2"]
        assert favorites.count == 2
        assert entries[0].product.name == "Diver 300"

    async def test_concurrent_loads_hit_store_once(self, favorites, store, signed_in):
        store.latency = 0.01

        await asyncio.gather(favorites.load(), favorites.load(), favorites.load())

        assert store.call_count("select", FAVORITES) == 1

    async def test_unmounted_engine_drops_response(self, favorites, store, signed_in):
        store.seed(FAVORITES, [{"user_id": USER_ID, "product_id": "p-1"}])
        store.latency = 0.01

        task = asyncio.create_task(favorites.load())
        await asyncio.sleep(0)
        favorites.unmount()
        await task

        assert favorites.favorites == []


@pytest.mark.unit
class TestToggleFavorite:

    async def test_toggle_adds_then_removes(self, favorites, store, signed_in, bus):
        reasons = []
        bus.subscribe(ChangeTopic.FAVORITES, lambda event: reasons.append(event.reason))

        assert await favorites.toggle_favorite("p-1") is True
        assert favorites.is_favorite("p-1")
        assert len(store.rows(FAVORITES, {"user_id": USER_ID})) == 1

        assert await favorites.toggle_favorite("p-1") is False
        assert not favorites.is_favorite("p-1")
        assert store.rows(FAVORITES, {"user_id": USER_ID}) == []

        assert reasons == ["added", "removed"]

    async def test_toggle_reads_remote_membership(self, favorites, store, signed_in):
        # Added from another device; local cache does not know yet
        store.seed(FAVORITES, [{"user_id": USER_ID, "product_id": "p-2"}])

        assert await favorites.toggle_favorite("p-2") is False
        assert store.rows(FAVORITES) == []

    async def test_unknown_product_gets_placeholder(self, favorites, signed_in):
        await favorites.toggle_favorite("retired-model")

        assert favorites.favorites[0].product.name == "Product not found"

    async def test_unreadable_product_does_not_fail_committed_toggle(self, favorites, store, signed_in):
        store.fail_next("select_in", PRODUCTS, NetworkError("products unreachable"))

        assert await favorites.toggle_favorite("p-1") is True
        assert favorites.is_favorite("p-1")
        assert len(store.rows(FAVORITES, {"user_id": USER_ID})) == 1
        assert favorites.favorites[0].product.name == "Product not found"

    async def test_rapid_double_toggle_leaves_at_most_one_row(self, favorites, store, signed_in):
        store.latency = 0.01

        results = await asyncio.gather(
            favorites.toggle_favorite("p-1"), favorites.toggle_favorite("p-1")
        )

        assert results == [True, False]
        assert len(store.rows(FAVORITES, {"user_id": USER_ID, "product_id": "p-1"})) == 1

    async def test_sanitizes_product_id(self, favorites, store, signed_in):
        await favorites.toggle_favorite("  p-1  ")

        assert store.rows(FAVORITES)[0]["product_id"] == "p-1"

    async def test_empty_product_id(self, favorites, signed_in):
        with pytest.raises(ValidationError):
            await favorites.toggle_favorite("   ")

    async def test_requires_session(self, favorites):
        with pytest.raises(AuthError):
            await favorites.toggle_favorite("p-1")

    async def test_forged_csrf_token(self, favorites, store, signed_in):
        with pytest.raises(AuthError):
            await favorites.toggle_favorite("p-1", csrf_token="forged")

        assert store.rows(FAVORITES) == []

    async def test_sign_out_clears_favorites(self, favorites, controller, signed_in):
        await favorites.toggle_favorite("p-1")

        await controller.sign_out()

        assert favorites.count == 0
