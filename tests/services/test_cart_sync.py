# tests/services/test_cart_sync.py
"""
Tests for the cart sync engine.

Remote-first mutations, the (product, color, size) line key, single-flight
loads and dropping of late responses.
"""

import asyncio

import pytest

from shopguard.core.events import ChangeTopic
from shopguard.core.exceptions import (
    AuthError,
    NetworkError,
    RateLimitError,
    RecordNotFoundError,
    RemoteTimeoutError,
    StoreConflictError,
)
from shopguard.services.cart_sync import CartSyncEngine
from shopguard.services.remote_store import CART_ITEMS, PRODUCTS

USER_ID = "user-anna"


def seed_line(store, product_id="p-1", quantity=2, color=None, size=None, user_id=USER_ID):
    store.seed(CART_ITEMS, [{
        "user_id": user_id,
        "product_id": product_id,
        "quantity": quantity,
        "selected_color": color,
        "selected_size": size,
    }])


@pytest.fixture
def cart_events(bus):
    seen = []
    bus.subscribe(ChangeTopic.CART, lambda event: seen.append(event.reason))
    return seen


# =============================================================================
# LOADING
# =============================================================================

@pytest.mark.unit
class TestLoad:

    async def test_load_joins_product_snapshot(self, cart, store, signed_in, cart_events):
        seed_line(store, "p-1", quantity=2)
        seed_line(store, "p-2", quantity=1, color="Black")

        items = await cart.load()

        assert len(items) == 2
        diver = cart.find("p-1")
        assert diver.name == "Diver 300"
        assert diver.image == "d300.jpg"
        assert cart.find("p-2", color="Black").brand == "Trail"
        assert cart.total_items == 3
        assert cart.total_price == 619.0
        assert cart.initialized
        assert cart_events == ["loaded"]

    async def test_only_own_rows(self, cart, store, signed_in):
        seed_line(store, "p-1", user_id="user-bob")

        assert await cart.load() == []

    async def test_missing_product_gets_placeholder(self, cart, store, signed_in):
        seed_line(store, "gone")

        items = await cart.load()

        assert items[0].name == "Product not found"
        assert items[0].price_snapshot == 0.0

    async def test_load_without_session_is_empty(self, cart):
        assert await cart.load() == []
        assert cart.initialized

    async def test_concurrent_loads_hit_store_once(self, cart, store, signed_in):
        seed_line(store)
        store.latency = 0.01

        results = await asyncio.gather(cart.load(), cart.load())

        assert store.call_count("select", CART_ITEMS) == 1
        assert [len(r) for r in results] == [1, 0]
        assert cart.get_metrics()["loads"]["suppressed"] == 1

    async def test_failed_load_keeps_previous_state(self, cart, store, signed_in):
        seed_line(store)
        await cart.load()
        store.fail_next("select", CART_ITEMS, RemoteTimeoutError("slow", operation="cart fetch rows"))

        with pytest.raises(RemoteTimeoutError):
            await cart.load()

        assert len(cart.items) == 1
        assert isinstance(cart.last_error, RemoteTimeoutError)

    async def test_late_response_after_unmount_is_dropped(self, cart, store, signed_in):
        seed_line(store)
        store.latency = 0.01

        task = asyncio.create_task(cart.load())
        await asyncio.sleep(0)
        cart.unmount()
        await task

        assert cart.items == []
        assert not cart.initialized

    async def test_load_after_unmount_does_nothing(self, cart, store, signed_in):
        cart.unmount()

        await cart.load()

        assert store.call_count("select", CART_ITEMS) == 0

    async def test_sign_out_during_load_discards_result(self, cart, store, controller, signed_in):
        seed_line(store)
        store.latency = 0.01

        task = asyncio.create_task(cart.load())
        await asyncio.sleep(0)
        await controller.sign_out()
        await task

        assert cart.items == []


# =============================================================================
# SESSION FOLLOWING
# =============================================================================

@pytest.mark.integration
class TestSessionFollowing:

    async def test_auto_load_on_sign_in(self, controller, store, gateway, bus):
        seed_line(store)
        engine = CartSyncEngine(controller, store, gateway, bus, auto_load=True)

        await controller.sign_in("anna@example.com", "Corr3ct!Horse")

        assert len(engine.items) == 1
        engine.close()

    async def test_sign_out_clears_cart(self, cart, store, controller, signed_in, cart_events):
        seed_line(store)
        await cart.load()

        await controller.sign_out()

        assert cart.items == []
        assert cart_events[-1] == "signed_out"
        assert len(store.rows(CART_ITEMS)) == 1


# =============================================================================
# MUTATIONS
# =============================================================================

@pytest.mark.unit
class TestAddToCart:

    async def test_adding_twice_updates_one_line(self, cart, store, signed_in, cart_events):
        await cart.add_to_cart("p-1")
        item = await cart.add_to_cart("p-1")

        rows = store.rows(CART_ITEMS)
        assert len(rows) == 1
        assert rows[0]["quantity"] == 2
        assert item.quantity == 2
        assert len(cart.items) == 1
        assert cart.total_price == 499.0
        assert cart_events == ["item_added", "item_added"]

    async def test_variants_are_separate_lines(self, cart, store, signed_in):
        await cart.add_to_cart("p-1", color="Black", size="M")
        await cart.add_to_cart("p-1", color="Blue", size="M")

        assert len(store.rows(CART_ITEMS)) == 2
        assert cart.find("p-1", "Blue", "M") is not None

    async def test_quantity_is_clamped(self, cart, store, signed_in):
        item = await cart.add_to_cart("p-1", quantity=150)

        assert item.quantity == 99

    async def test_existing_line_is_capped(self, cart, store, signed_in):
        seed_line(store, quantity=98)

        item = await cart.add_to_cart("p-1", quantity=5)

        assert item.quantity == 99

    async def test_insert_race_updates_winner(self, cart, store, signed_in):
        original_insert = store.insert

        async def racing_insert(table, record):
            if table == CART_ITEMS:
                # Another client created the line between our read and write
                store.seed(CART_ITEMS, [{**record, "quantity": 3}])
                raise StoreConflictError("duplicate", collection=table)
            return await original_insert(table, record)

        store.insert = racing_insert

        item = await cart.add_to_cart("p-1")

        rows = store.rows(CART_ITEMS)
        assert len(rows) == 1
        assert rows[0]["quantity"] == 4
        assert item.quantity == 4

    async def test_requires_session(self, cart):
        with pytest.raises(AuthError):
            await cart.add_to_cart("p-1")

    async def test_forged_csrf_token_writes_nothing(self, cart, store, signed_in):
        with pytest.raises(AuthError) as exc_info:
            await cart.add_to_cart("p-1", csrf_token="forged")

        assert exc_info.value.reason == "csrf"
        assert store.rows(CART_ITEMS) == []
        assert cart.items == []

    async def test_rapid_writes_are_rate_limited(self, cart, signed_in):
        for _ in range(5):
            await cart.add_to_cart("p-2")

        with pytest.raises(RateLimitError):
            await cart.add_to_cart("p-2")

    async def test_identical_add_in_flight_is_suppressed(self, cart, store, signed_in):
        store.latency = 0.01

        first, second = await asyncio.gather(cart.add_to_cart("p-1"), cart.add_to_cart("p-1"))

        assert first.quantity == 1
        assert second is None
        assert store.rows(CART_ITEMS)[0]["quantity"] == 1

    async def test_remote_failure_leaves_cache_untouched(self, cart, store, signed_in):
        store.fail_next("select", CART_ITEMS, RemoteTimeoutError("slow"))

        with pytest.raises(RemoteTimeoutError):
            await cart.add_to_cart("p-1")

        assert cart.items == []

    async def test_unreadable_product_does_not_fail_committed_add(self, cart, store, signed_in):
        store.fail_next("select_in", PRODUCTS, NetworkError("products unreachable"))

        item = await cart.add_to_cart("p-1")

        assert item.quantity == 1
        assert item.name == "Product not found"
        assert len(cart.items) == 1
        assert len(store.rows(CART_ITEMS)) == 1


@pytest.fixture
async def line(cart, signed_in):
    return await cart.add_to_cart("p-1", quantity=2)


@pytest.mark.unit
class TestLineChanges:

    async def test_update_quantity(self, cart, store, line, cart_events):
        item = await cart.update_quantity(line.id, 5)

        assert item.quantity == 5
        assert store.rows(CART_ITEMS)[0]["quantity"] == 5
        assert cart_events[-1] == "quantity_updated"

    async def test_zero_quantity_removes_line(self, cart, store, line):
        assert await cart.update_quantity(line.id, 0) is None

        assert store.rows(CART_ITEMS) == []
        assert cart.items == []

    async def test_update_unknown_line(self, cart, line):
        with pytest.raises(RecordNotFoundError):
            await cart.update_quantity("missing", 3)

    async def test_remove_item(self, cart, store, line, cart_events):
        assert await cart.remove_item(line.id) is True
        assert await cart.remove_item(line.id) is False

        assert cart.items == []
        assert cart_events[-1] == "item_removed"

    async def test_cannot_touch_other_users_line(self, cart, store, line):
        seed_line(store, "p-2", user_id="user-bob")
        bob_line = store.rows(CART_ITEMS, {"user_id": "user-bob"})[0]

        assert await cart.remove_item(bob_line["id"]) is False
        assert len(store.rows(CART_ITEMS, {"user_id": "user-bob"})) == 1

    async def test_clear_cart(self, cart, store, line, cart_events):
        await cart.add_to_cart("p-2")

        removed = await cart.clear_cart()

        assert removed == 2
        assert cart.items == []
        assert cart.total_price == 0
        assert cart_events[-1] == "cleared"
