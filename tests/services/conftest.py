# tests/services/conftest.py
"""Fixtures wiring the sync engines to a signed-in controller"""

import pytest

from shopguard.services.cart_sync import CartSyncEngine
from shopguard.services.favorites_sync import FavoritesSyncEngine
from shopguard.services.secure_gateway import SecureGateway


@pytest.fixture
def gateway(controller, limiter, csrf, monitor):
    return SecureGateway(controller, limiter, csrf, monitor=monitor, timeout=2.0)


@pytest.fixture
def cart(controller, store, gateway, bus):
    engine = CartSyncEngine(controller, store, gateway, bus, timeout=2.0, auto_load=False)
    yield engine
    engine.close()


@pytest.fixture
def favorites(controller, store, gateway, bus):
    engine = FavoritesSyncEngine(controller, store, gateway, bus, timeout=2.0, auto_load=False)
    yield engine
    engine.close()


@pytest.fixture
async def signed_in(controller):
    """Controller with anna signed in"""
    return await controller.sign_in("anna@example.com", "Corr3ct!Horse")
