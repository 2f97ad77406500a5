from __future__ import annotations

import pytest

from storefront.app.core.events import MemoryEventBus
from storefront.app.integrations.cart_api.memory import InMemoryCartSource
from storefront.app.models.cart import CartIdentity
from storefront.app.services.cart_session import CartSession
from storefront.app.services.snapshot_store import MemorySnapshotStore

DEBOUNCE = 0.05


@pytest.fixture
def source():
    return InMemoryCartSource.with_demo_catalog()


@pytest.fixture
def store():
    return MemorySnapshotStore()


@pytest.fixture
def bus():
    return MemoryEventBus()


@pytest.fixture
def guest():
    return CartIdentity(guest_id="g-1")


@pytest.fixture
def make_session(source, store, bus):
    def _make(identity, **kw):
        kw.setdefault("debounce_seconds", DEBOUNCE)
        kw.setdefault("image_base_url", "https://cdn.example.test")
        return CartSession(source, store, identity, bus=bus, **kw)

    return _make
