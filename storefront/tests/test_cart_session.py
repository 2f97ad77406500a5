from __future__ import annotations

import asyncio

import pytest

from storefront.app.models.cart import CartIdentity
from storefront.app.services.session_registry import SessionRegistry, get_registry, reset_registry

MOUSE = "p-mx-master-3s"
RAPTOR = "p-raptor-z95"
VENGEANCE = "p-vengeance-32"  # out of stock


@pytest.mark.asyncio
async def test_view_carries_lines_totals_and_flags(source, guest, make_session):
    source.seed(guest, RAPTOR, 1)
    source.seed(guest, MOUSE, 2)
    s = make_session(guest)
    await s.load()

    v = s.view()
    assert v.cart_key == "guest:g-1"
    assert v.currency == "DZD"
    assert v.subtotal == 425000.0 + 2 * 16500.0
    assert v.total == v.subtotal
    assert v.is_loading is False and v.is_error is False
    images = {ln.id: ln.image for ln in v.items}
    assert images[RAPTOR] == "https://cdn.example.test/media/products/raptor-z95.jpg"
    assert images[MOUSE].startswith("https://placehold.co/")


@pytest.mark.asyncio
async def test_add_new_product_clamps_to_declared_stock(source, guest, make_session):
    s = make_session(guest)
    assert await s.add_to_cart({"id": RAPTOR, "stock_quantity": 3}, 10) is True
    assert source.calls_of("add_item") == [(guest.cart_key, RAPTOR, 3)]
    assert s.cart[0].quantity == 3


@pytest.mark.asyncio
async def test_out_of_stock_product_is_not_added(source, guest, make_session):
    s = make_session(guest)
    assert await s.add_to_cart({"id": VENGEANCE, "stock_quantity": 0}) is False
    assert source.calls_of("add_item") == []


@pytest.mark.asyncio
async def test_switch_identity_drops_open_windows(source, guest, make_session):
    user = CartIdentity(guest_id=guest.guest_id, user_id="u-1", token="t")
    source.seed(guest, MOUSE, 1)
    s = make_session(guest)
    await s.load()

    s.update_quantity(MOUSE, 4)
    await s.switch_identity(user)
    await s.settle()
    assert source.calls_of("set_quantity") == []
    assert s.cart_key == "user:u-1"
    assert s.coalescer.overlay() == {}


@pytest.mark.asyncio
async def test_commit_in_flight_during_switch_lands_on_its_own_cart(source, guest, make_session):
    user = CartIdentity(guest_id=guest.guest_id, user_id="u-1", token="t")
    guest_line = source.seed(guest, MOUSE, 1)
    user_line = source.seed(user, MOUSE, 2)
    s = make_session(guest)
    await s.load()

    source.hold("set_quantity")
    s.update_quantity(MOUSE, 5)
    await asyncio.sleep(0.15)
    assert len(source.calls_of("set_quantity")) == 1

    await s.switch_identity(user)
    await s.load()
    # the guest edit still in flight is not shown on the user's cart
    assert s.coalescer.overlay() == {}
    assert s.cart[0].quantity == 2

    assert s.update_quantity(MOUSE, 4) == 4
    assert s.coalescer.overlay() == {MOUSE: 4}
    source.release("set_quantity")
    await s.settle()

    assert source.calls_of("set_quantity") == [
        (guest.cart_key, guest_line, 5),
        (user.cart_key, user_line, 4),
    ]
    assert source.carts[guest.cart_key][guest_line]["quantity"] == 5
    assert source.carts[user.cart_key][user_line]["quantity"] == 4
    assert s.cart[0].quantity == 4
    assert s.coalescer.overlay() == {}


@pytest.mark.asyncio
async def test_checkout_flushes_pending_edits_first(source, guest, make_session):
    source.seed(guest, MOUSE, 1)
    s = make_session(guest)
    await s.load()

    s.update_quantity(MOUSE, 3)
    order = await s.checkout({"notes": "ring twice"})
    assert order is not None
    assert order["items"][0]["quantity"] == 3
    assert order["notes"] == "ring twice"
    assert s.cart == []


@pytest.mark.asyncio
async def test_echo_is_published_on_the_bus(source, bus, guest, make_session):
    source.seed(guest, MOUSE, 1)
    s = make_session(guest)
    await s.load()

    received = []

    async def listen():
        async for ev in bus.subscribe(guest.cart_key):
            received.append(ev)
            if ev["type"] == "cart.settled":
                return

    listener = asyncio.create_task(listen())
    await asyncio.sleep(0)
    s.update_quantity(MOUSE, 2)
    await s.settle()
    await asyncio.wait_for(listener, timeout=1)

    types = [ev["type"] for ev in received]
    assert types[0] == "cart.echo"
    assert received[0]["data"] == {"product_id": MOUSE, "quantity": 2}
    assert "cart.settled" in types


@pytest.mark.asyncio
async def test_registry_reuses_and_evicts_sessions(source, store, bus, guest):
    reg = SessionRegistry(source, store, bus, idle_seconds=60, debounce_seconds=0.01)
    a = await reg.session_for(guest)
    b = await reg.session_for(guest)
    assert a is b
    assert len(reg) == 1

    user = CartIdentity(guest_id=guest.guest_id, user_id="u-2", token="t")
    c = await reg.session_for(user)
    assert c is a and c.cart_key == "user:u-2"

    assert await reg.evict_idle(now=a.last_seen + 61) == 1
    assert reg.get(guest.guest_id) is None


@pytest.mark.asyncio
async def test_eviction_drops_the_cached_snapshot(source, store, bus, guest):
    source.seed(guest, MOUSE, 1)
    reg = SessionRegistry(source, store, bus, idle_seconds=60, debounce_seconds=0.01)
    s = await reg.session_for(guest)
    await s.load()
    assert await store.get(guest.cart_key) is not None

    assert await reg.evict_idle(now=s.last_seen + 61) == 1
    assert await store.get(guest.cart_key) is None


def test_reset_registry_installs_the_given_registry(source, store, bus):
    empty = SessionRegistry(source, store, bus)
    assert len(empty) == 0
    try:
        assert reset_registry(empty) is empty
        assert get_registry() is empty
        assert get_registry().source is source
    finally:
        reset_registry()


@pytest.mark.asyncio
async def test_switch_identity_clears_previous_notices(source, guest, make_session):
    s = make_session(guest)
    await s.load()
    assert await s.add_to_cart({"id": "p-unknown"}) is False
    assert s.list_notices() != []

    await s.switch_identity(CartIdentity(guest_id=guest.guest_id, user_id="u-4", token="t"))
    assert s.list_notices() == []
