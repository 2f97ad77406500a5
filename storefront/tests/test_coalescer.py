from __future__ import annotations

import asyncio

import pytest

from storefront.app.services.coalescer import clamp_quantity


RAPTOR = "p-raptor-z95"  # stock 3
MOUSE = "p-mx-master-3s"  # stock 12
DEBOUNCE = 0.05


def test_clamp_quantity_bounds():
    assert clamp_quantity(0, 3) == 1
    assert clamp_quantity(-5, 3) == 1
    assert clamp_quantity(2, 3) == 2
    assert clamp_quantity(9, 3) == 3
    assert clamp_quantity(1, 1) == 1


@pytest.mark.asyncio
async def test_burst_commits_once_with_final_value(source, guest, make_session):
    source.seed(guest, MOUSE, 1)
    s = make_session(guest)
    await s.load()

    for q in (2, 3, 4, 5):
        assert s.update_quantity(MOUSE, q) == q
    # echo is immediate, nothing sent yet
    assert s.cart[0].quantity == 5
    assert s.totals.subtotal == 5 * 16500.0
    assert source.calls_of("set_quantity") == []

    await s.settle()
    assert source.calls_of("set_quantity") == [(guest.cart_key, s.cart[0].cart_item_id, 5)]
    assert s.cart[0].quantity == 5
    assert s.coalescer.overlay() == {}


@pytest.mark.asyncio
async def test_requests_clamp_to_stock(source, guest, make_session):
    source.seed(guest, RAPTOR, 2)
    s = make_session(guest)
    await s.load()

    assert s.update_quantity(RAPTOR, 4) == 3
    assert s.update_quantity(RAPTOR, 0) == 1
    assert s.update_quantity(RAPTOR, 99) == 3
    await s.settle()
    [(_, _, sent)] = source.calls_of("set_quantity")
    assert sent == 3


@pytest.mark.asyncio
async def test_unknown_product_is_ignored(source, guest, make_session):
    s = make_session(guest)
    await s.load()
    assert s.update_quantity("p-nope", 2) is None
    assert len(s.coalescer) == 0


@pytest.mark.asyncio
async def test_separate_products_commit_independently(source, guest, make_session):
    source.seed(guest, RAPTOR, 1)
    source.seed(guest, MOUSE, 1)
    s = make_session(guest)
    await s.load()

    s.update_quantity(RAPTOR, 2)
    s.update_quantity(MOUSE, 7)
    await s.settle()
    sent = sorted(q for _, _, q in source.calls_of("set_quantity"))
    assert sent == [2, 7]
    assert {ln.id: ln.quantity for ln in s.cart} == {RAPTOR: 2, MOUSE: 7}


@pytest.mark.asyncio
async def test_window_opened_during_commit_waits_for_it(source, guest, make_session):
    source.seed(guest, MOUSE, 1)
    s = make_session(guest)
    await s.load()

    source.hold("set_quantity")
    s.update_quantity(MOUSE, 3)
    await asyncio.sleep(DEBOUNCE * 3)
    # first commit is parked upstream
    assert len(source.calls_of("set_quantity")) == 1
    assert s.in_flight()["update"] is True

    s.update_quantity(MOUSE, 6)
    await asyncio.sleep(DEBOUNCE * 3)
    # the second window has not fired while the first commit is open
    assert len(source.calls_of("set_quantity")) == 1
    assert s.cart[0].quantity == 6

    source.release("set_quantity")
    await s.settle()
    assert [q for _, _, q in source.calls_of("set_quantity")] == [3, 6]
    assert s.cart[0].quantity == 6
    assert s.coalescer.overlay() == {}


@pytest.mark.asyncio
async def test_failed_commit_reverts_to_authoritative(source, guest, make_session):
    source.seed(guest, MOUSE, 2)
    s = make_session(guest)
    await s.load()

    source.fail_next("set_quantity")
    s.update_quantity(MOUSE, 9)
    await s.settle()

    assert s.cart[0].quantity == 2
    kinds = [n.kind for n in s.list_notices()]
    assert "commit_failed" in kinds


@pytest.mark.asyncio
async def test_remove_cancels_open_window(source, guest, make_session):
    source.seed(guest, MOUSE, 2)
    s = make_session(guest)
    await s.load()

    s.update_quantity(MOUSE, 5)
    assert await s.remove_from_cart(MOUSE) is True
    await s.settle()
    assert source.calls_of("set_quantity") == []
    assert s.cart == []


@pytest.mark.asyncio
async def test_add_existing_product_goes_through_window(source, guest, make_session):
    source.seed(guest, MOUSE, 1)
    s = make_session(guest)
    await s.load()

    assert await s.add_to_cart({"id": MOUSE}) is True
    assert await s.add_to_cart({"id": MOUSE}, 2) is True
    assert s.cart[0].quantity == 4
    await s.settle()
    assert source.calls_of("add_item") == []
    assert [q for _, _, q in source.calls_of("set_quantity")] == [4]


@pytest.mark.asyncio
async def test_three_plus_one_clicks_at_stock_three_send_one_commit(source, guest, make_session):
    line_id = source.seed(guest, RAPTOR, 1)
    s = make_session(guest)
    await s.load()

    for _ in range(3):
        assert await s.add_to_cart({"id": RAPTOR}) is True
    assert s.cart[0].quantity == 3
    assert source.calls_of("set_quantity") == []

    await s.settle()
    assert source.calls_of("set_quantity") == [(guest.cart_key, line_id, 3)]
    assert source.calls_of("add_item") == []
    assert s.cart[0].quantity == 3
