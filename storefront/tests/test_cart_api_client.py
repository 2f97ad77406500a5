from __future__ import annotations

import json

import httpx
import pytest

from storefront.app.integrations.cart_api.client import (
    CartItemNotFound,
    CartSourceError,
    HttpCartSource,
    OrderRejected,
)
from storefront.app.models.cart import CartIdentity

GUEST = CartIdentity(guest_id="g-9")
USER = CartIdentity(guest_id="g-9", user_id="u-1", token="secret")


def _source(handler, **kw):
    kw.setdefault("fetch_attempts", 3)
    return HttpCartSource("https://shop.test/api/v1", transport=httpx.MockTransport(handler), **kw)


@pytest.mark.asyncio
async def test_guest_and_user_headers():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(200, json={"items": []})

    src = _source(handler)
    await src.fetch_cart(GUEST)
    await src.fetch_cart(USER)
    await src.aclose()

    assert seen[0].url.path == "/api/v1/cart"
    assert seen[0].headers["X-Session-Id"] == "g-9"
    assert "Authorization" not in seen[0].headers
    assert seen[1].headers["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_fetch_retries_transient_failures():
    calls = []

    def handler(request: httpx.Request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"items": [{"id": "ci-1", "product_id": "p1", "quantity": 2}]})

    src = _source(handler)
    body = await src.fetch_cart(GUEST)
    assert len(calls) == 2
    assert body["items"][0]["quantity"] == 2


@pytest.mark.asyncio
async def test_fetch_gives_up_after_attempts():
    calls = []

    def handler(request: httpx.Request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    src = _source(handler, fetch_attempts=2)
    with pytest.raises(CartSourceError) as ei:
        await src.fetch_cart(GUEST)
    assert len(calls) == 2
    assert ei.value.transient is True


@pytest.mark.asyncio
async def test_fetch_does_not_retry_client_errors():
    calls = []

    def handler(request: httpx.Request):
        calls.append(request)
        return httpx.Response(401, json={"detail": "nope"})

    with pytest.raises(CartSourceError) as ei:
        await _source(handler).fetch_cart(GUEST)
    assert len(calls) == 1
    assert ei.value.status_code == 401
    assert ei.value.transient is False


@pytest.mark.asyncio
async def test_fetch_non_object_body():
    src = _source(lambda request: httpx.Response(200, json=["weird"]))
    assert await src.fetch_cart(GUEST) == {"items": None}


@pytest.mark.asyncio
async def test_commits_are_never_retried():
    calls = []

    def handler(request: httpx.Request):
        calls.append(request)
        return httpx.Response(502)

    with pytest.raises(CartSourceError):
        await _source(handler).set_quantity(GUEST, "ci-1", 4)
    assert len(calls) == 1
    assert calls[0].method == "PUT"
    assert calls[0].url.path == "/api/v1/cart/items/ci-1"


@pytest.mark.asyncio
async def test_set_quantity_sends_body_and_reads_item():
    def handler(request: httpx.Request):
        assert json.loads(request.content) == {"quantity": 4}
        return httpx.Response(
            200,
            json={"id": "ci-1", "product_id": "p1", "quantity": 4, "product": {"final_price_cents": 500, "stock_quantity": 9}},
        )

    item = await _source(handler).set_quantity(GUEST, "ci-1", 4)
    assert item.cart_item_id == "ci-1"
    assert item.quantity == 4
    assert item.unit_final_price_cents == 500
    assert item.stock_quantity == 9


@pytest.mark.asyncio
async def test_unreadable_echo_is_tolerated():
    src = _source(lambda request: httpx.Response(200, json={"quantity": 0}))
    assert await src.add_item(GUEST, "p1", 1) is None


@pytest.mark.asyncio
async def test_missing_line_maps_to_not_found():
    src = _source(lambda request: httpx.Response(404))
    with pytest.raises(CartItemNotFound):
        await src.remove_item(GUEST, "ci-404")


@pytest.mark.asyncio
async def test_order_rejection():
    src = _source(lambda request: httpx.Response(422, json={"detail": "address"}))
    with pytest.raises(OrderRejected) as ei:
        await src.create_order(USER, {"shipping_address": {}})
    assert ei.value.status_code == 422


@pytest.mark.asyncio
async def test_order_created():
    def handler(request: httpx.Request):
        assert request.url.path == "/api/v1/orders"
        return httpx.Response(201, json={"id": "ord-1", "status": "pending"})

    order = await _source(handler).create_order(USER, {"delivery_service_id": "ds-1"})
    assert order == {"id": "ord-1", "status": "pending"}
