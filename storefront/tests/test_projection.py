from __future__ import annotations

import copy

from storefront.app.services.projection import project_cart, project_line, resolve_image_url


def _item(pid="p1", qty=2, **product):
    prod = {"id": pid, "name": "Thing", "price_cents": 2000, "final_price_cents": 1500, "stock_quantity": 5}
    prod.update(product)
    return {"id": f"ci-{pid}", "product_id": pid, "quantity": qty, "product": prod}


def test_projects_prices_and_stock():
    [line] = project_cart({"items": [_item(image_urls=["/img/a.png"])]}, image_base_url="https://cdn.test/")
    assert line.id == "p1"
    assert line.cart_item_id == "ci-p1"
    assert line.quantity == 2
    assert line.price == 15.0
    assert line.original_price_cents == 2000
    assert line.final_price_cents == 1500
    assert line.stock_quantity == 5
    assert line.image == "https://cdn.test/img/a.png"


def test_missing_or_non_list_items_yield_empty_cart():
    assert project_cart(None) == []
    assert project_cart({}) == []
    assert project_cart({"items": None}) == []
    assert project_cart({"items": "oops"}) == []
    assert project_cart(["not", "a", "mapping"]) == []


def test_unreadable_items_are_skipped():
    payload = {"items": [42, {"quantity": 1}, _item("p2")]}
    lines = project_cart(payload)
    assert [ln.id for ln in lines] == ["p2"]


def test_one_line_per_product():
    lines = project_cart({"items": [_item("p1", 1), _item("p1", 3)]})
    assert len(lines) == 1
    assert lines[0].quantity == 1


def test_overlay_replaces_quantity_only_for_display():
    payload = {"items": [_item("p1", 2), _item("p2", 1)]}
    lines = project_cart(payload, overlay={"p1": 4})
    assert {ln.id: ln.quantity for ln in lines} == {"p1": 4, "p2": 1}
    # payload untouched
    assert payload["items"][0]["quantity"] == 2


def test_item_level_unit_prices_win():
    raw = _item()
    raw["unit_final_price_cents"] = 999
    line = project_line(raw)
    assert line.final_price_cents == 999
    assert line.price == 9.99


def test_original_price_falls_back_to_final():
    raw = _item()
    del raw["product"]["price_cents"]
    assert project_line(raw).original_price_cents == 1500


def test_unreadable_price_is_none():
    line = project_line(_item(final_price_cents="n/a"))
    assert line.price is None


def test_resolve_image_url():
    assert resolve_image_url("https://x.test/a.png", "https://cdn") == "https://x.test/a.png"
    assert resolve_image_url("//x.test/a.png", "https://cdn") == "//x.test/a.png"
    assert resolve_image_url("a.png", "https://cdn/") == "https://cdn/a.png"
    assert resolve_image_url("/a.png", "") == "/a.png"
    assert resolve_image_url("", "https://cdn") == ""
    assert resolve_image_url(None, "https://cdn") == ""


def test_projection_is_deterministic():
    payload = {"items": [_item("p1", 2, image_urls=["/a.png"]), _item("p2", 1, final_price_cents="bad")]}
    before = copy.deepcopy(payload)
    assert project_cart(payload, image_base_url="https://cdn.test") == project_cart(
        payload, image_base_url="https://cdn.test"
    )
    assert payload == before
