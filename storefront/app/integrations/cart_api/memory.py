# storefront/app/integrations/cart_api/memory.py
from __future__ import annotations

import asyncio
import copy
import itertools
from typing import Any, Dict, List, Optional, Tuple

from storefront.app.integrations.cart_api.client import CartItemNotFound, CartSourceError, OrderRejected
from storefront.app.models.cart import CartIdentity, RemoteCartItem

DEMO_PRODUCTS: List[Dict[str, Any]] = [
    {
        "id": "p-raptor-z95", "name": "Raptor Z95 Gaming PC", "price_cents": 45_000_000,
        "final_price_cents": 42_500_000, "stock_quantity": 3, "has_active_discount": True,
        "image_urls": ["/media/products/raptor-z95.jpg"],
    },
    {
        "id": "p-mx-master-3s", "name": "MX Master 3S", "price_cents": 1_650_000,
        "final_price_cents": 1_650_000, "stock_quantity": 12, "has_active_discount": False,
        "image_urls": ["https://placehold.co/100x100?text=MX+Master+3S"],
    },
    {
        "id": "p-vengeance-32", "name": "Vengeance 32GB DDR5", "price_cents": 2_400_000,
        "final_price_cents": 2_100_000, "stock_quantity": 0, "has_active_discount": True,
        "image_urls": [],
    },
]


class InMemoryCartSource:
    """
    Authoritative cart store kept in process.

    Mirrors the REST backend's rules: quantities are bounded by product stock,
    the last accepted write wins, unknown lines answer 404. Test hooks:
      - calls: every operation in arrival order, as (op, args)
      - fail_next(op, n): the next n calls of op raise a transient CartSourceError
      - hold(op): calls of op block until release(op)
      - latency: seconds every call sleeps before answering
    """

    def __init__(self, products: Optional[List[Dict[str, Any]]] = None, *, latency: float = 0.0) -> None:
        self.products: Dict[str, Dict[str, Any]] = {p["id"]: dict(p) for p in (products or [])}
        self.carts: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.orders: List[Dict[str, Any]] = []
        self.latency = latency
        self._failures: Dict[str, int] = {}
        self._gates: Dict[str, asyncio.Event] = {}
        self._ids = itertools.count(1)

    @classmethod
    def with_demo_catalog(cls) -> "InMemoryCartSource":
        return cls(copy.deepcopy(DEMO_PRODUCTS))

    # ---------- test hooks ----------

    def fail_next(self, op: str, times: int = 1) -> None:
        self._failures[op] = self._failures.get(op, 0) + times

    def hold(self, op: str) -> None:
        self._gates[op] = asyncio.Event()

    def release(self, op: str) -> None:
        gate = self._gates.pop(op, None)
        if gate is not None:
            gate.set()

    def calls_of(self, op: str) -> List[Tuple[Any, ...]]:
        return [args for name, args in self.calls if name == op]

    def set_stock(self, product_id: str, stock: int) -> None:
        self.products[product_id]["stock_quantity"] = stock

    def seed(self, identity: CartIdentity, product_id: str, quantity: int) -> str:
        """Put a line in a cart without recording a call."""
        line_id = f"ci-{next(self._ids)}"
        self._cart(identity)[line_id] = {"id": line_id, "product_id": product_id, "quantity": quantity}
        return line_id

    # ---------- internals ----------

    def _cart(self, identity: CartIdentity) -> Dict[str, Dict[str, Any]]:
        return self.carts.setdefault(identity.cart_key, {})

    async def _enter(self, op: str, *args: Any) -> None:
        self.calls.append((op, args))
        if self.latency:
            await asyncio.sleep(self.latency)
        gate = self._gates.get(op)
        if gate is not None:
            await gate.wait()
        if self._failures.get(op):
            self._failures[op] -= 1
            raise CartSourceError(f"{op}: injected failure", operation=op)

    def _render(self, line: Dict[str, Any]) -> Dict[str, Any]:
        product = self.products.get(line["product_id"], {"id": line["product_id"]})
        return {**line, "product": copy.deepcopy(product)}

    def _find_product_line(self, cart: Dict[str, Dict[str, Any]], product_id: str) -> Optional[Dict[str, Any]]:
        return next((ln for ln in cart.values() if ln["product_id"] == product_id), None)

    def _check_stock(self, op: str, product_id: str, quantity: int) -> None:
        stock = int(self.products.get(product_id, {}).get("stock_quantity", 0))
        if quantity > stock:
            raise CartSourceError(f"{op}: only {stock} in stock", operation=op, status_code=409)

    # ---------- RemoteCartSource ----------

    async def fetch_cart(self, identity: CartIdentity) -> Dict[str, Any]:
        await self._enter("fetch_cart", identity.cart_key)
        return {"items": [self._render(ln) for ln in self._cart(identity).values()]}

    async def add_item(self, identity: CartIdentity, product_id: str, quantity: int) -> RemoteCartItem:
        await self._enter("add_item", identity.cart_key, product_id, quantity)
        if product_id not in self.products:
            raise CartItemNotFound(f"add_item: unknown product {product_id}", operation="add_item", status_code=404)
        cart = self._cart(identity)
        line = self._find_product_line(cart, product_id)
        new_qty = quantity + (line["quantity"] if line else 0)
        self._check_stock("add_item", product_id, new_qty)
        if line is None:
            line_id = f"ci-{next(self._ids)}"
            line = cart[line_id] = {"id": line_id, "product_id": product_id, "quantity": 0}
        line["quantity"] = new_qty
        return RemoteCartItem.from_payload(self._render(line))

    async def set_quantity(self, identity: CartIdentity, cart_item_id: str, quantity: int) -> RemoteCartItem:
        await self._enter("set_quantity", identity.cart_key, cart_item_id, quantity)
        line = self._cart(identity).get(cart_item_id)
        if line is None:
            raise CartItemNotFound(f"set_quantity: no line {cart_item_id}", operation="set_quantity", status_code=404)
        if quantity < 1:
            raise CartSourceError("set_quantity: quantity must be >= 1", operation="set_quantity", status_code=422)
        self._check_stock("set_quantity", line["product_id"], quantity)
        line["quantity"] = quantity
        return RemoteCartItem.from_payload(self._render(line))

    async def remove_item(self, identity: CartIdentity, cart_item_id: str) -> None:
        await self._enter("remove_item", identity.cart_key, cart_item_id)
        if self._cart(identity).pop(cart_item_id, None) is None:
            raise CartItemNotFound(f"remove_item: no line {cart_item_id}", operation="remove_item", status_code=404)

    async def clear_cart(self, identity: CartIdentity) -> None:
        await self._enter("clear_cart", identity.cart_key)
        self._cart(identity).clear()

    async def create_order(self, identity: CartIdentity, order: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("create_order", identity.cart_key)
        cart = self._cart(identity)
        if not cart:
            raise OrderRejected("create_order: cart is empty", operation="create_order", status_code=400)
        items = [self._render(ln) for ln in cart.values()]
        total_cents = sum(
            int(it["product"].get("final_price_cents", 0)) * int(it["quantity"]) for it in items
        )
        doc = {
            "id": f"ord-{len(self.orders) + 1001}",
            "status": "pending",
            "items": items,
            "total_cents": total_cents,
            **{k: v for k, v in order.items() if k in ("delivery_service_id", "shipping_address", "notes")},
        }
        self.orders.append(doc)
        cart.clear()
        return doc
