# storefront/app/services/cart_session.py
"""
CartSession: the cart as one browser session sees it.

Two layers, one writer each:
  - authoritative snapshot  -> CartReconciler
  - transient display layer -> MutationCoalescer
Everything the UI reads (lines, totals, flags) is derived from those two
on demand; nothing here stores a copy.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from storefront.app.core.config import settings
from storefront.app.core.events import CartEvent, EventBusBase, publish_safely
from storefront.app.integrations.cart_api.client import RemoteCartSource
from storefront.app.models.cart import CartIdentity, CartTotals, CartView, NormalizedCartLine, Notice
from storefront.app.services.coalescer import MutationCoalescer
from storefront.app.services.notices import NoticeBoard
from storefront.app.services.reconciler import CartReconciler
from storefront.app.services.snapshot_store import SnapshotStoreBase
from storefront.app.services.totals import compute_totals

log = logging.getLogger(__name__)


class CartSession:
    def __init__(
        self,
        source: RemoteCartSource,
        store: SnapshotStoreBase,
        identity: CartIdentity,
        *,
        bus: Optional[EventBusBase] = None,
        debounce_seconds: Optional[float] = None,
        stale_seconds: Optional[float] = None,
        image_base_url: Optional[str] = None,
    ) -> None:
        self.notices = NoticeBoard()
        self._bus = bus
        self.reconciler = CartReconciler(
            source,
            store,
            identity,
            notices=self.notices,
            bus=bus,
            stale_seconds=stale_seconds,
            image_base_url=image_base_url,
        )
        self.coalescer = MutationCoalescer(
            self.reconciler, delay_seconds=debounce_seconds, on_echo=self._echo
        )
        self.last_seen = time.monotonic()
        self._background: set[asyncio.Task] = set()

    # ---------- identity ----------

    @property
    def identity(self) -> CartIdentity:
        return self.reconciler.identity

    @property
    def cart_key(self) -> str:
        return self.reconciler.cart_key

    async def switch_identity(self, identity: CartIdentity) -> bool:
        if identity == self.identity:
            return False
        # open windows and notices belong to the previous cart
        self.coalescer.cancel_all()
        self.notices.clear()
        return await self.reconciler.set_identity(identity)

    # ---------- derived state ----------

    @property
    def cart(self) -> List[NormalizedCartLine]:
        return self.reconciler.lines(overlay=self.coalescer.overlay())

    @property
    def totals(self) -> CartTotals:
        return compute_totals(self.cart)

    @property
    def subtotal(self) -> float:
        return self.totals.subtotal

    @property
    def total(self) -> float:
        return self.totals.total

    @property
    def is_loading(self) -> bool:
        return self.reconciler.is_loading

    @property
    def is_error(self) -> bool:
        return self.reconciler.is_error

    def in_flight(self) -> Dict[str, bool]:
        # coalesced commits run through the reconciler's "update" op
        return self.reconciler.in_flight()

    def view(self) -> CartView:
        lines = self.cart
        totals = compute_totals(lines)
        return CartView(
            cart_key=self.cart_key,
            items=lines,
            subtotal=totals.subtotal,
            total=totals.total,
            currency=settings.currency,
            is_loading=self.is_loading,
            is_error=self.is_error,
            in_flight=self.in_flight(),
            pending=self.coalescer.overlay(),
            notices=self.notices.list(),
        )

    # ---------- operations ----------

    async def load(self) -> None:
        self.touch()
        await self.reconciler.read()

    async def ensure_loaded(self) -> None:
        if self.reconciler.snapshot is None:
            await self.load()

    def update_quantity(self, product_id: str, quantity: int) -> Optional[int]:
        self.touch()
        return self.coalescer.request_quantity_change(product_id, quantity)

    async def add_to_cart(self, product: Mapping[str, Any], quantity: int = 1) -> bool:
        """
        An existing line is bumped through the coalescer like a "+" click;
        a new product is committed right away.
        """
        self.touch()
        product_id = str(product.get("id") or product.get("product_id") or "")
        if not product_id:
            return False
        await self.ensure_loaded()

        line = self.reconciler.find_line(product_id)
        if line is not None:
            shown = self.coalescer.overlay().get(product_id, line.quantity or 0)
            return self.coalescer.request_quantity_change(product_id, shown + quantity) is not None

        stock = product.get("stock_quantity")
        if isinstance(stock, int) and not isinstance(stock, bool):
            if stock < 1:
                log.info("not adding %s: out of stock", product_id)
                return False
            quantity = min(quantity, stock)
        return await self.reconciler.add_item(product_id, max(quantity, 1))

    async def remove_from_cart(self, product_id: str) -> bool:
        self.touch()
        self.coalescer.cancel(product_id)
        await self.ensure_loaded()
        line = self.reconciler.find_line(product_id)
        if line is None or not line.cart_item_id:
            return False
        return await self.reconciler.remove_item(line.cart_item_id, product_id=product_id)

    async def clear_cart(self) -> bool:
        self.touch()
        self.coalescer.cancel_all()
        return await self.reconciler.clear()

    async def settle(self) -> None:
        """Wait for every open window and in-flight commit, refetches included."""
        await self.coalescer.drain()

    async def checkout(self, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Flush pending edits so the order sees them, then hand off to the order backend."""
        self.touch()
        await self.settle()
        return await self.reconciler.create_order(order)

    def dismiss_notice(self, notice_id: str) -> bool:
        return self.notices.dismiss(notice_id)

    def list_notices(self) -> List[Notice]:
        return self.notices.list()

    async def close(self) -> None:
        self.coalescer.cancel_all()
        await self.settle()

    # ---------- misc ----------

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def _echo(self, product_id: str, quantity: int) -> None:
        if self._bus is None:
            return
        event = CartEvent(cart_key=self.cart_key, type="cart.echo", data={"product_id": product_id, "quantity": quantity})
        task = asyncio.create_task(publish_safely(self._bus, event))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
