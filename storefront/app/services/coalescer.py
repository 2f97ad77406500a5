# storefront/app/services/coalescer.py
"""
Mutation Coalescer: turns bursts of quantity gestures into one commit.

Per (cart key, product) there is at most one PendingEdit. It holds the display
quantity (the optimistic echo) plus two tasks:

  timer   the open quiescence window; restarted by every new request
  commit  the set-quantity commit and its refetch; never cancelled

A window opened while a commit is in flight first waits for that commit
and its refetch to settle, so writes for one product never interleave.
The edit is dropped once its last commit settles with no window open.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from storefront.app.core.config import settings
from storefront.app.core.metrics import cart_coalesced_counter, pending_edits_gauge
from storefront.app.services.reconciler import CartReconciler

log = logging.getLogger(__name__)


@dataclass
class PendingEdit:
    product_id: str
    cart_key: str
    display_quantity: int
    timer: Optional[asyncio.Task] = None
    commit: Optional[asyncio.Task] = None

    @property
    def window_open(self) -> bool:
        return self.timer is not None and not self.timer.done()

    @property
    def committing(self) -> bool:
        return self.commit is not None and not self.commit.done()


def clamp_quantity(proposed: int, stock_quantity: int) -> int:
    """Clamp into [1, stock_quantity]. Caller guarantees stock_quantity >= 1."""
    return min(max(int(proposed), 1), stock_quantity)


class MutationCoalescer:
    def __init__(
        self,
        reconciler: CartReconciler,
        *,
        delay_seconds: Optional[float] = None,
        on_echo: Optional[Callable[[str, int], None]] = None,
    ) -> None:
        self._reconciler = reconciler
        self._delay = settings.debounce_seconds if delay_seconds is None else delay_seconds
        self._on_echo = on_echo
        self._edits: Dict[Tuple[str, str], PendingEdit] = {}

    # ---------- read side ----------

    def overlay(self) -> Dict[str, int]:
        """product id -> quantity the UI should show instead of the authoritative one."""
        key = self._reconciler.cart_key
        return {pid: e.display_quantity for (ck, pid), e in self._edits.items() if ck == key}

    def pending(self, product_id: str) -> Optional[PendingEdit]:
        return self._edits.get((self._reconciler.cart_key, product_id))

    def __len__(self) -> int:
        return len(self._edits)

    # ---------- write side ----------

    def request_quantity_change(self, product_id: str, proposed_quantity: int) -> Optional[int]:
        """
        Echo the clamped quantity immediately and (re)start the product's window.
        Returns the quantity now displayed, or None when the product is not a
        line of the current cart (or has no stock left to clamp into).
        """
        line = self._reconciler.find_line(product_id)
        if line is None:
            log.debug("quantity change for %s ignored: not in cart %s", product_id, self._reconciler.cart_key)
            return None
        if line.stock_quantity < 1:
            log.info("quantity change for %s ignored: out of stock", product_id)
            return None

        qty = clamp_quantity(proposed_quantity, line.stock_quantity)
        key = (self._reconciler.cart_key, product_id)
        edit = self._edits.get(key)
        if edit is None:
            edit = PendingEdit(product_id=product_id, cart_key=key[0], display_quantity=qty)
            self._edits[key] = edit
            pending_edits_gauge.inc()
        else:
            if edit.window_open:
                edit.timer.cancel()
                cart_coalesced_counter.inc()
            edit.display_quantity = qty

        edit.timer = asyncio.create_task(self._window(edit), name=f"qty-window:{product_id}")
        if self._on_echo is not None:
            self._on_echo(product_id, qty)
        return qty

    def cancel(self, product_id: str) -> bool:
        """Close the product's window without committing. In-flight commits still finish."""
        edit = self._edits.get((self._reconciler.cart_key, product_id))
        if edit is None:
            return False
        self._close(edit)
        return True

    def cancel_all(self) -> None:
        for edit in list(self._edits.values()):
            self._close(edit)

    def _close(self, edit: PendingEdit) -> None:
        if edit.window_open:
            edit.timer.cancel()
        edit.timer = None
        if not edit.committing:
            self._drop(edit)

    async def drain(self) -> None:
        """Wait until every window has closed and every commit (with its refetch) settled."""
        while True:
            tasks = [
                t
                for e in self._edits.values()
                for t in (e.timer, e.commit)
                if t is not None and not t.done()
            ]
            if not tasks:
                return
            await asyncio.wait(tasks)

    # ---------- internals ----------

    async def _window(self, edit: PendingEdit) -> None:
        if edit.committing:
            await asyncio.wait([edit.commit])
        await asyncio.sleep(self._delay)
        # window closed: from here on, later requests open a new one
        edit.timer = None
        edit.commit = asyncio.create_task(
            self._commit(edit, edit.display_quantity), name=f"qty-commit:{edit.product_id}"
        )

    async def _commit(self, edit: PendingEdit, quantity: int) -> None:
        try:
            if edit.cart_key != self._reconciler.cart_key:
                log.info("dropping quantity commit for %s: cart identity changed", edit.product_id)
                return
            line = self._reconciler.find_line(edit.product_id)
            if line is None or not line.cart_item_id:
                # removed while the window was open
                log.info("dropping quantity commit for %s: no longer in cart", edit.product_id)
                return
            log.debug("committing %s x%d on %s", edit.product_id, quantity, edit.cart_key)
            await self._reconciler.set_quantity(line.cart_item_id, quantity, product_id=edit.product_id)
        finally:
            if not edit.window_open:
                self._drop(edit)

    def _drop(self, edit: PendingEdit) -> None:
        key = (edit.cart_key, edit.product_id)
        if self._edits.get(key) is edit:
            del self._edits[key]
            pending_edits_gauge.dec()
