# storefront/app/services/reconciler.py
"""
Reconciliation Controller.

Sole writer of the cached authoritative snapshot. Every accepted mutation
goes through `_mutate`, which invalidates the snapshot for the cart key
and refetches before the call returns.

Ordering:
  - one outstanding fetch per cart key; concurrent readers share it
  - each invalidation bumps the key's generation; a fetch that started
    under an older generation is never stored, so no read after an
    acknowledged write can observe a snapshot from before it
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter, defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple

from storefront.app.core.config import settings
from storefront.app.core.events import CartEvent, EventBusBase, publish_safely
from storefront.app.core.metrics import cart_commit_counter, cart_fetch_counter, cart_fetch_duration
from storefront.app.integrations.cart_api.client import (
    CartItemNotFound,
    CartSourceError,
    OrderRejected,
    RemoteCartSource,
)
from storefront.app.models.cart import CartIdentity, NormalizedCartLine
from storefront.app.services.notices import NoticeBoard
from storefront.app.services.projection import project_cart, project_line
from storefront.app.services.snapshot_store import CartSnapshot, SnapshotStoreBase

log = logging.getLogger(__name__)

_FAILURE_MESSAGES = {
    "add": "We couldn't add that item. Please try again.",
    "update": "We couldn't update the quantity. Your cart shows the last saved amount.",
    "remove": "We couldn't remove that item. Please try again.",
    "clear": "We couldn't empty your cart. Please try again.",
    "checkout": "We couldn't place your order. Your cart is unchanged.",
}


class CartReconciler:
    def __init__(
        self,
        source: RemoteCartSource,
        store: SnapshotStoreBase,
        identity: CartIdentity,
        *,
        notices: Optional[NoticeBoard] = None,
        bus: Optional[EventBusBase] = None,
        stale_seconds: Optional[float] = None,
        image_base_url: Optional[str] = None,
    ) -> None:
        self._source = source
        self._store = store
        self._identity = identity
        self.notices = notices or NoticeBoard()
        self._bus = bus
        self._stale_seconds = settings.snapshot_stale_seconds if stale_seconds is None else stale_seconds
        self._image_base_url = settings.image_base_url if image_base_url is None else image_base_url

        self._current: Optional[CartSnapshot] = None
        self._generation: Dict[str, int] = defaultdict(int)
        self._inflight: Dict[str, Tuple[int, asyncio.Task]] = {}
        self._ops: Counter = Counter()
        self._verified: Set[str] = set()
        self.is_error = False

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def identity(self) -> CartIdentity:
        return self._identity

    @property
    def cart_key(self) -> str:
        return self._identity.cart_key

    async def set_identity(self, identity: CartIdentity) -> bool:
        """Point at another cart. Only that cart's own snapshot is ever served afterwards."""
        if identity == self._identity:
            return False
        old_key = self.cart_key
        self._identity = identity
        self._current = None
        self.is_error = False
        log.info("cart identity switched %s -> %s", old_key, identity.cart_key)
        return True

    # ------------------------------------------------------------------
    # State seen by the UI
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> Optional[CartSnapshot]:
        snap = self._current
        if snap is None or snap.cart_key != self.cart_key:
            return None
        return snap

    @property
    def is_loading(self) -> bool:
        return self.cart_key in self._inflight

    def in_flight(self) -> Dict[str, bool]:
        return {op: self._ops[op] > 0 for op in _FAILURE_MESSAGES}

    def lines(self, overlay: Optional[Mapping[str, int]] = None) -> List[NormalizedCartLine]:
        snap = self.snapshot
        return project_cart(snap.payload if snap else None, image_base_url=self._image_base_url, overlay=overlay)

    def find_line(self, product_id: str) -> Optional[NormalizedCartLine]:
        """Authoritative line for a product in the current snapshot, without any overlay."""
        snap = self.snapshot
        items = snap.payload.get("items") if snap else None
        if not isinstance(items, list):
            return None
        for raw in items:
            line = project_line(raw, image_base_url=self._image_base_url)
            if line is not None and line.id == product_id:
                return line
        return None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read(self) -> Optional[CartSnapshot]:
        """Serve from cache while fresh; otherwise fetch (sharing any fetch already running)."""
        key = self.cart_key
        snap = await self._store.get(key)
        # the shared cache is only served once upstream has answered this session for the key
        if snap is not None and key in self._verified and snap.is_fresh(self._stale_seconds):
            self._current = snap
            return snap
        return await self.refresh()

    async def refresh(self) -> Optional[CartSnapshot]:
        identity = self._identity
        key = identity.cart_key
        while True:
            gen = self._generation[key]
            entry = self._inflight.get(key)
            if entry is not None and entry[0] != gen:
                # started before the last invalidation; let it land, then fetch again
                await asyncio.wait([entry[1]])
                continue
            if entry is None:
                task = asyncio.create_task(self._fetch(identity, gen), name=f"cart-fetch:{key}")
                self._inflight[key] = (gen, task)
            else:
                task = entry[1]
            snap = await asyncio.shield(task)
            if snap is None and self._generation[key] != gen:
                # superseded by a newer write while in flight
                continue
            return snap

    async def _fetch(self, identity: CartIdentity, gen: int) -> Optional[CartSnapshot]:
        key = identity.cart_key
        stop = cart_fetch_duration.timer()
        try:
            try:
                payload = await self._source.fetch_cart(identity)
            except CartSourceError as e:
                cart_fetch_counter.inc({"result": "error"})
                log.warning("cart fetch failed for %s: %s", key, e)
                if not e.transient:
                    # rejected upstream (401/403): nothing cached may be shown for this key
                    self._verified.discard(key)
                    if key == self.cart_key:
                        self._current = None
                        self.is_error = True
                        self.notices.push("denied", "We couldn't load your cart. Please sign in again.")
                        await self._emit("cart.notice", key, {"kind": "denied"})
                    return None
                if key != self.cart_key:
                    return None
                self.is_error = True
                self.notices.push("network", "We couldn't refresh your cart. Showing the last known state.")
                await self._emit("cart.notice", key, {"kind": "network"})
                return self.snapshot

            cart_fetch_counter.inc({"result": "ok"})
            if self._generation[key] != gen:
                log.debug("discarding cart fetch for %s from generation %d", key, gen)
                return None
            snap = CartSnapshot(
                cart_key=key, payload=payload if isinstance(payload, dict) else {}, fetched_at=time.time()
            )
            self._verified.add(key)
            await self._store.put(snap)
            if self._generation[key] != gen:
                # invalidated while the put was suspended
                await self._store.invalidate(key)
                snap = snap.invalidated()
            if key == self.cart_key:
                self._current = snap
                self.is_error = False
            return snap
        finally:
            stop()
            entry = self._inflight.get(key)
            if entry is not None and entry[1] is asyncio.current_task():
                del self._inflight[key]

    async def invalidate(self, cart_key: Optional[str] = None) -> None:
        key = cart_key or self.cart_key
        self._generation[key] += 1
        await self._store.invalidate(key)
        if self._current is not None and self._current.cart_key == key:
            self._current = self._current.invalidated()

    async def invalidate_and_refetch(self, identity: Optional[CartIdentity] = None) -> Optional[CartSnapshot]:
        """The single follow-up to every accepted mutation."""
        identity = identity or self._identity
        key = identity.cart_key
        await self.invalidate(key)
        if identity == self._identity:
            snap = await self.refresh()
        else:
            # the session moved on; keep that cart's cache honest anyway
            snap = await self._fetch(identity, self._generation[key])
        await self._emit("cart.settled", key, {"generation": self._generation[key]})
        return snap

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _mutate(
        self,
        op: str,
        call: Callable[[CartIdentity], Awaitable[Any]],
        *,
        product_id: Optional[str] = None,
    ) -> Tuple[bool, Any]:
        identity = self._identity
        self._ops[op] += 1
        try:
            try:
                result = await call(identity)
            except CartItemNotFound as e:
                if op == "add":
                    return await self._failed(op, identity, e, product_id)
                # the line is already gone upstream; nothing to report
                cart_commit_counter.inc({"op": op, "result": "not_found"})
                log.info("%s for %s hit a missing line; refetching", op, product_id or identity.cart_key)
                await self.invalidate_and_refetch(identity)
                return False, None
            except CartSourceError as e:
                return await self._failed(op, identity, e, product_id)

            cart_commit_counter.inc({"op": op, "result": "ok"})
            await self.invalidate_and_refetch(identity)
            return True, result
        finally:
            self._ops[op] -= 1

    async def _failed(
        self, op: str, identity: CartIdentity, e: CartSourceError, product_id: Optional[str]
    ) -> Tuple[bool, Any]:
        """Mutation not applied: state stays at last-known-good, the shopper gets a notice."""
        cart_commit_counter.inc({"op": op, "result": "error"})
        log.warning("%s failed for %s: %s", op, identity.cart_key, e)
        kind = "checkout_failed" if isinstance(e, OrderRejected) or op == "checkout" else "commit_failed"
        self.notices.push(kind, _FAILURE_MESSAGES[op], product_id=product_id)
        await self._emit("cart.notice", identity.cart_key, {"kind": kind, "product_id": product_id})
        return False, None

    async def add_item(self, product_id: str, quantity: int = 1) -> bool:
        ok, _ = await self._mutate(
            "add", lambda ident: self._source.add_item(ident, product_id, quantity), product_id=product_id
        )
        return ok

    async def set_quantity(self, cart_item_id: str, quantity: int, *, product_id: Optional[str] = None) -> bool:
        ok, _ = await self._mutate(
            "update", lambda ident: self._source.set_quantity(ident, cart_item_id, quantity), product_id=product_id
        )
        return ok

    async def remove_item(self, cart_item_id: str, *, product_id: Optional[str] = None) -> bool:
        ok, _ = await self._mutate(
            "remove", lambda ident: self._source.remove_item(ident, cart_item_id), product_id=product_id
        )
        return ok

    async def clear(self) -> bool:
        ok, _ = await self._mutate("clear", lambda ident: self._source.clear_cart(ident))
        return ok

    async def create_order(self, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ok, result = await self._mutate("checkout", lambda ident: self._source.create_order(ident, order))
        return result if ok else None

    # ------------------------------------------------------------------

    async def _emit(self, type_: str, cart_key: str, data: Dict[str, Any]) -> None:
        if self._bus is not None:
            await publish_safely(self._bus, CartEvent(cart_key=cart_key, type=type_, data=data))
