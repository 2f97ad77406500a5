# storefront/app/services/snapshot_store.py
from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Optional

from storefront.app.core.config import settings

log = logging.getLogger(__name__)

SNAPSHOT_KEY_PREFIX = "storefront:cart:"  # final key: storefront:cart:<cart_key>


@dataclass(frozen=True)
class CartSnapshot:
    """
    Last authoritative cart payload seen for one cart key.
    Immutable: the reconciler replaces snapshots wholesale, never patches them.
    """

    cart_key: str
    payload: Dict[str, Any] = field(default_factory=dict)
    fetched_at: float = 0.0
    stale: bool = False

    def is_fresh(self, max_age_seconds: float, now: Optional[float] = None) -> bool:
        if self.stale or max_age_seconds <= 0:
            return False
        return ((now or time.time()) - self.fetched_at) < max_age_seconds

    def invalidated(self) -> "CartSnapshot":
        return replace(self, stale=True)


class SnapshotStoreBase:
    async def get(self, cart_key: str) -> Optional[CartSnapshot]:
        raise NotImplementedError

    async def put(self, snapshot: CartSnapshot) -> None:
        raise NotImplementedError

    async def invalidate(self, cart_key: str) -> None:
        snap = await self.get(cart_key)
        if snap is not None and not snap.stale:
            await self.put(snap.invalidated())

    async def drop(self, cart_key: str) -> None:
        raise NotImplementedError


class MemorySnapshotStore(SnapshotStoreBase):
    def __init__(self) -> None:
        self._snaps: Dict[str, CartSnapshot] = {}

    async def get(self, cart_key: str) -> Optional[CartSnapshot]:
        return self._snaps.get(cart_key)

    async def put(self, snapshot: CartSnapshot) -> None:
        self._snaps[snapshot.cart_key] = snapshot

    async def drop(self, cart_key: str) -> None:
        self._snaps.pop(cart_key, None)


class RedisSnapshotStore(SnapshotStoreBase):
    """Snapshots as JSON strings with a TTL, shared by every worker process."""

    def __init__(self, ttl_seconds: Optional[int] = None) -> None:
        self._ttl = ttl_seconds or settings.snapshot_ttl_seconds

    @staticmethod
    def _key(cart_key: str) -> str:
        return f"{SNAPSHOT_KEY_PREFIX}{cart_key}"

    async def get(self, cart_key: str) -> Optional[CartSnapshot]:
        from storefront.app.core.redis_conn import get_async_redis

        raw = await get_async_redis().get(self._key(cart_key))
        if not raw:
            return None
        try:
            return CartSnapshot(**json.loads(raw))
        except (TypeError, ValueError):
            log.warning("discarding corrupt cart snapshot for %s", cart_key)
            return None

    async def put(self, snapshot: CartSnapshot) -> None:
        from storefront.app.core.redis_conn import get_async_redis

        await get_async_redis().set(
            self._key(snapshot.cart_key), json.dumps(asdict(snapshot), ensure_ascii=False), ex=self._ttl
        )

    async def drop(self, cart_key: str) -> None:
        from storefront.app.core.redis_conn import get_async_redis

        await get_async_redis().delete(self._key(cart_key))


def build_snapshot_store() -> SnapshotStoreBase:
    if settings.snapshot_backend.lower() == "redis":
        return RedisSnapshotStore()
    return MemorySnapshotStore()
