from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, asdict, field
from typing import Any, AsyncGenerator, Dict, Optional, Set

from storefront.app.core.config import settings

log = logging.getLogger(__name__)


@dataclass
class CartEvent:
    cart_key: str
    type: str                         # cart.settled|cart.echo|cart.notice
    data: Dict[str, Any] = field(default_factory=dict)
    ts: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        if not d.get("ts"):
            d["ts"] = time.time()
        return d


class EventBusBase:
    async def subscribe(self, cart_key: Optional[str] = None) -> AsyncGenerator[Dict[str, Any], None]:
        raise NotImplementedError

    async def publish(self, event: CartEvent) -> None:
        raise NotImplementedError


class MemoryEventBus(EventBusBase):
    def __init__(self, max_queue: int = 256) -> None:
        self._subs: Set[asyncio.Queue] = set()
        self._max_queue = max_queue

    async def subscribe(self, cart_key: Optional[str] = None) -> AsyncGenerator[Dict[str, Any], None]:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subs.add(q)
        try:
            while True:
                item = await q.get()
                if cart_key is None or item.get("cart_key") == cart_key:
                    yield item
        finally:
            self._subs.discard(q)

    async def publish(self, event: CartEvent) -> None:
        payload = event.to_dict()
        for q in list(self._subs):
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                # slow consumer; it re-reads the cart on reconnect
                log.debug("dropping %s for a full subscriber queue", event.type)

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)


class RedisEventBus(EventBusBase):
    """
    Cross-process bus using Redis Pub/Sub.
    Channel: 'storefront:cart-events'
    """
    CHANNEL = "storefront:cart-events"

    async def subscribe(self, cart_key: Optional[str] = None) -> AsyncGenerator[Dict[str, Any], None]:
        from storefront.app.core.redis_conn import get_async_redis

        pubsub = get_async_redis().pubsub()
        await pubsub.subscribe(self.CHANNEL)
        try:
            async for message in pubsub.listen():
                if not message or message.get("type") != "message":
                    continue
                try:
                    data = json.loads(message["data"])
                except (TypeError, ValueError):
                    log.warning("ignoring malformed cart event on %s", self.CHANNEL)
                    continue
                if not isinstance(data, dict):
                    continue
                if cart_key is None or data.get("cart_key") == cart_key:
                    yield data
        finally:
            await pubsub.unsubscribe(self.CHANNEL)
            await pubsub.close()

    async def publish(self, event: CartEvent) -> None:
        from storefront.app.core.redis_conn import get_async_redis

        await get_async_redis().publish(self.CHANNEL, json.dumps(event.to_dict(), ensure_ascii=False))


# Singleton
_bus: Optional[EventBusBase] = None


def get_event_bus() -> EventBusBase:
    global _bus
    if _bus is None:
        _bus = RedisEventBus() if settings.events_backend.lower() == "redis" else MemoryEventBus()
    return _bus


async def publish_safely(bus: EventBusBase, event: CartEvent) -> None:
    """Events are advisory; a failed publish never fails the cart operation."""
    try:
        await bus.publish(event)
    except Exception:
        log.warning("cart event %s not published", event.type, exc_info=True)
