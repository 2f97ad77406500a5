# storefront/app/services/session_registry.py
from __future__ import annotations

import logging
import time
from typing import Dict, Optional

from storefront.app.core.config import settings
from storefront.app.core.events import EventBusBase, get_event_bus
from storefront.app.integrations.cart_api.client import RemoteCartSource, build_cart_source
from storefront.app.models.cart import CartIdentity
from storefront.app.services.cart_session import CartSession
from storefront.app.services.snapshot_store import SnapshotStoreBase, build_snapshot_store

log = logging.getLogger(__name__)


class SessionRegistry:
    """One CartSession per browser session (keyed by guest id), sharing source, store and bus."""

    def __init__(
        self,
        source: RemoteCartSource,
        store: SnapshotStoreBase,
        bus: Optional[EventBusBase] = None,
        *,
        idle_seconds: Optional[int] = None,
        debounce_seconds: Optional[float] = None,
    ) -> None:
        self.source = source
        self.store = store
        self.bus = bus
        self._idle = settings.session_idle_seconds if idle_seconds is None else idle_seconds
        self._debounce = debounce_seconds
        self._sessions: Dict[str, CartSession] = {}

    async def session_for(self, identity: CartIdentity) -> CartSession:
        await self.evict_idle()
        session = self._sessions.get(identity.guest_id)
        if session is None:
            session = CartSession(
                self.source, self.store, identity, bus=self.bus, debounce_seconds=self._debounce
            )
            self._sessions[identity.guest_id] = session
            log.debug("new cart session %s", identity.cart_key)
        elif session.identity != identity:
            await session.switch_identity(identity)
        session.touch()
        return session

    def get(self, guest_id: str) -> Optional[CartSession]:
        return self._sessions.get(guest_id)

    async def evict_idle(self, now: Optional[float] = None) -> int:
        now = now or time.monotonic()
        stale = [gid for gid, s in self._sessions.items() if now - s.last_seen > self._idle]
        for gid in stale:
            session = self._sessions.pop(gid)
            # in-flight commits still land before the session goes away
            await session.close()
            await self.store.drop(session.cart_key)
        if stale:
            log.info("evicted %d idle cart sessions", len(stale))
        return len(stale)

    async def close(self) -> None:
        for session in list(self._sessions.values()):
            await session.close()
        self._sessions.clear()
        aclose = getattr(self.source, "aclose", None)
        if aclose is not None:
            await aclose()

    def __len__(self) -> int:
        return len(self._sessions)


_REGISTRY: Optional[SessionRegistry] = None


def get_registry() -> SessionRegistry:
    global _REGISTRY
    if _REGISTRY is None:
        _REGISTRY = SessionRegistry(build_cart_source(), build_snapshot_store(), get_event_bus())
    return _REGISTRY


def reset_registry(registry: Optional[SessionRegistry] = None) -> SessionRegistry:
    """
    Replace the process-wide registry (tests swap in an in-memory source here).
    """
    global _REGISTRY
    if registry is None:
        registry = SessionRegistry(build_cart_source(), build_snapshot_store(), get_event_bus())
    _REGISTRY = registry
    return _REGISTRY
