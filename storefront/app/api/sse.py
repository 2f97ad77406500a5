# storefront/app/api/sse.py
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict

from fastapi import APIRouter, Depends, Query
from sse_starlette.sse import EventSourceResponse

from storefront.app.core.events import get_event_bus
from storefront.app.services.cart_session import CartSession
from storefront.app.services.session_registry import get_registry
from storefront.routes.api_cart import current_session

router = APIRouter(prefix="/api", tags=["sse"])


def _ts_iso(ts: Any) -> str:
    try:
        return datetime.fromtimestamp(float(ts), timezone.utc).isoformat(timespec="seconds")
    except (TypeError, ValueError, OverflowError):
        return datetime.now(timezone.utc).isoformat(timespec="seconds")


def shape_event(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Stable SSE payload:
      {"ts": iso8601, "cart_key": str, "type": "cart.settled|cart.echo|cart.notice", "data": {...}}
    """
    data = raw.get("data")
    return {
        "ts": _ts_iso(raw.get("ts")),
        "cart_key": raw.get("cart_key"),
        "type": raw.get("type") or "cart.event",
        "data": data if isinstance(data, dict) else {},
    }


def to_sse(raw: Dict[str, Any]) -> Dict[str, str]:
    """One sse-starlette message; `data` is a JSON document, not a dict repr."""
    payload = shape_event(raw)
    return {"event": payload["type"], "data": json.dumps(payload, ensure_ascii=False)}


@router.get("/cart/events")
async def cart_events(
    ping: int = Query(default=15, ge=1, le=300),
    session: CartSession = Depends(current_session),
):
    """
    Server-Sent Events for this session's cart. Clients re-read GET /api/cart
    on `cart.settled`; `cart.echo` carries optimistic quantities.
    """
    bus = get_registry().bus or get_event_bus()
    cart_key = session.cart_key

    async def event_generator() -> AsyncGenerator[Dict, None]:
        async for raw in bus.subscribe(cart_key):
            yield to_sse(raw)

    return EventSourceResponse(event_generator(), ping=ping)
