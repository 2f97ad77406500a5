from __future__ import annotations

from fastapi import APIRouter

from storefront.app.core import redis_conn
from storefront.app.core.config import settings
from storefront.app.services.session_registry import get_registry

router = APIRouter(prefix="/api", tags=["health"])


def _uses_redis() -> bool:
    return "redis" in (settings.snapshot_backend.lower(), settings.events_backend.lower())


@router.get("/health")
def health():
    # Only probe redis when a backend actually depends on it
    redis_probe = "skip"
    if _uses_redis():
        redis_probe = "ok" if redis_conn.ping() else "fail"

    return {
        "service": settings.service_name,
        "version": settings.version,
        "env": {
            "environment": settings.environment,
            "cart_source_backend": settings.cart_source_backend,
            "cart_api_base_url": settings.cart_api_base_url,
            "snapshot_backend": settings.snapshot_backend,
            "events_backend": settings.events_backend,
        },
        "features": {
            "quantity_debounce_ms": settings.quantity_debounce_ms,
            "snapshot_stale_seconds": settings.snapshot_stale_seconds,
            "currency": settings.currency,
            "active_sessions": len(get_registry()),
        },
        "status": "ok" if redis_probe != "fail" else "degraded",
        "probes": {
            "redis": redis_probe,
        },
    }
