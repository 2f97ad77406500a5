from __future__ import annotations

from fastapi import APIRouter, Response

from storefront.app.core.metrics import REGISTRY
from storefront.app.services.session_registry import get_registry

router = APIRouter(prefix="/api", tags=["metrics"])


@router.get("/metrics")
def metrics() -> Response:
    payload = REGISTRY.render_prometheus()

    extra = []
    extra.append("# HELP storefront_cart_sessions Active cart sessions held by this process\n# TYPE storefront_cart_sessions gauge\n")
    extra.append(f"storefront_cart_sessions {len(get_registry())}\n")

    return Response(content=payload + "".join(extra), media_type="text/plain; version=0.0.4")
