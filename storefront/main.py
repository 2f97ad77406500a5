# storefront/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from storefront.app.core.logging import setup_logging
from storefront.app.core.config import settings

from storefront.app.api.routes_health import router as health_router
from storefront.app.api.routes_metrics import router as metrics_router
from storefront.app.api.sse import router as sse_router
from storefront.routes.api_cart import router as cart_router
from storefront.routes.api_checkout import router as checkout_router
from storefront.app.services.session_registry import get_registry

log = logging.getLogger("storefront")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # let in-flight commits land before the upstream client closes
    await get_registry().close()


def create_app() -> FastAPI:
    # Initialize logging early so all imports use correct handlers/levels
    setup_logging()  # respects LOG_LEVEL/LOG_FORMAT (and config.py fallbacks)

    app = FastAPI(
        title=settings.service_name or "Storefront",
        version=settings.version or "0.1.0",
        docs_url="/docs",
        redoc_url=None,
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # --- Global JSON error handler: unexpected 500s stay parseable for the UI ---
    @app.exception_handler(Exception)
    async def _unhandled_exc_to_json(request: Request, exc: Exception):
        log.error("unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "detail": str(exc),
                "path": str(request.url),
                "method": request.method,
            },
        )

    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins or ["*"],
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods or ["*"],
        allow_headers=settings.cors_allow_headers or ["*"],
        expose_headers=["X-Cart-Session"],
    )

    # Routes
    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(sse_router)
    app.include_router(cart_router)
    app.include_router(checkout_router)

    # Friendly root
    @app.get("/")
    def root():
        return {
            "service": settings.service_name or "storefront",
            "version": settings.version or "0.1.0",
            "environment": settings.environment or "dev",
            "docs": "/docs",
            "openapi": "/openapi.json",
            "tips": {
                "cart": "/api/cart",
                "update_quantity": "PUT /api/cart/items/{product_id}",
                "cart_events": "/api/cart/events",
                "checkout": "POST /api/checkout",
                "health": "/api/health",
                "metrics": "/api/metrics",
            },
        }

    # Minimal runtime /meta for quick diagnostics (safe flags only)
    @app.get("/meta")
    def meta():
        return {
            "service": settings.service_name,
            "version": settings.version,
            "environment": settings.environment,
            "flags": {
                "cart_source_backend": settings.cart_source_backend,
                "snapshot_backend": settings.snapshot_backend,
                "events_backend": settings.events_backend,
                "quantity_debounce_ms": settings.quantity_debounce_ms,
            },
            "cors": {
                "allow_origins": settings.cors_allow_origins,
                "allow_methods": settings.cors_allow_methods,
                "allow_headers": settings.cors_allow_headers,
            },
        }

    return app


app = create_app()
