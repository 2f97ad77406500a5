# storefront/app/core/redis_conn.py
from __future__ import annotations

from typing import Optional

from redis.asyncio import Redis as AsyncRedis  # requires redis>=5
from redis import Redis as SyncRedis

from storefront.app.core.config import settings

# Module-level singletons
_sync_client: Optional[SyncRedis] = None
_async_client: Optional[AsyncRedis] = None


def get_sync_redis() -> SyncRedis:
    """
    Return a singleton synchronous Redis client (health checks only).
    """
    global _sync_client
    if _sync_client is None:
        _sync_client = SyncRedis.from_url(settings.redis_url, decode_responses=True)
    return _sync_client


def get_async_redis() -> AsyncRedis:
    """
    Return a singleton asynchronous Redis client.
    Used by the redis snapshot store and the redis event bus.
    """
    global _async_client
    if _async_client is None:
        _async_client = AsyncRedis.from_url(settings.redis_url, decode_responses=True)
    return _async_client


def ping() -> bool:
    """
    Lightweight sync ping for health checks.
    """
    try:
        return bool(get_sync_redis().ping())
    except Exception:
        return False
