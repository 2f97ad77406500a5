from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env from repo root if present
ENV_PATH = Path(__file__).resolve().parents[3] / ".env"
if ENV_PATH.exists():
    load_dotenv(dotenv_path=ENV_PATH)


class Settings(BaseSettings):
    """Storefront BFF settings (loaded from env).

    Cart sync:
      - "cart_api_*" points at the authoritative Remote Cart Source.
      - "quantity_debounce_ms" is the quiescence window of the coalescer.
      - "snapshot_*" controls the cached authoritative snapshot per cart key.
    """

    # --- service ---
    service_name: str = Field(default="storefront", description="Service name")
    version: str = Field(default="0.1.0", description="Service version")
    environment: str = Field(default="dev", description="Environment name (dev/staging/prod)")
    host: str = Field(default="0.0.0.0", description="API bind host")
    port: int = Field(default=8080, description="API bind port")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: str = Field(default="text", description="text|json")

    # --- Remote Cart Source ---
    cart_api_base_url: str = Field(
        default="http://localhost:8000/api/v1",
        description="Base URL of the authoritative cart/order backend",
    )
    cart_api_timeout_seconds: float = Field(default=10.0, description="HTTP timeout per request")
    cart_api_fetch_attempts: int = Field(
        default=3, ge=1, description="Attempts for idempotent cart fetches (commits never retry)"
    )
    cart_source_backend: str = Field(default="http", description="http|memory")

    # Relative product images are joined onto this base
    image_base_url: str = Field(default="", description="Base URL for relative image references")
    currency: str = Field(default="DZD", description="Display currency code")

    # --- Sync tuning ---
    quantity_debounce_ms: int = Field(default=500, ge=0, description="Quiescence window per product")
    snapshot_stale_seconds: float = Field(
        default=0.0, ge=0.0, description="Snapshot freshness; 0 means stale on creation"
    )
    snapshot_backend: str = Field(default="memory", description="memory|redis")
    snapshot_ttl_seconds: int = Field(default=3600, description="TTL of cached snapshots in redis")
    events_backend: str = Field(default="memory", description="memory|redis")
    session_idle_seconds: int = Field(default=1800, description="Idle cart sessions are evicted")

    # --- Redis ---
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")

    # --- CORS ---
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_methods: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_headers: List[str] = Field(default_factory=lambda: ["*"])

    # pydantic-settings v2 config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ---- Convenience helpers ----
    @property
    def debounce_seconds(self) -> float:
        return self.quantity_debounce_ms / 1000.0


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
