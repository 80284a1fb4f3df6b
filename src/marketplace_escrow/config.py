"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup - if a setting has the wrong type, the app fails fast with a
clear error message.

Usage:
    from marketplace_escrow.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the marketplace escrow core."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production", "test"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_allow_origins: list[str] = ["*"]

    # --- Database (PostgreSQL in production, SQLite for local runs) ---
    database_url: str = (
        "postgresql+asyncpg://marketplace:marketplace_dev"
        "@localhost:5432/marketplace_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False
    sqlite_busy_timeout_seconds: float = 30.0

    # --- Redis (domain event stream) ---
    redis_url: str = "redis://localhost:6379/0"
    event_stream_name: str = "marketplace:events"
    event_stream_maxlen: int = 100_000

    # --- Payment gateway ---
    gateway_mode: Literal["simulated", "razorpay"] = "simulated"
    gateway_base_url: str = "https://api.razorpay.com/v1"
    gateway_key_id: str = ""
    gateway_key_secret: str = "dev_gateway_secret"
    gateway_webhook_secret: str = "dev_webhook_secret"
    gateway_currency: str = "INR"
    gateway_timeout_seconds: float = 10.0
    gateway_max_retries: int = 3
    gateway_backoff_base_seconds: float = 0.5

    # --- Escrow ---
    escrow_hold_days: int = 7
    platform_fee_individual_percent: Decimal = Decimal("10")
    platform_fee_firm_percent: Decimal = Decimal("15")
    distribution_epsilon: float = 1e-6
    # Lease on the in-flight gateway order call; must exceed the worst-case
    # duration of the gateway call including retries.
    order_claim_seconds: int = 120

    # --- Requests ---
    max_pending_requests: int = 3

    # --- Auto-release sweep ---
    auto_release_enabled: bool = False
    auto_release_interval_seconds: int = 6 * 60 * 60
    auto_release_batch_size: int = 200

    @property
    def is_development(self) -> bool:
        return self.app_env in ("development", "test")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
