"""Application configuration.

Loads settings from environment variables with sensible defaults.
"""

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API
    api_version: str = "0.1.0"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "postgresql+asyncpg://cardvault:cardvault_dev_password@db:5432/cardvault"

    # Authentication (upstream auth layer presents this key)
    api_key: str = "dev-api-key-change-in-production"

    # Payment gateway (EasyPay compatible LDC credit gateway)
    ldc_pid: str = ""
    ldc_secret: str = ""
    ldc_gateway_url: str = "https://credit.linux.do/epay"
    ldc_channel_type: str = "epay"
    site_url: str = "http://localhost:8000"

    # Outbound gateway calls
    gateway_timeout_seconds: float = 10.0
    gateway_max_attempts: int = 3
    gateway_backoff_seconds: float = 0.5

    # Orders
    order_expire_minutes: int = 30
    sweep_interval_seconds: float = 60.0

    # Refunds
    refund_mode: Literal["disabled", "proxy", "client"] = "proxy"
    refund_reason_min_length: int = 5
    refund_handoff_ttl_seconds: int = 600
    refund_claim_ttl_seconds: int = 900

    # Catalog collaborator (in-memory catalog when unset)
    catalog_url: str | None = None

    # Cache invalidation signal (best-effort, optional)
    cache_invalidation_url: str | None = None

    # Logging
    log_level: str = "INFO"

    class Config:
        """Pydantic configuration."""

        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
