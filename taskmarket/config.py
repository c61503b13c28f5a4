"""
Task Market Configuration

Settings for the task market service
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Task Market Settings"""

    # Service
    service_name: str = "Task Market"
    service_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8000

    # Ledger store (None = in-memory store, for local runs)
    database_url: str | None = None

    # Redis (webhook delivery history only)
    redis_url: str | None = None

    # Payment gateway
    gateway_base_url: str = "https://rc-epay.esewa.com.np/api/epay/v2"
    gateway_merchant_code: str = "EPAYTEST"
    gateway_secret_key: str = "change-me"
    gateway_timeout: float = 30.0  # seconds
    gateway_success_url: str = "http://localhost:8000/api/v1/payments/callbacks/success"
    gateway_failure_url: str = "http://localhost:8000/api/v1/payments/callbacks/failure"

    # Webhooks (outbound notifications)
    webhook_url: str | None = None  # e.g., "https://notify.example.com/market/events"
    webhook_secret: str | None = None  # For HMAC signature verification
    webhook_timeout: float = 10.0  # seconds

    # Notification dispatcher
    notifier_retry_count: int = 3
    notifier_retry_delay: float = 1.0  # seconds, doubled per attempt
    notifier_queue_size: int = 1000

    # Engine
    capture_callback_max_attempts: int = 3
    dispute_grace_period_hours: int = 72
    default_currency: str = "NPR"

    # CORS
    cors_origins: list[str] = ["*"]

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
