"""Service configuration, read from the environment and an optional .env file."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """Settings for the order service; every field maps to an upper-case env var."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store Configuration
    store_backend: Literal["memory", "redis"] = Field(
        default="memory", description="Order store backend"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")

    # API Configuration
    api_port: int = Field(default=8000, description="API server port")
    api_host: str = Field(default="0.0.0.0", description="API server host")

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "text"] = Field(default="json", description="Log format")

    # Payment Provider Configuration
    payment_provider: Literal["mock", "mercadopago"] = Field(
        default="mock", description="PIX payment provider adapter"
    )
    mercadopago_access_token: str | None = Field(
        default=None, description="Mercado Pago access token"
    )
    mercadopago_base_url: str = Field(
        default="https://api.mercadopago.com", description="Mercado Pago API base URL"
    )
    payment_notification_url: str | None = Field(
        default=None, description="Public URL the provider posts webhooks to"
    )
    payment_webhook_secret: str | None = Field(
        default=None, description="Shared secret for webhook signatures"
    )
    payer_email: str = Field(
        default="test@testuser.com", description="Payer e-mail sent with PIX charges"
    )

    # Retry Configuration
    max_retries: int = Field(default=3, description="Max retries for provider calls")
    retry_delay: float = Field(default=0.5, description="Initial retry delay in seconds")
    request_timeout: int = Field(default=30, description="Request timeout in seconds")

    # Order Lifecycle Settings
    pix_session_ttl_seconds: float = Field(
        default=300, description="PIX payment session lifetime in seconds"
    )
    pickup_estimate_minutes: int = Field(
        default=30, description="Pickup estimate attached when a pickup order is accepted"
    )
    pending_order_ttl: int = Field(
        default=86400, description="TTL of a client's pending order reference in seconds"
    )

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings()
