"""Configuration surface for the checkout service."""
from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Annotated, List, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode


class RateLimitSettings(BaseModel):
    """Token bucket limits for checkout attempts."""
    capacity: int = 5
    refill_rate: int = 5
    window_seconds: float = 60.0
    # Buckets kept in memory before least-recently-used ones are evicted
    max_buckets: int = 10_000


class CircuitBreakerSettings(BaseModel):
    """Payment gateway circuit breaker."""
    failure_threshold: int = 5
    reset_timeout: float = 60.0


class TransactionSettings(BaseModel):
    """Persistence transaction budget (seconds)."""
    max_wait: float = 5.0
    timeout: float = 10.0


class CheckoutSettings(BaseSettings):
    """Main checkout configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Public URL used to build default gateway return URLs
    app_url: str = "http://localhost:3000"

    # Order rules
    currency: str = "brl"
    max_items_per_order: int = 50
    min_order_value: Decimal = Decimal("10.00")
    max_order_value: Decimal = Decimal("100000.00")
    tax_rate: Decimal = Decimal("0.15")
    free_shipping_threshold: Decimal = Decimal("200.00")
    shipping_fee: Decimal = Decimal("20.00")

    # Gateway session
    session_expiration_minutes: int = 30
    pix_expires_after_seconds: int = 3600
    allowed_shipping_countries: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["BR"])
    locale: str = "pt-BR"

    # Resilience
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    transaction: TransactionSettings = Field(default_factory=TransactionSettings)
    abandoned_order_ttl_minutes: int = 60
    # Background maintenance interval; 0 disables the loop
    cleanup_interval_seconds: int = 300

    # Webhooks
    webhook_max_payload_bytes: int = 1024 * 1024
    webhook_tolerance_seconds: int = 300
    webhook_max_events_per_minute: int = 100
    webhook_processing_timeout_seconds: float = 30.0
    # Comma-separated source addresses; empty accepts any sender
    webhook_allowed_ips: Annotated[List[str], NoDecode] = Field(default_factory=list)

    # Stripe - empty secret key selects the simulated gateway
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # Database - postgresql:// selects asyncpg, empty keeps state in memory
    database_url: str = ""

    # HTTP server
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    class Config:
        env_prefix = "LAOS_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("allowed_shipping_countries", mode="before")
    @classmethod
    def parse_countries(cls, v):
        """Parse comma-separated country codes from env var."""
        if isinstance(v, str):
            return [c.strip().upper() for c in v.split(",") if c.strip()]
        return v

    @field_validator("webhook_allowed_ips", mode="before")
    @classmethod
    def parse_ips(cls, v):
        if isinstance(v, str):
            return [ip.strip() for ip in v.split(",") if ip.strip()]
        return v

    @field_validator("app_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("database_url", mode="before")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        # Heroku/Railway style DSNs
        if isinstance(v, str) and v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "prod"

    @property
    def use_postgres(self) -> bool:
        return self.database_url.startswith("postgresql://")

    @property
    def use_stripe(self) -> bool:
        return bool(self.stripe_secret_key)


@lru_cache
def load_settings() -> CheckoutSettings:
    """Load settings once per process."""
    return CheckoutSettings()
