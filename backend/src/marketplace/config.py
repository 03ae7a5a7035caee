"""Application configuration using pydantic-settings."""
from decimal import Decimal
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./marketplace.db",
        description="Async SQLAlchemy connection string (postgresql+asyncpg in production)",
    )

    # Backend RPC Configuration
    backend_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the trusted backend exposing /functions/v1",
    )
    backend_anon_key: str = Field(
        default="anon_placeholder",
        description="Public API key sent with every backend call",
    )
    backend_timeout_seconds: float = Field(default=15.0, description="HTTP timeout for backend calls")

    # Stripe Configuration (backend only)
    stripe_secret_key: str = Field(
        default="sk_test_placeholder",
        description="Stripe secret key for API authentication",
    )
    stripe_webhook_secret: str = Field(
        default="whsec_placeholder",
        description="Stripe webhook signature verification secret",
    )
    stripe_publishable_key: str = Field(
        default="pk_test_placeholder",
        description="Stripe publishable key for client-side integrations",
    )

    # Application Configuration
    app_env: str = Field(default="development", description="Application environment (development/staging/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=True, description="Enable debug mode")

    # JWT Configuration
    jwt_secret_key: str = Field(
        default="change-this-jwt-secret-in-production",
        description="Shared secret used by the auth provider to sign access tokens",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    jwt_audience: str = Field(default="authenticated", description="Expected JWT audience")

    # CORS Configuration
    cors_origins: List[str] = Field(
        default=["http://localhost:8081", "http://localhost:19006"],
        description="Allowed CORS origins",
    )

    # Checkout pricing policy
    currency: str = Field(default="usd", description="ISO currency code for charges")
    tax_rate: Decimal = Field(default=Decimal("0.085"), description="Flat sales tax rate")
    shipping_base_fee: int = Field(default=500, description="Shipping for the first item, in cents")
    shipping_additional_item_fee: int = Field(default=200, description="Shipping per additional item, in cents")

    # Cart limits
    cart_item_limit: int = Field(default=100, description="Maximum distinct line items in a cart")
    max_quantity_per_item: int = Field(default=99, description="Maximum quantity for one line item")

    # Confirmation UI
    confirmation_timeout_seconds: float = Field(
        default=20.0,
        description="Wall-clock limit for the payment sheet before the attempt is failed",
    )
    merchant_display_name: str = Field(default="Payment Agent", description="Merchant name shown in the payment sheet")
    payment_return_url: str = Field(
        default="payment-agent://payment-return",
        description="Return URL for redirect-based authentication",
    )

    # Subscriptions
    subscription_poll_interval_seconds: float = Field(
        default=60.0,
        description="How often an active subscription is re-checked for expiry",
    )


# Global settings instance
settings = Settings()
