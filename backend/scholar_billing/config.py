"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (StripeConfig, BillingConfig) are env-overridable via
the double-underscore delimiter, e.g.:
    STRIPE__SECRET_KEY=sk_live_...
    STRIPE__PRICES='{"premium": {"monthly": "price_123", "yearly": "price_456"}}'
    BILLING__SUBSCRIPTION_LIST_LIMIT=25
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from scholar_billing.errors import ConfigurationError
from scholar_billing.models.billing import BillingPeriod, Tier


class StripeConfig(BaseModel):
    """Stripe credentials, prices and redirect targets."""

    secret_key: str = ""
    webhook_secret: str = ""
    api_version: str = "2023-10-16"
    request_timeout_seconds: float = 10.0
    # tier -> billing period -> Stripe price id
    prices: dict[Tier, dict[BillingPeriod, str]] = Field(default_factory=dict)
    # Used when the request carries no Origin header
    default_origin: str = "http://localhost:5173"
    checkout_success_path: str = "/settings?success=true"
    checkout_cancel_path: str = "/settings?canceled=true"
    portal_return_path: str = "/settings"

    @property
    def price_tiers(self) -> dict[str, Tier]:
        """Inverse of `prices`: price id -> tier."""
        return {
            price_id: tier
            for tier, periods in self.prices.items()
            for price_id in periods.values()
            if price_id
        }

    def price_for(self, tier: Tier, period: BillingPeriod) -> str | None:
        return self.prices.get(tier, {}).get(period) or None

    def require_secrets(self) -> None:
        """Raise ConfigurationError unless both Stripe secrets are set."""
        if not self.secret_key:
            raise ConfigurationError("STRIPE__SECRET_KEY is not set")
        if not self.webhook_secret:
            raise ConfigurationError("STRIPE__WEBHOOK_SECRET is not set")


class BillingConfig(BaseModel):
    """Reconciliation behaviour and storage layout."""

    # Subscriptions fetched per customer on the query path
    subscription_list_limit: int = Field(default=10, ge=1, le=100)
    # Skip webhook events older than the last one applied to the profile
    reject_stale_events: bool = True
    # Write history rows for transitions discovered by the query path
    record_query_history: bool = True
    profiles_table: str = "profiles"
    history_table: str = "subscription_history"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase (service role bypasses RLS; webhooks carry no user session)
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # App Settings
    debug: bool = False
    log_level: str = "INFO"
    service_name: str = "scholar-billing"
    # The web and mobile clients call from arbitrary origins by default
    cors_origins: list[str] = ["*"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
