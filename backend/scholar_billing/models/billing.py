"""Billing profile, history and subscription snapshot models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Tier(str, Enum):
    """Feature-gating tier granted to a user."""

    FREE = "free"
    PREMIUM = "premium"
    UNIVERSITY = "university"


class SubscriptionStatus(str, Enum):
    """Local lifecycle state of the user's subscription."""

    INACTIVE = "inactive"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"


class BillingPeriod(str, Enum):
    """Billing interval offered at checkout."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionItem(BaseModel):
    """A priced line item on a Stripe subscription."""

    price_id: str | None = None
    unit_amount: int | None = None
    currency: str | None = None


class RemoteSubscription(BaseModel):
    """Normalized Stripe subscription payload. Never persisted."""

    subscription_id: str
    customer_id: str
    status: str
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None
    items: list[SubscriptionItem] = Field(default_factory=list)

    @property
    def price_id(self) -> str | None:
        return self.items[0].price_id if self.items else None


class DerivedState(BaseModel):
    """Result of tier/status derivation for one subscription."""

    tier: Tier = Tier.FREE
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    period_end_at: datetime | None = None

    @property
    def is_paid(self) -> bool:
        return self.status != SubscriptionStatus.INACTIVE


class UserBillingProfile(BaseModel):
    """Persisted billing state for a user, keyed by email."""

    email: str
    user_id: str | None = None
    tier: Tier = Tier.FREE
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    billing_customer_id: str | None = None
    billing_subscription_id: str | None = None
    period_end_at: datetime | None = None
    last_event_created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def subscribed(self) -> bool:
        return self.status != SubscriptionStatus.INACTIVE

    def apply(self, state: DerivedState) -> None:
        self.tier = state.tier
        self.status = state.status
        self.period_end_at = state.period_end_at


class SubscriptionEvent(BaseModel):
    """Append-only history row describing one billing transition."""

    user_email: str
    user_id: str | None = None
    event_type: str
    tier: Tier
    status: SubscriptionStatus
    billing_customer_id: str | None = None
    billing_subscription_id: str | None = None
    amount: int | None = None
    currency: str | None = None
    created_at: datetime | None = None


class SubscriptionCheckResponse(BaseModel):
    """Payload returned by the subscription check endpoint."""

    subscribed: bool
    user_tier: Tier
    subscription_status: SubscriptionStatus
    subscription_end: str | None = None

    @classmethod
    def from_profile(cls, profile: UserBillingProfile) -> "SubscriptionCheckResponse":
        return cls(
            subscribed=profile.subscribed,
            user_tier=profile.tier,
            subscription_status=profile.status,
            subscription_end=(
                profile.period_end_at.isoformat() if profile.period_end_at else None
            ),
        )
