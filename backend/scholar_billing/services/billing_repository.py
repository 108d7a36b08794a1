"""Billing profile persistence: storage contract, in-memory and Supabase repositories."""

from datetime import UTC, datetime
from typing import Any, Protocol

import structlog

from scholar_billing.models.billing import (
    SubscriptionEvent,
    SubscriptionStatus,
    Tier,
    UserBillingProfile,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingProfileRepository(Protocol):
    """Storage contract for billing profiles and their history."""

    async def get_profile(self, email: str) -> UserBillingProfile | None:
        """Fetch the profile for an email, or None."""

    async def get_profile_by_customer_id(self, customer_id: str) -> UserBillingProfile | None:
        """Fetch the profile linked to a Stripe customer id, or None."""

    async def upsert_profile(self, profile: UserBillingProfile) -> UserBillingProfile:
        """Insert or overwrite the profile (last write wins). Sets updated_at."""

    async def append_event(self, event: SubscriptionEvent) -> None:
        """Append one write-once history row."""


class InMemoryBillingRepository:
    """In-memory repository used for tests and local development."""

    def __init__(self) -> None:
        self.profiles: dict[str, UserBillingProfile] = {}
        self.events: list[SubscriptionEvent] = []
        self.writes = 0

    async def get_profile(self, email: str) -> UserBillingProfile | None:
        profile = self.profiles.get(email)
        return profile.model_copy(deep=True) if profile else None

    async def get_profile_by_customer_id(self, customer_id: str) -> UserBillingProfile | None:
        for profile in self.profiles.values():
            if profile.billing_customer_id == customer_id:
                return profile.model_copy(deep=True)
        return None

    async def upsert_profile(self, profile: UserBillingProfile) -> UserBillingProfile:
        stored = profile.model_copy(deep=True)
        stored.updated_at = _utcnow()
        self.profiles[stored.email] = stored
        self.writes += 1
        return stored.model_copy(deep=True)

    async def append_event(self, event: SubscriptionEvent) -> None:
        stored = event.model_copy(deep=True)
        if stored.created_at is None:
            stored.created_at = _utcnow()
        self.events.append(stored)
        self.writes += 1


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def profile_from_row(row: dict) -> UserBillingProfile:
    """Map a `profiles` row onto UserBillingProfile."""
    return UserBillingProfile(
        email=row["email"],
        user_id=str(row["id"]) if row.get("id") else None,
        tier=Tier(row.get("user_tier") or Tier.FREE.value),
        status=SubscriptionStatus(row.get("subscription_status") or SubscriptionStatus.INACTIVE.value),
        billing_customer_id=row.get("stripe_customer_id"),
        billing_subscription_id=row.get("stripe_subscription_id"),
        period_end_at=_parse_ts(row.get("subscription_end_date")),
        last_event_created_at=_parse_ts(row.get("last_event_created_at")),
        updated_at=_parse_ts(row.get("updated_at")),
    )


def profile_to_row(profile: UserBillingProfile) -> dict:
    row: dict[str, Any] = {
        "email": profile.email,
        "user_tier": profile.tier.value,
        "subscription_status": profile.status.value,
        "stripe_customer_id": profile.billing_customer_id,
        "stripe_subscription_id": profile.billing_subscription_id,
        "subscription_end_date": _iso(profile.period_end_at),
        "last_event_created_at": _iso(profile.last_event_created_at),
        "updated_at": _iso(profile.updated_at),
    }
    # Never null out the auth-provider id owned by the profiles table
    if profile.user_id:
        row["id"] = profile.user_id
    return row


def event_to_row(event: SubscriptionEvent) -> dict:
    row: dict[str, Any] = {
        "user_email": event.user_email,
        "event_type": event.event_type,
        "subscription_tier": event.tier.value,
        "status": event.status.value,
        "stripe_customer_id": event.billing_customer_id,
        "stripe_subscription_id": event.billing_subscription_id,
        "amount": event.amount,
        "currency": event.currency,
    }
    if event.user_id:
        row["user_id"] = event.user_id
    if event.created_at:
        row["created_at"] = event.created_at.isoformat()
    return row


class SupabaseBillingRepository:
    """Supabase-backed repository for billing profiles.

    Expects `profiles.email` to be unique; upserts conflict on it.
    """

    def __init__(self, client, profiles_table: str, history_table: str):
        self.client = client
        self.profiles_table = profiles_table
        self.history_table = history_table

    async def get_profile(self, email: str) -> UserBillingProfile | None:
        response = (
            await self.client.table(self.profiles_table)
            .select("*")
            .eq("email", email)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return profile_from_row(rows[0])

    async def get_profile_by_customer_id(self, customer_id: str) -> UserBillingProfile | None:
        response = (
            await self.client.table(self.profiles_table)
            .select("*")
            .eq("stripe_customer_id", customer_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return profile_from_row(rows[0]) if rows else None

    async def upsert_profile(self, profile: UserBillingProfile) -> UserBillingProfile:
        profile = profile.model_copy(update={"updated_at": _utcnow()})
        response = (
            await self.client.table(self.profiles_table)
            .upsert(profile_to_row(profile), on_conflict="email")
            .execute()
        )
        rows = response.data or []
        if not rows:
            # Some Supabase responses return no data unless `returning=representation`.
            return profile
        return profile_from_row(rows[0])

    async def append_event(self, event: SubscriptionEvent) -> None:
        await self.client.table(self.history_table).insert(event_to_row(event)).execute()
        logger.debug(
            "billing_history_appended",
            event_type=event.event_type,
            email=event.user_email,
        )
