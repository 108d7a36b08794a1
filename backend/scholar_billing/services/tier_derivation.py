"""
Tier/status derivation from a Stripe subscription.

Pure functions shared by the subscription check and the webhook reconciler.
No I/O: the caller supplies the price mapping and the current time.

Rule order in `derive` matters. Expiry is checked first because Stripe keeps
reporting cancel-at-period-end subscriptions as "active" until the period
actually closes, and past-due subscriptions keep their tier (grace period).
"""

from collections.abc import Iterable, Mapping
from datetime import datetime

from scholar_billing.constants import ACTIVE_PROVIDER_STATUSES, GRACE_PROVIDER_STATUSES
from scholar_billing.models.billing import (
    DerivedState,
    RemoteSubscription,
    SubscriptionStatus,
    Tier,
)


def free_state() -> DerivedState:
    return DerivedState(tier=Tier.FREE, status=SubscriptionStatus.INACTIVE, period_end_at=None)


def has_expired(subscription: RemoteSubscription, now: datetime) -> bool:
    end = subscription.current_period_end
    return end is not None and now > end


def select_relevant_subscription(
    subscriptions: Iterable[RemoteSubscription], now: datetime
) -> RemoteSubscription | None:
    """Pick the subscription that should drive the user's tier.

    Priority: active/trialing, then past-due family, then a cancel-at-period-end
    subscription whose period is still running, then the first one listed.
    """
    candidates = list(subscriptions)
    if not candidates:
        return None

    for sub in candidates:
        if sub.status in ACTIVE_PROVIDER_STATUSES:
            return sub
    for sub in candidates:
        if sub.status in GRACE_PROVIDER_STATUSES:
            return sub
    for sub in candidates:
        if (
            sub.cancel_at_period_end
            and sub.current_period_end is not None
            and now < sub.current_period_end
        ):
            return sub
    return candidates[0]


def resolve_tier(subscription: RemoteSubscription, price_tiers: Mapping[str, Tier]) -> Tier:
    price_id = subscription.price_id
    if not price_id:
        return Tier.FREE
    return price_tiers.get(price_id, Tier.FREE)


def derive(
    subscription: RemoteSubscription | None,
    price_tiers: Mapping[str, Tier],
    now: datetime,
) -> DerivedState:
    """Map one subscription onto (tier, status, period_end_at)."""
    if subscription is None:
        return free_state()

    if has_expired(subscription, now):
        return free_state()

    tier = resolve_tier(subscription, price_tiers)
    period_end_at = subscription.current_period_end

    if subscription.status in ACTIVE_PROVIDER_STATUSES:
        status = (
            SubscriptionStatus.CANCELLED
            if subscription.cancel_at_period_end
            else SubscriptionStatus.ACTIVE
        )
        return DerivedState(tier=tier, status=status, period_end_at=period_end_at)

    if subscription.status in GRACE_PROVIDER_STATUSES:
        return DerivedState(
            tier=tier, status=SubscriptionStatus.PAST_DUE, period_end_at=period_end_at
        )

    # canceled, unpaid, or anything Stripe adds later
    return free_state()
