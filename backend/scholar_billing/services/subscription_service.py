"""
Subscription reconciliation: query-path refresh and the shared update path.

`check_subscription` pulls the customer's subscriptions from Stripe on demand.
`apply_subscription` and `mark_subscription_deleted` are the write paths used
by the webhook reconciler and the cancel flow. All of them derive state with
`tier_derivation.derive` and persist through a BillingProfileRepository.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import structlog

from scholar_billing.config import BillingConfig
from scholar_billing.constants import (
    HISTORY_SUBSCRIPTION_EXPIRED,
    HISTORY_SUBSCRIPTION_REFRESHED,
)
from scholar_billing.errors import InputValidationError
from scholar_billing.models.billing import (
    DerivedState,
    RemoteSubscription,
    SubscriptionEvent,
    SubscriptionStatus,
    Tier,
    UserBillingProfile,
)
from scholar_billing.services.billing_repository import BillingProfileRepository
from scholar_billing.services.stripe_service import StripeService, as_dict, object_id
from scholar_billing.services.tier_derivation import (
    derive,
    free_state,
    has_expired,
    select_relevant_subscription,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _state_of(profile: UserBillingProfile | None) -> tuple[Tier, SubscriptionStatus]:
    if profile is None:
        return Tier.FREE, SubscriptionStatus.INACTIVE
    return profile.tier, profile.status


class SubscriptionService:
    """Derives and persists billing profiles from Stripe subscription data."""

    def __init__(
        self,
        repository: BillingProfileRepository,
        stripe_service: StripeService,
        price_tiers: Mapping[str, Tier],
        config: BillingConfig,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.stripe_service = stripe_service
        self.price_tiers = dict(price_tiers)
        self.config = config
        self.now_provider = now_provider

    # ------------------------------------------------------------------
    # Query path
    # ------------------------------------------------------------------

    async def check_subscription(self, user_email: str | None) -> UserBillingProfile:
        """Refresh the profile for `user_email` from Stripe and return it."""
        email = (user_email or "").strip()
        if not email:
            raise InputValidationError("User email not provided")

        log = logger.bind(email=email)
        previous = await self.repository.get_profile(email)
        profile = previous.model_copy(deep=True) if previous else UserBillingProfile(email=email)

        customer = await self.stripe_service.find_customer_by_email(email)
        if customer is None:
            log.info("billing_customer_not_found")
            state = free_state()
            profile.apply(state)
            profile.billing_customer_id = None
            profile.billing_subscription_id = None
            return await self._persist(
                profile, previous, event_type=self._query_history_type(previous, state, expired=False)
            )

        customer_id = str(customer["id"])
        raw_subscriptions = await self.stripe_service.list_subscriptions(
            customer_id, limit=self.config.subscription_list_limit
        )
        snapshots = [
            snapshot
            for snapshot in (self._snapshot_or_none(raw) for raw in raw_subscriptions)
            if snapshot is not None
        ]

        now = self.now_provider()
        subscription = select_relevant_subscription(snapshots, now)
        state = derive(subscription, self.price_tiers, now)
        expired = subscription is not None and has_expired(subscription, now)

        profile.billing_customer_id = customer_id
        self._apply_state(profile, state, subscription)

        log.info(
            "billing_subscription_checked",
            customer_id=customer_id,
            subscription_count=len(snapshots),
            subscription_id=subscription.subscription_id if subscription else None,
            provider_status=subscription.status if subscription else None,
            tier=state.tier.value,
            status=state.status.value,
            expired=expired,
        )

        amount, currency = (0, self._currency_of(subscription)) if expired else self._price_of(subscription)
        return await self._persist(
            profile,
            previous,
            event_type=self._query_history_type(previous, state, expired=expired),
            subscription_id=subscription.subscription_id if subscription else None,
            amount=amount,
            currency=currency,
        )

    # ------------------------------------------------------------------
    # Write paths shared with the webhook reconciler
    # ------------------------------------------------------------------

    async def apply_subscription(
        self,
        subscription_obj: dict | Any,
        *,
        event_type: str,
        event_created: datetime | None = None,
        customer_email: str | None = None,
        amount: int | None = None,
        currency: str | None = None,
    ) -> UserBillingProfile | None:
        """Full update path: resolve email, derive, upsert, append history.

        Returns None when the update was skipped (no customer email, or a
        stale event).
        """
        snapshot = self._snapshot_or_none(subscription_obj)
        customer_id = (
            snapshot.customer_id if snapshot else object_id(as_dict(subscription_obj).get("customer"))
        )
        email = customer_email or await self._customer_email(customer_id)
        if not email:
            return None

        previous = await self.repository.get_profile(email)
        if self._is_stale(previous, event_created):
            logger.info(
                "billing_stale_event_skipped",
                email=email,
                event_type=event_type,
                event_created=event_created.isoformat() if event_created else None,
                last_event_created_at=previous.last_event_created_at.isoformat(),
            )
            return None

        profile = previous.model_copy(deep=True) if previous else UserBillingProfile(email=email)
        state = derive(snapshot, self.price_tiers, self.now_provider())
        profile.billing_customer_id = customer_id
        self._apply_state(profile, state, snapshot)
        self._advance_event_marker(profile, event_created)

        if amount is None and currency is None:
            amount, currency = self._price_of(snapshot)

        logger.info(
            "billing_subscription_applied",
            email=email,
            event_type=event_type,
            subscription_id=snapshot.subscription_id if snapshot else None,
            provider_status=snapshot.status if snapshot else None,
            cancel_at_period_end=snapshot.cancel_at_period_end if snapshot else None,
            tier=state.tier.value,
            status=state.status.value,
        )
        return await self._persist(
            profile,
            previous,
            event_type=event_type,
            subscription_id=snapshot.subscription_id if snapshot else None,
            amount=amount,
            currency=currency,
        )

    async def mark_subscription_deleted(
        self,
        subscription_obj: dict | Any,
        *,
        event_type: str,
        event_created: datetime | None = None,
    ) -> UserBillingProfile | None:
        """Deletion is terminal: force free/inactive without derivation.

        Deleting the Stripe customer also deletes its subscriptions, and by
        then the customer has no email. Such events are matched to the
        profile through its stored customer id instead.
        """
        subscription = as_dict(subscription_obj)
        customer_id = object_id(subscription.get("customer"))
        email = await self._customer_email(customer_id)
        if email:
            previous = await self.repository.get_profile(email)
        elif customer_id:
            previous = await self.repository.get_profile_by_customer_id(customer_id)
            if previous is None:
                logger.warning("billing_deleted_subscription_unmatched", customer_id=customer_id)
                return None
            email = previous.email
            logger.info("billing_profile_matched_by_customer", email=email, customer_id=customer_id)
        else:
            return None

        if self._is_stale(previous, event_created):
            logger.info("billing_stale_event_skipped", email=email, event_type=event_type)
            return None

        profile = previous.model_copy(deep=True) if previous else UserBillingProfile(email=email)
        profile.apply(free_state())
        profile.billing_customer_id = customer_id
        profile.billing_subscription_id = None
        self._advance_event_marker(profile, event_created)

        logger.info(
            "billing_subscription_deleted",
            email=email,
            subscription_id=subscription.get("id"),
        )
        return await self._persist(
            profile,
            previous,
            event_type=event_type,
            subscription_id=subscription.get("id"),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _snapshot_or_none(self, subscription_obj: dict | Any) -> RemoteSubscription | None:
        # Malformed data must never grant a paid tier; derive(None) is free.
        try:
            return self.stripe_service.subscription_snapshot_from_object(subscription_obj)
        except ValueError:
            logger.exception(
                "billing_subscription_malformed",
                subscription_id=as_dict(subscription_obj).get("id"),
            )
            return None

    async def _customer_email(self, customer_id: str | None) -> str | None:
        if not customer_id:
            logger.warning("billing_customer_missing")
            return None
        customer = await self.stripe_service.retrieve_customer(customer_id)
        if customer.get("deleted") or not customer.get("email"):
            logger.warning("billing_customer_email_missing", customer_id=customer_id)
            return None
        return str(customer["email"])

    def _query_history_type(
        self, previous: UserBillingProfile | None, state: DerivedState, *, expired: bool
    ) -> str | None:
        """History row for a query-path refresh, only when tier/status moved."""
        if not self.config.record_query_history:
            return None
        if _state_of(previous) == (state.tier, state.status):
            return None
        return HISTORY_SUBSCRIPTION_EXPIRED if expired else HISTORY_SUBSCRIPTION_REFRESHED

    def _is_stale(self, profile: UserBillingProfile | None, event_created: datetime | None) -> bool:
        return bool(
            self.config.reject_stale_events
            and profile is not None
            and event_created is not None
            and profile.last_event_created_at is not None
            and event_created < profile.last_event_created_at
        )

    @staticmethod
    def _advance_event_marker(profile: UserBillingProfile, event_created: datetime | None) -> None:
        if event_created is None:
            return
        if profile.last_event_created_at is None or event_created > profile.last_event_created_at:
            profile.last_event_created_at = event_created

    @staticmethod
    def _apply_state(
        profile: UserBillingProfile,
        state: DerivedState,
        subscription: RemoteSubscription | None,
    ) -> None:
        profile.apply(state)
        profile.billing_subscription_id = (
            subscription.subscription_id if subscription and state.is_paid else None
        )

    @staticmethod
    def _price_of(subscription: RemoteSubscription | None) -> tuple[int | None, str | None]:
        if subscription is None or not subscription.items:
            return None, None
        item = subscription.items[0]
        return item.unit_amount, item.currency

    @staticmethod
    def _currency_of(subscription: RemoteSubscription | None) -> str | None:
        if subscription is None or not subscription.items:
            return None
        return subscription.items[0].currency

    async def _persist(
        self,
        profile: UserBillingProfile,
        previous: UserBillingProfile | None,
        *,
        event_type: str | None,
        subscription_id: str | None = None,
        amount: int | None = None,
        currency: str | None = None,
    ) -> UserBillingProfile:
        # Profile first; history is best-effort audit and never fails the request.
        saved = await self.repository.upsert_profile(profile)
        if event_type is None:
            return saved

        event = SubscriptionEvent(
            user_email=saved.email,
            user_id=saved.user_id or (previous.user_id if previous else None),
            event_type=event_type,
            tier=saved.tier,
            status=saved.status,
            billing_customer_id=saved.billing_customer_id,
            billing_subscription_id=subscription_id or saved.billing_subscription_id,
            amount=amount,
            currency=currency,
            created_at=self.now_provider(),
        )
        try:
            await self.repository.append_event(event)
        except Exception:
            logger.exception(
                "billing_history_write_failed",
                email=saved.email,
                event_type=event_type,
            )
        return saved
