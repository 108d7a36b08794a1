"""Checkout, customer portal and self-service cancellation."""

import structlog

from scholar_billing.config import StripeConfig
from scholar_billing.constants import ACTIVE_PROVIDER_STATUSES, HISTORY_CANCEL_REQUESTED
from scholar_billing.errors import InputValidationError, NotFoundError
from scholar_billing.models.billing import BillingPeriod, Tier, UserBillingProfile
from scholar_billing.services.billing_repository import BillingProfileRepository
from scholar_billing.services.stripe_service import StripeService
from scholar_billing.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)


def _require_email(user_email: str | None) -> str:
    email = (user_email or "").strip()
    if not email:
        raise InputValidationError("User email not provided")
    return email


def _parse_tier(value: str | None) -> Tier:
    try:
        tier = Tier((value or "").strip().lower())
    except ValueError:
        raise InputValidationError(f"Unknown tier: {value}") from None
    if tier == Tier.FREE:
        raise InputValidationError("The free tier cannot be purchased")
    return tier


def _parse_period(value: str | None) -> BillingPeriod:
    try:
        return BillingPeriod((value or BillingPeriod.MONTHLY.value).strip().lower())
    except ValueError:
        raise InputValidationError(f"Unknown billing period: {value}") from None


class CheckoutService:
    """Stripe-hosted purchase and self-service flows for a signed-in user."""

    def __init__(
        self,
        repository: BillingProfileRepository,
        stripe_service: StripeService,
        subscription_service: SubscriptionService,
        config: StripeConfig,
    ) -> None:
        self.repository = repository
        self.stripe_service = stripe_service
        self.subscription_service = subscription_service
        self.config = config

    def _origin(self, origin: str | None) -> str:
        return (origin or self.config.default_origin).rstrip("/")

    async def create_checkout(
        self,
        user_email: str | None,
        tier: str | None,
        billing_period: str | None = "monthly",
        origin: str | None = None,
    ) -> dict[str, str]:
        """Create a subscription-mode Checkout session and return its URL."""
        email = _require_email(user_email)
        wanted_tier = _parse_tier(tier)
        period = _parse_period(billing_period)

        price_id = self.config.price_for(wanted_tier, period)
        if not price_id:
            raise InputValidationError(
                f"No price configured for {wanted_tier.value} ({period.value})"
            )

        customer = await self.stripe_service.find_customer_by_email(email)
        if customer is None:
            customer = await self.stripe_service.create_customer(email)
            logger.info("billing_customer_created", email=email, customer_id=customer["id"])

        base = self._origin(origin)
        session = await self.stripe_service.create_checkout_session(
            customer_id=str(customer["id"]),
            price_id=price_id,
            success_url=f"{base}{self.config.checkout_success_path}",
            cancel_url=f"{base}{self.config.checkout_cancel_path}",
            metadata={"tier": wanted_tier.value, "userEmail": email},
        )
        logger.info(
            "billing_checkout_created",
            email=email,
            tier=wanted_tier.value,
            billing_period=period.value,
            session_id=session["id"],
        )
        return {"url": session["url"]}

    async def create_portal(self, user_email: str | None, origin: str | None = None) -> dict[str, str]:
        """Create a billing-portal session for the user's Stripe customer."""
        email = _require_email(user_email)
        customer_id, _ = await self._resolve_customer(email)

        session = await self.stripe_service.create_portal_session(
            customer_id=customer_id,
            return_url=f"{self._origin(origin)}{self.config.portal_return_path}",
        )
        logger.info("billing_portal_created", email=email, customer_id=customer_id)
        return {"url": session["url"]}

    async def cancel_subscription(self, user_email: str | None) -> dict:
        """Schedule the active subscription to end at the close of its period."""
        email = _require_email(user_email)
        customer_id, profile = await self._resolve_customer(email)

        subscription = None
        stored_id = profile.billing_subscription_id if profile else None
        if stored_id:
            candidate = await self.stripe_service.retrieve_subscription(stored_id)
            if candidate.get("status") in ACTIVE_PROVIDER_STATUSES:
                subscription = candidate
        if subscription is None:
            active = await self.stripe_service.list_subscriptions(
                customer_id, limit=1, status="active"
            )
            subscription = active[0] if active else None
        if subscription is None:
            raise NotFoundError("No active subscription found")

        updated = await self.stripe_service.cancel_at_period_end(subscription["id"])
        saved = await self.subscription_service.apply_subscription(
            updated,
            event_type=HISTORY_CANCEL_REQUESTED,
            customer_email=email,
        )

        period_end = saved.period_end_at if saved else None
        logger.info(
            "billing_subscription_cancel_requested",
            email=email,
            subscription_id=updated.get("id"),
            period_end=period_end.isoformat() if period_end else None,
        )
        return {
            "success": True,
            "message": "Subscription will be cancelled at the end of the billing period",
            "cancelAtPeriodEnd": bool(updated.get("cancel_at_period_end")),
            "periodEnd": period_end.isoformat() if period_end else None,
        }

    async def _resolve_customer(self, email: str) -> tuple[str, UserBillingProfile | None]:
        """Customer id from the stored profile, else from Stripe (and persist it)."""
        profile = await self.repository.get_profile(email)
        if profile and profile.billing_customer_id:
            return profile.billing_customer_id, profile

        customer = await self.stripe_service.find_customer_by_email(email)
        if customer is None:
            raise NotFoundError("No Stripe customer found for this user")

        customer_id = str(customer["id"])
        profile = profile or UserBillingProfile(email=email)
        profile.billing_customer_id = customer_id
        profile = await self.repository.upsert_profile(profile)
        logger.info("billing_customer_linked", email=email, customer_id=customer_id)
        return customer_id, profile
