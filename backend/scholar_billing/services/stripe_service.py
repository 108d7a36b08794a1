"""Stripe API wrapper."""

import asyncio
from datetime import UTC, datetime
from typing import Any

import stripe
import structlog

from scholar_billing.config import StripeConfig
from scholar_billing.errors import (
    ConfigurationError,
    SignatureVerificationError,
    UpstreamError,
)
from scholar_billing.models.billing import RemoteSubscription, SubscriptionItem

logger = structlog.get_logger(__name__)


def to_datetime(timestamp: int | str | None) -> datetime | None:
    if timestamp in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(timestamp), tz=UTC)


def as_dict(obj: Any) -> dict:
    """Normalize a StripeObject (or plain dict) to a dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def object_id(value: Any) -> str | None:
    """Return the id of a Stripe reference that may be a string or expanded object."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    return as_dict(value).get("id")


class StripeService:
    """Encapsulates Stripe SDK calls used by the billing services.

    The SDK is synchronous; every call runs in a worker thread. Both the HTTP
    request and the wait for it are bounded by `request_timeout_seconds`.
    """

    def __init__(self, config: StripeConfig) -> None:
        if not config.secret_key:
            raise ConfigurationError("STRIPE__SECRET_KEY is not set")

        self.config = config
        stripe.api_key = config.secret_key
        stripe.api_version = config.api_version
        # wait_for alone abandons the thread, not the request
        stripe.default_http_client = stripe.RequestsClient(timeout=config.request_timeout_seconds)

    async def _call(self, operation: str, fn, /, *args, **kwargs) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.config.request_timeout_seconds,
            )
        except TimeoutError as e:
            logger.warning(
                "stripe_call_timeout",
                operation=operation,
                timeout_seconds=self.config.request_timeout_seconds,
            )
            raise UpstreamError(f"Stripe {operation} timed out") from e
        except stripe.StripeError as e:
            logger.warning("stripe_call_failed", operation=operation, error=str(e))
            raise UpstreamError(f"Stripe {operation} failed: {e}") from e

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        """Verify the signature over the raw body and return the parsed event."""
        if not self.config.webhook_secret:
            raise ConfigurationError("STRIPE__WEBHOOK_SECRET is not set")
        if not signature:
            raise SignatureVerificationError("No stripe signature found")

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.config.webhook_secret,
            )
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise SignatureVerificationError(str(e)) from e
        return as_dict(event)

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def find_customer_by_email(self, email: str) -> dict | None:
        result = await self._call("customer lookup", stripe.Customer.list, email=email, limit=1)
        customers = result.data or []
        return as_dict(customers[0]) if customers else None

    async def retrieve_customer(self, customer_id: str) -> dict:
        customer = await self._call("customer retrieve", stripe.Customer.retrieve, customer_id)
        return as_dict(customer)

    async def create_customer(self, email: str) -> dict:
        customer = await self._call("customer create", stripe.Customer.create, email=email)
        return as_dict(customer)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def list_subscriptions(
        self, customer_id: str, *, limit: int, status: str | None = None
    ) -> list[dict]:
        params: dict[str, Any] = {"customer": customer_id, "limit": limit}
        if status:
            params["status"] = status
        result = await self._call("subscription list", stripe.Subscription.list, **params)
        return [as_dict(sub) for sub in result.data or []]

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        subscription = await self._call(
            "subscription retrieve", stripe.Subscription.retrieve, subscription_id
        )
        return as_dict(subscription)

    async def cancel_at_period_end(self, subscription_id: str) -> dict:
        subscription = await self._call(
            "subscription cancel",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )
        return as_dict(subscription)

    def subscription_snapshot_from_object(self, subscription_obj: dict | Any) -> RemoteSubscription:
        """Normalize a Stripe subscription. Raises ValueError on malformed data."""
        subscription = as_dict(subscription_obj)

        subscription_id = subscription.get("id")
        if not subscription_id:
            raise ValueError("Stripe subscription is missing id")
        status = subscription.get("status")
        if not status:
            raise ValueError("Stripe subscription is missing status")

        raw_items = as_dict(subscription.get("items")).get("data") or []
        items = []
        for raw_item in raw_items:
            price = as_dict(as_dict(raw_item).get("price"))
            items.append(
                SubscriptionItem(
                    price_id=price.get("id"),
                    unit_amount=price.get("unit_amount"),
                    currency=price.get("currency"),
                )
            )

        # Newer API versions only carry the period on the items
        period_end = subscription.get("current_period_end")
        if period_end is None and raw_items:
            period_end = as_dict(raw_items[0]).get("current_period_end")

        return RemoteSubscription(
            subscription_id=str(subscription_id),
            customer_id=object_id(subscription.get("customer")) or "",
            status=str(status),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            current_period_end=to_datetime(period_end),
            items=items,
        )

    # ------------------------------------------------------------------
    # Checkout and portal
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
    ) -> dict[str, str]:
        session = await self._call(
            "checkout session",
            stripe.checkout.Session.create,
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
        return {"id": session.id, "url": session.url}

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> dict[str, str]:
        session = await self._call(
            "portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return {"id": session.id, "url": session.url}
