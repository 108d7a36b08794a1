"""Stripe webhook reconciliation."""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel

from scholar_billing.constants import (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_INVOICE_FAILED,
    EVENT_INVOICE_PAID,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
)
from scholar_billing.services.stripe_service import StripeService, as_dict, object_id, to_datetime
from scholar_billing.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)


class WebhookResult(BaseModel):
    """Outcome of one webhook delivery."""

    event_id: str | None = None
    event_type: str | None = None
    processed: bool = False


Handler = Callable[[dict, str, datetime | None], Awaitable[bool]]


def invoice_subscription_id(invoice: dict) -> str | None:
    """Subscription referenced by an invoice.

    Older API versions put it on `invoice.subscription`; newer ones nest it
    under `parent.subscription_details`.
    """
    direct = object_id(invoice.get("subscription"))
    if direct:
        return direct
    parent = as_dict(invoice.get("parent"))
    details = as_dict(parent.get("subscription_details"))
    return object_id(details.get("subscription"))


class WebhookReconciler:
    """Verifies Stripe webhook deliveries and routes them to the update paths."""

    def __init__(self, stripe_service: StripeService, subscription_service: SubscriptionService):
        self.stripe_service = stripe_service
        self.subscription_service = subscription_service
        self._handlers: dict[str, Handler] = {
            EVENT_CHECKOUT_COMPLETED: self._on_checkout_completed,
            EVENT_SUBSCRIPTION_CREATED: self._on_subscription_changed,
            EVENT_SUBSCRIPTION_UPDATED: self._on_subscription_changed,
            EVENT_SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            EVENT_INVOICE_PAID: self._on_invoice,
            EVENT_INVOICE_FAILED: self._on_invoice,
        }

    async def handle_webhook(self, payload: bytes, signature: str | None) -> WebhookResult:
        """Verify the raw body, then dispatch. Verification failures write nothing."""
        event = self.stripe_service.verify_webhook_event(payload, signature)
        return await self.dispatch(event)

    async def dispatch(self, event: dict[str, Any]) -> WebhookResult:
        event_id = event.get("id")
        event_type = event.get("type")
        log = logger.bind(event_id=event_id, event_type=event_type)

        handler = self._handlers.get(event_type or "")
        if handler is None:
            log.info("webhook_event_ignored")
            return WebhookResult(event_id=event_id, event_type=event_type, processed=False)

        data_object = as_dict(as_dict(event.get("data")).get("object"))
        log.info("webhook_event_received")
        processed = await handler(data_object, event_type, to_datetime(event.get("created")))
        log.info("webhook_event_handled", processed=processed)
        return WebhookResult(event_id=event_id, event_type=event_type, processed=processed)

    async def _on_checkout_completed(
        self, session: dict, event_type: str, created: datetime | None
    ) -> bool:
        if session.get("mode") != "subscription":
            logger.info("webhook_checkout_not_subscription", mode=session.get("mode"))
            return False

        subscription_id = object_id(session.get("subscription"))
        if not subscription_id:
            logger.warning("webhook_checkout_missing_subscription", session_id=session.get("id"))
            return False

        subscription = await self.stripe_service.retrieve_subscription(subscription_id)
        profile = await self.subscription_service.apply_subscription(
            subscription,
            event_type=event_type,
            event_created=created,
            amount=session.get("amount_total"),
            currency=session.get("currency"),
        )
        return profile is not None

    async def _on_subscription_changed(
        self, subscription: dict, event_type: str, created: datetime | None
    ) -> bool:
        profile = await self.subscription_service.apply_subscription(
            subscription, event_type=event_type, event_created=created
        )
        return profile is not None

    async def _on_subscription_deleted(
        self, subscription: dict, event_type: str, created: datetime | None
    ) -> bool:
        profile = await self.subscription_service.mark_subscription_deleted(
            subscription, event_type=event_type, event_created=created
        )
        return profile is not None

    async def _on_invoice(self, invoice: dict, event_type: str, created: datetime | None) -> bool:
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            # One-off invoices carry no subscription
            logger.info("webhook_invoice_without_subscription", invoice_id=invoice.get("id"))
            return False

        # The invoice payload is stale for subscription state; fetch current.
        subscription = await self.stripe_service.retrieve_subscription(subscription_id)
        amount = invoice.get("amount_paid") if event_type == EVENT_INVOICE_PAID else invoice.get("amount_due")
        profile = await self.subscription_service.apply_subscription(
            subscription,
            event_type=event_type,
            event_created=created,
            amount=amount,
            currency=invoice.get("currency"),
        )
        return profile is not None
