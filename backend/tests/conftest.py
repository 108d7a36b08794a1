"""
Shared test fixtures for the Scholar billing backend test suite.
"""

from datetime import UTC, datetime, timedelta

import pytest
import structlog
from fastapi.testclient import TestClient

from scholar_billing.errors import SignatureVerificationError
from scholar_billing.models.billing import Tier
from scholar_billing.services.stripe_service import StripeService

NOW = datetime(2026, 2, 22, 12, 0, tzinfo=UTC)

PRICE_TIERS: dict[str, Tier] = {
    "price_premium_month": Tier.PREMIUM,
    "price_premium_year": Tier.PREMIUM,
    "price_university_month": Tier.UNIVERSITY,
}


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime = NOW):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


def epoch(value: datetime) -> int:
    return int(value.timestamp())


def make_subscription(
    subscription_id: str = "sub_1",
    *,
    customer: str = "cus_1",
    status: str = "active",
    price_id: str | None = "price_premium_month",
    cancel_at_period_end: bool = False,
    period_end: datetime | None = NOW + timedelta(days=7),
    unit_amount: int = 999,
    currency: str = "usd",
) -> dict:
    """Stripe-shaped subscription payload."""
    items = []
    if price_id is not None:
        items.append({"price": {"id": price_id, "unit_amount": unit_amount, "currency": currency}})
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_end": epoch(period_end) if period_end else None,
        "items": {"data": items},
    }


class FakeStripeService:
    """In-process stand-in for StripeService with Stripe-shaped dicts."""

    def __init__(self):
        self.customers: dict[str, dict] = {}
        self.subscriptions: dict[str, dict] = {}
        self.next_event: dict | None = None
        self.calls: list[tuple] = []
        self.sessions: list[dict] = []

    def add_customer(self, customer_id: str = "cus_1", email: str | None = "student@uni.edu", **extra) -> dict:
        customer = {"id": customer_id, "email": email, **extra}
        self.customers[customer_id] = customer
        return customer

    def add_subscription(self, subscription: dict) -> dict:
        self.subscriptions[subscription["id"]] = subscription
        return subscription

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        self.calls.append(("verify", signature))
        if not signature:
            raise SignatureVerificationError("No stripe signature found")
        if signature == "bad":
            raise SignatureVerificationError("No signatures found matching the expected signature")
        return self.next_event

    async def find_customer_by_email(self, email: str) -> dict | None:
        self.calls.append(("find_customer", email))
        for customer in self.customers.values():
            if customer.get("email") == email:
                return customer
        return None

    async def retrieve_customer(self, customer_id: str) -> dict:
        self.calls.append(("retrieve_customer", customer_id))
        return self.customers.get(customer_id, {"id": customer_id, "deleted": True})

    async def create_customer(self, email: str) -> dict:
        self.calls.append(("create_customer", email))
        return self.add_customer(f"cus_new_{len(self.customers) + 1}", email)

    async def list_subscriptions(self, customer_id: str, *, limit: int, status: str | None = None) -> list[dict]:
        self.calls.append(("list_subscriptions", customer_id, limit, status))
        subs = [s for s in self.subscriptions.values() if s["customer"] == customer_id]
        if status:
            subs = [s for s in subs if s["status"] == status]
        return subs[:limit]

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        self.calls.append(("retrieve_subscription", subscription_id))
        return self.subscriptions[subscription_id]

    async def cancel_at_period_end(self, subscription_id: str) -> dict:
        self.calls.append(("cancel_at_period_end", subscription_id))
        self.subscriptions[subscription_id]["cancel_at_period_end"] = True
        return self.subscriptions[subscription_id]

    def subscription_snapshot_from_object(self, subscription_obj):
        return StripeService.subscription_snapshot_from_object(self, subscription_obj)

    async def create_checkout_session(self, **kwargs) -> dict[str, str]:
        self.sessions.append({"kind": "checkout", **kwargs})
        return {"id": "cs_test", "url": "https://checkout.stripe.test/cs_test"}

    async def create_portal_session(self, **kwargs) -> dict[str, str]:
        self.sessions.append({"kind": "portal", **kwargs})
        return {"id": "bps_test", "url": "https://billing.stripe.test/bps_test"}


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set required environment variables for tests so Settings can be instantiated."""
    monkeypatch.setenv("STRIPE__SECRET_KEY", "sk_test_fake_key_for_testing")
    monkeypatch.setenv("STRIPE__WEBHOOK_SECRET", "whsec_test_fake_secret")
    monkeypatch.setenv(
        "STRIPE__PRICES",
        '{"premium": {"monthly": "price_premium_month", "yearly": "price_premium_year"},'
        ' "university": {"monthly": "price_university_month"}}',
    )
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from scholar_billing.config import get_settings

    get_settings.cache_clear()

    from scholar_billing.main import app

    return TestClient(app)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def fake_stripe() -> FakeStripeService:
    return FakeStripeService()
