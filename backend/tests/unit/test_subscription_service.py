"""Unit tests for the subscription query path and the shared update path."""

from datetime import timedelta

import pytest

from conftest import NOW, PRICE_TIERS, FakeStripeService, MutableClock, make_subscription
from scholar_billing.config import BillingConfig
from scholar_billing.errors import InputValidationError, UpstreamError
from scholar_billing.models.billing import SubscriptionStatus, Tier, UserBillingProfile
from scholar_billing.services.billing_repository import InMemoryBillingRepository
from scholar_billing.services.subscription_service import SubscriptionService

EMAIL = "student@uni.edu"


def make_service(
    fake_stripe: FakeStripeService,
    *,
    clock: MutableClock | None = None,
    config: BillingConfig | None = None,
    repository: InMemoryBillingRepository | None = None,
) -> tuple[SubscriptionService, InMemoryBillingRepository, MutableClock]:
    active_clock = clock or MutableClock(NOW)
    repo = repository or InMemoryBillingRepository()
    service = SubscriptionService(
        repo,
        fake_stripe,
        PRICE_TIERS,
        config or BillingConfig(),
        now_provider=active_clock.now,
    )
    return service, repo, active_clock


class FailingHistoryRepository(InMemoryBillingRepository):
    async def append_event(self, event):
        raise RuntimeError("history table unavailable")


class TestCheckSubscription:
    @pytest.mark.parametrize("email", [None, "", "   "])
    async def test_requires_email(self, fake_stripe, email):
        service, repo, _ = make_service(fake_stripe)

        with pytest.raises(InputValidationError, match="User email not provided"):
            await service.check_subscription(email)

        assert repo.writes == 0

    async def test_no_customer_persists_free(self, fake_stripe):
        service, repo, _ = make_service(fake_stripe)
        await repo.upsert_profile(
            UserBillingProfile(
                email=EMAIL,
                tier=Tier.PREMIUM,
                status=SubscriptionStatus.ACTIVE,
                billing_customer_id="cus_stale",
                billing_subscription_id="sub_stale",
            )
        )

        profile = await service.check_subscription(EMAIL)

        assert profile.tier == Tier.FREE
        assert profile.status == SubscriptionStatus.INACTIVE
        assert profile.subscribed is False
        stored = repo.profiles[EMAIL]
        assert stored.billing_customer_id is None
        assert stored.billing_subscription_id is None
        assert [e.event_type for e in repo.events] == ["subscription_refreshed"]

    async def test_unknown_user_without_customer_writes_only_profile(self, fake_stripe):
        service, repo, _ = make_service(fake_stripe)

        profile = await service.check_subscription(f"  {EMAIL} ")

        assert profile.email == EMAIL
        assert profile.tier == Tier.FREE
        assert repo.writes == 1
        assert repo.events == []

    async def test_active_subscription(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        fake_stripe.add_subscription(make_subscription("sub_1"))
        service, repo, _ = make_service(fake_stripe)

        profile = await service.check_subscription(EMAIL)

        assert profile.tier == Tier.PREMIUM
        assert profile.status == SubscriptionStatus.ACTIVE
        assert profile.subscribed is True
        assert profile.period_end_at == NOW + timedelta(days=7)
        assert profile.billing_customer_id == "cus_1"
        assert profile.billing_subscription_id == "sub_1"

    async def test_uses_configured_list_limit(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        service, _, _ = make_service(fake_stripe, config=BillingConfig(subscription_list_limit=25))

        await service.check_subscription(EMAIL)

        assert ("list_subscriptions", "cus_1", 25, None) in fake_stripe.calls

    async def test_selects_active_over_past_due(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        fake_stripe.add_subscription(make_subscription("sub_pd", status="past_due"))
        fake_stripe.add_subscription(make_subscription("sub_active", price_id="price_university_month"))
        service, _, _ = make_service(fake_stripe)

        profile = await service.check_subscription(EMAIL)

        assert profile.tier == Tier.UNIVERSITY
        assert profile.billing_subscription_id == "sub_active"

    async def test_malformed_subscription_is_skipped(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        fake_stripe.add_subscription({"id": "sub_broken", "customer": "cus_1"})
        service, _, _ = make_service(fake_stripe)

        profile = await service.check_subscription(EMAIL)

        assert profile.tier == Tier.FREE
        assert profile.status == SubscriptionStatus.INACTIVE

    async def test_unchanged_state_writes_no_history(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        fake_stripe.add_subscription(make_subscription("sub_1"))
        service, repo, _ = make_service(fake_stripe)

        await service.check_subscription(EMAIL)
        await service.check_subscription(EMAIL)

        assert [e.event_type for e in repo.events] == ["subscription_refreshed"]
        assert len(repo.profiles) == 1

    async def test_expiry_writes_expired_history(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        fake_stripe.add_subscription(make_subscription("sub_1", cancel_at_period_end=True))
        service, repo, clock = make_service(fake_stripe)

        first = await service.check_subscription(EMAIL)
        clock.advance(timedelta(days=8))
        second = await service.check_subscription(EMAIL)

        assert first.status == SubscriptionStatus.CANCELLED
        assert first.tier == Tier.PREMIUM
        assert second.status == SubscriptionStatus.INACTIVE
        assert second.tier == Tier.FREE
        assert second.period_end_at is None
        assert second.billing_subscription_id is None
        expired = repo.events[-1]
        assert expired.event_type == "subscription_expired"
        assert expired.tier == Tier.FREE
        assert expired.amount == 0
        assert expired.billing_subscription_id == "sub_1"

    async def test_query_history_can_be_disabled(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        fake_stripe.add_subscription(make_subscription("sub_1"))
        service, repo, _ = make_service(fake_stripe, config=BillingConfig(record_query_history=False))

        await service.check_subscription(EMAIL)

        assert repo.events == []

    async def test_query_path_leaves_event_marker(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        fake_stripe.add_subscription(make_subscription("sub_1"))
        service, repo, _ = make_service(fake_stripe)
        await repo.upsert_profile(UserBillingProfile(email=EMAIL, last_event_created_at=NOW))

        profile = await service.check_subscription(EMAIL)

        assert profile.last_event_created_at == NOW

    async def test_history_failure_does_not_fail_check(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        fake_stripe.add_subscription(make_subscription("sub_1"))
        service, repo, _ = make_service(fake_stripe, repository=FailingHistoryRepository())

        profile = await service.check_subscription(EMAIL)

        assert profile.status == SubscriptionStatus.ACTIVE
        assert repo.profiles[EMAIL].status == SubscriptionStatus.ACTIVE

    async def test_upstream_errors_propagate(self, fake_stripe):
        async def broken_lookup(_email):
            raise UpstreamError("Stripe customer lookup timed out")

        fake_stripe.find_customer_by_email = broken_lookup
        service, repo, _ = make_service(fake_stripe)

        with pytest.raises(UpstreamError):
            await service.check_subscription(EMAIL)

        assert repo.writes == 0


class TestApplySubscription:
    async def test_resolves_email_and_writes_profile_and_history(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        service, repo, _ = make_service(fake_stripe)

        profile = await service.apply_subscription(
            make_subscription("sub_1"), event_type="customer.subscription.created", event_created=NOW
        )

        assert profile.tier == Tier.PREMIUM
        assert profile.last_event_created_at == NOW
        event = repo.events[0]
        assert event.event_type == "customer.subscription.created"
        assert event.amount == 999
        assert event.currency == "usd"

    async def test_deleted_customer_is_soft_failure(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL, deleted=True)
        service, repo, _ = make_service(fake_stripe)

        result = await service.apply_subscription(make_subscription("sub_1"), event_type="x")

        assert result is None
        assert repo.writes == 0

    async def test_customer_without_email_is_soft_failure(self, fake_stripe):
        fake_stripe.add_customer("cus_1", None)
        service, repo, _ = make_service(fake_stripe)

        assert await service.apply_subscription(make_subscription("sub_1"), event_type="x") is None
        assert repo.writes == 0

    async def test_stale_event_is_skipped(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        service, repo, _ = make_service(fake_stripe)
        await service.apply_subscription(
            make_subscription("sub_1", cancel_at_period_end=True),
            event_type="customer.subscription.updated",
            event_created=NOW,
        )
        writes = repo.writes

        result = await service.apply_subscription(
            make_subscription("sub_1"),
            event_type="customer.subscription.updated",
            event_created=NOW - timedelta(seconds=5),
        )

        assert result is None
        assert repo.writes == writes
        assert repo.profiles[EMAIL].status == SubscriptionStatus.CANCELLED

    async def test_equal_timestamp_is_applied(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        service, repo, _ = make_service(fake_stripe)
        await service.apply_subscription(make_subscription("sub_1"), event_type="a", event_created=NOW)

        result = await service.apply_subscription(
            make_subscription("sub_1", cancel_at_period_end=True), event_type="b", event_created=NOW
        )

        assert result.status == SubscriptionStatus.CANCELLED

    async def test_stale_guard_can_be_disabled(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        service, repo, _ = make_service(fake_stripe, config=BillingConfig(reject_stale_events=False))
        await service.apply_subscription(make_subscription("sub_1"), event_type="a", event_created=NOW)

        result = await service.apply_subscription(
            make_subscription("sub_1", status="past_due"),
            event_type="b",
            event_created=NOW - timedelta(minutes=1),
        )

        assert result.status == SubscriptionStatus.PAST_DUE
        assert result.last_event_created_at == NOW

    async def test_is_idempotent(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        service, repo, _ = make_service(fake_stripe)
        sub = make_subscription("sub_1", status="past_due")

        first = await service.apply_subscription(sub, event_type="a", event_created=NOW)
        second = await service.apply_subscription(sub, event_type="a", event_created=NOW)

        assert (first.tier, first.status, first.period_end_at) == (
            second.tier,
            second.status,
            second.period_end_at,
        )

    async def test_malformed_subscription_falls_back_to_free(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        service, repo, _ = make_service(fake_stripe)
        await repo.upsert_profile(UserBillingProfile(email=EMAIL, tier=Tier.PREMIUM, status=SubscriptionStatus.ACTIVE))

        profile = await service.apply_subscription({"customer": "cus_1"}, event_type="x")

        assert profile.tier == Tier.FREE
        assert profile.status == SubscriptionStatus.INACTIVE


class TestMarkSubscriptionDeleted:
    async def test_forces_free_and_clears_subscription(self, fake_stripe):
        fake_stripe.add_customer("cus_1", EMAIL)
        service, repo, _ = make_service(fake_stripe)
        await service.apply_subscription(make_subscription("sub_1"), event_type="a", event_created=NOW)

        profile = await service.mark_subscription_deleted(
            make_subscription("sub_1"),
            event_type="customer.subscription.deleted",
            event_created=NOW + timedelta(seconds=1),
        )

        assert profile.tier == Tier.FREE
        assert profile.status == SubscriptionStatus.INACTIVE
        assert profile.period_end_at is None
        assert profile.billing_subscription_id is None
        assert profile.billing_customer_id == "cus_1"
        assert repo.events[-1].event_type == "customer.subscription.deleted"
        assert repo.events[-1].billing_subscription_id == "sub_1"

    async def test_deleted_customer_is_matched_by_stored_customer_id(self, fake_stripe):
        fake_stripe.add_customer("cus_1", None, deleted=True)
        service, repo, _ = make_service(fake_stripe)
        await repo.upsert_profile(
            UserBillingProfile(
                email=EMAIL,
                tier=Tier.UNIVERSITY,
                status=SubscriptionStatus.ACTIVE,
                billing_customer_id="cus_1",
                billing_subscription_id="sub_1",
                period_end_at=NOW + timedelta(days=7),
            )
        )

        profile = await service.mark_subscription_deleted(
            make_subscription("sub_1"), event_type="customer.subscription.deleted", event_created=NOW
        )

        assert profile.email == EMAIL
        assert profile.tier == Tier.FREE
        assert profile.status == SubscriptionStatus.INACTIVE
        assert repo.profiles[EMAIL].billing_subscription_id is None

    async def test_unknown_deleted_customer_writes_nothing(self, fake_stripe):
        fake_stripe.add_customer("cus_1", None, deleted=True)
        service, repo, _ = make_service(fake_stripe)

        result = await service.mark_subscription_deleted(
            make_subscription("sub_1"), event_type="customer.subscription.deleted"
        )

        assert result is None
        assert repo.writes == 0
