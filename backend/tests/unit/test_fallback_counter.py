"""
Unit tests for the in-memory fallback counter.
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone

from app.domain.usage import (
    BillingCycle,
    SubscriptionStatus,
    SubscriptionUpdate,
    UsageSource,
)
from app.infrastructure.fallback_counter import FallbackCounter


NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestFallbackCounter:

    @pytest.fixture
    def counter(self):
        return FallbackCounter()

    @pytest.mark.asyncio
    async def test_unknown_user_gets_default(self, counter):
        record = await counter.get_usage(5)

        assert record.free_captions_used == 0
        assert record.subscription_status == SubscriptionStatus.INACTIVE
        assert record.source == UsageSource.FALLBACK

    @pytest.mark.asyncio
    async def test_get_does_not_create_record(self, counter):
        await counter.get_usage(5)

        assert await counter.delete_usage(5) is False

    @pytest.mark.asyncio
    async def test_increment(self, counter):
        await counter.increment_usage(5)
        await counter.increment_usage(5)

        assert (await counter.get_usage(5)).free_captions_used == 2

    @pytest.mark.asyncio
    async def test_try_increment_respects_limit(self, counter):
        results = [await counter.try_increment_usage(5, 3) for _ in range(5)]

        assert results == [True, True, True, False, False]
        assert (await counter.get_usage(5)).free_captions_used == 3

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, counter):
        await asyncio.gather(*(counter.increment_usage(5) for _ in range(50)))

        assert (await counter.get_usage(5)).free_captions_used == 50

    @pytest.mark.asyncio
    async def test_refund_floors_at_zero(self, counter):
        await counter.increment_usage(5)
        await counter.refund_usage(5)
        await counter.refund_usage(5)

        assert (await counter.get_usage(5)).free_captions_used == 0

    @pytest.mark.asyncio
    async def test_returned_record_is_a_copy(self, counter):
        await counter.increment_usage(5)
        record = await counter.get_usage(5)
        record.free_captions_used = 99

        assert (await counter.get_usage(5)).free_captions_used == 1

    @pytest.mark.asyncio
    async def test_upgrade_and_downgrade(self, counter):
        await counter.increment_usage(5)
        upgraded = await counter.upgrade_to_subscription(5, "premium")

        assert upgraded.subscription_status == SubscriptionStatus.ACTIVE
        assert upgraded.plan_id == "premium"
        assert upgraded.free_captions_used == 1

        downgraded = await counter.downgrade_to_free(5)

        assert downgraded.subscription_status == SubscriptionStatus.INACTIVE
        assert downgraded.plan_id is None
        assert downgraded.next_billing_date is None

    @pytest.mark.asyncio
    async def test_partial_update_keeps_unset_fields(self, counter):
        await counter.upsert_subscription(5, SubscriptionUpdate(
            subscription_status=SubscriptionStatus.ACTIVE,
            plan_id="basic",
            billing_cycle=BillingCycle.YEARLY,
        ))

        record = await counter.upsert_subscription(
            5, SubscriptionUpdate(subscription_status=SubscriptionStatus.PAYMENT_FAILED)
        )

        assert record.plan_id == "basic"
        assert record.billing_cycle == BillingCycle.YEARLY

    @pytest.mark.asyncio
    async def test_reset_all_zeroes_counters_and_keeps_subscriptions(self, counter):
        await counter.increment_usage(1)
        await counter.upgrade_to_subscription(2, "premium")
        await counter.increment_usage(2)

        assert await counter.reset_all() == 2
        assert (await counter.get_usage(1)).free_captions_used == 0
        record = await counter.get_usage(2)
        assert record.free_captions_used == 0
        assert record.plan_id == "premium"

    @pytest.mark.asyncio
    async def test_expire_lapsed_subscriptions(self, counter):
        await counter.upsert_subscription(1, SubscriptionUpdate(
            subscription_status=SubscriptionStatus.ACTIVE,
            next_billing_date=NOW - timedelta(days=1),
        ))
        await counter.upsert_subscription(2, SubscriptionUpdate(
            subscription_status=SubscriptionStatus.ACTIVE,
            next_billing_date=NOW + timedelta(days=1),
        ))

        assert await counter.expire_lapsed_subscriptions(NOW) == 1
        assert (await counter.get_usage(1)).subscription_status == SubscriptionStatus.EXPIRED
        assert (await counter.get_usage(2)).subscription_status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_webhook_claims(self, counter):
        assert await counter.claim_webhook_event("delivery:1", "payment.succeeded") is True
        assert await counter.claim_webhook_event("delivery:1", "payment.succeeded") is False

        await counter.release_webhook_event("delivery:1")

        assert await counter.claim_webhook_event("delivery:1", "payment.succeeded") is True

    def test_degraded_bookkeeping(self, counter):
        counter.mark_degraded(3)

        assert counter.is_degraded(3)
        assert counter.degraded_user_count == 1
        assert counter.take_degraded(3) is not None
        assert counter.take_degraded(3) is None
        assert not counter.is_degraded(3)
