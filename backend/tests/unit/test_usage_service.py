"""
Unit tests for UsageService store selection and outage fallback.
"""

import logging
import pytest
from datetime import datetime, timedelta, timezone

from app.domain.entitlements import ExpiryPolicy
from app.domain.usage import (
    SubscriptionStatus,
    SubscriptionUpdate,
    UsageRecord,
    UsageSource,
)
from app.infrastructure.exceptions import StoreUnavailable
from app.infrastructure.fallback_counter import FallbackCounter
from app.infrastructure.services.subscription_reconciler import (
    ReconcileOutcome,
    SubscriptionReconciler,
)
from app.infrastructure.services.usage_service import UsageService


NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FlakyStore(FallbackCounter):
    """Persistent stand-in that can be switched off."""

    def __init__(self):
        super().__init__(source=UsageSource.PERSISTENT)
        self.down = False

    def _check(self):
        if self.down:
            raise StoreUnavailable("usage store down", operation="test")

    async def get_usage(self, user_id):
        self._check()
        return await super().get_usage(user_id)

    async def try_increment_usage(self, user_id, limit):
        self._check()
        return await super().try_increment_usage(user_id, limit)

    async def refund_usage(self, user_id):
        self._check()
        await super().refund_usage(user_id)

    async def upsert_subscription(self, user_id, update):
        self._check()
        return await super().upsert_subscription(user_id, update)

    async def expire_lapsed_subscriptions(self, now):
        self._check()
        return await super().expire_lapsed_subscriptions(now)

    async def claim_webhook_event(self, event_key, event_type):
        self._check()
        return await super().claim_webhook_event(event_key, event_type)

    async def release_webhook_event(self, event_key):
        self._check()
        await super().release_webhook_event(event_key)


@pytest.fixture
def flaky_store():
    return FlakyStore()


@pytest.fixture
def service(flaky_store, fallback):
    return UsageService(flaky_store, fallback, clock=lambda: NOW)


class TestPersistentPath:

    @pytest.mark.asyncio
    async def test_reads_come_from_store(self, service, flaky_store):
        await flaky_store.increment_usage(1)

        record = await service.get_usage(1)

        assert record.free_captions_used == 1
        assert record.source == UsageSource.PERSISTENT

    @pytest.mark.asyncio
    async def test_reserve_and_release(self, service):
        assert await service.reserve_generation(1, 3) is True
        await service.release_generation(1)

        assert (await service.get_usage(1)).free_captions_used == 0

    @pytest.mark.asyncio
    async def test_memory_only_mode(self):
        store = FallbackCounter(source=UsageSource.PERSISTENT)
        service = UsageService(store, store)

        await service.record_generation(3)

        assert (await service.get_usage(3)).free_captions_used == 1


class TestOutageFallback:

    @pytest.mark.asyncio
    async def test_read_falls_back_when_store_down(self, service, flaky_store, fallback):
        flaky_store.down = True

        record = await service.get_usage(1)

        assert record.source == UsageSource.FALLBACK
        assert record.free_captions_used == 0
        assert fallback.is_degraded(1)

    @pytest.mark.asyncio
    async def test_writes_go_to_fallback_when_store_down(self, service, flaky_store, fallback):
        flaky_store.down = True

        assert await service.reserve_generation(1, 3) is True
        assert (await fallback.get_usage(1)).free_captions_used == 1

        flaky_store.down = False
        assert (await flaky_store.get_usage(1)).free_captions_used == 0

    @pytest.mark.asyncio
    async def test_persistent_state_wins_after_recovery(self, service, flaky_store, fallback, caplog):
        await flaky_store.upsert_subscription(1, SubscriptionUpdate(
            subscription_status=SubscriptionStatus.ACTIVE,
            plan_id="premium",
        ))
        flaky_store.down = True
        await service.reserve_generation(1, 3)
        await service.reserve_generation(1, 3)

        flaky_store.down = False
        with caplog.at_level(logging.WARNING):
            record = await service.get_usage(1)

        assert record.source == UsageSource.PERSISTENT
        assert record.subscription_status == SubscriptionStatus.ACTIVE
        assert record.free_captions_used == 0
        assert not fallback.is_degraded(1)
        assert (await fallback.get_usage(1)).free_captions_used == 0
        assert "diverged" in caplog.text

    @pytest.mark.asyncio
    async def test_fallback_enforces_free_limit_during_outage(self, service, flaky_store):
        flaky_store.down = True

        results = [await service.reserve_generation(1, 3) for _ in range(4)]

        assert results == [True, True, True, False]

    @pytest.mark.asyncio
    async def test_unreachable_sql_store_uses_fallback(self, unreachable_store, fallback):
        service = UsageService(unreachable_store, fallback, clock=lambda: NOW)

        assert await service.reserve_generation(11, 3) is True
        record = await service.get_usage(11)

        assert record.source == UsageSource.FALLBACK
        assert record.free_captions_used == 1


class TestEntitlements:

    @pytest.mark.asyncio
    async def test_can_generate_after_three(self, service):
        for _ in range(3):
            await service.record_generation(1)

        assert await service.can_generate(1) is False

    @pytest.mark.asyncio
    async def test_blocked_policy_applies(self, flaky_store, fallback):
        service = UsageService(
            flaky_store, fallback, expiry_policy=ExpiryPolicy.BLOCKED, clock=lambda: NOW
        )
        await flaky_store.upsert_subscription(1, SubscriptionUpdate(
            subscription_status=SubscriptionStatus.ACTIVE,
            plan_id="premium",
            next_billing_date=NOW - timedelta(days=1),
        ))

        assert await service.can_generate(1) is False

    @pytest.mark.asyncio
    async def test_expire_lapsed_uses_clock(self, service, flaky_store):
        await flaky_store.upsert_subscription(1, SubscriptionUpdate(
            subscription_status=SubscriptionStatus.ACTIVE,
            next_billing_date=NOW - timedelta(minutes=1),
        ))

        assert await service.expire_lapsed_subscriptions() == 1

    @pytest.mark.asyncio
    async def test_sweep_raises_when_store_down(self, service, flaky_store):
        flaky_store.down = True

        with pytest.raises(StoreUnavailable):
            await service.expire_lapsed_subscriptions()


class TestSubscriptionWritesDuringOutage:
    """Subscription changes are never parked in the fallback counter."""

    @pytest.mark.asyncio
    async def test_upsert_raises_and_leaves_fallback_alone(self, service, flaky_store, fallback):
        flaky_store.down = True

        with pytest.raises(StoreUnavailable):
            await service.upsert_subscription(1, SubscriptionUpdate(
                subscription_status=SubscriptionStatus.ACTIVE,
                plan_id="premium",
            ))

        record = await fallback.get_usage(1)
        assert record.subscription_status == SubscriptionStatus.INACTIVE
        assert record.plan_id is None
        assert not fallback.is_degraded(1)

    @pytest.mark.asyncio
    async def test_payment_during_outage_is_applied_on_redelivery(self, service, flaky_store):
        for _ in range(3):
            await service.record_generation(1)
        assert await service.can_generate(1) is False

        reconciler = SubscriptionReconciler(service)
        payload = {
            "type": "payment.succeeded",
            "data": {"id": "pay_outage", "user_id": "1", "plan_id": "premium"},
        }

        flaky_store.down = True
        with pytest.raises(StoreUnavailable):
            await reconciler.apply_webhook_event(payload)

        flaky_store.down = False
        result = await reconciler.apply_webhook_event(payload)

        assert result.outcome == ReconcileOutcome.APPLIED
        record = await service.get_usage(1)
        assert record.subscription_status == SubscriptionStatus.ACTIVE
        assert await service.can_generate(1) is True

    @pytest.mark.asyncio
    async def test_upsert_refreshes_fallback(self, service, fallback):
        await service.upsert_subscription(1, SubscriptionUpdate(
            subscription_status=SubscriptionStatus.ACTIVE,
            plan_id="premium",
        ))

        record = await fallback.get_usage(1)
        assert record.subscription_status == SubscriptionStatus.ACTIVE
        assert record.source == UsageSource.FALLBACK


class TestFallbackSeeding:
    """An outage starts from the last counter read from the store."""

    @pytest.mark.asyncio
    async def test_exhausted_user_stays_blocked_during_outage(self, service, flaky_store):
        for _ in range(3):
            await flaky_store.increment_usage(1)
        assert (await service.get_usage(1)).free_captions_used == 3

        flaky_store.down = True

        assert await service.reserve_generation(1, 3) is False
        assert await service.can_generate(1) is False

    @pytest.mark.asyncio
    async def test_seed_does_not_overwrite_outage_counts(self, fallback):
        fallback.mark_degraded(1)
        await fallback.increment_usage(1)

        fallback.seed(UsageRecord.default(1))

        assert (await fallback.get_usage(1)).free_captions_used == 1
