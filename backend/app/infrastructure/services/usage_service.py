"""
Usage Service

Single entry point for usage reads and writes. The persistent store is
authoritative whenever it answers; the fallback counter serves caption
counters only, for operations that failed with StoreUnavailable.
Subscription writes and webhook claims never go to the fallback: a change
that cannot be persisted raises StoreUnavailable so the provider retries it.

Every successful persistent read seeds the fallback with that user's
record, so an outage starts from the last known counter instead of zero.
The first successful persistent read for a user served during an outage
discards that user's fallback record and logs any divergence.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from app.domain.entitlements import (
    Entitlement,
    ExpiryPolicy,
    resolve_entitlement,
    utcnow,
)
from app.domain.usage import SubscriptionUpdate, UsageRecord, UsageStore
from app.infrastructure.exceptions import StoreUnavailable
from app.infrastructure.fallback_counter import FallbackCounter


logger = logging.getLogger(__name__)

T = TypeVar("T")


class UsageService:
    """
    Routes usage operations to the persistent store or the fallback counter.

    Args:
        store: Persistent usage store (authoritative)
        fallback: In-memory counter for outages
        expiry_policy: Treatment of lapsed subscriptions
        clock: Source of the current UTC time
    """

    def __init__(
        self,
        store: UsageStore,
        fallback: FallbackCounter,
        expiry_policy: ExpiryPolicy = ExpiryPolicy.FREE_TIER,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._fallback = fallback
        self._expiry_policy = expiry_policy
        self._clock = clock

    @property
    def store(self) -> UsageStore:
        return self._store

    @property
    def fallback(self) -> FallbackCounter:
        return self._fallback

    def now(self) -> datetime:
        return self._clock()

    async def _run(
        self,
        operation: str,
        user_id: Optional[int],
        primary: Callable[[UsageStore], Awaitable[T]],
    ) -> T:
        """Run ``primary`` against the store, falling back on StoreUnavailable."""
        if self._store is self._fallback:
            return await primary(self._store)

        try:
            return await primary(self._store)
        except StoreUnavailable as e:
            logger.warning(
                f"Usage store unavailable for {operation} (user {user_id}), "
                f"using fallback counter: {e.original_error or e}"
            )
            if user_id is not None:
                self._fallback.mark_degraded(user_id)
            return await primary(self._fallback)

    async def _run_persistent(
        self,
        operation: str,
        primary: Callable[[UsageStore], Awaitable[T]],
    ) -> T:
        """Run ``primary`` against the store only; outages propagate."""
        try:
            return await primary(self._store)
        except StoreUnavailable:
            logger.warning(f"Usage store unavailable for {operation}, not applied")
            raise

    def _reconcile_fallback(self, record: UsageRecord) -> None:
        """Drop outage-time state once the persistent store answers again."""
        if self._store is self._fallback:
            return

        stale = self._fallback.take_degraded(record.user_id)
        if stale is None:
            return

        if stale.decision_state() != record.decision_state():
            logger.warning(
                f"Fallback usage for user {record.user_id} diverged from persistent store "
                f"(fallback={stale.decision_state()}, persistent={record.decision_state()}); "
                f"persistent record wins"
            )
        else:
            logger.info(f"Persistent store recovered for user {record.user_id}, fallback state discarded")

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_usage(self, user_id: int) -> UsageRecord:
        """Get the authoritative usage record for a user."""
        try:
            record = await self._store.get_usage(user_id)
        except StoreUnavailable as e:
            if self._store is self._fallback:
                raise
            logger.warning(
                f"Usage store unavailable for get_usage (user {user_id}), "
                f"using fallback counter: {e.original_error or e}"
            )
            self._fallback.mark_degraded(user_id)
            return await self._fallback.get_usage(user_id)

        self._reconcile_fallback(record)
        if self._store is not self._fallback:
            self._fallback.seed(record)
        return record

    async def get_entitlement(self, user_id: int) -> tuple[UsageRecord, Entitlement]:
        usage = await self.get_usage(user_id)
        return usage, resolve_entitlement(usage, self.now(), self._expiry_policy)

    async def can_generate(self, user_id: int) -> bool:
        _, entitlement = await self.get_entitlement(user_id)
        return entitlement.can_generate

    # =========================================================================
    # Counter Writes
    # =========================================================================

    async def reserve_generation(self, user_id: int, limit: Optional[int]) -> bool:
        """Take one caption credit, refusing if ``limit`` is already reached."""
        return await self._run(
            "reserve_generation", user_id,
            lambda store: store.try_increment_usage(user_id, limit),
        )

    async def release_generation(self, user_id: int) -> None:
        """Give back a credit taken by ``reserve_generation``."""
        await self._run("release_generation", user_id, lambda store: store.refund_usage(user_id))

    async def record_generation(self, user_id: int) -> None:
        """Count a generation unconditionally."""
        await self._run("record_generation", user_id, lambda store: store.increment_usage(user_id))

    async def reset_usage(self, user_id: int) -> None:
        await self._run("reset_usage", user_id, lambda store: store.reset_usage(user_id))

    async def reset_all(self) -> int:
        count = await self._run("reset_all", None, lambda store: store.reset_all())
        if self._store is not self._fallback:
            await self._fallback.reset_all()
        return count

    async def delete_usage(self, user_id: int) -> bool:
        deleted = await self._run("delete_usage", user_id, lambda store: store.delete_usage(user_id))
        if self._store is not self._fallback:
            await self._fallback.delete_usage(user_id)
        return deleted

    # =========================================================================
    # Subscription Writes
    # =========================================================================

    async def upsert_subscription(self, user_id: int, update: SubscriptionUpdate) -> UsageRecord:
        record = await self._run_persistent(
            "upsert_subscription",
            lambda store: store.upsert_subscription(user_id, update),
        )
        if self._store is not self._fallback:
            self._fallback.seed(record)
        return record

    async def expire_lapsed_subscriptions(self) -> int:
        now = self.now()
        return await self._run_persistent(
            "expire_lapsed_subscriptions",
            lambda store: store.expire_lapsed_subscriptions(now),
        )

    async def claim_webhook_event(self, event_key: str, event_type: str) -> bool:
        return await self._run_persistent(
            "claim_webhook_event",
            lambda store: store.claim_webhook_event(event_key, event_type),
        )

    async def release_webhook_event(self, event_key: str) -> None:
        await self._run_persistent(
            "release_webhook_event",
            lambda store: store.release_webhook_event(event_key),
        )
