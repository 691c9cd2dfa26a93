"""
Fallback Counter

Process-local usage store used while the persistent store is unreachable,
and as the whole backend when no database is configured. State is lost on
restart and is never shared between worker processes.
"""

import logging
import threading
from datetime import datetime
from typing import Optional

from app.domain.entitlements import as_utc
from app.domain.usage import (
    SubscriptionStatus,
    SubscriptionUpdate,
    UsageRecord,
    UsageSource,
    UsageStore,
)


logger = logging.getLogger(__name__)


class FallbackCounter(UsageStore):
    """
    In-memory implementation of the UsageStore contract.

    Every mutation runs under one lock with no awaits inside, so per-key
    updates are atomic across tasks and threads alike.
    """

    def __init__(self, source: UsageSource = UsageSource.FALLBACK):
        self._source = source
        self._records: dict[int, UsageRecord] = {}
        self._processed_events: dict[str, str] = {}
        self._degraded_users: set[int] = set()
        self._lock = threading.Lock()

    @property
    def source(self) -> UsageSource:
        return self._source

    def _get_or_create(self, user_id: int) -> UsageRecord:
        record = self._records.get(user_id)
        if record is None:
            record = UsageRecord.default(user_id, source=self._source)
            self._records[user_id] = record
            logger.debug(f"Created fallback usage record for user {user_id}")
        return record

    # =========================================================================
    # UsageStore Contract
    # =========================================================================

    async def get_usage(self, user_id: int) -> UsageRecord:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return UsageRecord.default(user_id, source=self._source)
            return record.model_copy()

    async def increment_usage(self, user_id: int) -> None:
        await self.try_increment_usage(user_id, None)

    async def try_increment_usage(self, user_id: int, limit: Optional[int]) -> bool:
        with self._lock:
            record = self._get_or_create(user_id)
            if limit is not None and record.free_captions_used >= limit:
                return False
            record.free_captions_used = max(0, record.free_captions_used) + 1
            logger.debug(f"Fallback usage for user {user_id}: {record.free_captions_used}")
            return True

    async def refund_usage(self, user_id: int) -> None:
        with self._lock:
            record = self._records.get(user_id)
            if record is not None and record.free_captions_used > 0:
                record.free_captions_used -= 1

    async def upsert_subscription(self, user_id: int, update: SubscriptionUpdate) -> UsageRecord:
        with self._lock:
            record = update.apply_to(self._get_or_create(user_id))
            self._records[user_id] = record
            return record.model_copy()

    async def reset_usage(self, user_id: int) -> None:
        with self._lock:
            record = self._records.get(user_id)
            if record is not None:
                record.free_captions_used = 0
        logger.info(f"Reset fallback usage for user {user_id}")

    async def reset_all(self) -> int:
        with self._lock:
            for record in self._records.values():
                record.free_captions_used = 0
            count = len(self._records)
        logger.info(f"Reset fallback usage for {count} users")
        return count

    async def delete_usage(self, user_id: int) -> bool:
        with self._lock:
            self._degraded_users.discard(user_id)
            return self._records.pop(user_id, None) is not None

    async def expire_lapsed_subscriptions(self, now: datetime) -> int:
        expired = 0
        with self._lock:
            for record in self._records.values():
                if (
                    record.subscription_status == SubscriptionStatus.ACTIVE
                    and record.next_billing_date is not None
                    and as_utc(record.next_billing_date) < now
                ):
                    record.subscription_status = SubscriptionStatus.EXPIRED
                    expired += 1
        return expired

    async def claim_webhook_event(self, event_key: str, event_type: str) -> bool:
        with self._lock:
            if event_key in self._processed_events:
                return False
            self._processed_events[event_key] = event_type
            return True

    async def release_webhook_event(self, event_key: str) -> None:
        with self._lock:
            self._processed_events.pop(event_key, None)

    # =========================================================================
    # Plan Shortcuts
    # =========================================================================

    async def upgrade_to_subscription(self, user_id: int, plan_id: str) -> UsageRecord:
        """Mark a user active on ``plan_id``."""
        record = await self.upsert_subscription(
            user_id,
            SubscriptionUpdate(subscription_status=SubscriptionStatus.ACTIVE, plan_id=plan_id),
        )
        logger.info(f"Fallback: upgraded user {user_id} to plan {plan_id}")
        return record

    async def downgrade_to_free(self, user_id: int) -> UsageRecord:
        """Return a user to the free tier, clearing plan and billing fields."""
        record = await self.upsert_subscription(
            user_id,
            SubscriptionUpdate(
                subscription_status=SubscriptionStatus.INACTIVE,
                plan_id=None,
                billing_cycle=None,
                next_billing_date=None,
            ),
        )
        logger.info(f"Fallback: downgraded user {user_id} to free plan")
        return record

    # =========================================================================
    # Degraded-Mode Bookkeeping
    # =========================================================================

    def seed(self, record: UsageRecord) -> None:
        """
        Keep the last persistent state of a user as the starting point for an outage.

        Ignored while the user is degraded, so outage-time counts are never overwritten.
        """
        with self._lock:
            if record.user_id in self._degraded_users:
                return
            self._records[record.user_id] = record.model_copy(update={"source": self._source})

    def mark_degraded(self, user_id: int) -> None:
        """Remember that ``user_id`` was served from this counter during an outage."""
        with self._lock:
            self._degraded_users.add(user_id)

    def is_degraded(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._degraded_users

    def take_degraded(self, user_id: int) -> Optional[UsageRecord]:
        """
        Hand back and forget the outage-time record for ``user_id``.

        Returns None when the user was not served from this counter.
        """
        with self._lock:
            if user_id not in self._degraded_users:
                return None
            self._degraded_users.discard(user_id)
            return self._records.pop(user_id, None) or UsageRecord.default(
                user_id, source=self._source
            )

    @property
    def degraded_user_count(self) -> int:
        with self._lock:
            return len(self._degraded_users)
