"""
Usage Repository

Persistent usage store backed by SQL (PostgreSQL in production, SQLite in
tests). Counter changes are single UPDATE statements so concurrent requests
for the same user are serialized by the database, never by application code.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Optional

from sqlalchemy import case, delete, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.entitlements import as_utc
from app.domain.usage import (
    BillingCycle,
    SubscriptionStatus,
    SubscriptionUpdate,
    UsageRecord,
    UsageStore,
)
from app.infrastructure.db.database import DatabaseManager
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.processed_webhook_event import ProcessedWebhookEventModel
from app.infrastructure.db.models.usage_record import UsageRecordModel
from app.infrastructure.exceptions import ConfigurationError, StoreUnavailable


logger = logging.getLogger(__name__)

# Errors meaning "the database could not be reached", as opposed to bugs
# such as integrity violations, which propagate unchanged.
OUTAGE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError)


class SqlUsageStore(UsageStore):
    """
    Repository for usage data access.

    Implements the UsageStore contract with domain model mapping.
    Uses async SQLAlchemy Core statements for atomic counter updates.
    """

    def __init__(self, db: DatabaseManager):
        self._db = db

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        """Open a transactional session, translating outages to StoreUnavailable."""
        try:
            async with self._db.session_context() as session:
                yield session
        except OUTAGE_ERRORS as e:
            raise StoreUnavailable(
                f"Usage store unavailable during {operation}",
                operation=operation,
                table=UsageRecordModel.__tablename__,
                original_error=e,
            ) from e

    def _insert(self, model):
        dialect = self._db.dialect_name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise ConfigurationError(f"Unsupported database dialect for usage store: {dialect}")

    def _ensure_row(self, user_id: int):
        """INSERT the default record unless one already exists."""
        now = utcnow()
        return self._insert(UsageRecordModel).values(
            user_id=user_id,
            free_captions_used=0,
            subscription_status=SubscriptionStatus.INACTIVE.value,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["user_id"])

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_usage(self, user_id: int) -> UsageRecord:
        """
        Get usage by user ID.

        Args:
            user_id: Application user ID

        Returns:
            UsageRecord (default record when the user has none)
        """
        async with self._session("get_usage") as session:
            model = await session.get(UsageRecordModel, user_id, populate_existing=True)

            if model is None:
                return UsageRecord.default(user_id)

            return self._to_domain(model)

    # =========================================================================
    # Counter Methods
    # =========================================================================

    async def increment_usage(self, user_id: int) -> None:
        await self.try_increment_usage(user_id, None)

    async def try_increment_usage(self, user_id: int, limit: Optional[int]) -> bool:
        """
        Conditionally increment the caption counter.

        The limit check and the increment are one UPDATE, so two concurrent
        requests can never both take the last free caption.
        """
        counter = UsageRecordModel.free_captions_used

        async with self._session("try_increment_usage") as session:
            await session.execute(self._ensure_row(user_id))

            stmt = update(UsageRecordModel).where(UsageRecordModel.user_id == user_id)
            if limit is not None:
                stmt = stmt.where(counter < limit)
            stmt = stmt.values(
                free_captions_used=case((counter < 0, 1), else_=counter + 1),
                updated_at=utcnow(),
            )

            result = await session.execute(stmt)
            incremented = result.rowcount == 1

        if not incremented:
            logger.info(f"Usage increment refused for user {user_id}: limit {limit} reached")
        return incremented

    async def refund_usage(self, user_id: int) -> None:
        counter = UsageRecordModel.free_captions_used

        async with self._session("refund_usage") as session:
            await session.execute(
                update(UsageRecordModel)
                .where(UsageRecordModel.user_id == user_id, counter > 0)
                .values(free_captions_used=counter - 1, updated_at=utcnow())
            )

        logger.info(f"Refunded one caption credit to user {user_id}")

    async def reset_usage(self, user_id: int) -> None:
        async with self._session("reset_usage") as session:
            await session.execute(
                update(UsageRecordModel)
                .where(UsageRecordModel.user_id == user_id)
                .values(free_captions_used=0, updated_at=utcnow())
            )

        logger.info(f"Reset caption usage for user {user_id}")

    async def reset_all(self) -> int:
        async with self._session("reset_all") as session:
            result = await session.execute(
                update(UsageRecordModel).values(free_captions_used=0, updated_at=utcnow())
            )
            count = result.rowcount

        logger.info(f"Reset caption usage for {count} users")
        return count

    # =========================================================================
    # Subscription Methods
    # =========================================================================

    async def upsert_subscription(self, user_id: int, update_fields: SubscriptionUpdate) -> UsageRecord:
        """
        Create or update subscription fields for a user.

        Fields not set on ``update_fields`` keep their stored values.

        Args:
            user_id: Application user ID
            update_fields: Partial subscription update

        Returns:
            The record after the update
        """
        changes = update_fields.changes()

        async with self._session("upsert_subscription") as session:
            await session.execute(self._ensure_row(user_id))

            if changes:
                await session.execute(
                    update(UsageRecordModel)
                    .where(UsageRecordModel.user_id == user_id)
                    .values(**changes, updated_at=utcnow())
                )

        return await self.get_usage(user_id)

    async def expire_lapsed_subscriptions(self, now: datetime) -> int:
        async with self._session("expire_lapsed_subscriptions") as session:
            result = await session.execute(
                update(UsageRecordModel)
                .where(
                    UsageRecordModel.subscription_status == SubscriptionStatus.ACTIVE.value,
                    UsageRecordModel.next_billing_date.is_not(None),
                    UsageRecordModel.next_billing_date < now,
                )
                .values(subscription_status=SubscriptionStatus.EXPIRED.value, updated_at=utcnow())
            )
            return result.rowcount

    async def delete_usage(self, user_id: int) -> bool:
        async with self._session("delete_usage") as session:
            result = await session.execute(
                delete(UsageRecordModel).where(UsageRecordModel.user_id == user_id)
            )
            deleted = result.rowcount > 0

        if deleted:
            logger.info(f"Deleted usage record for user {user_id}")
        return deleted

    # =========================================================================
    # Webhook Idempotency
    # =========================================================================

    async def claim_webhook_event(self, event_key: str, event_type: str) -> bool:
        async with self._session("claim_webhook_event") as session:
            result = await session.execute(
                self._insert(ProcessedWebhookEventModel)
                .values(event_key=event_key, event_type=event_type, processed_at=utcnow())
                .on_conflict_do_nothing(index_elements=["event_key"])
            )
            return result.rowcount == 1

    async def release_webhook_event(self, event_key: str) -> None:
        async with self._session("release_webhook_event") as session:
            await session.execute(
                delete(ProcessedWebhookEventModel)
                .where(ProcessedWebhookEventModel.event_key == event_key)
            )

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _to_domain(self, model: UsageRecordModel) -> UsageRecord:
        """Convert database model to domain entity."""
        try:
            status = SubscriptionStatus(model.subscription_status)
        except ValueError:
            logger.warning(
                f"Unknown subscription status {model.subscription_status!r} "
                f"for user {model.user_id}, treating as inactive"
            )
            status = SubscriptionStatus.INACTIVE

        billing_cycle = None
        if model.billing_cycle:
            try:
                billing_cycle = BillingCycle(model.billing_cycle)
            except ValueError:
                logger.warning(f"Unknown billing cycle {model.billing_cycle!r} for user {model.user_id}")

        return UsageRecord(
            user_id=model.user_id,
            free_captions_used=model.free_captions_used or 0,
            subscription_status=status,
            plan_id=model.plan_id,
            billing_cycle=billing_cycle,
            next_billing_date=as_utc(model.next_billing_date) if model.next_billing_date else None,
            subscription_start_date=(
                as_utc(model.subscription_start_date) if model.subscription_start_date else None
            ),
            payment_method_id=model.payment_method_id,
            external_subscription_id=model.external_subscription_id,
        )
