"""
Usage Domain Models

Domain models for caption usage tracking following Clean Architecture.
Enums, the per-user usage record, partial subscription updates, and the
storage interface every usage backend implements.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


FREE_CAPTION_LIMIT = 3


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    INACTIVE = "inactive"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"
    EXPIRED = "expired"


class BillingCycle(str, Enum):
    """Billing cycle for paid plans."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class UsageSource(str, Enum):
    """Which store answered a usage request."""
    PERSISTENT = "persistent"
    FALLBACK = "fallback"


# =============================================================================
# Domain Entities
# =============================================================================

class UsageRecord(BaseModel):
    """
    Usage and subscription state for one user.

    A record that has never been written is indistinguishable from
    ``UsageRecord.default(user_id)``.
    """
    user_id: int
    free_captions_used: int = 0
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    plan_id: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    next_billing_date: Optional[datetime] = None
    subscription_start_date: Optional[datetime] = None
    payment_method_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    source: UsageSource = UsageSource.PERSISTENT

    class Config:
        from_attributes = True

    @classmethod
    def default(cls, user_id: int, source: UsageSource = UsageSource.PERSISTENT) -> "UsageRecord":
        """Record returned for users the store has never seen."""
        return cls(user_id=user_id, source=source)

    def decision_state(self) -> dict:
        """Fields that affect entitlement decisions, used for divergence checks."""
        return {
            "free_captions_used": self.free_captions_used,
            "subscription_status": self.subscription_status,
            "plan_id": self.plan_id,
            "next_billing_date": self.next_billing_date,
        }


class SubscriptionUpdate(BaseModel):
    """
    Partial update of subscription fields.

    Only fields explicitly set are written; unset fields keep their stored
    value. Setting a field to ``None`` clears it.
    """
    subscription_status: Optional[SubscriptionStatus] = None
    plan_id: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    next_billing_date: Optional[datetime] = None
    subscription_start_date: Optional[datetime] = None
    payment_method_id: Optional[str] = None
    external_subscription_id: Optional[str] = None

    def changes(self) -> dict:
        """Explicitly set fields as storage values (enums flattened to strings)."""
        values = self.model_dump(exclude_unset=True)
        for key, value in values.items():
            if isinstance(value, Enum):
                values[key] = value.value
        return values

    def apply_to(self, record: UsageRecord) -> UsageRecord:
        """Return a copy of ``record`` with the set fields applied."""
        return record.model_copy(update=self.model_dump(exclude_unset=True))


class UsageSummaryResponse(BaseModel):
    """Response DTO for a user's usage and entitlement."""
    user_id: int
    free_captions_used: int
    subscription_status: SubscriptionStatus
    effective_status: SubscriptionStatus
    plan: str
    plan_id: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    next_billing_date: Optional[datetime] = None
    caption_limit: Optional[int] = Field(description="None means unlimited")
    remaining_free_captions: Optional[int] = Field(description="None means unlimited")
    can_generate: bool
    reason: Optional[str] = None
    platforms: list[str]
    source: UsageSource


# =============================================================================
# Storage Interface
# =============================================================================

class UsageStore(ABC):
    """
    Interface for usage persistence.

    Implementations must apply counter changes atomically per user and raise
    ``StoreUnavailable`` when the backend cannot be reached. Lookups of
    unknown users return ``UsageRecord.default`` rather than failing.
    """

    @abstractmethod
    async def get_usage(self, user_id: int) -> UsageRecord:
        """Get the usage record for a user (default record if none exists)."""

    @abstractmethod
    async def increment_usage(self, user_id: int) -> None:
        """Atomically add one to ``free_captions_used``."""

    @abstractmethod
    async def try_increment_usage(self, user_id: int, limit: Optional[int]) -> bool:
        """
        Atomically add one to ``free_captions_used`` if it is below ``limit``.

        ``limit=None`` increments unconditionally. Returns whether the
        increment happened.
        """

    @abstractmethod
    async def refund_usage(self, user_id: int) -> None:
        """Atomically subtract one from ``free_captions_used``, never below zero."""

    @abstractmethod
    async def upsert_subscription(self, user_id: int, update: SubscriptionUpdate) -> UsageRecord:
        """Create the record if needed and apply a partial subscription update."""

    @abstractmethod
    async def reset_usage(self, user_id: int) -> None:
        """Set ``free_captions_used`` back to zero for one user."""

    @abstractmethod
    async def reset_all(self) -> int:
        """Reset every user's counter. Returns the number of records touched."""

    @abstractmethod
    async def delete_usage(self, user_id: int) -> bool:
        """Delete a user's record (account deletion). Returns whether it existed."""

    @abstractmethod
    async def expire_lapsed_subscriptions(self, now: datetime) -> int:
        """Mark active records whose billing date has passed as expired."""

    @abstractmethod
    async def claim_webhook_event(self, event_key: str, event_type: str) -> bool:
        """Record a webhook delivery. Returns False if it was already claimed."""

    @abstractmethod
    async def release_webhook_event(self, event_key: str) -> None:
        """Forget a claimed delivery so a retry can apply it."""
