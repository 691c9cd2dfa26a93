"""
Entitlement Resolver

Pure decision functions answering "may this user generate another caption,
and with which features?" from a single usage record. No I/O happens here;
callers load the record from whichever store is authoritative.
"""

import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel

from app.domain.plans import (
    PLAN_FEATURE_FLAGS,
    Platform,
    PlanFeatures,
    free_plan,
    resolve_paid_plan,
)
from app.domain.usage import SubscriptionStatus, UsageRecord, UsageSummaryResponse


logger = logging.getLogger(__name__)

RENEWAL_WINDOW_DAYS = 7


class ExpiryPolicy(str, Enum):
    """What a lapsed subscription is allowed to do."""
    FREE_TIER = "free_tier"
    BLOCKED = "blocked"


class DenialReason(str, Enum):
    LIMIT_REACHED = "limit_reached"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    PLATFORM_NOT_IN_PLAN = "platform_not_in_plan"


class Entitlement(BaseModel):
    """Outcome of resolving a usage record against the plan table."""
    plan: PlanFeatures
    effective_status: SubscriptionStatus
    captions_used: int
    caption_limit: Optional[int] = None
    remaining: Optional[int] = None
    can_generate: bool
    reason: Optional[DenialReason] = None

    @property
    def is_unlimited(self) -> bool:
        return self.caption_limit is None

    @property
    def platforms(self) -> set[Platform]:
        return set(self.plan.platforms)


class ExpiryInfo(BaseModel):
    is_expired: bool
    days_until_expiry: int
    needs_renewal: bool


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize to aware UTC; naive timestamps are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def captions_used(usage: UsageRecord) -> int:
    """Counter value used for decisions; corrupted negative counts read as zero."""
    return max(0, usage.free_captions_used)


def is_expired(usage: UsageRecord, now: Optional[datetime] = None) -> bool:
    """An active subscription whose next billing date has passed."""
    if usage.subscription_status != SubscriptionStatus.ACTIVE:
        return False
    if usage.next_billing_date is None:
        return False
    return as_utc(usage.next_billing_date) < (now or utcnow())


def effective_status(usage: UsageRecord, now: Optional[datetime] = None) -> SubscriptionStatus:
    """Stored status with the derived ``expired`` state applied."""
    if is_expired(usage, now):
        return SubscriptionStatus.EXPIRED
    return usage.subscription_status


def get_plan_features(usage: UsageRecord, now: Optional[datetime] = None) -> PlanFeatures:
    """
    Resolve the feature set a record is entitled to.

    Only a live active subscription earns paid features. An active record
    without a plan id is an anomaly and gets the free plan.
    """
    if effective_status(usage, now) != SubscriptionStatus.ACTIVE:
        return free_plan()

    if not usage.plan_id:
        logger.warning(f"User {usage.user_id} is active without a plan id, using free plan")
        return free_plan()

    return resolve_paid_plan(usage.plan_id)


def resolve_entitlement(
    usage: UsageRecord,
    now: Optional[datetime] = None,
    expiry_policy: ExpiryPolicy = ExpiryPolicy.FREE_TIER,
) -> Entitlement:
    """
    Decide whether a user may generate another caption.

    Args:
        usage: The authoritative usage record
        now: Evaluation time (defaults to current UTC time)
        expiry_policy: Treatment of lapsed subscriptions

    Returns:
        Entitlement with plan, limit, remaining count and decision
    """
    now = now or utcnow()
    used = captions_used(usage)
    status = effective_status(usage, now)

    if status == SubscriptionStatus.EXPIRED and expiry_policy == ExpiryPolicy.BLOCKED:
        return Entitlement(
            plan=free_plan(),
            effective_status=status,
            captions_used=used,
            caption_limit=0,
            remaining=0,
            can_generate=False,
            reason=DenialReason.SUBSCRIPTION_EXPIRED,
        )

    plan = get_plan_features(usage, now)

    if plan.is_paid:
        return Entitlement(
            plan=plan,
            effective_status=status,
            captions_used=used,
            can_generate=True,
        )

    limit = plan.caption_limit
    allowed = used < limit
    return Entitlement(
        plan=plan,
        effective_status=status,
        captions_used=used,
        caption_limit=limit,
        remaining=max(0, limit - used),
        can_generate=allowed,
        reason=None if allowed else DenialReason.LIMIT_REACHED,
    )


def can_generate(
    usage: UsageRecord,
    now: Optional[datetime] = None,
    expiry_policy: ExpiryPolicy = ExpiryPolicy.FREE_TIER,
) -> bool:
    return resolve_entitlement(usage, now, expiry_policy).can_generate


def available_platforms(usage: UsageRecord, now: Optional[datetime] = None) -> set[Platform]:
    return set(get_plan_features(usage, now).platforms)


def can_access_feature(usage: UsageRecord, feature: str, now: Optional[datetime] = None) -> bool:
    """Check a boolean plan flag (calendar, analytics, custom_prompts)."""
    if feature not in PLAN_FEATURE_FLAGS:
        raise ValueError(f"Unknown plan feature: {feature}")
    return bool(getattr(get_plan_features(usage, now), feature))


def get_caption_limit(
    usage: UsageRecord,
    now: Optional[datetime] = None,
    expiry_policy: ExpiryPolicy = ExpiryPolicy.FREE_TIER,
) -> Optional[int]:
    """Enforced caption limit. None means unlimited."""
    return resolve_entitlement(usage, now, expiry_policy).caption_limit


def subscription_expiry(usage: UsageRecord, now: Optional[datetime] = None) -> ExpiryInfo:
    """Days left on an active subscription and whether renewal is due."""
    if usage.next_billing_date is None or usage.subscription_status != SubscriptionStatus.ACTIVE:
        return ExpiryInfo(is_expired=False, days_until_expiry=0, needs_renewal=False)

    now = now or utcnow()
    delta = as_utc(usage.next_billing_date) - now
    days = math.ceil(delta.total_seconds() / 86400)

    return ExpiryInfo(
        is_expired=is_expired(usage, now),
        days_until_expiry=max(0, days),
        needs_renewal=days <= RENEWAL_WINDOW_DAYS,
    )


def summarize_usage(usage: UsageRecord, entitlement: Entitlement) -> UsageSummaryResponse:
    """Build the API view of a record and its resolved entitlement."""
    return UsageSummaryResponse(
        user_id=usage.user_id,
        free_captions_used=entitlement.captions_used,
        subscription_status=usage.subscription_status,
        effective_status=entitlement.effective_status,
        plan=entitlement.plan.key,
        plan_id=usage.plan_id,
        billing_cycle=usage.billing_cycle,
        next_billing_date=usage.next_billing_date,
        caption_limit=entitlement.caption_limit,
        remaining_free_captions=entitlement.remaining,
        can_generate=entitlement.can_generate,
        reason=entitlement.reason.value if entitlement.reason else None,
        platforms=[platform.value for platform in entitlement.plan.platforms],
        source=usage.source,
    )
