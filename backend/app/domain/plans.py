"""
Plan Domain Models

Static plan table and lookup helpers for plan-tier feature gating.
"""

import logging
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from app.domain.usage import FREE_CAPTION_LIMIT


logger = logging.getLogger(__name__)


class Platform(str, Enum):
    """Social platforms captions can be generated for."""
    INSTAGRAM = "Instagram"
    TIKTOK = "TikTok"
    TWITTER = "Twitter"
    FACEBOOK = "Facebook"
    LINKEDIN = "LinkedIn"
    YOUTUBE = "YouTube"

    @classmethod
    def parse(cls, value: str) -> Optional["Platform"]:
        """Case-insensitive lookup; ``x`` is accepted as Twitter."""
        normalized = value.strip().lower()
        if normalized == "x":
            return cls.TWITTER
        for platform in cls:
            if platform.value.lower() == normalized:
                return platform
        return None


class AITier(str, Enum):
    """Model quality available to a plan."""
    BASIC = "basic"
    ADVANCED = "advanced"


class SupportLevel(str, Enum):
    EMAIL = "email"
    PRIORITY = "priority"


class PlanFeatures(BaseModel):
    """Feature set granted by a plan."""
    key: str
    name: str
    price: float
    interval: str = "month"
    external_ids: tuple[str, ...] = ()
    caption_limit: Optional[int] = Field(description="None means unlimited")
    platforms: tuple[Platform, ...]
    ai_tier: AITier
    support: SupportLevel
    calendar: bool = False
    analytics: bool = False
    custom_prompts: bool = False

    @property
    def is_paid(self) -> bool:
        return self.price > 0


FREE_PLAN_KEY = "free"

# Active subscriptions whose plan id is not in the table are granted this plan.
UNKNOWN_ACTIVE_PLAN_DEFAULT = "premium"

# Plan assigned when a payment arrives without any plan id on record.
DEFAULT_PAID_PLAN = "premium"


PLAN_FEATURES: dict[str, PlanFeatures] = {
    "free": PlanFeatures(
        key="free",
        name="Free Plan",
        price=0,
        caption_limit=FREE_CAPTION_LIMIT,
        platforms=(Platform.INSTAGRAM, Platform.TIKTOK, Platform.TWITTER),
        ai_tier=AITier.BASIC,
        support=SupportLevel.EMAIL,
    ),
    "basic": PlanFeatures(
        key="basic",
        name="Basic Plan",
        price=9.99,
        external_ids=("prod_OAeju0utHppI2",),
        caption_limit=100,
        platforms=(Platform.INSTAGRAM, Platform.TIKTOK, Platform.TWITTER, Platform.FACEBOOK),
        ai_tier=AITier.BASIC,
        support=SupportLevel.EMAIL,
    ),
    "premium": PlanFeatures(
        key="premium",
        name="Premium Plan",
        price=19.99,
        external_ids=("prod_Premium123", "prod_xcU9zERSGgyNK"),
        caption_limit=None,
        platforms=tuple(Platform),
        ai_tier=AITier.ADVANCED,
        support=SupportLevel.PRIORITY,
        calendar=True,
        analytics=True,
        custom_prompts=True,
    ),
}

PLAN_FEATURE_FLAGS = ("calendar", "analytics", "custom_prompts")


def lookup_plan(plan_id: Optional[str]) -> Optional[PlanFeatures]:
    """Find a plan by table key or external (Whop) id."""
    if not plan_id:
        return None
    if plan_id in PLAN_FEATURES:
        return PLAN_FEATURES[plan_id]
    for plan in PLAN_FEATURES.values():
        if plan_id in plan.external_ids:
            return plan
    return None


def resolve_paid_plan(plan_id: str) -> PlanFeatures:
    """
    Resolve the plan for an active subscription.

    Unrecognized plan ids resolve to ``UNKNOWN_ACTIVE_PLAN_DEFAULT``. A plan id
    naming the free plan still resolves to the free plan.
    """
    plan = lookup_plan(plan_id)
    if plan is None:
        logger.info(
            f"Unrecognized active plan id {plan_id!r}, granting "
            f"{UNKNOWN_ACTIVE_PLAN_DEFAULT} features"
        )
        return PLAN_FEATURES[UNKNOWN_ACTIVE_PLAN_DEFAULT]
    return plan


def free_plan() -> PlanFeatures:
    return PLAN_FEATURES[FREE_PLAN_KEY]
