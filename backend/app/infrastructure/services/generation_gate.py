"""
Generation Gate

Orchestrates one caption generation: entitlement check, credit
reservation, the generator call, and a refund when generation fails.
Holds no state of its own.
"""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from app.domain.captions import CaptionGenerationRequest, GeneratedCaption
from app.domain.entitlements import DenialReason, Entitlement, summarize_usage
from app.domain.usage import UsageRecord, UsageSummaryResponse
from app.infrastructure.ai.caption_generator import CaptionGenerator
from app.infrastructure.services.usage_service import UsageService


logger = logging.getLogger(__name__)


class GenerationStatus(str, Enum):
    GENERATED = "generated"
    PAYWALL = "paywall"


class GenerationResult(BaseModel):
    """Outcome of a gated generation; a paywall is a result, not an error."""
    status: GenerationStatus
    upgrade_required: bool = False
    reason: Optional[DenialReason] = None
    message: Optional[str] = None
    captions: list[GeneratedCaption] = []
    usage: UsageSummaryResponse


PAYWALL_MESSAGES = {
    DenialReason.LIMIT_REACHED: "You have used all {limit} free captions. Please upgrade to continue.",
    DenialReason.SUBSCRIPTION_EXPIRED: "Your subscription has expired. Please renew to continue.",
    DenialReason.PLATFORM_NOT_IN_PLAN: "{platform} captions are not included in your plan. Please upgrade to continue.",
}


class GenerationGate:
    """
    Permission check and metering around the caption generator.

    A credit is reserved atomically before generating, so concurrent requests
    cannot exceed the free limit, and refunded if generation fails or is
    cancelled, so a failed generation never consumes a credit.
    """

    def __init__(self, usage: UsageService, generator: CaptionGenerator):
        self._usage = usage
        self._generator = generator

    async def generate(self, user_id: int, request: CaptionGenerationRequest) -> GenerationResult:
        """
        Generate captions for ``user_id`` if their entitlement allows it.

        Raises:
            CaptionGenerationError (or any generator failure) after the
            reserved credit has been refunded
        """
        usage, entitlement = await self._usage.get_entitlement(user_id)

        if not entitlement.can_generate:
            return self._paywall(usage, entitlement, entitlement.reason or DenialReason.LIMIT_REACHED, request)

        if request.platform not in entitlement.platforms:
            return self._paywall(usage, entitlement, DenialReason.PLATFORM_NOT_IN_PLAN, request)

        if not await self._usage.reserve_generation(user_id, entitlement.caption_limit):
            # Another request took the last credit between the check and the reservation
            usage, entitlement = await self._usage.get_entitlement(user_id)
            return self._paywall(usage, entitlement, entitlement.reason or DenialReason.LIMIT_REACHED, request)

        try:
            captions = await self._generator.generate_captions(request)
        except BaseException as e:
            logger.warning(f"Generation failed for user {user_id}, refunding credit: {e!r}")
            await self._usage.release_generation(user_id)
            raise

        usage, entitlement = await self._usage.get_entitlement(user_id)
        logger.info(
            f"Generated {len(captions)} {request.platform.value} captions for user {user_id} "
            f"(used {entitlement.captions_used}, remaining {entitlement.remaining})"
        )

        return GenerationResult(
            status=GenerationStatus.GENERATED,
            captions=captions,
            usage=summarize_usage(usage, entitlement),
        )

    def _paywall(
        self,
        usage: UsageRecord,
        entitlement: Entitlement,
        reason: DenialReason,
        request: CaptionGenerationRequest,
    ) -> GenerationResult:
        logger.info(f"Paywall for user {usage.user_id}: {reason.value}")
        message = PAYWALL_MESSAGES[reason].format(
            limit=entitlement.caption_limit or 0,
            platform=request.platform.value,
        )
        return GenerationResult(
            status=GenerationStatus.PAYWALL,
            upgrade_required=True,
            reason=reason,
            message=message,
            usage=summarize_usage(usage, entitlement),
        )
