"""
Caption Generation Routes

Gated caption generation. A user over their allowance receives a 402
paywall body with ``upgrade_required: true``; generator failures surface
as 503 through the application error handlers.
"""

import logging

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from app.api.dependencies import GenerationGateDep
from app.domain.captions import CaptionGenerationRequest, GenerateCaptionsRequest
from app.infrastructure.services.generation_gate import GenerationResult, GenerationStatus


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/generate",
    response_model=GenerationResult,
    responses={402: {"model": GenerationResult, "description": "Upgrade required"}},
)
async def generate_captions(request: GenerateCaptionsRequest, gate: GenerationGateDep):
    """
    Generate caption variants for a user.

    Consumes one caption credit on success; nothing is consumed when the
    paywall is returned or generation fails.
    """
    generation_request = CaptionGenerationRequest.model_validate(
        request.model_dump(exclude={"user_id"})
    )
    result = await gate.generate(request.user_id, generation_request)

    if result.status == GenerationStatus.PAYWALL:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content=result.model_dump(mode="json"),
        )

    return result
