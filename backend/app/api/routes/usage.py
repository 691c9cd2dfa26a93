"""
Usage API Routes

Read a user's caption usage and entitlement; admin reset and deletion.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.dependencies import UsageServiceDep, verify_admin_api_key
from app.domain.entitlements import summarize_usage
from app.domain.usage import UsageSummaryResponse
from app.infrastructure.exceptions import NotFoundError, ValidationError


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage")


class CanGenerateResponse(BaseModel):
    user_id: int
    can_generate: bool
    reason: str | None = None
    remaining_free_captions: int | None = None


class ResetResponse(BaseModel):
    success: bool
    message: str
    users_reset: int = 0


def _validate_user_id(user_id: int) -> None:
    if user_id < 1:
        raise ValidationError(f"Invalid user id: {user_id}", details={"user_id": user_id})


# =============================================================================
# Reads
# =============================================================================

@router.get("/{user_id}", response_model=UsageSummaryResponse)
async def get_usage(user_id: int, usage: UsageServiceDep):
    """
    Get a user's usage record with its resolved entitlement.

    Unknown users get the default record (0 captions used, inactive).
    """
    _validate_user_id(user_id)
    record, entitlement = await usage.get_entitlement(user_id)
    return summarize_usage(record, entitlement)


@router.get("/{user_id}/can-generate", response_model=CanGenerateResponse)
async def can_generate(user_id: int, usage: UsageServiceDep):
    """Check whether a user may generate another caption."""
    _validate_user_id(user_id)
    _, entitlement = await usage.get_entitlement(user_id)
    return CanGenerateResponse(
        user_id=user_id,
        can_generate=entitlement.can_generate,
        reason=entitlement.reason.value if entitlement.reason else None,
        remaining_free_captions=entitlement.remaining,
    )


# =============================================================================
# Admin
# =============================================================================

@router.post(
    "/reset-all",
    response_model=ResetResponse,
    dependencies=[Depends(verify_admin_api_key)],
)
async def reset_all_usage(usage: UsageServiceDep):
    """Reset every user's caption counter."""
    count = await usage.reset_all()
    logger.info(f"Admin reset caption usage for {count} users")
    return ResetResponse(success=True, message="All usage counters reset", users_reset=count)


@router.post(
    "/{user_id}/reset",
    response_model=ResetResponse,
    dependencies=[Depends(verify_admin_api_key)],
)
async def reset_user_usage(user_id: int, usage: UsageServiceDep):
    """Reset one user's caption counter to zero."""
    _validate_user_id(user_id)
    await usage.reset_usage(user_id)
    logger.info(f"Admin reset caption usage for user {user_id}")
    return ResetResponse(success=True, message=f"Usage reset for user {user_id}", users_reset=1)


@router.delete(
    "/{user_id}",
    dependencies=[Depends(verify_admin_api_key)],
)
async def delete_user_usage(user_id: int, usage: UsageServiceDep):
    """Delete a user's usage record (account deletion)."""
    _validate_user_id(user_id)
    if not await usage.delete_usage(user_id):
        raise NotFoundError(f"No usage record for user {user_id}")
    logger.info(f"Deleted usage record for user {user_id}")
    return {"success": True, "user_id": user_id}
