"""
Scheduled Job Routes

Daily subscription expiry sweep, called by the platform scheduler with
``Authorization: Bearer <CRON_SECRET>``.
"""

import logging

from fastapi import APIRouter, Depends

from app.api.dependencies import ReconcilerDep, UsageServiceDep, verify_cron_secret


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", dependencies=[Depends(verify_cron_secret)])


@router.get("/subscription-expiry")
async def subscription_expiry_sweep(reconciler: ReconcilerDep, usage: UsageServiceDep):
    """Mark active subscriptions past their billing date as expired."""
    expired = await reconciler.run_expiry_sweep()
    return {
        "success": True,
        "expired": expired,
        "checked_at": usage.now().isoformat(),
    }
