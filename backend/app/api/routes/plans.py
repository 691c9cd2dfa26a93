"""
Plan Routes

Public plan table used by the pricing page.
"""

from fastapi import APIRouter

from app.domain.plans import PLAN_FEATURES, PlanFeatures


router = APIRouter()


@router.get("/plans", response_model=list[PlanFeatures])
async def list_plans():
    """List all plans with their features and limits."""
    return list(PLAN_FEATURES.values())
