"""Property quota routes - how many more properties a profile may add."""
from fastapi import APIRouter, HTTPException, status, Depends
import logging

from models import QuotaResponse
from services.analytics import ANALYTICS_EVENTS
from services.plan_registry import plan_registry
from middleware import get_profile_store, get_analytics

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/profiles", tags=["properties"])


@router.get("/{user_id}/quota", response_model=QuotaResponse)
async def get_property_quota(
    user_id: str,
    profiles=Depends(get_profile_store),
    analytics=Depends(get_analytics),
):
    profile = await profiles.find_by_user_id(user_id)
    if not profile:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Profile not found"
        )

    # Legacy or corrupted tiers count as the free tier
    plan_type = plan_registry.resolve_plan_type(profile.get("plan_type"))
    current_count = await profiles.count_properties(user_id)
    max_properties = plan_registry.get_plan_max_properties(plan_type)
    can_add = plan_registry.can_add_property(plan_type, current_count)

    if not can_add:
        logger.info(f"Property limit reached for user {user_id}: {current_count}/{max_properties} ({plan_type.value})")
        analytics.record(user_id, ANALYTICS_EVENTS["BIEN_LIMIT_REACHED"], {
            "planType": plan_type.value,
            "currentCount": current_count,
            "maxCount": max_properties,
        })

    return QuotaResponse(
        plan_type=plan_type,
        max_properties=max_properties,
        current_count=current_count,
        remaining=plan_registry.get_remaining_properties(plan_type, current_count),
        can_add=can_add,
    )
