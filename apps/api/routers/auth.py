"""
Authentication router for the current user's profile and plan.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from models.profile import Profile
from routers.auth_scope import get_current_profile
from services.plans import get_plan

router = APIRouter()


class CurrentUserResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    subscription_tier: str
    subscription_status: str
    plan_name: str
    credits_remaining: int
    bonus_credits: int
    batch_credits: int
    use_bonus_first: bool
    is_admin: bool = False
    allowed_features: List[str] = []


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(profile: Profile = Depends(get_current_profile)):
    """Get current user profile, plan and balances."""
    plan = get_plan(profile.subscription_tier)
    return CurrentUserResponse(
        user_id=profile.id,
        email=profile.email,
        full_name=profile.full_name,
        subscription_tier=profile.subscription_tier,
        subscription_status=profile.subscription_status,
        plan_name=plan.display_name,
        credits_remaining=profile.credits_remaining,
        bonus_credits=profile.bonus_credits,
        batch_credits=profile.batch_credits,
        use_bonus_first=bool(profile.use_bonus_first),
        is_admin=bool(profile.is_admin),
        allowed_features=sorted(feature.value for feature in plan.allowed_features),
    )
