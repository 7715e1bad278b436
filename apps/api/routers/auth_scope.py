"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.profile import Profile
from services.credits import ensure_profile
from services.plans import Feature, can_access_feature, get_upgrade_message, minimum_plan_for_feature
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


def resolve_auth_context(credentials: Optional[HTTPAuthorizationCredentials]) -> AuthContext:
    """Validate Bearer credentials; raises 401 HTTPException when they are missing or bad."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    return resolve_auth_context(credentials)


async def get_current_profile(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Profile:
    """Authenticated user's profile, created with the free grant on first request."""
    return await ensure_profile(auth.user_id, db, email=auth.email)


async def require_admin(profile: Profile = Depends(get_current_profile)) -> Profile:
    if not profile.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required.")
    return profile


def require_feature(feature: Feature) -> Callable:
    """Return a dependency that rejects profiles whose plan lacks ``feature``."""

    async def _dependency(profile: Profile = Depends(get_current_profile)) -> Profile:
        if not can_access_feature(profile.subscription_tier, feature):
            required = minimum_plan_for_feature(feature)
            raise HTTPException(
                status_code=403,
                detail={
                    "error": get_upgrade_message(profile.subscription_tier, feature),
                    "feature": feature.value,
                    "current_plan": profile.subscription_tier,
                    "required_plan": required.id.value,
                    "upgrade_required": True,
                },
            )
        return profile

    return _dependency
