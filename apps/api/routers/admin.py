"""Admin-only credit adjustments and audit views."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.profile import Profile
from routers.auth_scope import require_admin
from services.audit import (
    get_user_activity_summary,
    query_audit_logs,
    record_audit_event,
    serialize_audit_log,
)
from services.credits import ProfileNotFoundError, add_batch_credits, add_credits

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditAdjustmentRequest(BaseModel):
    user_id: str
    amount: int = Field(ge=1, le=100000)
    credit_type: Literal["regular", "bonus", "batch"] = "bonus"
    reason: str = Field(min_length=1, max_length=500)


@router.post("/credits/adjust")
async def adjust_credits(
    request: CreditAdjustmentRequest,
    admin: Profile = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    metadata = {"reason": request.reason, "admin_id": admin.id}
    try:
        if request.credit_type == "batch":
            balance_after = await add_batch_credits(
                request.user_id, db, request.amount, "admin_adjustment", metadata=metadata
            )
        else:
            balance_after = await add_credits(
                request.user_id,
                db,
                request.amount,
                "admin_adjustment",
                metadata=metadata,
                credit_type=request.credit_type,
            )
    except ProfileNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")

    await record_audit_event(
        db,
        request.user_id,
        "credit_adjustment",
        "success",
        event_id="CRD-1001",
        action_details={
            "amount": request.amount,
            "credit_type": request.credit_type,
            "reason": request.reason,
            "admin_id": admin.id,
            "balance_after": balance_after,
        },
    )
    logger.info("Admin %s granted %d %s credits to %s", admin.id, request.amount, request.credit_type, request.user_id)
    return {
        "user_id": request.user_id,
        "credit_type": request.credit_type,
        "amount": request.amount,
        "balance_after": balance_after,
    }


@router.get("/audit/logs")
async def all_audit_logs(
    user_id: Optional[str] = Query(default=None),
    action_type: Optional[str] = Query(default=None),
    action_status: Optional[str] = Query(default=None),
    event_id: Optional[str] = Query(default=None),
    threats_only: bool = Query(default=False),
    since: Optional[datetime] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _admin: Profile = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    entries = await query_audit_logs(
        db,
        user_id=user_id,
        action_type=action_type,
        action_status=action_status,
        event_id=event_id,
        threats_only=threats_only,
        since=since,
        limit=limit,
        offset=offset,
    )
    return {"logs": [serialize_audit_log(entry) for entry in entries]}


@router.get("/users/{user_id}/activity")
async def user_activity(
    user_id: str,
    _admin: Profile = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_user_activity_summary(db, user_id)
