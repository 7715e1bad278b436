"""Billing, plans and credits router."""

from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.profile import Profile
from routers.auth_scope import ensure_user_scope, get_current_profile, require_feature
from routers.rate_limit import rate_limit
from services.audit import record_audit_event
from services.credits import (
    InsufficientCreditsError,
    LedgerConflictError,
    deduct_batch_credits,
    deduct_credits,
    get_batch_balance,
    get_credit_summary,
    list_batch_credit_transactions,
    list_credit_transactions,
    serialize_transaction,
    set_bonus_preference,
)
from services.plans import CREDIT_COSTS, Feature, get_plan, plan_catalog, top_up_catalog

router = APIRouter()
logger = logging.getLogger(__name__)


class DeductCreditsRequest(BaseModel):
    user_id: Optional[str] = None
    amount: int = Field(default=CREDIT_COSTS["workflow_generation"], ge=1, le=10000)
    workflow_count: Optional[int] = Field(default=None, ge=1)
    metadata: Optional[Dict[str, Any]] = None


class DeductBatchCreditsRequest(BaseModel):
    user_id: Optional[str] = None
    amount: int = Field(default=1, ge=1, le=1000)
    workflow_count: int = Field(ge=1)
    metadata: Optional[Dict[str, Any]] = None


class CreditPreferencesRequest(BaseModel):
    user_id: Optional[str] = None
    use_bonus_first: bool


def insufficient_credits_response(exc: InsufficientCreditsError) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={"detail": str(exc), "required": exc.required, "available": exc.available},
    )


@router.get("/plans")
async def list_plans():
    return {"plans": plan_catalog()}


@router.get("/top-ups")
async def list_top_ups():
    return {"packs": top_up_catalog(), "credit_costs": dict(CREDIT_COSTS)}


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    profile: Profile = Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(profile.id, user_id)
    return await get_credit_summary(scoped_user_id, db)


@router.get("/credits/transactions")
async def credit_transactions(
    user_id: Optional[str] = Query(default=None),
    credit_type: Optional[Literal["regular", "bonus"]] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    profile: Profile = Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(profile.id, user_id)
    entries = await list_credit_transactions(
        scoped_user_id, db, limit=limit, offset=offset, credit_type=credit_type
    )
    return {"transactions": [serialize_transaction(entry) for entry in entries]}


@router.post("/credits/deduct")
async def deduct(
    request: DeductCreditsRequest,
    _rate_limit: None = Depends(rate_limit("credits_deduct", limit=120, window_seconds=60)),
    profile: Profile = Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(profile.id, request.user_id)
    try:
        balance = await deduct_credits(
            scoped_user_id,
            db,
            request.amount,
            workflow_count=request.workflow_count,
            metadata=request.metadata,
        )
    except InsufficientCreditsError as exc:
        await record_audit_event(
            db,
            scoped_user_id,
            "credit_deduction",
            "warning",
            event_id="CRD-2001",
            action_details={"required": exc.required, "available": exc.available},
        )
        return insufficient_credits_response(exc)
    except LedgerConflictError as exc:
        logger.warning("Credit deduction gave up for %s: %s", scoped_user_id, exc)
        raise HTTPException(status_code=409, detail="Credit balance is changing too quickly. Retry the request.")

    await record_audit_event(
        db,
        scoped_user_id,
        "credit_deduction",
        "success",
        event_id="CRD-1000",
        credits_used=request.amount,
        action_details={"workflow_count": request.workflow_count, "balance_after": balance.total},
    )
    return {"charged": request.amount, "balance": balance.to_dict()}


@router.get("/batch-credits")
async def batch_credits(
    user_id: Optional[str] = Query(default=None),
    profile: Profile = Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(profile.id, user_id)
    plan = get_plan(profile.subscription_tier)
    entries = await list_batch_credit_transactions(scoped_user_id, db, limit=30)
    return {
        "batch_credits": await get_batch_balance(scoped_user_id, db),
        "monthly_batch_credits": plan.monthly_batch_credits,
        "max_workflows_per_batch": plan.max_workflows_per_batch,
        "recent_entries": [serialize_transaction(entry) for entry in entries],
    }


@router.post("/batch-credits/deduct")
async def deduct_batch(
    request: DeductBatchCreditsRequest,
    profile: Profile = Depends(require_feature(Feature.BATCH_OPERATIONS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(profile.id, request.user_id)
    plan = get_plan(profile.subscription_tier)
    if request.workflow_count > plan.max_workflows_per_batch:
        raise HTTPException(
            status_code=400,
            detail=f"{plan.display_name} allows at most {plan.max_workflows_per_batch} workflows per set.",
        )

    try:
        remaining = await deduct_batch_credits(
            scoped_user_id,
            db,
            request.amount,
            workflow_count=request.workflow_count,
            metadata=request.metadata,
        )
    except InsufficientCreditsError as exc:
        await record_audit_event(
            db,
            scoped_user_id,
            "batch_generation",
            "warning",
            event_id="CRD-2001",
            action_details={"pool": "batch", "required": exc.required, "available": exc.available},
        )
        return insufficient_credits_response(exc)

    await record_audit_event(
        db,
        scoped_user_id,
        "batch_generation",
        "success",
        event_id="CRD-1000",
        credits_used=request.amount,
        action_details={"pool": "batch", "workflow_count": request.workflow_count, "balance_after": remaining},
    )
    return {"charged": request.amount, "batch_credits": remaining}


@router.put("/preferences")
async def update_preferences(
    request: CreditPreferencesRequest,
    profile: Profile = Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(profile.id, request.user_id)
    balance = await set_bonus_preference(scoped_user_id, db, request.use_bonus_first)
    await record_audit_event(
        db,
        scoped_user_id,
        "settings_change",
        "success",
        event_id="USR-1002",
        action_details={"use_bonus_first": request.use_bonus_first},
    )
    return {"balance": balance.to_dict()}
