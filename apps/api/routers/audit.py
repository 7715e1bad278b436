"""
Audit router: event code catalog and the caller's own audit trail.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from services.audit import get_user_activity_summary, query_audit_logs, serialize_audit_log
from services.event_codes import (
    EVENT_CODES,
    format_event_code,
    get_event_code,
    get_event_codes_by_category,
    get_event_codes_by_severity,
    search_event_codes,
)

router = APIRouter()


@router.get("/event-codes")
async def list_event_codes(
    category: Optional[str] = Query(default=None),
    severity: Optional[str] = Query(default=None),
    q: Optional[str] = Query(default=None, max_length=100),
    _auth: AuthContext = Depends(get_auth_context),
):
    """List event codes, optionally narrowed by category, severity or keyword."""
    codes = list(EVENT_CODES.values())
    if category:
        codes = get_event_codes_by_category(category)
    if severity:
        allowed = {code.code for code in get_event_codes_by_severity(severity)}
        codes = [code for code in codes if code.code in allowed]
    if q:
        matches = {code.code for code in search_event_codes(q)}
        codes = [code for code in codes if code.code in matches]
    return {"event_codes": [code.to_dict() for code in codes]}


@router.get("/event-codes/{code}")
async def event_code_detail(code: str, _auth: AuthContext = Depends(get_auth_context)):
    event = get_event_code(code.upper())
    if event is None:
        raise HTTPException(status_code=404, detail="Event code not found")
    return {**event.to_dict(), "display": format_event_code(event.code)}


@router.get("/logs")
async def my_audit_logs(
    user_id: Optional[str] = Query(default=None),
    action_type: Optional[str] = Query(default=None),
    action_status: Optional[str] = Query(default=None),
    event_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    entries = await query_audit_logs(
        db,
        user_id=scoped_user_id,
        action_type=action_type,
        action_status=action_status,
        event_id=event_id,
        limit=limit,
        offset=offset,
    )
    return {"logs": [serialize_audit_log(entry) for entry in entries]}


@router.get("/summary")
async def my_activity_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return await get_user_activity_summary(db, scoped_user_id)
