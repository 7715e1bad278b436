"""Audit log writer and query helpers."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.audit import AuditLog
from services.event_codes import generate_event_id, get_event_code

logger = logging.getLogger(__name__)

ACTION_STATUSES = ("success", "failure", "blocked", "warning")

ACTION_TYPES = (
    "workflow_generation",
    "workflow_conversion",
    "workflow_debug",
    "batch_generation",
    "file_upload",
    "workflow_download",
    "workflow_save",
    "workflow_delete",
    "n8n_push",
    "n8n_connection_test",
    "credit_purchase",
    "credit_deduction",
    "credit_adjustment",
    "checkout_initiated",
    "subscription_activated",
    "credits_renewed",
    "subscription_updated",
    "subscription_canceled",
    "payment_failed",
    "webhook_signature_invalid",
    "webhook_skipped",
    "webhook_processing_failed",
    "login",
    "logout",
    "settings_change",
    "api_call",
    "page_view",
)


async def record_audit_event(
    db: AsyncSession,
    user_id: Optional[str],
    action_type: str,
    action_status: str,
    *,
    event_id: Optional[str] = None,
    action_details: Optional[Dict[str, Any]] = None,
    credits_used: int = 0,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    threat_type: Optional[str] = None,
    threat_severity: Optional[str] = None,
    threat_details: Optional[str] = None,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> Optional[AuditLog]:
    """Append an audit entry and commit it.

    Audit writes are best effort: a failed insert is rolled back and logged,
    and the caller's outcome stands.
    """
    if action_type not in ACTION_TYPES:
        raise ValueError(f"Unknown action type: {action_type}")
    if action_status not in ACTION_STATUSES:
        raise ValueError(f"Unknown action status: {action_status}")

    resolved_event_id = event_id or generate_event_id(action_type, action_status, threat_type)
    if get_event_code(resolved_event_id) is None:
        logger.debug("Audit event id %s is not in the event code catalog", resolved_event_id)

    entry = AuditLog(
        user_id=user_id,
        event_id=resolved_event_id,
        action_type=action_type,
        action_status=action_status,
        action_details=action_details or {},
        credits_used=max(int(credits_used or 0), 0),
        ip_address=ip_address,
        user_agent=user_agent,
        threat_detected=bool(threat_type and threat_type != "none"),
        threat_type=threat_type,
        threat_severity=threat_severity,
        threat_details=threat_details,
        error_code=error_code,
        error_message=error_message,
    )
    try:
        db.add(entry)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Failed to write audit entry",
            extra={"user_id": user_id, "action_type": action_type, "event_id": resolved_event_id},
        )
        return None

    logger.info(
        "Audit %s %s (%s) user=%s",
        action_type,
        action_status,
        resolved_event_id,
        user_id or "-",
    )
    return entry


async def query_audit_logs(
    db: AsyncSession,
    *,
    user_id: Optional[str] = None,
    action_type: Optional[str] = None,
    action_status: Optional[str] = None,
    event_id: Optional[str] = None,
    threats_only: bool = False,
    since: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[AuditLog]:
    query = select(AuditLog)
    if user_id:
        query = query.where(AuditLog.user_id == user_id)
    if action_type:
        query = query.where(AuditLog.action_type == action_type)
    if action_status:
        query = query.where(AuditLog.action_status == action_status)
    if event_id:
        query = query.where(AuditLog.event_id == event_id)
    if threats_only:
        query = query.where(AuditLog.threat_detected.is_(True))
    if since is not None:
        query = query.where(AuditLog.created_at >= since)

    safe_limit = max(1, min(int(limit), 500))
    safe_offset = max(int(offset), 0)
    result = await db.execute(
        query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(safe_offset).limit(safe_limit)
    )
    return list(result.scalars().all())


async def get_user_activity_summary(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    result = await db.execute(
        select(
            func.count(AuditLog.id),
            func.coalesce(func.sum(AuditLog.credits_used), 0),
            func.count(func.distinct(AuditLog.ip_address)),
            func.min(AuditLog.created_at),
            func.max(AuditLog.created_at),
        ).where(AuditLog.user_id == user_id)
    )
    total, credits_used, unique_ips, first_seen, last_seen = result.one()

    status_rows = await db.execute(
        select(AuditLog.action_status, func.count(AuditLog.id))
        .where(AuditLog.user_id == user_id)
        .group_by(AuditLog.action_status)
    )
    by_status = {status: int(count) for status, count in status_rows.all()}

    threats = await db.execute(
        select(func.count(AuditLog.id)).where(
            AuditLog.user_id == user_id,
            AuditLog.threat_detected.is_(True),
        )
    )

    return {
        "user_id": user_id,
        "total_actions": int(total or 0),
        "successful_actions": by_status.get("success", 0),
        "failed_actions": by_status.get("failure", 0),
        "blocked_actions": by_status.get("blocked", 0),
        "warning_actions": by_status.get("warning", 0),
        "threats_detected": int(threats.scalar() or 0),
        "total_credits_used": int(credits_used or 0),
        "unique_ips": int(unique_ips or 0),
        "first_seen": first_seen.isoformat() if first_seen else None,
        "last_seen": last_seen.isoformat() if last_seen else None,
    }


def serialize_audit_log(entry: AuditLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "event_id": entry.event_id,
        "action_type": entry.action_type,
        "action_status": entry.action_status,
        "action_details": entry.action_details or {},
        "credits_used": entry.credits_used,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "threat_detected": bool(entry.threat_detected),
        "threat_type": entry.threat_type,
        "threat_severity": entry.threat_severity,
        "error_code": entry.error_code,
        "error_message": entry.error_message,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
