"""Processed-once guard for webhook deliveries.

A delivery first claims its ``(provider, dedup_key)`` row. The unique constraint
lets exactly one concurrent claim win. A row left in ``failed`` can be reclaimed
by the provider's retry, and so can a ``processing`` row whose worker stopped
updating it for ``WEBHOOK_PROCESSING_STALE_SECONDS``. Fresh ``processing`` and
``done`` rows mark duplicates.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import utcnow
from models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)

STRIPE_PROVIDER = "stripe"

STATUS_PROCESSING = "processing"
STATUS_DONE = "done"
STATUS_FAILED = "failed"


def get_stripe_dedup_key(event: Dict[str, Any]) -> Optional[str]:
    """Checkout completions dedupe on the session id, everything else on the event id.

    Stripe can emit more than one event for the same completed session, and the
    grant must happen once per session.
    """
    event_type = event.get("type")
    if event_type == "checkout.session.completed":
        session_id = ((event.get("data") or {}).get("object") or {}).get("id")
        if session_id:
            return f"session:{session_id}"
    event_id = event.get("id")
    if event_id:
        return f"event:{event_id}"
    return None


async def try_acquire(
    db: AsyncSession,
    provider: str,
    dedup_key: str,
    event_type: Optional[str] = None,
) -> bool:
    """Claim processing rights. False means a duplicate that must have no side effects."""
    now = utcnow()
    db.add(
        WebhookEvent(
            provider=provider,
            dedup_key=dedup_key,
            event_type=event_type,
            status=STATUS_PROCESSING,
            first_seen_at=now,
            last_seen_at=now,
        )
    )
    try:
        await db.commit()
        logger.debug("Webhook dedup acquired", extra={"provider": provider, "dedup_key": dedup_key})
        return True
    except IntegrityError:
        await db.rollback()

    stale_before = now - timedelta(seconds=max(int(settings.WEBHOOK_PROCESSING_STALE_SECONDS), 1))
    result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.provider == provider,
            WebhookEvent.dedup_key == dedup_key,
            or_(
                WebhookEvent.status == STATUS_FAILED,
                and_(
                    WebhookEvent.status == STATUS_PROCESSING,
                    WebhookEvent.last_seen_at < stale_before,
                ),
            ),
        )
        .values(status=STATUS_PROCESSING, last_seen_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 1:
        logger.info("Webhook %s reclaimed from a failed or stale claim", dedup_key, extra={"provider": provider})
        return True

    logger.info("Duplicate webhook %s ignored", dedup_key, extra={"provider": provider})
    return False


async def _set_status(db: AsyncSession, provider: str, dedup_key: str, status: str) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.provider == provider, WebhookEvent.dedup_key == dedup_key)
        .values(status=status, last_seen_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def mark_done(db: AsyncSession, provider: str, dedup_key: str) -> None:
    await _set_status(db, provider, dedup_key, STATUS_DONE)


async def mark_failed(db: AsyncSession, provider: str, dedup_key: str) -> None:
    await _set_status(db, provider, dedup_key, STATUS_FAILED)
