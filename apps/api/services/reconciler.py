"""Apply verified Stripe webhook events to profiles and credit balances."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from models.profile import Profile
from services import stripe_gateway, webhook_dedup
from services.audit import record_audit_event
from services.credits import get_profile, renew_subscription_credits, set_subscription_credits
from services.plans import (
    PAID_TIERS,
    Tier,
    monthly_batch_credits,
    monthly_credits,
    plan_for_stripe_price,
)

logger = logging.getLogger(__name__)

APPLIED = "applied"
SKIPPED = "skipped"
IGNORED = "ignored"
DUPLICATE = "duplicate"

_PAID_PLAN_IDS = frozenset(tier.value for tier in PAID_TIERS)

_EVENT_ACTION_TYPES = {
    "checkout.session.completed": "subscription_activated",
    "customer.subscription.updated": "subscription_updated",
    "customer.subscription.deleted": "subscription_canceled",
    "invoice.payment_succeeded": "credits_renewed",
    "invoice.payment_failed": "payment_failed",
}


@dataclass
class ReconcileResult:
    event_type: str
    outcome: str
    user_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _object(event: Dict[str, Any]) -> Dict[str, Any]:
    return (event.get("data") or {}).get("object") or {}


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if not subscription:
        # Newer API versions nest the subscription under the invoice parent.
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    return subscription if isinstance(subscription, str) and subscription else None


def _subscription_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    items = ((subscription.get("items") or {}).get("data")) or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id") if isinstance(price, dict) else price


async def _skip(
    db: AsyncSession,
    event_type: str,
    reason: str,
    user_id: Optional[str] = None,
) -> ReconcileResult:
    logger.warning("Skipping %s: %s", event_type, reason, extra={"user_id": user_id})
    # audit_logs.user_id references profiles, so unknown users are kept in the details only.
    audited_user_id = user_id if user_id and await get_profile(user_id, db) is not None else None
    await record_audit_event(
        db,
        audited_user_id,
        _EVENT_ACTION_TYPES.get(event_type, "webhook_skipped"),
        "warning",
        event_id="CRD-2006",
        action_details={"event_type": event_type, "reason": reason, "user_id": user_id},
    )
    return ReconcileResult(event_type=event_type, outcome=SKIPPED, user_id=user_id, details={"reason": reason})


async def _update_profile(db: AsyncSession, user_id: str, **values: Any) -> bool:
    result = await db.execute(
        update(Profile)
        .where(Profile.id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _handle_checkout_completed(event: Dict[str, Any], db: AsyncSession) -> ReconcileResult:
    event_type = event["type"]
    session = _object(event)
    metadata = _metadata(session)
    user_id = metadata.get("user_id")
    plan_id = metadata.get("plan_id")

    if not user_id or not plan_id:
        return await _skip(db, event_type, "missing user_id or plan_id in checkout session metadata", user_id)
    if plan_id not in _PAID_PLAN_IDS:
        return await _skip(db, event_type, f"unknown plan_id {plan_id!r}", user_id)
    if await get_profile(user_id, db) is None:
        return await _skip(db, event_type, "no profile for user", user_id)

    regular = monthly_credits(plan_id)
    batch = monthly_batch_credits(plan_id)
    profile_fields: Dict[str, Any] = {
        "subscription_tier": plan_id,
        "subscription_status": "active",
        "stripe_subscription_id": session.get("subscription"),
    }
    if session.get("customer"):
        profile_fields["stripe_customer_id"] = session["customer"]

    await set_subscription_credits(
        user_id,
        db,
        regular=regular,
        batch=batch,
        metadata={"reason": "checkout_completed", "session_id": session.get("id"), "plan_id": plan_id},
        profile_fields=profile_fields,
    )
    details = {
        "plan_id": plan_id,
        "subscription_id": session.get("subscription"),
        "session_id": session.get("id"),
        "credits_allocated": regular,
        "batch_credits_allocated": batch,
    }
    await record_audit_event(
        db, user_id, "subscription_activated", "success", event_id="CRD-1002", action_details=details
    )
    logger.info("Subscription activated for user %s: %s", user_id, plan_id)
    return ReconcileResult(event_type=event_type, outcome=APPLIED, user_id=user_id, details=details)


async def _handle_subscription_updated(event: Dict[str, Any], db: AsyncSession) -> ReconcileResult:
    event_type = event["type"]
    subscription = _object(event)
    metadata = _metadata(subscription)
    user_id = metadata.get("user_id")
    if not user_id:
        return await _skip(db, event_type, "missing user_id in subscription metadata")

    status = subscription.get("status")
    values: Dict[str, Any] = {}
    if status:
        values["subscription_status"] = status

    plan_id = metadata.get("plan_id")
    if plan_id not in _PAID_PLAN_IDS:
        plan = plan_for_stripe_price(_subscription_price_id(subscription))
        plan_id = plan.id.value if plan else None
    if plan_id:
        values["subscription_tier"] = plan_id

    if not values:
        return await _skip(db, event_type, "no status or plan on subscription", user_id)
    if not await _update_profile(db, user_id, **values):
        return await _skip(db, event_type, "no profile for user", user_id)

    details = {"subscription_id": subscription.get("id"), "status": status, "plan_id": plan_id}
    await record_audit_event(
        db, user_id, "subscription_updated", "success", event_id="CRD-1006", action_details=details
    )
    logger.info("Subscription updated for user %s: %s", user_id, status)
    return ReconcileResult(event_type=event_type, outcome=APPLIED, user_id=user_id, details=details)


async def _handle_subscription_deleted(event: Dict[str, Any], db: AsyncSession) -> ReconcileResult:
    event_type = event["type"]
    subscription = _object(event)
    user_id = _metadata(subscription).get("user_id")
    if not user_id:
        return await _skip(db, event_type, "missing user_id in subscription metadata")
    if await get_profile(user_id, db) is None:
        return await _skip(db, event_type, "no profile for user", user_id)

    await set_subscription_credits(
        user_id,
        db,
        regular=monthly_credits(Tier.FREE),
        batch=0,
        metadata={"reason": "subscription_canceled", "subscription_id": subscription.get("id")},
        profile_fields={
            "subscription_tier": Tier.FREE.value,
            "subscription_status": "canceled",
            "stripe_subscription_id": None,
        },
    )
    details = {"subscription_id": subscription.get("id"), "downgraded_to": Tier.FREE.value}
    await record_audit_event(
        db, user_id, "subscription_canceled", "success", event_id="CRD-1004", action_details=details
    )
    logger.info("Subscription canceled for user %s", user_id)
    return ReconcileResult(event_type=event_type, outcome=APPLIED, user_id=user_id, details=details)


async def _handle_payment_succeeded(event: Dict[str, Any], db: AsyncSession) -> ReconcileResult:
    event_type = event["type"]
    invoice = _object(event)
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return ReconcileResult(event_type=event_type, outcome=IGNORED, details={"reason": "invoice has no subscription"})
    if invoice.get("billing_reason") == "subscription_create":
        # The checkout grant already funded the first cycle.
        return ReconcileResult(
            event_type=event_type,
            outcome=IGNORED,
            details={"reason": "initial invoice", "subscription_id": subscription_id},
        )

    subscription = await stripe_gateway.retrieve_subscription(subscription_id)
    metadata = _metadata(subscription)
    user_id = metadata.get("user_id")
    plan_id = metadata.get("plan_id")
    if not user_id or not plan_id:
        return await _skip(db, event_type, "missing user_id or plan_id in subscription metadata", user_id)
    if plan_id not in _PAID_PLAN_IDS:
        return await _skip(db, event_type, f"unknown plan_id {plan_id!r}", user_id)
    if await get_profile(user_id, db) is None:
        return await _skip(db, event_type, "no profile for user", user_id)

    renewal = await renew_subscription_credits(
        user_id,
        plan_id,
        db,
        metadata={"invoice_id": invoice.get("id"), "subscription_id": subscription_id},
    )
    details = {
        "plan_id": plan_id,
        "invoice_id": invoice.get("id"),
        "base_credits": monthly_credits(plan_id),
        "rollover_credits": renewal.rollover,
        "forfeited_credits": renewal.forfeited,
        "total_credits": renewal.new_balance,
        "batch_credits": renewal.batch_credits,
    }
    await record_audit_event(db, user_id, "credits_renewed", "success", event_id="CRD-1003", action_details=details)
    return ReconcileResult(event_type=event_type, outcome=APPLIED, user_id=user_id, details=details)


async def _handle_payment_failed(event: Dict[str, Any], db: AsyncSession) -> ReconcileResult:
    event_type = event["type"]
    invoice = _object(event)
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return ReconcileResult(event_type=event_type, outcome=IGNORED, details={"reason": "invoice has no subscription"})

    subscription = await stripe_gateway.retrieve_subscription(subscription_id)
    user_id = _metadata(subscription).get("user_id")
    if not user_id:
        return await _skip(db, event_type, "missing user_id in subscription metadata")
    if not await _update_profile(db, user_id, subscription_status="past_due"):
        return await _skip(db, event_type, "no profile for user", user_id)

    details = {"invoice_id": invoice.get("id"), "amount_due": invoice.get("amount_due")}
    await record_audit_event(db, user_id, "payment_failed", "failure", event_id="CRD-2004", action_details=details)
    logger.warning("Payment failed for user %s", user_id)
    return ReconcileResult(event_type=event_type, outcome=APPLIED, user_id=user_id, details=details)


_HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.updated": _handle_subscription_updated,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_succeeded": _handle_payment_succeeded,
    "invoice.payment_failed": _handle_payment_failed,
}


async def reconcile_event(event: Dict[str, Any], db: AsyncSession) -> ReconcileResult:
    """Apply one verified Stripe event. Unknown types are logged and ignored."""
    event_type = str(event.get("type") or "")
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled Stripe event type: %s", event_type or "<missing>")
        return ReconcileResult(event_type=event_type, outcome=IGNORED)
    logger.info("Processing Stripe event %s (%s)", event.get("id"), event_type)
    return await handler(event, db)


async def process_stripe_event(event: Dict[str, Any], db: AsyncSession) -> ReconcileResult:
    """Reconcile an event at most once per dedup key.

    Failures mark the key failed and re-raise so Stripe's retry can reclaim it.
    """
    event_type = str(event.get("type") or "")
    dedup_key = webhook_dedup.get_stripe_dedup_key(event)
    if dedup_key is None:
        return await reconcile_event(event, db)

    acquired = await webhook_dedup.try_acquire(db, webhook_dedup.STRIPE_PROVIDER, dedup_key, event_type)
    if not acquired:
        return ReconcileResult(event_type=event_type, outcome=DUPLICATE, details={"dedup_key": dedup_key})

    try:
        result = await reconcile_event(event, db)
    except Exception:
        await db.rollback()
        await webhook_dedup.mark_failed(db, webhook_dedup.STRIPE_PROVIDER, dedup_key)
        raise
    await webhook_dedup.mark_done(db, webhook_dedup.STRIPE_PROVIDER, dedup_key)
    return result
