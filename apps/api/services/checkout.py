"""Subscription checkout initiation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.profile import Profile
from services import stripe_gateway
from services.audit import record_audit_event
from services.plans import BILLING_INTERVALS, PAID_TIERS, stripe_price_id

logger = logging.getLogger(__name__)

VALID_PLAN_IDS = tuple(tier.value for tier in PAID_TIERS)


class CheckoutValidationError(ValueError):
    """Plan or billing interval is not purchasable."""


class PriceNotConfiguredError(RuntimeError):
    """No Stripe price id is configured for a purchasable plan and interval."""


@dataclass
class CheckoutSession:
    session_id: str
    url: Optional[str]


def default_success_url() -> str:
    return f"{settings.APP_URL.rstrip('/')}/settings?success=true&session_id={{CHECKOUT_SESSION_ID}}"


def default_cancel_url() -> str:
    return f"{settings.APP_URL.rstrip('/')}/settings?canceled=true"


def validate_checkout_request(plan_id: Optional[str], billing_interval: Optional[str]) -> None:
    if not plan_id or not billing_interval:
        raise CheckoutValidationError("Missing required fields: planId, billingInterval")
    if plan_id not in VALID_PLAN_IDS:
        raise CheckoutValidationError(f"Invalid plan ID. Must be one of: {', '.join(VALID_PLAN_IDS)}")
    if billing_interval not in BILLING_INTERVALS:
        raise CheckoutValidationError("Invalid billing interval. Must be: monthly or yearly")


async def _resolve_customer(profile: Profile, db: AsyncSession) -> str:
    if profile.stripe_customer_id:
        return profile.stripe_customer_id

    customer_id = await stripe_gateway.create_customer(profile.email, profile.id)
    profile.stripe_customer_id = customer_id
    await db.commit()
    return customer_id


async def start_checkout(
    profile: Profile,
    plan_id: Optional[str],
    billing_interval: Optional[str],
    db: AsyncSession,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> CheckoutSession:
    """Create a subscription-mode Checkout Session for ``profile``.

    Raises CheckoutValidationError for a bad plan/interval, PriceNotConfiguredError
    or StripeGatewayError otherwise. Every attempt is audited with its outcome.
    """
    details = {"plan_id": plan_id, "billing_interval": billing_interval}

    try:
        validate_checkout_request(plan_id, billing_interval)
        price_id = stripe_price_id(plan_id, billing_interval)
        if not price_id:
            raise PriceNotConfiguredError(f"Stripe price is not configured for {plan_id} ({billing_interval})")

        customer_id = await _resolve_customer(profile, db)
        session = await stripe_gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=success_url or default_success_url(),
            cancel_url=cancel_url or default_cancel_url(),
            metadata={
                "user_id": profile.id,
                "plan_id": plan_id,
                "billing_interval": billing_interval,
            },
            subscription_metadata={"user_id": profile.id, "plan_id": plan_id},
        )
    except (CheckoutValidationError, PriceNotConfiguredError, stripe_gateway.StripeGatewayError) as exc:
        if isinstance(exc, CheckoutValidationError):
            logger.info("Rejected checkout for %s: %s", profile.id, exc)
        else:
            logger.error("Checkout failed for %s: %s", profile.id, exc)
        await record_audit_event(
            db,
            profile.id,
            "checkout_initiated",
            "failure",
            event_id="CRD-2005",
            action_details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            error_code=type(exc).__name__,
            error_message=str(exc),
        )
        raise

    details["session_id"] = session["id"]
    await record_audit_event(
        db,
        profile.id,
        "checkout_initiated",
        "success",
        event_id="CRD-1005",
        action_details=details,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    logger.info("Checkout session %s created for %s (%s/%s)", session["id"], profile.id, plan_id, billing_interval)
    return CheckoutSession(session_id=session["id"], url=session.get("url"))
