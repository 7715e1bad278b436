"""Stripe checkout and webhook endpoints.

Both endpoints answer errors as ``{"error": ...}`` for the web client and Stripe.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import auth_scheme, resolve_auth_context
from routers.rate_limit import client_address, rate_limit
from services.audit import record_audit_event
from services.checkout import CheckoutValidationError, PriceNotConfiguredError, start_checkout
from services.credits import ensure_profile
from services.reconciler import process_stripe_event
from services.stripe_gateway import StripeGatewayError, WebhookSignatureError, verify_webhook

router = APIRouter()
logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/stripe-checkout")
async def stripe_checkout(
    request: Request,
    _rate_limit: None = Depends(
        rate_limit("stripe_checkout", limit=settings.CHECKOUT_RATE_LIMIT_PER_HOUR, window_seconds=3600)
    ),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    db: AsyncSession = Depends(get_db),
):
    """Create a Stripe Checkout Session for a paid plan; returns ``{sessionId, url}``."""
    try:
        auth = resolve_auth_context(credentials)
    except HTTPException as exc:
        return _error(exc.status_code, "Unauthorized")

    try:
        body = await request.json()
    except ValueError:
        body = None

    profile = await ensure_profile(auth.user_id, db, email=auth.email)
    if not isinstance(body, dict):
        await record_audit_event(
            db,
            profile.id,
            "checkout_initiated",
            "failure",
            event_id="CRD-2005",
            ip_address=client_address(request),
            user_agent=request.headers.get("user-agent"),
            error_code="InvalidJSON",
            error_message="Invalid JSON body",
        )
        return _error(400, "Invalid JSON body")

    try:
        session = await start_checkout(
            profile,
            body.get("planId"),
            body.get("billingInterval"),
            db,
            success_url=body.get("successUrl"),
            cancel_url=body.get("cancelUrl"),
            ip_address=client_address(request),
            user_agent=request.headers.get("user-agent"),
        )
    except CheckoutValidationError as exc:
        return _error(400, str(exc))
    except PriceNotConfiguredError as exc:
        logger.error("Checkout misconfigured: %s", exc)
        return _error(500, "Price is not configured for this plan")
    except StripeGatewayError:
        return _error(500, "Failed to create checkout session")

    return {"sessionId": session.session_id, "url": session.url}


@router.post("/stripe-webhook")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Verify and reconcile a Stripe webhook delivery."""
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
        return _error(500, "Webhook secret not configured")

    payload = await request.body()
    try:
        event = verify_webhook(payload, request.headers.get("stripe-signature"))
    except WebhookSignatureError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        await record_audit_event(
            db,
            None,
            "webhook_signature_invalid",
            "blocked",
            event_id="SEC-3009",
            action_details={"provider": "stripe"},
            ip_address=client_address(request),
            user_agent=request.headers.get("user-agent"),
            threat_type="suspicious",
            threat_severity="high",
            error_message=str(exc),
        )
        return _error(400, f"Webhook Error: {exc}")

    try:
        result = await process_stripe_event(event, db)
    except Exception as exc:
        logger.exception("Stripe webhook %s (%s) failed", event.get("id"), event.get("type"))
        await db.rollback()
        await record_audit_event(
            db,
            None,
            "webhook_processing_failed",
            "failure",
            event_id="CRD-2007",
            action_details={"provider": "stripe", "stripe_event_id": event.get("id"), "event_type": event.get("type")},
            error_code=type(exc).__name__,
            error_message=str(exc),
        )
        return _error(500, "Webhook processing failed")

    logger.info(
        "Stripe webhook %s (%s): %s",
        event.get("id"),
        result.event_type,
        result.outcome,
    )
    return {"received": True}
