"""Thin async wrapper over the Stripe SDK.

The SDK is synchronous, so calls run in a worker thread. Every SDK error is
re-raised as ``StripeGatewayError`` so callers handle one failure type.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import stripe

from config import require_stripe_secret_key, settings

logger = logging.getLogger(__name__)


class StripeGatewayError(Exception):
    """Stripe rejected a call or could not be reached."""


class WebhookSignatureError(ValueError):
    """Payload failed Stripe signature verification."""


def _configure() -> None:
    stripe.api_key = require_stripe_secret_key()


async def _call(label: str, func, **kwargs) -> Any:
    try:
        _configure()
    except ValueError as exc:
        raise StripeGatewayError(str(exc)) from exc
    try:
        return await asyncio.to_thread(func, **kwargs)
    except stripe.StripeError as exc:
        logger.error("Stripe %s failed: %s", label, exc.user_message or exc)
        raise StripeGatewayError(f"Stripe {label} failed") from exc


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return json.loads(json.dumps(obj, default=str))
    return dict(obj)


async def create_customer(email: Optional[str], user_id: str) -> str:
    """Create a Stripe customer tagged with our user id; returns the customer id."""
    customer = await _call(
        "customer create",
        stripe.Customer.create,
        email=email,
        metadata={"user_id": user_id},
    )
    logger.info("Created Stripe customer %s for user %s", customer["id"], user_id)
    return customer["id"]


async def create_checkout_session(
    *,
    customer_id: str,
    price_id: str,
    success_url: str,
    cancel_url: str,
    metadata: Dict[str, str],
    subscription_metadata: Dict[str, str],
) -> Dict[str, Any]:
    session = await _call(
        "checkout session create",
        stripe.checkout.Session.create,
        customer=customer_id,
        mode="subscription",
        payment_method_types=["card"],
        line_items=[{"price": price_id, "quantity": 1}],
        success_url=success_url,
        cancel_url=cancel_url,
        metadata=metadata,
        subscription_data={"metadata": subscription_metadata},
        allow_promotion_codes=True,
    )
    return {"id": session["id"], "url": session.get("url")}


async def retrieve_subscription(subscription_id: str) -> Dict[str, Any]:
    subscription = await _call("subscription retrieve", stripe.Subscription.retrieve, id=subscription_id)
    return _as_dict(subscription)


def verify_webhook(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Verify a webhook delivery against STRIPE_WEBHOOK_SECRET and return the event as a dict.

    Raises ``WebhookSignatureError`` for a missing/invalid signature or payload.
    The caller checks that the secret is configured.
    """
    if not signature:
        raise WebhookSignatureError("Missing stripe-signature header")
    try:
        stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as exc:
        raise WebhookSignatureError("Invalid payload") from exc
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError("Invalid signature") from exc

    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise WebhookSignatureError("Invalid payload") from exc
    if not isinstance(event, dict):
        raise WebhookSignatureError("Invalid payload")
    return event
