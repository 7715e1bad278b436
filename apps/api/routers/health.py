"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
import redis.asyncio as redis

from config import settings
from database import engine
from models.webhook_event import WebhookEvent
from services.webhook_dedup import STATUS_FAILED

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database, Redis and Stripe configuration status, plus webhook
    deliveries left in the failed state awaiting a provider retry.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "stripe": "configured" if settings.STRIPE_SECRET_KEY else "missing",
        "stripe_webhook_secret": "configured" if settings.STRIPE_WEBHOOK_SECRET else "missing",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            failed = await conn.execute(
                select(func.count(WebhookEvent.id)).where(WebhookEvent.status == STATUS_FAILED)
            )
        health_status["database"] = "up"
        health_status["failed_webhooks"] = int(failed.scalar() or 0)
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only backs rate limiting; an outage falls back to local counters.
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not settings.STRIPE_SECRET_KEY:
        missing.append("STRIPE_SECRET_KEY")
    if not settings.STRIPE_WEBHOOK_SECRET:
        missing.append("STRIPE_WEBHOOK_SECRET")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
