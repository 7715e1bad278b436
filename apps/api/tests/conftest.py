import hashlib
import hmac
import json
import time

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base
from main import app
from models.profile import Profile
from routers import rate_limit
from services.session_token import create_session_token


TEST_WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def stripe_settings(monkeypatch):
    """Configure Stripe keys and price ids for the duration of a test."""
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    for plan_id in ("starter", "pro", "growth", "agency"):
        for interval in ("monthly", "yearly"):
            monkeypatch.setattr(
                settings,
                f"STRIPE_PRICE_{plan_id.upper()}_{interval.upper()}",
                f"price_{plan_id}_{interval}",
            )
    return settings


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "billing.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker

    await engine.dispose()


async def seed_profile(session_maker, user_id, **fields):
    values = {
        "email": f"{user_id}@example.com",
        "subscription_tier": "free",
        "subscription_status": "active",
        "credits_remaining": 5,
        "bonus_credits": 0,
        "batch_credits": 0,
    }
    values.update(fields)
    async with session_maker() as session:
        session.add(Profile(id=user_id, **values))
        await session.commit()


def auth_header(user_id, email=None):
    token = create_session_token(user_id, email or f"{user_id}@example.com")["token"]
    return {"Authorization": f"Bearer {token}"}


def sign_stripe_payload(payload, secret=TEST_WEBHOOK_SECRET, timestamp=None):
    """Build a ``stripe-signature`` header the way Stripe signs deliveries."""
    if isinstance(payload, dict):
        payload = json.dumps(payload)
    ts = int(timestamp or time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return payload, f"t={ts},v1={signature}"
