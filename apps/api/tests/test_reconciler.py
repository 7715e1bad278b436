from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.future import select

from conftest import seed_profile
from models.audit import AuditLog
from models.credit_ledger import CreditTransaction
from models.profile import Profile
from models.webhook_event import WebhookEvent
from services.reconciler import process_stripe_event, reconcile_event


USER_ID = "stripe-user"


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _checkout_completed(event_id="evt_checkout", session_id="cs_test_1", plan_id="pro"):
    return _event(
        "checkout.session.completed",
        {
            "id": session_id,
            "customer": "cus_123",
            "subscription": "sub_123",
            "metadata": {"user_id": USER_ID, "plan_id": plan_id, "billing_interval": "monthly"},
        },
        event_id=event_id,
    )


async def _profile(session_maker):
    async with session_maker() as session:
        return (await session.execute(select(Profile).where(Profile.id == USER_ID))).scalar_one()


async def _audit_codes(session_maker):
    async with session_maker() as session:
        result = await session.execute(select(AuditLog.event_id).order_by(AuditLog.created_at.asc()))
        return [row[0] for row in result.all()]


@pytest.mark.asyncio
async def test_checkout_completed_activates_plan_and_grants_credits(session_maker):
    await seed_profile(session_maker, USER_ID, credits_remaining=2, bonus_credits=3)

    async with session_maker() as session:
        result = await process_stripe_event(_checkout_completed(plan_id="growth"), session)

    assert result.outcome == "applied"
    profile = await _profile(session_maker)
    assert profile.subscription_tier == "growth"
    assert profile.subscription_status == "active"
    assert profile.stripe_subscription_id == "sub_123"
    assert profile.stripe_customer_id == "cus_123"
    assert (profile.credits_remaining, profile.batch_credits, profile.bonus_credits) == (250, 10, 3)
    assert await _audit_codes(session_maker) == ["CRD-1002"]


@pytest.mark.asyncio
async def test_duplicate_checkout_delivery_does_not_regrant(session_maker):
    await seed_profile(session_maker, USER_ID)

    async with session_maker() as session:
        await process_stripe_event(_checkout_completed(event_id="evt_a"), session)

    # User spends some of the grant before Stripe redelivers.
    async with session_maker() as session:
        await session.execute(
            Profile.__table__.update().where(Profile.id == USER_ID).values(credits_remaining=40)
        )
        await session.commit()

    async with session_maker() as session:
        again = await process_stripe_event(_checkout_completed(event_id="evt_b"), session)

    assert again.outcome == "duplicate"
    profile = await _profile(session_maker)
    assert profile.credits_remaining == 40
    assert await _audit_codes(session_maker) == ["CRD-1002"]


@pytest.mark.asyncio
async def test_checkout_missing_metadata_is_skipped(session_maker):
    await seed_profile(session_maker, USER_ID)
    event = _event("checkout.session.completed", {"id": "cs_x", "metadata": {"user_id": USER_ID}})

    async with session_maker() as session:
        result = await reconcile_event(event, session)

    assert result.outcome == "skipped"
    profile = await _profile(session_maker)
    assert profile.subscription_tier == "free"
    assert profile.credits_remaining == 5

    async with session_maker() as session:
        entry = (await session.execute(select(AuditLog))).scalar_one()
    assert (entry.user_id, entry.event_id, entry.action_status) == (USER_ID, "CRD-2006", "warning")
    assert entry.action_type == "subscription_activated"


@pytest.mark.asyncio
async def test_checkout_without_user_is_skipped_with_anonymous_warning(session_maker):
    event = _event(
        "checkout.session.completed",
        {"id": "cs_anon", "metadata": {"plan_id": "pro"}},
        event_id="evt_anon",
    )

    async with session_maker() as session:
        result = await process_stripe_event(event, session)

    assert result.outcome == "skipped"
    async with session_maker() as session:
        entries = (await session.execute(select(AuditLog))).scalars().all()
        dedup_row = (await session.execute(select(WebhookEvent))).scalar_one()
    assert len(entries) == 1
    entry = entries[0]
    assert entry.user_id is None
    assert (entry.event_id, entry.action_status, entry.action_type) == (
        "CRD-2006",
        "warning",
        "subscription_activated",
    )
    assert entry.action_details["event_type"] == "checkout.session.completed"
    assert "user_id" in entry.action_details["reason"]
    assert dedup_row.status == "done"


@pytest.mark.asyncio
async def test_skip_for_unknown_profile_keeps_user_in_details_only(session_maker):
    event = _event(
        "customer.subscription.deleted",
        {"id": "sub_gone", "metadata": {"user_id": "ghost-user"}},
        event_id="evt_ghost",
    )

    async with session_maker() as session:
        result = await reconcile_event(event, session)

    assert result.outcome == "skipped"
    async with session_maker() as session:
        entry = (await session.execute(select(AuditLog))).scalar_one()
    assert entry.user_id is None
    assert entry.action_type == "subscription_canceled"
    assert entry.action_details["user_id"] == "ghost-user"
    assert entry.action_details["reason"] == "no profile for user"


@pytest.mark.asyncio
async def test_subscription_updated_sets_provider_status_and_plan(session_maker):
    await seed_profile(session_maker, USER_ID, subscription_tier="pro")
    event = _event(
        "customer.subscription.updated",
        {"id": "sub_123", "status": "past_due", "metadata": {"user_id": USER_ID, "plan_id": "agency"}},
    )

    async with session_maker() as session:
        result = await reconcile_event(event, session)

    assert result.outcome == "applied"
    profile = await _profile(session_maker)
    assert profile.subscription_status == "past_due"
    assert profile.subscription_tier == "agency"
    assert await _audit_codes(session_maker) == ["CRD-1006"]


@pytest.mark.asyncio
async def test_subscription_updated_falls_back_to_price_lookup(session_maker, stripe_settings):
    await seed_profile(session_maker, USER_ID, subscription_tier="pro")
    event = _event(
        "customer.subscription.updated",
        {
            "id": "sub_123",
            "status": "active",
            "metadata": {"user_id": USER_ID},
            "items": {"data": [{"price": {"id": "price_growth_yearly"}}]},
        },
    )

    async with session_maker() as session:
        await reconcile_event(event, session)

    profile = await _profile(session_maker)
    assert profile.subscription_tier == "growth"


@pytest.mark.asyncio
async def test_subscription_deleted_resets_to_free(session_maker):
    await seed_profile(
        session_maker,
        USER_ID,
        subscription_tier="growth",
        stripe_subscription_id="sub_123",
        credits_remaining=180,
        bonus_credits=4,
        batch_credits=6,
    )
    event = _event("customer.subscription.deleted", {"id": "sub_123", "metadata": {"user_id": USER_ID}})

    async with session_maker() as session:
        await reconcile_event(event, session)

    profile = await _profile(session_maker)
    assert profile.subscription_tier == "free"
    assert profile.subscription_status == "canceled"
    assert profile.stripe_subscription_id is None
    assert (profile.credits_remaining, profile.batch_credits, profile.bonus_credits) == (5, 0, 4)
    assert await _audit_codes(session_maker) == ["CRD-1004"]


@pytest.mark.asyncio
async def test_payment_succeeded_renews_with_capped_rollover(session_maker):
    await seed_profile(session_maker, USER_ID, subscription_tier="pro", credits_remaining=80)
    event = _event(
        "invoice.payment_succeeded",
        {"id": "in_1", "subscription": "sub_123", "billing_reason": "subscription_cycle"},
    )
    subscription = {"id": "sub_123", "metadata": {"user_id": USER_ID, "plan_id": "pro"}}

    with patch("services.stripe_gateway.retrieve_subscription", AsyncMock(return_value=subscription)) as retrieve:
        async with session_maker() as session:
            result = await reconcile_event(event, session)

    retrieve.assert_awaited_once_with("sub_123")
    assert result.details["rollover_credits"] == 50
    assert result.details["forfeited_credits"] == 30
    profile = await _profile(session_maker)
    assert profile.credits_remaining == 150
    assert await _audit_codes(session_maker) == ["CRD-1003"]

    async with session_maker() as session:
        rows = (
            await session.execute(select(CreditTransaction).where(CreditTransaction.user_id == USER_ID))
        ).scalars().all()
    assert [(row.amount, row.balance_after) for row in rows] == [(70, 150)]


@pytest.mark.asyncio
async def test_initial_invoice_does_not_stack_on_checkout_grant(session_maker):
    await seed_profile(session_maker, USER_ID, subscription_tier="pro", credits_remaining=100)
    event = _event(
        "invoice.payment_succeeded",
        {"id": "in_0", "subscription": "sub_123", "billing_reason": "subscription_create"},
    )

    with patch("services.stripe_gateway.retrieve_subscription", AsyncMock()) as retrieve:
        async with session_maker() as session:
            result = await reconcile_event(event, session)

    retrieve.assert_not_awaited()
    assert result.outcome == "ignored"
    assert (await _profile(session_maker)).credits_remaining == 100


@pytest.mark.asyncio
async def test_payment_failed_marks_past_due(session_maker):
    await seed_profile(session_maker, USER_ID, subscription_tier="pro")
    event = _event(
        "invoice.payment_failed",
        {"id": "in_2", "amount_due": 4900, "parent": {"subscription_details": {"subscription": "sub_123"}}},
    )
    subscription = {"id": "sub_123", "metadata": {"user_id": USER_ID, "plan_id": "pro"}}

    with patch("services.stripe_gateway.retrieve_subscription", AsyncMock(return_value=subscription)):
        async with session_maker() as session:
            await reconcile_event(event, session)

    profile = await _profile(session_maker)
    assert profile.subscription_status == "past_due"
    assert profile.subscription_tier == "pro"
    assert await _audit_codes(session_maker) == ["CRD-2004"]


@pytest.mark.asyncio
async def test_unknown_event_is_ignored(session_maker):
    async with session_maker() as session:
        result = await reconcile_event(_event("customer.created", {"id": "cus_1"}), session)
    assert result.outcome == "ignored"


@pytest.mark.asyncio
async def test_failed_processing_can_be_retried(session_maker):
    from services.stripe_gateway import StripeGatewayError

    await seed_profile(session_maker, USER_ID, subscription_tier="pro", credits_remaining=10)
    event = _event(
        "invoice.payment_succeeded",
        {"id": "in_3", "subscription": "sub_123", "billing_reason": "subscription_cycle"},
        event_id="evt_retry",
    )

    with patch("services.stripe_gateway.retrieve_subscription", AsyncMock(side_effect=StripeGatewayError("down"))):
        async with session_maker() as session:
            with pytest.raises(StripeGatewayError):
                await process_stripe_event(event, session)

    async with session_maker() as session:
        row = (await session.execute(select(WebhookEvent))).scalar_one()
    assert row.status == "failed"

    subscription = {"id": "sub_123", "metadata": {"user_id": USER_ID, "plan_id": "pro"}}
    with patch("services.stripe_gateway.retrieve_subscription", AsyncMock(return_value=subscription)):
        async with session_maker() as session:
            result = await process_stripe_event(event, session)

    assert result.outcome == "applied"
    assert (await _profile(session_maker)).credits_remaining == 110
    async with session_maker() as session:
        row = (await session.execute(select(WebhookEvent))).scalar_one()
    assert row.status == "done"
