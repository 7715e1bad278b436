import asyncio

import pytest
from sqlalchemy.future import select

from conftest import seed_profile
from models.batch_credit_transaction import BatchCreditTransaction
from models.credit_ledger import CreditTransaction
from models.profile import Profile
from services import credits as credits_service
from services.credits import (
    CreditBalance,
    InsufficientBatchCreditsError,
    InsufficientCreditsError,
    LedgerConflictError,
    ProfileNotFoundError,
    add_batch_credits,
    add_credits,
    credit_alerts,
    deduct_batch_credits,
    deduct_credits,
    ensure_profile,
    get_balance,
    get_batch_balance,
    get_credit_balance,
    is_low_on_credits,
    low_credits_warning,
    renew_subscription_credits,
    set_bonus_preference,
    set_subscription_credits,
    should_show_top_up,
)


async def _transactions(session_maker, user_id):
    async with session_maker() as session:
        result = await session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.asc())
        )
        return list(result.scalars().all())


async def _profile(session_maker, user_id):
    async with session_maker() as session:
        result = await session.execute(select(Profile).where(Profile.id == user_id))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_ensure_profile_grants_free_credits_once(session_maker):
    async with session_maker() as session:
        profile = await ensure_profile("new-user", session, email="new@example.com")
        again = await ensure_profile("new-user", session)

    assert profile.credits_remaining == 5
    assert profile.subscription_tier == "free"
    assert again.id == "new-user"

    entries = await _transactions(session_maker, "new-user")
    assert len(entries) == 1
    assert entries[0].amount == 5
    assert entries[0].balance_after == 5
    assert entries[0].operation_type == "subscription_grant"


@pytest.mark.asyncio
async def test_unknown_user_balances_are_zero(session_maker):
    async with session_maker() as session:
        assert await get_balance("ghost", session) == 0
        assert await get_batch_balance("ghost", session) == 0
        balance = await get_credit_balance("ghost", session)
    assert balance.total == 0
    assert balance.tier == "free"


@pytest.mark.asyncio
async def test_deduct_regular_first_writes_matching_transaction(session_maker):
    await seed_profile(session_maker, "u1", credits_remaining=10, bonus_credits=4)

    async with session_maker() as session:
        balance = await deduct_credits("u1", session, 3, workflow_count=1, metadata={"prompt": "x"})

    assert (balance.regular, balance.bonus, balance.total) == (7, 4, 11)
    profile = await _profile(session_maker, "u1")
    assert profile.credits_remaining == 7
    entries = await _transactions(session_maker, "u1")
    assert len(entries) == 1
    assert entries[0].amount == -3
    assert entries[0].balance_after == 7
    assert entries[0].credit_type == "regular"
    assert entries[0].operation_type == "generation"
    assert entries[0].workflow_count == 1
    assert entries[0].metadata_json == {"prompt": "x"}


@pytest.mark.asyncio
async def test_deduct_bonus_first_respects_preference(session_maker):
    await seed_profile(session_maker, "u2", credits_remaining=10, bonus_credits=4, use_bonus_first=True)

    async with session_maker() as session:
        balance = await deduct_credits("u2", session, 3)

    assert (balance.regular, balance.bonus) == (10, 1)
    entries = await _transactions(session_maker, "u2")
    assert [(e.credit_type, e.amount, e.balance_after) for e in entries] == [("bonus", -3, 1)]


@pytest.mark.asyncio
async def test_deduct_spills_into_second_pool(session_maker):
    await seed_profile(session_maker, "u3", credits_remaining=2, bonus_credits=5)

    async with session_maker() as session:
        balance = await deduct_credits("u3", session, 4)

    assert (balance.regular, balance.bonus) == (0, 3)
    entries = await _transactions(session_maker, "u3")
    assert sorted((e.credit_type, e.amount, e.balance_after) for e in entries) == [
        ("bonus", -2, 3),
        ("regular", -2, 0),
    ]


@pytest.mark.asyncio
async def test_deduct_more_than_total_writes_nothing(session_maker):
    await seed_profile(session_maker, "u4", credits_remaining=2, bonus_credits=1)

    async with session_maker() as session:
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await deduct_credits("u4", session, 4)

    assert exc_info.value.required == 4
    assert exc_info.value.available == 3
    profile = await _profile(session_maker, "u4")
    assert (profile.credits_remaining, profile.bonus_credits) == (2, 1)
    assert await _transactions(session_maker, "u4") == []


@pytest.mark.asyncio
async def test_deduct_rejects_non_positive_amount(session_maker):
    await seed_profile(session_maker, "u5")
    async with session_maker() as session:
        with pytest.raises(ValueError):
            await deduct_credits("u5", session, 0)


@pytest.mark.asyncio
async def test_deduct_retries_after_concurrent_change(session_maker, monkeypatch):
    await seed_profile(session_maker, "u6", credits_remaining=10)
    original_read = credits_service._read_snapshot
    calls = {"count": 0}

    async def racing_read(user_id, db):
        snapshot = await original_read(user_id, db)
        calls["count"] += 1
        if calls["count"] == 1:
            # Another request spends 4 credits between our read and our write.
            async with session_maker() as other:
                await deduct_credits(user_id, other, 4)
        return snapshot

    monkeypatch.setattr(credits_service, "_read_snapshot", racing_read)

    async with session_maker() as session:
        balance = await deduct_credits("u6", session, 3)

    assert balance.regular == 3
    assert calls["count"] == 2
    profile = await _profile(session_maker, "u6")
    assert profile.credits_remaining == 3
    entries = await _transactions(session_maker, "u6")
    assert [(e.amount, e.balance_after) for e in entries] == [(-4, 6), (-3, 3)]


@pytest.mark.asyncio
async def test_deduct_gives_up_after_max_retries(session_maker, monkeypatch):
    await seed_profile(session_maker, "u7", credits_remaining=10)
    monkeypatch.setattr(credits_service.settings, "CREDIT_LEDGER_MAX_RETRIES", 2)

    async def stale_read(user_id, db):
        return credits_service._Snapshot(regular=99, bonus=0, batch=0, tier="free", use_bonus_first=False)

    monkeypatch.setattr(credits_service, "_read_snapshot", stale_read)

    async with session_maker() as session:
        with pytest.raises(LedgerConflictError):
            await deduct_credits("u7", session, 1)

    profile = await _profile(session_maker, "u7")
    assert profile.credits_remaining == 10


@pytest.mark.asyncio
async def test_parallel_deductions_never_overdraw(session_maker):
    await seed_profile(session_maker, "u7c", credits_remaining=20)
    callers = 4
    cost = 20 // callers + 1

    async def spend():
        async with session_maker() as session:
            return await deduct_credits("u7c", session, cost)

    outcomes = await asyncio.gather(*(spend() for _ in range(callers)), return_exceptions=True)

    successes = [outcome for outcome in outcomes if not isinstance(outcome, Exception)]
    failures = [outcome for outcome in outcomes if isinstance(outcome, Exception)]
    assert 1 <= len(successes) <= callers - 1
    assert all(isinstance(failure, InsufficientCreditsError) for failure in failures)

    profile = await _profile(session_maker, "u7c")
    assert profile.credits_remaining == 20 - cost * len(successes)
    assert profile.credits_remaining >= 0
    entries = await _transactions(session_maker, "u7c")
    assert len(entries) == len(successes)
    assert sorted(e.balance_after for e in entries) == sorted(b.regular for b in successes)


@pytest.mark.asyncio
async def test_mixed_ledger_sequence_matches_running_balance(session_maker):
    await seed_profile(session_maker, "u7s", credits_remaining=10)
    steps = [-3, 5, -4, 2, -6, 1]

    async with session_maker() as session:
        for step in steps:
            if step < 0:
                await deduct_credits("u7s", session, -step)
            else:
                await add_credits("u7s", session, step, "admin_adjustment")

    profile = await _profile(session_maker, "u7s")
    entries = await _transactions(session_maker, "u7s")
    assert [e.amount for e in entries] == steps
    assert profile.credits_remaining == 10 + sum(steps)
    assert profile.credits_remaining == 10 + sum(e.amount for e in entries)
    assert entries[-1].balance_after == profile.credits_remaining

    running = 10
    for entry in entries:
        running += entry.amount
        assert entry.balance_after == running


@pytest.mark.asyncio
async def test_add_credits_increments_pool_and_logs(session_maker):
    await seed_profile(session_maker, "u8", credits_remaining=3, bonus_credits=1)

    async with session_maker() as session:
        regular_after = await add_credits("u8", session, 5, "admin_adjustment", metadata={"reason": "goodwill"})
        bonus_after = await add_credits("u8", session, 2, "admin_adjustment", credit_type="bonus")

    assert (regular_after, bonus_after) == (8, 3)
    entries = await _transactions(session_maker, "u8")
    assert [(e.credit_type, e.amount, e.balance_after) for e in entries] == [("regular", 5, 8), ("bonus", 2, 3)]


@pytest.mark.asyncio
async def test_add_credits_validation(session_maker):
    await seed_profile(session_maker, "u9")
    async with session_maker() as session:
        with pytest.raises(ValueError):
            await add_credits("u9", session, -1, "admin_adjustment")
        with pytest.raises(ValueError):
            await add_credits("u9", session, 1, "lottery")
        with pytest.raises(ProfileNotFoundError):
            await add_credits("ghost", session, 1, "admin_adjustment")


@pytest.mark.asyncio
async def test_set_subscription_credits_writes_deltas_and_keeps_bonus(session_maker):
    await seed_profile(session_maker, "u10", credits_remaining=5, bonus_credits=7)

    async with session_maker() as session:
        balance = await set_subscription_credits(
            "u10",
            session,
            regular=250,
            batch=10,
            metadata={"reason": "checkout_completed"},
            profile_fields={"subscription_tier": "growth", "subscription_status": "active"},
        )

    assert (balance.regular, balance.bonus, balance.tier) == (250, 7, "growth")
    profile = await _profile(session_maker, "u10")
    assert (profile.credits_remaining, profile.batch_credits, profile.bonus_credits) == (250, 10, 7)
    assert profile.subscription_tier == "growth"
    assert profile.credits_reset_at is not None

    entries = await _transactions(session_maker, "u10")
    assert [(e.amount, e.balance_after) for e in entries] == [(245, 250)]
    async with session_maker() as session:
        batch_entries = (await session.execute(select(BatchCreditTransaction))).scalars().all()
    assert [(e.amount, e.balance_after) for e in batch_entries] == [(10, 10)]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "tier,balance,expected",
    [
        ("pro", 0, 100),
        ("pro", 30, 130),
        ("pro", 80, 150),
        ("growth", 500, 375),
    ],
)
async def test_renewal_applies_capped_rollover(session_maker, tier, balance, expected):
    await seed_profile(session_maker, "renew", subscription_tier=tier, credits_remaining=balance, batch_credits=3)

    async with session_maker() as session:
        renewal = await renew_subscription_credits("renew", tier, session)

    assert renewal.new_balance == expected
    assert renewal.rollover + renewal.forfeited == balance
    profile = await _profile(session_maker, "renew")
    assert profile.credits_remaining == expected
    assert profile.batch_credits == (10 if tier == "growth" else 0)


@pytest.mark.asyncio
async def test_batch_pool_deduct_and_add(session_maker):
    await seed_profile(session_maker, "b1", subscription_tier="growth", batch_credits=2)

    async with session_maker() as session:
        assert await deduct_batch_credits("b1", session, 1, workflow_count=5) == 1
        with pytest.raises(InsufficientBatchCreditsError) as exc_info:
            await deduct_batch_credits("b1", session, 2)
        assert exc_info.value.available == 1
        assert await add_batch_credits("b1", session, 4, "admin_adjustment") == 5
        assert await get_batch_balance("b1", session) == 5

    async with session_maker() as session:
        entries = (
            await session.execute(
                select(BatchCreditTransaction).order_by(BatchCreditTransaction.created_at.asc())
            )
        ).scalars().all()
    assert [(e.amount, e.balance_after, e.operation_type) for e in entries] == [
        (-1, 1, "generation"),
        (4, 5, "admin_adjustment"),
    ]


@pytest.mark.asyncio
async def test_bonus_preference_toggle(session_maker):
    await seed_profile(session_maker, "p1", bonus_credits=2)
    async with session_maker() as session:
        balance = await set_bonus_preference("p1", session, True)
    assert balance.use_bonus_first is True
    async with session_maker() as session:
        with pytest.raises(ProfileNotFoundError):
            await set_bonus_preference("ghost", session, True)


def _snapshot_balance(regular, bonus=0, tier="pro"):
    return CreditBalance(regular=regular, bonus=bonus, total=regular + bonus, tier=tier, use_bonus_first=False)


@pytest.mark.parametrize(
    "regular,bonus,expected",
    [
        (0, 0, "You're out of credits! Purchase more to continue using StreamSuite."),
        (1, 0, "You only have 1 credit remaining. Consider purchasing more."),
        (1, 1, "You only have 2 credits remaining. Consider purchasing more."),
        (4, 0, "You have 4 credits remaining."),
        (3, 2, None),
    ],
)
def test_low_credits_warning_thresholds(regular, bonus, expected):
    assert low_credits_warning(_snapshot_balance(regular, bonus)) == expected


def test_low_balance_and_top_up_prompt_use_regular_pool():
    assert is_low_on_credits(_snapshot_balance(4, bonus=20)) is True
    assert is_low_on_credits(_snapshot_balance(5)) is False
    assert should_show_top_up(_snapshot_balance(9)) is True
    assert should_show_top_up(_snapshot_balance(10)) is False
    assert should_show_top_up(_snapshot_balance(0, tier="free")) is False


def test_credit_alerts_recommend_pack_only_with_prompt():
    agency = credit_alerts(_snapshot_balance(3, tier="agency"))
    assert agency["show_top_up"] is True
    assert agency["recommended_top_up"]["id"] == "bulk"
    assert agency["warning"] == "You have 3 credits remaining."

    free = credit_alerts(_snapshot_balance(0, tier="free"))
    assert free["show_top_up"] is False
    assert free["recommended_top_up"] is None
    assert free["low_on_credits"] is True
