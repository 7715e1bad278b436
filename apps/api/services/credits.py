"""Credit ledger: regular, bonus and batch pools with append-only transaction logs."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import utcnow
from models.batch_credit_transaction import BatchCreditTransaction
from models.credit_ledger import CreditTransaction
from models.profile import FREE_SIGNUP_CREDITS, Profile
from services.plans import (
    get_plan,
    is_paid_tier,
    monthly_batch_credits,
    recommended_top_up_pack,
    renewal_credits,
)

logger = logging.getLogger(__name__)

OPERATION_TYPES = ("generation", "subscription_grant", "admin_adjustment", "rollover")
CREDIT_TYPES = ("regular", "bonus")

LOW_CREDITS_THRESHOLD = 5
TOP_UP_PROMPT_THRESHOLD = 10


class InsufficientCreditsError(Exception):
    pool = "credits"

    def __init__(self, required: int, available: int):
        self.required = int(required)
        self.available = int(available)
        super().__init__(f"Insufficient {self.pool}. Required: {self.required}, available: {self.available}.")


class InsufficientBatchCreditsError(InsufficientCreditsError):
    pool = "batch credits"


class LedgerConflictError(Exception):
    """Balance kept changing underneath a compare-and-swap update."""

    def __init__(self, user_id: str, attempts: int):
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(f"Credit balance for {user_id} changed concurrently {attempts} times; giving up")


class ProfileNotFoundError(LookupError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"No profile for user {user_id}")


@dataclass
class CreditBalance:
    regular: int
    bonus: int
    total: int
    tier: str
    use_bonus_first: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RenewalResult:
    user_id: str
    tier: str
    previous_balance: int
    rollover: int
    forfeited: int
    new_balance: int
    batch_credits: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _Snapshot:
    regular: int
    bonus: int
    batch: int
    tier: str
    use_bonus_first: bool

    @property
    def total(self) -> int:
        return self.regular + self.bonus


def _max_attempts() -> int:
    return max(int(settings.CREDIT_LEDGER_MAX_RETRIES), 1)


def _positive(amount: int) -> int:
    value = int(amount)
    if value <= 0:
        raise ValueError("amount must be greater than 0")
    return value


async def _read_snapshot(user_id: str, db: AsyncSession) -> Optional[_Snapshot]:
    result = await db.execute(
        select(
            Profile.credits_remaining,
            Profile.bonus_credits,
            Profile.batch_credits,
            Profile.subscription_tier,
            Profile.use_bonus_first,
        ).where(Profile.id == user_id)
    )
    row = result.one_or_none()
    if row is None:
        return None
    return _Snapshot(
        regular=int(row[0] or 0),
        bonus=int(row[1] or 0),
        batch=int(row[2] or 0),
        tier=row[3] or "free",
        use_bonus_first=bool(row[4]),
    )


def _split_deduction(amount: int, snapshot: _Snapshot) -> Tuple[int, int]:
    """Return (from_regular, from_bonus); the preferred pool drains first."""
    if snapshot.use_bonus_first:
        from_bonus = min(snapshot.bonus, amount)
        return amount - from_bonus, from_bonus
    from_regular = min(snapshot.regular, amount)
    return from_regular, amount - from_regular


def _balance(snapshot: _Snapshot, regular: int, bonus: int) -> CreditBalance:
    return CreditBalance(
        regular=regular,
        bonus=bonus,
        total=regular + bonus,
        tier=snapshot.tier,
        use_bonus_first=snapshot.use_bonus_first,
    )


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise


async def ensure_profile(
    user_id: str,
    db: AsyncSession,
    email: Optional[str] = None,
    full_name: Optional[str] = None,
) -> Profile:
    """Return the user's profile, creating it with the free signup grant on first use."""
    result = await db.execute(
        select(Profile).where(Profile.id == user_id).execution_options(populate_existing=True)
    )
    profile = result.scalar_one_or_none()
    if profile is not None:
        return profile

    profile = Profile(
        id=user_id,
        email=email,
        full_name=full_name,
        subscription_tier="free",
        subscription_status="active",
        credits_remaining=FREE_SIGNUP_CREDITS,
        bonus_credits=0,
        batch_credits=0,
    )
    db.add(profile)
    db.add(
        CreditTransaction(
            user_id=user_id,
            amount=FREE_SIGNUP_CREDITS,
            balance_after=FREE_SIGNUP_CREDITS,
            operation_type="subscription_grant",
            metadata_json={"reason": "signup"},
            credit_type="regular",
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # Another request created the profile first.
        await db.rollback()
        result = await db.execute(
            select(Profile).where(Profile.id == user_id).execution_options(populate_existing=True)
        )
        return result.scalar_one()

    logger.info("Created profile for user %s with %d free credits", user_id, FREE_SIGNUP_CREDITS)
    return profile


async def get_profile(user_id: str, db: AsyncSession) -> Optional[Profile]:
    result = await db.execute(
        select(Profile).where(Profile.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_balance(user_id: str, db: AsyncSession) -> int:
    snapshot = await _read_snapshot(user_id, db)
    return snapshot.total if snapshot else 0


async def get_credit_balance(user_id: str, db: AsyncSession) -> CreditBalance:
    snapshot = await _read_snapshot(user_id, db)
    if snapshot is None:
        return CreditBalance(regular=0, bonus=0, total=0, tier="free", use_bonus_first=False)
    return _balance(snapshot, snapshot.regular, snapshot.bonus)


async def deduct_credits(
    user_id: str,
    db: AsyncSession,
    amount: int,
    workflow_count: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> CreditBalance:
    """Spend credits from the regular and bonus pools.

    The update is a compare-and-swap on both balances; a lost race rolls back and
    re-reads. Nothing is written when the combined balance is short.
    """
    cost = _positive(amount)
    attempts = _max_attempts()

    for attempt in range(1, attempts + 1):
        snapshot = await _read_snapshot(user_id, db)
        if snapshot is None or snapshot.total < cost:
            await db.rollback()
            raise InsufficientCreditsError(required=cost, available=snapshot.total if snapshot else 0)

        from_regular, from_bonus = _split_deduction(cost, snapshot)
        new_regular = snapshot.regular - from_regular
        new_bonus = snapshot.bonus - from_bonus

        result = await db.execute(
            update(Profile)
            .where(
                Profile.id == user_id,
                Profile.credits_remaining == snapshot.regular,
                Profile.bonus_credits == snapshot.bonus,
            )
            .values(credits_remaining=new_regular, bonus_credits=new_bonus)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            logger.info("Credit balance for %s moved during deduction (attempt %d/%d)", user_id, attempt, attempts)
            continue

        for pool, taken, balance_after in (
            ("regular", from_regular, new_regular),
            ("bonus", from_bonus, new_bonus),
        ):
            if taken <= 0:
                continue
            db.add(
                CreditTransaction(
                    user_id=user_id,
                    amount=-taken,
                    balance_after=balance_after,
                    operation_type="generation",
                    workflow_count=workflow_count,
                    metadata_json=metadata,
                    credit_type=pool,
                )
            )
        await _commit(db)
        logger.info(
            "Deducted %d credits from %s (regular=%d bonus=%d)",
            cost,
            user_id,
            new_regular,
            new_bonus,
            extra={"user_id": user_id, "workflow_count": workflow_count},
        )
        return _balance(snapshot, new_regular, new_bonus)

    raise LedgerConflictError(user_id, attempts)


async def add_credits(
    user_id: str,
    db: AsyncSession,
    amount: int,
    operation_type: str,
    metadata: Optional[Dict[str, Any]] = None,
    credit_type: str = "regular",
) -> int:
    """Atomically increment a pool and log it. Returns the pool's new balance."""
    grant = _positive(amount)
    if operation_type not in OPERATION_TYPES:
        raise ValueError(f"Unknown operation type: {operation_type}")
    if credit_type not in CREDIT_TYPES:
        raise ValueError(f"Unknown credit type: {credit_type}")

    column = Profile.bonus_credits if credit_type == "bonus" else Profile.credits_remaining
    result = await db.execute(
        update(Profile)
        .where(Profile.id == user_id)
        .values({column: column + grant})
        .returning(column)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        await db.rollback()
        raise ProfileNotFoundError(user_id)

    db.add(
        CreditTransaction(
            user_id=user_id,
            amount=grant,
            balance_after=int(new_balance),
            operation_type=operation_type,
            metadata_json=metadata,
            credit_type=credit_type,
        )
    )
    await _commit(db)
    logger.info("Added %d %s credits to %s (%s)", grant, credit_type, user_id, operation_type)
    return int(new_balance)


async def set_subscription_credits(
    user_id: str,
    db: AsyncSession,
    *,
    regular: int,
    batch: int,
    operation_type: str = "subscription_grant",
    metadata: Optional[Dict[str, Any]] = None,
    profile_fields: Optional[Dict[str, Any]] = None,
) -> CreditBalance:
    """Set the regular and batch pools to absolute values.

    ``profile_fields`` (tier, status, Stripe references) land in the same UPDATE.
    Each pool that moves gets a delta row; bonus credits are never touched.
    """
    target_regular = max(int(regular), 0)
    target_batch = max(int(batch), 0)
    attempts = _max_attempts()

    for attempt in range(1, attempts + 1):
        snapshot = await _read_snapshot(user_id, db)
        if snapshot is None:
            await db.rollback()
            raise ProfileNotFoundError(user_id)

        values: Dict[str, Any] = dict(profile_fields or {})
        values.update(
            credits_remaining=target_regular,
            batch_credits=target_batch,
            credits_reset_at=utcnow(),
        )
        result = await db.execute(
            update(Profile)
            .where(
                Profile.id == user_id,
                Profile.credits_remaining == snapshot.regular,
                Profile.batch_credits == snapshot.batch,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            logger.info("Balances for %s moved during subscription set (attempt %d/%d)", user_id, attempt, attempts)
            continue

        _log_pool_deltas(
            user_id,
            db,
            regular_delta=target_regular - snapshot.regular,
            regular_after=target_regular,
            batch_delta=target_batch - snapshot.batch,
            batch_after=target_batch,
            operation_type=operation_type,
            metadata=metadata,
        )
        await _commit(db)
        tier = values.get("subscription_tier", snapshot.tier)
        return CreditBalance(
            regular=target_regular,
            bonus=snapshot.bonus,
            total=target_regular + snapshot.bonus,
            tier=tier,
            use_bonus_first=snapshot.use_bonus_first,
        )

    raise LedgerConflictError(user_id, attempts)


async def renew_subscription_credits(
    user_id: str,
    tier: str,
    db: AsyncSession,
    metadata: Optional[Dict[str, Any]] = None,
) -> RenewalResult:
    """Start a new billing cycle.

    Regular credits become the monthly allotment plus a rollover capped at half of
    it; batch credits reset to the plan's allotment with no rollover.
    """
    plan = get_plan(tier)
    target_batch = monthly_batch_credits(plan.id)
    attempts = _max_attempts()

    for attempt in range(1, attempts + 1):
        snapshot = await _read_snapshot(user_id, db)
        if snapshot is None:
            await db.rollback()
            raise ProfileNotFoundError(user_id)

        new_balance, rollover = renewal_credits(plan.id, snapshot.regular)
        result = await db.execute(
            update(Profile)
            .where(
                Profile.id == user_id,
                Profile.credits_remaining == snapshot.regular,
                Profile.batch_credits == snapshot.batch,
            )
            .values(
                credits_remaining=new_balance,
                batch_credits=target_batch,
                subscription_tier=plan.id.value,
                credits_reset_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            logger.info("Balances for %s moved during renewal (attempt %d/%d)", user_id, attempt, attempts)
            continue

        renewal = RenewalResult(
            user_id=user_id,
            tier=plan.id.value,
            previous_balance=snapshot.regular,
            rollover=rollover,
            forfeited=snapshot.regular - rollover,
            new_balance=new_balance,
            batch_credits=target_batch,
        )
        entry_metadata = dict(metadata or {})
        entry_metadata.update(reason="renewal", rollover=rollover, forfeited=renewal.forfeited)
        _log_pool_deltas(
            user_id,
            db,
            regular_delta=new_balance - snapshot.regular,
            regular_after=new_balance,
            batch_delta=target_batch - snapshot.batch,
            batch_after=target_batch,
            operation_type="subscription_grant",
            metadata=entry_metadata,
        )
        await _commit(db)
        logger.info(
            "Renewed %s on %s: %d -> %d (rollover %d, forfeited %d)",
            user_id,
            plan.id.value,
            snapshot.regular,
            new_balance,
            rollover,
            renewal.forfeited,
        )
        return renewal

    raise LedgerConflictError(user_id, attempts)


def _log_pool_deltas(
    user_id: str,
    db: AsyncSession,
    *,
    regular_delta: int,
    regular_after: int,
    batch_delta: int,
    batch_after: int,
    operation_type: str,
    metadata: Optional[Dict[str, Any]],
) -> None:
    if regular_delta:
        db.add(
            CreditTransaction(
                user_id=user_id,
                amount=regular_delta,
                balance_after=regular_after,
                operation_type=operation_type,
                metadata_json=metadata,
                credit_type="regular",
            )
        )
    if batch_delta:
        db.add(
            BatchCreditTransaction(
                user_id=user_id,
                amount=batch_delta,
                balance_after=batch_after,
                operation_type=operation_type,
                metadata_json=metadata,
            )
        )


async def get_batch_balance(user_id: str, db: AsyncSession) -> int:
    snapshot = await _read_snapshot(user_id, db)
    return snapshot.batch if snapshot else 0


async def deduct_batch_credits(
    user_id: str,
    db: AsyncSession,
    amount: int,
    workflow_count: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> int:
    """Conditionally decrement the batch pool in one statement. Returns the new balance."""
    cost = _positive(amount)
    result = await db.execute(
        update(Profile)
        .where(Profile.id == user_id, Profile.batch_credits >= cost)
        .values(batch_credits=Profile.batch_credits - cost)
        .returning(Profile.batch_credits)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        await db.rollback()
        raise InsufficientBatchCreditsError(required=cost, available=await get_batch_balance(user_id, db))

    db.add(
        BatchCreditTransaction(
            user_id=user_id,
            amount=-cost,
            balance_after=int(new_balance),
            operation_type="generation",
            workflow_count=workflow_count,
            metadata_json=metadata,
        )
    )
    await _commit(db)
    logger.info("Deducted %d batch credits from %s (remaining %d)", cost, user_id, new_balance)
    return int(new_balance)


async def add_batch_credits(
    user_id: str,
    db: AsyncSession,
    amount: int,
    operation_type: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> int:
    grant = _positive(amount)
    if operation_type not in OPERATION_TYPES:
        raise ValueError(f"Unknown operation type: {operation_type}")

    result = await db.execute(
        update(Profile)
        .where(Profile.id == user_id)
        .values(batch_credits=Profile.batch_credits + grant)
        .returning(Profile.batch_credits)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        await db.rollback()
        raise ProfileNotFoundError(user_id)

    db.add(
        BatchCreditTransaction(
            user_id=user_id,
            amount=grant,
            balance_after=int(new_balance),
            operation_type=operation_type,
            metadata_json=metadata,
        )
    )
    await _commit(db)
    return int(new_balance)


async def set_bonus_preference(user_id: str, db: AsyncSession, use_bonus_first: bool) -> CreditBalance:
    result = await db.execute(
        update(Profile)
        .where(Profile.id == user_id)
        .values(use_bonus_first=bool(use_bonus_first))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise ProfileNotFoundError(user_id)
    await _commit(db)
    return await get_credit_balance(user_id, db)


async def list_credit_transactions(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
    credit_type: Optional[str] = None,
) -> List[CreditTransaction]:
    query = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
    if credit_type:
        query = query.where(CreditTransaction.credit_type == credit_type)
    result = await db.execute(
        query.order_by(CreditTransaction.created_at.desc())
        .offset(max(int(offset), 0))
        .limit(max(1, min(int(limit), 200)))
    )
    return list(result.scalars().all())


async def list_batch_credit_transactions(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
) -> List[BatchCreditTransaction]:
    result = await db.execute(
        select(BatchCreditTransaction)
        .where(BatchCreditTransaction.user_id == user_id)
        .order_by(BatchCreditTransaction.created_at.desc())
        .offset(max(int(offset), 0))
        .limit(max(1, min(int(limit), 200)))
    )
    return list(result.scalars().all())


def serialize_transaction(entry: Any) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "operation_type": entry.operation_type,
        "workflow_count": entry.workflow_count,
        "credit_type": getattr(entry, "credit_type", "batch"),
        "metadata": entry.metadata_json or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def is_low_on_credits(balance: CreditBalance) -> bool:
    return balance.regular < LOW_CREDITS_THRESHOLD


def low_credits_warning(balance: CreditBalance) -> Optional[str]:
    """User-facing nudge keyed on the combined balance; None when nothing to say."""
    remaining = balance.total
    if remaining <= 0:
        return "You're out of credits! Purchase more to continue using StreamSuite."
    if remaining < 3:
        noun = "credit" if remaining == 1 else "credits"
        return f"You only have {remaining} {noun} remaining. Consider purchasing more."
    if remaining < LOW_CREDITS_THRESHOLD:
        return f"You have {remaining} credits remaining."
    return None


def should_show_top_up(balance: CreditBalance) -> bool:
    # Free users are pointed at an upgrade instead of a top-up.
    return is_paid_tier(balance.tier) and balance.regular < TOP_UP_PROMPT_THRESHOLD


def credit_alerts(balance: CreditBalance) -> Dict[str, Any]:
    show_top_up = should_show_top_up(balance)
    return {
        "low_on_credits": is_low_on_credits(balance),
        "warning": low_credits_warning(balance),
        "show_top_up": show_top_up,
        "recommended_top_up": recommended_top_up_pack(balance.tier).to_dict() if show_top_up else None,
    }


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_credit_balance(user_id, db)
    batch_balance = await get_batch_balance(user_id, db)
    plan = get_plan(balance.tier)
    entries = await list_credit_transactions(user_id, db, limit=30)
    return {
        "balance": balance.to_dict(),
        "alerts": credit_alerts(balance),
        "batch_balance": batch_balance,
        "plan": {
            "id": plan.id.value,
            "display_name": plan.display_name,
            "monthly_credits": plan.monthly_credits,
            "max_rollover": plan.max_rollover,
            "monthly_batch_credits": plan.monthly_batch_credits,
            "max_workflows_per_batch": plan.max_workflows_per_batch,
        },
        "recent_entries": [serialize_transaction(entry) for entry in entries],
    }
