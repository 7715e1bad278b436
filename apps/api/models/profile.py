"""Profile model: one row per StreamSuite user, holding plan state and balances."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base, utcnow

FREE_SIGNUP_CREDITS = 5


class Profile(Base):
    """User profile with subscription tier and credit balances."""

    __tablename__ = "profiles"
    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_profiles_credits_remaining_non_negative"),
        CheckConstraint("bonus_credits >= 0", name="ck_profiles_bonus_credits_non_negative"),
        CheckConstraint("batch_credits >= 0", name="ck_profiles_batch_credits_non_negative"),
    )

    id = Column(String, primary_key=True)  # auth subject / user id
    email = Column(String, nullable=True, index=True)
    full_name = Column(String, nullable=True)
    subscription_tier = Column(String, nullable=False, default="free")
    subscription_status = Column(String, nullable=False, default="active")  # active, past_due, canceled
    credits_remaining = Column(Integer, nullable=False, default=FREE_SIGNUP_CREDITS)
    bonus_credits = Column(Integer, nullable=False, default=0)
    batch_credits = Column(Integer, nullable=False, default=0)
    use_bonus_first = Column(Boolean, nullable=False, default=False)
    stripe_customer_id = Column(String, nullable=True, index=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    credits_reset_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    # Relationships
    credit_transactions = relationship("CreditTransaction", back_populates="profile")
    batch_credit_transactions = relationship("BatchCreditTransaction", back_populates="profile")
    audit_logs = relationship("AuditLog", back_populates="profile")
