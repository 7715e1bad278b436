"""CreditTransaction model: append-only log for the regular and bonus pools."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base, utcnow


class CreditTransaction(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # negative for deductions
    balance_after = Column(Integer, nullable=False)
    operation_type = Column(String, nullable=False)  # generation, subscription_grant, admin_adjustment, rollover
    workflow_count = Column(Integer, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    credit_type = Column(String, nullable=False, default="regular")  # regular, bonus
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)

    profile = relationship("Profile", back_populates="credit_transactions")
