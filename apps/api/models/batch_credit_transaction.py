"""BatchCreditTransaction model for the batch-generation credit pool."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base, utcnow


class BatchCreditTransaction(Base):
    """Immutable batch credit ledger entry."""

    __tablename__ = "batch_credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    operation_type = Column(String, nullable=False)
    workflow_count = Column(Integer, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)

    profile = relationship("Profile", back_populates="batch_credit_transactions")
