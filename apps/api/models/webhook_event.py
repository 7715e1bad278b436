"""WebhookEvent model: processed-once guard for provider webhook deliveries."""

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base, utcnow


class WebhookEvent(Base):
    """One row per (provider, dedup_key); status moves processing -> done | failed."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "dedup_key", name="uq_webhook_events_provider_dedup_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String, nullable=False)
    dedup_key = Column(String, nullable=False)
    event_type = Column(String, nullable=True)
    status = Column(String, nullable=False, default="processing")
    first_seen_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    last_seen_at = Column(DateTime(timezone=True), nullable=True)
