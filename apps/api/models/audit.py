"""AuditLog model for security and billing triage."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base, utcnow


class AuditLog(Base):
    """Append-only record of a user or system action."""

    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("profiles.id"), nullable=True, index=True)
    event_id = Column(String, nullable=False, index=True)  # e.g. CRD-1000
    action_type = Column(String, nullable=False, index=True)
    action_status = Column(String, nullable=False)  # success, failure, blocked, warning
    action_details = Column(JSON, nullable=True)
    credits_used = Column(Integer, nullable=False, default=0)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    threat_detected = Column(Boolean, nullable=False, default=False)
    threat_type = Column(String, nullable=True)
    threat_severity = Column(String, nullable=True)
    threat_details = Column(Text, nullable=True)
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)

    # Relationships
    profile = relationship("Profile", back_populates="audit_logs")
