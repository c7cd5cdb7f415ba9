"""EventLog model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Index, event
from datetime import datetime, timezone
from app.models.base import Base


class EventLog(Base):
    """Audit trail of lifecycle transitions and policy decisions
    
    Rows are write-once. Updates and deletes through the ORM are refused.
    """
    __tablename__ = "event_logs"
    
    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, ForeignKey("applications.id", ondelete="RESTRICT"), nullable=True, index=True)
    stripe_session_id = Column(String(255), nullable=True, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    payload = Column(Text, nullable=False)  # JSON string, truncated at MAX_PAYLOAD_SIZE
    actor = Column(String(255), nullable=False)  # e-mail or "system", "ops", "stripe", "admin"
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    
    __table_args__ = (
        Index('ix_event_logs_application_created', 'application_id', 'created_at'),
    )


@event.listens_for(EventLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise RuntimeError(f"Event log {target.id} is append-only and cannot be updated")


@event.listens_for(EventLog, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise RuntimeError(f"Event log {target.id} is append-only and cannot be deleted")
