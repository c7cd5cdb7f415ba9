"""OpsAuthorization model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class OpsAuthorization(Base):
    """Ops decision on an early-departure request (append-only)"""
    __tablename__ = "ops_authorizations"
    
    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(Integer, ForeignKey("applications.id", ondelete="RESTRICT"), nullable=False, index=True)
    approver_email = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, index=True)  # 'approved', 'denied'
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    
    # Relationship
    application = relationship("Application", back_populates="ops_authorizations")
