"""Application model"""
from enum import Enum
from sqlalchemy import Column, Integer, String, Text, Date, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class ApplicationStatus(str, Enum):
    """Reservation lifecycle states
    
    - draft: placeholder, submissions skip straight to one of the next two
    - needs_ops_review: early departure requested, awaiting an ops decision
    - pending_payment: eligible to pay (a checkout session may be attached)
    - payment_processing: checkout in flight (not persisted by the current flow)
    - confirmed: paid, spot reserved (terminal)
    - rejected: early departure denied by ops (terminal)
    """
    DRAFT = "draft"
    NEEDS_OPS_REVIEW = "needs_ops_review"
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_PROCESSING = "payment_processing"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class Application(Base):
    """Member reservation application (one per user)"""
    __tablename__ = "applications"
    
    id = Column(Integer, primary_key=True, index=True)
    # unique=True is the store-level guard for the one-application-per-user rule
    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, unique=True, index=True)
    email = Column(String(255), nullable=False, index=True)  # Normalized lowercase
    
    # Profile
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=False)  # E.164
    dietary_preference = Column(String(20), nullable=False)
    allergy_flag = Column(Boolean, default=False, nullable=False)
    allergy_notes = Column(Text, nullable=True)
    
    # Stay
    arrival = Column(Date, nullable=False, index=True)
    arrival_time = Column(String(40), nullable=False)
    departure = Column(Date, nullable=False, index=True)
    departure_time = Column(String(40), nullable=False)
    
    # Lifecycle
    status = Column(String(50), default=ApplicationStatus.DRAFT.value, nullable=False, index=True)
    payment_allowed = Column(Boolean, default=False, nullable=False)
    early_departure_requested = Column(Boolean, default=False, nullable=False)
    early_departure_reason = Column(Text, nullable=True)
    checkout_session_id = Column(String(255), nullable=True, unique=True, index=True)  # Stripe checkout session
    stripe_payment_intent_id = Column(String(255), nullable=True)  # Set once payment is confirmed
    amount_paid_cents = Column(Integer, nullable=True)
    
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    
    # Relationships
    user = relationship("User", back_populates="application")
    ops_authorizations = relationship("OpsAuthorization", back_populates="application", order_by="OpsAuthorization.created_at")
    
    __table_args__ = (
        Index('ix_applications_status_created', 'status', 'created_at'),
    )
