"""AllowlistEntry model"""
from sqlalchemy import Column, Integer, String, Text, DateTime
from datetime import datetime, timezone
from app.models.base import Base


class AllowlistEntry(Base):
    """E-mail address invited to apply"""
    __tablename__ = "email_allowlist"
    
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)  # Normalized (trimmed, lowercase)
    added_by = Column(String(255), nullable=False)
    notes = Column(Text, nullable=True)
    added_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
