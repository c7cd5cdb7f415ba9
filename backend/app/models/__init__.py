"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.user import User
from app.models.application import Application, ApplicationStatus
from app.models.ops_authorization import OpsAuthorization
from app.models.allowlist_entry import AllowlistEntry
from app.models.config_entry import ConfigEntry
from app.models.event_log import EventLog
from app.models.stripe_event import StripeEvent

# Export all for convenience
__all__ = [
    "Base", "User", "Application", "ApplicationStatus", "OpsAuthorization",
    "AllowlistEntry", "ConfigEntry", "EventLog", "StripeEvent"
]
