"""Event audit log - append-only record of lifecycle transitions and policy decisions"""
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session

from app.models.event_log import EventLog

logger = logging.getLogger(__name__)

# Maximum serialized payload size in characters
MAX_PAYLOAD_SIZE = 10000
TRUNCATION_MARKER = "...[truncated]"

# Well-known system actors
ACTOR_SYSTEM = "system"
ACTOR_OPS = "ops"
ACTOR_STRIPE = "stripe"
ACTOR_ADMIN = "admin"


class EventType(str, Enum):
    """Closed set of audit event types"""
    # Lifecycle
    FORM_SUBMITTED = "form_submitted"
    INVALID_DEPARTURE = "invalid_departure"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    OPS_OVERRIDE_GRANTED = "ops_override_granted"
    OPS_OVERRIDE_DENIED = "ops_override_denied"
    WEBHOOK_ERROR = "webhook_error"
    MUTATION_FAILED = "mutation_failed"
    # Allowlist and configuration administration
    ALLOWLIST_EMAILS_ADDED = "allowlist_emails_added"
    ALLOWLIST_EMAIL_REMOVED = "allowlist_email_removed"
    ALLOWLIST_EMAILS_REMOVED_BULK = "allowlist_emails_removed_bulk"
    CONFIG_UPDATED = "config_updated"
    CONFIG_DELETED = "config_deleted"
    # Over-capacity reconciliation
    CAPACITY_EXCEEDED = "capacity_exceeded"
    REFUND_ISSUED = "refund_issued"
    REFUND_FAILED = "refund_failed"


def truncate_payload(payload: str) -> str:
    """Cap a serialized payload at MAX_PAYLOAD_SIZE, appending the truncation marker"""
    if len(payload) > MAX_PAYLOAD_SIZE:
        return payload[:MAX_PAYLOAD_SIZE] + TRUNCATION_MARKER
    return payload


def serialize_payload(payload: Dict[str, Any]) -> str:
    """Serialize a payload dict to a bounded JSON string"""
    # default=str covers dates and Decimals coming straight off model columns
    return truncate_payload(json.dumps(payload, default=str))


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_event(
    db: Session,
    event_type: EventType,
    payload: Dict[str, Any],
    actor: str,
    application_id: Optional[int] = None,
    stripe_session_id: Optional[str] = None,
    commit: bool = True
) -> EventLog:
    """Append an event to the audit log

    Args:
        db: Database session
        event_type: One of EventType
        payload: Event payload (see build_*_payload helpers)
        actor: E-mail of the acting person or a system actor
        application_id: Optional application the event concerns
        stripe_session_id: Optional Stripe checkout session the event concerns
        commit: Commit immediately; pass False to join the caller's transaction

    Returns:
        The persisted EventLog row
    """
    event_type = EventType(event_type)
    entry = EventLog(
        application_id=application_id,
        stripe_session_id=stripe_session_id,
        event_type=event_type.value,
        payload=serialize_payload(payload),
        actor=actor,
    )
    db.add(entry)
    if commit:
        db.commit()
        db.refresh(entry)
    else:
        db.flush()
    logger.info(
        f"Event {event_type.value} logged (application={application_id}, "
        f"session={stripe_session_id}, actor={actor})"
    )
    return entry


# ============================================================================
# PAYLOAD BUILDERS
# ============================================================================

def build_form_submitted_payload(email: str, first_name: str, last_name: str, arrival, departure) -> Dict:
    return {
        "type": EventType.FORM_SUBMITTED.value,
        "email": email,
        "name": f"{first_name} {last_name}",
        "arrival": str(arrival),
        "departure": str(departure),
        "timestamp": _timestamp(),
    }


def build_invalid_departure_payload(email: str, requested_departure, cutoff_date, reason: Optional[str] = None) -> Dict:
    return {
        "type": EventType.INVALID_DEPARTURE.value,
        "email": email,
        "requestedDeparture": str(requested_departure),
        "cutoffDate": str(cutoff_date),
        "reason": "Departure date is before the required cutoff",
        "memberReason": reason,
        "timestamp": _timestamp(),
    }


def build_payment_initiated_payload(email: str, amount_cents: int, stripe_session_id: str) -> Dict:
    return {
        "type": EventType.PAYMENT_INITIATED.value,
        "email": email,
        "amountCents": amount_cents,
        "stripeSessionId": stripe_session_id,
        "timestamp": _timestamp(),
    }


def build_payment_success_payload(
    email: str,
    amount_cents: Optional[int],
    stripe_session_id: Optional[str],
    stripe_payment_intent_id: Optional[str] = None,
    manual: bool = False
) -> Dict:
    payload = {
        "type": EventType.PAYMENT_SUCCESS.value,
        "email": email,
        "amountCents": amount_cents,
        "stripeSessionId": stripe_session_id,
        "stripePaymentIntentId": stripe_payment_intent_id,
        "timestamp": _timestamp(),
    }
    if manual:
        payload["manual"] = True
    return payload


def build_payment_failed_payload(email: str, stripe_session_id: Optional[str], reason: Optional[str] = None) -> Dict:
    return {
        "type": EventType.PAYMENT_FAILED.value,
        "email": email,
        "stripeSessionId": stripe_session_id,
        "reason": reason or "Payment was not completed",
        "timestamp": _timestamp(),
    }


def build_ops_override_granted_payload(email: str, approver_email: str, requested_departure, notes: Optional[str] = None) -> Dict:
    return {
        "type": EventType.OPS_OVERRIDE_GRANTED.value,
        "email": email,
        "approverEmail": approver_email,
        "requestedDeparture": str(requested_departure),
        "notes": notes,
        "timestamp": _timestamp(),
    }


def build_ops_override_denied_payload(email: str, approver_email: str, requested_departure, reason: Optional[str] = None) -> Dict:
    return {
        "type": EventType.OPS_OVERRIDE_DENIED.value,
        "email": email,
        "approverEmail": approver_email,
        "requestedDeparture": str(requested_departure),
        "reason": reason or "Request denied",
        "timestamp": _timestamp(),
    }


def build_webhook_error_payload(error: str, webhook_type: Optional[str] = None, stripe_session_id: Optional[str] = None) -> Dict:
    return {
        "type": EventType.WEBHOOK_ERROR.value,
        "error": error,
        "webhookType": webhook_type,
        "stripeSessionId": stripe_session_id,
        "timestamp": _timestamp(),
    }


def build_mutation_failed_payload(mutation_name: str, error: str, input_context: Optional[Dict[str, Any]] = None) -> Dict:
    return {
        "type": EventType.MUTATION_FAILED.value,
        "mutationName": mutation_name,
        "error": error,
        "input": input_context,
        "timestamp": _timestamp(),
    }


def build_capacity_exceeded_payload(email: str, stripe_session_id: str, confirmed_count: int, max_members: int) -> Dict:
    return {
        "type": EventType.CAPACITY_EXCEEDED.value,
        "email": email,
        "stripeSessionId": stripe_session_id,
        "confirmedCount": confirmed_count,
        "maxMembers": max_members,
        "timestamp": _timestamp(),
    }


def build_refund_payload(
    event_type: EventType,
    stripe_session_id: str,
    stripe_payment_intent_id: Optional[str],
    error: Optional[str] = None,
    already_refunded: bool = False
) -> Dict:
    return {
        "type": event_type.value,
        "stripeSessionId": stripe_session_id,
        "stripePaymentIntentId": stripe_payment_intent_id,
        "alreadyRefunded": already_refunded,
        "error": error,
        "timestamp": _timestamp(),
    }


def build_admin_payload(event_type: EventType, actor: str, **details) -> Dict:
    """Payload for allowlist/config administration events"""
    payload = {"type": event_type.value, "actor": actor}
    payload.update(details)
    payload["timestamp"] = _timestamp()
    return payload


# ============================================================================
# QUERIES
# ============================================================================

def get_events_by_application(application_id: int, db: Session) -> List[EventLog]:
    """Events for one application, newest first"""
    return db.query(EventLog).filter(
        EventLog.application_id == application_id
    ).order_by(EventLog.created_at.desc(), EventLog.id.desc()).all()


def get_events_by_session(stripe_session_id: str, db: Session) -> List[EventLog]:
    """Events for one Stripe checkout session, newest first"""
    return db.query(EventLog).filter(
        EventLog.stripe_session_id == stripe_session_id
    ).order_by(EventLog.created_at.desc(), EventLog.id.desc()).all()


def list_recent_events(
    db: Session,
    limit: int = 50,
    event_type: Optional[EventType] = None
) -> List[EventLog]:
    """Most recent events, optionally filtered by type"""
    query = db.query(EventLog)
    if event_type is not None:
        query = query.filter(EventLog.event_type == EventType(event_type).value)
    return query.order_by(EventLog.created_at.desc(), EventLog.id.desc()).limit(limit).all()


def event_to_dict(event: EventLog) -> Dict[str, Any]:
    return {
        "id": event.id,
        "application_id": event.application_id,
        "stripe_session_id": event.stripe_session_id,
        "event_type": event.event_type,
        "payload": event.payload,
        "actor": event.actor,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }
