"""Application lifecycle - creation, ops review, payment reconciliation and admin fixes

Status changes go through transition(), which looks the (current status, event)
pair up in TRANSITIONS and refuses anything not listed there.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import (
    AllowlistRejected, ApplicationsClosed, ApplicationValidationError,
    DuplicateApplication, InvalidState, NotFound, ReasonRequired
)
from app.core.metrics import (
    applications_submitted_counter, ops_decisions_counter, payments_confirmed_counter
)
from app.models.application import Application, ApplicationStatus
from app.models.event_log import EventLog
from app.models.ops_authorization import OpsAuthorization
from app.models.user import User
from app.schemas.applications import ApplicationCreate
from app.services.allowlist_service import is_allowlist_enabled, is_email_allowed
from app.services.capacity_service import get_capacity_status
from app.services.config_service import get_config_value, is_flag_enabled
from app.services.departure_policy import requires_review
from app.services.event_log_service import (
    ACTOR_ADMIN, ACTOR_STRIPE, ACTOR_SYSTEM, EventType, log_event,
    build_capacity_exceeded_payload, build_form_submitted_payload,
    build_invalid_departure_payload, build_mutation_failed_payload,
    build_ops_override_denied_payload, build_ops_override_granted_payload,
    build_payment_failed_payload, build_payment_initiated_payload,
    build_payment_success_payload, build_webhook_error_payload
)

logger = logging.getLogger(__name__)
payments_logger = logging.getLogger("payments")
ops_logger = logging.getLogger("ops")


class LifecycleEvent(str, Enum):
    SUBMIT_COMPLIANT = "submit_compliant"
    SUBMIT_EARLY_DEPARTURE = "submit_early_departure"
    OPS_APPROVE = "ops_approve"
    OPS_DENY = "ops_deny"
    CHECKOUT_STARTED = "checkout_started"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    ADMIN_RESET = "admin_reset"
    ADMIN_CONFIRM = "admin_confirm"


S = ApplicationStatus
E = LifecycleEvent

TRANSITIONS: Dict[tuple, ApplicationStatus] = {
    (S.DRAFT, E.SUBMIT_COMPLIANT): S.PENDING_PAYMENT,
    (S.DRAFT, E.SUBMIT_EARLY_DEPARTURE): S.NEEDS_OPS_REVIEW,

    (S.NEEDS_OPS_REVIEW, E.OPS_APPROVE): S.PENDING_PAYMENT,
    (S.NEEDS_OPS_REVIEW, E.OPS_DENY): S.REJECTED,

    # Checkout attaches a session reference without leaving pending_payment
    (S.PENDING_PAYMENT, E.CHECKOUT_STARTED): S.PENDING_PAYMENT,
    (S.PENDING_PAYMENT, E.PAYMENT_CONFIRMED): S.CONFIRMED,
    (S.PENDING_PAYMENT, E.PAYMENT_FAILED): S.PENDING_PAYMENT,
    (S.PAYMENT_PROCESSING, E.PAYMENT_CONFIRMED): S.CONFIRMED,
    (S.PAYMENT_PROCESSING, E.PAYMENT_FAILED): S.PENDING_PAYMENT,

    (S.PENDING_PAYMENT, E.ADMIN_RESET): S.PENDING_PAYMENT,
    (S.PAYMENT_PROCESSING, E.ADMIN_RESET): S.PENDING_PAYMENT,
    (S.PENDING_PAYMENT, E.ADMIN_CONFIRM): S.CONFIRMED,
    (S.PAYMENT_PROCESSING, E.ADMIN_CONFIRM): S.CONFIRMED,
    (S.NEEDS_OPS_REVIEW, E.ADMIN_CONFIRM): S.CONFIRMED,
}

TERMINAL_STATUSES = frozenset({S.CONFIRMED, S.REJECTED})


def next_status(current: ApplicationStatus, event: LifecycleEvent) -> ApplicationStatus:
    """Resolve the status an event leads to

    Raises:
        InvalidState: If the event is not allowed from the current status
    """
    current = ApplicationStatus(current)
    try:
        return TRANSITIONS[(current, LifecycleEvent(event))]
    except KeyError:
        raise InvalidState(
            f"Cannot apply {LifecycleEvent(event).value} to an application in status {current.value}"
        )


def can_transition(current: ApplicationStatus, event: LifecycleEvent) -> bool:
    return (ApplicationStatus(current), LifecycleEvent(event)) in TRANSITIONS


def transition(application: Application, event: LifecycleEvent) -> ApplicationStatus:
    """Apply an event to an application's status (caller commits)"""
    target = next_status(application.status, event)
    previous = application.status
    application.status = target.value
    logger.debug(f"Application {application.id}: {previous} -> {target.value} ({LifecycleEvent(event).value})")
    return target


# ============================================================================
# QUERIES
# ============================================================================

def get_application(application_id: int, db: Session) -> Application:
    """Raises NotFound if the application does not exist"""
    application = db.query(Application).filter(Application.id == application_id).first()
    if not application:
        raise NotFound("Application not found")
    return application


def get_application_for_user(user_id: int, db: Session) -> Optional[Application]:
    return db.query(Application).filter(Application.user_id == user_id).first()


def find_by_checkout_session(session_id: str, db: Session) -> Optional[Application]:
    if not session_id:
        return None
    return db.query(Application).filter(Application.checkout_session_id == session_id).first()


def list_applications(
    db: Session,
    status: Optional[ApplicationStatus] = None,
    limit: int = 50
) -> List[Application]:
    """Applications newest first, optionally filtered by status"""
    query = db.query(Application)
    if status is not None:
        query = query.filter(Application.status == ApplicationStatus(status).value)
    return query.order_by(Application.created_at.desc(), Application.id.desc()).limit(limit).all()


def list_needing_review(db: Session) -> List[Application]:
    return db.query(Application).filter(
        Application.status == ApplicationStatus.NEEDS_OPS_REVIEW.value
    ).order_by(Application.created_at.asc(), Application.id.asc()).all()


def application_to_dict(application: Application) -> Dict[str, Any]:
    return {
        "id": application.id,
        "user_id": application.user_id,
        "email": application.email,
        "first_name": application.first_name,
        "last_name": application.last_name,
        "phone": application.phone,
        "dietary_preference": application.dietary_preference,
        "allergy_flag": application.allergy_flag,
        "allergy_notes": application.allergy_notes,
        "arrival": application.arrival.isoformat() if application.arrival else None,
        "arrival_time": application.arrival_time,
        "departure": application.departure.isoformat() if application.departure else None,
        "departure_time": application.departure_time,
        "status": application.status,
        "payment_allowed": application.payment_allowed,
        "early_departure_requested": application.early_departure_requested,
        "early_departure_reason": application.early_departure_reason,
        "checkout_session_id": application.checkout_session_id,
        "amount_paid_cents": application.amount_paid_cents,
        "created_at": application.created_at.isoformat() if application.created_at else None,
        "updated_at": application.updated_at.isoformat() if application.updated_at else None,
    }


# ============================================================================
# CREATE
# ============================================================================

def _log_mutation_failed(db: Session, mutation_name: str, error: Exception, input_context: Dict[str, Any]):
    """Record a failed write in its own transaction"""
    try:
        db.rollback()
        log_event(
            db,
            EventType.MUTATION_FAILED,
            build_mutation_failed_payload(mutation_name, str(error), input_context),
            actor=ACTOR_SYSTEM,
        )
    except SQLAlchemyError as log_error:
        db.rollback()
        logger.error(f"Could not record mutation_failed for {mutation_name}: {log_error}", exc_info=True)


def create_application(user: User, data: ApplicationCreate, db: Session) -> Application:
    """Submit a member application

    Routes the application to needs_ops_review when the departure falls before
    the configured cutoff, otherwise straight to pending_payment.

    Raises:
        ApplicationsClosed: If the applicationsOpen flag is off
        ApplicationValidationError: If the form e-mail is not the signed-in user's
        AllowlistRejected: If the allowlist is enabled and the e-mail is not on it
        DuplicateApplication: If the user already has an application
        ReasonRequired: If early departure is requested without a reason
    """
    user_id = user.id
    email = (user.email or "").strip().lower()
    if not email:
        raise ApplicationValidationError("Your account has no e-mail address", field="email")

    if not is_flag_enabled(get_config_value("applicationsOpen", db)):
        raise ApplicationsClosed()

    if data.email != email:
        raise ApplicationValidationError(
            "Email must match your signed-in account", field="email"
        )

    if is_allowlist_enabled(db) and not is_email_allowed(email, db):
        logger.info(f"Application refused for {email}: not on allowlist")
        raise AllowlistRejected()

    if get_application_for_user(user_id, db):
        raise DuplicateApplication()

    cutoff = get_config_value("departureCutoff", db)
    needs_review = requires_review(data.departure, cutoff)
    if needs_review and not data.early_departure_reason:
        raise ReasonRequired()

    application = Application(
        user_id=user_id,
        email=email,
        first_name=data.first_name,
        last_name=data.last_name,
        phone=data.phone,
        dietary_preference=data.dietary_preference.value,
        allergy_flag=data.allergy_flag,
        allergy_notes=data.allergy_notes,
        arrival=data.arrival,
        arrival_time=data.arrival_time.value,
        departure=data.departure,
        departure_time=data.departure_time.value,
        status=ApplicationStatus.DRAFT.value,
        early_departure_requested=needs_review,
        early_departure_reason=data.early_departure_reason if needs_review else None,
    )
    if needs_review:
        transition(application, LifecycleEvent.SUBMIT_EARLY_DEPARTURE)
        application.payment_allowed = False
    else:
        transition(application, LifecycleEvent.SUBMIT_COMPLIANT)
        application.payment_allowed = True

    try:
        db.add(application)
        db.flush()
        log_event(
            db,
            EventType.FORM_SUBMITTED,
            build_form_submitted_payload(email, data.first_name, data.last_name, data.arrival, data.departure),
            actor=ACTOR_SYSTEM,
            application_id=application.id,
            commit=False,
        )
        if needs_review:
            log_event(
                db,
                EventType.INVALID_DEPARTURE,
                build_invalid_departure_payload(email, data.departure, cutoff, data.early_departure_reason),
                actor=ACTOR_SYSTEM,
                application_id=application.id,
                commit=False,
            )
        db.commit()
    except IntegrityError as e:
        # Lost the race against a concurrent submission for the same user
        logger.warning(f"Duplicate application insert for user {user_id}: {e}")
        _log_mutation_failed(db, "create_application", e, {"email": email, "userId": user_id})
        raise DuplicateApplication()
    except SQLAlchemyError as e:
        logger.error(f"Failed to create application for {email}: {e}", exc_info=True)
        _log_mutation_failed(db, "create_application", e, {"email": email, "userId": user_id})
        raise

    db.refresh(application)
    applications_submitted_counter.labels(initial_status=application.status).inc()
    logger.info(f"Application {application.id} created for {email} with status {application.status}")
    return application


# ============================================================================
# OPS REVIEW
# ============================================================================

def set_ops_override(
    application_id: int,
    approved: bool,
    approver_email: str,
    db: Session,
    notes: Optional[str] = None
) -> Application:
    """Record an ops decision on an early-departure request

    Decisions are final: only an application still in needs_ops_review
    can be decided.

    Raises:
        NotFound: If the application does not exist
        InvalidState: If the application is not awaiting review
    """
    application = get_application(application_id, db)
    event = LifecycleEvent.OPS_APPROVE if approved else LifecycleEvent.OPS_DENY
    transition(application, event)

    db.add(OpsAuthorization(
        application_id=application.id,
        approver_email=approver_email,
        status="approved" if approved else "denied",
        notes=notes,
    ))

    if approved:
        application.payment_allowed = True
        log_event(
            db,
            EventType.OPS_OVERRIDE_GRANTED,
            build_ops_override_granted_payload(application.email, approver_email, application.departure, notes),
            actor=approver_email,
            application_id=application.id,
            commit=False,
        )
    else:
        application.payment_allowed = False
        log_event(
            db,
            EventType.OPS_OVERRIDE_DENIED,
            build_ops_override_denied_payload(application.email, approver_email, application.departure, notes),
            actor=approver_email,
            application_id=application.id,
            commit=False,
        )
    db.commit()
    db.refresh(application)

    decision = "approved" if approved else "denied"
    ops_decisions_counter.labels(decision=decision).inc()
    ops_logger.info(f"Application {application.id} {decision} by {approver_email}")
    return application


# ============================================================================
# PAYMENT RECONCILIATION
# ============================================================================

def attach_checkout_session(
    application: Application,
    session_id: str,
    amount_cents: int,
    db: Session
) -> Application:
    """Store a newly created checkout session on the application

    Status stays pending_payment; only the session reference changes.
    """
    transition(application, LifecycleEvent.CHECKOUT_STARTED)
    application.checkout_session_id = session_id
    log_event(
        db,
        EventType.PAYMENT_INITIATED,
        build_payment_initiated_payload(application.email, amount_cents, session_id),
        actor=ACTOR_STRIPE,
        application_id=application.id,
        stripe_session_id=session_id,
        commit=False,
    )
    db.commit()
    db.refresh(application)
    payments_logger.info(f"Checkout session {session_id} attached to application {application.id}")
    return application


def _confirm_result(
    success: bool,
    application: Optional[Application] = None,
    requires_refund: bool = False,
    already_confirmed: bool = False,
    error: Optional[str] = None
) -> Dict[str, Any]:
    return {
        "success": success,
        "application_id": application.id if application else None,
        "email": application.email if application else None,
        "requires_refund": requires_refund,
        "already_confirmed": already_confirmed,
        "error": error,
    }


REFUND_MARKER_EVENTS = (
    EventType.CAPACITY_EXCEEDED.value,
    EventType.REFUND_ISSUED.value,
    EventType.REFUND_FAILED.value,
)


def is_session_refunded(session_id: str, db: Session) -> bool:
    """Whether a checkout session was already sent down the refund path"""
    return db.query(EventLog.id).filter(
        EventLog.stripe_session_id == session_id,
        EventLog.event_type.in_(REFUND_MARKER_EVENTS)
    ).first() is not None


def confirm_payment(
    session_id: str,
    amount_cents: Optional[int],
    payment_intent_id: Optional[str],
    db: Session,
    actor: str = ACTOR_STRIPE
) -> Dict[str, Any]:
    """Confirm a completed checkout

    Shared by the webhook and the client verify path. Never raises for an
    unknown session; the caller reads the returned dict.

    Returns:
        Dict with 'success', 'application_id', 'email', 'requires_refund',
        'already_confirmed' and 'error'
    """
    application = find_by_checkout_session(session_id, db)
    if not application:
        log_event(
            db,
            EventType.WEBHOOK_ERROR,
            build_webhook_error_payload(
                "No application found for checkout session",
                webhook_type="checkout.session.completed",
                stripe_session_id=session_id,
            ),
            actor=actor,
            stripe_session_id=session_id,
        )
        payments_logger.warning(f"Confirm for unknown checkout session {session_id}")
        return _confirm_result(False, error="Application not found for session")

    if application.status == ApplicationStatus.CONFIRMED.value:
        payments_logger.info(f"Application {application.id} already confirmed (session {session_id})")
        return _confirm_result(True, application, already_confirmed=True)

    # Stripe keeps reporting a refunded session as paid
    if is_session_refunded(session_id, db):
        error = "Checkout session was already refunded"
        log_event(
            db,
            EventType.WEBHOOK_ERROR,
            build_webhook_error_payload(error, webhook_type="checkout.session.completed", stripe_session_id=session_id),
            actor=actor,
            application_id=application.id,
            stripe_session_id=session_id,
        )
        payments_logger.warning(f"Application {application.id}: session {session_id} already refunded; not confirming")
        return _confirm_result(False, application, requires_refund=True, error=error)

    if not can_transition(application.status, LifecycleEvent.PAYMENT_CONFIRMED):
        error = f"Payment received for application in status {application.status}"
        log_event(
            db,
            EventType.WEBHOOK_ERROR,
            build_webhook_error_payload(error, webhook_type="checkout.session.completed", stripe_session_id=session_id),
            actor=actor,
            application_id=application.id,
            stripe_session_id=session_id,
        )
        payments_logger.error(f"Application {application.id}: {error}; refund required")
        return _confirm_result(False, application, requires_refund=True, error=error)

    # Two checkouts can both pass the initiation-time check; the loser is refunded
    capacity = get_capacity_status(db)
    if capacity["is_full"]:
        log_event(
            db,
            EventType.CAPACITY_EXCEEDED,
            build_capacity_exceeded_payload(
                application.email, session_id, capacity["confirmed_count"], capacity["max_members"]
            ),
            actor=actor,
            application_id=application.id,
            stripe_session_id=session_id,
        )
        payments_logger.warning(
            f"Capacity reached ({capacity['confirmed_count']}/{capacity['max_members']}); "
            f"application {application.id} requires refund"
        )
        return _confirm_result(False, application, requires_refund=True, error="Camp is full")

    transition(application, LifecycleEvent.PAYMENT_CONFIRMED)
    application.payment_allowed = True
    application.stripe_payment_intent_id = payment_intent_id
    application.amount_paid_cents = amount_cents
    log_event(
        db,
        EventType.PAYMENT_SUCCESS,
        build_payment_success_payload(application.email, amount_cents, session_id, payment_intent_id),
        actor=actor,
        application_id=application.id,
        stripe_session_id=session_id,
        commit=False,
    )
    db.commit()
    db.refresh(application)
    payments_confirmed_counter.labels(source=actor).inc()
    payments_logger.info(f"Application {application.id} confirmed (session {session_id})")
    return _confirm_result(True, application)


def fail_payment(session_id: str, db: Session, reason: Optional[str] = None) -> Dict[str, Any]:
    """Revert an application to pending_payment after an expired or failed checkout

    Unknown sessions and already-confirmed applications are left alone.
    """
    application = find_by_checkout_session(session_id, db)
    if not application:
        payments_logger.info(f"Fail for unknown checkout session {session_id}; ignoring")
        return {"success": False, "application_id": None}

    if application.status in (ApplicationStatus.CONFIRMED.value, ApplicationStatus.REJECTED.value):
        payments_logger.info(
            f"Ignoring payment failure for application {application.id} in status {application.status}"
        )
        return {"success": False, "application_id": application.id}

    transition(application, LifecycleEvent.PAYMENT_FAILED)
    application.checkout_session_id = None
    log_event(
        db,
        EventType.PAYMENT_FAILED,
        build_payment_failed_payload(application.email, session_id, reason),
        actor=ACTOR_STRIPE,
        application_id=application.id,
        stripe_session_id=session_id,
        commit=False,
    )
    db.commit()
    payments_logger.info(f"Application {application.id} payment failed (session {session_id}): {reason}")
    return {"success": True, "application_id": application.id}


# ============================================================================
# ADMINISTRATIVE FIXES
# ============================================================================

def admin_reset_payment(application_id: int, db: Session, actor: str = ACTOR_ADMIN) -> Application:
    """Return a stuck payment to pending_payment and drop its checkout session

    Raises:
        NotFound: If the application does not exist
        InvalidState: If the application is confirmed or not in a payment state
    """
    application = get_application(application_id, db)
    if application.status == ApplicationStatus.CONFIRMED.value:
        raise InvalidState("Cannot reset a confirmed application")
    transition(application, LifecycleEvent.ADMIN_RESET)

    previous_session = application.checkout_session_id
    application.checkout_session_id = None
    log_event(
        db,
        EventType.PAYMENT_FAILED,
        build_payment_failed_payload(application.email, previous_session, "Reset by administrator"),
        actor=actor,
        application_id=application.id,
        stripe_session_id=previous_session,
        commit=False,
    )
    db.commit()
    db.refresh(application)
    ops_logger.info(f"Application {application.id} payment reset by {actor}")
    return application


def admin_manual_confirm(application_id: int, db: Session, actor: str = ACTOR_ADMIN) -> Dict[str, Any]:
    """Confirm an application paid outside the normal flow

    A no-op for an already confirmed application.

    Raises:
        NotFound: If the application does not exist
        InvalidState: If the application was rejected
    """
    application = get_application(application_id, db)
    if application.status == ApplicationStatus.CONFIRMED.value:
        return {"success": True, "already_confirmed": True, "application_id": application.id}

    transition(application, LifecycleEvent.ADMIN_CONFIRM)
    application.payment_allowed = True
    log_event(
        db,
        EventType.PAYMENT_SUCCESS,
        build_payment_success_payload(
            application.email, application.amount_paid_cents, application.checkout_session_id,
            application.stripe_payment_intent_id, manual=True
        ),
        actor=actor,
        application_id=application.id,
        stripe_session_id=application.checkout_session_id,
        commit=False,
    )
    db.commit()
    payments_confirmed_counter.labels(source=ACTOR_ADMIN).inc()
    ops_logger.info(f"Application {application.id} manually confirmed by {actor}")
    return {"success": True, "already_confirmed": False, "application_id": application.id}
