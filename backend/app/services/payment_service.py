"""Payment reconciler - checkout initiation, confirmation, refunds and Stripe webhooks

Bridges Stripe checkout sessions into application lifecycle transitions. The
webhook and the client verify path both end in reconcile_checkout_completed.
"""
import logging
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session

from app.core.errors import (
    CapacityFull, NotFound, PaymentNotAllowed, PaymentProviderError,
    PaymentsDisabled, WebhookVerificationError
)
from app.core.metrics import checkouts_created_counter, refunds_counter, webhook_events_counter
from app.models.application import Application, ApplicationStatus
from app.services import stripe_service
from app.services.application_service import (
    LifecycleEvent, attach_checkout_session, can_transition, confirm_payment,
    fail_payment, get_application_for_user
)
from app.services.capacity_service import get_capacity_status
from app.services.config_service import get_config_value, get_reservation_fee_cents, is_flag_enabled
from app.services.event_log_service import (
    ACTOR_STRIPE, EventType, log_event, build_refund_payload, build_webhook_error_payload
)

logger = logging.getLogger(__name__)
payments_logger = logging.getLogger("payments")

CHECKOUT_COMPLETED_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
CHECKOUT_FAILED_EVENTS = ("checkout.session.expired", "checkout.session.async_payment_failed")

REFUND_FAILED_MESSAGE = (
    "The camp filled up before your payment was confirmed, and we could not refund it "
    "automatically. Please contact us so we can refund your reservation fee."
)
REFUND_ISSUED_MESSAGE = (
    "The camp filled up before your payment was confirmed. Your reservation fee has been refunded."
)


# ============================================================================
# INITIATE
# ============================================================================

def _check_payment_allowed(application: Application, db: Session):
    """Last gate before money moves; every check reads fresh state"""
    if not is_flag_enabled(get_config_value("paymentsEnabled", db)):
        raise PaymentsDisabled()

    if not application.payment_allowed or not can_transition(application.status, LifecycleEvent.CHECKOUT_STARTED):
        raise PaymentNotAllowed(
            f"Payment not allowed for application in status {application.status}"
        )

    if get_capacity_status(db)["is_full"]:
        raise CapacityFull()


def _reuse_open_session(application: Application) -> Optional[Dict[str, Any]]:
    """The application's existing checkout session, if Stripe still has it open"""
    if not application.checkout_session_id:
        return None
    try:
        session = stripe_service.retrieve_checkout_session(application.checkout_session_id)
    except PaymentProviderError:
        return None
    details = stripe_service.get_session_details(session)
    if details["status"] == "open" and details["url"]:
        return {"session_id": details["id"], "url": details["url"]}
    return None


def initiate_checkout(user_id: int, frontend_url: str, db: Session) -> Dict[str, Any]:
    """Create (or reuse) a Stripe checkout session for the user's application

    Raises:
        NotFound: If the user has no application
        PaymentsDisabled, PaymentNotAllowed, CapacityFull: If a payment gate is closed
        PaymentProviderError: If Stripe fails; local state is left untouched
    """
    application = get_application_for_user(user_id, db)
    if not application:
        raise NotFound("No application found")

    _check_payment_allowed(application, db)

    existing = _reuse_open_session(application)
    if existing:
        payments_logger.info(f"Reusing open checkout session {existing['session_id']} for application {application.id}")
        return existing

    amount_cents = get_reservation_fee_cents(db)
    base_url = frontend_url.rstrip("/")
    session = stripe_service.create_reservation_checkout_session(
        application.id,
        application.email,
        amount_cents,
        success_url=f"{base_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base_url}/payment/cancelled",
    )

    attach_checkout_session(application, session["id"], amount_cents, db)
    checkouts_created_counter.inc()
    return {"session_id": session["id"], "url": session["url"]}


# ============================================================================
# CONFIRM & REFUND
# ============================================================================

def issue_refund(
    stripe_session_id: str,
    payment_intent_id: Optional[str],
    db: Session,
    application_id: Optional[int] = None
) -> Dict[str, Any]:
    """Refund an over-capacity payment and record the outcome"""
    if not payment_intent_id:
        result = {"success": False, "already_refunded": False, "refund_id": None,
                  "error": "No payment intent on checkout session"}
    else:
        result = stripe_service.refund_payment(payment_intent_id)

    event_type = EventType.REFUND_ISSUED if result["success"] else EventType.REFUND_FAILED
    log_event(
        db,
        event_type,
        build_refund_payload(
            event_type, stripe_session_id, payment_intent_id,
            error=result["error"], already_refunded=result["already_refunded"]
        ),
        actor=ACTOR_STRIPE,
        application_id=application_id,
        stripe_session_id=stripe_session_id,
    )

    if result["success"]:
        outcome = "already_refunded" if result["already_refunded"] else "issued"
    else:
        outcome = "failed"
        payments_logger.error(
            f"Refund failed for session {stripe_session_id}; manual refund needed: {result['error']}"
        )
    refunds_counter.labels(outcome=outcome).inc()
    return result


def reconcile_checkout_completed(session: Any, db: Session, actor: str = ACTOR_STRIPE) -> Dict[str, Any]:
    """Confirm a paid checkout session, refunding it if it cannot be confirmed

    Callers must have established that Stripe reports the session as paid.
    """
    details = stripe_service.get_session_details(session)
    result = confirm_payment(
        details["id"], details["amount_total"], details["payment_intent"], db, actor=actor
    )

    result["refund"] = None
    result["message"] = None
    if result["requires_refund"]:
        refund = issue_refund(details["id"], details["payment_intent"], db, result["application_id"])
        result["refund"] = refund
        result["message"] = REFUND_ISSUED_MESSAGE if refund["success"] else REFUND_FAILED_MESSAGE
    return result


def verify_checkout_session(user_id: int, session_id: str, db: Session) -> Dict[str, Any]:
    """Client poll after returning from Stripe checkout

    Confirms only if Stripe itself reports the session as paid.

    Raises:
        NotFound: If the session does not belong to the user's application
        PaymentProviderError: If Stripe cannot be reached
    """
    application = get_application_for_user(user_id, db)
    if not application:
        raise NotFound("No application found")

    if application.checkout_session_id != session_id:
        raise NotFound("Checkout session not found")

    if application.status == ApplicationStatus.CONFIRMED.value:
        return {"status": ApplicationStatus.CONFIRMED.value, "confirmed": True, "message": None}

    session = stripe_service.retrieve_checkout_session(session_id)
    details = stripe_service.get_session_details(session)

    if details["application_id"] is not None and str(details["application_id"]) != str(application.id):
        payments_logger.warning(
            f"Checkout session {session_id} metadata does not match application {application.id}"
        )
        raise NotFound("Checkout session not found")

    if details["payment_status"] != "paid":
        return {"status": application.status, "confirmed": False, "payment_status": details["payment_status"],
                "message": None}

    result = reconcile_checkout_completed(session, db)
    db.refresh(application)
    return {
        "status": application.status,
        "confirmed": application.status == ApplicationStatus.CONFIRMED.value,
        "requires_refund": result["requires_refund"],
        "refund_succeeded": result["refund"]["success"] if result["refund"] else None,
        "message": result["message"],
    }


# ============================================================================
# WEBHOOK
# ============================================================================

def _handle_event(event_type: str, data: Any, db: Session) -> Dict[str, Any]:
    details = stripe_service.get_session_details(data)

    if event_type in CHECKOUT_COMPLETED_EVENTS:
        if details["payment_status"] != "paid":
            # Delayed payment methods complete later via async_payment_succeeded
            payments_logger.info(f"Checkout {details['id']} completed but unpaid ({details['payment_status']})")
            return {"status": "pending"}
        result = reconcile_checkout_completed(data, db)
        return {"status": "success" if result["success"] else "not_confirmed",
                "requires_refund": result["requires_refund"]}

    if event_type in CHECKOUT_FAILED_EVENTS:
        reason = "Checkout session expired" if event_type == "checkout.session.expired" else "Payment failed"
        fail_payment(details["id"], db, reason=reason)
        return {"status": "success"}

    return {"status": "ignored"}


def process_stripe_webhook(payload: bytes, sig_header: Optional[str], db: Session) -> Dict[str, Any]:
    """Process Stripe webhook event

    Unverified requests are rejected. Verified events always get a 200 answer,
    even when processing fails, so Stripe does not redeliver them; failures are
    recorded as webhook_error events for follow-up.

    Raises:
        ServerMisconfigured: If no webhook secret is configured
        WebhookVerificationError: If the signature or payload is invalid
    """
    try:
        event = stripe_service.construct_webhook_event(payload, sig_header)
    except WebhookVerificationError as e:
        log_event(
            db,
            EventType.WEBHOOK_ERROR,
            build_webhook_error_payload(f"Webhook verification failed: {e.message}"),
            actor=ACTOR_STRIPE,
        )
        webhook_events_counter.labels(event_type="unknown", outcome="rejected").inc()
        raise

    event_id = event["id"]
    event_type = event["type"]
    data = event["data"]["object"]

    # Log event for idempotency
    stripe_event = stripe_service.log_stripe_event(event_id, event_type, event, db)
    if stripe_event.processed:
        logger.info(f"Webhook event {event_id} already processed")
        webhook_events_counter.labels(event_type=event_type, outcome="replay").inc()
        return {"status": "already_processed"}

    try:
        result = _handle_event(event_type, data, db)
    except Exception as e:
        db.rollback()
        session_id = stripe_service.get_session_details(data)["id"]
        logger.error(f"Error processing webhook event {event_id} of type {event_type}: {e}", exc_info=True)
        log_event(
            db,
            EventType.WEBHOOK_ERROR,
            build_webhook_error_payload(str(e), webhook_type=event_type, stripe_session_id=session_id),
            actor=ACTOR_STRIPE,
            stripe_session_id=session_id,
        )
        stripe_service.mark_stripe_event_processed(event_id, db, error_message=str(e))
        webhook_events_counter.labels(event_type=event_type, outcome="error").inc()
        return {"status": "error_logged"}

    stripe_service.mark_stripe_event_processed(event_id, db)
    webhook_events_counter.labels(event_type=event_type, outcome=result["status"]).inc()
    logger.info(f"Processed webhook event {event_id} of type {event_type}: {result['status']}")
    return result
