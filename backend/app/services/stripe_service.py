import logging
import stripe
from typing import Dict, Optional, Any
from datetime import datetime, timezone
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import PaymentProviderError, ServerMisconfigured, WebhookVerificationError
from app.models.stripe_event import StripeEvent

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY

# Stripe error code for a refund against an already refunded charge
ALREADY_REFUNDED_CODE = "charge_already_refunded"


# ============================================================================
# STRIPE OBJECT ACCESS HELPER
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    value = getattr(obj, key, None)
    return default if value is None else value


def _get_stripe_id(obj: Any) -> Optional[str]:
    """ID of an expandable Stripe field (either the ID string or the expanded object)"""
    if obj is None or isinstance(obj, str):
        return obj
    return _get_stripe_value(obj, 'id')


# ============================================================================
# CHECKOUT SESSIONS
# ============================================================================

def create_reservation_checkout_session(
    application_id: int,
    email: str,
    amount_cents: int,
    success_url: str,
    cancel_url: str
) -> Dict[str, Optional[str]]:
    """Create a one-off payment checkout session for the reservation fee

    Raises:
        PaymentProviderError: If Stripe rejects or cannot be reached
    """
    checkout_params = {
        "payment_method_types": ["card"],
        "mode": "payment",
        "line_items": [{
            "price_data": {
                "currency": settings.STRIPE_CURRENCY,
                "unit_amount": amount_cents,
                "product_data": {"name": settings.CAMP_PRODUCT_NAME},
            },
            "quantity": 1,
        }],
        "customer_email": email,
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": {"application_id": str(application_id), "email": email},
    }

    try:
        session = stripe.checkout.Session.create(**checkout_params)
    except stripe.error.StripeError as e:
        logger.error(f"Stripe checkout creation failed for application {application_id}: {e}")
        raise PaymentProviderError(f"Could not create checkout session: {e}")

    return {"id": _get_stripe_value(session, 'id'), "url": _get_stripe_value(session, 'url')}


def retrieve_checkout_session(session_id: str) -> Any:
    """Fetch a checkout session from Stripe

    Raises:
        PaymentProviderError: If Stripe rejects or cannot be reached
    """
    try:
        return stripe.checkout.Session.retrieve(session_id)
    except stripe.error.StripeError as e:
        logger.error(f"Error retrieving checkout session {session_id}: {e}")
        raise PaymentProviderError(f"Could not retrieve checkout session: {e}")


def get_session_details(session: Any) -> Dict[str, Any]:
    """Fields of a checkout session that reconciliation needs"""
    metadata = _get_stripe_value(session, 'metadata', {}) or {}
    return {
        "id": _get_stripe_value(session, 'id'),
        "status": _get_stripe_value(session, 'status'),
        "payment_status": _get_stripe_value(session, 'payment_status'),
        "amount_total": _get_stripe_value(session, 'amount_total'),
        "payment_intent": _get_stripe_id(_get_stripe_value(session, 'payment_intent')),
        "url": _get_stripe_value(session, 'url'),
        "application_id": _get_stripe_value(metadata, 'application_id'),
    }


# ============================================================================
# REFUNDS
# ============================================================================

def _is_already_refunded(error: Exception) -> bool:
    code = getattr(error, 'code', None)
    if code == ALREADY_REFUNDED_CODE:
        return True
    return "already been refunded" in str(error).lower()


def refund_payment(payment_intent_id: str) -> Dict[str, Any]:
    """Refund a payment intent in full

    An already refunded charge counts as success so the webhook and the
    verify path can both attempt the same refund.

    Returns:
        Dict with 'success', 'already_refunded', 'refund_id' and 'error'
    """
    try:
        refund = stripe.Refund.create(payment_intent=payment_intent_id)
    except stripe.error.StripeError as e:
        if _is_already_refunded(e):
            logger.info(f"Payment intent {payment_intent_id} was already refunded")
            return {"success": True, "already_refunded": True, "refund_id": None, "error": None}
        logger.error(f"Refund failed for payment intent {payment_intent_id}: {e}")
        return {"success": False, "already_refunded": False, "refund_id": None, "error": str(e)}

    refund_id = _get_stripe_value(refund, 'id')
    logger.info(f"Refund {refund_id} issued for payment intent {payment_intent_id}")
    return {"success": True, "already_refunded": False, "refund_id": refund_id, "error": None}


# ============================================================================
# WEBHOOK & EVENT LOGGING
# ============================================================================

def construct_webhook_event(payload: bytes, sig_header: Optional[str]) -> Any:
    """Verify a webhook signature and parse the event

    Raises:
        ServerMisconfigured: If no webhook secret is configured
        WebhookVerificationError: If the signature or payload is invalid
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise ServerMisconfigured("Webhook secret not configured")

    if not sig_header:
        raise WebhookVerificationError("Missing stripe-signature header")

    try:
        return stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise WebhookVerificationError("Invalid payload")
    except stripe.error.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise WebhookVerificationError("Invalid signature")


def log_stripe_event(event_id: str, event_type: str, payload: dict, db: Session) -> StripeEvent:
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if not stripe_event:
        stripe_event = StripeEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            payload=payload,
            processed=False
        )
        db.add(stripe_event)
        db.commit()
        db.refresh(stripe_event)
    return stripe_event


def mark_stripe_event_processed(event_id: str, db: Session, error_message: str = None):
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        stripe_event.processed = True
        stripe_event.processed_at = datetime.now(timezone.utc)
        stripe_event.error_message = error_message
        db.commit()
