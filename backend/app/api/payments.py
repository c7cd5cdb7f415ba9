"""Reservation payment API routes"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import require_auth, require_csrf
from app.db.session import get_db
from app.schemas.payments import CapacityResponse, CheckoutResponse
from app.services.capacity_service import get_capacity_status
from app.services.payment_service import (
    initiate_checkout, process_stripe_webhook, verify_checkout_session
)

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = logging.getLogger(__name__)


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    request: Request,
    user_id: int = Depends(require_csrf),
    db: Session = Depends(get_db)
):
    """Create Stripe checkout session for the reservation fee"""
    frontend_url = settings.FRONTEND_URL or str(request.base_url).rstrip("/")
    result = initiate_checkout(user_id, frontend_url, db)
    return CheckoutResponse(session_id=result["session_id"], url=result["url"])


@router.get("/verify")
def verify_payment(
    session_id: str = Query(..., min_length=1),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Check a checkout session after the user returns from Stripe"""
    return verify_checkout_session(user_id, session_id, db)


@router.get("/capacity", response_model=CapacityResponse)
def get_capacity(db: Session = Depends(get_db)):
    """Confirmed member count against the cap"""
    return get_capacity_status(db)


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    Note: This route must be excluded from any global JSON parsing middleware
    to ensure the request body remains as raw bytes for signature verification.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return process_stripe_webhook(payload, sig_header, db)


stripe_router = APIRouter(prefix="/api/stripe", tags=["stripe"])


@stripe_router.get("/config")
def get_stripe_config():
    """Get Stripe publishable key for frontend"""
    publishable_key = settings.STRIPE_PUBLISHABLE_KEY
    if not publishable_key:
        raise HTTPException(500, "Stripe not configured")
    return {"publishable_key": publishable_key}
