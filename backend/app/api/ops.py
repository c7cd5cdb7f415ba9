"""Ops API routes (shared-password operator console)"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.errors import NotFound
from app.core.security import is_ops_password_valid, require_ops
from app.db.session import get_db
from app.models.application import ApplicationStatus
from app.schemas.ops import (
    AllowlistAddRequest, AllowlistRemoveRequest, ConfigUpdateRequest,
    OpsOverrideRequest, VerifyPasswordRequest
)
from app.services.allowlist_service import (
    add_emails, count_allowed_emails, entry_to_dict, get_allowlist_diagnostic,
    list_allowed_emails, remove_email, remove_emails
)
from app.services.application_service import (
    admin_manual_confirm, admin_reset_payment, application_to_dict,
    get_application, list_applications, list_needing_review, set_ops_override
)
from app.services.config_service import (
    delete_config, get_all_config, list_config_entries, set_config
)
from app.services.event_log_service import (
    ACTOR_ADMIN, EventType, event_to_dict, get_events_by_application,
    get_events_by_session, list_recent_events
)

router = APIRouter(prefix="/api/ops", tags=["ops"])
logger = logging.getLogger(__name__)
ops_logger = logging.getLogger("ops")


@router.post("/verify-password")
def verify_password(request_data: VerifyPasswordRequest):
    """Check an ops password without performing any action"""
    return {"valid": is_ops_password_valid(request_data.password)}


# ============================================================================
# ALLOWLIST
# ============================================================================

@router.get("/allowlist")
def get_allowlist(actor: str = Depends(require_ops), db: Session = Depends(get_db)):
    """List allowlisted e-mails, newest first"""
    return {"emails": [entry_to_dict(e) for e in list_allowed_emails(db)]}


@router.post("/allowlist")
def add_to_allowlist(
    request_data: AllowlistAddRequest,
    actor: str = Depends(require_ops),
    db: Session = Depends(get_db)
):
    """Bulk-add e-mails to the allowlist"""
    return add_emails(request_data.emails, actor, db, notes=request_data.notes)


@router.delete("/allowlist")
def bulk_remove_from_allowlist(
    request_data: AllowlistRemoveRequest,
    actor: str = Depends(require_ops),
    db: Session = Depends(get_db)
):
    """Bulk-remove e-mails from the allowlist"""
    return remove_emails(request_data.emails, actor, db)


@router.get("/allowlist/count")
def get_allowlist_count(actor: str = Depends(require_ops), db: Session = Depends(get_db)):
    return {"count": count_allowed_emails(db)}


@router.get("/allowlist/check")
def check_allowlist(
    email: str = Query(..., min_length=1),
    actor: str = Depends(require_ops),
    db: Session = Depends(get_db)
):
    """Diagnose the allowlist gate for one e-mail"""
    return get_allowlist_diagnostic(email, db)


@router.delete("/allowlist/{email}")
def remove_from_allowlist(email: str, actor: str = Depends(require_ops), db: Session = Depends(get_db)):
    return remove_email(email, actor, db)


# ============================================================================
# APPLICATIONS
# ============================================================================

@router.get("/applications")
def get_applications(
    status: Optional[ApplicationStatus] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    actor: str = Depends(require_ops),
    db: Session = Depends(get_db)
):
    """List applications newest first, optionally by status"""
    applications = list_applications(db, status=status, limit=limit)
    return {"applications": [application_to_dict(a) for a in applications]}


@router.get("/applications/review")
def get_review_queue(actor: str = Depends(require_ops), db: Session = Depends(get_db)):
    """Applications awaiting an early-departure decision, oldest first"""
    return {"applications": [application_to_dict(a) for a in list_needing_review(db)]}


@router.get("/applications/{application_id}")
def get_application_details(application_id: int, actor: str = Depends(require_ops), db: Session = Depends(get_db)):
    application = get_application(application_id, db)
    details = application_to_dict(application)
    details["ops_authorizations"] = [{
        "approver_email": a.approver_email,
        "status": a.status,
        "notes": a.notes,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    } for a in application.ops_authorizations]
    return {"application": details}


@router.post("/applications/{application_id}/override")
def override_application(
    application_id: int,
    request_data: OpsOverrideRequest,
    actor: str = Depends(require_ops),
    db: Session = Depends(get_db)
):
    """Approve or deny an early-departure request"""
    approver = (request_data.approver_email or "").strip().lower() or actor
    application = set_ops_override(
        application_id, request_data.approved, approver, db, notes=request_data.notes
    )
    return {
        "success": True,
        "status": application.status,
        "payment_allowed": application.payment_allowed,
    }


@router.post("/applications/{application_id}/reset-payment")
def reset_payment(application_id: int, actor: str = Depends(require_ops), db: Session = Depends(get_db)):
    """Return a stuck payment to pending_payment"""
    ops_logger.info(f"Payment reset for application {application_id} requested by {actor}")
    application = admin_reset_payment(application_id, db, actor=ACTOR_ADMIN)
    return {"success": True, "status": application.status}


@router.post("/applications/{application_id}/confirm-payment")
def confirm_payment_manually(application_id: int, actor: str = Depends(require_ops), db: Session = Depends(get_db)):
    """Confirm a payment verified outside the normal flow"""
    ops_logger.info(f"Manual confirm for application {application_id} requested by {actor}")
    return admin_manual_confirm(application_id, db, actor=ACTOR_ADMIN)


# ============================================================================
# EVENT LOG
# ============================================================================

@router.get("/events")
def get_events(
    event_type: Optional[EventType] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    actor: str = Depends(require_ops),
    db: Session = Depends(get_db)
):
    """Most recent audit events, optionally by type"""
    return {"events": [event_to_dict(e) for e in list_recent_events(db, limit=limit, event_type=event_type)]}


@router.get("/events/application/{application_id}")
def get_application_events(application_id: int, actor: str = Depends(require_ops), db: Session = Depends(get_db)):
    return {"events": [event_to_dict(e) for e in get_events_by_application(application_id, db)]}


@router.get("/events/session/{session_id}")
def get_session_events(session_id: str, actor: str = Depends(require_ops), db: Session = Depends(get_db)):
    return {"events": [event_to_dict(e) for e in get_events_by_session(session_id, db)]}


# ============================================================================
# CONFIG
# ============================================================================

@router.get("/config")
def get_config_entries(actor: str = Depends(require_ops), db: Session = Depends(get_db)):
    """Resolved config with the stored overrides"""
    return list_config_entries(db)


@router.put("/config/{key}")
def update_config(
    key: str,
    request_data: ConfigUpdateRequest,
    actor: str = Depends(require_ops),
    db: Session = Depends(get_db)
):
    """Set a runtime override"""
    row = set_config(key, request_data.value, actor, db, description=request_data.description)
    return {"key": row.key, "value": row.value, "description": row.description}


@router.delete("/config/{key}")
def remove_config(key: str, actor: str = Depends(require_ops), db: Session = Depends(get_db)):
    """Drop a runtime override, reverting the key to its default"""
    if not delete_config(key, actor, db):
        raise NotFound(f'No override stored for config key "{key}"')
    return {"success": True}


config_router = APIRouter(prefix="/api/config", tags=["config"])


@config_router.get("")
def get_public_config(db: Session = Depends(get_db)):
    """Resolved camp configuration for display"""
    return get_all_config(db)
