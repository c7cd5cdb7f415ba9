"""Member application API routes"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.security import require_auth, require_csrf
from app.db.session import get_db
from app.models.user import User
from app.schemas.applications import ApplicationCreate, ApplicationCreated
from app.services.allowlist_service import is_allowlist_enabled, is_email_allowed
from app.services.application_service import (
    application_to_dict, create_application, get_application_for_user
)
from app.services.user_service import get_user_by_id

router = APIRouter(prefix="/api/applications", tags=["applications"])
logger = logging.getLogger(__name__)


def _load_user(user_id: int, db: Session) -> User:
    user = get_user_by_id(user_id, db)
    if not user:
        # Session outlived the user row
        raise HTTPException(401, "User no longer exists. Please log in again.")
    return user


@router.post("", response_model=ApplicationCreated, status_code=status.HTTP_201_CREATED)
def submit_application(
    data: ApplicationCreate,
    user_id: int = Depends(require_csrf),
    db: Session = Depends(get_db)
):
    """Submit the signed-in user's application"""
    user = _load_user(user_id, db)
    application = create_application(user, data, db)
    return ApplicationCreated(
        application_id=application.id,
        status=application.status,
        payment_allowed=application.payment_allowed,
        requires_ops_review=application.early_departure_requested,
    )


@router.get("/me")
def get_my_application(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Get the signed-in user's application"""
    application = get_application_for_user(user_id, db)
    if not application:
        return {"application": None}
    return {"application": application_to_dict(application)}


@router.get("/allowlist-status")
def get_my_allowlist_status(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Whether the allowlist is on and the signed-in user's e-mail is on it"""
    user = _load_user(user_id, db)
    return {
        "enabled": is_allowlist_enabled(db),
        "allowed": is_email_allowed(user.email, db),
    }
