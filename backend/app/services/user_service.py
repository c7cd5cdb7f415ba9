"""Users as provided by the sign-in layer"""
import logging
from typing import Optional
from sqlalchemy.orm import Session

from app.models.user import User

logger = logging.getLogger(__name__)


def get_user_by_id(user_id: int, db: Session) -> Optional[User]:
    """Get user by ID"""
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(email: str, db: Session) -> Optional[User]:
    """Get user by email"""
    return db.query(User).filter(User.email == email.strip().lower()).first()


def create_user(email: str, db: Session, name: Optional[str] = None) -> User:
    """Create a user for a verified e-mail address

    Raises:
        ValueError: If the e-mail is already registered
    """
    normalized = email.strip().lower()
    if get_user_by_email(normalized, db):
        raise ValueError("Email already registered")

    user = User(email=normalized, name=name)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"User {user.id} created for {normalized}")
    return user
