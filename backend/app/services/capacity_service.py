"""Capacity guard - confirmed members against the configured cap"""
import logging
from typing import Dict, Optional
from sqlalchemy.orm import Session

from app.models.application import Application, ApplicationStatus
from app.services.config_service import get_config_value, parse_max_members

logger = logging.getLogger(__name__)


def count_confirmed(db: Session) -> int:
    return db.query(Application).filter(
        Application.status == ApplicationStatus.CONFIRMED.value
    ).count()


def compute_capacity(confirmed_count: int, max_members: int) -> Dict[str, Optional[int]]:
    """Capacity figures for a count and a cap (0 = unlimited)"""
    if max_members == 0:
        return {
            "confirmed_count": confirmed_count,
            "max_members": 0,
            "is_full": False,
            "spots_remaining": None,
        }
    return {
        "confirmed_count": confirmed_count,
        "max_members": max_members,
        "is_full": confirmed_count >= max_members,
        "spots_remaining": max(0, max_members - confirmed_count),
    }


def get_capacity_status(db: Session) -> Dict[str, Optional[int]]:
    """Fresh capacity snapshot

    Raises:
        InvalidConfigValue: If maxMembers is not a non-negative integer string.
            A corrupt cap fails closed instead of reading as unlimited.
    """
    max_members = parse_max_members(get_config_value("maxMembers", db) or "")
    return compute_capacity(count_confirmed(db), max_members)


def is_full(db: Session) -> bool:
    return bool(get_capacity_status(db)["is_full"])
