"""Allowlist gate - invite list of e-mail addresses allowed to apply"""
import logging
from typing import Dict, Iterable, List, Optional
from sqlalchemy.orm import Session

from app.core.errors import NotFound
from app.models.allowlist_entry import AllowlistEntry
from app.services.config_service import get_config_value, is_flag_enabled
from app.services.event_log_service import (
    EventType, log_event, build_admin_payload
)

logger = logging.getLogger(__name__)
ops_logger = logging.getLogger("ops")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_allowlist_enabled(db: Session) -> bool:
    return is_flag_enabled(get_config_value("allowlistEnabled", db))


def is_email_allowed(email: str, db: Session) -> bool:
    normalized = normalize_email(email)
    if not normalized:
        return False
    return db.query(AllowlistEntry).filter(AllowlistEntry.email == normalized).first() is not None


def add_emails(
    emails: Iterable[str],
    added_by: str,
    db: Session,
    notes: Optional[str] = None
) -> Dict[str, int]:
    """Add e-mails in bulk, skipping ones already present

    Returns:
        Dict with 'added', 'duplicates' (within-batch and against existing
        entries) and 'total' (number of e-mails submitted)
    """
    submitted = [normalize_email(e) for e in emails]
    submitted = [e for e in submitted if e]

    # dict.fromkeys keeps first-seen order while dropping case-insensitive repeats
    unique_emails = list(dict.fromkeys(submitted))
    duplicates = len(submitted) - len(unique_emails)

    existing = set()
    if unique_emails:
        existing = {
            row.email for row in db.query(AllowlistEntry.email).filter(
                AllowlistEntry.email.in_(unique_emails)
            ).all()
        }

    added = 0
    for email in unique_emails:
        if email in existing:
            duplicates += 1
            continue
        db.add(AllowlistEntry(email=email, added_by=added_by, notes=notes))
        added += 1

    log_event(
        db,
        EventType.ALLOWLIST_EMAILS_ADDED,
        build_admin_payload(
            EventType.ALLOWLIST_EMAILS_ADDED, added_by,
            totalAdded=added, duplicates=duplicates, submitted=len(submitted)
        ),
        actor=added_by,
        commit=False,
    )
    db.commit()
    ops_logger.info(f"Allowlist: {added} added, {duplicates} duplicates by {added_by}")

    return {"added": added, "duplicates": duplicates, "total": len(submitted)}


def remove_email(email: str, removed_by: str, db: Session) -> Dict:
    """Remove a single e-mail

    Raises:
        NotFound: If the e-mail is not on the allowlist
    """
    normalized = normalize_email(email)
    entry = db.query(AllowlistEntry).filter(AllowlistEntry.email == normalized).first()
    if not entry:
        raise NotFound("Email not found in allowlist")

    db.delete(entry)
    log_event(
        db,
        EventType.ALLOWLIST_EMAIL_REMOVED,
        build_admin_payload(EventType.ALLOWLIST_EMAIL_REMOVED, removed_by, email=normalized),
        actor=removed_by,
        commit=False,
    )
    db.commit()
    ops_logger.info(f"Allowlist: {normalized} removed by {removed_by}")
    return {"success": True}


def remove_emails(emails: Iterable[str], removed_by: str, db: Session) -> Dict[str, int]:
    """Remove e-mails in bulk; absent entries are skipped"""
    normalized = [normalize_email(e) for e in emails]
    normalized = [e for e in normalized if e]

    removed = 0
    if normalized:
        entries = db.query(AllowlistEntry).filter(AllowlistEntry.email.in_(set(normalized))).all()
        for entry in entries:
            db.delete(entry)
            removed += 1

    log_event(
        db,
        EventType.ALLOWLIST_EMAILS_REMOVED_BULK,
        build_admin_payload(EventType.ALLOWLIST_EMAILS_REMOVED_BULK, removed_by, count=removed),
        actor=removed_by,
        commit=False,
    )
    db.commit()
    ops_logger.info(f"Allowlist: {removed} of {len(normalized)} removed by {removed_by}")
    return {"removed": removed, "total": len(normalized)}


def list_allowed_emails(db: Session) -> List[AllowlistEntry]:
    return db.query(AllowlistEntry).order_by(AllowlistEntry.added_at.desc(), AllowlistEntry.id.desc()).all()


def count_allowed_emails(db: Session) -> int:
    return db.query(AllowlistEntry).count()


def get_allowlist_diagnostic(email: str, db: Session) -> Dict:
    """Explain why an e-mail would or would not pass the gate"""
    normalized = normalize_email(email)
    return {
        "email": normalized,
        "allowlist_enabled": is_allowlist_enabled(db),
        "allowlist_config_value": get_config_value("allowlistEnabled", db) or "not set",
        "is_email_in_allowlist": is_email_allowed(normalized, db),
        "total_allowlisted_emails": count_allowed_emails(db),
    }


def entry_to_dict(entry: AllowlistEntry) -> Dict:
    return {
        "email": entry.email,
        "added_by": entry.added_by,
        "notes": entry.notes,
        "added_at": entry.added_at.isoformat() if entry.added_at else None,
    }
