#!/usr/bin/env python3
"""
Fix stuck reservation payments from the command line.

Usage:
    # Return a stuck payment to pending_payment (drops its checkout session)
    python payment_admin.py reset --application-id 42
    python payment_admin.py reset --email member@example.com

    # Confirm a payment verified in the Stripe dashboard
    python payment_admin.py confirm --application-id 42
"""

import argparse
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session

from app.core.errors import CampError
from app.db.session import SessionLocal
from app.models.application import Application
from app.services.application_service import admin_manual_confirm, admin_reset_payment


def resolve_application_id(db: Session, application_id: int = None, email: str = None):
    if application_id is not None:
        return application_id
    application = db.query(Application).filter(Application.email == email.strip().lower()).first()
    return application.id if application else None


def reset_payment(db: Session, application_id: int) -> bool:
    """Reset a payment back to pending_payment"""
    try:
        application = admin_reset_payment(application_id, db)
    except CampError as e:
        print(f"❌ {e.message}")
        return False
    print(f"✅ Application {application.id} reset")
    print(f"   Status: {application.status}")
    return True


def confirm_payment(db: Session, application_id: int) -> bool:
    """Manually confirm a payment"""
    try:
        result = admin_manual_confirm(application_id, db)
    except CampError as e:
        print(f"❌ {e.message}")
        return False
    if result["already_confirmed"]:
        print(f"ℹ️  Application {application_id} was already confirmed")
    else:
        print(f"✅ Application {application_id} confirmed")
    return True


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description='Fix stuck reservation payments',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python payment_admin.py reset --application-id 42
  python payment_admin.py confirm --email member@example.com
        """
    )
    parser.add_argument('command', choices=['reset', 'confirm'], help='Action to perform')
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('--application-id', type=int, help='Application ID')
    target.add_argument('--email', help='Applicant email address')

    args = parser.parse_args(argv)

    db = SessionLocal()
    try:
        application_id = resolve_application_id(db, args.application_id, args.email)
        if application_id is None:
            print(f"❌ No application found for {args.email}")
            return 1

        if args.command == 'reset':
            ok = reset_payment(db, application_id)
        else:
            ok = confirm_payment(db, application_id)
        return 0 if ok else 1
    finally:
        db.close()


if __name__ == '__main__':
    sys.exit(main())
