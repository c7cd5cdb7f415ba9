"""Shared pytest fixtures for test suite"""
import os
import pytest
import sys
from datetime import date
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import fakeredis
import secrets

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Process settings are read once at import time
TEST_OPS_PASSWORD = "test-ops-password"
TEST_WEBHOOK_SECRET = "whsec_test123"
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("OPS_PWD", TEST_OPS_PASSWORD)
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)

from app.main import app
from app.db.session import get_db
from app.models import Base
from app.models.user import User
from app.models.application import Application
from app.schemas.applications import ApplicationCreate
from app.services.application_service import create_application
from app.services.user_service import create_user
from app.db import redis as redis_module


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

TEST_USER_EMAIL = "member@dementha.org"
TEST_USER_2_EMAIL = "member2@dementha.org"

# Compliant stay: departs after the default 2026-09-06 cutoff
DEFAULT_ARRIVAL = date(2026, 8, 28)
DEFAULT_DEPARTURE = date(2026, 9, 7)
EARLY_DEPARTURE = date(2026, 9, 3)


def application_payload(email: str = TEST_USER_EMAIL, **overrides) -> dict:
    """JSON body for an application submission"""
    payload = {
        "first_name": "Robin",
        "last_name": "Sands",
        "email": email,
        "phone": "+1 (415) 555-0134",
        "arrival": DEFAULT_ARRIVAL.isoformat(),
        "arrival_time": "11.01 am to 6.00 pm",
        "departure": DEFAULT_DEPARTURE.isoformat(),
        "departure_time": "12:01 am to 11.00 am",
        "dietary_preference": "vegetarian",
        "allergy_flag": False,
    }
    payload.update(overrides)
    return payload


def application_form(email: str = TEST_USER_EMAIL, **overrides) -> ApplicationCreate:
    return ApplicationCreate(**application_payload(email, **overrides))


class FakeStripeError(Exception):
    def __init__(self, message=None, code=None):
        super().__init__(message)
        self.code = code


class FakeInvalidRequestError(FakeStripeError):
    pass


class FakeSignatureVerificationError(FakeStripeError):
    pass


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)

    # Every helper in the redis module goes through the lazily created client
    with patch.object(redis_module, '_client', fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """Create a signed-in member"""
    return create_user(TEST_USER_EMAIL, db_session, name="Robin Sands")


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    """Create a second member for ownership and capacity tests"""
    return create_user(TEST_USER_2_EMAIL, db_session, name="Kit Dune")


@pytest.fixture(scope="function")
def pending_application(test_user: User, db_session: Session) -> Application:
    """Application that went straight to pending_payment"""
    return create_application(test_user, application_form(), db_session)


@pytest.fixture(scope="function")
def review_application(test_user: User, db_session: Session) -> Application:
    """Application waiting for an early-departure decision"""
    form = application_form(
        departure=EARLY_DEPARTURE.isoformat(),
        early_departure_reason="Work commitment on the 4th",
    )
    return create_application(test_user, form, db_session)


def login(client: TestClient, redis_client, user: User) -> TestClient:
    """Attach a session cookie and CSRF token for a user"""
    session_id = secrets.token_urlsafe(16)
    csrf_token = secrets.token_urlsafe(32)
    redis_client.setex(f"session:{session_id}", 2592000, str(user.id))
    redis_client.setex(f"csrf:{session_id}", 2592000, csrf_token)
    client.cookies.set("session_id", session_id)
    client.headers.update({"X-CSRF-Token": csrf_token})
    return client


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, test_user: User, mock_redis) -> TestClient:
    """Client with authenticated user session and CSRF token"""
    return login(client, mock_redis, test_user)


@pytest.fixture(scope="function")
def ops_headers() -> dict:
    return {"X-Ops-Password": TEST_OPS_PASSWORD, "X-Ops-Email": "lead@dementha.org"}


@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Automatically mock Stripe for all tests to prevent real API calls"""
    with patch('app.services.stripe_service.stripe') as mock_stripe_module:
        # Mock Checkout operations
        mock_stripe_module.checkout.Session.create = Mock(return_value={
            "id": "cs_test123",
            "url": "https://checkout.stripe.com/test"
        })
        mock_stripe_module.checkout.Session.retrieve = Mock(return_value={
            "id": "cs_test123",
            "status": "open",
            "payment_status": "unpaid",
            "amount_total": 15000,
            "payment_intent": None,
            "url": "https://checkout.stripe.com/test",
            "metadata": {},
        })

        # Mock Refund operations
        mock_stripe_module.Refund.create = Mock(return_value={"id": "re_test123"})

        # Mock Webhook operations
        mock_stripe_module.Webhook.construct_event = Mock(return_value={
            "id": "evt_test123",
            "type": "customer.created",
            "data": {"object": {}}
        })

        # Mock error classes
        mock_stripe_module.error.StripeError = FakeStripeError
        mock_stripe_module.error.InvalidRequestError = FakeInvalidRequestError
        mock_stripe_module.error.SignatureVerificationError = FakeSignatureVerificationError

        yield mock_stripe_module


def paid_session(session_id: str, payment_intent: str, amount_total: int = 15000, application_id=None) -> dict:
    """Checkout session object as Stripe returns it once paid"""
    return {
        "id": session_id,
        "status": "complete",
        "payment_status": "paid",
        "amount_total": amount_total,
        "payment_intent": payment_intent,
        "url": None,
        "metadata": {"application_id": str(application_id)} if application_id is not None else {},
    }


def webhook_event(event_type: str, data: dict, event_id: str = "evt_test123") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": data}}
