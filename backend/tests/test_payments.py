"""Payment reconciler tests (Stripe mocked)"""
import json
import pytest
from unittest.mock import Mock, patch

from app.core.config import settings
from app.core.errors import (
    CapacityFull, NotFound, PaymentNotAllowed, PaymentProviderError, PaymentsDisabled,
    ServerMisconfigured, WebhookVerificationError
)
from app.models.application import Application
from app.models.event_log import EventLog
from app.models.stripe_event import StripeEvent
from app.services.application_service import (
    admin_manual_confirm, attach_checkout_session, create_application
)
from app.services.config_service import set_config
from app.services.payment_service import (
    REFUND_FAILED_MESSAGE, REFUND_ISSUED_MESSAGE, initiate_checkout, issue_refund,
    process_stripe_webhook, reconcile_checkout_completed, verify_checkout_session
)

from conftest import (
    TEST_USER_2_EMAIL, FakeInvalidRequestError, FakeSignatureVerificationError,
    FakeStripeError, application_form, paid_session, webhook_event
)

FRONTEND_URL = "http://localhost:3000"


def events_of_type(db_session, event_type):
    return db_session.query(EventLog).filter(EventLog.event_type == event_type).all()


@pytest.mark.critical
class TestInitiateCheckout:
    """Test the last gate before money moves"""

    def test_creates_session_for_pinned_fee(self, db_session, test_user, pending_application, auto_mock_stripe):
        result = initiate_checkout(test_user.id, FRONTEND_URL, db_session)

        assert result == {"session_id": "cs_test123", "url": "https://checkout.stripe.com/test"}
        kwargs = auto_mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["mode"] == "payment"
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 15000
        assert kwargs["metadata"] == {"application_id": str(pending_application.id), "email": "member@dementha.org"}
        assert kwargs["success_url"].startswith(f"{FRONTEND_URL}/payment/success")

        db_session.refresh(pending_application)
        assert pending_application.checkout_session_id == "cs_test123"
        assert pending_application.status == "pending_payment"
        assert len(events_of_type(db_session, "payment_initiated")) == 1

    def test_no_application(self, db_session, test_user):
        with pytest.raises(NotFound):
            initiate_checkout(test_user.id, FRONTEND_URL, db_session)

    def test_payments_disabled(self, db_session, test_user, pending_application, auto_mock_stripe):
        set_config("paymentsEnabled", "false", "ops", db_session)
        with pytest.raises(PaymentsDisabled):
            initiate_checkout(test_user.id, FRONTEND_URL, db_session)
        auto_mock_stripe.checkout.Session.create.assert_not_called()

    def test_review_pending_cannot_pay(self, db_session, test_user, review_application, auto_mock_stripe):
        with pytest.raises(PaymentNotAllowed):
            initiate_checkout(test_user.id, FRONTEND_URL, db_session)
        auto_mock_stripe.checkout.Session.create.assert_not_called()

    def test_confirmed_cannot_pay_again(self, db_session, test_user, pending_application):
        admin_manual_confirm(pending_application.id, db_session)
        with pytest.raises(PaymentNotAllowed):
            initiate_checkout(test_user.id, FRONTEND_URL, db_session)

    def test_full_camp(self, db_session, test_user, test_user_2, pending_application, auto_mock_stripe):
        other = create_application(test_user_2, application_form(email=TEST_USER_2_EMAIL), db_session)
        admin_manual_confirm(other.id, db_session)
        set_config("maxMembers", "1", "ops", db_session)

        with pytest.raises(CapacityFull):
            initiate_checkout(test_user.id, FRONTEND_URL, db_session)
        auto_mock_stripe.checkout.Session.create.assert_not_called()

    def test_stripe_failure_leaves_state_untouched(self, db_session, test_user, pending_application, auto_mock_stripe):
        auto_mock_stripe.checkout.Session.create.side_effect = FakeStripeError("API down")

        with pytest.raises(PaymentProviderError):
            initiate_checkout(test_user.id, FRONTEND_URL, db_session)

        db_session.refresh(pending_application)
        assert pending_application.checkout_session_id is None
        assert events_of_type(db_session, "payment_initiated") == []

    def test_reuses_open_session(self, db_session, test_user, pending_application, auto_mock_stripe):
        attach_checkout_session(pending_application, "cs_existing", 15000, db_session)
        auto_mock_stripe.checkout.Session.retrieve.return_value = {
            "id": "cs_existing", "status": "open", "url": "https://checkout.stripe.com/existing",
        }

        result = initiate_checkout(test_user.id, FRONTEND_URL, db_session)

        assert result == {"session_id": "cs_existing", "url": "https://checkout.stripe.com/existing"}
        auto_mock_stripe.checkout.Session.create.assert_not_called()

    def test_replaces_expired_session(self, db_session, test_user, pending_application, auto_mock_stripe):
        attach_checkout_session(pending_application, "cs_old", 15000, db_session)
        auto_mock_stripe.checkout.Session.retrieve.return_value = {"id": "cs_old", "status": "expired", "url": None}

        result = initiate_checkout(test_user.id, FRONTEND_URL, db_session)

        assert result["session_id"] == "cs_test123"
        db_session.refresh(pending_application)
        assert pending_application.checkout_session_id == "cs_test123"


@pytest.mark.critical
class TestRefunds:
    """Test refunds after an over-capacity confirmation"""

    @pytest.fixture
    def overbooked(self, db_session, test_user, test_user_2):
        """Two pending applications with sessions, one spot, first one confirmed"""
        set_config("maxMembers", "1", "ops", db_session)
        first = create_application(test_user, application_form(), db_session)
        second = create_application(test_user_2, application_form(email=TEST_USER_2_EMAIL), db_session)
        attach_checkout_session(first, "cs_1", 15000, db_session)
        attach_checkout_session(second, "cs_2", 15000, db_session)
        reconcile_checkout_completed(paid_session("cs_1", "pi_1"), db_session)
        return first, second

    def test_loser_is_refunded(self, db_session, overbooked, auto_mock_stripe):
        first, second = overbooked

        result = reconcile_checkout_completed(paid_session("cs_2", "pi_2"), db_session)

        assert result["requires_refund"] is True
        assert result["refund"]["success"] is True
        assert result["message"] == REFUND_ISSUED_MESSAGE
        auto_mock_stripe.Refund.create.assert_called_once_with(payment_intent="pi_2")
        db_session.refresh(first)
        db_session.refresh(second)
        assert first.status == "confirmed"
        assert second.status == "pending_payment"
        assert len(events_of_type(db_session, "refund_issued")) == 1

    def test_already_refunded_counts_as_success(self, db_session, overbooked, auto_mock_stripe):
        auto_mock_stripe.Refund.create.side_effect = FakeInvalidRequestError(
            "Charge ch_2 has already been refunded.", code="charge_already_refunded"
        )

        result = reconcile_checkout_completed(paid_session("cs_2", "pi_2"), db_session)

        assert result["refund"]["success"] is True
        assert result["refund"]["already_refunded"] is True
        assert result["message"] == REFUND_ISSUED_MESSAGE

    def test_refund_failure_is_reported_honestly(self, db_session, overbooked, auto_mock_stripe):
        auto_mock_stripe.Refund.create.side_effect = FakeStripeError("Card network unavailable")

        result = reconcile_checkout_completed(paid_session("cs_2", "pi_2"), db_session)

        assert result["refund"]["success"] is False
        assert result["message"] == REFUND_FAILED_MESSAGE
        failed = events_of_type(db_session, "refund_failed")
        assert len(failed) == 1
        assert "Card network unavailable" in failed[0].payload

    def test_refunded_session_never_confirms_after_cap_raised(
        self, db_session, overbooked, test_user_2, auto_mock_stripe
    ):
        """Test a poll after ops frees a spot does not confirm a refunded payment"""
        first, second = overbooked
        reconcile_checkout_completed(paid_session("cs_2", "pi_2"), db_session)
        set_config("maxMembers", "2", "ops", db_session)
        auto_mock_stripe.checkout.Session.retrieve.return_value = paid_session(
            "cs_2", "pi_2", application_id=second.id
        )

        result = verify_checkout_session(test_user_2.id, "cs_2", db_session)

        assert result["confirmed"] is False
        assert result["requires_refund"] is True
        assert result["refund_succeeded"] is True
        db_session.refresh(second)
        assert second.status == "pending_payment"
        assert second.stripe_payment_intent_id is None
        assert len(events_of_type(db_session, "payment_success")) == 1

    def test_refunded_session_ignores_later_completion_event(self, db_session, overbooked, auto_mock_stripe):
        first, second = overbooked
        reconcile_checkout_completed(paid_session("cs_2", "pi_2"), db_session)
        set_config("maxMembers", "2", "ops", db_session)
        auto_mock_stripe.Webhook.construct_event.return_value = webhook_event(
            "checkout.session.async_payment_succeeded", paid_session("cs_2", "pi_2"), event_id="evt_late"
        )

        result = process_stripe_webhook(b"{}", "sig", db_session)

        assert result["status"] == "not_confirmed"
        assert result["requires_refund"] is True
        db_session.refresh(second)
        assert second.status == "pending_payment"

    def test_missing_payment_intent_cannot_refund(self, db_session, auto_mock_stripe):
        result = issue_refund("cs_9", None, db_session)

        assert result["success"] is False
        auto_mock_stripe.Refund.create.assert_not_called()
        assert len(events_of_type(db_session, "refund_failed")) == 1


@pytest.mark.critical
class TestVerifyCheckout:
    """Test the client poll path"""

    def test_unpaid_session_does_not_confirm(self, db_session, test_user, pending_application, auto_mock_stripe):
        attach_checkout_session(pending_application, "cs_test123", 15000, db_session)

        result = verify_checkout_session(test_user.id, "cs_test123", db_session)

        assert result["confirmed"] is False
        db_session.refresh(pending_application)
        assert pending_application.status == "pending_payment"

    def test_paid_session_confirms(self, db_session, test_user, pending_application, auto_mock_stripe):
        attach_checkout_session(pending_application, "cs_paid", 15000, db_session)
        auto_mock_stripe.checkout.Session.retrieve.return_value = paid_session(
            "cs_paid", "pi_1", application_id=pending_application.id
        )

        result = verify_checkout_session(test_user.id, "cs_paid", db_session)

        assert result["confirmed"] is True
        assert result["status"] == "confirmed"

    def test_other_users_session_is_not_found(self, db_session, test_user, test_user_2, pending_application):
        attach_checkout_session(pending_application, "cs_mine", 15000, db_session)
        create_application(test_user_2, application_form(email=TEST_USER_2_EMAIL), db_session)

        with pytest.raises(NotFound):
            verify_checkout_session(test_user_2.id, "cs_mine", db_session)

    def test_metadata_mismatch_is_not_found(self, db_session, test_user, pending_application, auto_mock_stripe):
        attach_checkout_session(pending_application, "cs_x", 15000, db_session)
        auto_mock_stripe.checkout.Session.retrieve.return_value = paid_session("cs_x", "pi_x", application_id=999)

        with pytest.raises(NotFound):
            verify_checkout_session(test_user.id, "cs_x", db_session)

    def test_webhook_and_poll_converge(self, db_session, test_user, pending_application, auto_mock_stripe):
        """Test the webhook confirming first leaves the poll a no-op"""
        attach_checkout_session(pending_application, "cs_1", 15000, db_session)
        auto_mock_stripe.Webhook.construct_event.return_value = webhook_event(
            "checkout.session.completed", paid_session("cs_1", "pi_1")
        )
        process_stripe_webhook(b"{}", "t=1,v1=sig", db_session)

        result = verify_checkout_session(test_user.id, "cs_1", db_session)

        assert result["confirmed"] is True
        assert len(events_of_type(db_session, "payment_success")) == 1


@pytest.mark.critical
class TestStripeWebhook:
    """Test webhook verification, dispatch and replay handling"""

    def test_completed_confirms(self, db_session, pending_application, auto_mock_stripe):
        attach_checkout_session(pending_application, "cs_1", 15000, db_session)
        auto_mock_stripe.Webhook.construct_event.return_value = webhook_event(
            "checkout.session.completed", paid_session("cs_1", "pi_1")
        )

        result = process_stripe_webhook(b"{}", "t=1,v1=sig", db_session)

        assert result["status"] == "success"
        db_session.refresh(pending_application)
        assert pending_application.status == "confirmed"
        stripe_event = db_session.query(StripeEvent).one()
        assert stripe_event.processed is True
        assert stripe_event.error_message is None
        auto_mock_stripe.Webhook.construct_event.assert_called_once_with(b"{}", "t=1,v1=sig", settings.STRIPE_WEBHOOK_SECRET)

    def test_replay_is_not_reapplied(self, db_session, pending_application, auto_mock_stripe):
        attach_checkout_session(pending_application, "cs_1", 15000, db_session)
        auto_mock_stripe.Webhook.construct_event.return_value = webhook_event(
            "checkout.session.completed", paid_session("cs_1", "pi_1")
        )
        process_stripe_webhook(b"{}", "t=1,v1=sig", db_session)

        result = process_stripe_webhook(b"{}", "t=1,v1=sig", db_session)

        assert result == {"status": "already_processed"}
        assert len(events_of_type(db_session, "payment_success")) == 1

    def test_unpaid_completion_waits(self, db_session, pending_application, auto_mock_stripe):
        attach_checkout_session(pending_application, "cs_1", 15000, db_session)
        session = paid_session("cs_1", None)
        session["payment_status"] = "unpaid"
        auto_mock_stripe.Webhook.construct_event.return_value = webhook_event("checkout.session.completed", session)

        assert process_stripe_webhook(b"{}", "sig", db_session)["status"] == "pending"
        db_session.refresh(pending_application)
        assert pending_application.status == "pending_payment"

    @pytest.mark.parametrize("event_type", ["checkout.session.expired", "checkout.session.async_payment_failed"])
    def test_failure_events_revert(self, db_session, pending_application, auto_mock_stripe, event_type):
        attach_checkout_session(pending_application, "cs_1", 15000, db_session)
        auto_mock_stripe.Webhook.construct_event.return_value = webhook_event(event_type, {"id": "cs_1"})

        assert process_stripe_webhook(b"{}", "sig", db_session)["status"] == "success"
        db_session.refresh(pending_application)
        assert pending_application.checkout_session_id is None
        assert len(events_of_type(db_session, "payment_failed")) == 1

    def test_unknown_session_is_acknowledged(self, db_session, auto_mock_stripe):
        auto_mock_stripe.Webhook.construct_event.return_value = webhook_event(
            "checkout.session.completed", paid_session("cs_ghost", "pi_ghost")
        )

        result = process_stripe_webhook(b"{}", "sig", db_session)

        assert result["status"] == "not_confirmed"
        assert len(events_of_type(db_session, "webhook_error")) == 1
        auto_mock_stripe.Refund.create.assert_not_called()

    def test_bad_signature_is_rejected_and_logged(self, db_session, auto_mock_stripe):
        auto_mock_stripe.Webhook.construct_event.side_effect = FakeSignatureVerificationError("bad sig")

        with pytest.raises(WebhookVerificationError):
            process_stripe_webhook(b"{}", "sig", db_session)

        assert len(events_of_type(db_session, "webhook_error")) == 1
        assert db_session.query(StripeEvent).count() == 0

    def test_missing_signature_header(self, db_session, auto_mock_stripe):
        with pytest.raises(WebhookVerificationError):
            process_stripe_webhook(b"{}", None, db_session)
        auto_mock_stripe.Webhook.construct_event.assert_not_called()

    def test_missing_secret_is_misconfiguration(self, db_session):
        with patch.object(settings, "STRIPE_WEBHOOK_SECRET", ""):
            with pytest.raises(ServerMisconfigured):
                process_stripe_webhook(b"{}", "sig", db_session)

    def test_processing_error_is_acknowledged(self, db_session, pending_application, auto_mock_stripe):
        attach_checkout_session(pending_application, "cs_1", 15000, db_session)
        auto_mock_stripe.Webhook.construct_event.return_value = webhook_event(
            "checkout.session.completed", paid_session("cs_1", "pi_1")
        )

        with patch("app.services.payment_service.confirm_payment", Mock(side_effect=RuntimeError("db hiccup"))):
            result = process_stripe_webhook(b"{}", "sig", db_session)

        assert result == {"status": "error_logged"}
        stripe_event = db_session.query(StripeEvent).one()
        assert stripe_event.processed is True
        assert stripe_event.error_message == "db hiccup"
        error = events_of_type(db_session, "webhook_error")[0]
        assert json.loads(error.payload)["webhookType"] == "checkout.session.completed"

    def test_other_event_types_are_ignored(self, db_session):
        assert process_stripe_webhook(b"{}", "sig", db_session)["status"] == "ignored"
        assert db_session.query(Application).count() == 0
