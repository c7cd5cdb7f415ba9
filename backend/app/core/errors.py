"""
Domain exception classes.

Every error the services raise derives from CampError and carries the HTTP
status the API layer answers with. Services never build HTTP responses
themselves; main.py registers one handler that renders these.
"""
from typing import Optional

from fastapi import status


class CampError(Exception):
    """Base class for all expected, user-facing failures."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "ERROR"
    default_message: str = "Request failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


# ============================================================================
# AUTHORIZATION
# ============================================================================

class Unauthorized(CampError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"
    default_message = "Unauthorized: Invalid ops password"


class ServerMisconfigured(CampError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "SERVER_MISCONFIGURED"
    default_message = "Server configuration error"


# ============================================================================
# STATE
# ============================================================================

class InvalidState(CampError):
    status_code = status.HTTP_409_CONFLICT
    code = "INVALID_STATE"
    default_message = "Operation not allowed in the application's current state"


class DuplicateApplication(CampError):
    status_code = status.HTTP_409_CONFLICT
    code = "DUPLICATE_APPLICATION"
    default_message = (
        "You already have an application. Please contact us if you need to make changes."
    )


# ============================================================================
# POLICY
# ============================================================================

class PolicyError(CampError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "POLICY"


class AllowlistRejected(PolicyError):
    code = "NOT_ALLOWLISTED"
    default_message = "This email address is not on the invite list"


class ApplicationsClosed(PolicyError):
    code = "APPLICATIONS_CLOSED"
    default_message = "Applications are currently closed"


class PaymentsDisabled(PolicyError):
    code = "PAYMENTS_DISABLED"
    default_message = "Payments are currently disabled"


class CapacityFull(PolicyError):
    code = "CAPACITY_FULL"
    default_message = "Camp is full. No reservation spots remain."


class PaymentNotAllowed(PolicyError):
    code = "PAYMENT_NOT_ALLOWED"
    default_message = "Payment not allowed for this application"


class ConfigImmutable(PolicyError):
    code = "CONFIG_IMMUTABLE"
    default_message = "This configuration key cannot be overridden at runtime"


# ============================================================================
# VALIDATION
# ============================================================================

class ValidationFailed(CampError):
    status_code = 422  # Unprocessable Content
    code = "VALIDATION_FAILED"
    default_message = "Validation failed"


class ReasonRequired(ValidationFailed):
    code = "REASON_REQUIRED"
    default_message = "A reason is required when requesting early departure"


class InvalidConfigValue(ValidationFailed):
    code = "INVALID_CONFIG_VALUE"


class ApplicationValidationError(ValidationFailed):
    """Cross-field or identity validation failure on a submitted application."""

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


# ============================================================================
# EXTERNAL DEPENDENCIES
# ============================================================================

class PaymentProviderError(CampError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "PAYMENT_PROVIDER_ERROR"
    default_message = "Payment provider request failed"


class WebhookVerificationError(CampError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "WEBHOOK_VERIFICATION_FAILED"
    default_message = "Webhook signature verification failed"


# ============================================================================
# NOT FOUND
# ============================================================================

class NotFound(CampError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Not found"
