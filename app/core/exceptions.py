"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.

Expected business outcomes (wrong status, expired code, missing payout account)
are returned as typed results carrying a ``ReasonCode``. Exceptions are reserved
for the HTTP boundary (``BookingActionError``) and for genuinely unexpected
failures, including the payment provider client's transport errors.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # External service errors (5xxx)
    PAYMENT_PROVIDER_ERROR = "ERR_5001"
    NOTIFICATION_DISPATCH_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class ReasonCode(str, Enum):
    """Machine-checkable reasons carried by every failed booking, payment,
    escrow, code or cancellation operation. Clients branch on these values."""

    BOOKING_NOT_FOUND = "booking_not_found"
    TRIP_NOT_FOUND = "trip_not_found"
    FORBIDDEN = "forbidden"
    INVALID_STATUS = "invalid_status"
    VALIDATION_ERROR = "validation_error"

    # Payout account of the receiver
    STRIPE_ACCOUNT_REQUIRED = "stripe_account_required"
    STRIPE_ACCOUNT_INCOMPLETE = "stripe_account_incomplete"

    # Payment provider
    PAYMENT_AUTHORIZATION_MISSING = "payment_authorization_missing"
    PAYMENT_PROVIDER_ERROR = "payment_provider_error"
    PAYMENT_OUTCOME_UNKNOWN = "payment_outcome_unknown"
    PAYMENT_RECONCILIATION_PENDING = "payment_reconciliation_pending"

    # Verification codes
    CODE_NOT_FOUND = "code_not_found"
    CODE_INVALID = "code_invalid"
    CODE_EXPIRED = "code_expired"
    CODE_ATTEMPTS_EXHAUSTED = "code_attempts_exhausted"
    CODE_ALREADY_ACTIVE = "code_already_active"

    # Escrow ledger
    ESCROW_NOT_FOUND = "escrow_not_found"
    ESCROW_ALREADY_EXISTS = "escrow_already_exists"
    ESCROW_NOT_HOLDING = "escrow_not_holding"

    # Cancellation policy
    CANCELLATION_NOT_ALLOWED = "cancellation_not_allowed"
    CANCELLATION_LIMIT_REACHED = "cancellation_limit_reached"
    TRIP_HAS_ACTIVE_TRANSPORT = "trip_has_active_transport"
    USER_SUSPENDED = "user_suspended"


# HTTP status per reason; anything not listed maps to 400
_REASON_STATUS_CODES: dict[ReasonCode, int] = {
    ReasonCode.BOOKING_NOT_FOUND: 404,
    ReasonCode.TRIP_NOT_FOUND: 404,
    ReasonCode.CODE_NOT_FOUND: 404,
    ReasonCode.ESCROW_NOT_FOUND: 404,
    ReasonCode.FORBIDDEN: 403,
    ReasonCode.INVALID_STATUS: 409,
    ReasonCode.CODE_ALREADY_ACTIVE: 409,
    ReasonCode.ESCROW_ALREADY_EXISTS: 409,
    ReasonCode.ESCROW_NOT_HOLDING: 409,
    ReasonCode.PAYMENT_RECONCILIATION_PENDING: 409,
    ReasonCode.TRIP_HAS_ACTIVE_TRANSPORT: 409,
    ReasonCode.PAYMENT_PROVIDER_ERROR: 502,
    ReasonCode.PAYMENT_OUTCOME_UNKNOWN: 202,
}


def status_code_for_reason(reason: ReasonCode) -> int:
    """HTTP status used when a failed result is surfaced to a client"""
    return _REASON_STATUS_CODES.get(reason, 400)


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode | ReasonCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "success": False,
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class BookingActionError(AppException):
    """A denied booking/payment/code/cancellation action, surfaced over HTTP.

    Carries the domain ``ReasonCode`` as the error code so clients can decide
    between remedial action (e.g. configure a payout account) and plain display.
    """

    def __init__(
        self,
        reason: ReasonCode,
        message: str,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=reason,
            status_code=status_code_for_reason(reason),
            details=details
        )
        self.reason = reason

    @classmethod
    def from_result(cls, result: Any) -> "BookingActionError":
        """Build from any failed result object exposing reason/message/details"""
        return cls(
            reason=result.reason,
            message=result.message,
            details=dict(getattr(result, "details", None) or {}),
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class PaymentProviderError(ExternalServiceException):
    """The provider answered and refused the request (definite failure)"""

    def __init__(
        self,
        message: str,
        provider_code: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name="payment_provider",
            message=f"Payment provider error: {message}",
            error_code=ErrorCode.PAYMENT_PROVIDER_ERROR,
            details=details
        )
        self.provider_code = provider_code
        if provider_code:
            self.details["provider_code"] = provider_code

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "PaymentProviderError":
        """
        Build from an HTTP response of the provider.

        Args:
            operation: provider operation (e.g. create_payment_intent)
            response: response object (httpx.Response)
            max_response_chars: cap on stored response text to keep logs small
        """
        status_code = getattr(response, "status_code", None)
        provider_code = None
        message = f"{operation} returned status {status_code}"
        try:
            error = (response.json() or {}).get("error") or {}
            provider_code = error.get("code") or error.get("type")
            if error.get("message"):
                message = error["message"]
        except ValueError:
            pass
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message,
            provider_code=provider_code,
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class PaymentProviderUnavailable(ExternalServiceException):
    """The request never reached the provider (connection refused, DNS)"""

    def __init__(self, operation: str, message: str):
        super().__init__(
            service_name="payment_provider",
            message=f"{operation} could not reach the provider: {message}",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"operation": operation}
        )
        self.operation = operation


class PaymentOutcomeUnknown(ExternalServiceException):
    """The request may or may not have been applied by the provider.

    Raised on timeouts, dropped connections after the request was sent and
    provider 5xx answers. Callers must reconcile, never assume failure.
    """

    def __init__(self, operation: str, cause: str, timeout_seconds: float | None = None):
        super().__init__(
            service_name="payment_provider",
            message=f"{operation} outcome unknown ({cause})",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"operation": operation, "cause": cause, "timeout_seconds": timeout_seconds}
        )
        self.operation = operation
        self.cause = cause


class NotificationDispatchError(ExternalServiceException):
    """Raised when the notification dispatcher refuses a message"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="notification_dispatcher",
            message=f"Notification dispatch error: {message}",
            error_code=ErrorCode.NOTIFICATION_DISPATCH_ERROR,
            details=details
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
