"""Payment gateway error classification.

Gateway adapters raise `GatewayError` with the processor's discriminator
fields; `classify_payment_error` turns any exception into a
`ClassifiedPaymentError` carrying retry and user-messaging hints, so the API
layer can answer with a stable `code`/`suggested_action` pair instead of raw
gateway text.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from washbook.common.circuit_breaker import CircuitOpenError
from washbook.common.config import settings
from washbook.common.logging import logger
from washbook.common.metrics import payment_errors_total


class GatewayErrorKind(StrEnum):
    CARD = "card_error"
    RATE_LIMIT = "rate_limit_error"
    CONNECTION = "connection_error"
    API = "api_error"
    AUTHENTICATION = "authentication_error"
    INVALID_REQUEST = "invalid_request_error"


class GatewayError(Exception):
    """Adapter-neutral gateway failure."""

    def __init__(
        self,
        kind: str,
        message: str,
        code: str | None = None,
        decline_code: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code
        self.decline_code = decline_code
        self.http_status = http_status


class PaymentMethodNotFoundError(GatewayError):
    """The supplied payment-method token does not exist for this gateway account."""

    def __init__(self, payment_method_id: str, mode: str) -> None:
        other = "live" if mode == "test" else "test"
        super().__init__(
            GatewayErrorKind.INVALID_REQUEST,
            f"Payment method {payment_method_id} not found. The card was probably saved with {other} "
            f"keys while the server uses {mode} keys. Add a new card or check the gateway keys.",
            code="resource_missing",
            http_status=404,
        )


class PaymentErrorType(StrEnum):
    CARD_DECLINED = "card_declined"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    EXPIRED_CARD = "expired_card"
    INVALID_CARD = "invalid_card"
    NETWORK_ERROR = "network_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    AUTHENTICATION_REQUIRED = "authentication_required"
    PROCESSING_ERROR = "processing_error"
    GATEWAY_ERROR = "gateway_error"
    UNKNOWN = "unknown"


RETRYABLE_TYPES = frozenset(
    {PaymentErrorType.NETWORK_ERROR, PaymentErrorType.QUOTA_EXCEEDED, PaymentErrorType.PROCESSING_ERROR}
)
PAYMENT_METHOD_TYPES = frozenset(
    {
        PaymentErrorType.CARD_DECLINED,
        PaymentErrorType.INSUFFICIENT_FUNDS,
        PaymentErrorType.EXPIRED_CARD,
        PaymentErrorType.INVALID_CARD,
    }
)


@dataclass(frozen=True)
class ClassifiedPaymentError:
    type: PaymentErrorType
    message: str
    is_retryable: bool
    user_message: str
    suggested_action: str
    code: str | None = None


# decline code -> (type, retryable, user message, suggested action)
_CARD_CODES: dict[str, tuple[PaymentErrorType, bool, str, str]] = {
    "insufficient_funds": (
        PaymentErrorType.INSUFFICIENT_FUNDS,
        False,
        "Your card was declined due to insufficient funds.",
        "Use a different payment method",
    ),
    "expired_card": (
        PaymentErrorType.EXPIRED_CARD,
        False,
        "Your card has expired.",
        "Update card information",
    ),
    "invalid_number": (
        PaymentErrorType.INVALID_CARD,
        False,
        "The card number you entered is invalid.",
        "Re-enter card number",
    ),
    "incorrect_number": (
        PaymentErrorType.INVALID_CARD,
        False,
        "The card number you entered is invalid.",
        "Re-enter card number",
    ),
    "invalid_cvc": (
        PaymentErrorType.INVALID_CARD,
        False,
        "The security code (CVC) you entered is invalid.",
        "Re-enter CVC",
    ),
    "incorrect_cvc": (
        PaymentErrorType.INVALID_CARD,
        False,
        "The security code (CVC) you entered is invalid.",
        "Re-enter CVC",
    ),
    "card_not_supported": (
        PaymentErrorType.CARD_DECLINED,
        False,
        "This type of card is not supported.",
        "Use a different card",
    ),
    "processing_error": (
        PaymentErrorType.PROCESSING_ERROR,
        True,
        "There was an error processing your card. Please try again.",
        "Retry immediately",
    ),
    "authentication_required": (
        PaymentErrorType.AUTHENTICATION_REQUIRED,
        True,
        "Your card requires additional authentication.",
        "Complete 3D Secure challenge",
    ),
}


def _classify_card_error(error: GatewayError) -> ClassifiedPaymentError:
    # The decline code is more specific than the generic `card_declined` code.
    code = error.decline_code if error.decline_code in _CARD_CODES else (error.code or error.decline_code)
    known = _CARD_CODES.get(code or "")
    if known is None:
        return ClassifiedPaymentError(
            type=PaymentErrorType.CARD_DECLINED,
            message=error.message,
            code=code,
            is_retryable=False,
            user_message="Your card was declined. Please try a different payment method.",
            suggested_action="Use a different card or contact your bank",
        )
    error_type, retryable, user_message, action = known
    return ClassifiedPaymentError(
        type=error_type,
        message=error.message,
        code=code,
        is_retryable=retryable,
        user_message=user_message,
        suggested_action=action,
    )


def classify_payment_error(error: BaseException) -> ClassifiedPaymentError:
    """Map any exception raised around a gateway call into the taxonomy."""

    if isinstance(error, GatewayError):
        if error.kind == GatewayErrorKind.CARD:
            return _classify_card_error(error)
        if error.kind == GatewayErrorKind.RATE_LIMIT or error.http_status == 429:
            return ClassifiedPaymentError(
                type=PaymentErrorType.QUOTA_EXCEEDED,
                message="Rate limit exceeded",
                code=error.code,
                is_retryable=True,
                user_message="Our system is experiencing high volume. Please try again in a moment.",
                suggested_action="Wait 30 seconds and retry",
            )
        if error.kind == GatewayErrorKind.CONNECTION:
            return _network_error(error.code)
        if error.kind == GatewayErrorKind.AUTHENTICATION:
            return ClassifiedPaymentError(
                type=PaymentErrorType.GATEWAY_ERROR,
                message="Gateway authentication failed",
                code=error.code,
                is_retryable=False,
                user_message="Payment system configuration error. Please contact support.",
                suggested_action="Contact support immediately",
            )
        if error.kind == GatewayErrorKind.INVALID_REQUEST and error.code == "resource_missing":
            return ClassifiedPaymentError(
                type=PaymentErrorType.INVALID_CARD,
                message=error.message,
                code=error.code,
                is_retryable=False,
                user_message="We could not find that card. Please add it again.",
                suggested_action="Add a new card",
            )
        return ClassifiedPaymentError(
            type=PaymentErrorType.GATEWAY_ERROR,
            message=error.message or "Gateway API error",
            code=error.code,
            is_retryable=False,
            user_message="We encountered a payment processing error. Please contact support.",
            suggested_action="Contact support with order ID",
        )
    if isinstance(error, CircuitOpenError):
        return _network_error("circuit_open")
    if isinstance(error, (ConnectionError, TimeoutError)):
        return _network_error(type(error).__name__)
    return ClassifiedPaymentError(
        type=PaymentErrorType.UNKNOWN,
        message=str(error) or "Unknown payment error",
        code=getattr(error, "code", None),
        is_retryable=False,
        user_message="An unexpected error occurred. Please try again or contact support.",
        suggested_action="Retry once, then contact support",
    )


def _network_error(code: str | None) -> ClassifiedPaymentError:
    return ClassifiedPaymentError(
        type=PaymentErrorType.NETWORK_ERROR,
        message="Connection error",
        code=code,
        is_retryable=True,
        user_message="We're having trouble connecting to our payment processor. Please try again.",
        suggested_action="Retry immediately",
    )


def should_retry(error: ClassifiedPaymentError, attempt_number: int, max_retries: int) -> bool:
    """Automatic retry only for network/quota/processing errors below the cap.

    `attempt_number` is 0-indexed.
    """

    if not error.is_retryable or attempt_number >= max_retries:
        return False
    return error.type in RETRYABLE_TYPES


def is_payment_method_issue(error: ClassifiedPaymentError) -> bool:
    return error.type in PAYMENT_METHOD_TYPES


def get_action_code(error: ClassifiedPaymentError) -> str:
    if error.is_retryable:
        return "RETRY"
    if is_payment_method_issue(error):
        return "UPDATE_PAYMENT_METHOD"
    return "CONTACT_SUPPORT"


def create_error_response(error: ClassifiedPaymentError) -> dict[str, Any]:
    """User-facing response body; never contains raw gateway text."""

    return {
        "error": error.user_message,
        "code": error.code or error.type.value,
        "type": error.type.value,
        "retryable": error.is_retryable,
        "suggested_action": error.suggested_action,
        "action_code": get_action_code(error),
    }


def log_payment_error(
    error: BaseException, order_id: str | None, operation: str, **context: Any
) -> ClassifiedPaymentError:
    """Classify, count and log one payment error with full context."""

    classified = classify_payment_error(error)
    payment_errors_total.labels(service=settings.service_name, error_type=classified.type.value).inc()
    logger.error(
        "payment_error operation=%s order_id=%s type=%s code=%s retryable=%s",
        operation,
        order_id or "unknown",
        classified.type.value,
        classified.code,
        classified.is_retryable,
        exc_info=error,
        extra={
            "event": "payment_error",
            "error_type": classified.type.value,
            "error_code": classified.code,
            "error_message": classified.message,
            "user_message": classified.user_message,
            "suggested_action": classified.suggested_action,
            **context,
        },
    )
    return classified
