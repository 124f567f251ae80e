"""Application error taxonomy.

Every error carries a stable `code` and the HTTP status the API layer should
answer with. Gateway failures are not here; see `payment_errors.GatewayError`.
"""


class BookingError(Exception):
    """Base class for errors the booking API turns into JSON responses."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class BookingValidationError(BookingError):
    """Malformed or missing input, raised before any side effect."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class FeatureNotEnabledError(BookingError):
    status_code = 403
    default_code = "FEATURE_NOT_ENABLED"


class OrderNotFoundError(BookingError):
    status_code = 404
    default_code = "ORDER_NOT_FOUND"


class SlotNotFoundError(BookingError):
    status_code = 404
    default_code = "SLOT_NOT_FOUND"


class SlotUnavailableError(BookingError):
    status_code = 409
    default_code = "SLOT_UNAVAILABLE"


class InvalidTransitionError(BookingError):
    """Order status change rejected by the state machine."""

    status_code = 409
    default_code = "INVALID_TRANSITION"


class OrderConflictError(BookingError):
    """Optimistic concurrency check on `orders.version` failed."""

    status_code = 409
    default_code = "ORDER_CONFLICT"


class SagaError(BookingError):
    """Persistence failure inside a saga step; always triggers compensation."""

    status_code = 500
    default_code = "SAGA_STEP_FAILED"
