"""Custom application exceptions."""

from enum import Enum


class ErrorKind(str, Enum):
    """Stable, machine-checkable failure kinds."""

    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    SLOT_NO_LONGER_AVAILABLE = "slot_no_longer_available"
    RESCHEDULE_LIMIT_EXCEEDED = "reschedule_limit_exceeded"
    ALREADY_PAID = "already_paid"
    PAYMENT_FAILED = "payment_failed"
    CONFLICT = "conflict"
    VALIDATION_ERROR = "validation_error"
    INTERNAL = "internal"


class AppException(Exception):
    """Base application exception."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code."""
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class InvalidTransitionException(AppException):
    """State machine guard violated."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, operation: str, status: str, message: str | None = None):
        """Initialize with 409 status code."""
        self.operation = operation
        self.status = status
        super().__init__(
            message or f"Cannot {operation} an appointment that is {status}",
            status_code=409,
        )


class SlotNoLongerAvailableException(AppException):
    """Reservation lost the race, expired, or the slot is taken."""

    kind = ErrorKind.SLOT_NO_LONGER_AVAILABLE

    def __init__(self, message: str = "This time slot is no longer available"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class RescheduleLimitExceededException(AppException):
    """Appointment was already rescheduled the maximum number of times."""

    kind = ErrorKind.RESCHEDULE_LIMIT_EXCEEDED

    def __init__(self, limit: int):
        """Initialize with 422 status code."""
        self.limit = limit
        super().__init__(f"Maximum reschedule limit ({limit}) reached", status_code=422)


class AlreadyPaidException(AppException):
    """Payment was already completed for the appointment."""

    kind = ErrorKind.ALREADY_PAID

    def __init__(self, message: str = "Payment already completed for this appointment"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class PaymentFailedException(AppException):
    """Payment-outcome source declined the payment."""

    kind = ErrorKind.PAYMENT_FAILED

    def __init__(self, reason: str = "Payment processing failed"):
        """Initialize with 402 status code."""
        self.reason = reason
        super().__init__(reason, status_code=402)


class ConflictException(AppException):
    """Conflict exception."""

    kind = ErrorKind.CONFLICT

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class ValidationException(AppException):
    """Validation error exception."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str = "Validation error"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)
