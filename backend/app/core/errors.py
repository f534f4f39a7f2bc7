"""
Domain errors raised by the booking, availability and review components.

Every error carries the HTTP status and a stable machine-readable code so the
API layer can translate it with a single exception handler.
"""

from typing import Any, Dict, Optional


class BookingError(Exception):
    """Base class for recoverable booking-domain failures"""

    status_code: int = 400
    code: str = "booking_error"
    default_message: str = "Booking operation failed"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class NotFound(BookingError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class NotAvailable(BookingError):
    status_code = 400
    code = "not_available"
    default_message = "Tour is not available on the requested date"


class InsufficientCapacity(BookingError):
    status_code = 400
    code = "insufficient_capacity"
    default_message = "Not enough spots left for the requested date"


class Forbidden(BookingError):
    status_code = 403
    code = "forbidden"
    default_message = "Not authorized to perform this action"


class InvalidTransition(BookingError):
    status_code = 400
    code = "invalid_transition"
    default_message = "Change not allowed in the current booking status"


class AlreadyCancelled(BookingError):
    status_code = 400
    code = "already_cancelled"
    default_message = "Booking is already cancelled"


class PaymentRequired(BookingError):
    status_code = 402
    code = "payment_required"
    default_message = "Booking must be paid before it can be confirmed"


class DuplicateReview(BookingError):
    status_code = 409
    code = "duplicate_review"
    default_message = "You have already reviewed this tour"


class ReviewNotAllowed(BookingError):
    status_code = 400
    code = "review_not_allowed"
    default_message = "Review is not allowed for this booking"


class Conflict(BookingError):
    status_code = 409
    code = "conflict"
    default_message = "Resource was modified concurrently, please retry"


class ValidationFailed(BookingError):
    status_code = 422
    code = "validation_failed"
    default_message = "Invalid data"
