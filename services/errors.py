"""
Booking-domain exceptions.

Services raise these; ``app.py`` renders every ``BookingError`` as
``{"error": message, ...details}`` with the class's HTTP status.
"""


class BookingError(Exception):
    status_code = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        out = {"error": self.message}
        out.update(self.details)
        return out


class ValidationError(BookingError):
    """Malformed input: bad datetime, out-of-range window, inactive offer."""
    status_code = 400


class NotFoundError(BookingError):
    status_code = 404


class SlotUnavailableError(BookingError):
    status_code = 409

    def __init__(self, reason: str, message: str = None, **details):
        super().__init__(message or f"Selected time slot is not available: {reason}", reason=reason, **details)
        self.reason = reason


class InvalidStateError(BookingError):
    status_code = 409

    def __init__(self, message: str, current_status: str, **details):
        super().__init__(message, current_status=current_status, **details)
        self.current_status = current_status


class PaymentError(BookingError):
    status_code = 402


class PermissionDenied(BookingError):
    """The actor does not own the booking/store being mutated."""
    status_code = 403
