from __future__ import annotations


class BookingError(RuntimeError):
    code = "booking_error"
    status_code = 500
    retryable = False
    record_failure = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.intents: list = []


class NotFound(BookingError):
    code = "not_found"
    status_code = 404


class InvalidInput(BookingError):
    code = "invalid_input"
    status_code = 400


class InvalidState(BookingError):
    code = "invalid_state"
    status_code = 409


class Unavailable(BookingError):
    code = "unavailable"
    status_code = 409


class InsufficientFunds(BookingError):
    code = "insufficient_funds"
    status_code = 402


class Busy(BookingError):
    code = "busy"
    status_code = 503
    retryable = True


class StoreFailure(BookingError):
    code = "store_failure"
    status_code = 500


class Conflict(BookingError):
    """Entity set changed underneath an operation; the facade retries it."""

    code = "conflict"
    status_code = 409
    retryable = True
