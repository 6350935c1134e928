"""
Error taxonomy for the booking engine.

Services raise these; the API layer maps them onto HTTP responses
(see rental_engine.api.errors). Only PaymentDeclined, AvailabilityConflict
and exhausted PaymentTransient are meant for end users.
"""

from datetime import date
from typing import Optional


class BookingEngineError(Exception):
    code = "booking_engine_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidInput(BookingEngineError):
    code = "invalid_input"


class AuthorizationDenied(BookingEngineError):
    code = "authorization_denied"


class BookingNotFound(BookingEngineError):
    code = "booking_not_found"


class ListingNotFound(BookingEngineError):
    code = "listing_not_found"


class StateConflict(BookingEngineError):
    """The stored status no longer matches what the caller expected."""

    code = "state_conflict"

    def __init__(self, message: str = "", *, current: Optional[str] = None,
                 expected: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message)
        self.current = current
        self.expected = expected
        self.target = target


class DeadlinePassed(StateConflict):
    code = "deadline_passed"


class ExpiryRace(StateConflict):
    """A sweep lost the compare-and-swap to a concurrent transition."""

    code = "expiry_race"


class AvailabilityConflict(BookingEngineError):
    code = "availability_conflict"

    def __init__(self, message: str = "", *, listing_id: Optional[int] = None,
                 conflicting_dates: Optional[list[date]] = None):
        super().__init__(message or "Requested dates are no longer available")
        self.listing_id = listing_id
        self.conflicting_dates = conflicting_dates or []


class PaymentError(BookingEngineError):
    code = "payment_error"


class PaymentTransient(PaymentError):
    """Processor timeout/5xx/rate limit. Safe to retry with the same token."""

    code = "payment_unavailable"


class PaymentDeclined(PaymentError):
    code = "payment_declined"

    def __init__(self, message: str = "", *, decline_code: Optional[str] = None):
        super().__init__(message or "Your payment method was declined.")
        self.decline_code = decline_code


class PaymentOutcomeUnknown(PaymentError):
    """The call timed out; the processor may or may not have applied it."""

    code = "payment_outcome_unknown"


class PaymentConfigurationError(PaymentError):
    code = "payment_configuration_error"
