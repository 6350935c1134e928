from rental_engine.models.user import User
from rental_engine.models.listing import Listing
from rental_engine.models.booking import Booking, BookingStatus, DATE_HOLDING_STATUSES, TERMINAL_STATUSES
from rental_engine.models.availability import AvailabilityEntry, AvailabilityStatus
from rental_engine.models.payment import PaymentRecord
from rental_engine.models.idempotency import ProcessedKey

__all__ = [
    "User", "Listing",
    "Booking", "BookingStatus", "DATE_HOLDING_STATUSES", "TERMINAL_STATUSES",
    "AvailabilityEntry", "AvailabilityStatus",
    "PaymentRecord", "ProcessedKey",
]
