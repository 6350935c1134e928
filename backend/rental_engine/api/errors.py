"""
Exception handlers mapping engine errors onto HTTP responses.

Every error body carries a machine-readable `code` next to `detail`.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from rental_engine.core.exceptions import (
    AuthorizationDenied,
    AvailabilityConflict,
    BookingEngineError,
    BookingNotFound,
    InvalidInput,
    ListingNotFound,
    PaymentConfigurationError,
    PaymentDeclined,
    PaymentError,
    PaymentOutcomeUnknown,
    PaymentTransient,
    StateConflict,
)
from rental_engine.core.logging import get_logger

logger = get_logger(__name__)

# Most specific first
STATUS_CODES: list[tuple[type, int]] = [
    (InvalidInput, status.HTTP_400_BAD_REQUEST),
    (AuthorizationDenied, status.HTTP_403_FORBIDDEN),
    (BookingNotFound, status.HTTP_404_NOT_FOUND),
    (ListingNotFound, status.HTTP_404_NOT_FOUND),
    (StateConflict, status.HTTP_409_CONFLICT),
    (AvailabilityConflict, status.HTTP_409_CONFLICT),
    (PaymentDeclined, status.HTTP_402_PAYMENT_REQUIRED),
    (PaymentTransient, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PaymentOutcomeUnknown, status.HTTP_202_ACCEPTED),
    (PaymentConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (PaymentError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(exc: BookingEngineError) -> int:
    for exc_type, status_code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(exc: BookingEngineError) -> dict:
    body = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, PaymentTransient):
        body["detail"] = "Payment temporarily unavailable, please retry."
    elif isinstance(exc, PaymentDeclined) and exc.decline_code:
        body["decline_code"] = exc.decline_code
    elif isinstance(exc, AvailabilityConflict) and exc.conflicting_dates:
        body["conflicting_dates"] = [d.isoformat() for d in exc.conflicting_dates]
    elif isinstance(exc, StateConflict) and exc.current:
        body["current_status"] = exc.current
    return body


async def booking_engine_error_handler(request: Request, exc: BookingEngineError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.warning if status_code >= 500 else logger.info
    log("request_rejected", code=exc.code, status_code=status_code, error=exc.message)
    return JSONResponse(status_code=status_code, content=error_body(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BookingEngineError, booking_engine_error_handler)
