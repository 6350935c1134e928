from rental_engine.schemas.booking import (
    BookingCreate, BookingResponse, BookingDetailResponse, BookingListResponse,
    CancelRequest, CompleteRequest, PaymentRecordResponse, PaymentSubmit, RejectRequest,
)
from rental_engine.schemas.pricing import PricingBreakdownResponse, QuoteRequest
from rental_engine.schemas.availability import (
    BlockRequest, BlockResponse, CalendarResponse, DayAvailabilityResponse,
)
from rental_engine.schemas.sweep import SweepCandidateResponse, SweepPreviewResponse, SweepResultResponse

__all__ = [
    "BookingCreate", "BookingResponse", "BookingDetailResponse", "BookingListResponse",
    "CancelRequest", "CompleteRequest", "PaymentRecordResponse", "PaymentSubmit", "RejectRequest",
    "PricingBreakdownResponse", "QuoteRequest",
    "BlockRequest", "BlockResponse", "CalendarResponse", "DayAvailabilityResponse",
    "SweepCandidateResponse", "SweepPreviewResponse", "SweepResultResponse",
]
