"""
Pydantic schemas for booking-related request/response validation.
"""

from datetime import date, datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field, model_validator

from rental_engine.schemas.pricing import PricingBreakdownResponse


class BookingCreate(BaseModel):
    listing_id: int
    start_date: date
    end_date: date
    include_insurance: bool = False
    delivery_requested: bool = False
    points_to_redeem: int = Field(default=0, ge=0)


class PaymentRecordResponse(BaseModel):
    processor_reference: Optional[str]
    attempt: int
    amount_authorized: int
    amount_captured: int
    amount_transferred_to_owner: int
    amount_refunded: int
    transfer_reference: Optional[str]
    last_known_processor_status: Optional[str]

    model_config = {"from_attributes": True}


class BookingResponse(BaseModel):
    id: int
    listing_id: int
    renter_id: int
    owner_id: int
    start_date: date
    end_date: date
    day_count: int
    status: str
    include_insurance: bool
    delivery_requested: bool
    pricing_breakdown: PricingBreakdownResponse
    payment_reference: Optional[str]
    approval_deadline: datetime
    hold_expires_at: Optional[datetime]
    status_changed_at: datetime
    cancellation_reason: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingDetailResponse(BookingResponse):
    payment: Optional[PaymentRecordResponse] = None


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    total: int
    page: int
    page_size: int


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class PaymentSubmit(BaseModel):
    payment_method: str = Field(..., min_length=1, max_length=255)


class CancelRequest(BaseModel):
    refund: Literal["full", "partial", "none"] = "full"
    refund_amount_cents: Optional[int] = Field(None, ge=0)
    reason: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def check_partial_amount(self):
        if self.refund == "partial" and self.refund_amount_cents is None:
            raise ValueError("refund_amount_cents is required for a partial refund")
        return self


class CompleteRequest(BaseModel):
    damage_deduction_cents: int = Field(default=0, ge=0)
