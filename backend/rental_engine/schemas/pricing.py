"""
Pydantic schemas for pricing quotes and stamped breakdowns.
"""

from datetime import date
from typing import Optional
from pydantic import BaseModel, Field, model_validator


class PricingBreakdownResponse(BaseModel):
    base_price: int
    service_fee: int
    insurance_fee: int
    delivery_fee: int
    security_deposit: int
    points_credit_applied: int
    renter_total: int
    platform_commission: int
    owner_net_earnings: int
    platform_total_revenue: int
    calculation_version: str
    day_count: int
    daily_rate: int
    weekly_rate: Optional[int] = None
    points_redeemed: int = 0
    points_earned: int = 0
    currency: str

    model_config = {"from_attributes": True}


class QuoteRequest(BaseModel):
    listing_id: int
    start_date: date
    end_date: date
    include_insurance: bool = False
    delivery_requested: bool = False
    points_to_redeem: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self
