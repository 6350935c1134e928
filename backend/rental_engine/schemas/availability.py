"""
Pydantic schemas for listing calendars and owner blocks.
"""

from datetime import date
from typing import Optional
from pydantic import BaseModel, Field, model_validator


class DayAvailabilityResponse(BaseModel):
    day: date
    status: str
    booking_id: Optional[int] = None
    reason: Optional[str] = None


class CalendarResponse(BaseModel):
    listing_id: int
    start_date: date
    end_date: date
    days: list[DayAvailabilityResponse]


class BlockRequest(BaseModel):
    start_date: date
    end_date: date
    reason: Optional[str] = Field(None, max_length=255)

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class BlockResponse(BaseModel):
    listing_id: int
    days: int
