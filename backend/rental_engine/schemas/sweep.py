"""
Pydantic schemas for the operational sweep endpoints.
"""

from datetime import datetime
from pydantic import BaseModel


class SweepResultResponse(BaseModel):
    expired_count: int
    released_holds: int
    released_days: int
    races: int
    stale_payments_reconciled: int
    activated_count: int
    dry_run: bool = False

    model_config = {"from_attributes": True}


class SweepCandidateResponse(BaseModel):
    booking_id: int
    status: str
    deadline: datetime

    model_config = {"from_attributes": True}


class SweepPreviewResponse(BaseModel):
    candidates: list[SweepCandidateResponse]
    total: int
