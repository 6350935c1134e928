"""
Operational endpoints for the expiration sweeper.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query

from rental_engine.api.deps import get_sweeper
from rental_engine.schemas.sweep import SweepCandidateResponse, SweepPreviewResponse, SweepResultResponse
from rental_engine.services.sweeper import ExpirationSweeper

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.post("/sweep", response_model=SweepResultResponse)
async def run_sweep(
    dry_run: bool = Query(False),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    sweeper: ExpirationSweeper = Depends(get_sweeper),
):
    """Run one sweep pass now instead of waiting for the background loop."""
    result = await sweeper.sweep(limit=limit, dry_run=dry_run)
    return SweepResultResponse.model_validate(result)


@router.get("/sweep/preview", response_model=SweepPreviewResponse)
async def preview_sweep(
    at: Optional[datetime] = Query(None, description="Evaluate deadlines at this instant (UTC)"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    sweeper: ExpirationSweeper = Depends(get_sweeper),
):
    """Bookings a sweep would expire, without changing anything."""
    if at is not None and at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    candidates = await sweeper.preview(at, limit)
    return SweepPreviewResponse(
        candidates=[SweepCandidateResponse.model_validate(c) for c in candidates],
        total=len(candidates),
    )
