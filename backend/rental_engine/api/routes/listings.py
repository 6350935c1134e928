"""
Listing calendar and pricing quote endpoints.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from rental_engine.core.security import get_current_user_id, get_optional_user_id
from rental_engine.db.session import get_db
from rental_engine.schemas.availability import BlockRequest, BlockResponse, CalendarResponse
from rental_engine.schemas.pricing import PricingBreakdownResponse, QuoteRequest
from rental_engine.services.listing_service import block_dates, get_calendar, quote, unblock_dates

router = APIRouter(prefix="/listings", tags=["Listings"])


@router.get("/{listing_id}/availability", response_model=CalendarResponse)
async def listing_availability(
    listing_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: AsyncSession = Depends(get_db),
):
    """
    Day-by-day calendar. Cached briefly in Redis; a reservation never reads
    this cache, so a stale calendar can only cause a 409 at booking time.
    """
    days = await get_calendar(db, listing_id, start_date, end_date)
    return CalendarResponse(listing_id=listing_id, start_date=start_date, end_date=end_date, days=days)


@router.post("/{listing_id}/blocks", response_model=BlockResponse)
async def block_listing_dates(
    listing_id: int,
    body: BlockRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Owner marks days unavailable (maintenance, personal use)."""
    days = await block_dates(db, listing_id, user_id, body.start_date, body.end_date, body.reason)
    return BlockResponse(listing_id=listing_id, days=len(days))


@router.delete("/{listing_id}/blocks", response_model=BlockResponse)
async def unblock_listing_dates(
    listing_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    released = await unblock_dates(db, listing_id, user_id, start_date, end_date)
    return BlockResponse(listing_id=listing_id, days=released)


@router.post("/quote", response_model=PricingBreakdownResponse)
async def quote_booking(
    body: QuoteRequest,
    user_id: Optional[int] = Depends(get_optional_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Price a prospective booking without holding any dates."""
    breakdown = await quote(
        db,
        body.listing_id,
        body.start_date,
        body.end_date,
        include_insurance=body.include_insurance,
        delivery_requested=body.delivery_requested,
        points_to_redeem=body.points_to_redeem,
        renter_id=user_id,
    )
    return PricingBreakdownResponse(**breakdown.to_dict())
